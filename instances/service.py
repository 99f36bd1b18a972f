"""
Session Service — the connect / disconnect / heartbeat boundary.
Always returns a structured result; fleet failures never escape to callers.
"""

from __future__ import annotations
from typing import Any, Dict, Mapping, Optional, TYPE_CHECKING
import logging

from fleet.errors import AllocationError, CapacityExceeded, FleetError, ValidationError
from fleet.models import (
    ConnectRequest,
    ConnectResult,
    Credentials,
    DisconnectRequest,
    DisconnectResult,
    EventType,
    SessionEvent,
)

if TYPE_CHECKING:
    from config import PoolConfig
    from instances.allocator import InstanceAllocator
    from instances.capacity import CapacityReporter
    from instances.reclaimer import InstanceReclaimer
    from instances.registry import InstanceRegistry
    from notifications.telegram import TelegramNotifier
    from storage.database import Database

logger = logging.getLogger(__name__)

_FORBIDDEN_CHARS = ("\n", "\r", "\x00")


def _text(payload: Mapping[str, Any], *keys: str, required: bool = True) -> Optional[str]:
    """First non-empty value among keys, as a single-line string."""
    for key in keys:
        value = payload.get(key)
        if value is None:
            continue
        value = str(value).strip()
        if not value:
            continue
        if any(c in value for c in _FORBIDDEN_CHARS):
            raise ValidationError(f"Field '{key}' must be a single line")
        return value
    if required:
        raise ValidationError(f"Missing required field: {keys[0]}")
    return None


class SessionService:
    """Maps inbound user requests onto allocator / reclaimer calls."""

    def __init__(
        self,
        pool: "PoolConfig",
        registry: "InstanceRegistry",
        allocator: "InstanceAllocator",
        reclaimer: "InstanceReclaimer",
        capacity: "CapacityReporter",
        db: "Database",
        notifier: "TelegramNotifier",
    ):
        self.pool = pool
        self.registry = registry
        self.allocator = allocator
        self.reclaimer = reclaimer
        self.capacity = capacity
        self.db = db
        self.notifier = notifier

    # ==================== Parsing ====================

    def parse_connect(self, payload: Mapping[str, Any]) -> ConnectRequest:
        if not isinstance(payload, Mapping):
            raise ValidationError("Request body must be a JSON object")
        return ConnectRequest(
            owner_id=_text(payload, "userId"),
            credentials=Credentials(
                login=_text(payload, "accountId", "login"),
                password=_text(payload, "password"),
                server=_text(payload, "server"),
            ),
            symbol=_text(payload, "symbol"),
            timeframe=_text(payload, "timeframe", required=False) or self.pool.default_timeframe,
        )

    def parse_disconnect(self, payload: Mapping[str, Any]) -> DisconnectRequest:
        if not isinstance(payload, Mapping):
            raise ValidationError("Request body must be a JSON object")
        owner_id = _text(payload, "userId")
        raw_slot = _text(payload, "instanceId", "slotId")
        try:
            slot_id = int(raw_slot)
        except ValueError:
            raise ValidationError(f"Invalid instanceId: {raw_slot}") from None
        if not self.registry.contains(slot_id):
            raise ValidationError(
                f"instanceId must be between 1 and {self.registry.max_instances}"
            )
        return DisconnectRequest(
            owner_id=owner_id,
            slot_id=slot_id,
            symbol=_text(payload, "symbol", required=False) or "unknown",
            timeframe=_text(payload, "timeframe", required=False) or "unknown",
        )

    # ==================== Operations ====================

    async def connect(self, payload: Mapping[str, Any]) -> ConnectResult:
        try:
            request = self.parse_connect(payload)
        except ValidationError as e:
            logger.warning(f"[API] Connect rejected: {e}")
            return ConnectResult(success=False, message=str(e), is_invalid=True)

        owner_id = request.owner_id
        logger.info(
            f"[API] Connect request: user={owner_id} login={request.credentials.login} "
            f"server={request.credentials.server} {request.symbol} {request.timeframe}"
        )

        try:
            allocation = await self.allocator.allocate(
                owner_id, request.credentials, request.symbol, request.timeframe
            )

        except CapacityExceeded as e:
            self.db.record_event(SessionEvent(
                event=EventType.CAPACITY_REJECTED,
                owner_id=owner_id,
                symbol=request.symbol,
                timeframe=request.timeframe,
                detail=f"{e.occupancy}/{e.max_instances}",
            ))
            await self.notifier.send_capacity_full(e.occupancy, e.max_instances, owner_id)
            return ConnectResult(
                success=False,
                message=(
                    "The server is currently full, please try again later. "
                    f"Active users: {e.occupancy}/{e.max_instances}"
                ),
                is_at_capacity=True,
                active_count=e.occupancy,
            )

        except AllocationError as e:
            self.db.record_event(SessionEvent(
                event=EventType.ALLOCATION_FAILED,
                owner_id=owner_id,
                symbol=request.symbol,
                timeframe=request.timeframe,
                detail=str(e),
            ))
            await self.notifier.send_allocation_failed(owner_id, str(e))
            return ConnectResult(success=False, message=f"Failed to start MT5 instance: {e.cause or e}")

        except FleetError as e:
            logger.error(f"[API] Connect failed for {owner_id}: {e}", exc_info=True)
            return ConnectResult(success=False, message=str(e))

        record = allocation.record
        self.db.record_event(SessionEvent(
            event=EventType.REUSED if allocation.reused else EventType.ALLOCATED,
            slot_id=allocation.slot_id,
            owner_id=owner_id,
            symbol=record.symbol,
            timeframe=record.timeframe,
        ))
        return ConnectResult(
            success=True,
            message="Already connected" if allocation.reused else "MT5 instance started successfully",
            slot_id=allocation.slot_id,
            symbol=record.symbol,
            timeframe=record.timeframe,
        )

    async def disconnect(self, payload: Mapping[str, Any]) -> DisconnectResult:
        try:
            request = self.parse_disconnect(payload)
        except ValidationError as e:
            logger.warning(f"[API] Disconnect rejected: {e}")
            return DisconnectResult(success=False, message=str(e), is_invalid=True)

        slot_id = request.slot_id

        # Ownership check and teardown form one critical section.
        async with self.registry.lock:
            record = self.registry.get(slot_id)
            if record is not None and record.owner_id != request.owner_id:
                logger.warning(
                    f"[API] Disconnect rejected: slot {slot_id} belongs to "
                    f"{record.owner_id}, not {request.owner_id}"
                )
                return DisconnectResult(
                    success=False,
                    message=f"Instance {slot_id} belongs to another user",
                    is_invalid=True,
                )
            if record is None:
                logger.info(
                    f"[API] Slot {slot_id} has no session record. "
                    f"Reclaiming on the host anyway for {request.owner_id}."
                )
            symbol = record.symbol if record else request.symbol
            timeframe = record.timeframe if record else request.timeframe

            ok = await self.reclaimer.reclaim_locked(slot_id)

        self.db.record_event(SessionEvent(
            event=EventType.RECLAIMED if ok else EventType.RECLAIM_FAILED,
            slot_id=slot_id,
            owner_id=request.owner_id,
            symbol=symbol,
            timeframe=timeframe,
        ))
        if not ok:
            await self.notifier.send_reclaim_failed(slot_id, request.owner_id)
            return DisconnectResult(
                success=False,
                message="Failed to stop instance cleanly; the slot has been released",
            )
        return DisconnectResult(success=True, message="Instance stopped successfully")

    async def heartbeat(self, owner_id: str) -> Optional[int]:
        """Refresh the owner's session. Returns their slot, or None."""
        slot_id = self.registry.find_by_owner(owner_id)
        if slot_id is None:
            return None
        self.registry.touch(slot_id)
        return slot_id

    async def capacity_report(self) -> Dict[str, int]:
        return {
            "active": await self.capacity.count_active(),
            "registered": self.registry.count_occupied(),
            "maxInstances": self.registry.max_instances,
        }
