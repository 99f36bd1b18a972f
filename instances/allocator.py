"""
Instance Allocator — assigns a slot to a user and starts their terminal.

1. Same user already holds a slot -> return it, host untouched.
2. Pick the lowest free slot whose container is not actually running.
3. Stage login artifact + compose descriptor on the host (base64 blobs).
4. `docker compose up -d` for that slot.
5. Only then record the session in the registry.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, TYPE_CHECKING
import logging

from fleet.errors import (
    AllocationError,
    CapacityExceeded,
    FleetError,
    HostConnectionError,
)
from fleet.models import Credentials, SessionRecord
from remote import commands

if TYPE_CHECKING:
    import asyncssh
    from config import PoolConfig
    from instances.capacity import CapacityReporter
    from instances.registry import InstanceRegistry
    from remote.ssh_executor import RemoteExecutor

logger = logging.getLogger(__name__)


@dataclass
class Allocation:
    slot_id: int
    record: SessionRecord
    reused: bool = False


class InstanceAllocator:
    """Serialized slot allocation against the fleet host."""

    def __init__(
        self,
        executor: "RemoteExecutor",
        registry: "InstanceRegistry",
        capacity: "CapacityReporter",
        pool: "PoolConfig",
    ):
        self.executor = executor
        self.registry = registry
        self.capacity = capacity
        self.pool = pool

    async def allocate(
        self,
        owner_id: str,
        credentials: Credentials,
        symbol: str,
        timeframe: str,
    ) -> Allocation:
        """
        Returns the slot now running the owner's terminal.
        Raises CapacityExceeded when the pool is full and AllocationError
        for any host-side failure. The registry is only written on success.
        """
        async with self.registry.lock:
            existing = self.registry.find_by_owner(owner_id)
            if existing is not None:
                self.registry.touch(existing)
                logger.info(f"[ALLOC] {owner_id} already on slot {existing}. Reusing.")
                return Allocation(existing, self.registry.get(existing), reused=True)

            candidates = self.registry.free_slots()
            if not candidates:
                await self._reject_full()

            try:
                async with self.executor.session() as conn:
                    slot_id = await self._pick_slot(conn, candidates)
                    if slot_id is None:
                        await self._reject_full()
                    await self._stage_and_start(conn, slot_id, credentials, symbol, timeframe)
            except CapacityExceeded:
                raise
            except HostConnectionError as e:
                logger.error(f"[ALLOC] Fleet host unreachable for {owner_id}: {e}")
                raise AllocationError("Fleet host unreachable", e) from e
            except FleetError as e:
                logger.error(f"[ALLOC] Start failed for {owner_id}: {e}")
                raise AllocationError("Failed to start MT5 instance", e) from e

            record = SessionRecord(owner_id=owner_id, symbol=symbol, timeframe=timeframe)
            self.registry.occupy(slot_id, record)
            logger.info(
                f"[ALLOC] Slot {slot_id} started for {owner_id} "
                f"({symbol} {timeframe}, login {credentials.login}@{credentials.server})"
            )
            return Allocation(slot_id, record)

    async def _reject_full(self):
        occupancy = await self.capacity.count_active()
        logger.warning(
            f"[ALLOC] Pool full: {occupancy}/{self.pool.max_instances} active"
        )
        raise CapacityExceeded(occupancy, self.registry.max_instances)

    async def _pick_slot(
        self, conn: "asyncssh.SSHClientConnection", candidates: List[int]
    ):
        """First registry-free slot with no live container behind it."""
        live = set(await self.capacity.live_slots(conn))
        for slot_id in candidates:
            if slot_id not in live:
                return slot_id
            logger.warning(
                f"[ALLOC] Slot {slot_id} is free in registry but "
                f"{self.pool.resource_name(slot_id)} is running. Skipping."
            )
        return None

    async def _stage_and_start(
        self,
        conn: "asyncssh.SSHClientConnection",
        slot_id: int,
        credentials: Credentials,
        symbol: str,
        timeframe: str,
    ):
        name = self.pool.resource_name(slot_id)
        artifact = commands.render_artifact(credentials, symbol, timeframe)
        descriptor = commands.render_descriptor(self.pool, slot_id)

        # Anything written before a failure stays on the host until the
        # next reclaim or reconcile pass for this slot.
        await self.executor.run(
            conn,
            commands.write_file(self.pool.artifact_path(slot_id), artifact),
            f"write-artifact:{name}",
        )
        await self.executor.run(
            conn,
            commands.write_file(self.pool.descriptor_path(slot_id), descriptor),
            f"write-descriptor:{name}",
        )
        await self.executor.run(
            conn,
            commands.ensure_network(self.pool.shared_network),
            f"ensure-network:{self.pool.shared_network}",
        )
        await self.executor.run(
            conn,
            commands.compose_up(self.pool, slot_id),
            f"compose-up:{name}",
        )
