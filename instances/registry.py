"""
Instance Registry — in-memory map of slot number to its current occupant.
Not persisted: a restart starts empty and the reconciler relearns the host.
"""

from __future__ import annotations
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from fleet.models import SessionRecord

logger = logging.getLogger(__name__)


class InstanceRegistry:
    """
    Fixed pool of slots 1..max_instances, each empty or holding one
    SessionRecord. One record per owner across the pool.

    The registry does not lock its own methods. `lock` is held by the
    allocator, reclaimer and reconciler around their whole
    read-modify-write sequences.
    """

    def __init__(self, max_instances: int):
        if max_instances < 1:
            raise ValueError("max_instances must be >= 1")
        self.max_instances = max_instances
        self._records: Dict[int, Optional[SessionRecord]] = {
            i: None for i in range(1, max_instances + 1)
        }
        self.lock = asyncio.Lock()

    def _check(self, slot_id: int):
        if slot_id not in self._records:
            raise ValueError(f"Slot {slot_id} outside 1..{self.max_instances}")

    def contains(self, slot_id: int) -> bool:
        return slot_id in self._records

    def get(self, slot_id: int) -> Optional[SessionRecord]:
        self._check(slot_id)
        return self._records[slot_id]

    def find_by_owner(self, owner_id: str) -> Optional[int]:
        for slot_id, record in self._records.items():
            if record is not None and record.owner_id == owner_id:
                return slot_id
        return None

    def find_free(self) -> Optional[int]:
        """Lowest-numbered empty slot, or None when full."""
        for slot_id in sorted(self._records):
            if self._records[slot_id] is None:
                return slot_id
        return None

    def free_slots(self) -> List[int]:
        return [s for s in sorted(self._records) if self._records[s] is None]

    def occupy(self, slot_id: int, record: SessionRecord):
        self._check(slot_id)
        self._records[slot_id] = record
        logger.info(
            f"[REGISTRY] Slot {slot_id} -> {record.owner_id} "
            f"({record.symbol} {record.timeframe})"
        )

    def vacate(self, slot_id: int) -> Optional[SessionRecord]:
        self._check(slot_id)
        previous = self._records[slot_id]
        self._records[slot_id] = None
        if previous is not None:
            logger.info(f"[REGISTRY] Slot {slot_id} freed (was {previous.owner_id})")
        return previous

    def touch(self, slot_id: int) -> bool:
        """Refresh last-active time. False if the slot is empty."""
        record = self.get(slot_id)
        if record is None:
            return False
        record.last_active_at = datetime.utcnow()
        return True

    def occupied(self) -> Dict[int, SessionRecord]:
        return {s: r for s, r in self._records.items() if r is not None}

    def count_occupied(self) -> int:
        return sum(1 for r in self._records.values() if r is not None)

    def snapshot(self) -> List[Dict[str, Any]]:
        return [
            {"slot": s, "session": r.to_dict() if r else None}
            for s, r in sorted(self._records.items())
        ]

    def get_status_summary(self) -> str:
        lines = ["═══ SLOT STATUS ═══"]
        for slot_id, record in sorted(self._records.items()):
            if record is None:
                lines.append(f"🟢 Slot {slot_id}: free")
            else:
                lines.append(
                    f"🔵 Slot {slot_id}: {record.owner_id} "
                    f"({record.symbol} {record.timeframe})"
                )
        lines.append(f"═══ {self.count_occupied()}/{self.max_instances} IN USE ═══")
        return "\n".join(lines)
