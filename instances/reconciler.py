"""
Reconciler — periodic sweep comparing the registry against live containers.
Frees slots whose workload died and reclaims workloads nobody owns
(e.g. left over from before a restart).
"""

from __future__ import annotations
import asyncio
from typing import TYPE_CHECKING
import logging

from fleet.models import EventType, ReconcileReport, SessionEvent

if TYPE_CHECKING:
    from config import ReconcileConfig
    from instances.capacity import CapacityReporter
    from instances.reclaimer import InstanceReclaimer
    from instances.registry import InstanceRegistry
    from notifications.telegram import TelegramNotifier
    from storage.database import Database

logger = logging.getLogger(__name__)


class Reconciler:
    """Keeps the registry honest against the fleet host."""

    def __init__(
        self,
        config: "ReconcileConfig",
        registry: "InstanceRegistry",
        capacity: "CapacityReporter",
        reclaimer: "InstanceReclaimer",
        db: "Database",
        notifier: "TelegramNotifier",
    ):
        self.config = config
        self.registry = registry
        self.capacity = capacity
        self.reclaimer = reclaimer
        self.db = db
        self.notifier = notifier
        self._running = False

    async def start(self):
        """Run reconcile passes every interval_sec until stopped."""
        self._running = True
        logger.info(
            f"[RECONCILE] Active. Interval: {self.config.interval_sec}s, "
            f"kill orphans: {self.config.kill_orphans}"
        )

        while self._running:
            await asyncio.sleep(self.config.interval_sec)
            if not self._running:
                break
            try:
                await self.reconcile_once()
            except Exception as e:
                logger.error(f"[RECONCILE] Pass failed: {e}", exc_info=True)

    async def stop(self):
        self._running = False

    async def reconcile_once(self) -> ReconcileReport:
        """
        One full pass under the registry lock, so no allocate or reclaim
        can interleave with it. Host query failures propagate.
        """
        report = ReconcileReport()

        async with self.registry.lock:
            live = await self.capacity.live_slots()
            report.live = live

            occupied = self.registry.occupied()
            dead = [s for s in sorted(occupied) if s not in live]
            report.orphans = [
                s for s in live
                if not self.registry.contains(s) or self.registry.get(s) is None
            ]

            for slot_id in dead:
                record = occupied[slot_id]
                logger.warning(
                    f"[RECONCILE] Slot {slot_id} ({record.owner_id}) has no "
                    f"running workload. Cleaning up and freeing."
                )
                await self.reclaimer.reclaim_locked(slot_id)
                report.freed.append(slot_id)
                self.db.record_event(SessionEvent(
                    event=EventType.RECONCILED_FREE,
                    slot_id=slot_id,
                    owner_id=record.owner_id,
                    symbol=record.symbol,
                    timeframe=record.timeframe,
                ))

            if report.orphans and self.config.kill_orphans:
                logger.warning(
                    f"[RECONCILE] Reclaiming {len(report.orphans)} live workload(s) "
                    f"with no session record: slots {report.orphans}"
                )
            for slot_id in report.orphans:
                if not self.config.kill_orphans:
                    logger.warning(f"[RECONCILE] Orphan workload on slot {slot_id} left running")
                    continue
                logger.warning(f"[RECONCILE] Orphan workload on slot {slot_id}. Reclaiming.")
                if await self.reclaimer.reclaim_locked(slot_id):
                    report.reclaimed.append(slot_id)
                self.db.record_event(SessionEvent(
                    event=EventType.ORPHAN_RECLAIMED,
                    slot_id=slot_id,
                    detail="ok" if slot_id in report.reclaimed else "cleanup failed",
                ))

        logger.info(
            f"[RECONCILE] live={len(report.live)} freed={report.freed} "
            f"orphans={report.orphans} reclaimed={report.reclaimed}"
        )
        if report.changed or report.orphans:
            await self.notifier.send_reconcile_report(report)
        return report
