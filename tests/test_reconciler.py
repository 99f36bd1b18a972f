"""
Reconciler — Unit Tests
"""
import asyncio
import logging

import pytest

from conftest import make_fleet
from fleet.errors import HostConnectionError
from fleet.models import EventType


def start(fleet, creds, owner):
    return asyncio.run(fleet.allocator.allocate(owner, creds, "EURUSD", "M5")).slot_id


class TestDeadWorkloads:
    def test_dead_slot_freed(self, fleet, creds):
        slot = start(fleet, creds, "u1")
        fleet.host.containers.discard("mt5-instance-1")  # crashed on the host

        report = asyncio.run(fleet.reconciler.reconcile_once())

        assert report.freed == [slot]
        assert fleet.registry.get(slot) is None
        assert fleet.host.files == {}
        assert fleet.db.count_events(EventType.RECONCILED_FREE) == 1

    def test_healthy_pool_untouched(self, fleet, creds):
        start(fleet, creds, "u1")
        start(fleet, creds, "u2")

        report = asyncio.run(fleet.reconciler.reconcile_once())

        assert report.live == [1, 2]
        assert not report.changed
        assert report.orphans == []
        assert fleet.registry.count_occupied() == 2
        assert fleet.db.count_events() == 0


class TestOrphans:
    def test_orphan_reclaimed(self, fleet):
        fleet.host.containers.add("mt5-instance-2")

        report = asyncio.run(fleet.reconciler.reconcile_once())

        assert report.orphans == [2]
        assert report.reclaimed == [2]
        assert fleet.host.containers == set()
        events = fleet.db.get_recent_events()
        assert events[0].event == EventType.ORPHAN_RECLAIMED
        assert events[0].detail == "ok"

    def test_orphan_reclaim_is_announced(self, fleet, caplog):
        fleet.host.containers.update({"mt5-instance-1", "mt5-instance-2"})
        with caplog.at_level(logging.WARNING, logger="instances.reconciler"):
            asyncio.run(fleet.reconciler.reconcile_once())
        assert "Reclaiming 2 live workload(s)" in caplog.text

    def test_orphan_beyond_pool_size(self, fleet):
        fleet.host.containers.add("mt5-instance-7")
        report = asyncio.run(fleet.reconciler.reconcile_once())
        assert report.orphans == [7]
        assert report.reclaimed == [7]
        assert fleet.registry.count_occupied() == 0

    def test_orphans_left_when_disabled(self):
        fleet = make_fleet(kill_orphans=False)
        fleet.host.containers.add("mt5-instance-1")

        report = asyncio.run(fleet.reconciler.reconcile_once())

        assert report.orphans == [1]
        assert report.reclaimed == []
        assert fleet.host.containers == {"mt5-instance-1"}
        assert fleet.db.count_events() == 0
        fleet.db.close()


class TestFailures:
    def test_unreachable_host_propagates(self, fleet, creds):
        start(fleet, creds, "u1")
        fleet.host.unreachable = True
        with pytest.raises(HostConnectionError):
            asyncio.run(fleet.reconciler.reconcile_once())
        # Nothing freed on a blind pass
        assert fleet.registry.count_occupied() == 1

    def test_loop_survives_failed_pass(self, fleet):
        fleet.reconciler.config.interval_sec = 0
        fleet.host.unreachable = True
        passes = []

        original = fleet.reconciler.reconcile_once

        async def counting_pass():
            passes.append(1)
            if len(passes) >= 3:
                await fleet.reconciler.stop()
            return await original()

        fleet.reconciler.reconcile_once = counting_pass
        asyncio.run(fleet.reconciler.start())
        assert len(passes) == 3
