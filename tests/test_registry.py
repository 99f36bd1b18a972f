"""
Instance Registry — Unit Tests
"""
from datetime import datetime, timedelta

import pytest

from fleet.models import SessionRecord
from instances.registry import InstanceRegistry


def record(owner, symbol="EURUSD", timeframe="M5"):
    return SessionRecord(owner_id=owner, symbol=symbol, timeframe=timeframe)


class TestFindFree:
    def test_empty_pool_returns_slot_one(self):
        reg = InstanceRegistry(3)
        assert reg.find_free() == 1

    def test_lowest_free_slot(self):
        reg = InstanceRegistry(4)
        reg.occupy(1, record("a"))
        reg.occupy(2, record("b"))
        reg.occupy(4, record("d"))
        assert reg.find_free() == 3

    def test_full_pool_returns_none(self):
        reg = InstanceRegistry(2)
        reg.occupy(1, record("a"))
        reg.occupy(2, record("b"))
        assert reg.find_free() is None
        assert reg.free_slots() == []

    def test_never_returns_occupied_slot(self):
        max_instances = 6
        # Every occupancy pattern of a 6-slot pool
        for mask in range(1 << max_instances):
            reg = InstanceRegistry(max_instances)
            for slot in range(1, max_instances + 1):
                if mask & (1 << (slot - 1)):
                    reg.occupy(slot, record(f"user-{slot}"))
            free = reg.find_free()
            if free is None:
                assert reg.count_occupied() == max_instances
            else:
                assert reg.get(free) is None
                assert all(reg.get(s) is not None for s in range(1, free))


class TestOwnership:
    def test_find_by_owner(self):
        reg = InstanceRegistry(3)
        reg.occupy(2, record("alice"))
        assert reg.find_by_owner("alice") == 2
        assert reg.find_by_owner("bob") is None

    def test_vacate_returns_previous_record(self):
        reg = InstanceRegistry(2)
        rec = record("alice")
        reg.occupy(1, rec)
        assert reg.vacate(1) is rec
        assert reg.get(1) is None
        assert reg.find_by_owner("alice") is None

    def test_vacate_free_slot_is_noop(self):
        reg = InstanceRegistry(2)
        assert reg.vacate(2) is None
        assert reg.count_occupied() == 0


class TestBounds:
    @pytest.mark.parametrize("slot", [0, 3, -1])
    def test_out_of_range_rejected(self, slot):
        reg = InstanceRegistry(2)
        with pytest.raises(ValueError):
            reg.occupy(slot, record("x"))
        with pytest.raises(ValueError):
            reg.vacate(slot)
        assert not reg.contains(slot)

    def test_pool_must_have_a_slot(self):
        with pytest.raises(ValueError):
            InstanceRegistry(0)


class TestTouchAndSnapshot:
    def test_touch_refreshes_last_active(self):
        reg = InstanceRegistry(1)
        rec = record("alice")
        rec.last_active_at = datetime.utcnow() - timedelta(hours=1)
        reg.occupy(1, rec)
        assert reg.touch(1) is True
        assert datetime.utcnow() - rec.last_active_at < timedelta(seconds=5)

    def test_touch_empty_slot(self):
        reg = InstanceRegistry(1)
        assert reg.touch(1) is False

    def test_snapshot_lists_every_slot(self):
        reg = InstanceRegistry(3)
        reg.occupy(2, record("alice", "XAUUSD", "H1"))
        snap = reg.snapshot()
        assert [s["slot"] for s in snap] == [1, 2, 3]
        assert snap[0]["session"] is None
        assert snap[1]["session"]["userId"] == "alice"
        assert snap[1]["session"]["symbol"] == "XAUUSD"

    def test_status_summary(self):
        reg = InstanceRegistry(2)
        reg.occupy(1, record("alice"))
        summary = reg.get_status_summary()
        assert "Slot 1: alice" in summary
        assert "1/2 IN USE" in summary
