#!/usr/bin/env python3
"""Unit tests for EtaCalculator and the arrival merge helpers."""

from typing import Dict, List, Tuple
from unittest.mock import Mock

import pytest

from busloc_hub.eta import (
    EtaCalculator, KeyedLocks, find_passed_index, lexical_time_key, merge_arrivals,
    service_day_time_key,
)
from busloc_hub.models import ArrivalEntry, Heartbeat, StopArrivalRecord, TimetableEntry

NOW_MS = 1_768_640_000_000


class MemoryStore:
    """Dict-backed arrival store that records every upsert."""

    def __init__(self) -> None:
        self.records: Dict[Tuple[str, str], StopArrivalRecord] = {}
        self.upserts: List[StopArrivalRecord] = []

    def get_arrivals(self, route_id, stop_id):
        return self.records.get((route_id, stop_id))

    def upsert_arrivals(self, record):
        self.upserts.append(record)
        self.records[(record.route_id, record.stop_id)] = record


def hhmm(s: str) -> int:
    h, m = s.split(":")
    return int(h) * 60 + int(m)


def make_calc(timetable, now="08:07", **kwargs):
    provider = Mock()
    provider.get_timetable.return_value = timetable
    store = MemoryStore()
    channel = Mock()
    calc = EtaCalculator(provider, store, channel, clock=lambda: hhmm(now), ms_clock=lambda: NOW_MS, **kwargs)
    return calc, provider, store, channel


ABC = [
    TimetableEntry("A", "Alpha", "08:00"),
    TimetableEntry("B", "Bravo", "08:10"),
    TimetableEntry("C", "", "08:20"),
]


def hb(**kw):
    base = dict(device_id="tab-1", vehicle_no="V1", route_id="R1", dia_id="7", delay_minutes=0)
    base.update(kw)
    return Heartbeat(**base)


@pytest.mark.parametrize("kwargs", [
    {"route_id": None},
    {"dia_id": None},
    {"dia_id": ""},
    {"dia_id": "abc"},
])
def test_missing_or_bad_ids_do_nothing(kwargs):
    calc, provider, store, channel = make_calc(ABC)
    assert calc.update_arrivals_from_heartbeat(hb(**kwargs)) == []
    assert store.upserts == []
    channel.broadcast.assert_not_called()


@pytest.mark.parametrize("dia_id", ["7.5", "7abc", " 7"])
def test_dia_id_uses_leading_integer(dia_id):
    calc, provider, store, channel = make_calc(ABC)
    assert calc.update_arrivals_from_heartbeat(hb(dia_id=dia_id)) == ["A", "B", "C"]
    provider.get_timetable.assert_called_once_with(7, "R1")


def test_empty_timetable_does_nothing():
    calc, provider, store, channel = make_calc([])
    assert calc.update_arrivals_from_heartbeat(hb()) == []
    provider.get_timetable.assert_called_once_with(7, "R1")
    assert store.upserts == []
    channel.broadcast.assert_not_called()


def test_delayed_vehicle_between_stops():
    """A passed at 08:05 est, B approaching at 08:15, C upcoming at 08:25."""
    calc, provider, store, channel = make_calc(ABC, now="08:07")
    updated = calc.update_arrivals_from_heartbeat(hb(delay_minutes=5))

    assert updated == ["A", "B", "C"]
    assert [r.stop_id for r in store.upserts] == ["A", "B", "C"]

    # A is written but its own entry is filtered out as passed
    assert store.records[("R1", "A")].arrivals == []
    assert store.records[("R1", "A")].stop_name == "Alpha"

    b = store.records[("R1", "B")].arrivals
    assert len(b) == 1
    assert b[0].estimated_time == "08:15"
    assert b[0].scheduled_time == "08:10"
    assert b[0].is_approaching is True
    assert b[0].approaching_desc == "Arriving soon (about 5 min late)"
    assert b[0].is_passed is False

    c = store.records[("R1", "C")]
    assert c.stop_name == "C"            # falls back to stop id
    assert c.arrivals[0].estimated_time == "08:25"
    assert c.arrivals[0].is_approaching is False
    assert c.arrivals[0].approaching_desc is None

    channel.broadcast.assert_called_once_with("arrival_updated", {
        "routeId": "R1",
        "vehicleNo": "V1",
        "delayMinutes": 5,
        "updatedStops": ["A", "B", "C"],
        "ts": NOW_MS,
    })


def test_passed_index_between_stops_without_delay():
    timetable = [TimetableEntry(f"S{i}", "", f"08:{i * 10:02d}") for i in range(5)]
    assert find_passed_index(timetable, hhmm("08:25"), 0) == 2

    calc, _, store, _ = make_calc(timetable, now="08:25")
    calc.update_arrivals_from_heartbeat(hb())
    approaching = [
        sid for (_, sid), rec in store.records.items()
        if any(a.is_approaching for a in rec.arrivals)
    ]
    assert approaching == ["S3"]
    assert store.records[("R1", "S4")].arrivals[0].is_approaching is False


def test_passed_scan_stops_at_first_future_stop():
    timetable = [
        TimetableEntry("A", "", "08:00"),
        TimetableEntry("B", "", "09:00"),
        TimetableEntry("C", "", "08:30"),   # out of order, never reached by the scan
    ]
    assert find_passed_index(timetable, hhmm("08:45"), 0) == 0


def test_passed_scan_skips_untimed_stops():
    timetable = [
        TimetableEntry("A", "", "08:00"),
        TimetableEntry("X", "", ""),
        TimetableEntry("B", "", "08:10"),
    ]
    assert find_passed_index(timetable, hhmm("08:12"), 0) == 2


def test_current_stop_hint_overrides_clock():
    calc, _, store, _ = make_calc(ABC, now="06:00")
    calc.update_arrivals_from_heartbeat(hb(current_stop_id="B"))
    assert store.records[("R1", "A")].arrivals == []
    assert store.records[("R1", "B")].arrivals == []
    assert store.records[("R1", "C")].arrivals[0].is_approaching is True


def test_unknown_current_stop_hint_means_nothing_passed():
    calc, _, store, _ = make_calc(ABC, now="23:00")
    calc.update_arrivals_from_heartbeat(hb(current_stop_id="ZZZ"))
    assert store.records[("R1", "A")].arrivals[0].is_approaching is True
    assert all(len(r.arrivals) == 1 for r in store.records.values())


def test_untimed_stops_are_skipped():
    timetable = [TimetableEntry("A", "", "08:00"), TimetableEntry("X", "", "n/a"), TimetableEntry("", "", "08:30")]
    calc, _, store, channel = make_calc(timetable, now="07:00")
    assert calc.update_arrivals_from_heartbeat(hb()) == ["A"]
    assert channel.broadcast.call_args[0][1]["updatedStops"] == ["A"]


def test_same_vehicle_twice_keeps_one_entry():
    calc, _, store, _ = make_calc(ABC, now="07:00")
    calc.update_arrivals_from_heartbeat(hb(delay_minutes=0))
    calc.update_arrivals_from_heartbeat(hb(delay_minutes=3))
    arrivals = store.records[("R1", "C")].arrivals
    assert [(a.vehicle_no, a.estimated_time) for a in arrivals] == [("V1", "08:23")]


def test_vehicle_key_falls_back_to_device_id():
    calc, _, store, channel = make_calc(ABC, now="07:00")
    calc.update_arrivals_from_heartbeat(hb(vehicle_no=None, device_id="tab-9"))
    assert store.records[("R1", "A")].arrivals[0].vehicle_no == "tab-9"
    assert channel.broadcast.call_args[0][1]["vehicleNo"] == "tab-9"


def test_empty_vehicle_no_is_kept_as_merge_key():
    assert hb(vehicle_no="").vehicle_key == ""
    assert hb(vehicle_no=None, device_id="tab-9").vehicle_key == "tab-9"


def test_vehicles_sorted_and_capped_at_three():
    stop = [TimetableEntry("S", "Stop", "08:00")]
    calc, _, store, _ = make_calc(stop, now="07:00")
    for vehicle, delay in (("V1", 12), ("V2", 9), ("V3", 20)):
        calc.update_arrivals_from_heartbeat(hb(vehicle_no=vehicle, delay_minutes=delay))
    assert [a.estimated_time for a in store.records[("R1", "S")].arrivals] == ["08:09", "08:12", "08:20"]

    calc.update_arrivals_from_heartbeat(hb(vehicle_no="V4", delay_minutes=5))
    arrivals = store.records[("R1", "S")].arrivals
    assert len(arrivals) == 3
    assert [(a.vehicle_no, a.estimated_time) for a in arrivals] == [
        ("V4", "08:05"), ("V2", "08:09"), ("V1", "08:12"),
    ]


def test_stored_lists_never_hold_passed_entries():
    timetable = [TimetableEntry(f"S{i}", "", f"08:{i * 5:02d}") for i in range(6)]
    calc, _, store, _ = make_calc(timetable, now="08:12")
    for n, delay in enumerate((0, 2, -3, 7, 1)):
        calc.update_arrivals_from_heartbeat(hb(vehicle_no=f"V{n}", delay_minutes=delay))
    for rec in store.records.values():
        assert len(rec.arrivals) <= 3
        assert not any(a.is_passed for a in rec.arrivals)
        assert len({a.vehicle_no for a in rec.arrivals}) == len(rec.arrivals)


def test_vehicle_that_passes_a_stop_leaves_its_list():
    stop = [TimetableEntry("A", "", "08:00"), TimetableEntry("B", "", "08:30")]
    calc, _, store, _ = make_calc(stop, now="07:55")
    calc.update_arrivals_from_heartbeat(hb())
    assert len(store.records[("R1", "A")].arrivals) == 1
    calc.clock = lambda: hhmm("08:01")
    calc.update_arrivals_from_heartbeat(hb())
    assert store.records[("R1", "A")].arrivals == []


def test_fractional_delay_rounds_half_up():
    calc, _, store, channel = make_calc(ABC, now="07:00")
    calc.update_arrivals_from_heartbeat(hb(delay_minutes=2.5))
    assert store.records[("R1", "A")].arrivals[0].estimated_time == "08:03"
    assert channel.broadcast.call_args[0][1]["delayMinutes"] == 3


def test_on_time_description():
    calc, _, store, _ = make_calc(ABC, now="07:00")
    calc.update_arrivals_from_heartbeat(hb(delay_minutes=-2))
    assert store.records[("R1", "A")].arrivals[0].approaching_desc == "Arriving soon (on time)"


def test_store_errors_propagate_without_broadcast():
    provider = Mock()
    provider.get_timetable.return_value = ABC
    store = Mock()
    store.get_arrivals.side_effect = RuntimeError("db gone")
    channel = Mock()
    calc = EtaCalculator(provider, store, channel, clock=lambda: 0)
    with pytest.raises(RuntimeError):
        calc.update_arrivals_from_heartbeat(hb())
    channel.broadcast.assert_not_called()


def test_lexical_order_breaks_across_midnight():
    late = ArrivalEntry("V1", "23:50", "23:58")
    wrapped = ArrivalEntry("V2", "23:55", "00:05")
    merged = merge_arrivals([late], wrapped, sort_key=lexical_time_key)
    assert [a.estimated_time for a in merged] == ["00:05", "23:58"]

    merged = merge_arrivals([late], wrapped, sort_key=service_day_time_key(hhmm("23:50")))
    assert [a.estimated_time for a in merged] == ["23:58", "00:05"]


def test_service_day_sort_is_configurable():
    stop = [TimetableEntry("S", "", "23:50")]
    calc, _, store, _ = make_calc(stop, now="23:40", arrival_sort="service_day")
    calc.update_arrivals_from_heartbeat(hb(vehicle_no="V1", delay_minutes=8))    # 23:58
    calc.update_arrivals_from_heartbeat(hb(vehicle_no="V2", delay_minutes=15))   # 00:05
    assert [a.vehicle_no for a in store.records[("R1", "S")].arrivals] == ["V1", "V2"]


def test_stale_entries_from_other_vehicles_are_dropped():
    old = ArrivalEntry("OLD", "08:00", "08:01", updated_at=NOW_MS - 30 * 60_000)
    fresh = ArrivalEntry("NEW", "08:00", "08:04", updated_at=NOW_MS)
    merged = merge_arrivals([old], fresh, stale_before_ms=NOW_MS - 20 * 60_000)
    assert [a.vehicle_no for a in merged] == ["NEW"]
    assert [a.vehicle_no for a in merge_arrivals([old], fresh)] == ["OLD", "NEW"]


def test_stale_after_minutes_wires_through_calculator():
    stop = [TimetableEntry("S", "", "08:00")]
    calc, _, store, _ = make_calc(stop, now="07:00", stale_after_minutes=10)
    store.records[("R1", "S")] = StopArrivalRecord(
        "R1", "S", "S", [ArrivalEntry("GHOST", "08:00", "08:00", updated_at=NOW_MS - 11 * 60_000)], NOW_MS,
    )
    calc.update_arrivals_from_heartbeat(hb())
    assert [a.vehicle_no for a in store.records[("R1", "S")].arrivals] == ["V1"]


def test_keyed_locks_reuse_lock_per_key():
    locks = KeyedLocks()
    with locks.hold(("R1", "A")):
        pass
    with locks.hold(("R1", "A")):
        pass
    with locks.hold(("R1", "B")):
        pass
    assert len(locks) == 2
