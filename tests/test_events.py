"""
Event compaction and lookup tests.
"""

from fluidic_sim.events import (
    clean_and_sort_event_list,
    extract_pump_events,
    flatten_device_events,
    pump_speed_at_time,
)
from fluidic_sim.models import Event, EventType

PUMP = EventType.SET_PUMP_SPEED


def ev(target, time, value, kind=PUMP):
    return Event(type=kind, target=target, time=time, value=value)


class TestCleanAndSortEventList:
    """Validate per-device grouping and redundant setpoint removal."""

    def test_groups_in_first_appearance_order(self):
        out = clean_and_sort_event_list([ev("P1", 0, 1), ev("P0", 0, 2), ev("P1", 1, 0)])
        assert list(out) == ["P1", "P0"]

    def test_sorted_by_time(self):
        out = clean_and_sort_event_list([ev("P0", 3, 1), ev("P0", 1, 2), ev("P0", 2, 3)])
        assert [e.time for e in out["P0"]] == [1, 2, 3]

    def test_repeated_value_dropped(self):
        out = clean_and_sort_event_list([ev("P0", 0, 5), ev("P0", 1, 5), ev("P0", 2, 0)])
        assert [(e.time, e.value) for e in out["P0"]] == [(0, 5), (2, 0)]

    def test_same_time_bounce_dropped(self):
        events = [ev("P0", 0, 5), ev("P0", 2, 0), ev("P0", 2, 5), ev("P0", 4, 0)]
        out = clean_and_sort_event_list(events)
        assert [(e.time, e.value) for e in out["P0"]] == [(0, 5), (4, 0)]

    def test_same_time_change_kept(self):
        out = clean_and_sort_event_list([ev("P0", 0, 5), ev("P0", 2, 0), ev("P0", 2, 3)])
        assert [(e.time, e.value) for e in out["P0"]] == [(0, 5), (2, 0), (2, 3)]

    def test_idempotent(self):
        events = [
            ev("P0", 0, 5), ev("P1", 0, 0), ev("P0", 2, 0), ev("P1", 2, 5), ev("P0", 2, 5),
            ev("P0", 2, 0), ev("P1", 4, 5), ev("P1", 4, 0), ev("P0", 6, 0), ev("P0", 7, 5),
        ]
        once = clean_and_sort_event_list(events)
        twice = clean_and_sort_event_list(flatten_device_events(once))
        assert once == twice

    def test_no_adjacent_equal_values(self):
        events = [ev("P0", t, v) for t, v in [(0, 1), (1, 1), (1, 2), (1, 1), (2, 1), (3, 2), (3, 2)]]
        out = clean_and_sort_event_list(events)["P0"]
        assert all(a.value != b.value for a, b in zip(out, out[1:]))
        assert all(a.time <= b.time for a, b in zip(out, out[1:]))

    def test_markers_never_dropped(self):
        wait = EventType.WAIT
        events = [ev("TH0", 1, 10, wait), ev("TH0", 5, 10, wait), ev("TH0", 0, 60, EventType.SET_THERMOSTAT_TEMPERATURE)]
        out = clean_and_sort_event_list(events)["TH0"]
        assert [e.type for e in out] == [EventType.SET_THERMOSTAT_TEMPERATURE, wait, wait]

    def test_types_compacted_separately(self):
        events = [
            ev("TH0", 0, 60, EventType.SET_THERMOSTAT_TEMPERATURE),
            ev("TH0", 1, 60, EventType.WAIT),
            ev("TH0", 2, 60, EventType.SET_THERMOSTAT_TEMPERATURE),
        ]
        out = clean_and_sort_event_list(events)["TH0"]
        assert [(e.type, e.time) for e in out] == [
            (EventType.SET_THERMOSTAT_TEMPERATURE, 0),
            (EventType.WAIT, 1),
        ]


class TestPumpLookup:
    """Validate pump event extraction and speed lookup."""

    def test_extract_sorted_pump_events(self):
        grouped = clean_and_sort_event_list(
            [ev("P0", 0, 5), ev("TH0", 0, 60, EventType.SET_THERMOSTAT_TEMPERATURE), ev("P1", 1, 2), ev("P0", 3, 0)]
        )
        pumps = extract_pump_events(grouped)
        assert [(e.target, e.time) for e in pumps] == [("P0", 0), ("P1", 1), ("P0", 3)]

    def test_speed_at_time(self):
        events = [ev("P0", 0, 5), ev("P0", 2, 0), ev("P1", 1, 3)]
        assert pump_speed_at_time("P0", events, -1) == 0.0
        assert pump_speed_at_time("P0", events, 1.5) == 5
        assert pump_speed_at_time("P0", events, 2) == 0
        assert pump_speed_at_time("P1", events, 10) == 3
        assert pump_speed_at_time("P9", events, 10) == 0.0
