from __future__ import annotations

from typing import Dict, Iterable, List, Tuple

from .models import Event, EventType

# Events that set a device to a level; a repeat of the same level is redundant.
SETPOINT_TYPES = (
    EventType.SET_PUMP_SPEED,
    EventType.SET_THERMOSTAT_TEMPERATURE,
    EventType.SET_LED_INTENSITY,
    EventType.SET_DETECTOR_SETTING,
)


def _drop_repeats(events: List[Tuple[int, Event]]) -> List[Tuple[int, Event]]:
    out: List[Tuple[int, Event]] = []
    for item in events:
        if out and out[-1][1].value == item[1].value:
            continue
        out.append(item)
    return out


def _drop_same_time_bounces(events: List[Tuple[int, Event]]) -> List[Tuple[int, Event]]:
    """Drop an event overridden at the same instant by a return to the previous level."""
    out: List[Tuple[int, Event]] = []
    for i, item in enumerate(events):
        nxt = events[i + 1][1] if i + 1 < len(events) else None
        if nxt is not None and out and nxt.time == item[1].time and nxt.value == out[-1][1].value:
            continue
        out.append(item)
    return out


def _compact(events: List[Tuple[int, Event]]) -> List[Tuple[int, Event]]:
    while True:
        reduced = _drop_same_time_bounces(_drop_repeats(events))
        if len(reduced) == len(events):
            return reduced
        events = reduced


def clean_and_sort_event_list(events: Iterable[Event]) -> Dict[str, List[Event]]:
    """Group events per target device, sort them by time and drop redundant setpoints.

    Targets keep the order of their first appearance and events with equal
    times keep their emission order. For each setpoint stream (same target
    and type) two rules are applied until nothing changes:

    - an event repeating the value of the previous kept event is dropped;
    - an event is dropped when the next event has the same time and
      restores the value of the previous kept event.

    ``wait`` and ``blockEnd`` markers are never dropped.
    """
    groups: Dict[str, List[Tuple[int, Event]]] = {}
    for pos, ev in enumerate(events):
        groups.setdefault(ev.target, []).append((pos, ev))

    out: Dict[str, List[Event]] = {}
    for target, items in groups.items():
        items.sort(key=lambda x: (x[1].time, x[0]))
        kept: List[Tuple[int, Event]] = [it for it in items if it[1].type not in SETPOINT_TYPES]
        for kind in SETPOINT_TYPES:
            stream = [it for it in items if it[1].type is kind]
            if stream:
                kept.extend(_compact(stream))
        kept.sort(key=lambda x: (x[1].time, x[0]))
        out[target] = [ev for _, ev in kept]
    return out


def flatten_device_events(device_events: Dict[str, List[Event]]) -> List[Event]:
    flat = [ev for evs in device_events.values() for ev in evs]
    flat.sort(key=lambda e: e.time)
    return flat


def extract_pump_events(device_events: Dict[str, List[Event]]) -> List[Event]:
    return [ev for ev in flatten_device_events(device_events) if ev.type is EventType.SET_PUMP_SPEED]


def pump_speed_at_time(pump_id: str, pump_events: Iterable[Event], t: float) -> float:
    """Commanded speed of ``pump_id`` at time ``t`` (0 before its first event)."""
    speed = 0.0
    latest = float("-inf")
    for ev in pump_events:
        if ev.target != pump_id or ev.type is not EventType.SET_PUMP_SPEED:
            continue
        if latest <= ev.time <= t:
            speed = ev.value
            latest = ev.time
    return speed
