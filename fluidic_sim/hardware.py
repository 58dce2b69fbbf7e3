"""Conversion of simulated events into stepper-pump and device units.

Volumetric speeds (uL/s) become step delays in microseconds using the
syringe geometry stored in the pump node's properties::

    linear_speed     = |speed| / (pi * (diameter / 2)^2)     mm/s
    steps_per_second = linear_speed * steps_per_revolution / lead
    delay_us         = round(1e6 / steps_per_second)          0 = stopped

Nothing here talks to hardware; payloads are built for a transport layer.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging
import math

from .exceptions import ConfigurationError
from .graph import FluidicGraph
from .models import Event, EventType, Node, NodeKind

logger = logging.getLogger(__name__)

PROGRAM_CHUNK_ROWS = 5


@dataclass(frozen=True)
class PumpGeometry:
    diameter: float  # syringe inner diameter, mm
    steps_per_revolution: float
    lead: float  # mm per revolution

    @property
    def syringe_area(self) -> float:
        return math.pi * (self.diameter / 2.0) ** 2

    @property
    def steps_per_mm(self) -> float:
        return self.steps_per_revolution / self.lead

    @staticmethod
    def from_properties(props: Dict[str, Any], node_id: str = "?") -> "PumpGeometry":
        try:
            geo = PumpGeometry(
                diameter=float(props.get("diameter", 0.0)),
                steps_per_revolution=float(props.get("steps_per_revolution", 0.0)),
                lead=float(props.get("lead", 0.0)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Pump {node_id} has non-numeric geometry: {e}") from e
        for name in ("diameter", "steps_per_revolution", "lead"):
            if getattr(geo, name) <= 0:
                raise ConfigurationError(f"Pump {node_id}: '{name}' must be positive, got {getattr(geo, name)}")
        return geo


@dataclass(frozen=True)
class HardwareValues:
    delay_microseconds: int
    end_time: int  # microseconds, 0 when no volume was given
    direction: int
    steps_per_second: float
    linear_speed: float
    syringe_area: float


def convert_to_hardware_values(speed: float, geometry: PumpGeometry, volume: float = 0.0) -> HardwareValues:
    linear = abs(speed) / geometry.syringe_area
    sps = linear * geometry.steps_per_mm
    delay = round(1_000_000 / sps) if sps > 0 else 0
    end_time = round(abs(volume / speed) * 1_000_000) if speed != 0 else 0
    return HardwareValues(
        delay_microseconds=delay,
        end_time=end_time,
        direction=1 if speed >= 0 else -1,
        steps_per_second=sps,
        linear_speed=linear,
        syringe_area=geometry.syringe_area,
    )


def speed_from_delay(delay_microseconds: int, geometry: PumpGeometry) -> float:
    """Inverse of the delay conversion (volumetric uL/s, 0 for a stopped pump)."""
    if delay_microseconds <= 0:
        return 0.0
    sps = 1_000_000 / delay_microseconds
    return sps / geometry.steps_per_mm * geometry.syringe_area


def create_pump_command(volume: float, speed: float, geometry: PumpGeometry) -> List[List[int]]:
    """Two-row move program: run at the step delay, then stop after the duration."""
    if speed == 0:
        raise ConfigurationError("Cannot build a move program at zero speed.")
    hw = convert_to_hardware_values(speed, geometry, volume=volume)
    return [[hw.delay_microseconds, 0], [0, hw.end_time]]


@dataclass(frozen=True)
class DetectorReading:
    raw_value: float
    calibrated_value: float
    unit: str
    timestamp: Optional[float] = None


def convert_detector_reading(value: float, props: Dict[str, Any], timestamp: Optional[float] = None) -> DetectorReading:
    sensitivity = float(props.get("sensitivity", 1.0))
    offset = float(props.get("offset", 0.0))
    return DetectorReading(
        raw_value=value,
        calibrated_value=value * sensitivity + offset,
        unit=str(props.get("unit", "au")),
        timestamp=timestamp,
    )


def _time_us(t: float) -> int:
    return round(t * 1_000_000)


def convert_event_for_device(event: Event, node: Node) -> Optional[Dict[str, Any]]:
    """Device-level record for one event, or None when the device takes no command."""
    base = {"target": event.target, "time_us": _time_us(event.time)}
    if event.type is EventType.SET_PUMP_SPEED:
        geo = PumpGeometry.from_properties(node.properties, node.node_id)
        return {**base, "delay": convert_to_hardware_values(event.value, geo).delay_microseconds}
    if event.type is EventType.SET_THERMOSTAT_TEMPERATURE:
        return {**base, "temperature": event.value}
    if event.type is EventType.SET_LED_INTENSITY:
        return {**base, "intensity": event.value}
    if event.type is EventType.WAIT:
        return {**base, "wait_us": _time_us(event.value)}
    if event.type is EventType.BLOCK_END:
        return None
    if event.type is EventType.SET_DETECTOR_SETTING and node.kind in (NodeKind.DETECTOR, NodeKind.SPECTROMETER):
        reading = convert_detector_reading(event.value, node.properties, timestamp=event.time)
        return {**base, "setting": reading.calibrated_value, "raw_value": reading.raw_value, "unit": reading.unit}
    logger.warning("skipping %s event for %s: no device conversion", event.type, event.target)
    return None


def recalculate_event_list_for_devices(
    device_events: Dict[str, List[Event]],
    graph: FluidicGraph,
) -> Dict[str, List[Dict[str, Any]]]:
    out: Dict[str, List[Dict[str, Any]]] = {}
    for target, events in device_events.items():
        node = graph.get(target)
        rows = [r for r in (convert_event_for_device(ev, node) for ev in events) if r is not None]
        if rows:
            out[target] = rows
    return out


@dataclass(frozen=True)
class DeviceMessage:
    topic: str
    payload: Any


def device_name(node: Node) -> str:
    return str(node.properties.get("device_name") or node.node_id)


def build_device_messages(pump_events: List[Event], graph: FluidicGraph) -> List[DeviceMessage]:
    """Program upload and start messages for every pump device.

    Rows are ``[delay_us, time_since_previous_row_us]`` (the first row keeps
    its absolute time), sent in chunks of five. The first device is started
    as master, the rest as slaves.
    """
    programs: Dict[str, List[List[int]]] = {}
    for ev in sorted(pump_events, key=lambda e: e.time):
        if ev.type is not EventType.SET_PUMP_SPEED:
            continue
        node = graph.get(ev.target)
        geo = PumpGeometry.from_properties(node.properties, node.node_id)
        delay = convert_to_hardware_values(ev.value, geo).delay_microseconds
        programs.setdefault(device_name(node), []).append([delay, _time_us(ev.time)])

    messages: List[DeviceMessage] = []
    for device_index, (name, rows) in enumerate(programs.items()):
        for i in range(len(rows) - 1, 0, -1):
            rows[i][1] -= rows[i - 1][1]
        chunks = [rows[i:i + PROGRAM_CHUNK_ROWS] for i in range(0, len(rows), PROGRAM_CHUNK_ROWS)]
        for ci, chunk in enumerate(chunks):
            topic = "new_program" if ci == 0 else "continue_program"
            messages.append(DeviceMessage(topic=f"{name}/{topic}", payload=chunk))
        role = "run_master" if device_index == 0 else "run_slave"
        messages.append(DeviceMessage(topic=f"{name}/{role}", payload="run"))
    return messages
