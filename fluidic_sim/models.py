from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from .exceptions import DropletSpecificationError, TopologyError

INF = float("inf")
RATIO_SLACK = 1e-9  # float noise allowed when ratios sum to exactly 1

# =========================
# Network
# =========================

class NodeKind(str, Enum):
    PUMP = "pump"
    CONNECTOR = "connector"
    OUTLET = "outlet"
    THERMOSTAT = "thermostat"
    LED = "led"
    DETECTOR = "detector"
    SPECTROMETER = "spectrometer"

    @staticmethod
    def parse(raw: str) -> "NodeKind":
        key = str(raw).strip().lower()
        if key == "usbspectrometer":
            key = "spectrometer"
        for kind in NodeKind:
            if kind.value == key:
                return kind
        raise TopologyError(f"Unknown node type '{raw}'.")

    @property
    def is_pump(self) -> bool:
        return self is NodeKind.PUMP

    @property
    def holds_dwell(self) -> bool:
        """Thermostats and LEDs hold the last droplet of a block for its dwell time."""
        return self in (NodeKind.THERMOSTAT, NodeKind.LED)


@dataclass
class Node:
    node_id: str
    kind: NodeKind
    properties: Dict[str, Any] = field(default_factory=dict)
    layout_xy: Optional[Tuple[float, float]] = None  # display only
    volumetric_position: float = 0.0  # uL from the outlet, <= 0 upstream


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    length_mm: float
    diameter_mm: float

    def touches(self, node_id: str) -> bool:
        return self.source == node_id or self.target == node_id

    def other(self, node_id: str) -> str:
        return self.target if self.source == node_id else self.source


# =========================
# Droplets
# =========================

@dataclass
class DropletParameter:
    name: str
    value: float
    node_id: Optional[str] = None  # set for per-device parameters (ratio, time)


@dataclass
class DropletSpec:
    """Requested droplet: an ordered bag of named parameters.

    Parameters may be keyed to a node (``ratio`` to a connector or pump,
    ``time`` to a thermostat). Lookups try the keyed value first and fall
    back to an unkeyed one.
    """
    droplet_id: str
    parameters: List[DropletParameter] = field(default_factory=list)

    def get(self, name: str, node_id: Optional[str] = None, default: Optional[float] = None) -> Optional[float]:
        if node_id is not None:
            for p in self.parameters:
                if p.name == name and p.node_id == node_id:
                    return p.value
        for p in self.parameters:
            if p.name == name and p.node_id is None:
                return p.value
        return default

    def set(self, name: str, value: float, node_id: Optional[str] = None) -> None:
        for p in self.parameters:
            if p.name == name and p.node_id == node_id:
                p.value = value
                return
        self.parameters.append(DropletParameter(name=name, value=value, node_id=node_id))

    def ratio_for(self, *node_ids: str) -> float:
        for nid in node_ids:
            for p in self.parameters:
                if p.name == "ratio" and p.node_id == nid:
                    return float(p.value)
        return 0.0

    def total_ratio(self, exclude: Tuple[str, ...] = ()) -> float:
        return sum(
            float(p.value) for p in self.parameters
            if p.name == "ratio" and p.node_id is not None and p.node_id not in exclude
        )

    @property
    def volume(self) -> float:
        v = self.get("volume")
        if v is None:
            raise DropletSpecificationError(f"Droplet {self.droplet_id} has no 'volume' parameter.")
        return float(v)

    @property
    def volumetric_speed(self) -> Optional[float]:
        v = self.get("volumetricSpeed")
        return None if v is None else float(v)

    @property
    def prefix_volume(self) -> float:
        return float(self.get("prefixVolume", default=0.0))

    @property
    def surfix_volume(self) -> float:
        return float(self.get("surfixVolume", default=0.0))

    @property
    def temperature(self) -> Optional[float]:
        return self.get("temperature")

    @property
    def time(self) -> Optional[float]:
        """Dwell time in seconds, whichever node it is keyed to."""
        for p in self.parameters:
            if p.name == "time":
                return p.value
        return None

    def dwell_time(self, node_id: str) -> float:
        keyed = self.get("time", node_id=node_id)
        if keyed is None:
            keyed = self.time
        return 0.0 if keyed is None else float(keyed)

    def validate(self, carrier_keys: Tuple[str, ...] = ()) -> None:
        quantities = [
            ("volume", self.volume),
            ("prefixVolume", self.prefix_volume),
            ("surfixVolume", self.surfix_volume),
        ]
        if self.volumetric_speed is not None:
            quantities.append(("volumetricSpeed", self.volumetric_speed))
        quantities.extend(("time", float(p.value)) for p in self.parameters if p.name == "time")
        for name, value in quantities:
            if not math.isfinite(value) or value < 0:
                raise DropletSpecificationError(
                    f"Droplet {self.droplet_id}: {name} must be a finite value >= 0, got {value}."
                )
        for p in self.parameters:
            if p.name == "ratio" and not (0.0 <= float(p.value) <= 1.0):
                raise DropletSpecificationError(
                    f"Droplet {self.droplet_id}: ratio for {p.node_id} must be in [0, 1], got {p.value}."
                )
        injected = self.total_ratio(exclude=carrier_keys)
        if injected > 1.0 + RATIO_SLACK:
            raise DropletSpecificationError(
                f"Droplet {self.droplet_id}: connector ratios add up to {injected:.6g}, more than the whole droplet."
            )


@dataclass
class Injection:
    """Active injection of a connector pump into one droplet."""
    droplet_index: int
    mode: Literal["stopping", "proportional"]
    factor: float = 0.0  # proportional: pump = factor * inlet
    pending: float = 0.0  # stopping: volume still to deliver


@dataclass
class DropletState:
    """Mutable per-run state of one droplet in the train."""
    droplet_id: str
    spec: DropletSpec
    front_position: float
    rear_position: float
    front_next: Optional[str]
    rear_next: Optional[str]
    front_speed: float = 0.0
    rear_speed: float = 0.0
    front_distance: float = 0.0
    rear_distance: float = 0.0
    front_time: float = INF
    rear_time: float = INF
    pause_level: int = 0
    stopping: bool = False  # rear held at a connector while it is built

    @property
    def volume(self) -> float:
        return self.front_position - self.rear_position

    @property
    def exited(self) -> bool:
        return self.rear_next is None


@dataclass
class OrderedNode:
    """Main-line node plus the per-run pump/flow state attached to it."""
    node: Node
    distance: int
    index: int  # 0 at the line head, increasing towards the outlet
    connected_pump: Optional[Node] = None
    connected_pump_speed: float = 0.0
    inlet_volumetric_speed: float = 0.0
    outlet_volumetric_speed: float = 0.0
    injection: Optional[Injection] = None

    @property
    def node_id(self) -> str:
        return self.node.node_id


# =========================
# Blocks
# =========================

@dataclass(frozen=True)
class ThermostatSpan:
    start_thermostat_id: str  # nearer the outlet
    end_thermostat_id: str
    volume: float


@dataclass
class Block:
    droplets: List[DropletSpec]
    thermostat_id: Optional[str] = None
    total_volume: float = 0.0
    temperature: Optional[float] = None
    time: Optional[float] = None


# =========================
# Events
# =========================

class EventType(str, Enum):
    SET_PUMP_SPEED = "setPumpSpeed"
    SET_THERMOSTAT_TEMPERATURE = "setThermostatTemperature"
    SET_LED_INTENSITY = "setLedIntensity"
    SET_DETECTOR_SETTING = "setDetectorSetting"
    WAIT = "wait"
    BLOCK_END = "blockEnd"


@dataclass(frozen=True)
class Event:
    type: EventType
    target: str
    time: float
    value: float

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "target": self.target, "time": self.time, "value": self.value}


# =========================
# Snapshot views
# =========================

@dataclass(frozen=True)
class DropletView:
    droplet_id: str
    front_position: float
    rear_position: float
    front_speed: float
    rear_speed: float
    front_next: Optional[str]
    rear_next: Optional[str]
    pause_level: int
    stopping: bool = False

    @property
    def volume(self) -> float:
        return self.front_position - self.rear_position


@dataclass(frozen=True)
class Snapshot:
    time: float
    block_index: int
    droplets: List[DropletView]


@dataclass
class SimulationResult:
    events: List[Event]
    device_events: Dict[str, List[Event]]
    history: List[Snapshot]
    blocks: List[Block]
    end_time: float = 0.0
    node_positions: Dict[str, float] = field(default_factory=dict)  # main line, head first
