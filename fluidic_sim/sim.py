from __future__ import annotations

from typing import Dict, List, Optional, Tuple
import copy
import logging
import math

from .blocks import divide_droplets_into_blocks, initialize_droplet_train
from .config import SimulationConfig
from .events import clean_and_sort_event_list
from .exceptions import (
    DropletSpecificationError,
    SimulationDivergenceError,
    SimulationError,
    SimulationStallError,
)
from .graph import FluidicGraph
from .models import (
    INF,
    Block,
    DropletSpec,
    DropletState,
    DropletView,
    Event,
    EventType,
    Injection,
    NodeKind,
    OrderedNode,
    SimulationResult,
    Snapshot,
)
from .topology import Topology, calculate_volumes_between_thermostats

logger = logging.getLogger(__name__)

# (droplet index, 0 = front / 1 = rear)
Boundary = Tuple[int, int]
FRONT = 0
REAR = 1


class TransportSimulator:
    """Event-driven plug-flow transport of a droplet train along the main line.

    Core rules implemented:
    - Positions are volumetric (uL to the outlet). A boundary moves at the
      flow entering the main-line node it is heading to; that flow is the
      sum of the commanded speeds of every pump attached upstream.
    - Each iteration finds the boundary that reaches its next node first,
      advances every boundary by that interval and resolves the arrival.
    - A zero-volume droplet reaching a connector with a non-zero ratio holds
      its rear there while the connector pump delivers ``volume * ratio``
      and everything upstream stops (stopping injection).
    - A droplet that already has volume is topped up on the fly with
      ``pump = factor * inlet`` until its rear passes (proportional
      injection).
    - When the rear of a block's last droplet passes the upstream-most
      thermostat/LED, all pumps pause for the droplet's dwell time.
    """

    def __init__(self, topology: Topology, config: SimulationConfig) -> None:
        self.topology = topology
        self.config = config
        self.tol = config.tolerance

        self.clock: float = 0.0
        self.events: List[Event] = []
        self.history: List[Snapshot] = []
        self.iterations: int = 0

        self.carrier_id = topology.carrier_pump.node_id
        self._dwell_node = topology.dwell_node()

        # per-block state
        self.block_index: int = 0
        self.droplets: List[DropletState] = []
        self.nodes: Dict[str, OrderedNode] = {}
        self.pump_speeds: Dict[str, float] = {}
        self.common_speed: float = 0.0

    # ---------------------------
    # Public API
    # ---------------------------

    def run(self, blocks: List[Block]) -> SimulationResult:
        for bi, block in enumerate(blocks):
            self._run_block(bi, block)
        logger.info(
            "simulated %d block(s) in %d iteration(s), %d event(s), end time %.3f s",
            len(blocks), self.iterations, len(self.events), self.clock,
        )
        return SimulationResult(
            events=list(self.events),
            device_events=clean_and_sort_event_list(self.events),
            history=list(self.history),
            blocks=blocks,
            end_time=self.clock,
            node_positions={n.node_id: n.volumetric_position for n in self.topology.main_line},
        )

    def snapshot(self) -> Snapshot:
        return Snapshot(
            time=self.clock,
            block_index=self.block_index,
            droplets=[
                DropletView(
                    droplet_id=d.droplet_id,
                    front_position=d.front_position,
                    rear_position=d.rear_position,
                    front_speed=d.front_speed,
                    rear_speed=d.rear_speed,
                    front_next=d.front_next,
                    rear_next=d.rear_next,
                    pause_level=d.pause_level,
                    stopping=d.stopping,
                )
                for d in self.droplets
            ],
        )

    # ---------------------------
    # Block lifecycle
    # ---------------------------

    def _run_block(self, block_index: int, block: Block) -> None:
        self.block_index = block_index
        self.common_speed = self._common_speed(block)
        self.nodes = self.topology.ordered_nodes()
        self.droplets = initialize_droplet_train(block, self.topology)

        logger.info(
            "block %d: %d droplet(s), common speed %.4g uL/s, start t=%.3f",
            block_index, len(self.droplets), self.common_speed, self.clock,
        )
        self._emit_block_start(block)
        self._recompute_flow(emit=False)
        self.history.append(self.snapshot())

        last = self.droplets[-1]
        while not last.exited:
            self.iterations += 1
            if self.iterations > self.config.max_iterations:
                raise SimulationDivergenceError(
                    f"Iteration budget {self.config.max_iterations} exhausted at t={self.clock:.6g} "
                    f"in block {block_index}."
                )
            self._compute_times()
            boundary, dt = self._next_boundary()
            self._advance(dt)
            dwell = self._resolve(boundary)
            self._recompute_flow()
            if dwell is not None:
                self._dwell(*dwell)
            self.history.append(self.snapshot())

        self._emit(EventType.SET_PUMP_SPEED, self.carrier_id, 0.0)
        for pid, speed in self.pump_speeds.items():
            if pid != self.carrier_id and speed > self.tol:
                self._emit(EventType.SET_PUMP_SPEED, pid, 0.0)
        self._emit(EventType.BLOCK_END, self.topology.outlet.node_id, float(block_index))

    def _common_speed(self, block: Block) -> float:
        first = block.droplets[0]
        speed = first.volumetric_speed
        if speed is None:
            raise DropletSpecificationError(f"Droplet {first.droplet_id} has no 'volumetricSpeed' parameter.")
        if not math.isfinite(speed) or speed <= 0:
            raise DropletSpecificationError(
                f"Droplet {first.droplet_id}: volumetricSpeed must be positive, got {speed}."
            )
        return speed

    def _emit_block_start(self, block: Block) -> None:
        self.pump_speeds = {}
        for pump in self.topology.pumps():
            speed = self.common_speed if pump.node_id == self.carrier_id else 0.0
            self.pump_speeds[pump.node_id] = speed
            self._emit(EventType.SET_PUMP_SPEED, pump.node_id, speed)
        if block.temperature is not None:
            for th in self.topology.nodes_of_kind(NodeKind.THERMOSTAT):
                self._emit(EventType.SET_THERMOSTAT_TEMPERATURE, th.node_id, float(block.temperature))
        first = block.droplets[0]
        for led in self.topology.nodes_of_kind(NodeKind.LED):
            intensity = first.get("intensity", node_id=led.node_id)
            if intensity is not None:
                self._emit(EventType.SET_LED_INTENSITY, led.node_id, float(intensity))

    def _emit(self, kind: EventType, target: str, value: float) -> None:
        self.events.append(Event(type=kind, target=target, time=self.clock, value=value))

    # ---------------------------
    # Flow field
    # ---------------------------

    def _recompute_flow(self, emit: bool = True) -> None:
        line = [self.nodes[n.node_id] for n in self.topology.main_line]
        stops = [on.index for on in line if on.injection is not None and on.injection.mode == "stopping"]
        active_stop = max(stops) if stops else None

        commanded: Dict[str, float] = {}
        carrier = self.common_speed if active_stop is None else 0.0
        commanded[self.carrier_id] = carrier
        staging = carrier

        flow = 0.0
        for on in line:
            on.inlet_volumetric_speed = staging if on.index == 0 else flow
            pump = on.connected_pump
            if pump is None:
                speed = 0.0
            elif pump.node_id == self.carrier_id:
                speed = carrier
            elif active_stop is not None and on.index < active_stop:
                speed = 0.0
            elif on.injection is None:
                speed = 0.0
            elif on.injection.mode == "stopping":
                speed = self.common_speed
            else:
                speed = on.injection.factor * on.inlet_volumetric_speed
            if not math.isfinite(speed) or speed < -self.tol:
                raise SimulationError(f"Pump at {on.node_id} commanded to an invalid speed {speed}.")
            if pump is not None:
                commanded[pump.node_id] = speed
                on.connected_pump_speed = speed
            if pump is not None and pump.node_id == self.carrier_id:
                on.outlet_volumetric_speed = carrier
            else:
                on.outlet_volumetric_speed = on.inlet_volumetric_speed + speed
            flow = on.outlet_volumetric_speed

        for i, d in enumerate(self.droplets):
            d.front_speed = self._boundary_speed(d.front_next)
            d.rear_speed = self._boundary_speed(d.rear_next)
            d.pause_level = sum(1 for idx in stops if self._injection_at(idx).droplet_index < i)
            for s in (d.front_speed, d.rear_speed):
                if not math.isfinite(s) or s < -self.tol:
                    raise SimulationError(f"Droplet {d.droplet_id} got invalid speed {s} at t={self.clock}.")

        for pid, speed in commanded.items():
            if abs(speed - self.pump_speeds.get(pid, 0.0)) > self.tol:
                self.pump_speeds[pid] = speed
                if emit:
                    self._emit(EventType.SET_PUMP_SPEED, pid, speed)

    def _injection_at(self, index: int) -> Injection:
        return self.nodes[self.topology.main_line[index].node_id].injection

    def _boundary_speed(self, next_id: Optional[str]) -> float:
        if next_id is None:
            return 0.0
        return self.nodes[next_id].inlet_volumetric_speed

    # ---------------------------
    # Time stepping
    # ---------------------------

    def _time_to(self, distance: float, speed: float) -> float:
        if distance <= self.tol:
            return 0.0
        if speed <= self.tol:
            return INF
        return distance / speed

    def _compute_times(self) -> None:
        for i, d in enumerate(self.droplets):
            if d.front_next is None:
                d.front_time = INF
            else:
                d.front_time = self._time_to(d.front_distance, d.front_speed)

            if d.rear_next is None:
                d.rear_time = INF
                continue
            held = self._held_injection(i, d.rear_next)
            if held is not None:
                pump_speed = self.nodes[d.rear_next].connected_pump_speed
                if held.pending <= self.tol:
                    d.rear_time = 0.0
                elif pump_speed <= self.tol:
                    d.rear_time = INF
                else:
                    d.rear_time = held.pending / pump_speed
            else:
                d.rear_time = self._time_to(d.rear_distance, d.rear_speed)

    def _held_injection(self, i: int, node_id: str) -> Optional[Injection]:
        """Stopping injection of droplet ``i`` pinning its rear at ``node_id``."""
        inj = self.nodes[node_id].injection
        if inj is not None and inj.mode == "stopping" and inj.droplet_index == i:
            return inj
        return None

    def _next_boundary(self) -> Tuple[Boundary, float]:
        # train order: downstream droplet first, front before rear
        candidates: List[Tuple[float, Boundary]] = []
        for i, d in enumerate(self.droplets):
            candidates.append((d.front_time, (i, FRONT)))
            candidates.append((d.rear_time, (i, REAR)))
        t_min = min(t for t, _ in candidates)
        if math.isinf(t_min):
            raise SimulationStallError(
                f"No droplet boundary can move at t={self.clock:.6g} (block {self.block_index})."
            )
        due = [b for t, b in candidates if t <= t_min + self.tol]
        if len(due) > 1:
            logger.debug("t=%.6g: %d boundaries due together, resolving %s first", self.clock + t_min, len(due), due[0])
        return due[0], t_min

    def _advance(self, dt: float) -> None:
        if dt > 0:
            for d in self.droplets:
                if d.front_next is not None:
                    d.front_position += d.front_speed * dt
                if d.rear_next is not None:
                    d.rear_position += d.rear_speed * dt
            for on in self.nodes.values():
                inj = on.injection
                if inj is not None and inj.mode == "stopping":
                    inj.pending = max(0.0, inj.pending - on.connected_pump_speed * dt)
            self.clock += dt
        for d in self.droplets:
            d.front_distance = self._distance(d.front_position, d.front_next)
            d.rear_distance = self._distance(d.rear_position, d.rear_next)

    def _distance(self, position: float, next_id: Optional[str]) -> float:
        if next_id is None:
            return 0.0
        return max(0.0, self.topology.position(next_id) - position)

    # ---------------------------
    # Arrivals
    # ---------------------------

    def _resolve(self, boundary: Boundary) -> Optional[Tuple[str, float]]:
        """Handle one arrival; returns (node_id, seconds) when a dwell is due."""
        i, side = boundary
        d = self.droplets[i]
        node_id = d.front_next if side == FRONT else d.rear_next
        on = self.nodes[node_id]
        kind = on.node.kind
        logger.debug(
            "t=%.6g %s %s reached %s (%s)",
            self.clock, d.droplet_id, "front" if side == FRONT else "rear", node_id, kind.value,
        )

        if side == FRONT:
            d.front_position = on.node.volumetric_position
            if kind is NodeKind.CONNECTOR:
                self._front_at_connector(i, on)
            d.front_next = self._downstream_id(node_id)
            d.front_distance = self._distance(d.front_position, d.front_next)
            return None

        d.rear_position = on.node.volumetric_position
        if on.injection is not None and on.injection.droplet_index == i:
            if on.injection.mode == "stopping":
                d.stopping = False
            logger.debug("%s injection at %s finished for %s", on.injection.mode, node_id, d.droplet_id)
            on.injection = None
        d.rear_next = self._downstream_id(node_id)
        d.rear_distance = self._distance(d.rear_position, d.rear_next)

        if (
            self._dwell_node is not None
            and node_id == self._dwell_node.node_id
            and i == len(self.droplets) - 1
        ):
            return node_id, d.spec.dwell_time(node_id)
        return None

    def _downstream_id(self, node_id: str) -> Optional[str]:
        nxt = self.topology.next_downstream(node_id)
        return None if nxt is None else nxt.node_id

    def _front_at_connector(self, i: int, on: OrderedNode) -> None:
        d = self.droplets[i]
        pump = on.connected_pump
        if pump is None or pump.node_id == self.carrier_id:
            return
        ratio = d.spec.ratio_for(on.node_id, pump.node_id)
        desired = d.spec.volume * ratio
        if desired <= self.tol:
            return
        if on.injection is not None:
            raise SimulationError(
                f"Connector {on.node_id} is already injecting droplet "
                f"{self.droplets[on.injection.droplet_index].droplet_id} when {d.droplet_id} arrives."
            )
        merged = d.rear_next == on.node_id and d.rear_distance <= self.tol
        if merged:
            on.injection = Injection(droplet_index=i, mode="stopping", pending=desired)
            d.stopping = True
            logger.debug("stopping injection of %.4g uL at %s for %s", desired, on.node_id, d.droplet_id)
            return
        to_pass = self._volume_to_pass(i, on.index)
        if to_pass <= self.tol:
            raise SimulationError(f"Droplet {d.droplet_id} has no volume left to pass {on.node_id}.")
        on.injection = Injection(droplet_index=i, mode="proportional", factor=desired / to_pass)
        logger.debug(
            "proportional injection at %s for %s: factor %.4g", on.node_id, d.droplet_id, desired / to_pass
        )

    def _volume_to_pass(self, i: int, index: int) -> float:
        """Volume of droplet ``i`` still to cross main-line node ``index``.

        Counts the part already upstream of the node plus whatever active
        injections further upstream will still add to this droplet.
        """
        d = self.droplets[i]
        node = self.topology.main_line[index]
        total = node.volumetric_position - d.rear_position
        rear_index = self.topology.index[d.rear_next] if d.rear_next is not None else index
        for k in range(rear_index, index):
            inj = self._injection_at(k)
            if inj is None or inj.droplet_index != i:
                continue
            if inj.mode == "stopping":
                total += inj.pending
            else:
                total += inj.factor * self._volume_to_pass(i, k)
        return total

    # ---------------------------
    # Dwell
    # ---------------------------

    def _dwell(self, node_id: str, seconds: float) -> None:
        if seconds <= 0:
            return
        running = {pid: s for pid, s in self.pump_speeds.items() if s > self.tol}
        logger.info("dwell %.3f s at %s from t=%.3f", seconds, node_id, self.clock)
        self._emit(EventType.WAIT, node_id, seconds)
        for pid in running:
            self._emit(EventType.SET_PUMP_SPEED, pid, 0.0)
        self.history.append(self.snapshot())
        self.clock += seconds
        for pid, speed in running.items():
            self._emit(EventType.SET_PUMP_SPEED, pid, speed)


def simulate(
    graph: FluidicGraph,
    droplets: List[DropletSpec],
    config: SimulationConfig,
) -> SimulationResult:
    """Run the whole pipeline on copies of the inputs.

    Builds the main line, splits the droplets into blocks and simulates
    every block on one shared clock.
    """
    config.validate()
    graph = copy.deepcopy(graph)
    droplets = copy.deepcopy(droplets)
    topology = Topology.from_graph(graph, carrier_pump_id=config.carrier_pump_id)
    spans = calculate_volumes_between_thermostats(topology)
    blocks = divide_droplets_into_blocks(droplets, spans, topology)
    return TransportSimulator(topology, config).run(blocks)
