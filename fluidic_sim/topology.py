from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple
from collections import deque
import logging

from .exceptions import TopologyError
from .graph import FluidicGraph, calculate_edge_volume
from .models import Node, NodeKind, OrderedNode, ThermostatSpan

logger = logging.getLogger(__name__)


def find_outlet_node(graph: FluidicGraph) -> Node:
    outlets = graph.nodes_of_kind(NodeKind.OUTLET)
    if len(outlets) != 1:
        raise TopologyError(f"Network must contain exactly one outlet. Found {len(outlets)}")
    return outlets[0]


def order_nodes_by_distance(outlet: Node, graph: FluidicGraph) -> List[Tuple[Node, int]]:
    """Breadth-first hop count from the outlet over undirected edges.

    Unreachable nodes are left out. Nodes sharing a hop count keep their
    discovery order.
    """
    dist: Dict[str, int] = {outlet.node_id: 0}
    order: List[str] = [outlet.node_id]
    q = deque([outlet.node_id])
    while q:
        cur = q.popleft()
        for nb in graph.neighbors(cur):
            if nb not in dist:
                dist[nb] = dist[cur] + 1
                order.append(nb)
                q.append(nb)
    return [(graph.nodes[nid], dist[nid]) for nid in order]


def find_furthest_node(outlet: Node, graph: FluidicGraph) -> Node:
    """Most distant non-pump node from the outlet: the upstream injection origin."""
    best = outlet
    best_dist = 0
    for node, d in order_nodes_by_distance(outlet, graph):
        if node.kind.is_pump:
            continue
        if d > best_dist:
            best, best_dist = node, d
    return best


def find_connected_pump(connector_id: str, graph: FluidicGraph) -> Optional[Node]:
    pumps = [graph.nodes[nb] for nb in graph.neighbors(connector_id) if graph.nodes[nb].kind.is_pump]
    if len(pumps) > 1:
        raise TopologyError(
            f"Connector {connector_id} has {len(pumps)} pumps attached: {[p.node_id for p in pumps]}"
        )
    return pumps[0] if pumps else None


def _walk_main_line(outlet: Node, graph: FluidicGraph, main_ids: Set[str]) -> List[str]:
    """Walk the non-pump path from the outlet upstream; reject branches and cycles."""
    line = [outlet.node_id]
    seen = {outlet.node_id}
    prev: Optional[str] = None
    cur = outlet.node_id
    while True:
        nbs = [nb for nb in graph.neighbors(cur) if nb in main_ids and nb != prev]
        if not nbs:
            break
        if len(nbs) > 1:
            raise TopologyError(f"Main line branches at {cur}: {nbs}")
        nxt = nbs[0]
        if nxt in seen:
            raise TopologyError(f"Main line contains a cycle through {nxt}.")
        line.append(nxt)
        seen.add(nxt)
        prev, cur = cur, nxt
    if len(line) != len(main_ids):
        stray = sorted(main_ids - seen)
        raise TopologyError(f"Nodes not on the main line: {stray}")
    return line


@dataclass
class Topology:
    graph: FluidicGraph
    outlet: Node
    furthest: Node
    ordered: List[Tuple[Node, int]]
    main_line: List[Node]  # index 0 = line head, last = outlet
    index: Dict[str, int]
    connector_pump: Dict[str, Node]
    pump_connector: Dict[str, str]
    carrier_pump: Node

    @staticmethod
    def from_graph(graph: FluidicGraph, carrier_pump_id: str) -> "Topology":
        outlet = find_outlet_node(graph)
        ordered = order_nodes_by_distance(outlet, graph)
        if len(ordered) != len(graph.nodes):
            reached = {n.node_id for n, _ in ordered}
            missing = sorted(set(graph.nodes) - reached)
            raise TopologyError(f"Nodes not connected to the outlet: {missing}")

        main_ids = {n.node_id for n in graph.iter_nodes() if not n.kind.is_pump}
        line_ids = _walk_main_line(outlet, graph, main_ids)

        # Volumetric layout: outlet at 0, upstream nodes negative.
        pos = 0.0
        outlet.volumetric_position = 0.0
        for down, up in zip(line_ids, line_ids[1:]):
            edge = graph.edge_between(down, up)
            pos -= calculate_edge_volume(edge)
            graph.nodes[up].volumetric_position = pos

        main_line = [graph.nodes[nid] for nid in reversed(line_ids)]
        index = {n.node_id: i for i, n in enumerate(main_line)}

        connector_pump: Dict[str, Node] = {}
        pump_connector: Dict[str, str] = {}
        for pump in graph.nodes_of_kind(NodeKind.PUMP):
            attached = [nb for nb in graph.neighbors(pump.node_id) if nb in main_ids]
            if len(attached) != 1 or graph.nodes[attached[0]].kind is not NodeKind.CONNECTOR:
                raise TopologyError(f"Pump {pump.node_id} must attach to exactly one connector, got {attached}")
            cid = attached[0]
            if cid in connector_pump:
                raise TopologyError(
                    f"Connector {cid} has two pumps: {connector_pump[cid].node_id}, {pump.node_id}"
                )
            connector_pump[cid] = pump
            pump_connector[pump.node_id] = cid

        carrier = graph.nodes.get(carrier_pump_id)
        if carrier is None or not carrier.kind.is_pump:
            raise TopologyError(f"Carrier pump '{carrier_pump_id}' is not a pump in the network.")
        if pump_connector[carrier_pump_id] != main_line[0].node_id:
            raise TopologyError(
                f"Carrier pump {carrier_pump_id} feeds {pump_connector[carrier_pump_id]}, "
                f"but the line head is {main_line[0].node_id}."
            )

        furthest = find_furthest_node(outlet, graph)
        logger.debug(
            "main line %s (head volume %.3f uL)",
            " -> ".join(n.node_id for n in main_line),
            -main_line[0].volumetric_position,
        )
        return Topology(
            graph=graph,
            outlet=outlet,
            furthest=furthest,
            ordered=ordered,
            main_line=main_line,
            index=index,
            connector_pump=connector_pump,
            pump_connector=pump_connector,
            carrier_pump=carrier,
        )

    # ---------------------------
    # Lookups
    # ---------------------------

    @property
    def head(self) -> Node:
        return self.main_line[0]

    def position(self, node_id: str) -> float:
        return self.graph.get(node_id).volumetric_position

    def next_downstream(self, node_id: str) -> Optional[Node]:
        """Main-line neighbour one hop closer to the outlet (None at the outlet)."""
        idx = self.index.get(node_id)
        if idx is None:
            raise TopologyError(f"Node {node_id} is not on the main line.")
        if idx + 1 >= len(self.main_line):
            return None
        return self.main_line[idx + 1]

    def pumps(self) -> List[Node]:
        """Carrier first, then connector pumps from upstream to the outlet."""
        out = [self.carrier_pump]
        for n in self.main_line:
            p = self.connector_pump.get(n.node_id)
            if p is not None and p.node_id != self.carrier_pump.node_id:
                out.append(p)
        return out

    def nodes_of_kind(self, kind: NodeKind) -> List[Node]:
        return [n for n in self.main_line if n.kind is kind]

    def dwell_node(self) -> Optional[Node]:
        """Upstream-most thermostat or LED, where a block's dwell happens."""
        for n in self.main_line:
            if n.kind.holds_dwell:
                return n
        return None

    def ordered_nodes(self) -> Dict[str, OrderedNode]:
        """Fresh per-run state records for every main-line node."""
        dist = {n.node_id: d for n, d in self.ordered}
        return {
            n.node_id: OrderedNode(
                node=n,
                distance=dist[n.node_id],
                index=i,
                connected_pump=self.connector_pump.get(n.node_id),
            )
            for i, n in enumerate(self.main_line)
        }


def volume_between_nodes(topology: Topology, a: str, b: str) -> float:
    for nid in (a, b):
        if nid not in topology.index:
            raise TopologyError(f"Node {nid} is not on the main line.")
    return abs(topology.position(a) - topology.position(b))


def calculate_volumes_between_thermostats(topology: Topology) -> List[ThermostatSpan]:
    """Volume held between consecutive thermostats, walking upstream from the outlet."""
    spans: List[ThermostatSpan] = []
    last: Optional[str] = None
    acc = 0.0
    line = list(reversed(topology.main_line))
    for i, node in enumerate(line):
        if i > 0:
            acc += calculate_edge_volume(topology.graph.edge_between(line[i - 1].node_id, node.node_id))
        if node.kind is NodeKind.THERMOSTAT:
            if last is not None:
                spans.append(ThermostatSpan(start_thermostat_id=last, end_thermostat_id=node.node_id, volume=acc))
            last = node.node_id
            acc = 0.0
    return spans


def pumps_between_positions(topology: Topology, front: float, rear: float, tolerance: float = 1e-9) -> List[Node]:
    """Pumps whose connector lies inside [rear, front]."""
    out: List[Node] = []
    for n in topology.main_line:
        pump = topology.connector_pump.get(n.node_id)
        if pump is None:
            continue
        if rear - tolerance <= n.volumetric_position <= front + tolerance:
            out.append(pump)
    return out
