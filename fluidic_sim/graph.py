from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
import math

from .exceptions import ConfigurationError, TopologyError
from .models import Edge, Node, NodeKind


def calculate_edge_volume(edge: Edge) -> float:
    """Tube volume in uL (mm^3): pi * (d/2)^2 * L."""
    if edge.diameter_mm < 0 or edge.length_mm < 0:
        raise ConfigurationError(
            f"Edge {edge.source}->{edge.target} has negative geometry: "
            f"length={edge.length_mm} diameter={edge.diameter_mm}"
        )
    radius = edge.diameter_mm / 2.0
    return math.pi * radius * radius * edge.length_mm


@dataclass
class FluidicGraph:
    nodes: Dict[str, Node]
    edges: List[Edge]
    adjacency: Dict[str, List[str]] = field(default_factory=dict, init=False)

    def __post_init__(self) -> None:
        self.adjacency = {nid: [] for nid in self.nodes}
        for e in self.edges:
            for end in (e.source, e.target):
                if end not in self.nodes:
                    raise TopologyError(f"Edge {e.source}->{e.target} references unknown node '{end}'.")
            if e.source == e.target:
                raise TopologyError(f"Edge {e.source}->{e.target} is a self-loop.")
            # undirected; keep insertion order so BFS is deterministic
            if e.target not in self.adjacency[e.source]:
                self.adjacency[e.source].append(e.target)
            if e.source not in self.adjacency[e.target]:
                self.adjacency[e.target].append(e.source)

    def get(self, node_id: str) -> Node:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise TopologyError(f"Unknown node '{node_id}'.") from None

    def neighbors(self, node_id: str) -> List[str]:
        return self.adjacency.get(node_id, [])

    def edge_between(self, a: str, b: str) -> Optional[Edge]:
        for e in self.edges:
            if e.touches(a) and e.other(a) == b:
                return e
        return None

    def nodes_of_kind(self, kind: NodeKind) -> List[Node]:
        return [n for n in self.nodes.values() if n.kind is kind]

    def iter_nodes(self) -> Iterable[Node]:
        return iter(self.nodes.values())

    @staticmethod
    def from_dicts(nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]]) -> "FluidicGraph":
        parsed: Dict[str, Node] = {}
        for raw in nodes:
            nid = str(raw["id"])
            if nid in parsed:
                raise TopologyError(f"Duplicate node id '{nid}'.")
            props = {str(k).replace(" ", "_"): v for k, v in (raw.get("properties") or {}).items()}
            xy = raw.get("pos")
            parsed[nid] = Node(
                node_id=nid,
                kind=NodeKind.parse(raw["type"]),
                properties=props,
                layout_xy=(float(xy[0]), float(xy[1])) if xy is not None else None,
            )
        parsed_edges = [
            Edge(
                source=str(e["source"]),
                target=str(e["target"]),
                length_mm=float(e.get("length_mm", 0.0)),
                diameter_mm=float(e.get("diameter_mm", 0.0)),
            )
            for e in edges
        ]
        return FluidicGraph(nodes=parsed, edges=parsed_edges)
