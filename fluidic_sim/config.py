from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import yaml

from .exceptions import ConfigurationError
from .graph import FluidicGraph
from .models import DropletParameter, DropletSpec


@dataclass
class SimulationConfig:
    carrier_pump_id: str
    max_iterations: int = 100_000
    tolerance: float = 1e-9

    def validate(self) -> None:
        if self.max_iterations <= 0:
            raise ConfigurationError(f"max_iterations must be positive, got {self.max_iterations}")
        if self.tolerance <= 0:
            raise ConfigurationError(f"tolerance must be positive, got {self.tolerance}")


@dataclass
class NodeConfig:
    node_id: str
    kind: str
    properties: Dict[str, Any] = field(default_factory=dict)
    pos: Optional[List[float]] = None


@dataclass
class EdgeConfig:
    source: str
    target: str
    length_mm: float
    diameter_mm: float


@dataclass
class DropletConfig:
    droplet_id: str
    parameters: List[DropletParameter]


@dataclass
class Config:
    nodes: List[NodeConfig]
    edges: List[EdgeConfig]
    droplets: List[DropletConfig]
    sim: SimulationConfig

    def build_graph(self) -> FluidicGraph:
        return FluidicGraph.from_dicts(
            [{"id": n.node_id, "type": n.kind, "properties": n.properties, "pos": n.pos} for n in self.nodes],
            [
                {"source": e.source, "target": e.target, "length_mm": e.length_mm, "diameter_mm": e.diameter_mm}
                for e in self.edges
            ],
        )

    def build_droplets(self) -> List[DropletSpec]:
        return [
            DropletSpec(
                droplet_id=d.droplet_id,
                parameters=[DropletParameter(p.name, p.value, p.node_id) for p in d.parameters],
            )
            for d in self.droplets
        ]

    @staticmethod
    def from_yaml(path: str) -> "Config":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigurationError(f"Cannot read scenario {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Scenario {path} is not valid YAML: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Scenario {path} must be a mapping at the top level.")
        return Config.from_dict(data)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Config":
        try:
            nodes: List[NodeConfig] = []
            for n in data.get("nodes", []):
                nodes.append(
                    NodeConfig(
                        node_id=str(n["id"]),
                        kind=str(n["type"]),
                        properties=dict(n.get("properties") or {}),
                        pos=list(n["pos"]) if n.get("pos") is not None else None,
                    )
                )

            edges: List[EdgeConfig] = []
            for e in data.get("edges", []):
                edges.append(
                    EdgeConfig(
                        source=str(e["source"]),
                        target=str(e["target"]),
                        length_mm=float(e.get("length_mm", 0.0)),
                        diameter_mm=float(e.get("diameter_mm", 0.0)),
                    )
                )

            droplets: List[DropletConfig] = []
            for i, d in enumerate(data.get("droplets", [])):
                params = [
                    DropletParameter(
                        name=str(p["name"]),
                        value=float(p["value"]),
                        node_id=str(p["node_id"]) if p.get("node_id") is not None else None,
                    )
                    for p in d.get("parameters", [])
                ]
                droplets.append(DropletConfig(droplet_id=str(d.get("id", f"D{i:02d}")), parameters=params))

            sim_data = data.get("simulation", {}) or {}
            carrier = data.get("carrier_pump", sim_data.get("carrier_pump"))
            if carrier is None:
                raise ConfigurationError("Scenario is missing 'carrier_pump'.")
            sim = SimulationConfig(
                carrier_pump_id=str(carrier),
                max_iterations=int(sim_data.get("max_iterations", 100_000)),
                tolerance=float(sim_data.get("tolerance", 1e-9)),
            )
        except KeyError as e:
            raise ConfigurationError(f"Scenario entry is missing required key {e}") from e
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Scenario has an invalid value: {e}") from e

        sim.validate()
        return Config(nodes=nodes, edges=edges, droplets=droplets, sim=sim)
