"""
Pytest configuration for the fluidic simulator tests.

Puts the project root on sys.path and provides small network/droplet
builders. Edges are built with a diameter whose cross-section is exactly
1 mm^2, so an edge's length in mm equals its volume in uL.
"""

import math
import os
import sys

import pytest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from fluidic_sim.config import SimulationConfig  # noqa: E402
from fluidic_sim.graph import FluidicGraph  # noqa: E402
from fluidic_sim.models import DropletParameter, DropletSpec  # noqa: E402

UNIT_DIAMETER = 2.0 / math.sqrt(math.pi)

PUMP_PROPERTIES = {"diameter": 4.6, "steps_per_revolution": 3200, "lead": 0.8}


def make_graph(main, volumes, pumps, pump_properties=None):
    """main: [(id, type), ...] from the line head to the outlet;
    volumes: edge volumes between consecutive main-line nodes;
    pumps: {pump_id: connector_id}."""
    nodes = [{"id": nid, "type": kind} for nid, kind in main]
    for pid in pumps:
        props = dict(PUMP_PROPERTIES)
        props.update((pump_properties or {}).get(pid, {}))
        nodes.append({"id": pid, "type": "Pump", "properties": props})
    edges = [
        {"source": a[0], "target": b[0], "length_mm": v, "diameter_mm": UNIT_DIAMETER}
        for a, b, v in zip(main, main[1:], volumes)
    ]
    for pid, cid in pumps.items():
        edges.append({"source": pid, "target": cid, "length_mm": 10.0, "diameter_mm": 0.5})
    return FluidicGraph.from_dicts(nodes, edges)


def make_droplet(droplet_id, volume, speed=5.0, prefix=0.0, surfix=0.0, ratios=None, **extra):
    params = [
        DropletParameter("volume", volume),
        DropletParameter("volumetricSpeed", speed),
        DropletParameter("prefixVolume", prefix),
        DropletParameter("surfixVolume", surfix),
    ]
    for node_id, ratio in (ratios or {}).items():
        params.append(DropletParameter("ratio", ratio, node_id))
    for name, value in extra.items():
        if isinstance(value, tuple):
            params.append(DropletParameter(name, value[0], value[1]))
        else:
            params.append(DropletParameter(name, value))
    return DropletSpec(droplet_id=droplet_id, parameters=params)


@pytest.fixture
def sim_config():
    return SimulationConfig(carrier_pump_id="P0", max_iterations=10_000, tolerance=1e-9)


@pytest.fixture
def two_connector_graph():
    """C0 --10-- C1 --30-- OUT, carrier P0 on C0, P1 on C1."""
    return make_graph(
        [("C0", "Connector"), ("C1", "Connector"), ("OUT", "Outlet")],
        [10.0, 30.0],
        {"P0": "C0", "P1": "C1"},
    )


@pytest.fixture
def thermostat_graph():
    """C0 --5-- TH1 --20-- TH0 --5-- OUT, carrier P0 on C0."""
    return make_graph(
        [("C0", "Connector"), ("TH1", "Thermostat"), ("TH0", "Thermostat"), ("OUT", "Outlet")],
        [5.0, 20.0, 5.0],
        {"P0": "C0"},
    )
