"""
Transport simulation scenario tests.

Every scenario uses unit cross-section tubes (see conftest), so edge
lengths are volumes and expected event times can be worked out by hand.
"""

import math

import pytest

from conftest import make_droplet, make_graph
from fluidic_sim.blocks import divide_droplets_into_blocks, initialize_droplet_train
from fluidic_sim.config import SimulationConfig
from fluidic_sim.exceptions import (
    DropletSpecificationError,
    SimulationDivergenceError,
    SimulationError,
    SimulationStallError,
    TopologyError,
)
from fluidic_sim.models import EventType, Injection
from fluidic_sim.sim import TransportSimulator, simulate
from fluidic_sim.topology import Topology


def _values(result, target):
    return [e.value for e in result.device_events.get(target, []) if e.type is EventType.SET_PUMP_SPEED]


def _times(result, target):
    return [e.time for e in result.device_events.get(target, []) if e.type is EventType.SET_PUMP_SPEED]


class TestSingleDroplet:
    """Validate the plain carrier-driven case."""

    def test_zero_length_line_start_and_stop(self, sim_config):
        g = make_graph([("C0", "Connector"), ("OUT", "Outlet")], [0.0], {"P0": "C0"})
        result = simulate(g, [make_droplet("D0", 10.0, speed=5.0)], sim_config)
        assert _values(result, "P0") == [5.0, 0.0]
        assert _times(result, "P0") == pytest.approx([0.0, 2.0])
        assert result.end_time == pytest.approx(2.0)

    def test_transit_time_includes_line_volume(self, sim_config, two_connector_graph):
        result = simulate(two_connector_graph, [make_droplet("D0", 10.0, speed=5.0)], sim_config)
        # 10 uL droplet + 40 uL line at 5 uL/s
        assert _times(result, "P0") == pytest.approx([0.0, 10.0])
        assert _values(result, "P1") == [0.0]

    def test_history_is_monotonic(self, sim_config, two_connector_graph):
        result = simulate(two_connector_graph, [make_droplet("D0", 10.0)], sim_config)
        times = [s.time for s in result.history]
        assert times == sorted(times)
        fronts = [s.droplets[0].front_position for s in result.history]
        assert fronts == sorted(fronts)
        for s in result.history:
            d = s.droplets[0]
            assert d.front_position >= d.rear_position - 1e-9

    def test_block_end_marker(self, sim_config, two_connector_graph):
        result = simulate(two_connector_graph, [make_droplet("D0", 1.0)], sim_config)
        markers = [e for e in result.device_events["OUT"] if e.type is EventType.BLOCK_END]
        assert len(markers) == 1
        assert markers[0].time == pytest.approx(result.end_time)

    def test_inputs_not_mutated(self, sim_config, thermostat_graph):
        droplets = [make_droplet("D0", 2.0)]
        simulate(thermostat_graph, droplets, sim_config)
        assert droplets[0].surfix_volume == 0.0
        assert thermostat_graph.nodes["TH1"].volumetric_position == 0.0


class TestStoppingInjection:
    """Zero-volume droplets built entirely at a connector."""

    def test_two_droplets_full_ratio(self, sim_config, two_connector_graph):
        droplets = [
            make_droplet("D0", 10.0, speed=5.0, ratios={"C1": 1.0}),
            make_droplet("D1", 20.0, speed=5.0, ratios={"C1": 1.0}),
        ]
        result = simulate(two_connector_graph, droplets, sim_config)

        assert _values(result, "P1") == [0.0, 5.0, 0.0, 5.0, 0.0]
        assert _times(result, "P1") == pytest.approx([0.0, 2.0, 4.0, 6.0, 10.0])
        assert _values(result, "P0") == [5.0, 0.0, 5.0, 0.0, 5.0, 0.0]
        assert _times(result, "P0") == pytest.approx([0.0, 2.0, 4.0, 6.0, 10.0, 16.0])
        assert max(e.value for e in result.events if e.type is EventType.SET_PUMP_SPEED) == 5.0

    def test_droplet_reaches_requested_volume(self, sim_config, two_connector_graph):
        droplets = [
            make_droplet("D0", 10.0, ratios={"C1": 1.0}),
            make_droplet("D1", 20.0, ratios={"C1": 1.0}),
        ]
        result = simulate(two_connector_graph, droplets, sim_config)
        for i, expected in enumerate([10.0, 20.0]):
            released = next(s for s in result.history if s.droplets[i].rear_next == "OUT")
            assert released.droplets[i].volume == pytest.approx(expected)

    def test_upstream_droplet_paused(self, sim_config, two_connector_graph):
        droplets = [
            make_droplet("D0", 10.0, ratios={"C1": 1.0}),
            make_droplet("D1", 20.0, ratios={"C1": 1.0}),
        ]
        result = simulate(two_connector_graph, droplets, sim_config)
        during = [s for s in result.history if 2.0 < s.time < 4.0 or s.time == pytest.approx(2.0)]
        paused = [s for s in during if s.droplets[0].rear_next == "C1" and s.droplets[0].front_next != "C1"]
        assert paused
        assert all(s.droplets[1].pause_level == 1 for s in paused)
        assert all(s.droplets[1].front_speed == 0.0 for s in paused)

    def test_snapshots_flag_held_droplet(self, sim_config, two_connector_graph):
        result = simulate(two_connector_graph, [make_droplet("D0", 10.0, ratios={"C1": 1.0})], sim_config)
        held = [s for s in result.history if s.droplets[0].stopping]
        assert held
        assert all(s.droplets[0].rear_next == "C1" for s in held)
        assert not result.history[-1].droplets[0].stopping

    def test_ratio_keyed_to_pump(self, sim_config, two_connector_graph):
        result = simulate(two_connector_graph, [make_droplet("D0", 10.0, ratios={"P1": 1.0})], sim_config)
        assert _values(result, "P1") == [0.0, 5.0, 0.0]


class TestProportionalInjection:
    """Droplets topped up while passing a connector."""

    def test_half_ratio(self, sim_config, two_connector_graph):
        result = simulate(two_connector_graph, [make_droplet("D0", 10.0, ratios={"C1": 0.5})], sim_config)
        assert _values(result, "P1") == pytest.approx([0.0, 5.0, 0.0])
        assert _times(result, "P1") == pytest.approx([0.0, 2.0, 3.0])
        # carrier never stops while a droplet is topped up
        assert _values(result, "P0") == [5.0, 0.0]
        assert result.end_time == pytest.approx(9.0)

    def test_final_volume(self, sim_config, two_connector_graph):
        result = simulate(two_connector_graph, [make_droplet("D0", 10.0, ratios={"C1": 0.5})], sim_config)
        released = next(s for s in result.history if s.droplets[0].rear_next == "OUT")
        assert released.droplets[0].volume == pytest.approx(10.0)


class TestDwell:
    """Thermostat hold at the end of a block."""

    def _graph(self):
        return make_graph(
            [("C0", "Connector"), ("TH0", "Thermostat"), ("OUT", "Outlet")],
            [10.0, 10.0],
            {"P0": "C0"},
        )

    def test_wait_pauses_pumps(self, sim_config):
        result = simulate(self._graph(), [make_droplet("D0", 5.0, time=(3.0, "TH0"))], sim_config)
        waits = [e for e in result.device_events["TH0"] if e.type is EventType.WAIT]
        assert len(waits) == 1
        assert waits[0].time == pytest.approx(3.0)
        assert waits[0].value == 3.0
        assert _values(result, "P0") == [5.0, 0.0, 5.0, 0.0]
        assert _times(result, "P0") == pytest.approx([0.0, 3.0, 6.0, 8.0])

    def test_zero_wait_is_noop(self, sim_config):
        result = simulate(self._graph(), [make_droplet("D0", 5.0, time=(0.0, "TH0"))], sim_config)
        assert not [e for e in result.events if e.type is EventType.WAIT]
        assert _values(result, "P0") == [5.0, 0.0]
        assert _times(result, "P0") == pytest.approx([0.0, 5.0])

    def test_temperature_command(self, sim_config):
        result = simulate(self._graph(), [make_droplet("D0", 5.0, temperature=65.0)], sim_config)
        temps = [e for e in result.device_events["TH0"] if e.type is EventType.SET_THERMOSTAT_TEMPERATURE]
        assert [(e.time, e.value) for e in temps] == [(0.0, 65.0)]


class TestBlocks:
    """Multiple blocks on one shared clock."""

    def test_all_blocks_simulated(self, sim_config, thermostat_graph):
        droplets = [make_droplet(f"D{i}", 8.0, prefix=1.0) for i in range(3)]
        result = simulate(thermostat_graph, droplets, sim_config)
        markers = [e for e in result.device_events["OUT"] if e.type is EventType.BLOCK_END]
        assert [m.value for m in markers] == [0.0, 1.0]
        assert markers[0].time < markers[1].time
        assert {s.block_index for s in result.history} == {0, 1}

    def test_carrier_runs_across_block_boundary(self, sim_config, thermostat_graph):
        droplets = [make_droplet(f"D{i}", 8.0, prefix=1.0) for i in range(3)]
        result = simulate(thermostat_graph, droplets, sim_config)
        # stop at the end of block 0 and restart of block 1 cancel out
        assert _values(result, "P0") == [5.0, 0.0]


class TestFailures:
    """Validate the error taxonomy surfaced by simulate."""

    def test_missing_speed(self, sim_config, two_connector_graph):
        d = make_droplet("D0", 1.0)
        d.parameters = [p for p in d.parameters if p.name != "volumetricSpeed"]
        with pytest.raises(DropletSpecificationError):
            simulate(two_connector_graph, [d], sim_config)

    def test_iteration_budget(self, two_connector_graph):
        cfg = SimulationConfig(carrier_pump_id="P0", max_iterations=2)
        with pytest.raises(SimulationDivergenceError):
            simulate(two_connector_graph, [make_droplet("D0", 1.0)], cfg)

    def test_bad_carrier(self, two_connector_graph):
        with pytest.raises(TopologyError):
            simulate(two_connector_graph, [make_droplet("D0", 1.0)], SimulationConfig(carrier_pump_id="P9"))

    def test_nan_prefix_rejected(self, sim_config, two_connector_graph):
        with pytest.raises(DropletSpecificationError):
            simulate(two_connector_graph, [make_droplet("D0", 1.0, prefix=math.nan)], sim_config)

    def test_nan_volume_rejected(self, sim_config, two_connector_graph):
        with pytest.raises(DropletSpecificationError):
            simulate(two_connector_graph, [make_droplet("D0", math.nan)], sim_config)

    def test_ratios_over_whole_droplet_rejected(self, sim_config):
        g = make_graph(
            [("C0", "Connector"), ("C1", "Connector"), ("C2", "Connector"), ("OUT", "Outlet")],
            [10.0, 10.0, 30.0],
            {"P0": "C0", "P1": "C1", "P2": "C2"},
        )
        with pytest.raises(DropletSpecificationError):
            simulate(g, [make_droplet("D0", 10.0, ratios={"C1": 0.7, "C2": 0.7})], sim_config)

    def test_stall_when_nothing_moves(self, two_connector_graph):
        # a common speed below the tolerance counts as stopped
        cfg = SimulationConfig(carrier_pump_id="P0", tolerance=1e-6)
        with pytest.raises(SimulationStallError):
            simulate(two_connector_graph, [make_droplet("D0", 1.0, speed=1e-7)], cfg)


def _prepared(graph, droplets, config):
    """Simulator with the first block seeded but not yet advanced."""
    topology = Topology.from_graph(graph, carrier_pump_id=config.carrier_pump_id)
    (block,) = divide_droplets_into_blocks(droplets, [], topology)
    sim = TransportSimulator(topology, config)
    sim.common_speed = 5.0
    sim.nodes = topology.ordered_nodes()
    sim.droplets = initialize_droplet_train(block, topology)
    sim.pump_speeds = {}
    return sim


class TestStateGuards:
    """Inconsistent run state is reported instead of simulated."""

    @pytest.mark.parametrize("factor", [-1.0, math.inf, math.nan])
    def test_invalid_pump_speed(self, sim_config, two_connector_graph, factor):
        sim = _prepared(two_connector_graph, [make_droplet("D0", 10.0)], sim_config)
        sim.nodes["C1"].injection = Injection(droplet_index=0, mode="proportional", factor=factor)
        with pytest.raises(SimulationError):
            sim._recompute_flow()

    def test_invalid_droplet_speed(self, sim_config, two_connector_graph):
        sim = _prepared(two_connector_graph, [make_droplet("D0", 10.0)], sim_config)
        # both pump speeds are finite, their sum downstream of C1 is not
        sim.common_speed = 1e308
        sim.nodes["C1"].injection = Injection(droplet_index=0, mode="proportional", factor=1.0)
        sim.droplets[0].front_next = "OUT"
        with pytest.raises(SimulationError, match="Droplet D0"):
            sim._recompute_flow()

    def test_connector_already_injecting(self, sim_config, two_connector_graph):
        droplets = [make_droplet("D0", 10.0, ratios={"C1": 0.5}), make_droplet("D1", 10.0, ratios={"C1": 0.5})]
        sim = _prepared(two_connector_graph, droplets, sim_config)
        c1 = sim.nodes["C1"]
        c1.injection = Injection(droplet_index=0, mode="proportional", factor=0.5)
        with pytest.raises(SimulationError):
            sim._front_at_connector(1, c1)
