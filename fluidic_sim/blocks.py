from __future__ import annotations

from typing import List, Optional, Tuple
import logging

from .exceptions import DropletSpecificationError
from .models import Block, DropletSpec, DropletState, ThermostatSpan
from .topology import Topology, volume_between_nodes

logger = logging.getLogger(__name__)


def carrier_keys(topology: Topology) -> Tuple[str, str]:
    """Node ids whose ratio counts towards the carrier-borne share."""
    pid = topology.carrier_pump.node_id
    return pid, topology.pump_connector[pid]


def divide_droplets_into_blocks(
    droplets: List[DropletSpec],
    spans: List[ThermostatSpan],
    topology: Topology,
) -> List[Block]:
    """Split the requested droplets into blocks that are simulated one after another.

    A new block starts when the droplet's temperature or dwell time differs
    from the block's, or when ``volume + prefixVolume`` would overflow the
    volume between the first pair of thermostats. The last droplet of every
    closed block gets its ``surfixVolume`` raised to at least the volume
    from the upstream thermostat to the line head, so the next block starts
    behind it. Droplets are mutated in place; pass copies.
    """
    if not droplets:
        raise DropletSpecificationError("Droplet train is empty.")
    keys = carrier_keys(topology)
    for d in droplets:
        d.validate(carrier_keys=keys)

    if spans:
        first = spans[0]
        thermostat_id: Optional[str] = first.end_thermostat_id
        volume_to_head = volume_between_nodes(topology, first.end_thermostat_id, topology.furthest.node_id)
        relevant = next(
            (s for s in spans if first.end_thermostat_id in (s.start_thermostat_id, s.end_thermostat_id)),
            None,
        )
    else:
        # zero or one thermostat: no span to fill, only parameter changes split
        dwell = topology.dwell_node()
        thermostat_id = None if dwell is None else dwell.node_id
        volume_to_head = 0.0
        relevant = None

    blocks: List[Block] = []
    current = Block(droplets=[], thermostat_id=thermostat_id)

    def finalize(temperature: Optional[float], time: Optional[float]) -> Block:
        if current.droplets:
            last = current.droplets[-1]
            last.set("surfixVolume", max(volume_to_head, last.surfix_volume))
            blocks.append(current)
        return Block(droplets=[], thermostat_id=thermostat_id, temperature=temperature, time=time)

    for d in droplets:
        incoming = d.volume + d.prefix_volume
        oversize = relevant is not None and incoming > relevant.volume
        overflow = relevant is not None and current.total_volume + incoming > relevant.volume
        if oversize:
            logger.warning(
                "droplet %s (%.3f uL) alone exceeds the %.3f uL between thermostats",
                d.droplet_id, incoming, relevant.volume,
            )
        if (
            not current.droplets
            or current.temperature != d.temperature
            or current.time != d.time
            or overflow
        ):
            current = finalize(d.temperature, d.time)
        current.droplets.append(d)
        current.total_volume += incoming + d.surfix_volume
        current.temperature = d.temperature
        current.time = d.time

    finalize(None, None)
    logger.info("%d droplet(s) divided into %d block(s)", len(droplets), len(blocks))
    return blocks


def initialize_droplet_train(block: Block, topology: Topology) -> List[DropletState]:
    """Seed droplet states upstream of the line head, oldest first.

    Each droplet carries only its carrier-borne share
    ``volume * (1 - sum of connector ratios)``; ratios keyed to the carrier
    pump or its connector count towards that share. The cursor still steps
    back by the full ``prefix + volume + surfix``.
    """
    head = topology.furthest
    cursor = head.volumetric_position
    train: List[DropletState] = []
    for spec in block.droplets:
        front = cursor - spec.prefix_volume
        share = spec.volume * max(0.0, 1.0 - spec.total_ratio(exclude=carrier_keys(topology)))
        rear = front - share
        cursor -= spec.prefix_volume + spec.volume + spec.surfix_volume
        train.append(
            DropletState(
                droplet_id=spec.droplet_id,
                spec=spec,
                front_position=front,
                rear_position=rear,
                front_next=head.node_id,
                rear_next=head.node_id,
                front_distance=head.volumetric_position - front,
                rear_distance=head.volumetric_position - rear,
            )
        )
    return train
