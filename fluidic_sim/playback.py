from __future__ import annotations

from bisect import bisect_right
from typing import List, Sequence

from .models import DropletView, Snapshot


def _lerp(a: float, b: float, alpha: float) -> float:
    return a + alpha * (b - a)


def droplets_at_time(history: Sequence[Snapshot], t: float) -> List[DropletView]:
    """Droplet positions at time ``t``, interpolated between recorded snapshots.

    Times outside the recorded range clamp to the first/last snapshot. When
    several snapshots share a time the latest one wins, and no interpolation
    happens across a block boundary.
    """
    if not history:
        return []
    times = [s.time for s in history]
    idx = bisect_right(times, t) - 1
    if idx < 0:
        return list(history[0].droplets)
    if idx >= len(history) - 1:
        return list(history[-1].droplets)

    a, b = history[idx], history[idx + 1]
    span = b.time - a.time
    if span <= 0 or a.block_index != b.block_index:
        return list(a.droplets)
    alpha = (t - a.time) / span

    later = {d.droplet_id: d for d in b.droplets}
    out: List[DropletView] = []
    for d0 in a.droplets:
        d1 = later.get(d0.droplet_id, d0)
        out.append(
            DropletView(
                droplet_id=d0.droplet_id,
                front_position=_lerp(d0.front_position, d1.front_position, alpha),
                rear_position=_lerp(d0.rear_position, d1.rear_position, alpha),
                front_speed=d0.front_speed,
                rear_speed=d0.rear_speed,
                front_next=d0.front_next,
                rear_next=d0.rear_next,
                pause_level=d0.pause_level,
                stopping=d0.stopping,
            )
        )
    return out
