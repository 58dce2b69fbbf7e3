from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import matplotlib.pyplot as plt
from matplotlib.animation import FuncAnimation
from matplotlib.axes import Axes
from matplotlib.figure import Figure

from .events import extract_pump_events
from .models import EventType, SimulationResult
from .playback import droplets_at_time


def _axes(ax: Optional[Axes], figsize: Tuple[float, float]) -> Tuple[Figure, Axes]:
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
        return fig, ax
    return ax.figure, ax


def _draw_nodes(ax: Axes, node_positions: Dict[str, float], horizontal: bool) -> None:
    for nid, pos in node_positions.items():
        if horizontal:
            ax.axhline(pos, color="grey", linewidth=0.6, alpha=0.5)
            ax.annotate(nid, xy=(0, pos), xycoords=("axes fraction", "data"), fontsize=8, va="bottom")
        else:
            ax.axvline(pos, color="grey", linewidth=0.6, alpha=0.5)
            ax.text(pos, 0.95, nid, transform=ax.get_xaxis_transform(), ha="center", fontsize=8)


def plot_trajectories(result: SimulationResult, ax: Optional[Axes] = None) -> Figure:
    """Front and rear volumetric position of every droplet over time."""
    fig, ax = _axes(ax, (10, 5))
    series: Dict[str, Tuple[List[float], List[float], List[float]]] = {}
    for snap in result.history:
        for d in snap.droplets:
            ts, fronts, rears = series.setdefault(f"{snap.block_index}:{d.droplet_id}", ([], [], []))
            ts.append(snap.time)
            fronts.append(d.front_position)
            rears.append(d.rear_position)

    for label, (ts, fronts, rears) in series.items():
        (line,) = ax.plot(ts, fronts, linewidth=1.5, label=label)
        ax.plot(ts, rears, linewidth=1.0, linestyle="--", color=line.get_color())
        ax.fill_between(ts, rears, fronts, color=line.get_color(), alpha=0.15)

    _draw_nodes(ax, result.node_positions, horizontal=True)
    ax.set_xlabel("time [s]")
    ax.set_ylabel("volumetric position [uL]")
    ax.set_title("Droplet trajectories")
    if series:
        ax.legend(loc="lower right", fontsize=8)
    return fig


def plot_pump_speeds(result: SimulationResult, ax: Optional[Axes] = None) -> Figure:
    """Commanded pump speeds as step functions."""
    fig, ax = _axes(ax, (10, 3))
    per_pump: Dict[str, Tuple[List[float], List[float]]] = {}
    for ev in extract_pump_events(result.device_events):
        ts, vs = per_pump.setdefault(ev.target, ([], []))
        ts.append(ev.time)
        vs.append(ev.value)
    for pid, (ts, vs) in per_pump.items():
        # hold the last value until the end of the run
        ax.step(ts + [result.end_time], vs + [vs[-1]], where="post", label=pid)
    for ev in result.events:
        if ev.type is EventType.WAIT:
            ax.axvspan(ev.time, ev.time + ev.value, color="orange", alpha=0.2)
    ax.set_xlabel("time [s]")
    ax.set_ylabel("speed [uL/s]")
    ax.set_title("Pump commands")
    if per_pump:
        ax.legend(loc="upper right", fontsize=8)
    return fig


def run_playback(
    result: SimulationResult,
    frames: int = 300,
    interval_ms: int = 50,
    show: bool = True,
) -> FuncAnimation:
    """Animate droplets sliding along the main line.

    - frames: number of animation frames spread evenly over the run.
    - interval_ms: milliseconds per animation frame.
    """
    positions = result.node_positions
    lo = min(positions.values()) if positions else -1.0
    fig, ax = plt.subplots(figsize=(10, 2.5))
    ax.set_xlim(lo * 1.05 - 1.0, 1.0)
    ax.set_ylim(0, 1)
    ax.set_yticks([])
    ax.set_xlabel("volumetric position [uL] (outlet at 0)")
    _draw_nodes(ax, positions, horizontal=False)
    ax.plot([lo, 0.0], [0.5, 0.5], linewidth=8, alpha=0.25, color="grey")

    bars = ax.barh([], [], height=0.3)
    clock = ax.text(0.01, 0.05, "", transform=ax.transAxes, fontsize=9)
    t_end = result.end_time
    step = t_end / max(frames - 1, 1)

    def update(frame_idx: int):
        nonlocal bars
        t = frame_idx * step
        views = droplets_at_time(result.history, t)
        bars.remove()
        bars = ax.barh(
            [0.5] * len(views),
            [v.front_position - v.rear_position for v in views],
            left=[v.rear_position for v in views],
            height=0.3,
            color=["tab:red" if v.stopping else "tab:blue" for v in views],
        )
        clock.set_text(f"t = {t:.2f} s")
        return (*bars, clock)

    anim = FuncAnimation(fig, update, frames=frames, interval=interval_ms, blit=False, repeat=False)
    if show:
        plt.show()
    return anim
