from __future__ import annotations

import argparse
import json
import logging

from fluidic_sim.config import Config
from fluidic_sim.events import extract_pump_events
from fluidic_sim.exceptions import FluidicSimError
from fluidic_sim.hardware import build_device_messages, recalculate_event_list_for_devices
from fluidic_sim.sim import simulate


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", type=str, default="example_config.yaml")
    ap.add_argument("--max-iterations", type=int, default=None)
    ap.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    ap.add_argument(
        "--viz",
        type=str,
        default="plot",
        choices=["plot", "playback"],
        help="plot: trajectory + pump charts, playback: animated droplets.",
    )
    ap.add_argument("--interval-ms", type=int, default=50)
    ap.add_argument("--frames", type=int, default=300)
    ap.add_argument(
        "--devices",
        action="store_true",
        help="Print device-level records and pump program messages as JSON.",
    )
    ap.add_argument("--no-viz", action="store_true")
    args = ap.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        cfg = Config.from_yaml(args.config)
        if args.max_iterations is not None:
            cfg.sim.max_iterations = args.max_iterations
        graph = cfg.build_graph()
        result = simulate(graph, cfg.build_droplets(), cfg.sim)
    except FluidicSimError as e:
        raise SystemExit(f"Simulation failed: {e}")

    print("=== EVENTS ===")
    for target, events in result.device_events.items():
        print(f"[{target}]")
        for ev in events:
            print(f"  t={ev.time:10.4f}s  {ev.type.value:<26} {ev.value:g}")
    print(f"end_time={result.end_time:.4f}s blocks={len(result.blocks)} snapshots={len(result.history)}")

    if args.devices:
        try:
            records = recalculate_event_list_for_devices(result.device_events, graph)
            messages = build_device_messages(extract_pump_events(result.device_events), graph)
        except FluidicSimError as e:
            raise SystemExit(f"Device conversion failed: {e}")
        print(json.dumps(records, indent=2))
        for msg in messages:
            print(json.dumps({"topic": msg.topic, "payload": msg.payload}))

    if args.no_viz:
        return

    # Import lazily so headless runs don't need a display backend.
    import matplotlib.pyplot as plt
    from fluidic_sim.viz import plot_pump_speeds, plot_trajectories, run_playback

    if args.viz == "playback":
        run_playback(result, frames=args.frames, interval_ms=args.interval_ms)
    else:
        plot_trajectories(result)
        plot_pump_speeds(result)
        plt.show()


if __name__ == "__main__":
    main()
