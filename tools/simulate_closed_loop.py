#!/usr/bin/env python3
"""
Closed-loop simulation of the MPC stack on a synthetic track.

Drives the kinematic bicycle model with the controller's commands, applying
each command one control period late to reproduce actuation latency, and
reports tracking and solve-time metrics. No simulator needed.

Usage:
    python tools/simulate_closed_loop.py
    python tools/simulate_closed_loop.py --steps 300 --amplitude 8 --config config/mpc_config.yaml
"""

import argparse
import json
import math
import sys
from pathlib import Path

import numpy as np

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from control.vehicle_model import KinematicBicycleModel
from data.formats.data_format import Telemetry
from mpc_stack import ControlSession, MPCStack


def generate_track(length: float = 600.0, spacing: float = 2.0,
                   amplitude: float = 6.0, wavelength: float = 150.0) -> np.ndarray:
    """Sinusoidal centerline, shape (N, 2). amplitude=0 gives a straight road."""
    xs = np.arange(0.0, length, spacing)
    ys = amplitude * np.sin(2.0 * np.pi * xs / wavelength)
    return np.column_stack([xs, ys])


def lookahead_waypoints(track: np.ndarray, x: float, y: float, count: int = 6):
    """Waypoints starting just behind the nearest track point."""
    d2 = (track[:, 0] - x) ** 2 + (track[:, 1] - y) ** 2
    nearest = int(np.argmin(d2))
    start = max(0, nearest - 1)
    window = track[start:start + count]
    return window[:, 0].tolist(), window[:, 1].tolist()


def lateral_error(track: np.ndarray, x: float, y: float) -> float:
    """Distance from (x, y) to the track polyline."""
    point = np.array([x, y], dtype=float)
    if len(track) < 2:
        return float(np.min(np.hypot(track[:, 0] - x, track[:, 1] - y)))
    starts = track[:-1]
    segments = track[1:] - starts
    lengths_sq = np.sum(segments ** 2, axis=1)
    along = np.einsum("ij,ij->i", point - starts, segments)
    # zero-length segments project onto their start point
    t = np.clip(np.divide(along, lengths_sq, out=np.zeros_like(along), where=lengths_sq > 0.0),
                0.0, 1.0)
    closest = starts + t[:, None] * segments
    return float(np.min(np.hypot(closest[:, 0] - x, closest[:, 1] - y)))


def run_closed_loop(stack: MPCStack, track: np.ndarray, steps: int,
                    initial_speed: float = 0.0, waypoint_count: int = 6) -> dict:
    """
    Run the controller against the bicycle model.

    Returns:
        Metrics dict plus per-step log lists.
    """
    cfg = stack.horizon_config
    period = max(cfg.latency, cfg.dt)
    model = KinematicBicycleModel(lf=cfg.lf, max_steering_angle=cfg.max_steer)
    session = ControlSession()

    x, y = float(track[0, 0]), float(track[0, 1])
    heading = math.atan2(track[1, 1] - track[0, 1], track[1, 0] - track[0, 0])
    speed = float(initial_speed)
    applied_steer, applied_throttle = 0.0, 0.0

    log = {"x": [], "y": [], "speed": [], "steer": [], "throttle": [],
           "lateral_error": [], "solve_time_s": [], "fallback": []}

    for _ in range(steps):
        ptsx, ptsy = lookahead_waypoints(track, x, y, waypoint_count)
        if len(ptsx) < 4:
            break
        reported_steer = applied_steer
        if stack.telemetry_config.steering_units == "normalized":
            reported_steer = applied_steer / cfg.max_steer
        telemetry = Telemetry(
            ptsx=tuple(ptsx), ptsy=tuple(ptsy), x=x, y=y, psi=heading,
            speed=speed / stack.telemetry_config.speed_scale,
            steering_angle=reported_steer, throttle=applied_throttle,
        )
        command = stack.process_telemetry(telemetry, session)

        # The previous command is still acting while this one is in flight.
        x, y, heading, speed = model.update_world(
            x, y, heading, speed, applied_steer, applied_throttle, period
        )
        applied_steer = command.steering_angle
        if stack.telemetry_config.normalize_steering:
            applied_steer = command.steering_angle * cfg.max_steer
        applied_throttle = command.throttle

        log["x"].append(x)
        log["y"].append(y)
        log["speed"].append(speed)
        log["steer"].append(applied_steer)
        log["throttle"].append(applied_throttle)
        log["lateral_error"].append(lateral_error(track, x, y))
        log["solve_time_s"].append(command.solve_time_s or 0.0)
        log["fallback"].append(command.fallback)

    errors = np.asarray(log["lateral_error"]) if log["lateral_error"] else np.zeros(1)
    solve_times = np.asarray(log["solve_time_s"]) if log["solve_time_s"] else np.zeros(1)
    return {
        "steps": len(log["x"]),
        "lateral_error_rmse": float(np.sqrt(np.mean(errors ** 2))),
        "lateral_error_max": float(np.max(errors)),
        "final_speed": float(speed),
        "fallbacks": int(sum(log["fallback"])),
        "solve_time_mean_ms": float(np.mean(solve_times) * 1000.0),
        "solve_time_max_ms": float(np.max(solve_times) * 1000.0),
        "log": log,
    }


def main():
    parser = argparse.ArgumentParser(description="Closed-loop MPC simulation on a synthetic track")
    parser.add_argument("--config", type=str, default=None, help="Path to config YAML")
    parser.add_argument("--steps", type=int, default=200, help="Control cycles to simulate")
    parser.add_argument("--amplitude", type=float, default=6.0, help="Track sine amplitude (m)")
    parser.add_argument("--wavelength", type=float, default=150.0, help="Track sine wavelength (m)")
    parser.add_argument("--initial-speed", type=float, default=0.0, help="Starting speed")
    parser.add_argument("--output", type=str, default=None, help="Write full log as JSON")
    args = parser.parse_args()

    stack = MPCStack(config_path=args.config)
    track = generate_track(amplitude=args.amplitude, wavelength=args.wavelength)
    metrics = run_closed_loop(stack, track, args.steps, initial_speed=args.initial_speed)

    print("=" * 60)
    print("Closed-loop MPC simulation")
    print("=" * 60)
    for key in ("steps", "lateral_error_rmse", "lateral_error_max", "final_speed",
                "fallbacks", "solve_time_mean_ms", "solve_time_max_ms"):
        value = metrics[key]
        print(f"  {key:22s} {value:.3f}" if isinstance(value, float) else f"  {key:22s} {value}")

    if args.output:
        out_path = Path(args.output)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        with open(out_path, "w") as f:
            json.dump(metrics, f, indent=2)
        print(f"Log written to {out_path}")


if __name__ == "__main__":
    main()
