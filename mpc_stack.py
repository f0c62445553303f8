"""
Main MPC stack integration script.
Connects the pipeline: telemetry -> vehicle frame -> reference fit ->
latency compensation -> horizon solve -> command.
"""

import sys
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import numpy as np
import yaml

# Add paths
sys.path.insert(0, str(Path(__file__).parent))

from control.errors import DegenerateFit, InvalidInput, MPCError, SolverError
from control.mpc_controller import HorizonConfig, MPCController, build_horizon_config
from control.vehicle_model import compensate_latency, initial_state
from data.formats.data_format import Actuation, ControlCommand, Telemetry, VehicleState
from trajectory.polyfit import REFERENCE_DEGREE, fit_polynomial
from trajectory.utils import to_vehicle_frame

# Configure logging
# Ensure tmp/logs directory exists
log_dir = Path(__file__).parent / 'tmp' / 'logs'
log_dir.mkdir(parents=True, exist_ok=True)
log_file = log_dir / 'mpc_stack.log'

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(str(log_file))
    ]
)
logger = logging.getLogger(__name__)


@dataclass
class TelemetryConfig:
    """How telemetry fields are interpreted and commands are scaled."""
    steering_units: str = "radians"  # "radians" or "normalized"
    normalize_steering: bool = True  # send steering / max_steer
    speed_scale: float = 1.0  # multiplier applied to reported speed
    fit_rcond: float = 1e-10


@dataclass
class SafetyConfig:
    """Fallback policy for cycles that cannot produce a solved command."""
    fallback_mode: str = "hold"  # "hold" or "brake"
    max_hold_cycles: int = 1
    brake_throttle: float = -0.2


@dataclass
class BridgeConfig:
    """Telemetry channel settings."""
    host: str = "0.0.0.0"
    port: int = 4567
    pacing_delay_s: float = 0.1


@dataclass
class ControlSession:
    """Per-connection bookkeeping owned by the caller, never by the optimizer."""
    last_command: Optional[Actuation] = None  # radians / throttle
    warm_start: Optional[np.ndarray] = None  # shifted (N, 2) plan
    consecutive_failures: int = 0
    cycles: int = 0
    fallbacks: int = 0


def load_config(config_path: Optional[str] = None) -> dict:
    """Load configuration from YAML file or use defaults."""
    if config_path is None:
        config_path = Path(__file__).parent / "config" / "mpc_config.yaml"
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {config_path}")
        return config
    else:
        logger.warning(f"Config file not found at {config_path}, using defaults")
        return {}


def build_telemetry_config(telemetry_cfg: dict) -> TelemetryConfig:
    units = str(telemetry_cfg.get("steering_units", "radians")).strip().lower()
    if units not in {"radians", "normalized"}:
        logger.warning(f"Unknown steering_units '{units}', using radians")
        units = "radians"
    return TelemetryConfig(
        steering_units=units,
        normalize_steering=bool(telemetry_cfg.get("normalize_steering", True)),
        speed_scale=float(telemetry_cfg.get("speed_scale", 1.0)),
        fit_rcond=float(telemetry_cfg.get("fit_rcond", 1e-10)),
    )


def build_safety_config(safety_cfg: dict) -> SafetyConfig:
    mode = str(safety_cfg.get("fallback_mode", "hold")).strip().lower()
    if mode not in {"hold", "brake"}:
        logger.warning(f"Unknown fallback_mode '{mode}', using hold")
        mode = "hold"
    return SafetyConfig(
        fallback_mode=mode,
        max_hold_cycles=max(0, int(safety_cfg.get("max_hold_cycles", 1))),
        brake_throttle=float(safety_cfg.get("brake_throttle", -0.2)),
    )


def build_bridge_config(bridge_cfg: dict) -> BridgeConfig:
    return BridgeConfig(
        host=str(bridge_cfg.get("host", "0.0.0.0")),
        port=int(bridge_cfg.get("port", 4567)),
        pacing_delay_s=max(0.0, float(bridge_cfg.get("pacing_delay_s", 0.1))),
    )


class MPCStack:
    """Per-cycle control pipeline with fallback handling."""

    def __init__(self, config_path: Optional[str] = None, config: Optional[dict] = None,
                 controller: Optional[MPCController] = None):
        """
        Initialize MPC stack.

        Args:
            config_path: Path to YAML config (default config/mpc_config.yaml)
            config: Already-loaded config dict (takes precedence over config_path)
            controller: Pre-built controller (tests); built from config if omitted
        """
        self.config = config if config is not None else load_config(config_path)
        control_cfg = self.config.get('control', {}) or {}
        mpc_cfg = control_cfg.get('mpc', {}) or {}

        self.horizon_config: HorizonConfig = (
            controller.config if controller is not None else build_horizon_config(mpc_cfg)
        )
        self.telemetry_config = build_telemetry_config(self.config.get('telemetry', {}) or {})
        self.safety_config = build_safety_config(self.config.get('safety', {}) or {})
        self.bridge_config = build_bridge_config(self.config.get('bridge', {}) or {})
        self.warm_start_enabled = bool(mpc_cfg.get('warm_start', True))
        self.controller = controller or MPCController(self.horizon_config)

        logger.info(
            f"MPC stack ready: N={self.horizon_config.horizon} dt={self.horizon_config.dt} "
            f"v_ref={self.horizon_config.reference_speed} solver={self.horizon_config.solver} "
            f"fallback={self.safety_config.fallback_mode}"
        )

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    def reported_actuation(self, telemetry: Telemetry) -> Actuation:
        """Previous cycle's actuation as reported by telemetry, steering in radians."""
        steering = telemetry.steering_angle
        if self.telemetry_config.steering_units == "normalized":
            steering = steering * self.horizon_config.max_steer
        return Actuation(steering=float(steering), throttle=float(telemetry.throttle))

    def prepare(self, telemetry: Telemetry) -> Tuple[np.ndarray, np.ndarray, np.ndarray, VehicleState]:
        """
        Run every stage before the solve.

        Returns:
            (waypoints_x, waypoints_y, coeffs, compensated_state), vehicle frame.

        Raises:
            InvalidInput, DegenerateFit
        """
        next_x, next_y = to_vehicle_frame(
            telemetry.ptsx, telemetry.ptsy, telemetry.x, telemetry.y, telemetry.psi
        )
        coeffs = fit_polynomial(
            next_x, next_y, degree=REFERENCE_DEGREE, rcond=self.telemetry_config.fit_rcond
        )
        speed = telemetry.speed * self.telemetry_config.speed_scale
        previous = self.reported_actuation(telemetry)
        state = compensate_latency(
            initial_state(coeffs, speed),
            steering=previous.steering,
            throttle=previous.throttle,
            latency=self.horizon_config.latency,
            lf=self.horizon_config.lf,
        )
        return next_x, next_y, coeffs, state

    def command_steering(self, steering_rad: float) -> float:
        """Convert a steering angle to the channel's convention."""
        if not self.telemetry_config.normalize_steering:
            return float(steering_rad)
        return float(np.clip(steering_rad / self.horizon_config.max_steer, -1.0, 1.0))

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def process_message(self, payload: dict, session: Optional[ControlSession] = None) -> ControlCommand:
        """Validate a decoded telemetry payload and run one control cycle."""
        session = session if session is not None else ControlSession()
        try:
            telemetry = Telemetry.from_message(payload)
        except InvalidInput as e:
            session.cycles += 1
            return self._fallback(session, None, reason=f"invalid_input: {e}", status="invalid_input")
        return self.process_telemetry(telemetry, session)

    def process_telemetry(self, telemetry: Telemetry,
                          session: Optional[ControlSession] = None) -> ControlCommand:
        """
        Compute the command for one telemetry event.

        Failures never propagate: they are logged and turned into a fallback
        command flagged on the returned ControlCommand.
        """
        session = session if session is not None else ControlSession()
        session.cycles += 1

        try:
            next_x, next_y, coeffs, state = self.prepare(telemetry)
        except InvalidInput as e:
            return self._fallback(session, telemetry, reason=f"invalid_input: {e}", status="invalid_input")
        except DegenerateFit as e:
            return self._fallback(session, telemetry, reason=f"degenerate_fit: {e}", status="degenerate_fit")

        warm_start = session.warm_start if self.warm_start_enabled else None
        try:
            result = self.controller.solve(state, coeffs, warm_start=warm_start)
            result.raise_for_status()
        except SolverError as e:
            return self._fallback(
                session, telemetry, reason=str(e), status=e.status.value if e.status else "solver_error",
                next_x=next_x, next_y=next_y,
            )
        except MPCError as e:
            return self._fallback(session, telemetry, reason=str(e), status="error",
                                  next_x=next_x, next_y=next_y)

        session.last_command = result.actuation
        session.consecutive_failures = 0
        if result.plan is not None:
            session.warm_start = np.vstack([result.plan[1:], result.plan[-1:]])

        return ControlCommand(
            steering_angle=self.command_steering(result.actuation.steering),
            throttle=result.actuation.throttle,
            mpc_x=list(result.trajectory.x),
            mpc_y=list(result.trajectory.y),
            next_x=[float(v) for v in next_x],
            next_y=[float(v) for v in next_y],
            status=result.status.value,
            solve_time_s=result.solve_time_s,
        )

    def _fallback(self, session: ControlSession, telemetry: Optional[Telemetry], reason: str,
                  status: str, next_x=None, next_y=None) -> ControlCommand:
        """Hold the previous command or brake, per SafetyConfig."""
        cfg = self.safety_config
        hcfg = self.horizon_config
        session.consecutive_failures += 1
        session.fallbacks += 1
        session.warm_start = None

        held = session.last_command
        if held is None and telemetry is not None:
            held = self.reported_actuation(telemetry)
        if held is None:
            held = Actuation(steering=0.0, throttle=0.0)

        if cfg.fallback_mode == "hold" and session.consecutive_failures <= cfg.max_hold_cycles:
            actuation = Actuation(
                steering=float(np.clip(held.steering, -hcfg.max_steer, hcfg.max_steer)),
                throttle=float(np.clip(held.throttle, hcfg.throttle_min, hcfg.throttle_max)),
            )
            action = "hold"
        else:
            actuation = Actuation(
                steering=float(np.clip(held.steering, -hcfg.max_steer, hcfg.max_steer)),
                throttle=float(np.clip(cfg.brake_throttle, hcfg.throttle_min, hcfg.throttle_max)),
            )
            action = "brake"
        # The fallback command becomes the one being held next cycle.
        session.last_command = actuation

        logger.warning(
            f"Fallback ({action}) on cycle {session.cycles}, "
            f"{session.consecutive_failures} consecutive failure(s): {reason}"
        )
        return ControlCommand(
            steering_angle=self.command_steering(actuation.steering),
            throttle=actuation.throttle,
            next_x=[] if next_x is None else [float(v) for v in next_x],
            next_y=[] if next_y is None else [float(v) for v in next_y],
            status=status,
            fallback=True,
            fallback_reason=f"{action}: {reason}",
        )


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description='Run the MPC controller bridge')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to configuration YAML file (default: config/mpc_config.yaml)')
    parser.add_argument('--host', type=str, default=None,
                        help='Bind address (default from config, 0.0.0.0)')
    parser.add_argument('--port', type=int, default=None,
                        help='Port the simulator connects to (default from config, 4567)')
    parser.add_argument('--pacing-delay', type=float, default=None,
                        help='Seconds to wait before each reply, mimicking actuator latency')
    parser.add_argument('--log-level', type=str, default='INFO',
                        help='Logging level (DEBUG, INFO, WARNING, ERROR)')

    args = parser.parse_args()
    logging.getLogger().setLevel(getattr(logging, args.log_level.upper(), logging.INFO))

    stack = MPCStack(config_path=args.config)
    bridge_cfg = stack.bridge_config
    if args.host is not None:
        bridge_cfg.host = args.host
    if args.port is not None:
        bridge_cfg.port = args.port
    if args.pacing_delay is not None:
        bridge_cfg.pacing_delay_s = max(0.0, args.pacing_delay)

    from bridge.server import run_server
    run_server(stack, host=bridge_cfg.host, port=bridge_cfg.port,
               pacing_delay_s=bridge_cfg.pacing_delay_s)


if __name__ == "__main__":
    main()
