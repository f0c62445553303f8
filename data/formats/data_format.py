"""
Data format definitions for MPC telemetry, state and commands.
"""

import math
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Sequence, Tuple
import numpy as np

from control.errors import InvalidInput


TELEMETRY_FIELDS = ("ptsx", "ptsy", "x", "y", "psi", "speed", "steering_angle", "throttle")


def _as_float(name: str, value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"telemetry field '{name}' is not a number: {value!r}")
    if not math.isfinite(result):
        raise InvalidInput(f"telemetry field '{name}' is not finite: {result}")
    return result


def _as_float_tuple(name: str, values: Any) -> Tuple[float, ...]:
    if isinstance(values, (str, bytes)) or not isinstance(values, Sequence):
        raise InvalidInput(f"telemetry field '{name}' must be a list of numbers")
    return tuple(_as_float(f"{name}[{i}]", v) for i, v in enumerate(values))


@dataclass(frozen=True)
class Telemetry:
    """One telemetry event from the simulator (world frame)."""
    ptsx: Tuple[float, ...]  # reference waypoints x [m]
    ptsy: Tuple[float, ...]  # reference waypoints y [m]
    x: float
    y: float
    psi: float  # heading [rad]
    speed: float
    steering_angle: float  # previous cycle's steering, as reported
    throttle: float  # previous cycle's throttle

    @classmethod
    def from_message(cls, data: Dict[str, Any]) -> "Telemetry":
        """Build telemetry from a decoded message payload, validating every field."""
        if not isinstance(data, dict):
            raise InvalidInput("telemetry payload must be an object")
        missing = [name for name in TELEMETRY_FIELDS if name not in data]
        if missing:
            raise InvalidInput(f"telemetry missing fields: {', '.join(missing)}")

        ptsx = _as_float_tuple("ptsx", data["ptsx"])
        ptsy = _as_float_tuple("ptsy", data["ptsy"])
        if len(ptsx) != len(ptsy):
            raise InvalidInput(
                f"waypoint lists differ in length (ptsx={len(ptsx)}, ptsy={len(ptsy)})"
            )

        return cls(
            ptsx=ptsx,
            ptsy=ptsy,
            x=_as_float("x", data["x"]),
            y=_as_float("y", data["y"]),
            psi=_as_float("psi", data["psi"]),
            speed=_as_float("speed", data["speed"]),
            steering_angle=_as_float("steering_angle", data["steering_angle"]),
            throttle=_as_float("throttle", data["throttle"]),
        )


@dataclass(frozen=True)
class VehicleState:
    """Motion state in the vehicle frame."""
    x: float
    y: float
    psi: float  # heading [rad]
    v: float  # speed
    cte: float  # cross-track error
    epsi: float  # heading error [rad]

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.psi, self.v, self.cte, self.epsi], dtype=float)

    @classmethod
    def from_array(cls, values: Sequence[float]) -> "VehicleState":
        if len(values) != 6:
            raise InvalidInput(f"state needs 6 values, got {len(values)}")
        return cls(*(float(v) for v in values))


@dataclass(frozen=True)
class Actuation:
    """Steering angle (radians) and throttle/acceleration command."""
    steering: float
    throttle: float


@dataclass(frozen=True)
class PredictedTrajectory:
    """Solved (x, y) sequence over the horizon, vehicle frame. Display only."""
    x: Tuple[float, ...] = ()
    y: Tuple[float, ...] = ()

    def __len__(self) -> int:
        return len(self.x)

    def points(self) -> list:
        return list(zip(self.x, self.y))


@dataclass
class ControlCommand:
    """Command event returned to the simulator for one telemetry event."""
    steering_angle: float  # normalized to [-1, 1] when the channel expects it
    throttle: float
    mpc_x: list = field(default_factory=list)
    mpc_y: list = field(default_factory=list)
    next_x: list = field(default_factory=list)
    next_y: list = field(default_factory=list)
    # Diagnostics (not sent over the wire)
    status: str = "converged"
    fallback: bool = False
    fallback_reason: Optional[str] = None
    solve_time_s: Optional[float] = None

    def to_message(self) -> Dict[str, Any]:
        """Payload of the outgoing "steer" event."""
        return {
            "steering_angle": float(self.steering_angle),
            "throttle": float(self.throttle),
            "mpc_x": [float(v) for v in self.mpc_x],
            "mpc_y": [float(v) for v in self.mpc_y],
            "next_x": [float(v) for v in self.next_x],
            "next_y": [float(v) for v in self.next_y],
        }
