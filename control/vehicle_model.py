"""
Vehicle dynamics model (kinematic bicycle model).
Used for latency compensation, the optimizer's initial guess and simulation.

Sign convention follows the simulator: positive steering turns right, so
heading changes by -v * steer / Lf per second.
"""

import math
from typing import Optional, Sequence

import numpy as np

from control.errors import InvalidInput
from data.formats.data_format import VehicleState
from trajectory.polyfit import polyderiv, polyeval


def _require_finite(**values: float) -> None:
    bad = {name: value for name, value in values.items() if not math.isfinite(value)}
    if bad:
        raise InvalidInput(f"non-finite inputs: {bad}")


def initial_state(coeffs: Sequence[float], speed: float) -> VehicleState:
    """
    Vehicle-frame state at the telemetry instant.

    The vehicle sits at the origin with zero heading; cte is the reference
    polynomial at x = 0 and epsi is minus the reference heading there.
    """
    coeffs = np.asarray(coeffs, dtype=float)
    _require_finite(speed=float(speed))
    if coeffs.size < 2 or not np.all(np.isfinite(coeffs)):
        raise InvalidInput(f"reference coefficients must be finite, got {coeffs}")
    cte = float(polyeval(coeffs, 0.0))
    epsi = -math.atan(float(coeffs[1]))
    return VehicleState(x=0.0, y=0.0, psi=0.0, v=float(speed), cte=cte, epsi=epsi)


def compensate_latency(
    state: VehicleState,
    steering: float,
    throttle: float,
    latency: float,
    lf: float,
) -> VehicleState:
    """
    Predict where the vehicle will be when the next command takes effect.

    Holds the previous actuation constant over the latency interval and
    assumes the state starts at the vehicle-frame origin (x = y = psi = 0).
    Any off-origin component of the input state is ignored.

    Args:
        state: Telemetry-derived state (see initial_state)
        steering: Previous steering command (radians)
        throttle: Previous throttle command
        latency: Actuation latency (seconds)
        lf: Distance from front axle to center of gravity (meters)

    Returns:
        State at t + latency.
    """
    _require_finite(
        v=state.v, cte=state.cte, epsi=state.epsi,
        steering=steering, throttle=throttle, latency=latency, lf=lf,
    )
    if lf <= 0.0:
        raise InvalidInput(f"lf must be positive, got {lf}")

    v = state.v
    yaw_change = v * steering / lf * latency
    return VehicleState(
        x=v * latency,
        y=0.0,
        psi=-yaw_change,
        v=v + throttle * latency,
        cte=state.cte + v * math.sin(state.epsi) * latency,
        epsi=state.epsi - yaw_change,
    )


class KinematicBicycleModel:
    """
    Kinematic bicycle model with cross-track and heading error tracking
    against a reference polynomial.
    """

    def __init__(self, lf: float = 2.67, max_steering_angle: Optional[float] = None):
        """
        Initialize bicycle model.

        Args:
            lf: Distance from front axle to center of gravity (meters)
            max_steering_angle: Optional steering clamp (radians)
        """
        if lf <= 0.0:
            raise InvalidInput(f"lf must be positive, got {lf}")
        self.lf = lf
        self.max_steering_angle = max_steering_angle

    def step(self, state: np.ndarray, steering: float, throttle: float,
             dt: float, coeffs: Sequence[float]) -> np.ndarray:
        """
        Advance [x, y, psi, v, cte, epsi] by one timestep.

        Args:
            state: Current state vector
            steering: Steering angle (radians)
            throttle: Acceleration command
            dt: Time step (seconds)
            coeffs: Reference polynomial, lowest order first

        Returns:
            Next state vector.
        """
        if self.max_steering_angle is not None:
            steering = float(np.clip(steering, -self.max_steering_angle, self.max_steering_angle))
        x, y, psi, v, _cte, epsi = state
        slope = polyeval(polyderiv(coeffs), x)
        yaw_change = v * steering / self.lf * dt
        return np.array([
            x + v * math.cos(psi) * dt,
            y + v * math.sin(psi) * dt,
            psi - yaw_change,
            v + throttle * dt,
            (polyeval(coeffs, x) - y) + v * math.sin(epsi) * dt,
            (psi - math.atan(slope)) - yaw_change,
        ])

    def rollout(self, state: np.ndarray, steering: Sequence[float],
                throttle: Sequence[float], dt: float,
                coeffs: Sequence[float]) -> np.ndarray:
        """
        Roll the model forward over an actuation sequence.

        Returns:
            Array of shape (len(steering) + 1, 6), starting with state.
        """
        states = [np.asarray(state, dtype=float)]
        for delta, accel in zip(steering, throttle):
            states.append(self.step(states[-1], delta, accel, dt, coeffs))
        return np.vstack(states)

    def update_world(self, x: float, y: float, heading: float, velocity: float,
                     steering: float, throttle: float, dt: float):
        """
        Advance a world-frame pose (used by the closed-loop simulation).

        Returns:
            New (x, y, heading, velocity)
        """
        if self.max_steering_angle is not None:
            steering = float(np.clip(steering, -self.max_steering_angle, self.max_steering_angle))
        new_x = x + velocity * math.cos(heading) * dt
        new_y = y + velocity * math.sin(heading) * dt
        new_heading = heading - velocity * steering / self.lf * dt
        new_velocity = velocity + throttle * dt

        # Normalize heading to [-pi, pi]
        new_heading = math.atan2(math.sin(new_heading), math.cos(new_heading))

        return new_x, new_y, new_heading, new_velocity
