from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np

from control.errors import InvalidInput


def _validate_points(xs: Sequence[float], ys: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
    if len(xs) != len(ys):
        raise InvalidInput(f"coordinate lists differ in length ({len(xs)} vs {len(ys)})")
    xs_arr = np.asarray(xs, dtype=float)
    ys_arr = np.asarray(ys, dtype=float)
    if not (np.all(np.isfinite(xs_arr)) and np.all(np.isfinite(ys_arr))):
        raise InvalidInput("coordinates must be finite")
    return xs_arr, ys_arr


def _validate_pose(px: float, py: float, psi: float) -> None:
    if not (np.isfinite(px) and np.isfinite(py) and np.isfinite(psi)):
        raise InvalidInput(f"pose must be finite (px={px}, py={py}, psi={psi})")


def to_vehicle_frame(
    ptsx: Sequence[float],
    ptsy: Sequence[float],
    px: float,
    py: float,
    psi: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Express world-frame waypoints in the vehicle frame.

    Translates by (-px, -py) and rotates by -psi, so the vehicle sits at the
    origin looking down +x.

    Returns:
        (xs, ys) arrays with the same length as the inputs.
    """
    xs, ys = _validate_points(ptsx, ptsy)
    _validate_pose(px, py, psi)
    dx = xs - px
    dy = ys - py
    cos_psi = np.cos(psi)
    sin_psi = np.sin(psi)
    x_vehicle = cos_psi * dx + sin_psi * dy
    y_vehicle = cos_psi * dy - sin_psi * dx
    return x_vehicle, y_vehicle


def to_world_frame(
    xs: Sequence[float],
    ys: Sequence[float],
    px: float,
    py: float,
    psi: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Inverse of to_vehicle_frame: rotate by +psi, then translate by (px, py)."""
    x_vehicle, y_vehicle = _validate_points(xs, ys)
    _validate_pose(px, py, psi)
    cos_psi = np.cos(psi)
    sin_psi = np.sin(psi)
    x_world = px + cos_psi * x_vehicle - sin_psi * y_vehicle
    y_world = py + sin_psi * x_vehicle + cos_psi * y_vehicle
    return x_world, y_world
