"""
Reference curve fitting.
Fits a polynomial y = c0 + c1*x + ... + cn*x^n to vehicle-frame waypoints.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
from scipy import linalg

from control.errors import DegenerateFit

REFERENCE_DEGREE = 3


def fit_polynomial(
    xs: Sequence[float],
    ys: Sequence[float],
    degree: int = REFERENCE_DEGREE,
    rcond: float = 1e-10,
) -> np.ndarray:
    """
    Least-squares polynomial fit through (xs, ys).

    The Vandermonde matrix is built on x scaled to [-1, 1] and factored with a
    column-pivoted QR, so rank deficiency shows up on the diagonal of R.

    Args:
        xs: x coordinates (vehicle frame)
        ys: y coordinates (vehicle frame)
        degree: polynomial degree
        rcond: relative threshold on |R_ii| below which the fit is rejected

    Returns:
        Coefficients, lowest order first (length degree + 1).

    Raises:
        DegenerateFit: too few points, mismatched or non-finite input, or a
            rank-deficient design matrix (fewer than degree + 1 distinct x).
    """
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    n_coeffs = degree + 1
    if x.shape != y.shape or x.ndim != 1:
        raise DegenerateFit(f"x and y must be 1-D and equal length ({x.shape} vs {y.shape})")
    if x.size < n_coeffs:
        raise DegenerateFit(f"need at least {n_coeffs} points for degree {degree}, got {x.size}")
    if not (np.all(np.isfinite(x)) and np.all(np.isfinite(y))):
        raise DegenerateFit("fit points must be finite")

    scale = float(np.max(np.abs(x)))
    if scale == 0.0:
        raise DegenerateFit("all fit points share x = 0")

    design = np.vander(x / scale, n_coeffs, increasing=True)
    q, r, perm = linalg.qr(design, mode="economic", pivoting=True)
    diag = np.abs(np.diag(r))
    if diag.min() <= rcond * diag.max():
        raise DegenerateFit(
            f"design matrix is rank deficient (min |R_ii| = {diag.min():.3e}, "
            f"max = {diag.max():.3e})"
        )

    permuted = linalg.solve_triangular(r, q.T @ y)
    scaled_coeffs = np.empty(n_coeffs)
    scaled_coeffs[perm] = permuted
    return scaled_coeffs / scale ** np.arange(n_coeffs)


def polyeval(coeffs: Sequence[float], x):
    """Evaluate the polynomial (lowest order first) at x."""
    result = 0.0
    for c in reversed(coeffs):
        result = result * x + c
    return result


def polyderiv(coeffs: Sequence[float]) -> np.ndarray:
    """Coefficients of the derivative polynomial."""
    coeffs = np.asarray(coeffs, dtype=float)
    if coeffs.size <= 1:
        return np.zeros(1)
    return coeffs[1:] * np.arange(1, coeffs.size)
