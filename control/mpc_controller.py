"""
MPC (Model Predictive Control) controller.

Each call formulates a finite-horizon nonlinear program over predicted
states and actuations, solves it, and keeps only the first actuation. The
controller holds nothing between calls except its immutable configuration.
"""

from __future__ import annotations

import logging
import math
import numbers
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

import numpy as np

from control.errors import (
    ConfigError,
    SolverInfeasible,
    SolverNonConvergent,
    SolverTimeout,
)
from control.solver import NLPProblem, NLPSolver, SolveStatus, build_solver
from control.vehicle_model import KinematicBicycleModel
from data.formats.data_format import Actuation, PredictedTrajectory, VehicleState
from trajectory.polyfit import polyderiv, polyeval

logger = logging.getLogger(__name__)

MAX_STEER_LIMIT = math.radians(25.0)
N_STATES = 6  # x, y, psi, v, cte, epsi
N_ACTUATIONS = 2  # steering, throttle


@dataclass(frozen=True)
class HorizonConfig:
    """Horizon, cost weights, actuation bounds and vehicle parameters."""

    horizon: int = 10
    dt: float = 0.1
    reference_speed: float = 40.0

    # Cost weights
    w_cte: float = 2000.0
    w_epsi: float = 2000.0
    w_speed: float = 1.0
    w_steer: float = 5.0
    w_throttle: float = 5.0
    w_steer_rate: float = 200.0
    w_throttle_rate: float = 10.0

    # Actuation bounds
    max_steer: float = MAX_STEER_LIMIT  # radians
    throttle_min: float = -1.0
    throttle_max: float = 1.0

    # Vehicle
    lf: float = 2.67  # front axle to center of gravity (m)
    latency: float = 0.1  # actuation latency (s)

    # Solver
    solver: str = "slsqp"
    max_iterations: int = 200
    tolerance: float = 1e-6
    feasibility_tolerance: float = 1e-4
    solve_deadline_s: Optional[float] = 0.5
    # Multiplier applied to the cost handed to the solver; None means 1 / max weight.
    cost_scale: Optional[float] = None

    def __post_init__(self) -> None:
        if (isinstance(self.horizon, bool) or not isinstance(self.horizon, numbers.Integral)
                or self.horizon < 2):
            raise ConfigError(f"horizon must be an integer >= 2, got {self.horizon!r}")
        if not self.dt > 0.0:
            raise ConfigError(f"dt must be positive, got {self.dt}")
        if not 0.0 < self.max_steer <= MAX_STEER_LIMIT + 1e-12:
            raise ConfigError(
                f"max_steer must be in (0, {MAX_STEER_LIMIT:.6f}] rad, got {self.max_steer}"
            )
        if not -1.0 <= self.throttle_min < self.throttle_max <= 1.0:
            raise ConfigError(
                f"throttle bounds must satisfy -1 <= min < max <= 1, "
                f"got [{self.throttle_min}, {self.throttle_max}]"
            )
        if not self.lf > 0.0:
            raise ConfigError(f"lf must be positive, got {self.lf}")
        if not self.latency >= 0.0:
            raise ConfigError(f"latency must be non-negative, got {self.latency}")
        weights = {name: getattr(self, name) for name in self.weight_names()}
        negative = {name: w for name, w in weights.items() if not w >= 0.0}
        if negative:
            raise ConfigError(f"cost weights must be non-negative: {negative}")
        if self.solve_deadline_s is not None and not self.solve_deadline_s > 0.0:
            raise ConfigError(f"solve_deadline_s must be positive or null, got {self.solve_deadline_s}")
        if self.cost_scale is not None and not (math.isfinite(self.cost_scale) and self.cost_scale > 0.0):
            raise ConfigError(f"cost_scale must be positive or null, got {self.cost_scale}")

    @staticmethod
    def weight_names() -> tuple:
        return ("w_cte", "w_epsi", "w_speed", "w_steer", "w_throttle",
                "w_steer_rate", "w_throttle_rate")

    @property
    def n_vars(self) -> int:
        return N_STATES * (self.horizon + 1) + N_ACTUATIONS * self.horizon

    @property
    def objective_scale(self) -> float:
        """Factor applied to cost and gradient before they reach the solver."""
        if self.cost_scale is not None:
            return float(self.cost_scale)
        largest = max(getattr(self, name) for name in self.weight_names())
        return 1.0 / largest if largest > 0.0 else 1.0


def build_horizon_config(mpc_cfg: dict) -> HorizonConfig:
    """Build a HorizonConfig from the control.mpc config section."""
    weights_cfg = mpc_cfg.get("weights", {}) or {}
    deadline = mpc_cfg.get("solve_deadline_s", 0.5)
    cost_scale = mpc_cfg.get("cost_scale")
    max_steer = mpc_cfg.get("max_steer_rad")
    if max_steer is None:
        max_steer = math.radians(float(mpc_cfg.get("max_steer_deg", 25.0)))
    return HorizonConfig(
        horizon=int(mpc_cfg.get("horizon", 10)),
        dt=float(mpc_cfg.get("dt", 0.1)),
        reference_speed=float(mpc_cfg.get("reference_speed", 40.0)),
        w_cte=float(weights_cfg.get("cte", 2000.0)),
        w_epsi=float(weights_cfg.get("epsi", 2000.0)),
        w_speed=float(weights_cfg.get("speed", 1.0)),
        w_steer=float(weights_cfg.get("steer", 5.0)),
        w_throttle=float(weights_cfg.get("throttle", 5.0)),
        w_steer_rate=float(weights_cfg.get("steer_rate", 200.0)),
        w_throttle_rate=float(weights_cfg.get("throttle_rate", 10.0)),
        max_steer=float(max_steer),
        throttle_min=float(mpc_cfg.get("throttle_min", -1.0)),
        throttle_max=float(mpc_cfg.get("throttle_max", 1.0)),
        lf=float(mpc_cfg.get("lf", 2.67)),
        latency=float(mpc_cfg.get("latency", 0.1)),
        solver=str(mpc_cfg.get("solver", "slsqp")),
        max_iterations=int(mpc_cfg.get("max_iterations", 200)),
        tolerance=float(mpc_cfg.get("tolerance", 1e-6)),
        feasibility_tolerance=float(mpc_cfg.get("feasibility_tolerance", 1e-4)),
        solve_deadline_s=None if deadline is None else float(deadline),
        cost_scale=None if cost_scale is None else float(cost_scale),
    )


@dataclass
class SolveResult:
    """Outcome of one horizon solve.

    actuation and trajectory are only populated when status is CONVERGED;
    a failed solve never exposes the solver's raw output as a command.
    """
    status: SolveStatus
    actuation: Optional[Actuation] = None
    trajectory: PredictedTrajectory = field(default_factory=PredictedTrajectory)
    plan: Optional[np.ndarray] = None  # (N, 2) steering/throttle over the horizon
    objective: float = float("nan")
    iterations: int = 0
    solve_time_s: float = 0.0
    message: str = ""

    @property
    def converged(self) -> bool:
        return self.status is SolveStatus.CONVERGED

    def raise_for_status(self) -> None:
        """Raise the error kind matching a failed solve."""
        if self.status is SolveStatus.CONVERGED:
            return
        detail = f"solve {self.status.value}: {self.message}"
        if self.status is SolveStatus.TIMEOUT:
            raise SolverTimeout(detail, status=self.status)
        if self.status is SolveStatus.INFEASIBLE:
            raise SolverInfeasible(detail, status=self.status)
        raise SolverNonConvergent(detail, status=self.status)


class _HorizonLayout:
    """Index bookkeeping for the flat decision vector."""

    def __init__(self, horizon: int):
        self.n = horizon
        steps = horizon + 1
        self.x = 0
        self.y = steps
        self.psi = 2 * steps
        self.v = 3 * steps
        self.cte = 4 * steps
        self.epsi = 5 * steps
        self.steer = 6 * steps
        self.throttle = 6 * steps + horizon
        self.n_vars = 6 * steps + 2 * horizon
        self.n_constraints = 6 * steps

    def state_block(self, z: np.ndarray, start: int) -> np.ndarray:
        return z[start:start + self.n + 1]

    def actuation_block(self, z: np.ndarray, start: int) -> np.ndarray:
        return z[start:start + self.n]


class MPCController:
    """
    Model Predictive Control for steering and throttle.

    Decision vector: states x, y, psi, v, cte, epsi at steps 0..N followed by
    steering and throttle at steps 0..N-1.
    """

    def __init__(self, config: Optional[HorizonConfig] = None,
                 solver: Optional[NLPSolver] = None):
        """
        Initialize MPC controller.

        Args:
            config: Horizon configuration (defaults if omitted)
            solver: Solver adapter; built from config.solver if omitted
        """
        self.config = config or HorizonConfig()
        self.layout = _HorizonLayout(self.config.horizon)
        self.model = KinematicBicycleModel(lf=self.config.lf)
        self.objective_scale = self.config.objective_scale
        self.solver = solver or build_solver(
            self.config.solver,
            max_iterations=self.config.max_iterations,
            tolerance=self.config.tolerance,
            feasibility_tolerance=self.config.feasibility_tolerance,
            deadline_s=self.config.solve_deadline_s,
        )

    # ------------------------------------------------------------------
    # Problem construction
    # ------------------------------------------------------------------

    def _objective(self, z: np.ndarray) -> float:
        cfg, lay = self.config, self.layout
        cte = lay.state_block(z, lay.cte)
        epsi = lay.state_block(z, lay.epsi)
        v = lay.state_block(z, lay.v)
        steer = lay.actuation_block(z, lay.steer)
        throttle = lay.actuation_block(z, lay.throttle)

        cost = cfg.w_cte * np.sum(cte ** 2)
        cost += cfg.w_epsi * np.sum(epsi ** 2)
        cost += cfg.w_speed * np.sum((v - cfg.reference_speed) ** 2)
        cost += cfg.w_steer * np.sum(steer ** 2)
        cost += cfg.w_throttle * np.sum(throttle ** 2)
        cost += cfg.w_steer_rate * np.sum(np.diff(steer) ** 2)
        cost += cfg.w_throttle_rate * np.sum(np.diff(throttle) ** 2)
        return float(cost) * self.objective_scale

    def _gradient(self, z: np.ndarray) -> np.ndarray:
        cfg, lay = self.config, self.layout
        grad = np.zeros_like(z)
        grad[lay.cte:lay.cte + lay.n + 1] = 2.0 * cfg.w_cte * lay.state_block(z, lay.cte)
        grad[lay.epsi:lay.epsi + lay.n + 1] = 2.0 * cfg.w_epsi * lay.state_block(z, lay.epsi)
        grad[lay.v:lay.v + lay.n + 1] = 2.0 * cfg.w_speed * (
            lay.state_block(z, lay.v) - cfg.reference_speed
        )

        for start, weight, rate_weight in (
            (lay.steer, cfg.w_steer, cfg.w_steer_rate),
            (lay.throttle, cfg.w_throttle, cfg.w_throttle_rate),
        ):
            u = lay.actuation_block(z, start)
            g = 2.0 * weight * u
            du = 2.0 * rate_weight * np.diff(u)
            g[1:] += du
            g[:-1] -= du
            grad[start:start + lay.n] = g
        return grad * self.objective_scale

    def _constraints(self, z: np.ndarray, state0: np.ndarray, coeffs: np.ndarray,
                     slope_coeffs: np.ndarray) -> np.ndarray:
        cfg, lay = self.config, self.layout
        dt, lf = cfg.dt, cfg.lf
        x = lay.state_block(z, lay.x)
        y = lay.state_block(z, lay.y)
        psi = lay.state_block(z, lay.psi)
        v = lay.state_block(z, lay.v)
        cte = lay.state_block(z, lay.cte)
        epsi = lay.state_block(z, lay.epsi)
        steer = lay.actuation_block(z, lay.steer)
        throttle = lay.actuation_block(z, lay.throttle)

        x0, y0, psi0, v0, epsi0 = x[:-1], y[:-1], psi[:-1], v[:-1], epsi[:-1]
        f0 = polyeval(coeffs, x0)
        psides0 = np.arctan(polyeval(slope_coeffs, x0))
        yaw_change = v0 * steer / lf * dt

        residuals = np.empty(lay.n_constraints)
        blocks = (
            (lay.x, x, x0 + v0 * np.cos(psi0) * dt),
            (lay.y, y, y0 + v0 * np.sin(psi0) * dt),
            (lay.psi, psi, psi0 - yaw_change),
            (lay.v, v, v0 + throttle * dt),
            (lay.cte, cte, (f0 - y0) + v0 * np.sin(epsi0) * dt),
            (lay.epsi, epsi, (psi0 - psides0) - yaw_change),
        )
        for k, (start, values, predicted) in enumerate(blocks):
            residuals[start] = values[0] - state0[k]
            residuals[start + 1:start + lay.n + 1] = values[1:] - predicted
        return residuals

    def _jacobian(self, z: np.ndarray, coeffs: np.ndarray, slope_coeffs: np.ndarray,
                  curvature_coeffs: np.ndarray) -> np.ndarray:
        cfg, lay = self.config, self.layout
        dt, lf = cfg.dt, cfg.lf
        jac = np.zeros((lay.n_constraints, lay.n_vars))
        # Every residual is linear with unit slope in its own state variable.
        diag = np.arange(lay.n_constraints)
        jac[diag, diag] = 1.0

        p = np.arange(lay.n)  # previous step index
        x0 = z[lay.x + p]
        psi0 = z[lay.psi + p]
        v0 = z[lay.v + p]
        epsi0 = z[lay.epsi + p]
        steer = z[lay.steer + p]
        slope = polyeval(slope_coeffs, x0)
        curvature = polyeval(curvature_coeffs, x0)

        rows_x = lay.x + p + 1
        jac[rows_x, lay.x + p] = -1.0
        jac[rows_x, lay.psi + p] = v0 * np.sin(psi0) * dt
        jac[rows_x, lay.v + p] = -np.cos(psi0) * dt

        rows_y = lay.y + p + 1
        jac[rows_y, lay.y + p] = -1.0
        jac[rows_y, lay.psi + p] = -v0 * np.cos(psi0) * dt
        jac[rows_y, lay.v + p] = -np.sin(psi0) * dt

        rows_psi = lay.psi + p + 1
        jac[rows_psi, lay.psi + p] = -1.0
        jac[rows_psi, lay.v + p] = steer / lf * dt
        jac[rows_psi, lay.steer + p] = v0 / lf * dt

        rows_v = lay.v + p + 1
        jac[rows_v, lay.v + p] = -1.0
        jac[rows_v, lay.throttle + p] = -dt

        rows_cte = lay.cte + p + 1
        jac[rows_cte, lay.x + p] = -slope
        jac[rows_cte, lay.y + p] = 1.0
        jac[rows_cte, lay.v + p] = -np.sin(epsi0) * dt
        jac[rows_cte, lay.epsi + p] = -v0 * np.cos(epsi0) * dt

        rows_epsi = lay.epsi + p + 1
        jac[rows_epsi, lay.psi + p] = -1.0
        jac[rows_epsi, lay.x + p] = curvature / (1.0 + slope ** 2)
        jac[rows_epsi, lay.v + p] = steer / lf * dt
        jac[rows_epsi, lay.steer + p] = v0 / lf * dt
        return jac

    def _bounds(self):
        cfg, lay = self.config, self.layout
        lower = np.full(lay.n_vars, -np.inf)
        upper = np.full(lay.n_vars, np.inf)
        lower[lay.steer:lay.steer + lay.n] = -cfg.max_steer
        upper[lay.steer:lay.steer + lay.n] = cfg.max_steer
        lower[lay.throttle:lay.throttle + lay.n] = cfg.throttle_min
        upper[lay.throttle:lay.throttle + lay.n] = cfg.throttle_max
        return lower, upper

    def _initial_guess(self, state0: np.ndarray, coeffs: np.ndarray,
                       warm_start: Optional[np.ndarray]) -> np.ndarray:
        cfg, lay = self.config, self.layout
        if warm_start is None:
            plan = np.zeros((lay.n, N_ACTUATIONS))
        else:
            plan = np.asarray(warm_start, dtype=float).reshape(lay.n, N_ACTUATIONS)
            plan = np.column_stack([
                np.clip(plan[:, 0], -cfg.max_steer, cfg.max_steer),
                np.clip(plan[:, 1], cfg.throttle_min, cfg.throttle_max),
            ])
        states = self.model.rollout(state0, plan[:, 0], plan[:, 1], cfg.dt, coeffs)
        z0 = np.empty(lay.n_vars)
        for k, start in enumerate((lay.x, lay.y, lay.psi, lay.v, lay.cte, lay.epsi)):
            z0[start:start + lay.n + 1] = states[:, k]
        z0[lay.steer:lay.steer + lay.n] = plan[:, 0]
        z0[lay.throttle:lay.throttle + lay.n] = plan[:, 1]
        if not np.all(np.isfinite(z0)):
            z0 = np.nan_to_num(z0, nan=0.0, posinf=0.0, neginf=0.0)
        return z0

    def build_problem(self, state: VehicleState, coeffs: Sequence[float],
                      warm_start: Optional[np.ndarray] = None) -> NLPProblem:
        """
        Formulate the horizon NLP for an initial state and reference polynomial.

        Args:
            state: Latency-compensated initial state (vehicle frame)
            coeffs: Reference polynomial, lowest order first
            warm_start: Optional (N, 2) steering/throttle plan seeding the guess

        Returns:
            NLPProblem ready for a solver adapter.
        """
        coeffs = np.asarray(coeffs, dtype=float)
        slope_coeffs = polyderiv(coeffs)
        curvature_coeffs = polyderiv(slope_coeffs)
        state0 = state.as_array()
        lower, upper = self._bounds()
        return NLPProblem(
            x0=self._initial_guess(state0, coeffs, warm_start),
            lower=lower,
            upper=upper,
            objective=self._objective,
            gradient=self._gradient,
            constraints=lambda z: self._constraints(z, state0, coeffs, slope_coeffs),
            jacobian=lambda z: self._jacobian(z, coeffs, slope_coeffs, curvature_coeffs),
        )

    # ------------------------------------------------------------------
    # Solve
    # ------------------------------------------------------------------

    def solve(self, state: VehicleState, coeffs: Sequence[float],
              warm_start: Optional[np.ndarray] = None) -> SolveResult:
        """
        Solve the horizon problem and extract the first actuation.

        Args:
            state: Latency-compensated initial state (vehicle frame)
            coeffs: Reference polynomial, lowest order first
            warm_start: Optional (N, 2) steering/throttle plan seeding the guess

        Returns:
            SolveResult; actuation is None unless the solve converged.
        """
        cfg, lay = self.config, self.layout
        problem = self.build_problem(state, coeffs, warm_start)

        start_time = time.perf_counter()
        output = self.solver.solve(problem)
        solve_time = time.perf_counter() - start_time
        objective = output.objective / self.objective_scale

        if output.status is not SolveStatus.CONVERGED:
            logger.warning(
                f"MPC solve {output.status.value} after {output.iterations} iterations "
                f"({solve_time * 1000.0:.1f} ms, violation={output.constraint_violation:.3e}): "
                f"{output.message}"
            )
            return SolveResult(
                status=output.status,
                objective=objective,
                iterations=output.iterations,
                solve_time_s=solve_time,
                message=output.message,
            )

        z = output.x
        steer = np.clip(lay.actuation_block(z, lay.steer), -cfg.max_steer, cfg.max_steer)
        throttle = np.clip(lay.actuation_block(z, lay.throttle), cfg.throttle_min, cfg.throttle_max)
        logger.debug(
            f"MPC solve converged in {output.iterations} iterations "
            f"({solve_time * 1000.0:.1f} ms): steer={steer[0]:.4f} throttle={throttle[0]:.4f} "
            f"cost={objective:.3f}"
        )
        return SolveResult(
            status=output.status,
            actuation=Actuation(steering=float(steer[0]), throttle=float(throttle[0])),
            trajectory=PredictedTrajectory(
                x=tuple(float(v) for v in lay.state_block(z, lay.x)),
                y=tuple(float(v) for v in lay.state_block(z, lay.y)),
            ),
            plan=np.column_stack([steer, throttle]),
            objective=objective,
            iterations=output.iterations,
            solve_time_s=solve_time,
            message=output.message,
        )

    def compute_control(self, state: VehicleState, coeffs: Sequence[float],
                        warm_start: Optional[np.ndarray] = None) -> Dict:
        """
        Compute control using MPC.

        Args:
            state: Latency-compensated initial state
            coeffs: Reference polynomial coefficients

        Returns:
            Control commands {'steering', 'throttle', 'result'}

        Raises:
            SolverNonConvergent, SolverInfeasible, SolverTimeout
        """
        result = self.solve(state, coeffs, warm_start)
        result.raise_for_status()
        return {
            'steering': result.actuation.steering,
            'throttle': result.actuation.throttle,
            'result': result,
        }
