"""
Solver adapter: a narrow interface over SciPy's constrained NLP solvers.

The optimizer describes its problem as an NLPProblem (bounds, objective and
gradient, equality constraints and Jacobian). Solvers return a SolverOutput
whose status tells converged, non-converged, infeasible and timed-out runs
apart, so no caller ever has to look at a raw solver result.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
from scipy.optimize import BFGS, Bounds, NonlinearConstraint, minimize

from control.errors import ConfigError

logger = logging.getLogger(__name__)


class SolveStatus(enum.Enum):
    CONVERGED = "converged"
    NON_CONVERGED = "non_converged"
    INFEASIBLE = "infeasible"
    TIMEOUT = "timeout"


@dataclass
class NLPProblem:
    """min f(z) s.t. c(z) = 0, lower <= z <= upper."""
    x0: np.ndarray
    lower: np.ndarray
    upper: np.ndarray
    objective: Callable[[np.ndarray], float]
    gradient: Callable[[np.ndarray], np.ndarray]
    constraints: Callable[[np.ndarray], np.ndarray]
    jacobian: Callable[[np.ndarray], np.ndarray]

    @property
    def n_vars(self) -> int:
        return int(self.x0.size)


@dataclass
class SolverOutput:
    """Solution vector plus convergence status."""
    x: np.ndarray
    status: SolveStatus
    objective: float
    iterations: int
    constraint_violation: float
    message: str


class _DeadlineExceeded(Exception):
    pass


class _Watchdog:
    """Raises from inside solver callbacks once the deadline has passed."""

    def __init__(self, deadline_s: Optional[float]):
        self.deadline_s = deadline_s
        self._start = time.perf_counter()

    def check(self) -> None:
        if self.deadline_s is not None and time.perf_counter() - self._start > self.deadline_s:
            raise _DeadlineExceeded()

    def wrap(self, fn: Callable) -> Callable:
        def guarded(z):
            self.check()
            return fn(z)
        return guarded


class NLPSolver:
    """Base class for solver adapters."""

    name = "base"

    def __init__(self, max_iterations: int = 200, tolerance: float = 1e-6,
                 feasibility_tolerance: float = 1e-4,
                 deadline_s: Optional[float] = None):
        self.max_iterations = int(max_iterations)
        self.tolerance = float(tolerance)
        self.feasibility_tolerance = float(feasibility_tolerance)
        self.deadline_s = deadline_s

    def solve(self, problem: NLPProblem) -> SolverOutput:
        watchdog = _Watchdog(self.deadline_s)
        try:
            return self._solve(problem, watchdog)
        except _DeadlineExceeded:
            logger.warning(f"{self.name} solve aborted after {self.deadline_s:.3f}s deadline")
            return SolverOutput(
                x=np.asarray(problem.x0, dtype=float).copy(),
                status=SolveStatus.TIMEOUT,
                objective=float("nan"),
                iterations=0,
                constraint_violation=float("nan"),
                message=f"deadline of {self.deadline_s}s exceeded",
            )

    def _solve(self, problem: NLPProblem, watchdog: _Watchdog) -> SolverOutput:
        raise NotImplementedError

    def _classify(self, problem: NLPProblem, x: np.ndarray, solver_success: bool,
                  solver_infeasible: bool = False) -> tuple:
        """
        Map a solver exit onto SolveStatus.

        INFEASIBLE only comes from the solver itself. A stop with a residual
        above feasibility_tolerance is NON_CONVERGED even if the solver
        claims success.
        """
        if not np.all(np.isfinite(x)):
            return SolveStatus.NON_CONVERGED, float("inf")
        violation = float(np.max(np.abs(problem.constraints(x)), initial=0.0))
        if solver_infeasible:
            return SolveStatus.INFEASIBLE, violation
        if solver_success and violation <= self.feasibility_tolerance:
            return SolveStatus.CONVERGED, violation
        return SolveStatus.NON_CONVERGED, violation


class SLSQPSolver(NLPSolver):
    """Sequential least squares programming (scipy.optimize, method='SLSQP')."""

    name = "slsqp"

    def _solve(self, problem: NLPProblem, watchdog: _Watchdog) -> SolverOutput:
        result = minimize(
            watchdog.wrap(problem.objective),
            x0=problem.x0,
            jac=problem.gradient,
            method="SLSQP",
            bounds=Bounds(problem.lower, problem.upper),
            constraints=[{
                "type": "eq",
                "fun": watchdog.wrap(problem.constraints),
                "jac": problem.jacobian,
            }],
            options={"maxiter": self.max_iterations, "ftol": self.tolerance},
        )
        x = np.clip(np.asarray(result.x, dtype=float), problem.lower, problem.upper)
        # exit mode 4: linearized constraints incompatible with the bounds
        infeasible = int(result.status) == 4
        status, violation = self._classify(problem, x, bool(result.success), infeasible)
        return SolverOutput(
            x=x,
            status=status,
            objective=float(result.fun),
            iterations=int(getattr(result, "nit", 0)),
            constraint_violation=violation,
            message=str(result.message),
        )


class TrustConstrSolver(NLPSolver):
    """Interior-point / SQP trust-region method (scipy.optimize, method='trust-constr')."""

    name = "trust-constr"

    def _solve(self, problem: NLPProblem, watchdog: _Watchdog) -> SolverOutput:
        constraint = NonlinearConstraint(
            watchdog.wrap(problem.constraints), 0.0, 0.0, jac=problem.jacobian, hess=BFGS()
        )
        result = minimize(
            watchdog.wrap(problem.objective),
            x0=problem.x0,
            jac=problem.gradient,
            hess=BFGS(),
            method="trust-constr",
            bounds=Bounds(problem.lower, problem.upper, keep_feasible=False),
            constraints=[constraint],
            options={
                "maxiter": self.max_iterations,
                "gtol": self.tolerance,
                "xtol": self.tolerance * 1e-2,
            },
        )
        x = np.clip(np.asarray(result.x, dtype=float), problem.lower, problem.upper)
        # status 1: gradient tolerance met, 2: step tolerance met
        success = int(result.status) in (1, 2)
        # trust-constr has no infeasibility exit; failures are non-convergence
        status, violation = self._classify(problem, x, success)
        return SolverOutput(
            x=x,
            status=status,
            objective=float(result.fun),
            iterations=int(getattr(result, "nit", 0)),
            constraint_violation=violation,
            message=str(result.message),
        )


SOLVERS = {
    SLSQPSolver.name: SLSQPSolver,
    TrustConstrSolver.name: TrustConstrSolver,
}


def build_solver(name: str = "slsqp", **kwargs) -> NLPSolver:
    """Build a solver adapter by name ('slsqp' or 'trust-constr')."""
    key = str(name).strip().lower()
    if key not in SOLVERS:
        raise ConfigError(f"unknown solver '{name}' (choose from {sorted(SOLVERS)})")
    return SOLVERS[key](**kwargs)
