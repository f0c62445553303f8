"""
Error kinds raised by the MPC control pipeline.

Pipeline stages (transform, fit, latency prediction) raise before any
optimization problem is built. Solver failures are reported through
SolveResult and only raised when the caller asks for a command.
"""


class MPCError(Exception):
    """Base class for all control pipeline errors."""


class ConfigError(MPCError, ValueError):
    """Invalid controller configuration."""


class InvalidInput(MPCError, ValueError):
    """Malformed or mismatched telemetry fields."""


class DegenerateFit(MPCError):
    """Too few or degenerate points for the reference polynomial fit."""


class SolverError(MPCError):
    """The nonlinear solve did not produce a usable command."""

    def __init__(self, message: str, status=None):
        super().__init__(message)
        self.status = status


class SolverNonConvergent(SolverError):
    """Solver stopped before reaching an acceptable solution."""


class SolverInfeasible(SolverError):
    """Solver ended on a point that violates the equality constraints."""


class SolverTimeout(SolverNonConvergent):
    """Solve exceeded its deadline and was aborted."""
