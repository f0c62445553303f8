"""
Tests for the NLP solver adapters and their status classification.
"""

import numpy as np
import pytest

from control.errors import ConfigError
from control.solver import (
    NLPProblem,
    SLSQPSolver,
    SolveStatus,
    TrustConstrSolver,
    build_solver,
)


def _toy_problem(target=(1.0, 2.0), lower=(-10.0, -10.0), upper=(10.0, 10.0), rhs=1.0):
    """min (z0 - a)^2 + (z1 - b)^2  s.t.  z0 + z1 = rhs."""
    a, b = target

    def objective(z):
        return float((z[0] - a) ** 2 + (z[1] - b) ** 2)

    def gradient(z):
        return np.array([2.0 * (z[0] - a), 2.0 * (z[1] - b)])

    def constraints(z):
        return np.array([z[0] + z[1] - rhs])

    def jacobian(z):
        return np.array([[1.0, 1.0]])

    return NLPProblem(
        x0=np.zeros(2),
        lower=np.array(lower, dtype=float),
        upper=np.array(upper, dtype=float),
        objective=objective,
        gradient=gradient,
        constraints=constraints,
        jacobian=jacobian,
    )


class TestBuildSolver:
    def test_default_is_slsqp(self):
        assert isinstance(build_solver(), SLSQPSolver)

    def test_trust_constr_by_name(self):
        solver = build_solver("Trust-Constr", max_iterations=50)
        assert isinstance(solver, TrustConstrSolver)
        assert solver.max_iterations == 50

    def test_unknown_name_rejected(self):
        with pytest.raises(ConfigError):
            build_solver("ipopt")

    def test_problem_reports_variable_count(self):
        assert _toy_problem().n_vars == 2


class TestConvergence:
    @pytest.mark.parametrize("name", ["slsqp", "trust-constr"])
    def test_equality_constrained_quadratic(self, name):
        """Optimum of the toy problem is (0, 1)."""
        solver = build_solver(name, max_iterations=500)
        output = solver.solve(_toy_problem())

        assert output.status is SolveStatus.CONVERGED
        np.testing.assert_allclose(output.x, [0.0, 1.0], atol=1e-4)
        assert output.constraint_violation <= solver.feasibility_tolerance
        assert output.objective == pytest.approx(2.0, abs=1e-3)

    def test_active_bound(self):
        """Upper bound on z1 forces the optimum to (0.5, 0.5)."""
        output = SLSQPSolver().solve(_toy_problem(upper=(10.0, 0.5)))
        assert output.status is SolveStatus.CONVERGED
        np.testing.assert_allclose(output.x, [0.5, 0.5], atol=1e-5)

    def test_solution_within_bounds(self):
        problem = _toy_problem(upper=(10.0, 0.5))
        output = SLSQPSolver().solve(problem)
        assert np.all(output.x >= problem.lower)
        assert np.all(output.x <= problem.upper)


class TestFailureClassification:
    def test_incompatible_bounds_and_constraint_never_converge(self):
        """z0 + z1 = 5 cannot hold with both variables in [0, 1]."""
        problem = _toy_problem(lower=(0.0, 0.0), upper=(1.0, 1.0), rhs=5.0)
        output = SLSQPSolver().solve(problem)
        assert output.status in (SolveStatus.INFEASIBLE, SolveStatus.NON_CONVERGED)
        assert output.constraint_violation > 1.0

    def test_infeasible_only_when_solver_reports_it(self):
        solver = SLSQPSolver()
        status, _ = solver._classify(_toy_problem(), np.array([0.5, 0.5]), False, True)
        assert status is SolveStatus.INFEASIBLE

    def test_large_residual_is_non_converged(self):
        """A stop far from the constraint manifold is not proof of infeasibility."""
        solver = SLSQPSolver()
        status, violation = solver._classify(_toy_problem(), np.array([3.0, 3.0]), False)
        assert status is SolveStatus.NON_CONVERGED
        assert violation == pytest.approx(5.0)

    def test_claimed_success_with_large_residual_is_non_converged(self):
        solver = SLSQPSolver()
        status, _ = solver._classify(_toy_problem(), np.array([3.0, 3.0]), True)
        assert status is SolveStatus.NON_CONVERGED

    def test_deadline_exceeded_is_timeout(self):
        problem = _toy_problem()
        output = SLSQPSolver(deadline_s=1e-9).solve(problem)
        assert output.status is SolveStatus.TIMEOUT
        np.testing.assert_array_equal(output.x, problem.x0)
        assert "deadline" in output.message

    def test_timeout_for_trust_constr(self):
        output = TrustConstrSolver(deadline_s=1e-9).solve(_toy_problem())
        assert output.status is SolveStatus.TIMEOUT

    def test_no_deadline_never_times_out(self):
        output = SLSQPSolver(deadline_s=None).solve(_toy_problem())
        assert output.status is not SolveStatus.TIMEOUT

    def test_non_finite_solution_is_not_converged(self):
        solver = SLSQPSolver()
        status, violation = solver._classify(_toy_problem(), np.array([np.nan, 0.0]), True)
        assert status is SolveStatus.NON_CONVERGED
        assert violation == float("inf")

    def test_unsuccessful_but_feasible_is_non_converged(self):
        solver = SLSQPSolver()
        status, _ = solver._classify(_toy_problem(), np.array([0.5, 0.5]), False)
        assert status is SolveStatus.NON_CONVERGED
