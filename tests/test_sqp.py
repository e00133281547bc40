"""Tests for the SQP driver."""

import logging

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from sqp_jax import (
    SQP,
    InvalidInputError,
    IterationInfo,
    SQPOptions,
    Status,
    Termination,
    TraceFlag,
    sqp,
)

jax.config.update("jax_enable_x64", True)

TIGHT = {"tol_x": 1e-6, "tol_fun": 1e-8, "tol_con": 1e-8}


def shifted_quadratic(x, args):
    return (x[0] - 2.0) ** 2 + (x[1] - 3.0) ** 2, jnp.zeros((0,))


def shifted_quadratic_grad(x, args):
    return jnp.array([2.0 * (x[0] - 2.0), 2.0 * (x[1] - 3.0)]), jnp.zeros((0, 2))


def linear_over_disk(x, args):
    return x[0] + x[1], jnp.array([x[0] ** 2 + x[1] ** 2 - 1.0])


def linear_over_disk_grad(x, args):
    return jnp.array([1.0, 1.0]), jnp.array([[2.0 * x[0], 2.0 * x[1]]])


def rosenbrock(x, args):
    return 100.0 * (x[1] - x[0] ** 2) ** 2 + (1.0 - x[0]) ** 2, jnp.zeros((0,))


class TestBasicProblems:
    """The reference problems of the solver."""

    def test_unconstrained_quadratic(self):
        result = sqp(shifted_quadratic, [0.0, 0.0])

        assert result.status == Status.CONVERGED
        np.testing.assert_allclose(result.x, [2.0, 3.0], atol=1e-5)
        np.testing.assert_allclose(result.stats.fun, 0.0, atol=1e-8)
        assert result.stats.message == Status.MESSAGES[Status.CONVERGED]

    def test_result_unpacks(self):
        x, stats, multipliers, hessian, status = sqp(
            shifted_quadratic, [0.0, 0.0], grad=shifted_quadratic_grad
        )
        assert x.shape == (2,)
        assert multipliers.shape == (0,)
        assert hessian.shape == (2, 2)
        assert status == Status.CONVERGED
        assert stats.n_iter >= 1
        assert stats.n_gev == stats.n_iter + 1

    def test_linear_objective_over_disk(self):
        result = sqp(linear_over_disk, [0.0, 0.0], TIGHT, grad=linear_over_disk_grad)

        assert result.status == Status.CONVERGED
        r = 1.0 / np.sqrt(2.0)
        np.testing.assert_allclose(result.x, [-r, -r], atol=1e-5)
        np.testing.assert_allclose(result.stats.fun, -np.sqrt(2.0), atol=1e-5)
        # Stationarity: 1 + v * 2 x_i = 0
        np.testing.assert_allclose(result.multipliers, [r], atol=1e-4)

    def test_lower_bound(self):
        def fun(x, args):
            return x[0], jnp.zeros((0,))

        result = sqp(fun, [5.0], lower=[1.0])

        assert result.status == Status.CONVERGED
        np.testing.assert_allclose(result.x, [1.0], atol=1e-8)
        np.testing.assert_allclose(result.stats.multipliers_lower, [1.0], atol=1e-6)
        np.testing.assert_allclose(result.stats.multipliers_upper, [0.0], atol=1e-12)

    def test_iteration_limit(self):
        result = sqp(rosenbrock, [-1.2, 1.0], {"MaxIter": 1})

        assert result.status == Status.MAX_ITERATIONS
        assert result.stats.n_iter == 1

    def test_bound_length_mismatch_raises_before_evaluating(self):
        calls = []

        def fun(x, args):
            calls.append(x)
            return jnp.sum(x**2), jnp.zeros((0,))

        with pytest.raises(InvalidInputError, match="lower"):
            sqp(fun, [1.0, 2.0], lower=[0.0])
        assert calls == []


class TestSolutionProperties:
    def test_exact_hessian_takes_newton_step(self):
        """With the exact Hessian of a quadratic the first step is exact."""
        Q = jnp.array([[3.0, 1.0], [1.0, 2.0]])
        a = jnp.array([1.0, -2.0])
        iterates = []

        def fun(x, args):
            r = x - a
            return r @ Q @ r, jnp.zeros((0,))

        def grad(x, args):
            return 2.0 * Q @ (x - a), jnp.zeros((0, 2))

        def record(x, info):
            iterates.append(np.asarray(x))
            return False

        options = SQPOptions(hess_fun=lambda x, v, args: 2.0 * Q, output_fcn=record)
        result = sqp(fun, [10.0, 10.0], options, grad=grad)

        np.testing.assert_allclose(iterates[0], a, atol=1e-10)
        assert result.status == Status.CONVERGED
        assert result.stats.n_iter <= 2

    def test_upper_bounds_active(self):
        def fun(x, args):
            return -x[0] - x[1], jnp.zeros((0,))

        result = sqp(fun, [0.5, 0.5], lower=[0.0, 0.0], upper=[1.0, 1.0])

        assert result.status == Status.CONVERGED
        np.testing.assert_allclose(result.x, [1.0, 1.0], atol=1e-8)
        np.testing.assert_allclose(
            result.stats.multipliers_upper, [1.0, 1.0], atol=1e-6
        )

    def test_complementarity(self):
        """Inactive inequalities carry zero multipliers."""

        def fun(x, args):
            f = (x[0] - 1.0) ** 2 + (x[1] - 2.0) ** 2
            return f, jnp.array([x[0] + x[1] - 2.0, x[0] - 5.0])

        def grad(x, args):
            df = jnp.array([2.0 * (x[0] - 1.0), 2.0 * (x[1] - 2.0)])
            return df, jnp.array([[1.0, 1.0], [1.0, 0.0]])

        result = sqp(fun, [0.0, 0.0], TIGHT, grad=grad)

        assert result.status == Status.CONVERGED
        np.testing.assert_allclose(result.x, [0.5, 1.5], atol=1e-5)
        np.testing.assert_allclose(result.multipliers, [1.0, 0.0], atol=1e-4)
        assert np.all(np.asarray(result.multipliers) >= 0.0)
        assert np.all(np.asarray(result.stats.constraints) <= 1e-7)

    def test_restart_from_solution(self):
        first = sqp(shifted_quadratic, [0.0, 0.0], grad=shifted_quadratic_grad)
        second = sqp(
            shifted_quadratic,
            first.x,
            {"HessMatrix": first.hessian},
            grad=shifted_quadratic_grad,
        )

        assert second.status == Status.CONVERGED
        assert second.stats.n_iter == 1
        np.testing.assert_allclose(second.x, first.x, atol=1e-8)

    def test_start_outside_bounds_is_projected(self):
        visited = []

        def fun(x, args):
            visited.append(np.asarray(x))
            return (x[0] - 2.0) ** 2, jnp.zeros((0,))

        result = sqp(fun, [10.0], lower=[-1.0], upper=[1.0])

        np.testing.assert_allclose(visited[0], [1.0])
        assert all(v[0] <= 1.0 for v in visited)
        np.testing.assert_allclose(result.x, [1.0], atol=1e-8)

    def test_args_are_forwarded(self):
        def fun(x, target):
            return jnp.sum((x - target) ** 2), jnp.zeros((0,))

        result = sqp(fun, [0.0, 0.0], grad="autodiff", args=jnp.array([1.0, -1.0]))

        np.testing.assert_allclose(result.x, [1.0, -1.0], atol=1e-6)


class TestScaling:
    """A badly scaled problem is solved the same way as its well-scaled twin."""

    @staticmethod
    def well_scaled(x, args):
        f = (x[0] - 2.0) ** 2 + (x[1] - 3.0) ** 2
        return f, jnp.array([x[0] + x[1] - 4.0])

    @staticmethod
    def badly_scaled(y, args):
        f = (y[0] / 1000.0 - 2.0) ** 2 + (y[1] - 3.0) ** 2
        return f, jnp.array([y[0] / 1000.0 + y[1] - 4.0])

    def test_same_solution(self):
        reference = sqp(self.well_scaled, [1.0, 1.0], TIGHT, grad="autodiff")
        options = dict(TIGHT, scale=-1.0)
        scaled = sqp(self.badly_scaled, [1000.0, 1.0], options, grad="autodiff")

        assert reference.status == Status.CONVERGED
        assert scaled.status == Status.CONVERGED
        np.testing.assert_allclose(reference.x, [1.5, 2.5], atol=1e-6)
        np.testing.assert_allclose(
            scaled.x / jnp.array([1000.0, 1.0]), reference.x, atol=1e-6
        )
        np.testing.assert_allclose(scaled.multipliers, reference.multipliers, atol=1e-5)
        np.testing.assert_allclose(reference.multipliers, [1.0], atol=1e-5)

    def test_trace_flags(self):
        options = dict(TIGHT, scale=-1.0)
        result = sqp(self.badly_scaled, [1000.0, 1.0], options, grad="autodiff")

        assert TraceFlag.SCALED_VARIABLES in result.stats.trace
        assert TraceFlag.SCALED_OBJECTIVE in result.stats.trace

    def test_unscaled_run_has_no_scaling_flags(self):
        result = sqp(self.well_scaled, [1.0, 1.0], grad="autodiff")
        assert TraceFlag.SCALED_VARIABLES not in result.stats.trace
        assert TraceFlag.AUGMENTED_LAGRANGIAN in result.stats.trace


class TestTermination:
    def test_output_fcn_stops_the_run(self):
        infos = []

        def monitor(x, info):
            infos.append(info)
            return info.iteration >= 2

        result = sqp(rosenbrock, [-1.2, 1.0], {"OutputFcn": monitor})

        assert result.status == Status.USER_STOPPED
        assert result.stats.n_iter == 2
        assert [info.iteration for info in infos] == [1, 2]
        assert all(isinstance(info, IterationInfo) for info in infos)

    def test_function_evaluation_budget(self):
        result = sqp(rosenbrock, [-1.2, 1.0], {"MaxFunEvals": 5})

        assert result.status == Status.MAX_FUNCTION_EVALUATIONS
        assert result.stats.n_fev >= 5

    def test_line_search_failure_after_hessian_reset(self):
        """A wrong gradient sign makes every step uphill."""

        def fun(x, args):
            return x[0] ** 2, jnp.zeros((0,))

        def wrong_grad(x, args):
            return jnp.array([-2.0 * x[0]]), jnp.zeros((0, 1))

        result = sqp(fun, [1.0], grad=wrong_grad)

        assert result.status == Status.LINE_SEARCH_FAILED
        assert result.stats.n_iter == 2
        assert TraceFlag.HESSIAN_RESET in result.stats.trace
        np.testing.assert_allclose(result.x, [1.0])

    @pytest.mark.parametrize(
        "policy",
        [
            Termination.SCHITTKOWSKI,
            Termination.DEFAULT,
            Termination.GRACE,
            Termination.SLOWED,
        ],
    )
    def test_policies_converge(self, policy):
        options = SQPOptions(termination=policy)
        result = sqp(
            linear_over_disk, [0.0, 0.0], options, grad=linear_over_disk_grad
        )

        assert result.status == Status.CONVERGED
        r = 1.0 / np.sqrt(2.0)
        np.testing.assert_allclose(result.x, [-r, -r], atol=1e-2)

    def test_legacy_options_vector(self):
        result = sqp(shifted_quadratic, [0.0, 0.0], [0, 1e-6, 1e-6, 1e-6])

        assert result.status == Status.CONVERGED
        np.testing.assert_allclose(result.x, [2.0, 3.0], atol=1e-5)


class TestMeritFunctions:
    def test_l1_merit(self):
        result = sqp(
            linear_over_disk, [0.0, 0.0], {"merit": "l1"}, grad=linear_over_disk_grad
        )

        assert result.status == Status.CONVERGED
        r = 1.0 / np.sqrt(2.0)
        np.testing.assert_allclose(result.x, [-r, -r], atol=1e-3)
        assert TraceFlag.L1_MERIT in result.stats.trace
        assert TraceFlag.AUGMENTED_LAGRANGIAN not in result.stats.trace

    def test_inconsistent_linearization_uses_elastic_step(self):
        """At x1 = 0 the linearized equality 0 * s = 1 has no solution."""

        def fun(x, args):
            return (x[0] - 2.0) ** 2 + x[1] ** 2, jnp.array([x[0] ** 2 - 1.0])

        def grad(x, args):
            return (
                jnp.array([2.0 * (x[0] - 2.0), 2.0 * x[1]]),
                jnp.array([[2.0 * x[0], 0.0]]),
            )

        options = dict(TIGHT, merit="l1", nec=1)
        result = sqp(fun, [0.0, 0.0], options, grad=grad)

        assert result.status == Status.CONVERGED
        assert TraceFlag.MODIFIED_SEARCH in result.stats.trace
        np.testing.assert_allclose(result.x, [1.0, 0.0], atol=1e-6)
        np.testing.assert_allclose(result.stats.constraints, [0.0], atol=1e-8)


class TestDerivatives:
    def test_autodiff_matches_finite_differences(self):
        fd = sqp(linear_over_disk, [0.0, 0.0])
        ad = sqp(linear_over_disk, [0.0, 0.0], grad="autodiff")

        assert ad.status == Status.CONVERGED
        np.testing.assert_allclose(ad.x, fd.x, atol=1e-3)
        # Finite differences cost function evaluations
        assert fd.stats.n_fev > ad.stats.n_fev

    def test_derivative_check_reports_error(self, caplog):
        def wrong(x, args):
            df, dg = linear_over_disk_grad(x, args)
            return 3.0 * df, dg

        with caplog.at_level(logging.WARNING, logger="sqp_jax.evaluation"):
            result = sqp(
                linear_over_disk,
                [0.5, 0.5],
                {"DerivativeCheck": "on", "MaxIter": 1},
                grad=wrong,
            )

        assert result.stats.derivative_error > 0.1
        assert any(r.name == "sqp_jax.evaluation" for r in caplog.records)

    def test_no_derivative_check_by_default(self):
        result = sqp(linear_over_disk, [0.5, 0.5], grad=linear_over_disk_grad)
        assert result.stats.derivative_error is None


class TestInvalidInput:
    def test_empty_x0(self):
        with pytest.raises(InvalidInputError):
            sqp(shifted_quadratic, [])

    def test_crossed_bounds(self):
        with pytest.raises(InvalidInputError, match="lower > upper"):
            sqp(shifted_quadratic, [0.0, 0.0], lower=[0.0, 2.0], upper=[1.0, 1.0])

    def test_too_many_equalities(self):
        with pytest.raises(InvalidInputError, match="nec"):
            sqp(linear_over_disk, [0.0, 0.0], {"nec": 2})

    def test_non_finite_start(self):
        def fun(x, args):
            return jnp.log(x[0]), jnp.zeros((0,))

        with pytest.raises(InvalidInputError, match="non-finite"):
            sqp(fun, [-1.0])

    def test_hessian_shape(self):
        with pytest.raises(InvalidInputError, match="hess_matrix"):
            sqp(shifted_quadratic, [0.0, 0.0], {"HessMatrix": jnp.eye(3)})

    def test_multiplier_length(self):
        with pytest.raises(InvalidInputError, match="lagrange_multipliers"):
            sqp(linear_over_disk, [0.0, 0.0], {"LagrangeMultipliers": [1.0, 2.0]})

    def test_unknown_option(self):
        with pytest.raises(InvalidInputError):
            sqp(shifted_quadratic, [0.0, 0.0], {"Tolerance": 1.0})

    def test_invalid_input_status(self):
        assert InvalidInputError.status == Status.INVALID_INPUT


class TestDisplay:
    def test_iteration_log(self, caplog):
        with caplog.at_level(logging.INFO, logger="sqp_jax.solver"):
            result = sqp(shifted_quadratic, [0.0, 0.0], {"Display": "iter"})

        records = [r for r in caplog.records if r.name == "sqp_jax.solver"]
        # Header, one line per iteration and the final message
        assert len(records) == result.stats.n_iter + 2
        assert "converged" in records[-1].getMessage()

    def test_trace_lists_flags(self, caplog):
        with caplog.at_level(logging.INFO, logger="sqp_jax.solver"):
            sqp(shifted_quadratic, [0.0, 0.0], {"Display": "trace"})

        messages = [r.getMessage() for r in caplog.records if r.name == "sqp_jax.solver"]
        assert any("trace:" in m and "aS" in m for m in messages)

    def test_silent_by_default(self, caplog):
        with caplog.at_level(logging.INFO, logger="sqp_jax.solver"):
            sqp(shifted_quadratic, [0.0, 0.0])

        assert not [r for r in caplog.records if r.name == "sqp_jax.solver"]

    def test_notify_reports_failures_only(self, caplog):
        with caplog.at_level(logging.INFO, logger="sqp_jax.solver"):
            sqp(shifted_quadratic, [0.0, 0.0], {"Display": "notify"})
            sqp(rosenbrock, [-1.2, 1.0], {"Display": "notify", "MaxIter": 1})

        messages = [r.getMessage() for r in caplog.records if r.name == "sqp_jax.solver"]
        assert len(messages) == 1
        assert "(status 0)" in messages[0]


class TestSolverObject:
    def test_init_and_step(self):
        solver = SQP(SQPOptions())
        state, functions, derivative_error = solver.init(
            shifted_quadratic, jnp.array([0.0, 0.0])
        )
        assert state.n_fev == 3  # x0 and one forward difference per variable
        assert state.n_iter == 0
        assert derivative_error is None

        state = solver.step(state, functions)
        assert state.n_iter == 1
        # The full step overshoots; interpolation halves it
        np.testing.assert_allclose(state.step_length, 0.5, rtol=1e-5)
        assert solver.terminate(state) is None
