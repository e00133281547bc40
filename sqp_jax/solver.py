"""SQP Solver implementation.

This module contains the iteration driver of the Sequential Quadratic
Programming solver. Each iteration:

1. Solves a QP subproblem for the search direction s and the multiplier
   estimate u (falling back to an elastic QP when the linearized
   constraints are inconsistent).
2. Performs a line search on a merit function (augmented Lagrangian by
   default, L1 penalty optionally).
3. Evaluates derivatives at the new iterate and updates the Hessian of the
   Lagrangian (damped BFGS, or the exact Hessian when ``hess_fun`` is set).
4. Applies the selected convergence test.

The outer loop is plain Python: user evaluators are black-box callables
whose every call is counted against the evaluation budget, and a monitor
callback may stop the run between iterations. The numerical kernels are
compiled JAX functions.
"""

import dataclasses
import logging
from typing import Any, NamedTuple, Optional

import equinox as eqx
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float

from sqp_jax.convergence import (
    ConvergenceMetrics,
    check_convergence,
    compute_metrics,
    max_constraint_violation,
)
from sqp_jax.evaluation import (
    ProblemFunctions,
    check_derivatives,
    make_differentiator,
    normalize_function_output,
)
from sqp_jax.hessian import (
    bfgs_update,
    compute_lagrangian_gradient,
    make_positive_definite,
)
from sqp_jax.merit import (
    MeritState,
    build_merit_model,
    init_merit_state,
    line_search,
    merit_at,
)
from sqp_jax.options import SQPOptions, normalize_options
from sqp_jax.qp_solver import solve_subproblem
from sqp_jax.scaling import Scaling
from sqp_jax.types import (
    DifferentiateFn,
    EvaluateFn,
    InvalidInputError,
    Status,
    TraceFlag,
)
from sqp_jax.utils import as_matrix, as_vector

logger = logging.getLogger(__name__)


class SQPState(eqx.Module):
    """State for the SQP solver.

    All arrays live in the internal (scaled) space. A new state is created
    at every iteration.

    Attributes:
        x: Current iterate.
        f_val: Objective value f(x_k).
        c_val: Constraint values g(x_k), equalities first.
        grad: Gradient of the objective at x_k.
        jac: Constraint Jacobian at x_k (m x n).
        hessian: Positive-definite approximation of the Lagrangian Hessian.
        multipliers: Multiplier estimate of the general constraints.
        multipliers_lower: Multipliers of the lower bounds.
        multipliers_upper: Multipliers of the upper bounds.
        merit_state: Penalty parameters and merit multipliers.
        lower: Lower bounds.
        upper: Upper bounds.
        n_fev: Function evaluations so far.
        n_gev: Gradient evaluations so far.
        n_iter: Completed iterations.
        step_length: Step length of the latest iteration.
        metrics: Convergence metrics of the latest iteration.
        trace: Trace flags of the latest iteration.
        trace_seen: Union of the trace flags of all iterations.
        hessian_reset: Whether H was reset after a failed line search and
            no successful step has been taken since.
        status: Termination status, or None while running.
    """

    x: Float[Array, " n"]
    f_val: Float[Array, ""]
    c_val: Float[Array, " m"]
    grad: Float[Array, " n"]
    jac: Float[Array, "m n"]
    hessian: Float[Array, "n n"]
    multipliers: Float[Array, " m"]
    multipliers_lower: Float[Array, " n"]
    multipliers_upper: Float[Array, " n"]
    merit_state: MeritState
    lower: Float[Array, " n"]
    upper: Float[Array, " n"]
    n_fev: int
    n_gev: int
    n_iter: int
    step_length: float = 0.0
    metrics: Optional[ConvergenceMetrics] = None
    trace: frozenset = frozenset()
    trace_seen: frozenset = frozenset()
    hessian_reset: bool = False
    status: Optional[int] = None


class IterationInfo(NamedTuple):
    """Per-iteration report passed to ``output_fcn``.

    Attributes:
        iteration: Iteration number (1-based).
        n_fev: Function evaluations so far.
        fun: Objective value at the new iterate (unscaled).
        max_violation: Largest constraint violation at the new iterate.
        step_length: Accepted step length α.
        optimality: Optimality measure of the iteration.
        trace: Trace flags of the iteration.
    """

    iteration: int
    n_fev: int
    fun: float
    max_violation: float
    step_length: float
    optimality: float
    trace: frozenset


class SQPStats(NamedTuple):
    """Run statistics returned alongside the solution."""

    fun: float
    constraints: Float[Array, " m"]
    n_fev: int
    n_gev: int
    n_iter: int
    multipliers_lower: Float[Array, " n"]
    multipliers_upper: Float[Array, " n"]
    message: str
    trace: frozenset
    derivative_error: Optional[float] = None


class SQPResult(NamedTuple):
    """Result of `sqp`; unpacks as ``x, stats, multipliers, hessian, status``."""

    x: Float[Array, " n"]
    stats: SQPStats
    multipliers: Float[Array, " m"]
    hessian: Float[Array, "n n"]
    status: int


class SQP(eqx.Module):
    """Sequential Quadratic Programming solver.

    Solves problems of the form:

        minimize    f(x)
        subject to  g_i(x) = 0,   i = 1..nec
                    g_i(x) <= 0,  i = nec+1..m
                    lower <= x <= upper

    Example:
        >>> import jax.numpy as jnp
        >>> def fun(x, args):
        ...     return jnp.sum(x**2), jnp.array([1.0 - x[0] - x[1]])
        >>> solver = SQP(SQPOptions(tol_fun=1e-8))
        >>> result = solver.run(fun, jnp.array([2.0, 0.0]))
        >>> result.status
        1

    Attributes:
        options: Normalized solver configuration.
    """

    options: SQPOptions

    def init(
        self,
        fun: EvaluateFn,
        x0: Any,
        lower: Any = None,
        upper: Any = None,
        grad: Optional[DifferentiateFn] = None,
        args: Any = None,
    ) -> tuple[SQPState, ProblemFunctions, Optional[float]]:
        """Validate the problem and build the initial state.

        Returns:
            The initial state, the bound evaluators and the relative
            derivative-check discrepancy (None unless requested).

        Raises:
            InvalidInputError: If any input is malformed.
        """
        opts = self.options
        x0 = as_vector(x0, "x0")
        n = x0.shape[0]
        if n == 0:
            raise InvalidInputError("x0 must not be empty")
        lower = (
            jnp.full(n, -jnp.inf, dtype=x0.dtype)
            if lower is None
            else as_vector(lower, "lower", n)
        )
        upper = (
            jnp.full(n, jnp.inf, dtype=x0.dtype)
            if upper is None
            else as_vector(upper, "upper", n)
        )
        if bool(jnp.any(jnp.isnan(lower) | jnp.isnan(upper))):
            raise InvalidInputError("bounds must not contain NaN")
        if bool(jnp.any(lower > upper)):
            bad = np.flatnonzero(np.asarray(lower > upper)).tolist()
            raise InvalidInputError(f"lower > upper for variables {bad}")
        x0 = jnp.clip(x0, lower, upper)

        differentiator = make_differentiator(
            grad, opts.diff_min_change, opts.diff_max_change
        )

        f0, g0 = normalize_function_output(fun(x0, args))
        n_fev = 1
        m = g0.shape[0]
        if not (bool(jnp.isfinite(f0)) and bool(jnp.all(jnp.isfinite(g0)))):
            raise InvalidInputError("fun returned non-finite values at x0")
        if opts.nec > m:
            raise InvalidInputError(
                f"nec = {opts.nec} exceeds the number of constraints m = {m}"
            )

        typical_x = (
            None if opts.typical_x is None else as_vector(opts.typical_x, "typical_x", n)
        )
        if opts.scale != 0:
            scaling = Scaling.from_initial_point(x0, f0, g0, opts.scale, typical_x)
        else:
            scaling = Scaling.identity(n, m, dtype=x0.dtype)

        functions = ProblemFunctions(
            fun=fun,
            differentiator=differentiator,
            args=args,
            scaling=scaling,
            upper=upper,
            hess_fun=opts.hess_fun,
            m=m,
        )

        derivative_error = None
        if opts.derivative_check and grad is not None:
            derivative_error, check_fev = check_derivatives(
                fun,
                differentiator,
                x0,
                args,
                upper,
                opts.diff_min_change,
                opts.diff_max_change,
            )
            n_fev += check_fev

        x = scaling.scale_x(x0)
        f_val, c_val = scaling.scale_functions(f0, g0)
        grad_val, jac, fd_fev = functions.differentiate(x, f_val, c_val)
        n_fev += fd_fev
        if not (bool(jnp.all(jnp.isfinite(grad_val))) and bool(jnp.all(jnp.isfinite(jac)))):
            raise InvalidInputError("gradients are not finite at x0")

        if opts.lagrange_multipliers is None:
            multipliers = jnp.zeros(m, dtype=x.dtype)
        else:
            multipliers = scaling.scale_multipliers(
                as_vector(opts.lagrange_multipliers, "lagrange_multipliers", m)
            )

        trace = set(scaling.flags())
        trace.add(
            TraceFlag.L1_MERIT if opts.merit == "l1" else TraceFlag.AUGMENTED_LAGRANGIAN
        )
        if opts.hess_fun is not None:
            hessian = functions.hessian(x, multipliers)
        elif opts.hess_matrix is not None:
            hessian = scaling.scale_hessian(
                as_matrix(opts.hess_matrix, "hess_matrix", (n, n))
            )
        else:
            hessian = jnp.eye(n, dtype=x.dtype)
        hessian, perturbed = make_positive_definite(hessian)
        if bool(perturbed):
            trace.add(TraceFlag.HESSIAN_PERTURBED)

        zeros_n = jnp.zeros(n, dtype=x.dtype)
        state = SQPState(
            x=x,
            f_val=f_val,
            c_val=c_val,
            grad=grad_val,
            jac=jac,
            hessian=hessian,
            multipliers=multipliers,
            multipliers_lower=zeros_n,
            multipliers_upper=zeros_n,
            merit_state=init_merit_state(multipliers),
            lower=scaling.scale_x(lower),
            upper=scaling.scale_x(upper),
            n_fev=n_fev,
            n_gev=1,
            n_iter=0,
            trace=frozenset(trace),
            trace_seen=frozenset(trace),
        )
        return state, functions, derivative_error

    def step(self, state: SQPState, functions: ProblemFunctions) -> SQPState:
        """Perform one SQP iteration and return the new state."""
        opts = self.options
        nec = opts.nec
        n = state.x.shape[0]
        trace = set(functions.scaling.flags())
        trace.add(
            TraceFlag.L1_MERIT if opts.merit == "l1" else TraceFlag.AUGMENTED_LAGRANGIAN
        )

        # QP subproblem
        sub = solve_subproblem(
            state.hessian,
            state.grad,
            state.c_val,
            state.jac,
            nec,
            state.lower - state.x,
            state.upper - state.x,
            opts.elastic_penalty,
        )
        if sub.elastic:
            trace.add(TraceFlag.MODIFIED_SEARCH)
        direction = sub.direction
        qp_multipliers = sub.multipliers
        dHd = jnp.dot(direction, state.hessian @ direction)

        # Line search on the merit function
        model = build_merit_model(
            opts.merit,
            state.merit_state,
            state.f_val,
            state.c_val,
            state.grad,
            state.jac,
            direction,
            qp_multipliers,
            dHd,
            sub.relaxation,
            nec,
        )

        def merit_fn(f_trial, c_trial, alpha):
            return merit_at(
                opts.merit, model.state, f_trial, c_trial, alpha, qp_multipliers, nec
            )

        remaining = opts.fun_eval_budget(n) - state.n_fev
        ls = line_search(
            functions.evaluate,
            merit_fn,
            state.x,
            direction,
            state.f_val,
            state.c_val,
            state.lower,
            state.upper,
            model.value,
            model.slope,
            max(1, min(opts.max_line_search_fun, remaining)),
        )
        n_fev = state.n_fev + ls.n_evals
        n_iter = state.n_iter + 1

        if ls.alpha == 0.0:
            return self._recover(
                state, sub, model.state, trace, n_fev, n_iter, functions
            )

        # Derivatives at the new iterate
        x_new = ls.x
        grad_new, jac_new, fd_fev = functions.differentiate(x_new, ls.f_val, ls.c_val)
        n_fev += fd_fev
        step = x_new - state.x

        merit_state = model.state
        if opts.merit != "l1":
            merit_state = merit_state._replace(
                multipliers=merit_state.multipliers
                + ls.alpha * (qp_multipliers - merit_state.multipliers)
            )

        # Hessian of the Lagrangian
        if opts.hess_fun is not None:
            hessian, perturbed = make_positive_definite(
                functions.hessian(x_new, qp_multipliers)
            )
            modified = bool(perturbed)
        else:
            y = compute_lagrangian_gradient(
                grad_new, jac_new, qp_multipliers
            ) - compute_lagrangian_gradient(state.grad, state.jac, qp_multipliers)
            update = bfgs_update(state.hessian, step, y)
            hessian = update.hessian
            modified = bool(update.damped)
        if modified:
            trace.add(TraceFlag.HESSIAN_PERTURBED)

        metrics = compute_metrics(
            direction,
            state.grad,
            qp_multipliers,
            state.c_val,
            step,
            ls.c_val,
            self._lagrangian_gradient(grad_new, jac_new, sub),
            nec,
        )
        converged = check_convergence(
            opts.termination, metrics, opts.tol_x, opts.tol_fun, opts.tol_con
        )

        return SQPState(
            x=x_new,
            f_val=ls.f_val,
            c_val=ls.c_val,
            grad=grad_new,
            jac=jac_new,
            hessian=hessian,
            multipliers=qp_multipliers,
            multipliers_lower=sub.multipliers_lower,
            multipliers_upper=sub.multipliers_upper,
            merit_state=merit_state,
            lower=state.lower,
            upper=state.upper,
            n_fev=n_fev,
            n_gev=state.n_gev + 1,
            n_iter=n_iter,
            step_length=ls.alpha,
            metrics=metrics,
            trace=frozenset(trace),
            trace_seen=state.trace_seen | trace,
            hessian_reset=False,
            status=Status.CONVERGED if converged else None,
        )

    def _recover(self, state, sub, merit_state, trace, n_fev, n_iter, functions):
        """Handle a line search that found no decrease of the merit."""
        opts = self.options
        metrics = compute_metrics(
            sub.direction,
            state.grad,
            sub.multipliers,
            state.c_val,
            jnp.zeros_like(state.x),
            state.c_val,
            self._lagrangian_gradient(state.grad, state.jac, sub),
            opts.nec,
        )
        status = None
        hessian = state.hessian
        if check_convergence(
            opts.termination, metrics, opts.tol_x, opts.tol_fun, opts.tol_con
        ):
            status = Status.CONVERGED
        elif not state.hessian_reset and opts.hess_fun is None:
            logger.debug("No merit decrease; resetting the Hessian to the identity")
            hessian = jnp.eye(state.x.shape[0], dtype=state.x.dtype)
            trace.add(TraceFlag.HESSIAN_RESET)
        else:
            status = Status.LINE_SEARCH_FAILED

        return dataclasses.replace(
            state,
            hessian=hessian,
            multipliers=sub.multipliers,
            multipliers_lower=sub.multipliers_lower,
            multipliers_upper=sub.multipliers_upper,
            merit_state=merit_state,
            n_fev=n_fev,
            n_iter=n_iter,
            step_length=0.0,
            metrics=metrics,
            trace=frozenset(trace),
            trace_seen=state.trace_seen | trace,
            hessian_reset=True,
            status=status,
        )

    @staticmethod
    def _lagrangian_gradient(grad, jac, sub):
        """Lagrangian gradient including the bound multipliers."""
        return (
            compute_lagrangian_gradient(grad, jac, sub.multipliers)
            + sub.multipliers_upper
            - sub.multipliers_lower
        )

    def terminate(self, state: SQPState) -> Optional[int]:
        """Termination status after an iteration, or None to continue."""
        if state.status is not None:
            return state.status
        if state.n_iter >= self.options.max_iter:
            return Status.MAX_ITERATIONS
        if state.n_fev >= self.options.fun_eval_budget(state.x.shape[0]):
            return Status.MAX_FUNCTION_EVALUATIONS
        return None

    def iteration_info(
        self, state: SQPState, functions: ProblemFunctions
    ) -> IterationInfo:
        f, c = functions.scaling.unscale_functions(state.f_val, state.c_val)
        optimality = 0.0 if state.metrics is None else float(state.metrics.kkt)
        return IterationInfo(
            iteration=state.n_iter,
            n_fev=state.n_fev,
            fun=float(f),
            max_violation=float(max_constraint_violation(c, self.options.nec)),
            step_length=state.step_length,
            optimality=optimality,
            trace=state.trace,
        )

    def postprocess(
        self,
        state: SQPState,
        functions: ProblemFunctions,
        status: int,
        derivative_error: Optional[float] = None,
    ) -> SQPResult:
        """Map the final state back to the user's space."""
        scaling = functions.scaling
        f, c = scaling.unscale_functions(state.f_val, state.c_val)
        stats = SQPStats(
            fun=float(f),
            constraints=c,
            n_fev=state.n_fev,
            n_gev=state.n_gev,
            n_iter=state.n_iter,
            multipliers_lower=scaling.unscale_bound_multipliers(
                state.multipliers_lower
            ),
            multipliers_upper=scaling.unscale_bound_multipliers(
                state.multipliers_upper
            ),
            message=Status.MESSAGES[status],
            trace=state.trace_seen,
            derivative_error=derivative_error,
        )
        return SQPResult(
            x=scaling.unscale_x(state.x),
            stats=stats,
            multipliers=scaling.unscale_multipliers(state.multipliers),
            hessian=scaling.unscale_hessian(state.hessian),
            status=status,
        )

    def run(
        self,
        fun: EvaluateFn,
        x0: Any,
        lower: Any = None,
        upper: Any = None,
        grad: Optional[DifferentiateFn] = None,
        args: Any = None,
    ) -> SQPResult:
        """Iterate from x0 until a termination condition holds."""
        opts = self.options
        state, functions, derivative_error = self.init(
            fun, x0, lower, upper, grad, args
        )
        if opts.display in ("iter", "trace"):
            logger.info(
                "%5s %6s %15s %12s %10s %12s",
                "iter",
                "f-evals",
                "f(x)",
                "max constr",
                "step",
                "optimality",
            )

        status = None
        while status is None:
            state = self.step(state, functions)
            info = self.iteration_info(state, functions)
            self._log_iteration(info)
            status = self.terminate(state)
            if opts.output_fcn is not None:
                stop = opts.output_fcn(functions.scaling.unscale_x(state.x), info)
                if stop and status != Status.CONVERGED:
                    status = Status.USER_STOPPED

        self._log_final(status)
        return self.postprocess(state, functions, status, derivative_error)

    def _log_iteration(self, info: IterationInfo) -> None:
        display = self.options.display
        if display not in ("iter", "trace"):
            return
        logger.info(
            "%5d %6d %15.6e %12.4e %10.3e %12.4e",
            info.iteration,
            info.n_fev,
            info.fun,
            info.max_violation,
            info.step_length,
            info.optimality,
        )
        if display == "trace":
            logger.info("      trace: %s", " ".join(sorted(info.trace)))

    def _log_final(self, status: int) -> None:
        display = self.options.display
        if display == "off" or (display == "notify" and status == Status.CONVERGED):
            return
        logger.info("%s (status %d)", Status.MESSAGES[status], status)


def sqp(
    fun: EvaluateFn,
    x0: Any,
    options: Any = None,
    lower: Any = None,
    upper: Any = None,
    grad: Optional[DifferentiateFn] = None,
    args: Any = None,
) -> SQPResult:
    """Minimize ``fun`` subject to its constraints and simple bounds.

    Args:
        fun: ``fun(x, args) -> (f, g)`` with the objective f and the
            constraint vector g (equalities first, ``g = []`` when
            unconstrained).
        x0: Initial point; projected onto the bounds.
        options: `SQPOptions`, a mapping of named options, a legacy options
            vector, or None for defaults.
        lower: Lower bounds (default -inf).
        upper: Upper bounds (default +inf).
        grad: ``grad(x, args) -> (df, dg)`` with dg of shape (m, n);
            ``"autodiff"`` to differentiate a JAX-traceable ``fun``; None for
            finite differences.
        args: Context object passed to every user callable.

    Returns:
        SQPResult unpacking as ``x, stats, multipliers, hessian, status``.

    Raises:
        InvalidInputError: If the problem data or options are malformed.
    """
    solver = SQP(normalize_options(options))
    return solver.run(fun, x0, lower, upper, grad, args)
