"""Merit Functions and Line Search for SQP.

This module implements the two merit functions used to globalize the SQP
iteration and the line search along the QP direction.

The L1-exact penalty merit function (Han-Powell) is:
    φ(x; ρ) = f(x) + ρ * (‖g_eq(x)‖_1 + ‖max(0, g_ineq(x))‖_1)

The augmented Lagrangian merit function (Schittkowski) is:
    ψ(x, v; r) = f(x) + Σ_{j∈J} (v_j g_j + ½ r_j g_j²) - ½ Σ_{j∈K} v_j² / r_j

where J holds the equalities and the inequalities with g_j >= -v_j / r_j,
and K holds the remaining inequalities. It is searched jointly in the
variables and the multipliers along (s, u - v), where u are the QP
multipliers.

Penalties are increased when the current values do not make the QP
direction a descent direction for the merit function.
"""

import logging
from collections.abc import Callable
from typing import NamedTuple

import equinox as eqx
import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from sqp_jax.types import Scalar, Vector

logger = logging.getLogger(__name__)


class MeritState(NamedTuple):
    """Penalty data carried between iterations.

    Attributes:
        penalty: L1 penalty weight ρ.
        penalties: Augmented Lagrangian penalties r (m,).
        multipliers: Augmented Lagrangian multiplier estimate v (m,).
    """

    penalty: Scalar
    penalties: Float[Array, " m"]
    multipliers: Float[Array, " m"]


class MeritModel(NamedTuple):
    """The merit function at the current iterate along the QP direction.

    Attributes:
        state: Penalty data after the adaptive update.
        value: Merit value at α = 0.
        slope: Directional derivative of the merit at α = 0.
    """

    state: MeritState
    value: Scalar
    slope: Scalar


class LineSearchResult(NamedTuple):
    """Result from the line search.

    Attributes:
        alpha: The step size found (0 if nothing decreased the merit).
        x: The accepted point.
        f_val: Function value at the accepted point.
        c_val: Constraint values at the accepted point.
        merit: Merit value at the accepted point.
        success: Whether the sufficient-decrease condition was met.
        n_evals: Number of function evaluations.
    """

    alpha: float
    x: Float[Array, " n"]
    f_val: Scalar
    c_val: Float[Array, " m"]
    merit: float
    success: bool
    n_evals: int


def init_merit_state(multipliers: Float[Array, " m"]) -> MeritState:
    m = multipliers.shape[0]
    return MeritState(
        penalty=jnp.ones((), dtype=multipliers.dtype),
        penalties=jnp.ones((m,), dtype=multipliers.dtype),
        multipliers=multipliers,
    )


@jaxtyped(typechecker=beartype)
def constraint_violation(
    c: Float[Array, " m"],
    nec: int,
) -> Scalar:
    """L1 norm of the constraint violation: Σ|g_eq| + Σ max(0, g_ineq)."""
    is_eq = jnp.arange(c.shape[0]) < nec
    return jnp.sum(jnp.where(is_eq, jnp.abs(c), jnp.maximum(c, 0.0)))


@jaxtyped(typechecker=beartype)
def compute_l1_merit(
    f_val: Scalar,
    c_val: Float[Array, " m"],
    penalty: Scalar,
    nec: int,
) -> Scalar:
    """Compute the L1-exact penalty merit function value.

    The merit function is:
        φ(x; ρ) = f(x) + ρ * (‖g_eq(x)‖_1 + ‖max(0, g_ineq(x))‖_1)

    Args:
        f_val: Objective function value f(x).
        c_val: Constraint values, equalities first.
        penalty: Penalty parameter ρ.
        nec: Number of equality constraints.

    Returns:
        Merit function value φ(x; ρ).
    """
    return f_val + penalty * constraint_violation(c_val, nec)


@jaxtyped(typechecker=beartype)
def l1_slope(
    grad: Float[Array, " n"],
    c_val: Float[Array, " m"],
    jac: Float[Array, "m n"],
    direction: Float[Array, " n"],
    penalty: Scalar,
    nec: int,
) -> Scalar:
    """Directional derivative of the L1 merit along the QP direction.

    Uses the linearization g + J d of the constraints, which is exact for
    the first-order change of the violation:
        φ'(0) = ∇f·d + ρ (viol(g + J d) - viol(g))
    """
    linearized = c_val + jac @ direction
    return jnp.dot(grad, direction) + penalty * (
        constraint_violation(linearized, nec) - constraint_violation(c_val, nec)
    )


@jaxtyped(typechecker=beartype)
def update_l1_penalty(
    current_penalty: Scalar,
    multipliers: Float[Array, " m"],
    margin: float = 1.1,
) -> Scalar:
    """Update the L1 penalty parameter based on Lagrange multipliers.

    The penalty should be larger than the maximum absolute multiplier
    to ensure the merit function provides a descent direction.

    ``ρ >= margin * max(abs(v_i))``

    The penalty never decreases and is at least 1.
    """
    max_mult = jnp.max(jnp.abs(multipliers), initial=0.0)
    new_penalty = jnp.maximum(current_penalty, margin * max_mult)
    return jnp.maximum(new_penalty, 1.0)


@jaxtyped(typechecker=beartype)
def compute_augmented_lagrangian(
    f_val: Scalar,
    c_val: Float[Array, " m"],
    multipliers: Float[Array, " m"],
    penalties: Float[Array, " m"],
    nec: int,
) -> Scalar:
    """Compute the augmented Lagrangian merit function value.

    Args:
        f_val: Objective function value f(x).
        c_val: Constraint values, equalities first, inequalities g <= 0.
        multipliers: Multiplier estimate v (inequality entries >= 0).
        penalties: Penalty parameters r > 0.
        nec: Number of equality constraints.

    Returns:
        Merit function value ψ(x, v; r).
    """
    is_eq = jnp.arange(c_val.shape[0]) < nec
    active = is_eq | (c_val >= -multipliers / penalties)
    terms = jnp.where(
        active,
        multipliers * c_val + 0.5 * penalties * c_val**2,
        -0.5 * multipliers**2 / penalties,
    )
    return f_val + jnp.sum(terms)


@jaxtyped(typechecker=beartype)
def augmented_lagrangian_slope(
    grad: Float[Array, " n"],
    c_val: Float[Array, " m"],
    jac: Float[Array, "m n"],
    direction: Float[Array, " n"],
    multipliers: Float[Array, " m"],
    qp_multipliers: Float[Array, " m"],
    penalties: Float[Array, " m"],
    nec: int,
) -> Scalar:
    """Derivative of ψ(x + α d, v + α (u - v)) at α = 0."""
    is_eq = jnp.arange(c_val.shape[0]) < nec
    active = is_eq | (c_val >= -multipliers / penalties)
    weights = jnp.where(active, multipliers + penalties * c_val, 0.0)
    grad_x = grad + jac.T @ weights
    grad_v = jnp.where(active, c_val, -multipliers / penalties)
    return jnp.dot(grad_x, direction) + jnp.dot(grad_v, qp_multipliers - multipliers)


@jaxtyped(typechecker=beartype)
def update_augmented_penalties(
    penalties: Float[Array, " m"],
    multipliers: Float[Array, " m"],
    qp_multipliers: Float[Array, " m"],
    dHd: Scalar,
    relaxation: Scalar,
) -> Float[Array, " m"]:
    """Schittkowski's penalty update.

        r_j >= 2 m (u_j - v_j)² / ((1 - δ) dᵀHd)

    where δ is the relaxation of the elastic QP (0 for a regular QP). The
    penalties never decrease, and are left unchanged for a vanishing step.
    """
    m = penalties.shape[0]
    denom = (1.0 - relaxation) * dHd
    usable = denom > 1e-14
    candidate = 2.0 * m * (qp_multipliers - multipliers) ** 2 / jnp.where(
        usable, denom, 1.0
    )
    return jnp.where(usable, jnp.maximum(penalties, candidate), penalties)


def build_merit_model(
    kind: str,
    state: MeritState,
    f_val: Scalar,
    c_val: Float[Array, " m"],
    grad: Vector,
    jac: Float[Array, "m n"],
    direction: Vector,
    qp_multipliers: Float[Array, " m"],
    dHd: Scalar,
    relaxation: Scalar,
    nec: int,
    max_increases: int = 8,
) -> MeritModel:
    """Update the penalties and evaluate the merit model at α = 0.

    If the direction is still not a descent direction after the regular
    update, the penalties are multiplied by 10 up to ``max_increases`` times.

    Args:
        kind: "augmented_lagrangian" or "l1".
        state: Penalty data from the previous iteration.
        f_val: Objective value at the current iterate.
        c_val: Constraint values at the current iterate.
        grad: Objective gradient at the current iterate.
        jac: Constraint Jacobian at the current iterate.
        direction: QP search direction.
        qp_multipliers: Multipliers of the QP for the general constraints.
        dHd: Curvature of the QP model along the direction.
        relaxation: Relaxation variable of the elastic QP (0 if unused).
        nec: Number of equality constraints.
        max_increases: Bound on the extra penalty increases.

    Returns:
        The merit model used by the line search.
    """
    if kind == "l1":
        penalty = update_l1_penalty(state.penalty, qp_multipliers)
        state = state._replace(penalty=penalty)
        slope = l1_slope(grad, c_val, jac, direction, penalty, nec)
        for _ in range(max_increases):
            if float(slope) < 0.0 or float(constraint_violation(c_val, nec)) == 0.0:
                break
            penalty = 10.0 * penalty
            slope = l1_slope(grad, c_val, jac, direction, penalty, nec)
        state = state._replace(penalty=penalty)
        value = compute_l1_merit(f_val, c_val, penalty, nec)
        return MeritModel(state=state, value=value, slope=slope)

    penalties = update_augmented_penalties(
        state.penalties, state.multipliers, qp_multipliers, dHd, relaxation
    )
    slope = augmented_lagrangian_slope(
        grad, c_val, jac, direction, state.multipliers, qp_multipliers, penalties, nec
    )
    for _ in range(max_increases):
        if float(slope) < 0.0 or penalties.shape[0] == 0:
            break
        penalties = 10.0 * penalties
        slope = augmented_lagrangian_slope(
            grad,
            c_val,
            jac,
            direction,
            state.multipliers,
            qp_multipliers,
            penalties,
            nec,
        )
    state = state._replace(penalties=penalties)
    value = compute_augmented_lagrangian(
        f_val, c_val, state.multipliers, penalties, nec
    )
    return MeritModel(state=state, value=value, slope=slope)


def merit_at(
    kind: str,
    state: MeritState,
    f_val: Scalar,
    c_val: Float[Array, " m"],
    alpha: float,
    qp_multipliers: Float[Array, " m"],
    nec: int,
) -> Scalar:
    """Merit value at a trial point x + α d."""
    if kind == "l1":
        return compute_l1_merit(f_val, c_val, state.penalty, nec)
    multipliers = state.multipliers + alpha * (qp_multipliers - state.multipliers)
    return compute_augmented_lagrangian(
        f_val, c_val, multipliers, state.penalties, nec
    )


@eqx.filter_jit
def _interpolate_step(
    alpha: Scalar,
    merit_0: Scalar,
    merit_alpha: Scalar,
    slope: Scalar,
    lower_fraction: float,
    upper_fraction: float,
) -> Scalar:
    """Minimizer of the quadratic through φ(0), φ'(0) and φ(α), safeguarded
    to [lower_fraction * α, upper_fraction * α]."""
    curvature = 2.0 * (merit_alpha - merit_0 - alpha * slope)
    alpha_q = jnp.where(
        curvature > 0.0,
        -slope * alpha**2 / jnp.where(curvature > 0.0, curvature, 1.0),
        upper_fraction * alpha,
    )
    alpha_q = jnp.where(jnp.isfinite(alpha_q), alpha_q, upper_fraction * alpha)
    return jnp.clip(alpha_q, lower_fraction * alpha, upper_fraction * alpha)


def line_search(
    evaluate: Callable,
    merit_fn: Callable,
    x: Vector,
    direction: Vector,
    f_val: Scalar,
    c_val: Float[Array, " m"],
    lower: Vector,
    upper: Vector,
    merit_0: Scalar,
    slope: Scalar,
    max_evals: int,
    c1: float = 1e-4,
    lower_fraction: float = 0.1,
    upper_fraction: float = 0.5,
    alpha_init: float = 1.0,
) -> LineSearchResult:
    """Perform a safeguarded interpolating line search on a merit function.

    Finds α such that the Armijo condition is satisfied:
        φ(α) ≤ φ(0) + c1 * α * φ'(0)

    Rejected steps are shortened to the minimizer of the quadratic
    interpolating φ(0), φ'(0) and φ(α), clipped to
    ``[lower_fraction * α, upper_fraction * α]``. Trial points are clipped to
    the bounds. Non-finite merit values count as rejections.

    If the evaluation budget runs out, the best trial point seen is
    returned with ``success=False``; if none decreased the merit, α = 0 and
    the current point is returned.

    Args:
        evaluate: ``evaluate(x) -> (f, g)`` at an internal-space point.
        merit_fn: ``merit_fn(f, g, alpha) -> φ``.
        x: Current point.
        direction: Search direction.
        f_val: Objective value at the current point.
        c_val: Constraint values at the current point.
        lower: Lower bounds (internal space).
        upper: Upper bounds (internal space).
        merit_0: Merit value at α = 0.
        slope: Directional derivative of the merit at α = 0.
        max_evals: Maximum number of function evaluations.
        c1: Armijo condition parameter (default 1e-4).
        lower_fraction: Smallest allowed reduction factor of α.
        upper_fraction: Largest allowed reduction factor of α.
        alpha_init: Initial step size (default 1.0).

    Returns:
        LineSearchResult with the accepted step and function values.
    """
    merit_0_f = float(merit_0)
    # A non-descent slope degrades to a simple decrease test
    slope_f = min(float(slope), 0.0)

    alpha = alpha_init
    best = None
    n_evals = 0

    while n_evals < max_evals:
        x_trial = jnp.clip(x + alpha * direction, lower, upper)
        f_trial, c_trial = evaluate(x_trial)
        n_evals += 1
        merit = float(merit_fn(f_trial, c_trial, alpha))
        if not np.isfinite(merit):
            merit = np.inf

        if merit < merit_0_f and (best is None or merit < best.merit):
            best = LineSearchResult(
                alpha=alpha,
                x=x_trial,
                f_val=f_trial,
                c_val=c_trial,
                merit=merit,
                success=False,
                n_evals=n_evals,
            )

        if merit <= merit_0_f + c1 * alpha * slope_f:
            return LineSearchResult(
                alpha=alpha,
                x=x_trial,
                f_val=f_trial,
                c_val=c_trial,
                merit=merit,
                success=True,
                n_evals=n_evals,
            )

        logger.debug("Line search rejected alpha=%.3e (merit %.6e)", alpha, merit)
        if np.isfinite(merit):
            alpha = float(
                _interpolate_step(
                    jnp.asarray(alpha),
                    jnp.asarray(merit_0_f),
                    jnp.asarray(merit),
                    jnp.asarray(slope_f),
                    lower_fraction,
                    upper_fraction,
                )
            )
        else:
            alpha = lower_fraction * alpha

    if best is not None:
        return best._replace(n_evals=n_evals)
    return LineSearchResult(
        alpha=0.0,
        x=x,
        f_val=f_val,
        c_val=c_val,
        merit=merit_0_f,
        success=False,
        n_evals=n_evals,
    )

