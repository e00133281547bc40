"""Convergence tests for SQP.

Four termination policies are available (see `sqp_jax.types.Termination`):

* ``SCHITTKOWSKI``: Karush-Kuhn-Tucker optimality measure and sum of
  constraint violations, as in NLPQL.
* ``GRACE``: half the QP step and half the predicted objective change.
* ``DEFAULT``: actual step, optimality measure and constraint violation.
* ``SLOWED``: like ``DEFAULT`` with the norm of the Lagrangian gradient in
  place of the optimality measure.

The optimality measure and the QP step refer to the subproblem solved at
x_k; the constraint measures and the Lagrangian gradient refer to x_{k+1},
the iterate that is returned.
"""

from typing import NamedTuple

import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from sqp_jax.types import Scalar, Termination


class ConvergenceMetrics(NamedTuple):
    """Quantities tested by the termination policies.

    Attributes:
        kkt: Optimality measure |s^T grad f| + sum |v_i g_i(x_k)|.
        violation_sum: Sum of constraint violations at x_{k+1}.
        max_violation: Largest constraint violation at x_{k+1}.
        max_step: Largest component of the accepted step x_{k+1} - x_k.
        max_direction: Largest component of the QP direction s.
        predicted_change: |grad f^T s|.
        lagrangian_norm: Euclidean norm of the Lagrangian gradient at x_{k+1}.
    """

    kkt: Scalar
    violation_sum: Scalar
    max_violation: Scalar
    max_step: Scalar
    max_direction: Scalar
    predicted_change: Scalar
    lagrangian_norm: Scalar


@jaxtyped(typechecker=beartype)
def max_constraint_violation(c: Float[Array, " m"], nec: int) -> Scalar:
    """max(0, max g_ineq, max |g_eq|)."""
    violation = jnp.concatenate([jnp.abs(c[:nec]), jnp.maximum(c[nec:], 0.0)])
    return jnp.max(violation, initial=0.0)


@jaxtyped(typechecker=beartype)
def compute_metrics(
    direction: Float[Array, " n"],
    grad: Float[Array, " n"],
    multipliers: Float[Array, " m"],
    c_prev: Float[Array, " m"],
    step: Float[Array, " n"],
    c_new: Float[Array, " m"],
    grad_lagrangian: Float[Array, " n"],
    nec: int,
) -> ConvergenceMetrics:
    """Compute the convergence metrics of one iteration.

    Args:
        direction: QP search direction s at x_k.
        grad: Objective gradient at x_k.
        multipliers: QP multipliers of the general constraints.
        c_prev: Constraint values at x_k.
        step: Accepted step x_{k+1} - x_k.
        c_new: Constraint values at x_{k+1}.
        grad_lagrangian: Lagrangian gradient at x_{k+1}.
        nec: Number of equality constraints.

    Returns:
        ConvergenceMetrics for `check_convergence`.
    """
    predicted_change = jnp.abs(jnp.dot(grad, direction))
    kkt = predicted_change + jnp.sum(jnp.abs(multipliers * c_prev))

    violation = jnp.concatenate(
        [jnp.abs(c_new[:nec]), jnp.maximum(c_new[nec:], 0.0)]
    )
    return ConvergenceMetrics(
        kkt=kkt,
        violation_sum=jnp.sum(violation),
        max_violation=jnp.max(violation, initial=0.0),
        max_step=jnp.max(jnp.abs(step), initial=0.0),
        max_direction=jnp.max(jnp.abs(direction), initial=0.0),
        predicted_change=predicted_change,
        lagrangian_norm=jnp.linalg.norm(grad_lagrangian),
    )


def check_convergence(
    policy: int,
    metrics: ConvergenceMetrics,
    tol_x: float,
    tol_fun: float,
    tol_con: float,
) -> bool:
    """Apply a termination policy to the metrics of an iteration.

    Unknown policy numbers fall back to ``Termination.DEFAULT``.
    """
    m = {name: float(value) for name, value in metrics._asdict().items()}

    if policy == Termination.SCHITTKOWSKI:
        return m["kkt"] <= tol_fun and m["violation_sum"] <= tol_fun**0.5
    if policy == Termination.GRACE:
        return (
            0.5 * m["max_direction"] < tol_x
            and 0.5 * m["predicted_change"] < tol_fun
            and m["max_violation"] < tol_con
        )
    if policy == Termination.SLOWED:
        optimality = m["lagrangian_norm"]
    else:
        optimality = m["kkt"]
    return (
        m["max_step"] <= tol_x
        and optimality <= tol_fun
        and m["max_violation"] <= tol_con
    )
