"""BFGS Hessian Approximation for SQP.

This module maintains a dense, positive-definite approximation B of the
Hessian of the Lagrangian using the BFGS formula:

    B+ = B - (B d)(B d)^T / (d^T B d) + y y^T / (d^T y)

where d = x_{k+1} - x_k and y = grad L(x_{k+1}, v) - grad L(x_k, v).

Powell's damping replaces y by a convex combination of y and B d whenever
the curvature condition d^T y > 0 is not comfortably satisfied (common in
constrained optimization), so positive definiteness is preserved. As a final
safeguard the candidate matrix is tested with a Cholesky factorization and
rejected if it is not positive definite.
"""

from typing import NamedTuple

import equinox as eqx
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Bool, Float, jaxtyped


class HessianUpdate(NamedTuple):
    """Result of a Hessian update.

    Attributes:
        hessian: The updated (or retained) Hessian approximation.
        damped: Whether Powell damping modified y.
        skipped: Whether the update was skipped or rejected.
    """

    hessian: Float[Array, "n n"]
    damped: Bool[Array, ""]
    skipped: Bool[Array, ""]


@jaxtyped(typechecker=beartype)
def is_positive_definite(H: Float[Array, "n n"]) -> Bool[Array, ""]:
    """Test positive definiteness via a Cholesky factorization.

    JAX returns NaNs instead of raising when the factorization fails.
    """
    L = jnp.linalg.cholesky(H)
    return jnp.all(jnp.isfinite(L))


@eqx.filter_jit
@jaxtyped(typechecker=beartype)
def bfgs_update(
    H: Float[Array, "n n"],
    d: Float[Array, " n"],
    y: Float[Array, " n"],
    damping_threshold: float = 0.2,
    skip_threshold: float = 1e-12,
) -> HessianUpdate:
    """Apply a damped BFGS update to H.

    Powell's damping modifies y to ensure the curvature condition:
        d^T y_damped >= threshold * d^T H d

    The damped gradient difference is:
        y_damped = theta * y + (1 - theta) * H d

    where theta in [0, 1] is chosen to satisfy the condition above.

    If ||d|| is too small or any quantity is non-finite, the update is
    skipped. If the updated matrix fails a Cholesky test it is rejected and
    the previous H is returned.

    Args:
        H: Current positive-definite Hessian approximation.
        d: Step d = x_{k+1} - x_k.
        y: Lagrangian gradient difference.
        damping_threshold: Powell damping threshold (default 0.2).
        skip_threshold: Minimum step norm for an update.

    Returns:
        HessianUpdate with the new matrix and damping/skip flags.
    """
    Hd = H @ d
    dHd = jnp.dot(d, Hd)
    dy = jnp.dot(d, y)
    d_norm = jnp.linalg.norm(d)

    should_skip = (
        (d_norm < skip_threshold)
        | (dHd <= 0.0)
        | ~jnp.isfinite(dHd)
        | ~jnp.isfinite(dy)
        | ~jnp.all(jnp.isfinite(y))
    )
    dHd_safe = jnp.where(should_skip, 1.0, dHd)

    # Powell's damping: choose theta so that d^T y_damped >= threshold * d^T H d
    damped = dy < damping_threshold * dHd_safe
    theta = jnp.where(
        damped,
        (1.0 - damping_threshold) * dHd_safe / jnp.maximum(dHd_safe - dy, 1e-30),
        1.0,
    )
    theta = jnp.clip(theta, 0.0, 1.0)
    y_damped = theta * y + (1.0 - theta) * Hd
    dy_damped = jnp.dot(d, y_damped)
    dy_safe = jnp.where(should_skip | (dy_damped <= 0.0), 1.0, dy_damped)

    candidate = (
        H
        - jnp.outer(Hd, Hd) / dHd_safe
        + jnp.outer(y_damped, y_damped) / dy_safe
    )
    # Remove round-off asymmetry
    candidate = 0.5 * (candidate + candidate.T)

    accept = ~should_skip & (dy_damped > 0.0) & is_positive_definite(candidate)
    return HessianUpdate(
        hessian=jnp.where(accept, candidate, H),
        damped=damped & ~should_skip,
        skipped=~accept,
    )


@eqx.filter_jit
@jaxtyped(typechecker=beartype)
def make_positive_definite(
    H: Float[Array, "n n"],
    min_eigenvalue: float = 1e-8,
) -> tuple[Float[Array, "n n"], Bool[Array, ""]]:
    """Symmetrize H and shift its spectrum to be positive definite.

    When the smallest eigenvalue of the symmetric part is below
    ``min_eigenvalue * max(1, max|eig|)``, the matrix is shifted by a multiple
    of the identity so that it equals that floor.

    Args:
        H: Square matrix, typically a user-supplied Hessian.
        min_eigenvalue: Relative floor for the smallest eigenvalue.

    Returns:
        Tuple of (matrix, perturbed) where perturbed indicates a shift.
    """
    H_sym = 0.5 * (H + H.T)
    eigs = jnp.linalg.eigvalsh(H_sym)
    floor = min_eigenvalue * jnp.maximum(1.0, jnp.max(jnp.abs(eigs)))
    shift = floor - eigs[0]
    perturbed = shift > 0.0
    n = H.shape[0]
    H_pd = H_sym + jnp.where(perturbed, shift, 0.0) * jnp.eye(n, dtype=H.dtype)
    return H_pd, perturbed


@jaxtyped(typechecker=beartype)
def compute_lagrangian_gradient(
    grad_f: Float[Array, " n"],
    jac: Float[Array, "m n"],
    multipliers: Float[Array, " m"],
) -> Float[Array, " n"]:
    """Compute the gradient of the Lagrangian function.

    The Lagrangian is:
        L(x, v) = f(x) + v^T g(x)

    with g_eq(x) = 0 and g_ineq(x) <= 0, v_ineq >= 0. Its gradient with
    respect to x is:
        nabla_x L = nabla f(x) + J^T v

    Args:
        grad_f: Gradient of objective function nabla f(x).
        jac: Jacobian of the constraints (m x n).
        multipliers: Lagrange multipliers (m,).

    Returns:
        Gradient of Lagrangian nabla_x L.
    """
    if jac.shape[0] == 0:
        return grad_f
    return grad_f + jac.T @ multipliers
