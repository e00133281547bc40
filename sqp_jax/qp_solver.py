"""QP Subproblem Solver for SQP.

This module implements a dense QP solver for the Quadratic Programming
subproblem that arises at each SQP iteration.

The QP subproblem has the form:
    minimize    (1/2) d^T H d + g^T d
    subject to  A_eq d = b_eq
                A_ineq d <= b_ineq

with H positive definite. The solver is the **dual active-set** method of
Goldfarb and Idnani. It starts from the minimizer subject to the
equalities only, which is dual feasible, and adds violated inequalities
one at a time. Each addition moves the primal point and the multipliers
along the direction that keeps the working set satisfied:

* a *full step* makes the new constraint active;
* a *partial step* stops where a working-set multiplier reaches zero and
  drops that constraint;
* a constraint whose normal depends linearly on the working set only
  moves the multipliers.

When neither step is bounded the constraints are inconsistent, and the
QP reports ``feasible=False``. Working-set systems are solved with a
**range-space** method (Cholesky of H plus a small least-squares system in
the constraint space).

For inequality constraints A d <= b, the Lagrangian is:
    L(d, lambda) = (1/2) d^T H d + g^T d + lambda^T (A d - b)

with lambda >= 0 at the solution.

When the linearized constraints are inconsistent, `solve_subproblem`
switches to an elastic subproblem with one relaxation variable shared by
all violated constraints, which is always feasible.
"""

import logging
from typing import NamedTuple, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import jax.scipy.linalg as jsl
import numpy as np
from beartype import beartype
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from sqp_jax.types import Scalar

logger = logging.getLogger(__name__)


class QPState(eqx.Module):
    """State for the dual active-set QP solver.

    ``multipliers`` holds the equality multipliers followed by the
    inequality multipliers. ``candidate`` is the violated inequality being
    added, or -1 when the next iteration selects one.
    """

    d: Float[Array, " n"]
    active_set: Bool[Array, " m_ineq"]
    multipliers: Float[Array, " m"]
    candidate: Int[Array, ""]
    iteration: Int[Array, ""]
    done: Bool[Array, ""]
    infeasible: Bool[Array, ""]


class QPResult(NamedTuple):
    """Result from the QP solver."""

    d: Float[Array, " n"]
    multipliers_eq: Float[Array, " m_eq"]
    multipliers_ineq: Float[Array, " m_ineq"]
    converged: Bool[Array, ""]
    feasible: Bool[Array, ""]
    iterations: Int[Array, ""]


class SubproblemResult(NamedTuple):
    """Search direction and multipliers of the SQP subproblem.

    Attributes:
        direction: Search direction s.
        multipliers: Multipliers of the general constraints (m,).
        multipliers_lower: Multipliers of the lower bounds (n,).
        multipliers_upper: Multipliers of the upper bounds (n,).
        relaxation: Relaxation variable δ of the elastic QP (0 if unused).
        elastic: Whether the elastic subproblem was used.
    """

    direction: Float[Array, " n"]
    multipliers: Float[Array, " m"]
    multipliers_lower: Float[Array, " n"]
    multipliers_upper: Float[Array, " n"]
    relaxation: Scalar
    elastic: bool


@jaxtyped(typechecker=beartype)
def solve_equality_qp(
    H: Float[Array, "n n"],
    g: Float[Array, " n"],
    A: Float[Array, "m n"],
    b: Float[Array, " m"],
    active_mask: Optional[Bool[Array, " m"]] = None,
) -> tuple[Float[Array, " n"], Float[Array, " m"]]:
    """Solve an equality-constrained QP by the range-space method.

    Solves:
        minimize    (1/2) d^T H d + g^T d
        subject to  A[active] d = b[active]

    From stationarity H d + g + A^T lambda = 0 we get
    d = -H^{-1} (g + A^T lambda), and substituting into A d = b:

        (A H^{-1} A^T) lambda = -(b + A H^{-1} g)

    The small m x m system is solved by least squares, so linearly dependent
    active rows still produce finite (minimum-norm) multipliers. Inactive
    rows are zeroed and regularized with a unit diagonal so their multiplier
    is 0.

    Args:
        H: Positive-definite Hessian (n x n).
        g: Linear term (gradient of objective).
        A: Constraint matrix (m x n), rows are constraint normals.
        b: Right-hand side (m,).
        active_mask: Boolean mask (m,) of the rows to enforce (default all).

    Returns:
        Tuple of (d, multipliers) with zero multipliers for inactive rows.
    """
    m = A.shape[0]
    chol = jsl.cho_factor(H, lower=True)
    Hinv_g = jsl.cho_solve(chol, g)
    if m == 0:
        return -Hinv_g, jnp.zeros((0,), dtype=g.dtype)

    if active_mask is None:
        active_mask = jnp.ones(m, dtype=bool)

    A_masked = jnp.where(active_mask[:, None], A, 0.0)
    b_masked = jnp.where(active_mask, b, 0.0)

    Hinv_At = jsl.cho_solve(chol, A_masked.T)  # (n, m)
    reg_diag = jnp.where(active_mask, 0.0, 1.0)
    S = A_masked @ Hinv_At + jnp.diag(reg_diag)
    rhs = -(b_masked + A_masked @ Hinv_g)

    multipliers, _, _, _ = jnp.linalg.lstsq(S, rhs, rcond=1e-12)
    multipliers = jnp.where(active_mask, multipliers, 0.0)
    d = -(Hinv_g + Hinv_At @ multipliers)
    return d, multipliers


def _constraint_step(
    chol: tuple,
    A: Float[Array, "m n"],
    mask: Bool[Array, " m"],
    a_p: Float[Array, " n"],
) -> tuple[Float[Array, " n"], Float[Array, " m"], Scalar]:
    """Primal and dual directions for raising the multiplier of ``a_p``.

    Keeping the working set ``A[mask] d = b[mask]`` satisfied while the
    multiplier of a new constraint grows by one moves the point by ``z``
    and the working-set multipliers by ``dlam``, where

        (A H^{-1} A^T) dlam = -A H^{-1} a_p
        z = -H^{-1} (a_p + A^T dlam)

    Also returns ``a_p^T H^{-1} a_p``, the reference for the dependence test.
    """
    A_masked = jnp.where(mask[:, None], A, 0.0)
    Hinv_At = jsl.cho_solve(chol, A_masked.T)
    Hinv_ap = jsl.cho_solve(chol, a_p)
    S = A_masked @ Hinv_At + jnp.diag(jnp.where(mask, 0.0, 1.0))
    dlam, _, _, _ = jnp.linalg.lstsq(S, -(A_masked @ Hinv_ap), rcond=1e-12)
    dlam = jnp.where(mask, dlam, 0.0)
    z = -(Hinv_ap + Hinv_At @ dlam)
    return z, dlam, a_p @ Hinv_ap


@eqx.filter_jit
@jaxtyped(typechecker=beartype)
def solve_qp(
    H: Float[Array, "n n"],
    g: Float[Array, " n"],
    A_eq: Float[Array, "m_eq n"],
    b_eq: Float[Array, " m_eq"],
    A_ineq: Float[Array, "m_ineq n"],
    b_ineq: Float[Array, " m_ineq"],
    max_iter: Optional[int] = None,
    tol: float = 1e-9,
) -> QPResult:
    """Solve a QP with equality and inequality constraints.

    Solves:
        minimize    (1/2) d^T H d + g^T d
        subject to  A_eq d = b_eq
                    A_ineq d <= b_ineq

    Uses the dual active-set method of Goldfarb and Idnani. The iterate
    starts at the minimizer subject to the equalities alone and every
    iterate is optimal for its working set. Iterations alternate between:

    * selecting the most violated inequality (none left means optimal);
    * stepping towards it along `_constraint_step`. The step length is the
      smaller of the *full* step, which makes the constraint active, and
      the *partial* step, at which the multiplier of a working-set
      inequality reaches zero and that constraint is dropped.

    A candidate whose normal is linearly dependent on the working set has
    no full step, so only the multipliers move. If the partial step is
    unbounded too, the constraints are inconsistent and the loop stops
    with ``feasible=False``. The working set therefore stays linearly
    independent and never exceeds n rows.

    A constraint that is redundant with an active one is never violated,
    so it is never added and its multiplier stays 0.

    Args:
        H: Positive-definite Hessian (n x n).
        g: Linear term of the objective (gradient).
        A_eq: Equality constraint matrix (m_eq x n).
        b_eq: Equality constraint RHS (m_eq,).
        A_ineq: Inequality constraint matrix (m_ineq x n).
        b_ineq: Inequality constraint RHS (m_ineq,).
        max_iter: Maximum iterations, selections and steps both counted
            (default 6 (n + m_ineq) + 20).
        tol: Relative feasibility and linear-dependence tolerance.

    Returns:
        QPResult containing the solution, multipliers, and convergence info.
    """
    n = g.shape[0]
    m_eq = A_eq.shape[0]
    m_ineq = A_ineq.shape[0]
    if max_iter is None:
        max_iter = 6 * (n + m_ineq) + 20

    b_scale = 1.0 + jnp.max(jnp.abs(jnp.concatenate([b_eq, b_ineq])), initial=0.0)
    feas_tol = tol * b_scale

    def eq_residual(d):
        return jnp.max(jnp.abs(A_eq @ d - b_eq), initial=0.0)

    # Case 1 and 2: no inequality constraints (no active-set loop needed)
    if m_ineq == 0:
        d, mult_eq = solve_equality_qp(H, g, A_eq, b_eq)
        finite = jnp.all(jnp.isfinite(d))
        return QPResult(
            d=d,
            multipliers_eq=mult_eq,
            multipliers_ineq=jnp.zeros((0,), dtype=g.dtype),
            converged=finite,
            feasible=finite & (eq_residual(d) <= feas_tol),
            iterations=jnp.array(1),
        )

    # Case 3: Has inequality constraints -> dual active-set method
    A_combined = jnp.concatenate([A_eq, A_ineq], axis=0)
    b_combined = jnp.concatenate([b_eq, b_ineq])
    eq_mask = jnp.ones(m_eq, dtype=bool)
    chol = jsl.cho_factor(H, lower=True)

    # Start from the solution with equality constraints only
    d_init, mult_init = solve_equality_qp(
        H,
        g,
        A_combined,
        b_combined,
        jnp.concatenate([eq_mask, jnp.zeros(m_ineq, dtype=bool)]),
    )
    # Inconsistent equalities leave nothing to add inequalities to
    start_ok = jnp.all(jnp.isfinite(d_init)) & (eq_residual(d_init) <= feas_tol)

    init_state = QPState(
        d=d_init,
        active_set=jnp.zeros(m_ineq, dtype=bool),
        multipliers=mult_init,
        candidate=jnp.array(-1),
        iteration=jnp.array(0),
        done=~start_ok,
        infeasible=~start_ok,
    )

    def cond_fn(state: QPState) -> Bool[Array, ""]:
        return ~state.done & (state.iteration < max_iter)

    def select(state: QPState) -> QPState:
        residuals = A_ineq @ state.d - b_ineq
        violated = (residuals > feas_tol) & ~state.active_set
        any_violated = jnp.any(violated)
        most_violated_idx = jnp.argmax(jnp.where(violated, residuals, -jnp.inf))
        return QPState(
            d=state.d,
            active_set=state.active_set,
            multipliers=state.multipliers,
            candidate=jnp.where(any_violated, most_violated_idx, -1).astype(
                state.candidate.dtype
            ),
            iteration=state.iteration + 1,
            done=~any_violated,
            infeasible=state.infeasible,
        )

    def step(state: QPState) -> QPState:
        p = state.candidate
        a_p = A_ineq[p]
        mask = jnp.concatenate([eq_mask, state.active_set])
        z, dlam, a_Hinv_a = _constraint_step(chol, A_combined, mask, a_p)

        # Full step: make the candidate active
        curvature = -(a_p @ z)
        dependent = curvature <= tol * a_Hinv_a
        violation = jnp.maximum(a_p @ state.d - b_ineq[p], 0.0)
        t_full = jnp.where(
            dependent, jnp.inf, violation / jnp.where(dependent, 1.0, curvature)
        )

        # Partial step: first active inequality multiplier to reach zero
        dlam_in = dlam[m_eq:]
        lam_in = state.multipliers[m_eq:]
        dlam_tol = tol * (1.0 + jnp.max(jnp.abs(dlam), initial=0.0))
        blocking = state.active_set & (dlam_in < -dlam_tol)
        ratios = jnp.where(
            blocking,
            jnp.maximum(lam_in, 0.0) / -jnp.where(blocking, dlam_in, -1.0),
            jnp.inf,
        )
        k = jnp.argmin(ratios)
        t_partial = ratios[k]

        t = jnp.minimum(t_full, t_partial)
        infeasible = jnp.isinf(t)
        t = jnp.where(infeasible, 0.0, t)
        full = ~infeasible & (t_full <= t_partial)
        partial = ~infeasible & ~full

        d = state.d + jnp.where(dependent, 0.0, t) * z
        multipliers = (state.multipliers + t * dlam).at[m_eq + p].add(t)
        multipliers = jnp.where(
            partial, multipliers.at[m_eq + k].set(0.0), multipliers
        )
        active_set = jnp.where(
            full,
            state.active_set.at[p].set(True),
            jnp.where(partial, state.active_set.at[k].set(False), state.active_set),
        )
        return QPState(
            d=d,
            active_set=active_set,
            multipliers=multipliers,
            candidate=jnp.where(full, -1, p).astype(p.dtype),
            iteration=state.iteration + 1,
            done=infeasible,
            infeasible=infeasible,
        )

    def body_fn(state: QPState) -> QPState:
        return jax.lax.cond(state.candidate < 0, select, step, state)

    final_state = jax.lax.while_loop(cond_fn, body_fn, init_state)

    d = final_state.d
    ineq_residual = jnp.max(A_ineq @ d - b_ineq, initial=0.0)
    feasible = (
        jnp.all(jnp.isfinite(d))
        & (eq_residual(d) <= feas_tol)
        & (ineq_residual <= feas_tol)
    )

    # Complementary slackness: zero multipliers off the active set
    multipliers_ineq = jnp.where(
        final_state.active_set,
        jnp.maximum(final_state.multipliers[m_eq:], 0.0),
        0.0,
    )

    return QPResult(
        d=d,
        multipliers_eq=final_state.multipliers[:m_eq],
        multipliers_ineq=multipliers_ineq,
        converged=final_state.done & ~final_state.infeasible,
        feasible=feasible,
        iterations=final_state.iteration,
    )


def _finite_indices(bounds: Float[Array, " n"]) -> np.ndarray:
    """Static (numpy) indices of the finite entries of a bound vector."""
    return np.flatnonzero(np.isfinite(np.asarray(bounds)))


def solve_subproblem(
    H: Float[Array, "n n"],
    grad: Float[Array, " n"],
    c_val: Float[Array, " m"],
    jac: Float[Array, "m n"],
    nec: int,
    lower: Float[Array, " n"],
    upper: Float[Array, " n"],
    elastic_penalty: float = 1e3,
    max_iter: Optional[int] = None,
) -> SubproblemResult:
    """Solve the SQP subproblem for the search direction.

    Solves:
        minimize    (1/2) s^T H s + grad^T s
        subject to  J_eq s + c_eq = 0
                    J_ineq s + c_ineq <= 0
                    lower <= s <= upper

    where ``lower``/``upper`` are the variable bounds shifted by the current
    iterate (infinite entries allowed).

    If this QP does not converge to a feasible point, the elastic subproblem

        minimize    (1/2) s^T H s + grad^T s + (1/2) ρ δ²
        subject to  J_eq s + (1 - δ) c_eq = 0
                    J_j s + (1 - δ) c_j <= 0    (c_j >= 0)
                    J_j s + c_j <= 0            (c_j < 0)
                    lower <= s <= upper,  0 <= δ <= 1

    is solved instead. (s, δ) = (0, 1) is feasible whenever the current
    iterate satisfies its bounds.

    Args:
        H: Positive-definite Hessian approximation.
        grad: Objective gradient.
        c_val: Constraint values (equalities first).
        jac: Constraint Jacobian (m x n).
        nec: Number of equality constraints.
        lower: Lower bounds on s.
        upper: Upper bounds on s.
        elastic_penalty: Weight ρ of the relaxation variable.
        max_iter: Maximum active-set iterations.

    Returns:
        SubproblemResult with the direction and multipliers.
    """
    n = grad.shape[0]
    m = c_val.shape[0]
    dtype = grad.dtype
    lower_idx = _finite_indices(lower)
    upper_idx = _finite_indices(upper)
    m_ineq = m - nec

    identity = jnp.eye(n, dtype=dtype)
    J_eq, c_eq = jac[:nec], c_val[:nec]
    J_in, c_in = jac[nec:], c_val[nec:]

    # Bound rows: s_i <= upper_i and -s_i <= -lower_i
    B = jnp.concatenate([identity[upper_idx], -identity[lower_idx]], axis=0)
    b_bounds = jnp.concatenate([upper[upper_idx], -lower[lower_idx]])

    qp = solve_qp(
        H,
        grad,
        J_eq,
        -c_eq,
        jnp.concatenate([J_in, B], axis=0),
        jnp.concatenate([-c_in, b_bounds]),
        max_iter=max_iter,
    )
    if bool(qp.converged) and bool(qp.feasible):
        return _assemble(qp.d, qp, nec, m_ineq, n, upper_idx, lower_idx,
                         jnp.zeros((), dtype=dtype), elastic=False)

    logger.debug(
        "QP subproblem inconsistent after %d iterations; using the elastic subproblem",
        int(qp.iterations),
    )

    # Elastic subproblem in z = (s, δ)
    H_aug = jnp.zeros((n + 1, n + 1), dtype=dtype)
    H_aug = H_aug.at[:n, :n].set(H).at[n, n].set(elastic_penalty)
    g_aug = jnp.concatenate([grad, jnp.zeros((1,), dtype=dtype)])

    relax = c_in >= 0.0
    A_eq_aug = jnp.concatenate([J_eq, -c_eq[:, None]], axis=1)
    A_in_aug = jnp.concatenate(
        [J_in, jnp.where(relax, -c_in, 0.0)[:, None]], axis=1
    )
    B_aug = jnp.concatenate([B, jnp.zeros((B.shape[0], 1), dtype=dtype)], axis=1)
    delta_rows = jnp.zeros((2, n + 1), dtype=dtype).at[0, n].set(-1.0).at[1, n].set(1.0)

    qp = solve_qp(
        H_aug,
        g_aug,
        A_eq_aug,
        -c_eq,
        jnp.concatenate([A_in_aug, B_aug, delta_rows], axis=0),
        jnp.concatenate([-c_in, b_bounds, jnp.array([0.0, 1.0], dtype=dtype)]),
        max_iter=max_iter,
    )
    if not bool(qp.converged):
        logger.debug(
            "Elastic subproblem stopped after %d iterations without converging",
            int(qp.iterations),
        )
    return _assemble(qp.d[:n], qp, nec, m_ineq, n, upper_idx, lower_idx,
                     qp.d[n], elastic=True)


def _assemble(
    d: Float[Array, " n"],
    qp: QPResult,
    nec: int,
    m_ineq: int,
    n: int,
    upper_idx: np.ndarray,
    lower_idx: np.ndarray,
    relaxation: Scalar,
    elastic: bool,
) -> SubproblemResult:
    """Split the QP multipliers into general-constraint and bound parts."""
    n_upper = upper_idx.shape[0]
    n_lower = lower_idx.shape[0]
    mult_in = qp.multipliers_ineq
    general = jnp.concatenate([qp.multipliers_eq, mult_in[:m_ineq]])
    upper_mult = jnp.zeros(n, dtype=d.dtype).at[upper_idx].set(
        mult_in[m_ineq : m_ineq + n_upper]
    )
    lower_mult = jnp.zeros(n, dtype=d.dtype).at[lower_idx].set(
        mult_in[m_ineq + n_upper : m_ineq + n_upper + n_lower]
    )
    return SubproblemResult(
        direction=d,
        multipliers=general,
        multipliers_lower=lower_mult,
        multipliers_upper=upper_mult,
        relaxation=relaxation,
        elastic=elastic,
    )
