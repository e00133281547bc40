"""Problem-structure interface.

`Problem` collects an objective, linear constraints, bounds and a nonlinear
constraint function in the toolbox layout, and `solve_problem` converts it
into the ``fun(x, args) -> (f, g)`` form used by `sqp`. The constraint vector
is ordered

    [A_eq x - b_eq, ceq(x), A_ineq x - b_ineq, c(x)]

so that the equalities come first and ``nec = len(b_eq) + len(ceq)``.
"""

import dataclasses
from typing import Any, Callable, Optional

import equinox as eqx
import jax.numpy as jnp

from sqp_jax.options import normalize_options
from sqp_jax.solver import SQP, SQPResult
from sqp_jax.types import InvalidInputError
from sqp_jax.utils import as_float_array, as_matrix, as_vector, default_float


class Problem(eqx.Module):
    """A constrained minimization problem.

    Attributes:
        objective: ``objective(x, args) -> f``, or ``(f, grad f)`` when
            ``grad_obj`` is set.
        x0: Initial point.
        A_ineq: Linear inequality matrix, ``A_ineq x <= b_ineq``.
        b_ineq: Linear inequality right-hand side.
        A_eq: Linear equality matrix, ``A_eq x = b_eq``.
        b_eq: Linear equality right-hand side.
        lower: Lower bounds.
        upper: Upper bounds.
        nonlcon: ``nonlcon(x, args) -> (c, ceq)`` with ``c <= 0`` and
            ``ceq = 0``, or ``(c, ceq, grad c, grad ceq)`` (gradients as rows)
            when ``grad_con`` is set.
        options: Anything accepted by `sqp_jax.options.normalize_options`.
        grad_obj: Whether the objective also returns its gradient.
        grad_con: Whether ``nonlcon`` also returns its gradients.
        args: Context object passed to ``objective`` and ``nonlcon``.
    """

    objective: Callable = eqx.field(static=True)
    x0: Any
    A_ineq: Any = None
    b_ineq: Any = None
    A_eq: Any = None
    b_eq: Any = None
    lower: Any = None
    upper: Any = None
    nonlcon: Optional[Callable] = eqx.field(static=True, default=None)
    options: Any = None
    grad_obj: bool = eqx.field(static=True, default=False)
    grad_con: bool = eqx.field(static=True, default=False)
    args: Any = None


def _linear_part(A: Any, b: Any, n: int, name: str):
    if b is None:
        if A is not None and as_float_array(A).size > 0:
            raise InvalidInputError(f"A_{name} given without b_{name}")
        return jnp.zeros((0, n), dtype=default_float()), jnp.zeros(
            (0,), dtype=default_float()
        )
    b = jnp.ravel(as_float_array(b))
    return as_matrix(A, f"A_{name}", (b.shape[0], n)), b


def _split_nonlcon(out: Any, with_gradients: bool):
    expected = 4 if with_gradients else 2
    if not isinstance(out, (tuple, list)) or len(out) != expected:
        raise InvalidInputError(f"nonlcon must return {expected} values")
    c, ceq = (
        jnp.zeros((0,), dtype=default_float())
        if v is None
        else jnp.ravel(as_float_array(v))
        for v in out[:2]
    )
    if not with_gradients:
        return c, ceq, None, None
    return c, ceq, out[2], out[3]


def _gradient_rows(value: Any, rows: int, n: int, name: str):
    if value is None:
        return jnp.zeros((rows, n), dtype=default_float())
    return as_matrix(value, name, (rows, n))


def solve_problem(problem: Problem) -> SQPResult:
    """Solve a `Problem` with the SQP solver.

    ``nonlcon`` is evaluated once at ``x0`` to size the constraint vector;
    that call is not counted as a function evaluation.

    Returns:
        SQPResult whose multipliers follow the constraint ordering above.

    Raises:
        InvalidInputError: If the problem data are malformed.
    """
    x0 = as_vector(problem.x0, "x0")
    n = x0.shape[0]
    A_eq, b_eq = _linear_part(problem.A_eq, problem.b_eq, n, "eq")
    A_ineq, b_ineq = _linear_part(problem.A_ineq, problem.b_ineq, n, "ineq")
    nonlcon = problem.nonlcon
    grad_con = problem.grad_con

    n_c = n_ceq = 0
    if nonlcon is not None:
        c0, ceq0, _, _ = _split_nonlcon(nonlcon(x0, problem.args), grad_con)
        n_c, n_ceq = c0.shape[0], ceq0.shape[0]

    def nonlinear(x, args):
        if nonlcon is None:
            empty = jnp.zeros((0,), dtype=x.dtype)
            return empty, empty, None, None
        return _split_nonlcon(nonlcon(x, args), grad_con)

    def fun(x, args):
        f = problem.objective(x, args)
        if problem.grad_obj:
            f = f[0]
        c, ceq, _, _ = nonlinear(x, args)
        g = jnp.concatenate([A_eq @ x - b_eq, ceq, A_ineq @ x - b_ineq, c])
        return f, g

    def grad(x, args):
        _, df = problem.objective(x, args)
        c, ceq, dc, dceq = nonlinear(x, args)
        dg = jnp.concatenate(
            [
                A_eq,
                _gradient_rows(dceq, n_ceq, n, "nonlcon equality gradient"),
                A_ineq,
                _gradient_rows(dc, n_c, n, "nonlcon inequality gradient"),
            ],
            axis=0,
        )
        return df, dg

    analytic = problem.grad_obj and (nonlcon is None or grad_con)
    options = normalize_options(problem.options)
    options = dataclasses.replace(options, nec=b_eq.shape[0] + n_ceq)

    solver = SQP(options)
    return solver.run(
        fun,
        x0,
        problem.lower,
        problem.upper,
        grad if analytic else None,
        problem.args,
    )
