"""Function and gradient adapters.

User evaluators come in several flavours: an objective/constraint function,
an optional analytic gradient function, and optionally an exact Hessian of
the Lagrangian. This module normalizes them into `ProblemFunctions`, which
evaluates (f, g) and (grad f, J) in the solver's internal (scaled) space.

Gradients are provided by a differentiator:

* `AnalyticGradient` calls a user-supplied ``grad(x, args)``.
* `FiniteDifferenceGradient` uses forward differences with perturbations
  clipped to ``[diff_min_change, diff_max_change]``.
* `AutodiffGradient` differentiates a JAX-traceable ``fun`` with
  ``jax.jacfwd``.
"""

import abc
import logging
from typing import Any, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float

from sqp_jax.scaling import Scaling
from sqp_jax.types import (
    DifferentiateFn,
    EvaluateFn,
    HessianFn,
    InvalidInputError,
)
from sqp_jax.utils import args_closure, as_float_array, as_matrix, default_float

logger = logging.getLogger(__name__)


def normalize_function_output(
    out: Any, m: Optional[int] = None
) -> tuple[Float[Array, ""], Float[Array, " m"]]:
    """Convert the raw output of ``fun`` into a scalar f and a vector g."""
    if not isinstance(out, (tuple, list)) or len(out) != 2:
        raise InvalidInputError(
            "fun must return a pair (f, g); use g = [] for unconstrained problems"
        )
    f, g = out
    f = as_float_array(f)
    if f.size != 1:
        raise InvalidInputError(f"objective must be a scalar, got shape {f.shape}")
    f = jnp.reshape(f, ())
    if g is None:
        g = jnp.zeros((0,), dtype=default_float())
    else:
        g = jnp.ravel(as_float_array(g))
    if m is not None and g.shape[0] != m:
        raise InvalidInputError(
            f"fun returned {g.shape[0]} constraint values, expected {m}"
        )
    return f, g


def normalize_gradient_output(
    out: Any, n: int, m: int
) -> tuple[Float[Array, " n"], Float[Array, "m n"]]:
    """Convert the raw output of ``grad`` into grad f (n,) and J (m, n)."""
    if not isinstance(out, (tuple, list)) or len(out) != 2:
        raise InvalidInputError("grad must return a pair (df, dg)")
    df, dg = out
    df = jnp.ravel(as_float_array(df))
    if df.shape[0] != n:
        raise InvalidInputError(
            f"objective gradient has length {df.shape[0]}, expected {n}"
        )
    if dg is None:
        dg = jnp.zeros((m, n), dtype=default_float())
    else:
        dg = as_matrix(dg, "constraint gradient", (m, n))
    return df, dg


class AbstractDifferentiator(eqx.Module):
    """Computes (grad f, J) at an external-space point."""

    @abc.abstractmethod
    def __call__(
        self,
        fun: EvaluateFn,
        x: Float[Array, " n"],
        args: Any,
        f: Float[Array, ""],
        g: Float[Array, " m"],
        upper: Float[Array, " n"],
    ) -> tuple[Float[Array, " n"], Float[Array, "m n"], int]:
        """Return the objective gradient, the constraint Jacobian and the
        number of extra function evaluations spent computing them."""


class AnalyticGradient(AbstractDifferentiator):
    grad_fn: DifferentiateFn = eqx.field(static=True)

    def __call__(self, fun, x, args, f, g, upper):
        df, dg = normalize_gradient_output(
            self.grad_fn(x, args), x.shape[0], g.shape[0]
        )
        return df, dg, 0


class FiniteDifferenceGradient(AbstractDifferentiator):
    """Forward-difference gradients.

    The perturbation of variable i is
    ``clip(sqrt(eps) * max(|x_i|, 1), diff_min_change, diff_max_change)``,
    taken backwards when a forward step would cross the upper bound.
    """

    diff_min_change: float = 1e-8
    diff_max_change: float = 0.1

    def __call__(self, fun, x, args, f, g, upper):
        n = x.shape[0]
        m = g.shape[0]
        x_np = np.asarray(x, dtype=float)
        upper_np = np.asarray(upper, dtype=float)
        eps = float(jnp.finfo(x.dtype).eps)
        steps = np.clip(
            np.sqrt(eps) * np.maximum(np.abs(x_np), 1.0),
            self.diff_min_change,
            self.diff_max_change,
        )
        steps = np.where(x_np + steps > upper_np, -steps, steps)

        df_cols = []
        dg_cols = []
        for i in range(n):
            x_pert = x_np.copy()
            x_pert[i] += steps[i]
            # Use the perturbation actually representable in floating point
            h = float(x_pert[i] - x_np[i])
            f_pert, g_pert = normalize_function_output(
                fun(as_float_array(x_pert), args), m
            )
            df_cols.append((f_pert - f) / h)
            dg_cols.append((g_pert - g) / h)

        df = jnp.stack(df_cols)
        dg = jnp.stack(dg_cols, axis=1) if m > 0 else jnp.zeros((0, n), x.dtype)
        return df, dg, n


class AutodiffGradient(AbstractDifferentiator):
    """Forward-mode automatic differentiation through a JAX-traceable ``fun``."""

    def __call__(self, fun, x, args, f, g, upper):
        def flat_fun(y):
            f_y, g_y = args_closure(fun, args)(y)
            f_y = jnp.reshape(jnp.asarray(f_y, dtype=y.dtype), ())
            g_y = jnp.ravel(jnp.asarray(g_y, dtype=y.dtype))
            return f_y, g_y

        df, dg = jax.jacfwd(flat_fun)(x)
        return df, jnp.reshape(dg, (g.shape[0], x.shape[0])), 0


def make_differentiator(
    grad: Any, diff_min_change: float, diff_max_change: float
) -> AbstractDifferentiator:
    """Select a differentiator for the ``grad`` argument of `sqp`.

    ``None`` selects finite differences, ``"autodiff"`` selects
    `AutodiffGradient`, and a callable is used as the analytic gradient.
    """
    if grad is None:
        return FiniteDifferenceGradient(diff_min_change, diff_max_change)
    if isinstance(grad, AbstractDifferentiator):
        return grad
    if isinstance(grad, str):
        if grad == "autodiff":
            return AutodiffGradient()
        raise InvalidInputError(f"unknown gradient method {grad!r}")
    if not callable(grad):
        raise InvalidInputError("grad must be None, 'autodiff' or a callable")
    return AnalyticGradient(grad)


class ProblemFunctions(eqx.Module):
    """User evaluators bound to their context and the run's scaling.

    All methods take and return internal-space quantities.

    Attributes:
        fun: Objective/constraint evaluator ``fun(x, args) -> (f, g)``.
        differentiator: Source of first derivatives.
        args: Context object passed to every user callable.
        scaling: Scale factors of the run.
        upper: External upper bounds (for finite-difference stepping).
        hess_fun: Optional exact Lagrangian Hessian ``hess_fun(x, v, args)``.
        m: Number of constraints.
    """

    fun: EvaluateFn = eqx.field(static=True)
    differentiator: AbstractDifferentiator
    args: Any
    scaling: Scaling
    upper: Float[Array, " n"]
    hess_fun: Optional[HessianFn] = eqx.field(static=True, default=None)
    m: int = eqx.field(static=True, default=0)

    def evaluate(
        self, x_int: Float[Array, " n"]
    ) -> tuple[Float[Array, ""], Float[Array, " m"]]:
        """Evaluate (f, g) at an internal-space point (one function evaluation)."""
        x = self.scaling.unscale_x(x_int)
        f, g = normalize_function_output(self.fun(x, self.args), self.m)
        return self.scaling.scale_functions(f, g)

    def differentiate(
        self,
        x_int: Float[Array, " n"],
        f_int: Float[Array, ""],
        g_int: Float[Array, " m"],
    ) -> tuple[Float[Array, " n"], Float[Array, "m n"], int]:
        """Evaluate (grad f, J) at an internal-space point.

        Returns:
            The scaled gradient, the scaled Jacobian and the number of
            function evaluations spent by finite differences.
        """
        x = self.scaling.unscale_x(x_int)
        f, g = self.scaling.unscale_functions(f_int, g_int)
        df, dg, n_fev = self.differentiator(self.fun, x, self.args, f, g, self.upper)
        df_int, dg_int = self.scaling.scale_gradients(df, dg)
        return df_int, dg_int, n_fev

    def hessian(
        self, x_int: Float[Array, " n"], v_int: Float[Array, " m"]
    ) -> Float[Array, "n n"]:
        """Evaluate the exact Lagrangian Hessian in internal space."""
        n = x_int.shape[0]
        x = self.scaling.unscale_x(x_int)
        v = self.scaling.unscale_multipliers(v_int)
        H = as_matrix(self.hess_fun(x, v, self.args), "hess_fun output", (n, n))  # type: ignore[misc]
        return self.scaling.scale_hessian(H)


def check_derivatives(
    fun: EvaluateFn,
    differentiator: AbstractDifferentiator,
    x: Float[Array, " n"],
    args: Any,
    upper: Float[Array, " n"],
    diff_min_change: float,
    diff_max_change: float,
    rtol: float = 1e-4,
) -> tuple[float, int]:
    """Compare supplied derivatives with forward differences at ``x``.

    Logs a warning when the relative discrepancy exceeds ``rtol``.

    Returns:
        The relative discrepancy and the number of function evaluations spent.
    """
    f, g = normalize_function_output(fun(x, args))
    df, dg, n_fev = differentiator(fun, x, args, f, g, upper)
    fd = FiniteDifferenceGradient(diff_min_change, diff_max_change)
    df_fd, dg_fd, n_fev_fd = fd(fun, x, args, f, g, upper)

    def rel_error(a, b):
        if a.size == 0:
            return 0.0
        return float(jnp.max(jnp.abs(a - b)) / jnp.maximum(1.0, jnp.max(jnp.abs(b))))

    error = max(rel_error(df, df_fd), rel_error(dg, dg_fd))
    if error > rtol:
        logger.warning(
            "Derivative check: supplied gradients differ from finite "
            "differences by %.3e (relative)",
            error,
        )
    else:
        logger.info("Derivative check passed (relative discrepancy %.3e)", error)
    return error, 1 + n_fev + n_fev_fd
