"""Type definitions for SQP-JAX.

This module contains type aliases and constants used throughout the package.
Array shapes are expressed with jaxtyping and checked with beartype.
"""

from collections.abc import Callable
from typing import Any

from jaxtyping import Array, Float

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " n"]
Matrix = Float[Array, "n n"]

# Objective/constraint evaluator: fun(x, args) -> (f, g)
# Equality constraints g[:nec] = 0, inequality constraints g[nec:] <= 0
EvaluateFn = Callable[[Any, Any], tuple[Any, Any]]

# Gradient evaluator: grad(x, args) -> (df, dg)
# df has shape (n,), dg has shape (m, n) with dg[i, j] = dg_i/dx_j
DifferentiateFn = Callable[[Any, Any], tuple[Any, Any]]

# Hessian of the Lagrangian: hess_fun(x, v, args) -> H of shape (n, n)
HessianFn = Callable[[Any, Any, Any], Any]

# Per-iteration monitor: output_fcn(x, info) -> truthy to request a stop
MonitorFn = Callable[[Any, Any], Any]


class Status:
    """Constants for solver termination status."""

    CONVERGED = 1
    MAX_ITERATIONS = 0
    MAX_FUNCTION_EVALUATIONS = -1
    LINE_SEARCH_FAILED = -2
    USER_STOPPED = -3
    INVALID_INPUT = -4

    MESSAGES = {
        CONVERGED: "Optimization converged",
        MAX_ITERATIONS: "Maximum number of iterations exceeded",
        MAX_FUNCTION_EVALUATIONS: "Maximum number of function evaluations exceeded",
        LINE_SEARCH_FAILED: "Line search could not decrease the merit function",
        USER_STOPPED: "Optimization stopped by the output function",
        INVALID_INPUT: "Invalid input",
    }


class Termination:
    """Convergence policies, numbered as in the legacy options vector."""

    SCHITTKOWSKI = -1
    DEFAULT = 0
    GRACE = 1
    SLOWED = 2

    NAMES = {
        "schittkowski": SCHITTKOWSKI,
        "default": DEFAULT,
        "grace": GRACE,
        "slowed": SLOWED,
    }


class TraceFlag:
    """Trouble-shooting flags reported per iteration."""

    HESSIAN_PERTURBED = "dH"
    AUGMENTED_LAGRANGIAN = "aS"
    MODIFIED_SEARCH = "mS"
    SCALED_VARIABLES = "sx"
    SCALED_OBJECTIVE = "sf"
    SCALED_CONSTRAINTS = "sg"
    L1_MERIT = "L1"
    HESSIAN_RESET = "rH"


class InvalidInputError(ValueError):
    """Raised before the iteration loop when the problem data are malformed."""

    status = Status.INVALID_INPUT
