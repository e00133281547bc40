"""SQP-JAX: Sequential Quadratic Programming in JAX.

This package provides a dense SQP solver for small to medium nonlinear
programs with equality, inequality and bound constraints, following the
NLPQL design: an active-set QP subproblem with an elastic fallback, a damped
BFGS approximation of the Lagrangian Hessian, and an augmented Lagrangian
(or L1) merit-function line search. The numerical kernels are JAX functions
compiled with Equinox.
"""

from sqp_jax.convergence import ConvergenceMetrics, check_convergence, compute_metrics
from sqp_jax.evaluation import (
    AnalyticGradient,
    AutodiffGradient,
    FiniteDifferenceGradient,
    check_derivatives,
)
from sqp_jax.hessian import (
    bfgs_update,
    compute_lagrangian_gradient,
    make_positive_definite,
)
from sqp_jax.merit import (
    compute_augmented_lagrangian,
    compute_l1_merit,
    line_search,
)
from sqp_jax.options import (
    SQPOptions,
    normalize_options,
    options_from_dict,
    options_from_foptions,
)
from sqp_jax.problem import Problem, solve_problem
from sqp_jax.qp_solver import solve_equality_qp, solve_qp, solve_subproblem
from sqp_jax.scaling import Scaling
from sqp_jax.solver import SQP, IterationInfo, SQPResult, SQPState, SQPStats, sqp
from sqp_jax.types import (
    DifferentiateFn,
    EvaluateFn,
    HessianFn,
    InvalidInputError,
    MonitorFn,
    Status,
    Termination,
    TraceFlag,
)

__all__ = [
    # Main solver
    "sqp",
    "SQP",
    "SQPState",
    "SQPResult",
    "SQPStats",
    "IterationInfo",
    "Problem",
    "solve_problem",
    # Configuration
    "SQPOptions",
    "normalize_options",
    "options_from_dict",
    "options_from_foptions",
    "Scaling",
    # Types
    "EvaluateFn",
    "DifferentiateFn",
    "HessianFn",
    "MonitorFn",
    "Status",
    "Termination",
    "TraceFlag",
    "InvalidInputError",
    # Derivatives
    "AnalyticGradient",
    "FiniteDifferenceGradient",
    "AutodiffGradient",
    "check_derivatives",
    # QP solver
    "solve_equality_qp",
    "solve_qp",
    "solve_subproblem",
    # Hessian
    "bfgs_update",
    "make_positive_definite",
    "compute_lagrangian_gradient",
    # Merit function
    "compute_l1_merit",
    "compute_augmented_lagrangian",
    "line_search",
    # Convergence
    "ConvergenceMetrics",
    "compute_metrics",
    "check_convergence",
]
