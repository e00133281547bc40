"""Normalized solver configuration.

`SQPOptions` is the single configuration record consumed by the solver. Two
adapters translate the external representations into it:

* `options_from_foptions` reads the legacy positional options vector, where
  each index has a fixed meaning (1-based, as documented for ``foptions``).
* `options_from_dict` reads named, optimset-style keys (``"TolX"``,
  ``"MaxIter"``, ...) as well as the snake_case field names. A nested
  ``"foptions"`` entry is translated first and then overridden by the
  named keys.
"""

from collections.abc import Mapping, Sequence
from typing import Any, Optional

import equinox as eqx
import numpy as np

from sqp_jax.types import (
    HessianFn,
    InvalidInputError,
    MonitorFn,
    Termination,
)

DISPLAY_LEVELS = ("off", "notify", "final", "iter", "trace")
MERIT_FUNCTIONS = ("augmented_lagrangian", "l1")

# 1-based positions of the legacy options vector
FOPTIONS_INDEX = {
    1: "display",
    2: "tol_x",
    3: "tol_fun",
    4: "tol_con",
    5: "scale",
    6: "termination",
    7: "max_line_search_fun",
    9: "derivative_check",
    13: "nec",
    14: "max_fun_evals",
    15: "max_iter",
    16: "diff_min_change",
    17: "diff_max_change",
}

NAMED_OPTIONS = {
    "Display": "display",
    "TolX": "tol_x",
    "TolFun": "tol_fun",
    "TolCon": "tol_con",
    "Scale": "scale",
    "TypicalX": "typical_x",
    "Termination": "termination",
    "MaxLineSearchFun": "max_line_search_fun",
    "DerivativeCheck": "derivative_check",
    "nec": "nec",
    "MaxFunEvals": "max_fun_evals",
    "MaxIter": "max_iter",
    "DiffMinChange": "diff_min_change",
    "DiffMaxChange": "diff_max_change",
    "LagrangeMultipliers": "lagrange_multipliers",
    "HessMatrix": "hess_matrix",
    "HessFun": "hess_fun",
    "OutputFcn": "output_fcn",
    "MeritFunction": "merit",
    "ElasticPenalty": "elastic_penalty",
}

# Legacy numeric display levels
_LEGACY_DISPLAY = {0: "off", 1: "iter", 2: "trace"}


class SQPOptions(eqx.Module):
    """Configuration for the SQP solver.

    Attributes:
        display: Verbosity, one of "off", "notify", "final", "iter", "trace".
        tol_x: Termination tolerance on the step.
        tol_fun: Termination tolerance on the optimality measure.
        tol_con: Termination tolerance on constraint violation.
        scale: Scaling switch. Negative scales the design variables and the
            functions whose magnitude exceeds ``abs(scale)``; positive scales
            functions only; zero disables scaling.
        typical_x: Optional variable scale used instead of ``abs(x0)``.
        termination: Convergence policy, see `sqp_jax.types.Termination`.
        max_line_search_fun: Function evaluations allowed per line search.
        derivative_check: Compare user gradients with finite differences.
        nec: Number of equality constraints (leading entries of g).
        max_fun_evals: Function evaluation budget (None -> 200 * n).
        max_iter: Iteration budget.
        diff_min_change: Smallest finite-difference perturbation.
        diff_max_change: Largest finite-difference perturbation.
        lagrange_multipliers: Initial multiplier estimate (length m).
        hess_matrix: Initial positive-definite Hessian estimate (n x n).
        hess_fun: Exact Lagrangian Hessian ``hess_fun(x, v, args)``.
        output_fcn: Per-iteration monitor ``output_fcn(x, info)``.
        merit: "augmented_lagrangian" or "l1".
        elastic_penalty: Weight of the relaxation variable in the elastic QP.
    """

    display: str = "off"
    tol_x: float = 1e-4
    tol_fun: float = 1e-4
    tol_con: float = 1e-6
    scale: float = 0.0
    typical_x: Optional[Any] = None
    termination: int = eqx.field(static=True, default=Termination.DEFAULT)
    max_line_search_fun: int = 10
    derivative_check: bool = False
    nec: int = eqx.field(static=True, default=0)
    max_fun_evals: Optional[int] = None
    max_iter: int = 400
    diff_min_change: float = 1e-8
    diff_max_change: float = 0.1
    lagrange_multipliers: Optional[Any] = None
    hess_matrix: Optional[Any] = None
    hess_fun: Optional[HessianFn] = eqx.field(static=True, default=None)
    output_fcn: Optional[MonitorFn] = eqx.field(static=True, default=None)
    merit: str = eqx.field(static=True, default="augmented_lagrangian")
    elastic_penalty: float = 1e3

    def __check_init__(self):
        if self.display not in DISPLAY_LEVELS:
            raise InvalidInputError(
                f"display must be one of {DISPLAY_LEVELS}, got {self.display!r}"
            )
        for name in ("tol_x", "tol_fun", "tol_con"):
            if not getattr(self, name) > 0:
                raise InvalidInputError(f"{name} must be positive")
        if self.termination not in Termination.NAMES.values():
            raise InvalidInputError(f"unknown termination policy {self.termination!r}")
        if self.max_line_search_fun < 1:
            raise InvalidInputError("max_line_search_fun must be at least 1")
        if self.nec < 0:
            raise InvalidInputError("nec must be non-negative")
        if self.max_fun_evals is not None and self.max_fun_evals < 1:
            raise InvalidInputError("max_fun_evals must be at least 1")
        if self.max_iter < 1:
            raise InvalidInputError("max_iter must be at least 1")
        if not 0 < self.diff_min_change <= self.diff_max_change:
            raise InvalidInputError(
                "finite-difference bounds must satisfy "
                "0 < diff_min_change <= diff_max_change"
            )
        if self.merit not in MERIT_FUNCTIONS:
            raise InvalidInputError(
                f"merit must be one of {MERIT_FUNCTIONS}, got {self.merit!r}"
            )
        if not self.elastic_penalty > 0:
            raise InvalidInputError("elastic_penalty must be positive")
        if self.hess_fun is not None and not callable(self.hess_fun):
            raise InvalidInputError("hess_fun must be callable")
        if self.output_fcn is not None and not callable(self.output_fcn):
            raise InvalidInputError("output_fcn must be callable")

    def fun_eval_budget(self, n: int) -> int:
        if self.max_fun_evals is None:
            return 200 * n
        return self.max_fun_evals


def _normalize_value(field: str, value: Any) -> Any:
    if field == "display":
        if isinstance(value, (int, float, np.number)):
            return _LEGACY_DISPLAY.get(int(value), "trace")
        return str(value).lower()
    if field == "termination":
        if isinstance(value, str):
            try:
                return Termination.NAMES[value.lower()]
            except KeyError:
                raise InvalidInputError(
                    f"unknown termination policy {value!r}"
                ) from None
        value = int(value)
        # Any legacy value other than -1, 1, 2 selects the default criteria
        return value if value in Termination.NAMES.values() else Termination.DEFAULT
    if field in ("nec", "max_iter", "max_line_search_fun"):
        return int(value)
    if field == "max_fun_evals":
        # 0 means "use the default budget" in the legacy vector
        return int(value) if value else None
    if field == "derivative_check":
        if isinstance(value, str):
            return value.lower() == "on"
        return bool(value)
    if field in (
        "tol_x",
        "tol_fun",
        "tol_con",
        "scale",
        "diff_min_change",
        "diff_max_change",
        "elastic_penalty",
    ):
        return float(value)
    if field == "merit":
        return str(value).lower()
    return value


def _foptions_fields(foptions: Sequence[Any]) -> dict[str, Any]:
    vector = np.asarray(foptions, dtype=float).ravel()
    if vector.size > 18:
        raise InvalidInputError(
            f"legacy options vector has {vector.size} entries, at most 18 allowed"
        )
    fields: dict[str, Any] = {}
    for index, field in FOPTIONS_INDEX.items():
        if index > vector.size:
            continue
        value = vector[index - 1]
        # Zero entries keep the defaults, except where zero is meaningful
        if value == 0 and field not in ("display", "scale", "nec", "derivative_check"):
            continue
        fields[field] = _normalize_value(field, value)
    return fields


def options_from_foptions(foptions: Sequence[Any]) -> SQPOptions:
    """Translate a legacy positional options vector into `SQPOptions`."""
    return SQPOptions(**_foptions_fields(foptions))


def options_from_dict(options: Mapping[str, Any]) -> SQPOptions:
    """Translate named options into `SQPOptions`.

    Keys may be optimset-style names (see `NAMED_OPTIONS`) or the field
    names of `SQPOptions`. Unknown keys raise `InvalidInputError`.
    """
    field_names = set(SQPOptions.__dataclass_fields__)
    fields: dict[str, Any] = {}
    if "foptions" in options:
        fields.update(_foptions_fields(options["foptions"]))
    for key, value in options.items():
        if key == "foptions":
            continue
        field = NAMED_OPTIONS.get(key, key)
        if field not in field_names:
            raise InvalidInputError(f"unknown option {key!r}")
        if value is None:
            continue
        fields[field] = _normalize_value(field, value)
    return SQPOptions(**fields)


def normalize_options(options: Any) -> SQPOptions:
    """Accept `SQPOptions`, a mapping, a legacy vector, or None."""
    if options is None:
        return SQPOptions()
    if isinstance(options, SQPOptions):
        return options
    if isinstance(options, Mapping):
        return options_from_dict(options)
    if isinstance(options, (Sequence, np.ndarray)) and not isinstance(options, str):
        return options_from_foptions(options)
    raise InvalidInputError(
        f"options must be SQPOptions, a mapping or a vector, got {type(options)!r}"
    )
