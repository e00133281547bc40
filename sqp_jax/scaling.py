"""Variable and function scaling for SQP.

Design variables and function values can span many orders of magnitude. The
solver works in an internal space where

    x_int = x / sx,    f_int = sf * f,    g_int = sg * g

with diagonal scale factors fixed at the initial point. Derivatives follow the
chain rule:

    grad f_int = sf * grad f * sx,    J_int = sg[:, None] * J * sx[None, :]

Lagrange multipliers and the Lagrangian Hessian map back as

    v = v_int * sg / sf,    H = H_int / (sf * sx sx^T)

All maps are exact inverses of each other, so only the crossing into and out
of the solver needs to know that scaling is active.
"""

from typing import Any, Optional

import equinox as eqx
import jax.numpy as jnp
from jaxtyping import Array, Float

from sqp_jax.types import TraceFlag


class Scaling(eqx.Module):
    """Diagonal scale factors for variables, objective and constraints.

    Attributes:
        sx: Per-variable scale factors (n,).
        sf: Objective scale factor.
        sg: Per-constraint scale factors (m,).
    """

    sx: Float[Array, " n"]
    sf: Float[Array, ""]
    sg: Float[Array, " m"]

    @classmethod
    def identity(cls, n: int, m: int, dtype: Any = None) -> "Scaling":
        return cls(
            sx=jnp.ones(n, dtype=dtype),
            sf=jnp.ones((), dtype=dtype),
            sg=jnp.ones(m, dtype=dtype),
        )

    @classmethod
    def from_initial_point(
        cls,
        x0: Float[Array, " n"],
        f0: Float[Array, ""],
        g0: Float[Array, " m"],
        scale: float,
        typical_x: Optional[Float[Array, " n"]] = None,
    ) -> "Scaling":
        """Compute scale factors from the magnitudes at the initial point.

        Args:
            x0: Initial design vector (external space).
            f0: Objective value at x0.
            g0: Constraint values at x0.
            scale: Scaling switch. Negative enables variable scaling; any
                non-zero value enables function scaling with threshold
                ``abs(scale)``.
            typical_x: Optional typical magnitudes used instead of x0.

        Returns:
            The scaling to apply for the whole run.
        """
        n = x0.shape[0]
        m = g0.shape[0]
        scaling = cls.identity(n, m, dtype=x0.dtype)
        if scale == 0:
            return scaling

        sx = scaling.sx
        if scale < 0:
            magnitude = jnp.abs(x0) if typical_x is None else jnp.abs(typical_x)
            if typical_x is None:
                sx = jnp.maximum(magnitude, 1.0)
            else:
                sx = jnp.where(magnitude > 0, magnitude, 1.0)

        threshold = abs(scale)
        abs_f0 = jnp.abs(f0)
        sf = jnp.where(abs_f0 > threshold, 1.0 / abs_f0, 1.0)
        abs_g0 = jnp.abs(g0)
        sg = jnp.where(abs_g0 > threshold, 1.0 / jnp.maximum(abs_g0, 1e-300), 1.0)

        return cls(sx=sx, sf=sf.astype(x0.dtype), sg=sg.astype(x0.dtype))

    def flags(self) -> frozenset[str]:
        """Trace flags describing which scalings are active."""
        flags = set()
        if bool(jnp.any(self.sx != 1.0)):
            flags.add(TraceFlag.SCALED_VARIABLES)
        if bool(self.sf != 1.0):
            flags.add(TraceFlag.SCALED_OBJECTIVE)
        if bool(jnp.any(self.sg != 1.0)):
            flags.add(TraceFlag.SCALED_CONSTRAINTS)
        return frozenset(flags)

    # Design variables and bounds

    def scale_x(self, x: Float[Array, " n"]) -> Float[Array, " n"]:
        return x / self.sx

    def unscale_x(self, x_int: Float[Array, " n"]) -> Float[Array, " n"]:
        return x_int * self.sx

    # Function values

    def scale_functions(
        self, f: Float[Array, ""], g: Float[Array, " m"]
    ) -> tuple[Float[Array, ""], Float[Array, " m"]]:
        return self.sf * f, self.sg * g

    def unscale_functions(
        self, f_int: Float[Array, ""], g_int: Float[Array, " m"]
    ) -> tuple[Float[Array, ""], Float[Array, " m"]]:
        return f_int / self.sf, g_int / self.sg

    # Derivatives (chain rule through x = sx * x_int)

    def scale_gradients(
        self, df: Float[Array, " n"], dg: Float[Array, "m n"]
    ) -> tuple[Float[Array, " n"], Float[Array, "m n"]]:
        return self.sf * df * self.sx, self.sg[:, None] * dg * self.sx[None, :]

    # Multipliers and Lagrangian Hessian

    def scale_multipliers(self, v: Float[Array, " m"]) -> Float[Array, " m"]:
        return v * self.sf / self.sg

    def unscale_multipliers(self, v_int: Float[Array, " m"]) -> Float[Array, " m"]:
        return v_int * self.sg / self.sf

    def unscale_bound_multipliers(
        self, w_int: Float[Array, " n"]
    ) -> Float[Array, " n"]:
        # Bound rows x_int - lb_int <= 0 carry an implicit scale of 1/sx
        return w_int / (self.sf * self.sx)

    def scale_hessian(self, H: Float[Array, "n n"]) -> Float[Array, "n n"]:
        return self.sf * H * jnp.outer(self.sx, self.sx)

    def unscale_hessian(self, H_int: Float[Array, "n n"]) -> Float[Array, "n n"]:
        return H_int / (self.sf * jnp.outer(self.sx, self.sx))
