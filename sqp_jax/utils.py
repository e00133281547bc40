from typing import Any, Callable, TypeVar

import jax
import jax.numpy as jnp
import numpy as np

from sqp_jax.types import InvalidInputError

T = TypeVar("T")


def default_float():
    """The floating dtype JAX is currently configured to use."""
    return jnp.result_type(float)


def as_float_array(value: Any) -> jax.Array:
    return jnp.asarray(value, dtype=default_float())


def as_vector(value: Any, name: str, length: int | None = None) -> jax.Array:
    """Convert ``value`` to a 1-D float array, checking its length."""
    arr = np.asarray(value, dtype=float)
    if arr.ndim == 0:
        arr = arr.reshape(1)
    if arr.ndim != 1:
        raise InvalidInputError(
            f"{name} must be a vector, got an array of shape {arr.shape}"
        )
    if length is not None and arr.shape[0] != length:
        raise InvalidInputError(
            f"{name} has length {arr.shape[0]}, expected {length}"
        )
    return as_float_array(arr)


def as_matrix(value: Any, name: str, shape: tuple[int, int]) -> jax.Array:
    """Convert ``value`` to a 2-D float array of the given shape.

    A vector is accepted for a single-row matrix.
    """
    arr = np.asarray(value, dtype=float)
    if arr.size == 0 and shape[0] * shape[1] == 0:
        return jnp.zeros(shape, dtype=default_float())
    if arr.ndim == 1 and shape[0] == 1:
        arr = arr.reshape(1, -1)
    if arr.shape != shape:
        raise InvalidInputError(f"{name} has shape {arr.shape}, expected {shape}")
    return as_float_array(arr)


def args_closure(
    fn: Callable[[jax.Array, T], Any], args: T
) -> Callable[[jax.Array], Any]:
    def wrapped(x: jax.Array) -> Any:
        return fn(x, args)

    return wrapped
