"""JAX autodiff backend.

Wraps ``jax.grad``, ``jax.jacfwd``, ``jax.hessian`` and ``jax.jvp``.
The functions handed to this backend must be traceable, i.e. written
with ``jax.numpy``.  Inputs are converted to JAX arrays on entry and
results are materialised into NumPy via ``np.asarray()`` on exit, so
callers never touch JAX types.

64-bit floats are enabled on import: the covariance estimators
difference and invert quantities whose float32 round-off would
dominate the Monte Carlo error.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import numpy as np

try:
    import jax
    import jax.numpy as jnp

    jax.config.update("jax_enable_x64", True)
    _CAN_IMPORT_JAX = True
except ImportError:
    _CAN_IMPORT_JAX = False


@dataclass(frozen=True)
class JaxBackend:
    """Exact derivatives via JAX automatic differentiation."""

    @property
    def name(self) -> str:
        return "jax"

    @property
    def is_available(self) -> bool:  # noqa: PLR6301
        return _CAN_IMPORT_JAX

    def gradient(self, f: Callable[[Any], Any], x: np.ndarray) -> np.ndarray:
        return np.asarray(jax.grad(f)(jnp.asarray(x, dtype=float)))

    def jacobian(self, f: Callable[[Any], Any], x: np.ndarray) -> np.ndarray:
        J = jax.jacfwd(lambda y: jnp.ravel(f(y)))(jnp.asarray(x, dtype=float))
        return np.asarray(J)

    def hessian(self, f: Callable[[Any], Any], x: np.ndarray) -> np.ndarray:
        return np.asarray(jax.hessian(f)(jnp.asarray(x, dtype=float)))

    def jvp(
        self, f: Callable[[Any], Any], x: np.ndarray, v: np.ndarray
    ) -> np.ndarray:
        _, tangent = jax.jvp(
            f, (jnp.asarray(x, dtype=float),), (jnp.asarray(v, dtype=float),)
        )
        return np.asarray(tangent)
