"""Backend abstraction layer for derivatives.

Each backend implements :class:`DifferentiationBackend`, the four
derivative primitives that :class:`~muse_inference.problem.MuseProblem`
builds its default capabilities on:

* ``gradient(f, x)`` — gradient of a scalar function,
* ``jacobian(f, x)`` — Jacobian ``(m, n)`` of a vector function,
* ``hessian(f, x)`` — Hessian ``(n, n)`` of a scalar function,
* ``jvp(f, x, v)`` — directional derivative ``J_f(x) · v`` without
  forming ``J_f``.

All inputs and outputs at this boundary are NumPy arrays.

Resolution follows the policy set by :mod:`.._config`:

1. Programmatic override via :func:`~muse_inference.set_backend`.
2. ``MUSE_INFERENCE_BACKEND`` environment variable.
3. ``"numpy"``.

:func:`resolve_backend` translates the policy string into a concrete
backend instance.  When ``"jax"`` is explicitly requested but JAX is
not installed, an :class:`ImportError` is raised; explicit requests
are never silently degraded.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

import numpy as np

from .._config import get_backend

# ------------------------------------------------------------------ #
# DifferentiationBackend
# ------------------------------------------------------------------ #


@runtime_checkable
class DifferentiationBackend(Protocol):
    """Interface that every differentiation backend must implement.

    Attributes:
        name: Short identifier (``"numpy"``, ``"jax"``).
    """

    @property
    def name(self) -> str: ...

    @property
    def is_available(self) -> bool:
        """Whether the backend's dependencies are importable."""
        ...

    def gradient(self, f: Callable[[Any], Any], x: np.ndarray) -> np.ndarray:
        """Gradient of scalar *f* at *x*, shape ``(n,)``."""
        ...

    def jacobian(self, f: Callable[[Any], Any], x: np.ndarray) -> np.ndarray:
        """Jacobian of vector *f* at *x*, shape ``(m, n)``."""
        ...

    def hessian(self, f: Callable[[Any], Any], x: np.ndarray) -> np.ndarray:
        """Hessian of scalar *f* at *x*, shape ``(n, n)``."""
        ...

    def jvp(
        self, f: Callable[[Any], Any], x: np.ndarray, v: np.ndarray
    ) -> np.ndarray:
        """Directional derivative of vector *f* at *x* along *v*, shape ``(m,)``."""
        ...


# ------------------------------------------------------------------ #
# Backend resolution
# ------------------------------------------------------------------ #

# Singleton cache, one instance per backend name.
_BACKEND_CACHE: dict[str, DifferentiationBackend] = {}


def resolve_backend(name: str | None = None) -> DifferentiationBackend:
    """Return a :class:`DifferentiationBackend` instance for *name*.

    Args:
        name: ``"numpy"``, ``"jax"``, or ``None`` for the policy
            default.

    Returns:
        A backend instance.

    Raises:
        ImportError: If ``"jax"`` is requested but JAX is not
            installed.
        ValueError: If *name* is not a recognised backend.
    """
    if name is None:
        name = get_backend()
    name = name.strip().lower()

    if name in _BACKEND_CACHE:
        return _BACKEND_CACHE[name]

    if name == "numpy":
        from ._numpy import NumpyBackend

        backend: DifferentiationBackend = NumpyBackend()

    elif name == "jax":
        from ._jax import JaxBackend

        jax_backend = JaxBackend()
        if not jax_backend.is_available:
            msg = (
                "Backend 'jax' was requested but JAX is not installed.  "
                "Install JAX (`pip install jax`) or use set_backend('numpy')."
            )
            raise ImportError(msg)
        backend = jax_backend

    else:
        msg = f"Unknown backend {name!r}.  Choose 'numpy' or 'jax'."
        raise ValueError(msg)

    _BACKEND_CACHE[name] = backend
    return backend


__all__ = ["DifferentiationBackend", "resolve_backend"]
