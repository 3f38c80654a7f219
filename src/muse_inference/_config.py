"""Differentiation-backend configuration for the muse_inference package.

Controls which automatic-differentiation engine a
:class:`~muse_inference.problem.MuseProblem` uses for the derivatives
it does not implement analytically (prior gradient and Hessian,
reparameterised scores, the Hessian-vector products needed by implicit
differentiation).

Resolution order (first match wins):
    1. Programmatic override via :func:`set_backend`.
    2. The ``MUSE_INFERENCE_BACKEND`` environment variable.
    3. ``"numpy"`` — finite-difference derivatives, always available.

JAX is never picked implicitly: its ``grad`` only works on functions
written with ``jax.numpy``, so a problem coded against NumPy would
fail the moment it was traced.  Problems written for JAX either select
the backend explicitly or subclass
:class:`~muse_inference.jax_problem.JaxMuseProblem`, which always uses it.

Valid backend names are ``"jax"``, ``"numpy"`` and ``"auto"``
(case-insensitive).

Examples:
    Use JAX autodiff globally from the shell::

        export MUSE_INFERENCE_BACKEND=jax

    Programmatically::

        import muse_inference
        muse_inference.set_backend("jax")

    Restore the default resolution::

        muse_inference.set_backend("auto")
"""

from __future__ import annotations

import os

_VALID_BACKENDS = {"jax", "numpy", "auto"}

# Sentinel indicating "no programmatic override has been set".
_backend_override: str | None = None


def get_backend() -> str:
    """Return the active differentiation backend (``"jax"`` or ``"numpy"``).

    Resolution order:
        1. Value set by :func:`set_backend` (unless ``"auto"``).
        2. ``MUSE_INFERENCE_BACKEND`` environment variable.
        3. ``"numpy"``.

    Returns:
        ``"jax"`` or ``"numpy"``.
    """
    # 1. Programmatic override
    if _backend_override is not None and _backend_override != "auto":
        return _backend_override

    # 2. Environment variable
    env = os.environ.get("MUSE_INFERENCE_BACKEND", "").strip().lower()
    if env in ("jax", "numpy"):
        return env

    # 3. Default
    return "numpy"


def set_backend(name: str) -> None:
    """Override the differentiation-backend selection.

    Args:
        name: One of ``"jax"``, ``"numpy"``, or ``"auto"``
            (case-insensitive).  ``"auto"`` restores the default
            resolution order.

    Raises:
        ValueError: If *name* is not a recognised backend.
    """
    global _backend_override
    normalised = name.strip().lower()
    if normalised not in _VALID_BACKENDS:
        raise ValueError(
            f"Unknown backend '{name}'. Choose from: {sorted(_VALID_BACKENDS)}"
        )
    _backend_override = normalised
