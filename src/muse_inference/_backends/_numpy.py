"""NumPy finite-difference backend (always available).

Derivatives are taken with the package's own stencils from
:mod:`..finite_difference`:

* ``gradient`` / ``jacobian`` — a five-point central stencil applied
  to each coordinate (truncation error O(h⁴)).
* ``hessian`` — the Jacobian of the finite-difference gradient,
  symmetrised.  Nested differencing loses roughly half the significant
  digits; problems that need exact prior curvature should override
  ``hessian_theta_logprior`` analytically.
* ``jvp`` — a single directional difference along the unit vector
  ``v / ‖v‖``, rescaled by ``‖v‖``.  The Jacobian is never formed, so
  the cost is four evaluations of ``f`` regardless of dimension; this
  is what makes the conjugate-gradient solve in implicit
  differentiation affordable on a large latent space.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import numpy as np

from ..finite_difference import central_fdm, pjacobian

_FDM = central_fdm(5, 1)


@dataclass(frozen=True)
class NumpyBackend:
    """Finite-difference derivatives on plain NumPy arrays."""

    @property
    def name(self) -> str:
        return "numpy"

    @property
    def is_available(self) -> bool:  # noqa: PLR6301
        return True

    def gradient(self, f: Callable[[Any], Any], x: np.ndarray) -> np.ndarray:
        return pjacobian(lambda y: np.atleast_1d(f(y)), None, _FDM, x)[0]

    def jacobian(self, f: Callable[[Any], Any], x: np.ndarray) -> np.ndarray:
        return pjacobian(f, None, _FDM, x)

    def hessian(self, f: Callable[[Any], Any], x: np.ndarray) -> np.ndarray:
        H = self.jacobian(lambda y: self.gradient(f, y), x)
        return 0.5 * (H + H.T)

    def jvp(
        self, f: Callable[[Any], Any], x: np.ndarray, v: np.ndarray
    ) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        v = np.asarray(v, dtype=float)
        norm = float(np.linalg.norm(v))
        if norm == 0.0:
            return np.zeros_like(np.asarray(f(x), dtype=float))
        u = v / norm
        scale = max(1.0, float(np.max(np.abs(x))) if x.size else 1.0)
        step = _FDM.default_step() * scale
        return norm * _FDM(lambda t: f(x + t * u), 0.0, step)
