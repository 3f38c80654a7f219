"""Problem adapter — the capability set the estimator consumes.

A :class:`MuseProblem` represents one hierarchical model

    θ ~ p(θ),   z ~ p(z | θ),   x ~ p(x | z, θ)

together with the observed data ``x``.  The estimation code never
inspects what modelling front-end sits behind it; it only calls the
methods below.

Required (abstract)
~~~~~~~~~~~~~~~~~~~
``sample_x_z(rng, theta)``
    One joint draw ``(x, z)`` at ``theta`` using only *rng* for
    randomness.  Repeating the call with a copy of the same generator
    must reproduce the draw.  Finite-difference and implicit
    derivatives "through the data" depend on it.
``loglike(x, z, theta)``
    Joint log-density ``log p(x, z | θ)``.
``logprior(theta)``
    ``log p(θ)`` in the natural parameterisation.

Derived (overridable)
~~~~~~~~~~~~~~~~~~~~~
Every other capability has a default built from the three methods
above and the problem's differentiation backend (see
:mod:`._backends`).  Subclasses with analytic derivatives should
override the corresponding method.  The defaults are correct but use
finite differences unless the JAX backend is active.

Parameterisations
~~~~~~~~~~~~~~~~~
Methods taking ``transformed=True`` interpret ``theta`` as a point in
the working (e.g. unconstrained) space ``θ' = transform_theta(θ)``.
The solver takes Newton steps in that space; covariance estimates are
reported in the natural one.  The transformed prior includes the log
volume factor of the inverse transform.
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

import numpy as np
from scipy.optimize import minimize

from ._backends import DifferentiationBackend, resolve_backend
from ._typing import ThetaLike


class MAPConvergenceError(RuntimeError):
    """The latent MAP solve stopped above the requested gradient tolerance."""


class MuseProblem(ABC):
    """Abstract base for MUSE problems.

    Args:
        x: Observed data.
        autodiff: Name of the differentiation backend (``"numpy"`` or
            ``"jax"``).  ``None`` follows :func:`~muse_inference.get_backend`.

    Attributes:
        x: Observed data, passed unchanged to :meth:`loglike`.
        param_names: Parameter labels, populated by
            :meth:`standardize_theta` when θ is given as a mapping.
    """

    def __init__(self, x: Any, *, autodiff: str | None = None) -> None:
        self.x = x
        self._autodiff = autodiff
        self.param_names: list[str] | None = None

    @property
    def backend(self) -> DifferentiationBackend:
        """The resolved differentiation backend."""
        return resolve_backend(self._autodiff)

    # ---- Required --------------------------------------------------

    @abstractmethod
    def sample_x_z(self, rng: np.random.Generator, theta: np.ndarray) -> tuple[Any, Any]:
        """Draw ``(x, z)`` from the joint model at *theta*."""

    @abstractmethod
    def loglike(self, x: Any, z: np.ndarray, theta: np.ndarray) -> float:
        """Joint log-likelihood ``log p(x, z | θ)``."""

    @abstractmethod
    def logprior(self, theta: np.ndarray) -> float:
        """Log-prior ``log p(θ)`` in the natural parameterisation."""

    # ---- Parameter handling ----------------------------------------

    def standardize_theta(self, theta: ThetaLike) -> np.ndarray:
        """Canonicalise a user-supplied θ into a 1-d float array.

        Accepts a scalar, a sequence, an array, or a mapping of named
        components (scalars or vectors).  A mapping records its labels
        in :attr:`param_names`, with vector components expanded as
        ``"name[i]"``.

        Raises:
            ValueError: If *theta* is ``None`` or not one-dimensional
                after flattening scalars.
        """
        if theta is None:
            raise ValueError(
                "No starting θ: pass theta0 or a result that already holds one."
            )
        if isinstance(theta, Mapping):
            names: list[str] = []
            values: list[np.ndarray] = []
            for key, value in theta.items():
                arr = np.atleast_1d(np.asarray(value, dtype=float))
                if arr.size == 1 and np.ndim(value) == 0:
                    names.append(str(key))
                else:
                    names.extend(f"{key}[{i}]" for i in range(arr.size))
                values.append(arr.ravel())
            self.param_names = names
            return np.concatenate(values)
        arr = np.atleast_1d(np.array(theta, dtype=float))
        if arr.ndim != 1:
            raise ValueError(f"θ must be one-dimensional, got shape {arr.shape}.")
        return arr

    def transform_theta(self, theta: np.ndarray) -> np.ndarray:
        """Map natural θ to the working parameterisation (identity)."""
        return np.asarray(theta, dtype=float)

    def inv_transform_theta(self, theta_t: np.ndarray) -> np.ndarray:
        """Map working θ' back to the natural parameterisation (identity)."""
        return np.asarray(theta_t, dtype=float)

    def log_volume_factor(self, theta_t: np.ndarray) -> float:
        """``log |det ∂θ/∂θ'|`` of the inverse transform at *theta_t*.

        Zero for the identity transform.  Subclasses overriding the
        transform must override this as well.
        """
        return 0.0

    # ---- Likelihood derivatives ------------------------------------

    def grad_theta_loglike(
        self, x: Any, z: np.ndarray, theta: np.ndarray, transformed: bool = False
    ) -> np.ndarray:
        """Score: gradient of :meth:`loglike` with respect to θ (or θ')."""
        if transformed:
            return self.backend.gradient(
                lambda t: self.loglike(x, z, self.inv_transform_theta(t)), theta
            )
        return self.backend.gradient(lambda t: self.loglike(x, z, t), theta)

    def grad_z_loglike(self, x: Any, z: np.ndarray, theta: np.ndarray) -> np.ndarray:
        """Gradient of :meth:`loglike` with respect to the latent state."""
        return self.backend.gradient(lambda zz: self.loglike(x, zz, theta), z)

    # ---- Prior -----------------------------------------------------

    def logprior_theta(self, theta: np.ndarray, transformed: bool = False) -> float:
        """Log-prior in either parameterisation."""
        if transformed:
            return self.logprior(self.inv_transform_theta(theta)) + self.log_volume_factor(
                theta
            )
        return self.logprior(theta)

    def grad_theta_logprior(
        self, theta: np.ndarray, transformed: bool = False
    ) -> np.ndarray:
        """Gradient of :meth:`logprior_theta`."""
        return np.atleast_1d(
            self.backend.gradient(lambda t: self.logprior_theta(t, transformed), theta)
        )

    def hessian_theta_logprior(
        self, theta: np.ndarray, transformed: bool = False
    ) -> np.ndarray:
        """Hessian of :meth:`logprior_theta`, shape ``(n, n)``."""
        return np.atleast_2d(
            self.backend.hessian(lambda t: self.logprior_theta(t, transformed), theta)
        )

    # ---- Latent MAP ------------------------------------------------

    def z_map(
        self, x: Any, z_start: np.ndarray, theta: np.ndarray, atol: float = 1e-2
    ) -> tuple[np.ndarray, dict[str, Any]]:
        """Maximise :meth:`loglike` over z at fixed ``(x, θ)``.

        Runs L-BFGS-B warm-started from *z_start* until the Euclidean
        norm of the latent gradient is below *atol*.  The relative
        objective-reduction stop is disabled so a flat objective far
        from the optimum is never reported as converged.

        Returns:
            ``(z_hat, info)`` where *info* holds the optimiser's
            ``nit``, ``nfev``, ``success``, ``message`` and the final
            ``grad_norm``.

        Raises:
            MAPConvergenceError: If the final gradient norm is above
                *atol*, whatever the optimiser reported.
        """
        z_start = np.asarray(z_start, dtype=float)
        shape = z_start.shape

        def neg_loglike(z_flat: np.ndarray) -> tuple[float, np.ndarray]:
            z = z_flat.reshape(shape)
            value = -float(self.loglike(x, z, theta))
            grad = -np.ravel(np.asarray(self.grad_z_loglike(x, z, theta), dtype=float))
            return value, grad

        opt = minimize(
            neg_loglike,
            z_start.ravel(),
            jac=True,
            method="L-BFGS-B",
            options={
                "gtol": atol / np.sqrt(max(z_start.size, 1)),
                "ftol": 0.0,
                "maxiter": 10_000,
            },
        )
        z_hat = opt.x.reshape(shape)
        grad_norm = float(np.linalg.norm(self.grad_z_loglike(x, z_hat, theta)))
        info = {
            "nit": int(opt.nit),
            "nfev": int(opt.nfev),
            "success": bool(opt.success),
            "message": str(opt.message),
            "grad_norm": grad_norm,
        }
        if grad_norm > atol:
            raise MAPConvergenceError(
                f"Latent MAP did not converge: |∇z logLike| = {grad_norm:.3g} "
                f"> {atol:.3g} ({opt.message})."
            )
        return z_hat, info

    def z_guess_from_truth(self, x: Any, z: np.ndarray, theta: np.ndarray) -> np.ndarray:
        """Warm start for the MAP of a simulation whose true latent is *z*."""
        return z

    # ---- Implicit-differentiation primitives -----------------------
    #
    # H = d/dθ E[ ∇θ logLike(x(θ), ẑ(x(θ), θ₀), θ₀) ] splits into
    #
    #   H1 = ∂/∂θ ∇θ' logLike(x(θ), ẑ, θ₀)                 (data term)
    #   H2 = -(∂F/∂θ)ᵀ · A⁻¹ · ∂F(x(θ))/∂θ                 (MAP term)
    #
    # with F = ∇z logLike and A = ∂F/∂z.  The four methods below supply
    # the pieces; ``A`` is only ever applied to vectors.

    def hvp_z_loglike(
        self, x: Any, z: np.ndarray, theta: np.ndarray, w: np.ndarray
    ) -> np.ndarray:
        """Latent Hessian of :meth:`loglike` applied to *w*."""
        return self.backend.jvp(lambda zz: self.grad_z_loglike(x, zz, theta), z, w)

    def jac_theta_grad_z_loglike(
        self, x: Any, z: np.ndarray, theta: np.ndarray
    ) -> np.ndarray:
        """``∂(∇z logLike)/∂θ`` at fixed data, shape ``(n_z, n_θ)``."""
        return self.backend.jacobian(
            lambda t: np.ravel(self.grad_z_loglike(x, z, t)), theta
        )

    def jac_theta_grad_z_loglike_sim(
        self, rng: np.random.Generator, z: np.ndarray, theta0: np.ndarray
    ) -> np.ndarray:
        """``∂/∂θ ∇z logLike(x(θ), z, θ₀)`` with data redrawn at θ from *rng*."""

        def f(theta: np.ndarray) -> np.ndarray:
            x, _ = self.sample_x_z(copy.deepcopy(rng), theta)
            return np.ravel(self.grad_z_loglike(x, z, theta0))

        return self.backend.jacobian(f, theta0)

    def jac_theta_grad_theta_loglike_sim(
        self, rng: np.random.Generator, z: np.ndarray, theta0: np.ndarray
    ) -> np.ndarray:
        """``∂/∂θ ∇θ' logLike(x(θ), z, θ₀)`` with data redrawn at θ from *rng*."""

        def f(theta: np.ndarray) -> np.ndarray:
            x, _ = self.sample_x_z(copy.deepcopy(rng), theta)
            return self.grad_theta_loglike(x, z, theta0)

        return self.backend.jacobian(f, theta0)


__all__ = ["MAPConvergenceError", "MuseProblem"]
