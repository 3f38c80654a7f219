"""MUSE problems written as JAX functions.

:class:`JaxMuseProblem` is the concrete adapter for models expressed
with ``jax.numpy``.  The user supplies three plain functions

* ``sample_x_z(key, theta) -> (x, z)`` — a joint draw driven by a
  ``jax.random`` key.  For H via implicit differentiation the draw
  must be reparameterised (differentiable in ``theta`` at a fixed
  key), e.g. ``z = mu(theta) + scale(theta) * normal(key)``.
* ``loglike(x, z, theta) -> scalar`` — ``log p(x, z | θ)``.
* ``logprior(theta) -> scalar`` — ``log p(θ)``.

and optionally a ``transform`` / ``inv_transform`` pair (JAX
functions) for the working parameterisation.  Every derivative the
estimator needs is obtained by composing ``jax.grad``, ``jax.jacfwd``,
``jax.hessian`` and ``jax.jvp`` over these functions and is compiled
with ``jax.jit`` once per problem.

The estimator hands out NumPy generators; each call to
:meth:`~JaxMuseProblem.sample_x_z` turns its generator into a JAX key
by drawing one integer, so a copy of the same generator always gives
the same key.

Example::

    import jax.numpy as jnp
    from jax import random

    def sample_x_z(key, theta):
        kz, kx = random.split(key)
        z = jnp.exp(theta[0] / 2) * random.normal(kz, (512,))
        x = z + random.normal(kx, (512,))
        return x, z

    def loglike(x, z, theta):
        return (-0.5 * jnp.sum((x - z) ** 2)
                - 0.5 * jnp.sum(z**2) * jnp.exp(-theta[0])
                - 256 * theta[0])

    def logprior(theta):
        return -0.5 * jnp.sum(theta**2) / 9

    prob = JaxMuseProblem(x_obs, sample_x_z, loglike, logprior)
"""

from __future__ import annotations

import copy
from collections.abc import Callable
from typing import Any

import numpy as np

from .problem import MuseProblem

try:
    import jax
    import jax.numpy as jnp

    jax.config.update("jax_enable_x64", True)
    _CAN_IMPORT_JAX = True
except ImportError:
    _CAN_IMPORT_JAX = False


def _identity(theta: Any) -> Any:
    return theta


class JaxMuseProblem(MuseProblem):
    """A :class:`~muse_inference.problem.MuseProblem` backed by JAX autodiff.

    Args:
        x: Observed data (array or pytree of arrays).
        sample_x_z: ``(key, theta) -> (x, z)``.
        loglike: ``(x, z, theta) -> scalar``.
        logprior: ``theta -> scalar``.
        transform: Natural → working parameterisation (default identity).
        inv_transform: Working → natural parameterisation (default
            identity).  Must be given whenever *transform* is.

    Raises:
        ImportError: If JAX is not installed.
        ValueError: If only one of *transform* / *inv_transform* is
            given.
    """

    def __init__(
        self,
        x: Any,
        sample_x_z: Callable[[Any, Any], tuple[Any, Any]],
        loglike: Callable[[Any, Any, Any], Any],
        logprior: Callable[[Any], Any],
        *,
        transform: Callable[[Any], Any] | None = None,
        inv_transform: Callable[[Any], Any] | None = None,
    ) -> None:
        if not _CAN_IMPORT_JAX:
            raise ImportError(
                "JaxMuseProblem requires JAX.  Install it with `pip install jax`."
            )
        if (transform is None) != (inv_transform is None):
            raise ValueError("Pass both transform and inv_transform, or neither.")
        super().__init__(x, autodiff="jax")

        self._sample = sample_x_z
        self._loglike = loglike
        self._logprior = logprior
        self._transform = transform or _identity
        self._inv_transform = inv_transform or _identity
        self._has_transform = transform is not None

        inv = self._inv_transform

        def log_volume(theta_t):
            if not self._has_transform:
                return 0.0
            _, logdet = jnp.linalg.slogdet(jax.jacfwd(inv)(theta_t))
            return logdet

        def logprior_t(theta_t):
            return logprior(inv(theta_t)) + log_volume(theta_t)

        def grad_z(x, z, theta):
            return jax.grad(loglike, argnums=1)(x, z, theta)

        self._grad_z_raw = grad_z
        self._loglike_jit = jax.jit(loglike)
        self._grad_z_jit = jax.jit(grad_z)
        self._grad_theta_jit = jax.jit(jax.grad(loglike, argnums=2))
        self._grad_theta_t_jit = jax.jit(
            jax.grad(lambda x, z, t: loglike(x, z, inv(t)), argnums=2)
        )
        self._hvp_jit = jax.jit(
            lambda x, z, theta, w: jax.jvp(lambda zz: grad_z(x, zz, theta), (z,), (w,))[1]
        )
        self._jac_theta_grad_z_jit = jax.jit(jax.jacfwd(grad_z, argnums=2))
        self._log_volume_jit = jax.jit(log_volume)
        self._grad_prior_jit = jax.jit(jax.grad(logprior))
        self._grad_prior_t_jit = jax.jit(jax.grad(logprior_t))
        self._hess_prior_jit = jax.jit(jax.hessian(logprior))
        self._hess_prior_t_jit = jax.jit(jax.hessian(logprior_t))

    # ---- Randomness ------------------------------------------------

    @staticmethod
    def _key(rng: np.random.Generator) -> Any:
        return jax.random.PRNGKey(int(rng.integers(2**32)))

    def sample_x_z(self, rng: np.random.Generator, theta: np.ndarray) -> tuple[Any, Any]:
        x, z = self._sample(self._key(rng), jnp.asarray(theta, dtype=float))
        return jax.tree_util.tree_map(np.asarray, x), np.asarray(z)

    # ---- Densities -------------------------------------------------

    def loglike(self, x: Any, z: np.ndarray, theta: np.ndarray) -> float:
        return float(self._loglike_jit(x, jnp.asarray(z), jnp.asarray(theta)))

    def logprior(self, theta: np.ndarray) -> float:
        return float(self._logprior(jnp.asarray(theta, dtype=float)))

    def transform_theta(self, theta: np.ndarray) -> np.ndarray:
        return np.asarray(self._transform(jnp.asarray(theta, dtype=float)))

    def inv_transform_theta(self, theta_t: np.ndarray) -> np.ndarray:
        return np.asarray(self._inv_transform(jnp.asarray(theta_t, dtype=float)))

    def log_volume_factor(self, theta_t: np.ndarray) -> float:
        return float(self._log_volume_jit(jnp.asarray(theta_t, dtype=float)))

    # ---- Derivatives -----------------------------------------------

    def grad_theta_loglike(
        self, x: Any, z: np.ndarray, theta: np.ndarray, transformed: bool = False
    ) -> np.ndarray:
        fn = self._grad_theta_t_jit if transformed else self._grad_theta_jit
        return np.asarray(fn(x, jnp.asarray(z), jnp.asarray(theta, dtype=float)))

    def grad_z_loglike(self, x: Any, z: np.ndarray, theta: np.ndarray) -> np.ndarray:
        return np.asarray(
            self._grad_z_jit(x, jnp.asarray(z), jnp.asarray(theta, dtype=float))
        )

    def grad_theta_logprior(
        self, theta: np.ndarray, transformed: bool = False
    ) -> np.ndarray:
        fn = self._grad_prior_t_jit if transformed else self._grad_prior_jit
        return np.atleast_1d(np.asarray(fn(jnp.asarray(theta, dtype=float))))

    def hessian_theta_logprior(
        self, theta: np.ndarray, transformed: bool = False
    ) -> np.ndarray:
        fn = self._hess_prior_t_jit if transformed else self._hess_prior_jit
        return np.atleast_2d(np.asarray(fn(jnp.asarray(theta, dtype=float))))

    def hvp_z_loglike(
        self, x: Any, z: np.ndarray, theta: np.ndarray, w: np.ndarray
    ) -> np.ndarray:
        return np.asarray(
            self._hvp_jit(
                x, jnp.asarray(z), jnp.asarray(theta, dtype=float), jnp.asarray(w)
            )
        )

    def jac_theta_grad_z_loglike(
        self, x: Any, z: np.ndarray, theta: np.ndarray
    ) -> np.ndarray:
        J = self._jac_theta_grad_z_jit(x, jnp.asarray(z), jnp.asarray(theta, dtype=float))
        return np.asarray(J).reshape(-1, np.size(theta))

    def jac_theta_grad_z_loglike_sim(
        self, rng: np.random.Generator, z: np.ndarray, theta0: np.ndarray
    ) -> np.ndarray:
        key = self._key(copy.deepcopy(rng))
        z = jnp.asarray(z)
        theta0 = jnp.asarray(theta0, dtype=float)

        def f(theta):
            x, _ = self._sample(key, theta)
            return jnp.ravel(self._grad_z_raw(x, z, theta0))

        return np.asarray(jax.jacfwd(f)(theta0))

    def jac_theta_grad_theta_loglike_sim(
        self, rng: np.random.Generator, z: np.ndarray, theta0: np.ndarray
    ) -> np.ndarray:
        key = self._key(copy.deepcopy(rng))
        z = jnp.asarray(z)
        theta0 = jnp.asarray(theta0, dtype=float)
        grad_theta = jax.grad(self._loglike, argnums=2)

        def f(theta):
            x, _ = self._sample(key, theta)
            return grad_theta(x, z, theta0)

        return np.asarray(jax.jacfwd(f)(theta0))


__all__ = ["JaxMuseProblem"]
