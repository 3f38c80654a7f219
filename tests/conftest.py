"""Shared fixtures: a linear-Gaussian hierarchical model with known answers.

    z = M θ + e_z,        e_z ~ N(0, I)
    x = z + s e_x,        e_x ~ N(0, I)
    θ ~ N(0, τ² I)

The columns of ``M`` are orthogonal (a constant and an alternating
±1 column), so every quantity MUSE estimates has a closed form:

* latent MAP        ẑ = (x + s² M θ) / (1 + s²)
* score             Mᵀ(ẑ - M θ) = Mᵀ(x - M θ) / (1 + s²)
* H = E[J]          MᵀM / (1 + s²)
* fixed point       θ* = P⁻¹ Mᵀ(x - ē) / (1 + s²),
                    P = MᵀM / (1 + s²) + I / τ²

where ``ē`` is the mean simulation noise ``e_z + s e_x`` over the
simulation sub-streams.  The noise is drawn before θ is used, so a
copy of a generator reproduces the same noise at any θ.
"""

from __future__ import annotations

import numpy as np
import pytest

from muse_inference import MAPConvergenceError, MuseProblem, split_rng

N_Z = 64
NOISE = 1.0
PRIOR_SD = 3.0


def design_matrix(n_z: int = N_Z) -> np.ndarray:
    return np.column_stack([np.ones(n_z), (-1.0) ** np.arange(n_z)])


class LinearGaussianProblem(MuseProblem):
    """Linear-Gaussian toy with analytic latent derivatives and MAP."""

    def __init__(self, x=None, *, seed=0, theta_true=(1.0, -0.5), n_z=N_Z):
        self.M = design_matrix(n_z)
        self.s = NOISE
        self.tau = PRIOR_SD
        if x is None:
            x, _ = self.sample_x_z(np.random.default_rng(seed), np.asarray(theta_true))
        super().__init__(x, autodiff="numpy")

    def sample_x_z(self, rng, theta):
        e_z = rng.standard_normal(self.M.shape[0])
        e_x = rng.standard_normal(self.M.shape[0])
        z = self.M @ np.asarray(theta, dtype=float) + e_z
        return z + self.s * e_x, z

    def loglike(self, x, z, theta):
        r_x = x - z
        r_z = z - self.M @ theta
        return -0.5 * (r_x @ r_x) / self.s**2 - 0.5 * (r_z @ r_z)

    def logprior(self, theta):
        theta = np.asarray(theta, dtype=float)
        return -0.5 * (theta @ theta) / self.tau**2

    def grad_theta_loglike(self, x, z, theta, transformed=False):
        return self.M.T @ (z - self.M @ np.asarray(theta, dtype=float))

    def grad_z_loglike(self, x, z, theta):
        return (x - z) / self.s**2 - (z - self.M @ np.asarray(theta, dtype=float))

    def z_map(self, x, z_start, theta, atol=1e-2):
        s2 = self.s**2
        z_hat = (x + s2 * (self.M @ np.asarray(theta, dtype=float))) / (1 + s2)
        return z_hat, {"nit": 0, "nfev": 0, "success": True, "message": "exact",
                       "grad_norm": 0.0}

    # ---- closed forms --------------------------------------------

    @property
    def H_exact(self):
        return self.M.T @ self.M / (1 + self.s**2)

    @property
    def posterior_precision(self):
        return self.H_exact + np.eye(self.M.shape[1]) / self.tau**2

    def fixed_point(self, rng, nsims):
        """MUSE fixed point for the simulations drawn from ``split_rng(rng, nsims)``."""
        zero = np.zeros(self.M.shape[1])
        noise = np.mean([self.sample_x_z(r, zero)[0] for r in split_rng(rng, nsims)], axis=0)
        rhs = self.M.T @ (self.x - noise) / (1 + self.s**2)
        return np.linalg.solve(self.posterior_precision, rhs)


class FlakyLinearGaussianProblem(LinearGaussianProblem):
    """Fails the latent solve whenever the data sums to a positive number."""

    def z_map(self, x, z_start, theta, atol=1e-2):
        if x is not self.x and float(np.sum(x)) > 0:
            raise MAPConvergenceError("injected failure")
        return super().z_map(x, z_start, theta, atol)


@pytest.fixture()
def prob():
    return LinearGaussianProblem(seed=0)


@pytest.fixture()
def flaky_prob():
    return FlakyLinearGaussianProblem(seed=0)


@pytest.fixture()
def theta_true():
    return np.array([1.0, -0.5])
