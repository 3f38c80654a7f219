"""Tests for the MuseProblem defaults built on the differentiation backend."""

import numpy as np
import pytest
from conftest import LinearGaussianProblem
from scipy.optimize import OptimizeResult

from muse_inference import MAPConvergenceError, MuseProblem

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


class _Bare(MuseProblem):
    """Only the three required methods; everything else is default."""

    def __init__(self, x):
        super().__init__(x, autodiff="numpy")

    def sample_x_z(self, rng, theta):
        z = theta[0] + rng.standard_normal(4)
        return z + rng.standard_normal(4), z

    def loglike(self, x, z, theta):
        return -0.5 * np.sum((x - z) ** 2) - 0.5 * np.sum((z - theta[0]) ** 2) / theta[1] ** 2

    def logprior(self, theta):
        return -0.5 * np.sum(theta**2)


class _LogTransformed(_Bare):
    """Second parameter is positive and handled on the log scale."""

    def transform_theta(self, theta):
        return np.array([theta[0], np.log(theta[1])])

    def inv_transform_theta(self, theta_t):
        return np.array([theta_t[0], np.exp(theta_t[1])])

    def log_volume_factor(self, theta_t):
        return float(theta_t[1])


class _WrongGradient(_Bare):
    def grad_z_loglike(self, x, z, theta):
        return -super().grad_z_loglike(x, z, theta)


class _LargeOffset(MuseProblem):
    """Ill-conditioned quadratic sitting on a huge constant log-likelihood."""

    scales = np.logspace(0, 3, 50)

    def __init__(self):
        super().__init__(np.zeros(50), autodiff="numpy")

    def sample_x_z(self, rng, theta):
        z = rng.standard_normal(50)
        return z, z

    def loglike(self, x, z, theta):
        return -1e12 - 0.5 * np.sum(self.scales * (z - 1.0) ** 2)

    def grad_z_loglike(self, x, z, theta):
        return -self.scales * (z - 1.0)

    def logprior(self, theta):
        return 0.0


# ------------------------------------------------------------------ #
# standardize_theta
# ------------------------------------------------------------------ #


class TestStandardizeTheta:
    def setup_method(self):
        self.prob = _Bare(np.zeros(4))

    def test_scalar(self):
        np.testing.assert_array_equal(self.prob.standardize_theta(2.0), [2.0])

    def test_sequence(self):
        out = self.prob.standardize_theta([1, 2])
        assert out.dtype == np.float64
        np.testing.assert_array_equal(out, [1.0, 2.0])

    def test_mapping_records_names(self):
        out = self.prob.standardize_theta({"mu": 0.5, "w": [1.0, 2.0]})
        np.testing.assert_array_equal(out, [0.5, 1.0, 2.0])
        assert self.prob.param_names == ["mu", "w[0]", "w[1]"]

    def test_none_rejected(self):
        with pytest.raises(ValueError, match="starting"):
            self.prob.standardize_theta(None)

    def test_matrix_rejected(self):
        with pytest.raises(ValueError, match="one-dimensional"):
            self.prob.standardize_theta(np.zeros((2, 2)))

    def test_returns_copy(self):
        theta = np.array([1.0, 2.0])
        self.prob.standardize_theta(theta)[0] = 99.0
        assert theta[0] == 1.0


# ------------------------------------------------------------------ #
# Derived capabilities
# ------------------------------------------------------------------ #


class TestDefaultDerivatives:
    """Finite-difference defaults against closed forms."""

    def setup_method(self):
        self.prob = _Bare(np.array([0.1, -0.3, 0.8, 0.2]))
        self.z = np.array([0.0, 0.5, -0.2, 0.3])
        self.theta = np.array([0.2, 1.5])

    def test_grad_z(self):
        x, z, (mu, s) = self.prob.x, self.z, self.theta
        expected = (x - z) - (z - mu) / s**2
        np.testing.assert_allclose(self.prob.grad_z_loglike(x, z, self.theta), expected,
                                   rtol=1e-7)

    def test_score(self):
        x, z, (mu, s) = self.prob.x, self.z, self.theta
        r = z - mu
        expected = [np.sum(r) / s**2, np.sum(r**2) / s**3]
        np.testing.assert_allclose(self.prob.grad_theta_loglike(x, z, self.theta),
                                   expected, rtol=1e-7)

    def test_prior_hessian(self):
        np.testing.assert_allclose(self.prob.hessian_theta_logprior(self.theta),
                                   -np.eye(2), atol=1e-6)

    def test_hvp(self):
        w = np.array([1.0, -1.0, 2.0, 0.5])
        expected = -(1 + 1 / self.theta[1] ** 2) * w
        out = self.prob.hvp_z_loglike(self.prob.x, self.z, self.theta, w)
        np.testing.assert_allclose(out, expected, rtol=1e-7)

    def test_jac_theta_grad_z_shape(self):
        J = self.prob.jac_theta_grad_z_loglike(self.prob.x, self.z, self.theta)
        assert J.shape == (4, 2)
        np.testing.assert_allclose(J[:, 0], np.full(4, 1 / self.theta[1] ** 2), rtol=1e-7)

    def test_through_data_derivatives_use_rng_copies(self):
        rng = np.random.default_rng(0)
        state = rng.bit_generator.state
        J = self.prob.jac_theta_grad_z_loglike_sim(rng, self.z, self.theta)
        assert rng.bit_generator.state == state
        # x(θ) = μ + noise, so ∂(∇z logLike)/∂μ through the data is 1.
        np.testing.assert_allclose(J[:, 0], np.ones(4), rtol=1e-6)
        np.testing.assert_allclose(J[:, 1], np.zeros(4), atol=1e-8)

    def test_identity_transform(self):
        theta = np.array([0.3, 2.0])
        np.testing.assert_array_equal(self.prob.transform_theta(theta), theta)
        assert self.prob.logprior_theta(theta, transformed=True) == self.prob.logprior(theta)


class TestTransformedParameterisation:
    def setup_method(self):
        self.prob = _LogTransformed(np.array([0.1, -0.3, 0.8, 0.2]))
        self.z = np.array([0.0, 0.5, -0.2, 0.3])

    def test_logprior_includes_volume_factor(self):
        theta_t = np.array([0.2, np.log(1.5)])
        expected = self.prob.logprior(np.array([0.2, 1.5])) + np.log(1.5)
        assert self.prob.logprior_theta(theta_t, transformed=True) == pytest.approx(expected)

    def test_score_chain_rule(self):
        theta = np.array([0.2, 1.5])
        theta_t = self.prob.transform_theta(theta)
        g = self.prob.grad_theta_loglike(self.prob.x, self.z, theta)
        g_t = self.prob.grad_theta_loglike(self.prob.x, self.z, theta_t, transformed=True)
        np.testing.assert_allclose(g_t, g * np.array([1.0, theta[1]]), rtol=1e-6)


# ------------------------------------------------------------------ #
# Latent MAP
# ------------------------------------------------------------------ #


class TestZMap:
    def test_default_solver_matches_closed_form(self):
        prob = LinearGaussianProblem(seed=3)
        theta = np.array([0.8, -0.2])
        z_hat, info = MuseProblem.z_map(prob, prob.x, np.zeros(64), theta, atol=1e-6)
        expected, _ = prob.z_map(prob.x, None, theta)
        np.testing.assert_allclose(z_hat, expected, atol=1e-4)
        assert set(info) == {"nit", "nfev", "success", "message", "grad_norm"}

    def test_warm_start_at_solution(self):
        prob = LinearGaussianProblem(seed=3)
        theta = np.array([0.8, -0.2])
        exact, _ = prob.z_map(prob.x, None, theta)
        z_hat, info = MuseProblem.z_map(prob, prob.x, exact, theta, atol=1e-3)
        np.testing.assert_allclose(z_hat, exact, atol=1e-8)
        assert info["grad_norm"] < 1e-3

    def test_non_convergence_raises(self):
        prob = _WrongGradient(np.array([0.1, -0.3, 0.8, 0.2]))
        with pytest.raises(MAPConvergenceError, match="did not converge"):
            prob.z_map(prob.x, np.ones(4), np.array([0.0, 1.0]), atol=1e-6)

    def test_reported_success_with_large_gradient_raises(self, monkeypatch):
        import muse_inference.problem as problem_module

        def stalled(fun, x0, **kwargs):
            return OptimizeResult(x=np.asarray(x0), success=True, nit=1, nfev=1,
                                  message="stalled")

        monkeypatch.setattr(problem_module, "minimize", stalled)
        prob = _Bare(np.array([0.1, -0.3, 0.8, 0.2]))
        with pytest.raises(MAPConvergenceError, match="did not converge"):
            prob.z_map(prob.x, np.ones(4), np.array([0.0, 1.0]), atol=1e-6)

    def test_large_constant_offset_never_passes_silently(self):
        prob = _LargeOffset()
        try:
            _, info = prob.z_map(prob.x, np.zeros(50), np.zeros(1), atol=1e-2)
        except MAPConvergenceError:
            return
        assert info["grad_norm"] <= 1e-2

    def test_gradient_norm_within_tolerance(self):
        prob = LinearGaussianProblem(seed=3)
        theta = np.array([0.8, -0.2])
        _, info = MuseProblem.z_map(prob, prob.x, np.zeros(64), theta, atol=1e-3)
        assert info["grad_norm"] <= 1e-3

    def test_guess_from_truth_defaults_to_truth(self):
        prob = _Bare(np.zeros(4))
        z = np.arange(4.0)
        assert prob.z_guess_from_truth(prob.x, z, np.zeros(2)) is z
