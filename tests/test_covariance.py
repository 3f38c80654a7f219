"""Tests for the J and H estimators and covariance finalization."""

import warnings

import numpy as np
import pytest

from muse_inference import (
    HOptions,
    JoblibWorkerPool,
    MuseResult,
    finalize_result,
    get_H,
    get_J,
    split_rng,
)
from muse_inference.covariance import default_fd_step

THETA0 = np.array([0.9, -0.4])
# Data simulated here sums to zero on average, so about half of the
# flaky simulations fail.
FLAKY_THETA = np.array([0.0, -0.4])


# ------------------------------------------------------------------ #
# J
# ------------------------------------------------------------------ #


class TestGetJ:
    """J is the sample covariance of the simulated scores."""

    def test_equals_sample_covariance(self, prob):
        result = get_J(prob, THETA0, rng=0, nsims=30)
        assert len(result.gs) == 30
        np.testing.assert_allclose(result.J, np.cov(np.array(result.gs), rowvar=False))

    def test_uncorrected_covariance(self, prob):
        result = get_J(prob, THETA0, rng=0, nsims=30, covariance_corrected=False)
        expected = np.cov(np.array(result.gs), rowvar=False, ddof=0)
        np.testing.assert_allclose(result.J, expected)

    def test_scores_match_manual_simulations(self, prob):
        result = get_J(prob, THETA0, rng=5, nsims=4)
        for g, sub in zip(result.gs, split_rng(np.random.default_rng(5), 4)):
            x, z = prob.sample_x_z(sub, THETA0)
            z_hat, _ = prob.z_map(x, z, THETA0)
            np.testing.assert_array_equal(g, prob.grad_theta_loglike(x, z_hat, THETA0))

    def test_incremental_extension_only_adds_delta(self, prob):
        result = get_J(prob, THETA0, rng=1, nsims=10)
        first = [g.copy() for g in result.gs]
        get_J(prob, result=result, nsims=25)
        assert len(result.gs) == 25
        for old, new in zip(first, result.gs[:10]):
            np.testing.assert_array_equal(old, new)

        straight = get_J(prob, THETA0, rng=1, nsims=25)
        np.testing.assert_array_equal(np.array(result.gs), np.array(straight.gs))
        np.testing.assert_allclose(result.J, straight.J)

    def test_smaller_request_is_a_no_op(self, prob):
        result = get_J(prob, THETA0, rng=1, nsims=10)
        get_J(prob, result=result, nsims=5)
        assert len(result.gs) == 10

    def test_matches_analytic_value(self, prob):
        result = get_J(prob, THETA0, rng=2, nsims=2000)
        np.testing.assert_allclose(result.J, prob.H_exact, rtol=0.1, atol=3.0)

    def test_pool_does_not_change_result(self, prob):
        local = get_J(prob, THETA0, rng=3, nsims=12)
        pooled = get_J(prob, THETA0, rng=3, nsims=12,
                       pool=JoblibWorkerPool(n_jobs=3, backend="threading"))
        np.testing.assert_array_equal(local.J, pooled.J)

    def test_records_rng_and_theta(self, prob):
        result = get_J(prob, THETA0, rng=4, nsims=5)
        assert isinstance(result.rng, np.random.Generator)
        np.testing.assert_array_equal(result.theta, THETA0)
        assert result.time > 0

    def test_unknown_option(self, prob):
        with pytest.raises(TypeError, match="Unknown option"):
            get_J(prob, THETA0, nsim=10)

    def test_missing_theta(self, prob):
        with pytest.raises(ValueError, match="starting"):
            get_J(prob, nsims=5)


class TestSkipErrors:
    """Failure accounting under the skip policy."""

    def _expected_successes(self, prob, seed, nsims):
        gs, n_failed = [], 0
        for sub in split_rng(np.random.default_rng(seed), nsims):
            x, z = prob.sample_x_z(sub, FLAKY_THETA)
            if np.sum(x) > 0:
                n_failed += 1
                continue
            z_hat, _ = prob.z_map(x, z, FLAKY_THETA)
            gs.append(prob.grad_theta_loglike(x, z_hat, FLAKY_THETA))
        return gs, n_failed

    def test_failures_raise_by_default(self, flaky_prob):
        with pytest.raises(Exception, match="injected failure"):
            get_J(flaky_prob, FLAKY_THETA, rng=0, nsims=40)

    def test_effective_count_and_statistics(self, flaky_prob):
        gs, n_failed = self._expected_successes(flaky_prob, 0, 40)
        assert 0 < n_failed < 40

        with pytest.warns(RuntimeWarning, match="skipping simulation"):
            result = get_J(flaky_prob, FLAKY_THETA, rng=0, nsims=40, skip_errors=True)

        assert result.J_nsims_failed == n_failed
        assert len(result.gs) == 40 - n_failed
        np.testing.assert_array_equal(np.array(result.gs), np.array(gs))
        np.testing.assert_allclose(result.J, np.cov(np.array(gs), rowvar=False))

    def test_one_warning_per_failure(self, flaky_prob):
        _, n_failed = self._expected_successes(flaky_prob, 0, 40)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            get_J(flaky_prob, FLAKY_THETA, rng=0, nsims=40, skip_errors=True)
        runtime = [w for w in caught if issubclass(w.category, RuntimeWarning)]
        assert len(runtime) == n_failed

    def test_extension_never_reuses_failed_streams(self, flaky_prob):
        with pytest.warns(RuntimeWarning):
            result = get_J(flaky_prob, FLAKY_THETA, rng=0, nsims=20, skip_errors=True)
        with pytest.warns(RuntimeWarning):
            get_J(flaky_prob, result=result, nsims=40, skip_errors=True)
        gs, n_failed = self._expected_successes(flaky_prob, 0, 40)
        assert result.J_nsims_failed == n_failed
        np.testing.assert_array_equal(np.array(result.gs), np.array(gs))

    def test_keyboard_interrupt_is_never_skipped(self, prob):
        class Interrupting(type(prob)):
            def z_map(self, x, z_start, theta, atol=1e-2):
                raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            get_J(Interrupting(seed=0), FLAKY_THETA, rng=0, nsims=3, skip_errors=True)


# ------------------------------------------------------------------ #
# H
# ------------------------------------------------------------------ #


class TestGetH:
    """Both H strategies recover the analytic Jacobian."""

    def test_finite_difference(self, prob):
        result = get_H(prob, THETA0, rng=0, nsims=3)
        assert len(result.Hs) == 3
        np.testing.assert_allclose(result.H, prob.H_exact, rtol=1e-6, atol=1e-6)

    def test_implicit_diff(self, prob):
        result = get_H(prob, THETA0, rng=0, nsims=3, implicit_diff=True)
        np.testing.assert_allclose(result.H, prob.H_exact, rtol=1e-5, atol=1e-5)

    def test_strategies_agree(self, prob):
        fd = get_H(prob, THETA0, rng=7, nsims=2)
        implicit = get_H(prob, THETA0, rng=7, nsims=2, implicit_diff=True)
        np.testing.assert_allclose(fd.H, implicit.H, rtol=1e-5, atol=1e-5)

    def test_h1_is_zero_shortcut(self, prob):
        full = get_H(prob, THETA0, rng=0, nsims=2, implicit_diff=True)
        short = get_H(prob, THETA0, rng=0, nsims=2, implicit_diff=True,
                      implicit_diff_H1_is_zero=True)
        np.testing.assert_allclose(full.H, short.H, atol=1e-6)

    def test_cg_diagnostics_recorded(self, prob):
        result = get_H(prob, THETA0, rng=0, nsims=2, implicit_diff=True)
        hists = result.metadata["implicit_diff_cg_hists"]
        assert len(hists) == 2
        assert all(len(per_sim) == 2 for per_sim in hists)
        for hist in hists[0]:
            assert set(hist) == {"iterations", "info", "residual_norm"}
            assert hist["info"] == 0

    def test_mean_of_per_sim_jacobians(self, prob):
        result = get_H(prob, THETA0, rng=0, nsims=4)
        np.testing.assert_allclose(result.H, np.mean(np.stack(result.Hs), axis=0))

    @pytest.mark.parametrize("pmap_over", ["sims", "jac", "auto"])
    def test_pmap_over_does_not_change_result(self, prob, pmap_over):
        local = get_H(prob, THETA0, rng=0, nsims=2)
        pooled = get_H(prob, THETA0, rng=0, nsims=2, pmap_over=pmap_over,
                       pool=JoblibWorkerPool(n_jobs=2, backend="threading"))
        np.testing.assert_array_equal(local.H, pooled.H)

    def test_incremental_extension(self, prob):
        result = get_H(prob, THETA0, rng=0, nsims=2)
        first = [H.copy() for H in result.Hs]
        get_H(prob, result=result, nsims=4)
        assert len(result.Hs) == 4
        np.testing.assert_array_equal(result.Hs[0], first[0])

    def test_prebuilt_options(self, prob):
        opts = HOptions(nsims=2, implicit_diff=True)
        result = get_H(prob, THETA0, rng=0, options=opts)
        assert "implicit_diff_cg_hists" in result.metadata

    def test_invalid_pmap_over(self, prob):
        with pytest.raises(ValueError, match="pmap_over"):
            get_H(prob, THETA0, pmap_over="rows")

    def test_skip_errors_accounting(self, flaky_prob):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            result = get_H(flaky_prob, FLAKY_THETA, rng=0, nsims=12, skip_errors=True)
        assert result.H_nsims_failed > 0
        assert len(result.Hs) + result.H_nsims_failed == 12


class TestDefaultStep:
    def test_needs_two_samples(self):
        assert default_fd_step([]) is None
        assert default_fd_step([np.ones(2)]) is None

    def test_tenth_of_inverse_score_std(self):
        gs = [np.array([1.0, 10.0]), np.array([3.0, 30.0])]
        np.testing.assert_allclose(default_fd_step(gs), 0.1 / np.std(gs, axis=0, ddof=1))


# ------------------------------------------------------------------ #
# Finalization
# ------------------------------------------------------------------ #


class TestFinalize:
    def test_no_op_until_all_inputs_present(self, prob):
        result = MuseResult(theta=THETA0, J=np.eye(2))
        finalize_result(result, prob)
        assert result.Sigma is None
        assert result.dist is None

    def test_combines_H_J_and_prior(self, prob):
        H = np.array([[30.0, 1.0], [1.0, 28.0]])
        J = np.array([[32.0, 2.0], [2.0, 30.0]])
        result = finalize_result(MuseResult(theta=THETA0, H=H, J=J), prob)
        expected_inv = H.T @ np.linalg.inv(J) @ H + np.eye(2) / prob.tau**2
        np.testing.assert_allclose(result.Sigma_inv, expected_inv, rtol=1e-6)
        np.testing.assert_allclose(result.Sigma, np.linalg.inv(expected_inv), rtol=1e-6)
        np.testing.assert_allclose(result.dist.mean, THETA0)

    def test_scalar_parameter_gives_normal(self, prob):
        class OneParam(type(prob)):
            def logprior(self, theta):
                return -0.5 * float(theta[0]) ** 2

        result = MuseResult(theta=np.array([0.5]), H=np.array([[4.0]]), J=np.array([[4.0]]))
        finalize_result(result, OneParam(seed=0))
        assert result.dist.mean() == pytest.approx(0.5)
        assert result.Sigma[0, 0] == pytest.approx(1 / 5, rel=1e-5)

    def test_singular_resets_all_three(self, prob):
        result = MuseResult(theta=THETA0, H=np.eye(2), J=np.eye(2))
        finalize_result(result, prob)
        assert result.Sigma is not None

        result.J = np.zeros((2, 2))
        with pytest.raises(np.linalg.LinAlgError):
            finalize_result(result, prob)
        assert result.Sigma is None
        assert result.Sigma_inv is None
        assert result.dist is None

    def test_full_covariance_matches_analytic(self, prob):
        result = get_J(prob, THETA0, rng=0, nsims=1000)
        get_H(prob, result=result, nsims=2)
        np.testing.assert_allclose(result.Sigma, np.linalg.inv(prob.posterior_precision),
                                   rtol=0.15, atol=5e-3)
