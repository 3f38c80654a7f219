"""Tests for finite-difference stencils and the column-parallel Jacobian."""

import numpy as np
import pytest

from muse_inference import (
    FiniteDifferenceMethod,
    JoblibWorkerPool,
    backward_fdm,
    central_fdm,
    forward_fdm,
    pjacobian,
)


class TestStencils:
    """Grid construction and weights."""

    def test_central_three_point(self):
        fdm = central_fdm(3, 1)
        assert fdm.grid == (-1, 0, 1)
        np.testing.assert_allclose(fdm.coefs, [-0.5, 0.0, 0.5])

    def test_central_even_skips_origin(self):
        assert central_fdm(4, 1).grid == (-2, -1, 1, 2)

    def test_central_second_derivative(self):
        np.testing.assert_allclose(central_fdm(3, 2).coefs, [1.0, -2.0, 1.0])

    def test_one_sided_grids(self):
        assert forward_fdm(3).grid == (0, 1, 2)
        assert backward_fdm(3).grid == (-2, -1, 0)

    def test_too_few_points_rejected(self):
        with pytest.raises(ValueError, match="grid points"):
            FiniteDifferenceMethod((0, 1), q=2)

    def test_duplicate_points_rejected(self):
        with pytest.raises(ValueError, match="distinct"):
            FiniteDifferenceMethod((0, 1, 1))

    def test_zero_order_rejected(self):
        with pytest.raises(ValueError, match="order"):
            FiniteDifferenceMethod((0, 1), q=0)


class TestDerivative:
    """Accuracy of scalar derivatives."""

    @pytest.mark.parametrize(
        "fdm", [central_fdm(3), central_fdm(5), forward_fdm(4), backward_fdm(4)]
    )
    def test_sine(self, fdm):
        np.testing.assert_allclose(fdm(np.sin, 0.3), np.cos(0.3), rtol=1e-6)

    def test_explicit_step_exact_for_quadratic(self):
        fdm = central_fdm(3)
        np.testing.assert_allclose(fdm(lambda t: 3 * t**2, 2.0, step=0.5), 12.0)

    def test_vector_valued_function(self):
        fdm = central_fdm(5)
        out = fdm(lambda t: np.array([t, t**2]), 1.5)
        np.testing.assert_allclose(out, [1.0, 3.0], rtol=1e-8)

    def test_zero_weight_points_not_evaluated(self):
        calls = []

        def f(t):
            calls.append(t)
            return t

        central_fdm(3)(f, 0.0, step=0.1)
        assert 0.0 not in calls
        assert len(calls) == 2

    @pytest.mark.parametrize("step", [0.0, -1.0, np.nan])
    def test_invalid_step(self, step):
        with pytest.raises(ValueError, match="step"):
            central_fdm(3)(np.sin, 0.0, step=step)


class TestPjacobian:
    """Jacobians assembled column by column."""

    def setup_method(self):
        self.A = np.array([[1.0, 2.0, 0.0], [0.0, -1.0, 4.0]])

    def test_linear_map(self):
        J = pjacobian(lambda x: self.A @ x, None, central_fdm(3), [0.1, 0.2, 0.3])
        assert J.shape == (2, 3)
        np.testing.assert_allclose(J, self.A, atol=1e-8)

    def test_parallel_matches_local(self):
        f = lambda x: np.array([np.sum(np.sin(x)), np.prod(x)])  # noqa: E731
        x = np.array([0.4, 1.1, -0.7])
        local = pjacobian(f, None, central_fdm(5), x)
        pooled = pjacobian(f, JoblibWorkerPool(n_jobs=2, backend="threading"),
                           central_fdm(5), x)
        np.testing.assert_array_equal(local, pooled)

    def test_per_coordinate_steps(self):
        J = pjacobian(lambda x: x**2, None, central_fdm(3), [1.0, 2.0], step=[0.1, 0.2])
        np.testing.assert_allclose(J, np.diag([2.0, 4.0]), atol=1e-10)

    def test_does_not_mutate_input(self):
        x = np.array([1.0, 2.0])
        pjacobian(lambda y: y, None, central_fdm(3), x)
        np.testing.assert_array_equal(x, [1.0, 2.0])
