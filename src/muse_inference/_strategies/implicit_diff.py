"""Implicit-differentiation H with a conjugate-gradient solve.

With ``F(x, z, θ) = ∇z logLike`` and ``A = ∂F/∂z`` the latent Hessian,
the MAP satisfies ``F(x, ẑ, θ₀) = 0`` and so

    dẑ/dθ = -A⁻¹ · ∂F(x(θ), ẑ, θ₀)/∂θ

when the data is redrawn at θ.  The score Jacobian then splits into

    H1 = ∂/∂θ ∇θ logLike(x(θ), ẑ, θ₀)          (through the data)
    H2 = -(∂F/∂θ)ᵀ · A⁻¹ · ∂F(x(θ), ẑ, θ₀)/∂θ   (through the MAP)

``A`` is never formed.  ``-A`` (positive definite at a maximum) is
wrapped in a ``scipy.sparse.linalg.LinearOperator`` that applies the
problem's Hessian-vector product, and each column of
``∂F(x(θ))/∂θ`` is solved for independently with
``scipy.sparse.linalg.cg``.  Iteration counts and residuals are
returned as diagnostics whether or not CG met its tolerance.
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any

import numpy as np
from scipy.sparse.linalg import LinearOperator, cg

from ..pools import map_over, run_once
from . import HSimulation

if TYPE_CHECKING:
    from .._options import HOptions
    from ..pools import WorkerPool
    from ..problem import MuseProblem

logger = logging.getLogger(__name__)


def _solve_column(
    operator: LinearOperator, rhs: np.ndarray, cg_kwargs: dict[str, Any]
) -> tuple[np.ndarray, dict[str, Any]]:
    """Solve ``operator @ sol = rhs`` by CG and report how it went."""
    iterations = 0

    def count(_xk: np.ndarray) -> None:
        nonlocal iterations
        iterations += 1

    sol, info = cg(operator, rhs, callback=count, **cg_kwargs)
    residual_norm = float(np.linalg.norm(operator.matvec(sol) - rhs))
    logger.debug(
        "CG solve: %d iterations, info=%d, residual %.3g", iterations, info, residual_norm
    )
    return sol, {
        "iterations": iterations,
        "info": int(info),
        "residual_norm": residual_norm,
    }


class ImplicitDiffH:
    """Score Jacobian through the latent MAP via the implicit function theorem."""

    name: str = "implicit_diff"

    def execute(
        self,
        prob: MuseProblem,
        theta0: np.ndarray,
        rng: np.random.Generator,
        *,
        options: HOptions,
        pool: WorkerPool,
        step: float | np.ndarray | None = None,
    ) -> HSimulation:
        n_theta = theta0.size

        def fiducial_map() -> tuple[Any, np.ndarray]:
            x, z = prob.sample_x_z(copy.deepcopy(rng), theta0)
            if options.z0 is not None:
                z_start = options.z0
            else:
                z_start = prob.z_guess_from_truth(x, z, theta0)
            z_hat, _ = prob.z_map(x, z_start, theta0, atol=options.z_atol)
            return x, z_hat

        x, z_hat = run_once(pool, fiducial_map)
        shape = np.shape(z_hat)
        n_z = int(np.size(z_hat))

        if options.implicit_diff_H1_is_zero:
            H1 = np.zeros((n_theta, n_theta))
        else:
            H1 = np.atleast_2d(prob.jac_theta_grad_theta_loglike_sim(rng, z_hat, theta0))

        dF_dtheta = np.reshape(
            prob.jac_theta_grad_z_loglike(x, z_hat, theta0), (n_z, n_theta)
        )
        dF_dtheta_sim = np.reshape(
            prob.jac_theta_grad_z_loglike_sim(rng, z_hat, theta0), (n_z, n_theta)
        )

        def neg_hvp(w: np.ndarray) -> np.ndarray:
            return -np.ravel(prob.hvp_z_loglike(x, z_hat, theta0, np.reshape(w, shape)))

        neg_A = LinearOperator((n_z, n_z), matvec=neg_hvp, dtype=float)

        # A⁻¹ w = (-A)⁻¹ (-w)
        solved = map_over(
            pool,
            lambda col: _solve_column(neg_A, -col, options.implicit_diff_cg_kwargs),
            list(dF_dtheta_sim.T),
        )
        A_inv_dF = np.column_stack([sol for sol, _ in solved])
        cg_hists = [hist for _, hist in solved]

        H2 = -(dF_dtheta.T @ A_inv_dF)
        return HSimulation(H=H1 + H2, cg_hists=cg_hists)


__all__ = ["ImplicitDiffH"]
