"""Finite-difference H: perturb θ, redraw the data, re-solve the MAP.

For one simulation with sub-stream ``rng``:

1. Draw ``(x, z)`` at the fiducial θ₀ and solve the latent MAP ẑ₀
   there (kept together on one worker with ``run_once``).
2. Differentiate, column by column,

       g(θ) = ∇θ logLike(x(θ), ẑ(x(θ), θ₀), θ₀)

   where ``x(θ)`` is the data redrawn at θ from a copy of ``rng`` and
   ``ẑ(x, θ₀)`` is the MAP re-solved at θ₀ warm-started from ẑ₀.
   Only the data moves with θ; MAP and score stay at θ₀.
"""

from __future__ import annotations

import copy
from typing import TYPE_CHECKING

import numpy as np

from ..finite_difference import pjacobian
from ..pools import run_once
from . import HSimulation

if TYPE_CHECKING:
    from .._options import HOptions
    from ..pools import WorkerPool
    from ..problem import MuseProblem


class FiniteDifferenceH:
    """Mixed-perturbation finite-difference Jacobian of the score."""

    name: str = "finite_difference"

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
        atol = options.z_atol

        def fiducial_map() -> np.ndarray:
            x, z = prob.sample_x_z(copy.deepcopy(rng), theta0)
            if options.z0 is not None:
                z_start = options.z0
            else:
                z_start = prob.z_guess_from_truth(x, z, theta0)
            z_hat, _ = prob.z_map(x, z_start, theta0, atol=atol)
            return z_hat

        z_hat0 = run_once(pool, fiducial_map)

        def score_at(theta: np.ndarray) -> np.ndarray:
            x, _ = prob.sample_x_z(copy.deepcopy(rng), theta)
            z_hat, _ = prob.z_map(x, z_hat0, theta0, atol=atol)
            return prob.grad_theta_loglike(x, z_hat, theta0)

        H = pjacobian(score_at, pool, options.fdm, theta0, step)
        return HSimulation(H=np.atleast_2d(H))


__all__ = ["FiniteDifferenceH"]
