"""The MUSE solver: a stochastic Newton-Raphson root-finder.

The MUSE estimate is the root of the expected score

    s(θ) = ∇θ logLike(x, ẑ(x, θ), θ)
           - ⟨∇θ logLike(xₖ, ẑ(xₖ, θ), θ)⟩ₖ
           + ∇θ logPrior(θ)

where ``ẑ(x, θ)`` is the latent MAP and ``xₖ`` are data simulated at
θ.  Each iteration of :func:`muse`

1. draws the simulations from a fixed set of sub-streams,
2. solves all latent MAPs (warm-started from the previous iteration),
3. forms ``s`` in the transformed parameterisation,
4. updates the inverse Jacobian ``H⁻¹_like`` of the likelihood part,
5. takes a damped Newton step ``θ' ← θ' - α · H⁻¹_post · s``.

Steps 1-3 are one ``map_over`` call on the configured pool, with the
observed data as task 0.

Inverse Jacobian
~~~~~~~~~~~~~~~~
``H_inv_update="sims"`` re-estimates ``H⁻¹_like`` every iteration as
``diag(-1 / var(simulation scores))``.  ``"broyden"`` and
``"diagonal_broyden"`` instead fold secant updates over the last
``broyden_memory`` steps of the history (:func:`broyden_replay`).  The
fold is recomputed from the stored history every time, so a resumed
run sees exactly the state an uninterrupted one would.

Convergence
~~~~~~~~~~~
From iteration 3 on, the previous step is measured in units of the
posterior width, ``sqrt(-Δθ'ᵀ H⁻¹_post Δθ')``, and the run stops once
that is below ``theta_rtol``.  Hitting ``maxsteps`` is not an error.
"""

from __future__ import annotations

import copy
import logging
import math
import time
from collections.abc import Sequence
from typing import Any

import numpy as np
from tqdm import tqdm

from ._options import MuseOptions, resolve_options
from ._results import HistoryRecord, MuseResult
from ._typing import ThetaLike
from .checkpoint import save_checkpoint
from .covariance import get_H, get_J, resolve_rng
from .pools import map_over
from .problem import MuseProblem
from .rng import split_rng

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------ #
# Broyden replay
# ------------------------------------------------------------------ #


def broyden_replay(
    records: Sequence[HistoryRecord], diagonal: bool = False
) -> np.ndarray:
    """Fold Broyden secant updates over a window of history.

    Starts from the simulation-based estimate of ``records[0]`` and
    applies one "good Broyden" inverse update per consecutive pair,

        H⁻¹ ← H⁻¹ + (Δθ' - H⁻¹Δg) Δθ'ᵀH⁻¹ / (Δθ'ᵀ H⁻¹ Δg),

    with ``Δθ'`` and ``Δg`` the changes in transformed θ and MUSE
    likelihood gradient.  A single record returns its simulation-based
    estimate unchanged.

    Args:
        records: Consecutive history records, oldest first.
        diagonal: Keep only the diagonal after every update.

    Returns:
        The updated inverse Jacobian.

    Raises:
        ValueError: If *records* is empty.
        numpy.linalg.LinAlgError: If a secant denominator is zero or
            not finite.
    """
    if not records:
        raise ValueError("broyden_replay needs at least one history record.")
    H_inv = np.array(records[0].H_inv_like_sims_t, dtype=float)
    for prev, cur in zip(records[:-1], records[1:]):
        d_theta = cur.theta_t - prev.theta_t
        d_g = cur.g_like_t - prev.g_like_t
        H_inv_dg = H_inv @ d_g
        denom = float(d_theta @ H_inv_dg)
        if denom == 0.0 or not math.isfinite(denom):
            raise np.linalg.LinAlgError(
                f"Broyden update is singular (denominator {denom!r}); "
                "reduce broyden_memory or use H_inv_update='sims'."
            )
        H_inv = H_inv + np.outer((d_theta - H_inv_dg) / denom, d_theta @ H_inv)
        if diagonal:
            H_inv = np.diag(np.diag(H_inv))
    return H_inv


def _inverse_like_jacobian(
    i: int,
    opts: MuseOptions,
    history: list[HistoryRecord],
    H_inv_like_sims: np.ndarray,
) -> np.ndarray:
    """``H⁻¹_like`` for 1-based iteration *i* (history holds iterations < i)."""
    if opts.H_inv_update == "sims":
        return H_inv_like_sims
    if i == 1:
        if opts.H_inv_like is None:
            return H_inv_like_sims
        return np.atleast_2d(np.asarray(opts.H_inv_like, dtype=float))
    if i == 2:
        return history[-1].H_inv_like_t
    j0 = int(max(2, i - opts.broyden_memory))
    return broyden_replay(
        history[j0 - 2 : i - 1], diagonal=opts.H_inv_update == "diagonal_broyden"
    )


# ------------------------------------------------------------------ #
# muse()
# ------------------------------------------------------------------ #


def _map_saver(save_MAPs: Any) -> Any:
    if save_MAPs is True:
        return lambda z: z
    if callable(save_MAPs):
        return save_MAPs
    return None


def muse(
    prob: MuseProblem,
    theta0: ThetaLike | None = None,
    *,
    result: MuseResult | None = None,
    options: MuseOptions | None = None,
    **kwargs: Any,
) -> MuseResult:
    """Run (or resume) the MUSE estimate.

    Args:
        prob: Problem to solve.
        theta0: Starting guess.  Ignored when *result* already holds a
            ``theta``.
        result: Result to resume.  Iterations continue from
            ``len(result.history) + 1`` with the stored ``theta`` and
            ``rng``.  Any covariance it holds is dropped once a
            step moves ``theta``.
        options: Prebuilt :class:`~muse_inference.MuseOptions`.
        **kwargs: Individual :class:`~muse_inference.MuseOptions`
            fields, e.g. ``nsims=200, maxsteps=20, rng=0``.

    Returns:
        The (new or resumed) :class:`~muse_inference.MuseResult`, with
        ``status`` set.

    Raises:
        ValueError: If there is no starting θ.
        numpy.linalg.LinAlgError: On a singular Jacobian update.
        MAPConvergenceError: If a latent MAP solve fails.

    Example::

        result = muse(prob, {"a": 0.0, "b": 1.0}, nsims=100, rng=42,
                      get_covariance=True)
        result.summary()
    """
    opts = resolve_options(MuseOptions, options, kwargs)
    result = MuseResult() if result is None else result
    rng = resolve_rng(opts.rng, result)
    regularize = opts.regularize if opts.regularize is not None else (lambda t: t)
    save_map = _map_saver(opts.save_MAPs)
    history = result.history

    theta_unreg = prob.standardize_theta(
        result.theta if result.theta is not None else theta0
    )
    if result.theta is None:
        result.theta = theta_unreg
    if prob.param_names is not None:
        result.param_names = list(prob.param_names)
    theta_unreg_t = prob.transform_theta(theta_unreg)
    theta_t = np.asarray(regularize(theta_unreg_t), dtype=float)
    theta = prob.inv_transform_theta(theta_t)

    if opts.z0 is not None:
        z_init = opts.z0
    else:
        z_draw = prob.sample_x_z(copy.deepcopy(rng), theta)[1]
        z_init = np.zeros_like(z_draw, dtype=float)
    z_hats: list[Any] = [z_init] * (opts.nsims + 1)
    # Same sub-streams every iteration; tasks only draw from copies.
    sim_rngs: list[np.random.Generator | None] = [None, *split_rng(rng, opts.nsims)]

    start = len(history) + 1
    n_steps = max(opts.maxsteps - len(history), 0)
    pbar = tqdm(
        total=n_steps * (opts.nsims + 1), desc="MUSE", ncols=80, disable=not opts.progress
    )
    if n_steps > 0 or result.status is None:
        result.status = "max_steps"

    def solve_one(sim_rng: np.random.Generator | None, z_prev: Any) -> dict[str, Any]:
        if sim_rng is None:
            x = prob.x
        else:
            x, _ = prob.sample_x_z(copy.deepcopy(sim_rng), theta)
        z_hat, info = prob.z_map(x, z_prev, theta, atol=opts.z_atol)
        return {
            "g": np.atleast_1d(prob.grad_theta_loglike(x, z_hat, theta)),
            "g_t": np.atleast_1d(
                prob.grad_theta_loglike(x, z_hat, theta_t, transformed=True)
            ),
            "z_hat": z_hat,
            "info": info,
        }

    try:
        for i in range(start, opts.maxsteps + 1):
            t0 = time.perf_counter()

            if i > 2:
                d_theta_t = history[-1].theta_t - history[-2].theta_t
                quad = -float(d_theta_t @ history[-1].H_inv_post_t @ d_theta_t)
                step_sigmas = math.sqrt(max(quad, 0.0))
                logger.debug("step %d: %.3g posterior sigmas", i - 2, step_sigmas)
                if step_sigmas < opts.theta_rtol:
                    result.status = "converged"
                    break

            outs = map_over(opts.pool, solve_one, sim_rngs, z_hats, progress=pbar)
            z_hats = [out["z_hat"] for out in outs]
            g_like_dat_t = outs[0]["g_t"]
            g_like_sims = np.stack([out["g"] for out in outs[1:]])
            g_like_sims_t = np.stack([out["g_t"] for out in outs[1:]])

            g_like_t = g_like_dat_t - g_like_sims_t.mean(axis=0)
            g_prior_t = prob.grad_theta_logprior(theta_t, transformed=True)
            g_post_t = g_like_t + g_prior_t

            H_inv_like_sims_t = np.diag(-1.0 / np.var(g_like_sims_t, axis=0, ddof=1))
            H_inv_like_t = _inverse_like_jacobian(i, opts, history, H_inv_like_sims_t)
            H_prior_t = prob.hessian_theta_logprior(theta_t, transformed=True)
            H_inv_post_t = np.linalg.inv(np.linalg.inv(H_inv_like_t) + H_prior_t)

            elapsed = time.perf_counter() - t0
            history.append(
                HistoryRecord(
                    theta=theta,
                    theta_t=theta_t,
                    theta_unreg=theta_unreg,
                    theta_unreg_t=theta_unreg_t,
                    g_like_dat_t=g_like_dat_t,
                    g_like_sims=g_like_sims,
                    g_like_sims_t=g_like_sims_t,
                    g_like_t=g_like_t,
                    g_prior_t=g_prior_t,
                    g_post_t=g_post_t,
                    H_inv_like_sims_t=H_inv_like_sims_t,
                    H_inv_like_t=H_inv_like_t,
                    H_prior_t=H_prior_t,
                    H_inv_post_t=H_inv_post_t,
                    z_hat_info_dat=outs[0]["info"],
                    z_hat_info_sims=[out["info"] for out in outs[1:]],
                    elapsed=elapsed,
                    z_hat_dat=save_map(z_hats[0]) if save_map else None,
                    z_hat_sims=[save_map(z) for z in z_hats[1:]] if save_map else None,
                )
            )

            theta_unreg_t = theta_t - opts.step_size(i) * (H_inv_post_t @ g_post_t)
            theta_unreg = prob.inv_transform_theta(theta_unreg_t)
            theta_t = np.asarray(regularize(theta_unreg_t), dtype=float)
            theta = prob.inv_transform_theta(theta_t)

            result.theta = theta_unreg
            result.gs = list(g_like_sims)
            result.J_nsims_failed = 0
            result.H = result.J = None
            result.Hs = []
            result.H_nsims_failed = 0
            result.Sigma_inv = result.Sigma = result.dist = None
            result.time += elapsed
            logger.debug(
                "iteration %d: |g_post| = %.3g, theta = %s (%.2fs)",
                i, float(np.linalg.norm(g_post_t)), theta_unreg, elapsed,
            )

            if opts.checkpoint_filename is not None:
                save_checkpoint(result, opts.checkpoint_filename)
    except BaseException:
        result.status = "failed"
        raise
    finally:
        pbar.close()

    logger.info(
        "MUSE finished: %s after %d iterations, theta = %s",
        result.status, len(history), result.theta,
    )

    if opts.get_covariance:
        get_J(
            prob, result=result, rng=rng, nsims=opts.nsims,
            z_atol=opts.z_atol, pool=opts.pool, progress=opts.progress,
        )
        get_H(
            prob, result=result, rng=rng, nsims=max(1, opts.nsims // 10),
            z_atol=opts.z_atol, pool=opts.pool, progress=opts.progress,
        )
    return result


__all__ = ["broyden_replay", "muse"]
