"""Covariance of the MUSE estimate: the J and H matrices.

The MUSE estimate θ̂ has asymptotic covariance

    Σ = (Hᵀ J⁻¹ H + H_prior)⁻¹

where

* ``J`` is the covariance of the score ``∇θ logLike(x, ẑ(x, θ), θ)``
  over data simulated at θ (:func:`get_J`);
* ``H`` is the Jacobian of the expected score with respect to the θ the
  data was simulated at (:func:`get_H`);
* ``H_prior`` is the negated Hessian of the log-prior.

Both estimators run a batch of simulations through a
:class:`~muse_inference.pools.WorkerPool`, append the per-simulation
results to the :class:`~muse_inference.MuseResult` they are given, and
can be called again with a larger ``nsims`` to add only the missing
simulations.  Each simulation ``k`` always uses the ``k``-th
sub-stream of ``split_rng(result.rng, nsims)``, so an extended run
reproduces a single run of the full size.

Failure policy
~~~~~~~~~~~~~~
By default an exception in any simulation aborts the call.  With
``skip_errors=True`` a failing simulation is dropped instead: a
``RuntimeWarning`` names it, it is logged, and it is counted in
``result.J_nsims_failed`` / ``result.H_nsims_failed``.  ``J`` and ``H``
are then built from the ``len(result.gs)`` / ``len(result.Hs)``
successful simulations.  Only ``Exception`` subclasses are skipped;
``KeyboardInterrupt`` always propagates.
"""

from __future__ import annotations

import logging
import time
import warnings
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import numpy as np
from scipy import stats
from tqdm import tqdm

from ._options import HOptions, JOptions, resolve_options
from ._results import MuseResult
from ._strategies import resolve_h_strategy
from ._typing import SeedLike, ThetaLike
from .pools import map_over, split_pools
from .problem import MuseProblem
from .rng import as_generator, split_rng

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------ #
# Shared plumbing
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class _SkippedSimulation:
    """Placeholder returned by a task whose simulation failed."""

    index: int
    error: str


def _run_guarded(
    index: int, skip_errors: bool, fn: Callable[..., Any], *args: Any, **kwargs: Any
) -> Any:
    try:
        return fn(*args, **kwargs)
    except Exception as err:
        if not skip_errors:
            raise
        return _SkippedSimulation(index, f"{type(err).__name__}: {err}")


def _partition(outcomes: list[Any], label: str) -> tuple[list[Any], int]:
    """Split task outcomes into successes and a failure count, warning per failure."""
    successes = []
    n_failed = 0
    for outcome in outcomes:
        if isinstance(outcome, _SkippedSimulation):
            n_failed += 1
            logger.warning(
                "%s: skipping simulation %d (%s)", label, outcome.index, outcome.error
            )
            warnings.warn(
                f"{label}: skipping simulation {outcome.index} ({outcome.error}).",
                RuntimeWarning,
                stacklevel=3,
            )
        else:
            successes.append(outcome)
    return successes, n_failed


def resolve_rng(rng: SeedLike, result: MuseResult) -> np.random.Generator:
    """Pick the generator for a call and record it on *result*.

    Order: explicit *rng*, then ``result.rng``, then fresh OS entropy.
    """
    if rng is not None:
        generator = as_generator(rng)
    elif result.rng is not None:
        generator = result.rng
    else:
        generator = np.random.default_rng()
    result.rng = generator
    return generator


def _resolve_theta(
    prob: MuseProblem, theta0: ThetaLike | None, result: MuseResult
) -> np.ndarray:
    theta = prob.standardize_theta(theta0 if theta0 is not None else result.theta)
    if prob.param_names is not None:
        result.param_names = list(prob.param_names)
    if result.theta is None:
        result.theta = theta
    return theta


# ------------------------------------------------------------------ #
# J
# ------------------------------------------------------------------ #


def _score_sim(
    prob: MuseProblem,
    theta0: np.ndarray,
    rng: np.random.Generator,
    z0: np.ndarray | None,
    z_atol: float,
) -> np.ndarray:
    x, z = prob.sample_x_z(rng, theta0)
    z_start = z if z0 is None else z0
    z_hat, _ = prob.z_map(x, z_start, theta0, atol=z_atol)
    return np.atleast_1d(prob.grad_theta_loglike(x, z_hat, theta0))


def get_J(
    prob: MuseProblem,
    theta0: ThetaLike | None = None,
    *,
    result: MuseResult | None = None,
    options: JOptions | None = None,
    **kwargs: Any,
) -> MuseResult:
    """Estimate ``J``, the covariance of the score, at *theta0*.

    Args:
        prob: Problem being solved.
        theta0: θ at which to evaluate ``J``.  Defaults to
            ``result.theta``.
        result: Result to extend.  A new one is created if omitted.
        options: Prebuilt :class:`~muse_inference.JOptions`.
        **kwargs: Individual :class:`~muse_inference.JOptions` fields.

    Returns:
        *result* with ``gs`` extended to ``nsims`` attempted
        simulations, ``J`` updated and the covariance finalized when
        ``H`` is also present.

    Raises:
        RuntimeError: If no simulation succeeded.
    """
    opts = resolve_options(JOptions, options, kwargs)
    result = MuseResult() if result is None else result
    rng = resolve_rng(opts.rng, result)
    theta0 = _resolve_theta(prob, theta0, result)

    attempted = len(result.gs) + result.J_nsims_failed
    remaining = opts.nsims - attempted

    if remaining > 0:
        t0 = time.perf_counter()
        rngs = split_rng(rng, opts.nsims)[attempted:]

        def task(index: int, sim_rng: np.random.Generator) -> Any:
            return _run_guarded(
                index, opts.skip_errors, _score_sim,
                prob, theta0, sim_rng, opts.z0, opts.z_atol,
            )

        pbar = tqdm(total=remaining, desc="get_J", ncols=80, disable=not opts.progress)
        try:
            outcomes = map_over(
                opts.pool, task, range(attempted, opts.nsims), rngs, progress=pbar
            )
        finally:
            pbar.close()

        gs, n_failed = _partition(outcomes, "get_J")
        result.gs.extend(gs)
        result.J_nsims_failed += n_failed
        result.time += time.perf_counter() - t0
        logger.debug(
            "get_J: %d new simulations (%d failed), %d total",
            len(gs), n_failed, len(result.gs),
        )

    if not result.gs:
        raise RuntimeError("get_J: every simulation failed; J cannot be estimated.")
    ddof = 1 if opts.covariance_corrected else 0
    result.J = np.atleast_2d(np.cov(np.asarray(result.gs), rowvar=False, ddof=ddof))
    return finalize_result(result, prob)


# ------------------------------------------------------------------ #
# H
# ------------------------------------------------------------------ #


def default_fd_step(gs: list[np.ndarray]) -> np.ndarray | None:
    """Per-coordinate step of 0.1σ, with σ ≈ 1 / std of the score samples."""
    if len(gs) < 2:
        return None
    return 0.1 / np.std(np.asarray(gs), axis=0, ddof=1)


def get_H(
    prob: MuseProblem,
    theta0: ThetaLike | None = None,
    *,
    result: MuseResult | None = None,
    options: HOptions | None = None,
    **kwargs: Any,
) -> MuseResult:
    """Estimate ``H``, the Jacobian of the expected score, at *theta0*.

    ``H`` is the mean over simulations of a per-simulation Jacobian
    computed either by finite differences (default) or by implicit
    differentiation (``implicit_diff=True``).  Running :func:`get_J`
    first lets the finite-difference step default to 0.1σ per
    parameter.

    Args:
        prob: Problem being solved.
        theta0: θ at which to evaluate ``H``.  Defaults to
            ``result.theta``.
        result: Result to extend.  A new one is created if omitted.
        options: Prebuilt :class:`~muse_inference.HOptions`.
        **kwargs: Individual :class:`~muse_inference.HOptions` fields.

    Returns:
        *result* with ``Hs`` extended, ``H`` updated and the covariance
        finalized when ``J`` is also present.  Implicit-differentiation
        runs append their CG diagnostics (one list per simulation) to
        ``result.metadata["implicit_diff_cg_hists"]``.

    Raises:
        RuntimeError: If no simulation succeeded.
    """
    opts = resolve_options(HOptions, options, kwargs)
    result = MuseResult() if result is None else result
    rng = resolve_rng(opts.rng, result)
    theta0 = _resolve_theta(prob, theta0, result)

    attempted = len(result.Hs) + result.H_nsims_failed
    remaining = opts.nsims - attempted

    if remaining > 0:
        t0 = time.perf_counter()
        rngs = split_rng(rng, opts.nsims)[attempted:]
        pool_sims, pool_jac = split_pools(opts.pool, opts.pmap_over, theta0.size, remaining)
        strategy = resolve_h_strategy(opts.method)
        step = opts.step
        if step is None and not opts.implicit_diff:
            step = default_fd_step(result.gs)

        def task(index: int, sim_rng: np.random.Generator) -> Any:
            return _run_guarded(
                index, opts.skip_errors, strategy.execute,
                prob, theta0, sim_rng, options=opts, pool=pool_jac, step=step,
            )

        pbar = tqdm(total=remaining, desc="get_H", ncols=80, disable=not opts.progress)
        try:
            outcomes = map_over(
                pool_sims, task, range(attempted, opts.nsims), rngs, progress=pbar
            )
        finally:
            pbar.close()

        sims, n_failed = _partition(outcomes, "get_H")
        result.Hs.extend(sim.H for sim in sims)
        result.H_nsims_failed += n_failed
        cg_hists = [sim.cg_hists for sim in sims if sim.cg_hists is not None]
        if cg_hists:
            result.metadata.setdefault("implicit_diff_cg_hists", []).extend(cg_hists)
        result.time += time.perf_counter() - t0
        logger.debug(
            "get_H (%s): %d new simulations (%d failed), %d total",
            strategy.name, len(sims), n_failed, len(result.Hs),
        )

    if not result.Hs:
        raise RuntimeError("get_H: every simulation failed; H cannot be estimated.")
    result.H = np.mean(np.stack(result.Hs), axis=0)
    return finalize_result(result, prob)


# ------------------------------------------------------------------ #
# Finalization
# ------------------------------------------------------------------ #


def finalize_result(result: MuseResult, prob: MuseProblem) -> MuseResult:
    """Combine ``H``, ``J`` and ``theta`` into ``Sigma_inv``, ``Sigma`` and ``dist``.

    A no-op until all three inputs are present.  The three outputs are
    assigned together; if the combination is singular they are all
    reset to ``None`` and the error propagates.

    Raises:
        numpy.linalg.LinAlgError: If ``J`` or ``Sigma_inv`` cannot be
            inverted, or ``Sigma`` is not a valid covariance.
    """
    if result.H is None or result.J is None or result.theta is None:
        return result

    theta = np.atleast_1d(np.asarray(result.theta, dtype=float))
    H = np.atleast_2d(result.H)
    J = np.atleast_2d(result.J)
    try:
        H_prior = -prob.hessian_theta_logprior(theta, transformed=False)
        Sigma_inv = H.T @ np.linalg.solve(J, H) + H_prior
        Sigma = np.linalg.inv(Sigma_inv)
        if theta.size == 1:
            if not Sigma[0, 0] > 0:
                raise np.linalg.LinAlgError(
                    f"Posterior variance is not positive: {Sigma[0, 0]:.3g}."
                )
            dist = stats.norm(loc=theta[0], scale=np.sqrt(Sigma[0, 0]))
        else:
            dist = stats.multivariate_normal(mean=theta, cov=(Sigma + Sigma.T) / 2)
    except (np.linalg.LinAlgError, ValueError) as err:
        result.Sigma_inv = result.Sigma = result.dist = None
        if isinstance(err, np.linalg.LinAlgError):
            raise
        raise np.linalg.LinAlgError(str(err)) from err

    result.Sigma_inv, result.Sigma, result.dist = Sigma_inv, Sigma, dist
    return result


__all__ = ["default_fd_step", "finalize_result", "get_H", "get_J", "resolve_rng"]
