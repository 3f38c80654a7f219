"""Explicit configuration structures for the estimation calls.

Each public entry point (:func:`~muse_inference.muse`,
:func:`~muse_inference.get_J`, :func:`~muse_inference.get_H`) accepts
its settings as keyword arguments and validates them into one of the
frozen dataclasses below.  A prebuilt instance can be passed as
``options=`` instead, e.g. to reuse one configuration across calls::

    opts = MuseOptions(nsims=200, maxsteps=20)
    result = muse(prob, theta0, options=opts)

Every field documents its default.  "Not set" is always ``None``, never
an overloaded placeholder value.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass, field, fields
from typing import Any, TypeVar

import numpy as np

from ._typing import SeedLike, StepSize
from .finite_difference import FiniteDifferenceMethod, central_fdm
from .pools import LocalWorkerPool, WorkerPool

_VALID_H_INV_UPDATES = ("sims", "broyden", "diagonal_broyden")
_VALID_PMAP_OVER = ("auto", "sims", "jac")


def _check_positive_int(name: str, value: int, minimum: int = 1) -> None:
    if not isinstance(value, (int, np.integer)) or value < minimum:
        raise ValueError(f"{name} must be an integer >= {minimum}, got {value!r}.")


def _check_pool(pool: Any) -> None:
    if not isinstance(pool, WorkerPool):
        raise TypeError(
            f"pool must implement the WorkerPool protocol, got {type(pool).__name__}."
        )


# ------------------------------------------------------------------ #
# muse()
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class MuseOptions:
    """Settings for the iterative MUSE solve."""

    rng: SeedLike = None
    """Generator (or seed) for the simulations.  Falls back to
    ``result.rng``, then to fresh OS entropy."""

    z0: np.ndarray | None = None
    """Starting guess for every latent MAP.  ``None`` uses zeros shaped
    like one latent draw."""

    maxsteps: int = 50
    """Iteration cap.  Reaching it is not an error."""

    theta_rtol: float = 1e-1
    """Stop once the last step, measured in posterior standard
    deviations, is below this value."""

    z_atol: float = 1e-2
    """Latent-gradient tolerance for every MAP solve."""

    nsims: int = 100
    """Number of simulations per iteration."""

    alpha: StepSize = 0.7
    """Newton step damping: a constant or ``f(iteration) -> float``."""

    progress: bool = False
    """Show a ``tqdm`` progress bar."""

    pool: WorkerPool = field(default_factory=LocalWorkerPool)
    """Execution strategy for the per-simulation work."""

    regularize: Callable[[np.ndarray], np.ndarray] | None = None
    """Applied to the transformed θ after each step (identity if
    ``None``)."""

    H_inv_like: np.ndarray | None = None
    """Initial inverse Jacobian of the MUSE score in the transformed
    parameterisation.  Only consulted by the Broyden updates."""

    H_inv_update: str = "sims"
    """``"sims"``, ``"broyden"`` or ``"diagonal_broyden"``."""

    broyden_memory: float = math.inf
    """Number of past steps replayed by the Broyden update."""

    checkpoint_filename: str | None = None
    """Save the result here after every iteration."""

    get_covariance: bool = False
    """Run :func:`get_J` and :func:`get_H` after the solve."""

    save_MAPs: bool | Callable[[np.ndarray], Any] = False
    """Store latent MAPs in the history; a callable preprocesses each
    MAP before it is stored."""

    def __post_init__(self) -> None:
        _check_positive_int("nsims", self.nsims)
        _check_positive_int("maxsteps", self.maxsteps, minimum=0)
        _check_pool(self.pool)
        if self.H_inv_update not in _VALID_H_INV_UPDATES:
            raise ValueError(
                f"Invalid H_inv_update '{self.H_inv_update}'. "
                f"Choose from: {', '.join(_VALID_H_INV_UPDATES)}."
            )
        if not self.broyden_memory >= 1:
            raise ValueError(
                f"broyden_memory must be >= 1, got {self.broyden_memory!r}."
            )
        if self.theta_rtol < 0 or self.z_atol <= 0:
            raise ValueError("theta_rtol must be >= 0 and z_atol must be > 0.")

    def step_size(self, i: int) -> float:
        """Damping factor α for 1-based iteration *i*."""
        return float(self.alpha(i)) if callable(self.alpha) else float(self.alpha)


# ------------------------------------------------------------------ #
# get_J()
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class JOptions:
    """Settings for the score-covariance estimate ``J``."""

    rng: SeedLike = None
    """Generator (or seed); falls back to ``result.rng``."""

    z0: np.ndarray | None = None
    """Latent MAP starting point.  ``None`` starts from the true latent
    draw of each simulation."""

    z_atol: float = 1e-2
    """Latent-gradient tolerance for every MAP solve."""

    nsims: int = 100
    """Total number of simulations ``J`` should be built from."""

    pool: WorkerPool = field(default_factory=LocalWorkerPool)
    """Execution strategy for the simulations."""

    progress: bool = False
    """Show a ``tqdm`` progress bar."""

    skip_errors: bool = False
    """Drop failing simulations (with a warning) instead of raising."""

    covariance_corrected: bool = True
    """Bias-corrected (``ddof=1``) sample covariance."""

    def __post_init__(self) -> None:
        _check_positive_int("nsims", self.nsims)
        _check_pool(self.pool)
        if self.z_atol <= 0:
            raise ValueError(f"z_atol must be > 0, got {self.z_atol!r}.")


# ------------------------------------------------------------------ #
# get_H()
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class HOptions:
    """Settings for the score-Jacobian estimate ``H``."""

    rng: SeedLike = None
    """Generator (or seed); falls back to ``result.rng``."""

    z0: np.ndarray | None = None
    """Latent MAP starting point.  ``None`` uses
    ``prob.z_guess_from_truth``."""

    z_atol: float = 1e-2
    """Latent-gradient tolerance for every MAP solve."""

    nsims: int = 10
    """Total number of simulations ``H`` should be averaged over."""

    pool: WorkerPool = field(default_factory=LocalWorkerPool)
    """Execution strategy."""

    pmap_over: str = "auto"
    """Axis handed to *pool*: ``"sims"``, ``"jac"`` or ``"auto"``."""

    progress: bool = False
    """Show a ``tqdm`` progress bar."""

    skip_errors: bool = False
    """Drop failing simulations (with a warning) instead of raising."""

    fdm: FiniteDifferenceMethod = field(default_factory=lambda: central_fdm(3, 1))
    """Stencil for the finite-difference Jacobian."""

    step: float | np.ndarray | None = None
    """Finite-difference step.  ``None`` uses 0.1σ per parameter, with σ
    estimated from ``result.gs`` when available."""

    implicit_diff: bool = False
    """Use implicit differentiation instead of finite differences."""

    implicit_diff_H1_is_zero: bool = False
    """Skip the data term of the implicit-differentiation formula."""

    implicit_diff_cg_kwargs: dict[str, Any] = field(
        default_factory=lambda: {"maxiter": 100}
    )
    """Keyword arguments for ``scipy.sparse.linalg.cg``."""

    def __post_init__(self) -> None:
        _check_positive_int("nsims", self.nsims)
        _check_pool(self.pool)
        if self.pmap_over not in _VALID_PMAP_OVER:
            raise ValueError(
                f"Invalid pmap_over '{self.pmap_over}'. "
                f"Choose from: {', '.join(_VALID_PMAP_OVER)}."
            )
        if self.z_atol <= 0:
            raise ValueError(f"z_atol must be > 0, got {self.z_atol!r}.")

    @property
    def method(self) -> str:
        """Registry key of the H algorithm these options select."""
        return "implicit_diff" if self.implicit_diff else "finite_difference"


# ------------------------------------------------------------------ #
# Resolution helper
# ------------------------------------------------------------------ #

_O = TypeVar("_O", MuseOptions, JOptions, HOptions)


def resolve_options(cls: type[_O], options: _O | None, kwargs: dict[str, Any]) -> _O:
    """Build a *cls* instance from *options* and keyword overrides.

    Raises:
        TypeError: On a keyword that is not a field of *cls*, or when
            *options* is not a *cls* instance.
    """
    valid = {f.name for f in fields(cls)}
    unknown = sorted(set(kwargs) - valid)
    if unknown:
        raise TypeError(
            f"Unknown option(s) for {cls.__name__}: {', '.join(unknown)}. "
            f"Valid options: {', '.join(sorted(valid))}."
        )
    if options is None:
        return cls(**kwargs)
    if not isinstance(options, cls):
        raise TypeError(
            f"options must be a {cls.__name__}, got {type(options).__name__}."
        )
    if not kwargs:
        return options
    return cls(**{**{f.name: getattr(options, f.name) for f in fields(cls)}, **kwargs})


__all__ = ["HOptions", "JOptions", "MuseOptions", "resolve_options"]
