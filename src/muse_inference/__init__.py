"""muse_inference — Marginal Unbiased Score Expansion (MUSE) estimates.

Approximates the marginal posterior of a low-dimensional θ in a
hierarchical model θ → z → x by driving the expected score of
simulated data to zero, without ever evaluating the marginal
likelihood.  Includes the score-covariance (J) and score-Jacobian (H)
estimators that turn the estimate into a Gaussian posterior, a
deterministic random-stream splitter and pluggable joblib-based
parallelism.

Public API:
    .. autosummary::
        muse
        get_J
        get_H
        finalize_result
        broyden_replay
        MuseProblem
        JaxMuseProblem
        MAPConvergenceError
        MuseResult
        HistoryRecord
        MuseOptions
        JOptions
        HOptions
        WorkerPool
        LocalWorkerPool
        JoblibWorkerPool
        BatchWorkerPool
        map_over
        run_once
        split_rng
        as_generator
        FiniteDifferenceMethod
        central_fdm
        forward_fdm
        backward_fdm
        pjacobian
        resolve_h_strategy
        FiniteDifferenceH
        ImplicitDiffH
        save_checkpoint
        load_checkpoint
        get_backend
        set_backend
"""

from ._config import get_backend, set_backend
from ._options import HOptions, JOptions, MuseOptions
from ._results import HistoryRecord, MuseResult
from ._strategies import resolve_h_strategy
from ._strategies.finite_difference import FiniteDifferenceH
from ._strategies.implicit_diff import ImplicitDiffH
from .checkpoint import load_checkpoint, save_checkpoint
from .covariance import finalize_result, get_H, get_J
from .finite_difference import (
    FiniteDifferenceMethod,
    backward_fdm,
    central_fdm,
    forward_fdm,
    pjacobian,
)
from .jax_problem import JaxMuseProblem
from .pools import (
    BatchWorkerPool,
    JoblibWorkerPool,
    LocalWorkerPool,
    WorkerPool,
    map_over,
    run_once,
)
from .problem import MAPConvergenceError, MuseProblem
from .rng import as_generator, split_rng
from .solver import broyden_replay, muse

__all__ = [
    "muse",
    "get_J",
    "get_H",
    "finalize_result",
    "broyden_replay",
    "MuseProblem",
    "JaxMuseProblem",
    "MAPConvergenceError",
    "MuseResult",
    "HistoryRecord",
    "MuseOptions",
    "JOptions",
    "HOptions",
    "WorkerPool",
    "LocalWorkerPool",
    "JoblibWorkerPool",
    "BatchWorkerPool",
    "map_over",
    "run_once",
    "split_rng",
    "as_generator",
    "FiniteDifferenceMethod",
    "central_fdm",
    "forward_fdm",
    "backward_fdm",
    "pjacobian",
    "resolve_h_strategy",
    "FiniteDifferenceH",
    "ImplicitDiffH",
    "save_checkpoint",
    "load_checkpoint",
    "get_backend",
    "set_backend",
]

__version__ = "0.1.0"
