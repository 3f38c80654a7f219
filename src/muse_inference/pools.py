"""Worker pools — interchangeable strategies for "map a function over tasks".

The estimation code never calls joblib directly.  It receives a
:class:`WorkerPool` and goes through two primitives:

``map_over(pool, f, *collections)``
    Apply ``f`` elementwise to aligned collections and return the
    results in input order.  This is the only barrier in a MUSE run:
    the caller blocks until every task has finished.

``run_once(pool, f)``
    Execute a zero-argument callable on a single worker of the pool.
    Used to keep a short sequential chain (draw a simulation, then
    solve for its latent MAP) together so the intermediate data never
    travels between workers.

Three pools are provided:

* :class:`LocalWorkerPool` — plain sequential loop in the calling
  process.  The default everywhere.
* :class:`JoblibWorkerPool` — ``joblib.Parallel`` with any of its
  backends (``"loky"`` processes by default, ``"threading"`` for
  GIL-releasing work).  joblib returns results in submission order
  regardless of completion order.
* :class:`BatchWorkerPool` — wraps a :class:`JoblibWorkerPool` and
  fixes the number of tasks dispatched to a worker at a time, which
  amortises serialisation for many cheap tasks.

Progress
~~~~~~~~
Every ``map`` accepts an optional ``progress`` object with an
``update(n)`` method (a ``tqdm`` bar).  It is ticked once per
completed task *in the calling process*, as results are yielded, so
ticks also arrive from process-based pools.

Failures
~~~~~~~~
Pools do not retry and do not filter.  An exception raised by one task
propagates out of ``map`` and aborts the whole call; deciding whether
a failure is fatal belongs to the caller (see ``covariance.py``).
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any, Literal, Protocol, runtime_checkable

from joblib import Parallel, delayed

# ------------------------------------------------------------------ #
# WorkerPool protocol
# ------------------------------------------------------------------ #


@runtime_checkable
class WorkerPool(Protocol):
    """Interface that every execution strategy must implement."""

    def map(
        self,
        f: Callable[..., Any],
        *collections: Iterable[Any],
        progress: Any = None,
    ) -> list[Any]:
        """Apply *f* to aligned elements of *collections*, in order."""
        ...

    def run_once(self, f: Callable[[], Any]) -> Any:
        """Run *f* on a single worker and return its value."""
        ...


def _tick(progress: Any) -> None:
    if progress is not None:
        progress.update(1)


# ------------------------------------------------------------------ #
# Concrete pools
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class LocalWorkerPool:
    """Sequential execution in the calling process."""

    def map(
        self,
        f: Callable[..., Any],
        *collections: Iterable[Any],
        progress: Any = None,
    ) -> list[Any]:
        results = []
        for args in zip(*collections, strict=True):
            results.append(f(*args))
            _tick(progress)
        return results

    def run_once(self, f: Callable[[], Any]) -> Any:
        return f()


@dataclass(frozen=True)
class JoblibWorkerPool:
    """Parallel execution through ``joblib.Parallel``.

    Attributes:
        n_jobs: Number of workers (joblib semantics: ``-1`` means all
            cores).
        backend: joblib backend name (``"loky"``, ``"threading"``,
            ``"multiprocessing"``).  Functions shipped to ``"loky"``
            workers are serialised with cloudpickle, so closures are
            fine.
        batch_size: Tasks dispatched to a worker at a time
            (``"auto"`` lets joblib adapt it).
    """

    n_jobs: int = -1
    backend: str = "loky"
    batch_size: int | Literal["auto"] = "auto"

    def _parallel(self, n_jobs: int | None = None) -> Parallel:
        return Parallel(
            n_jobs=self.n_jobs if n_jobs is None else n_jobs,
            backend=self.backend,
            batch_size=self.batch_size,
            return_as="generator",
        )

    def map(
        self,
        f: Callable[..., Any],
        *collections: Iterable[Any],
        progress: Any = None,
    ) -> list[Any]:
        tasks = [delayed(f)(*args) for args in zip(*collections, strict=True)]
        if not tasks:
            return []
        results = []
        for value in self._parallel()(tasks):
            results.append(value)
            _tick(progress)
        return results

    def run_once(self, f: Callable[[], Any]) -> Any:
        # A single task on the pool's backend lands on exactly one worker.
        (value,) = list(self._parallel()([delayed(f)()]))
        return value


@dataclass(frozen=True)
class BatchWorkerPool:
    """A :class:`JoblibWorkerPool` with a fixed task batch size.

    Attributes:
        pool: Underlying joblib pool.
        batch_size: Number of tasks handed to a worker per dispatch.
    """

    pool: JoblibWorkerPool
    batch_size: int

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}.")

    def _batched(self) -> JoblibWorkerPool:
        return replace(self.pool, batch_size=self.batch_size)

    def map(
        self,
        f: Callable[..., Any],
        *collections: Iterable[Any],
        progress: Any = None,
    ) -> list[Any]:
        return self._batched().map(f, *collections, progress=progress)

    def run_once(self, f: Callable[[], Any]) -> Any:
        return self.pool.run_once(f)


# ------------------------------------------------------------------ #
# Module-level primitives
# ------------------------------------------------------------------ #


def map_over(
    pool: WorkerPool,
    f: Callable[..., Any],
    *collections: Iterable[Any],
    progress: Any = None,
) -> list[Any]:
    """Apply *f* elementwise over *collections* using *pool*.

    Args:
        pool: Execution strategy.
        f: Function of ``len(collections)`` positional arguments.
        *collections: Equal-length iterables.
        progress: Optional object with ``update(n)``, ticked once per
            completed task.

    Returns:
        List of results in input order.

    Raises:
        ValueError: If the collections differ in length.
    """
    return pool.map(f, *collections, progress=progress)


def run_once(pool: WorkerPool, f: Callable[[], Any]) -> Any:
    """Run the zero-argument callable *f* on a single worker of *pool*."""
    return pool.run_once(f)


def split_pools(
    pool: WorkerPool,
    pmap_over: str,
    n_theta: int,
    n_sims: int,
) -> tuple[WorkerPool, WorkerPool]:
    """Choose which axis of a two-level computation uses *pool*.

    Covariance estimators loop over simulations and, inside each
    simulation, over parameter coordinates (finite-difference columns
    or conjugate-gradient right-hand sides).  Only one of the two
    loops is handed the real pool; the other runs locally inside
    whichever task holds the parallel slot.

    Args:
        pool: The pool supplied by the caller.
        pmap_over: ``"sims"``, ``"jac"`` or ``"auto"`` (parallelise
            whichever of *n_sims* and *n_theta* is larger, preferring
            simulations on ties).
        n_theta: Number of parameters.
        n_sims: Number of simulations still to run.

    Returns:
        ``(pool_sims, pool_jac)``.
    """
    if pmap_over == "jac" or (pmap_over == "auto" and n_theta > n_sims):
        return LocalWorkerPool(), pool
    return pool, LocalWorkerPool()


__all__ = [
    "BatchWorkerPool",
    "JoblibWorkerPool",
    "LocalWorkerPool",
    "WorkerPool",
    "map_over",
    "run_once",
    "split_pools",
]
