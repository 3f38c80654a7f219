"""Finite-difference stencils and a column-parallel Jacobian.

A :class:`FiniteDifferenceMethod` is a stencil: a set of integer grid
offsets ``g_k`` and weights ``c_k`` such that

    f⁽q⁾(x₀) ≈ Σ_k c_k · f(x₀ + g_k·h) / h^q

for a step ``h``.  The weights are obtained by requiring the formula
to be exact for polynomials up to degree ``len(grid) - 1``, i.e. by
solving the Vandermonde system

    Σ_k c_k · g_k^j = q! · δ_{jq},   j = 0 … len(grid) - 1.

Example for ``central_fdm(3, 1)``: grid ``(-1, 0, 1)`` gives weights
``(-½, 0, ½)``, the familiar symmetric difference.  Points whose
weight is zero are never evaluated.

:func:`pjacobian` builds the Jacobian of a vector-valued ``f(θ)`` one
column at a time.  Columns are independent, so they are dispatched
through a :class:`~muse_inference.pools.WorkerPool`.

Step size
~~~~~~~~~
When no step is given the stencil falls back to
``eps ** (1 / (p + q - 1)) * max(1, |x₀|)`` with ``p = len(grid)``,
which balances truncation against round-off error for smooth
functions.  The covariance estimators usually pass an explicit
per-coordinate step of one tenth of the parameter's estimated
standard deviation instead, because their ``f`` is itself noisy
(each evaluation contains a latent-space optimisation).
"""

from __future__ import annotations

import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .pools import LocalWorkerPool, WorkerPool, map_over

_EPS = float(np.finfo(float).eps)


@dataclass(frozen=True)
class FiniteDifferenceMethod:
    """A finite-difference stencil for the *q*-th derivative.

    Attributes:
        grid: Integer offsets at which the function is sampled, in
            units of the step size.
        q: Derivative order.
        coefs: Stencil weights, derived from *grid* and *q*.
    """

    grid: tuple[int, ...]
    q: int = 1
    coefs: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        p = len(self.grid)
        if self.q < 1:
            raise ValueError(f"Derivative order q must be >= 1, got {self.q}.")
        if p <= self.q:
            raise ValueError(
                f"A stencil for the order-{self.q} derivative needs more than "
                f"{self.q} grid points, got {p}."
            )
        if len(set(self.grid)) != p:
            raise ValueError(f"Grid points must be distinct, got {self.grid}.")

        grid = np.asarray(self.grid, dtype=float)
        vandermonde = grid[np.newaxis, :] ** np.arange(p)[:, np.newaxis]
        rhs = np.zeros(p)
        rhs[self.q] = math.factorial(self.q)
        coefs = np.linalg.solve(vandermonde, rhs)
        coefs[np.abs(coefs) < 1e-10] = 0.0
        object.__setattr__(self, "coefs", coefs)

    def default_step(self, x0: float = 0.0) -> float:
        """Step size used when the caller does not supply one."""
        exponent = 1.0 / (len(self.grid) + self.q - 1)
        return _EPS**exponent * max(1.0, abs(float(x0)))

    def __call__(
        self,
        f: Callable[[float], Any],
        x0: float = 0.0,
        step: float | None = None,
    ) -> np.ndarray:
        """Estimate the *q*-th derivative of the scalar-input *f* at *x0*.

        Args:
            f: Function of one float.  May return a scalar or an array;
                the derivative has the same shape.
            x0: Evaluation point.
            step: Step size ``h``.  ``None`` selects
                :meth:`default_step`.

        Returns:
            The derivative estimate as a float array.
        """
        h = self.default_step(x0) if step is None else float(step)
        if not np.isfinite(h) or h <= 0:
            raise ValueError(f"Finite-difference step must be positive, got {h}.")
        total = sum(
            c * np.asarray(f(x0 + g * h), dtype=float)
            for g, c in zip(self.grid, self.coefs)
            if c != 0.0
        )
        return np.asarray(total, dtype=float) / h**self.q


def central_fdm(p: int, q: int = 1) -> FiniteDifferenceMethod:
    """Symmetric *p*-point stencil for the *q*-th derivative."""
    offsets = range(-(p // 2), p // 2 + 1)
    if p % 2:
        grid = tuple(offsets)
    else:
        grid = tuple(k for k in offsets if k != 0)
    return FiniteDifferenceMethod(grid, q)


def forward_fdm(p: int, q: int = 1) -> FiniteDifferenceMethod:
    """One-sided *p*-point stencil using ``0, 1, …, p-1``."""
    return FiniteDifferenceMethod(tuple(range(p)), q)


def backward_fdm(p: int, q: int = 1) -> FiniteDifferenceMethod:
    """One-sided *p*-point stencil using ``-(p-1), …, 0``."""
    return FiniteDifferenceMethod(tuple(range(-p + 1, 1)), q)


def _broadcast_steps(
    step: float | Sequence[float] | np.ndarray | None, n: int
) -> list[float | None]:
    if step is None:
        return [None] * n
    steps = np.broadcast_to(np.asarray(step, dtype=float), (n,))
    return [float(s) for s in steps]


def pjacobian(
    f: Callable[[np.ndarray], Any],
    pool: WorkerPool | None,
    fdm: FiniteDifferenceMethod,
    x: np.ndarray | Sequence[float],
    step: float | Sequence[float] | np.ndarray | None = None,
    progress: Any = None,
) -> np.ndarray:
    """Finite-difference Jacobian of *f* at *x*, one column per task.

    Args:
        f: Vector-valued function of a 1-d float array.  It receives a
            fresh copy of *x* with one coordinate perturbed, so it may
            keep or mutate its argument.
        pool: Pool the columns are distributed over (``None`` runs
            them locally).
        fdm: Stencil applied to each coordinate.
        x: Base point, shape ``(n,)``.
        step: Step size: ``None`` (stencil default), a scalar shared
            by all coordinates, or one value per coordinate.
        progress: Optional progress object, ticked once per column.

    Returns:
        Array of shape ``(len(f(x)), n)``.
    """
    x = np.asarray(x, dtype=float).ravel()
    pool = LocalWorkerPool() if pool is None else pool

    def _column(n: int, h: float | None) -> np.ndarray:
        def f_n(t: float) -> np.ndarray:
            xn = x.copy()
            xn[n] = t
            return np.ravel(np.asarray(f(xn), dtype=float))

        return fdm(f_n, float(x[n]), h)

    columns = map_over(
        pool, _column, range(x.size), _broadcast_steps(step, x.size), progress=progress
    )
    return np.column_stack(columns)


__all__ = [
    "FiniteDifferenceMethod",
    "backward_fdm",
    "central_fdm",
    "forward_fdm",
    "pjacobian",
]
