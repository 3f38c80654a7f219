"""H-estimation strategy registry and protocol.

Each strategy encapsulates one algorithm for the per-simulation
Jacobian of the MUSE score and exposes a uniform ``execute()``
interface that :func:`~muse_inference.covariance.get_H` calls once per
simulation.  Everything around that inner computation (sub-stream
splitting, incremental extension, failure skipping, averaging) is
shared and lives in ``covariance.py``.

Two strategies exist:

* ``"finite_difference"``: :class:`~.finite_difference.FiniteDifferenceH`,
  a column-wise finite difference of the score as the data is
  redrawn at perturbed θ.
* ``"implicit_diff"``: :class:`~.implicit_diff.ImplicitDiffH`,
  which differentiates through the latent MAP with the implicit
  function theorem and a conjugate-gradient solve.

Adding a new strategy
~~~~~~~~~~~~~~~~~~~~~
1. Create a module under ``_strategies/`` with a class that satisfies
   the :class:`HStrategy` protocol.
2. Register it in the :data:`_STRATEGY_REGISTRY` mapping below.
3. Select it from :class:`~muse_inference.HOptions` (see
   ``HOptions.method``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import numpy as np

if TYPE_CHECKING:
    from .._options import HOptions
    from ..pools import WorkerPool
    from ..problem import MuseProblem

# ------------------------------------------------------------------ #
# Per-simulation outcome
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class HSimulation:
    """Jacobian estimate from one simulation."""

    H: np.ndarray
    """``(n_theta, n_theta)`` Jacobian of the score."""

    cg_hists: list[dict[str, Any]] | None = field(default=None)
    """Conjugate-gradient diagnostics, one per right-hand side
    (implicit differentiation only)."""


# ------------------------------------------------------------------ #
# Strategy protocol
# ------------------------------------------------------------------ #


@runtime_checkable
class HStrategy(Protocol):
    """Interface that every H strategy must satisfy."""

    name: str
    """Registry key."""

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
        """Estimate the score Jacobian from one simulation.

        Args:
            prob: Problem being solved.
            theta0: Fiducial θ, natural parameterisation.
            rng: This simulation's sub-stream.  Only ever used through
                copies, so every redraw reproduces the same noise.
            options: Validated ``get_H`` settings.
            pool: Pool for the inner (per-coordinate) loop.
            step: Finite-difference step, if the strategy uses one.

        Returns:
            The Jacobian and any diagnostics.
        """
        ...


# ------------------------------------------------------------------ #
# Registry
# ------------------------------------------------------------------ #

_STRATEGY_REGISTRY: dict[str, type[HStrategy]] = {}


def _ensure_registry() -> None:
    """Populate the registry on first access."""
    if _STRATEGY_REGISTRY:
        return

    from .finite_difference import FiniteDifferenceH
    from .implicit_diff import ImplicitDiffH

    _STRATEGY_REGISTRY.update(
        {
            "finite_difference": FiniteDifferenceH,
            "implicit_diff": ImplicitDiffH,
        }
    )


def resolve_h_strategy(method: str) -> HStrategy:
    """Return a strategy instance for the given method string.

    Args:
        method: ``"finite_difference"`` or ``"implicit_diff"``.

    Raises:
        ValueError: If *method* is not recognised.
    """
    _ensure_registry()
    cls = _STRATEGY_REGISTRY.get(method)
    if cls is None:
        valid = ", ".join(sorted(_STRATEGY_REGISTRY))
        raise ValueError(f"Invalid method '{method}'. Choose from: {valid}.")
    return cls()


__all__ = [
    "HSimulation",
    "HStrategy",
    "resolve_h_strategy",
]
