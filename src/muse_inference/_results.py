"""Typed result objects for MUSE runs.

Dataclasses that provide:

* **Attribute access**: ``result.theta``, ``result.Sigma``, etc.
* **Dict-like access**: ``result["theta"]``, ``result.get("key")``,
  ``"key" in result`` for consumers that prefer bracket syntax.
* **Serialisation**: ``.to_dict()`` returns a plain ``dict[str, Any]``
  with all NumPy types converted to native Python.

:class:`MuseResult` is the store that :func:`~muse_inference.muse`,
:func:`~muse_inference.get_J` and :func:`~muse_inference.get_H` fill
in and extend.  It is mutable because those calls resume from it, but
its ``history`` is append-only and the derived ``Sigma`` /
``Sigma_inv`` / ``dist`` triple is only ever set together by
:func:`~muse_inference.finalize_result`, and cleared together with
``H``, ``J`` and ``Hs`` whenever a solver step moves ``theta``.

:class:`HistoryRecord` is a frozen snapshot of one solver iteration.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, ClassVar

import numpy as np
import pandas as pd

# ------------------------------------------------------------------ #
# Serialisation helper
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Recursively convert NumPy scalars/arrays to Python-native types.

    Handles nested dicts, lists, np.ndarray, np.integer, and
    np.floating so that :meth:`to_dict` returns a fully
    JSON-serialisable structure.
    """
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        converted = [_numpy_to_python(item) for item in obj]
        return type(obj)(converted)
    return obj


# ------------------------------------------------------------------ #
# Dict-compatibility mixin
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Dict-like access convenience for result dataclasses.

    Supports three access patterns:

    1. ``result["key"]``: raises ``KeyError`` on miss
    2. ``result.get(key, d)``: returns *d* on miss (default ``None``)
    3. ``"key" in result``: membership test
    """

    # Fields to exclude from to_dict() serialisation.
    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset()

    def __getitem__(self, key: str) -> Any:
        """Attribute lookup via bracket syntax."""
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        """Attribute lookup with a fallback default."""
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        """Membership test: ``"key" in result``."""
        if not isinstance(key, str):
            return False
        return hasattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary.

        Runs :func:`_numpy_to_python` on every value not listed in
        ``_EXCLUDE_FROM_DICT`` so the returned dict is fully
        JSON-serialisable.
        """
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            result[f.name] = _numpy_to_python(getattr(self, f.name))
        return result


# ------------------------------------------------------------------ #
# HistoryRecord
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class HistoryRecord(_DictAccessMixin):
    """Snapshot of one solver iteration.

    Suffix ``_t`` marks quantities in the transformed (working)
    parameterisation.  ``theta*`` are the values at the *start* of the
    iteration; ``theta_unreg*`` the values before ``regularize`` was
    applied.
    """

    theta: np.ndarray
    """θ in the natural parameterisation."""

    theta_t: np.ndarray
    """θ' = transform(θ)."""

    theta_unreg: np.ndarray
    """Natural θ before regularisation."""

    theta_unreg_t: np.ndarray
    """Transformed θ before regularisation."""

    g_like_dat_t: np.ndarray
    """Score of the observed data."""

    g_like_sims: np.ndarray
    """Per-simulation scores, natural parameterisation, shape
    ``(nsims, n_theta)``."""

    g_like_sims_t: np.ndarray
    """Per-simulation scores, transformed parameterisation."""

    g_like_t: np.ndarray
    """MUSE likelihood gradient: data score minus mean simulation score."""

    g_prior_t: np.ndarray
    """Gradient of the transformed log-prior."""

    g_post_t: np.ndarray
    """``g_like_t + g_prior_t``."""

    H_inv_like_sims_t: np.ndarray
    """Simulation-based inverse Jacobian ``diag(-1 / var(g_like_sims_t))``."""

    H_inv_like_t: np.ndarray
    """Inverse likelihood Jacobian actually used (sims or Broyden)."""

    H_prior_t: np.ndarray
    """Hessian of the transformed log-prior."""

    H_inv_post_t: np.ndarray
    """``inv(inv(H_inv_like_t) + H_prior_t)``."""

    z_hat_info_dat: dict[str, Any]
    """Latent-solve diagnostics for the observed data."""

    z_hat_info_sims: list[dict[str, Any]]
    """Latent-solve diagnostics, one per simulation."""

    elapsed: float
    """Wall-clock seconds spent in the iteration."""

    z_hat_dat: Any = None
    """Data MAP, only kept when ``save_MAPs`` is set."""

    z_hat_sims: list[Any] | None = None
    """Simulation MAPs, only kept when ``save_MAPs`` is set."""

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset(
        {"z_hat_dat", "z_hat_sims"}
    )


# ------------------------------------------------------------------ #
# MuseResult
# ------------------------------------------------------------------ #


@dataclass
class MuseResult(_DictAccessMixin):
    """Estimate, covariance and run record of a MUSE computation.

    Fields that have not been computed yet are ``None`` (or empty).
    All fields are accessible both as attributes (``result.theta``)
    and via dict syntax (``result["theta"]``).

    Example::

        result = muse(prob, theta0, nsims=100, get_covariance=True)
        print(result)            # MuseResult([1.02±0.11, -0.31±0.05])
        result.summary()         # DataFrame of estimate / std
    """

    # ---- Estimate and covariance -----------------------------------

    theta: np.ndarray | None = None
    """Current (last unregularised) parameter estimate, natural
    parameterisation."""

    H: np.ndarray | None = None
    """Jacobian of the expected score, ``(n, n)``."""

    J: np.ndarray | None = None
    """Covariance of the score, ``(n, n)``."""

    Sigma_inv: np.ndarray | None = None
    """Inverse posterior covariance ``HᵀJ⁻¹H + H_prior``."""

    Sigma: np.ndarray | None = None
    """Posterior covariance."""

    dist: Any = None
    """Frozen ``scipy.stats`` Gaussian at ``(theta, Sigma)``."""

    # ---- Run record ------------------------------------------------

    history: list[HistoryRecord] = field(default_factory=list)
    """One :class:`HistoryRecord` per completed iteration, append-only."""

    gs: list[np.ndarray] = field(default_factory=list)
    """Per-simulation score vectors behind ``J``."""

    Hs: list[np.ndarray] = field(default_factory=list)
    """Per-simulation Jacobians behind ``H``."""

    J_nsims_failed: int = 0
    """Simulations dropped from ``gs`` under ``skip_errors``."""

    H_nsims_failed: int = 0
    """Simulations dropped from ``Hs`` under ``skip_errors``."""

    rng: np.random.Generator | None = None
    """Generator the run was seeded from.  Never advanced."""

    metadata: dict[str, Any] = field(default_factory=dict)
    """Diagnostics bag (e.g. ``"implicit_diff_cg_hists"``)."""

    time: float = 0.0
    """Cumulative wall-clock seconds across all calls."""

    status: str | None = None
    """``"converged"``, ``"max_steps"`` or ``"failed"`` after
    :func:`~muse_inference.muse`."""

    param_names: list[str] | None = None
    """Parameter labels (from a mapping θ), else ``None``."""

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset(
        {"rng", "dist", "history"}
    )

    # ---- Derived views ---------------------------------------------

    @property
    def converged(self) -> bool:
        """Whether the solver met ``theta_rtol``."""
        return self.status == "converged"

    @property
    def nsims_J(self) -> int:
        """Effective number of simulations behind ``J``."""
        return len(self.gs)

    @property
    def nsims_H(self) -> int:
        """Effective number of simulations behind ``H``."""
        return len(self.Hs)

    @property
    def std(self) -> np.ndarray | None:
        """Marginal posterior standard deviations, if ``Sigma`` is set."""
        if self.Sigma is None:
            return None
        return np.sqrt(np.diag(self.Sigma))

    def _names(self) -> list[str]:
        n = 0 if self.theta is None else np.size(self.theta)
        if self.param_names is not None and len(self.param_names) == n:
            return list(self.param_names)
        return [f"theta[{i}]" for i in range(n)]

    def __str__(self) -> str:
        if self.theta is None:
            return "MuseResult()"
        theta = np.atleast_1d(self.theta)
        std = self.std
        if std is None:
            body = ", ".join(f"{t:.4g}" for t in theta)
        else:
            body = ", ".join(f"{t:.4g}±{s:.2g}" for t, s in zip(theta, std))
        return f"MuseResult([{body}])"

    def summary(self) -> pd.DataFrame:
        """Estimate and standard deviation per parameter.

        Returns:
            DataFrame indexed by parameter name with columns
            ``estimate`` and ``std`` (``NaN`` until the covariance has
            been computed).
        """
        if self.theta is None:
            raise ValueError("The result holds no estimate yet.")
        theta = np.atleast_1d(self.theta)
        std = self.std if self.std is not None else np.full(theta.shape, np.nan)
        return pd.DataFrame(
            {"estimate": theta, "std": std},
            index=pd.Index(self._names(), name="parameter"),
        )

    def history_frame(self) -> pd.DataFrame:
        """One row per solver iteration.

        Columns are the θ components at the start of the iteration,
        the norm of the posterior gradient (``g_post_norm``) and the
        iteration wall time (``elapsed``).
        """
        names = self._names()
        rows = []
        for rec in self.history:
            row = dict(zip(names, np.atleast_1d(rec.theta)))
            row["g_post_norm"] = float(np.linalg.norm(rec.g_post_t))
            row["elapsed"] = rec.elapsed
            rows.append(row)
        frame = pd.DataFrame(rows, columns=[*names, "g_post_norm", "elapsed"])
        frame.index = pd.RangeIndex(1, len(rows) + 1, name="iteration")
        return frame


__all__ = ["HistoryRecord", "MuseResult"]
