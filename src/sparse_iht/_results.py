"""Typed result objects for IHT fits and cross-validation.

Frozen dataclasses that provide:

* **Attribute access** — ``result.beta``, ``result.loglikelihood``, etc.
* **Dict-like access** — ``result["beta"]``, ``result.get("key")``,
  ``"key" in result`` for consumers that prefer bracket syntax.
* **Serialisation** — ``.to_dict()`` returns a plain ``dict[str, Any]``
  with all NumPy types converted to native Python.

Two concrete result types mirror the two entry points:

* :class:`FitResult` — one IHT run at one sparsity budget.
* :class:`CrossValidationResult` — the held-out error curve over a
  path of budgets, plus the optional refit at the selected budget.

Both types are frozen to communicate that results are a snapshot of a
completed run.
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
    if isinstance(obj, (np.integer, np.bool_)):
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

    1. ``result["key"]``     — raises ``KeyError`` on miss
    2. ``result.get(key, d)`` — returns *d* on miss (default ``None``)
    3. ``"key" in result``   — membership test

    Subclasses may override ``_SERIALIZERS`` to register custom
    conversion functions for non-primitive fields.
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {}

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

        Applies per-field serializers from ``_SERIALIZERS``, then runs
        :func:`_numpy_to_python` on every value so the returned dict
        is fully JSON-serialisable.
        """
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            val = getattr(self, f.name)
            if f.name in self._SERIALIZERS:
                val = self._SERIALIZERS[f.name](val)
            result[f.name] = _numpy_to_python(val)
        return result


# ------------------------------------------------------------------ #
# Per-iteration record
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class IterationRecord(_DictAccessMixin):
    """Progress of one outer IHT iteration."""

    iteration: int
    loglikelihood: float
    step_size: float
    backtracks: int
    scaled_norm: float


# ------------------------------------------------------------------ #
# FitResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class FitResult(_DictAccessMixin):
    """Result of one IHT run at a fixed sparsity budget.

    For univariate responses ``beta`` has shape ``(p,)`` and ``c``
    shape ``(q,)``.  For multivariate responses they are ``(r, p)``
    and ``(r, q)`` — one row per trait — and ``covariance`` holds the
    estimated ``(r, r)`` error covariance.
    """

    # ---- Timing & objective ----------------------------------------
    elapsed: float
    """Wall-clock seconds spent inside the engine."""

    loglikelihood: float
    """Log-likelihood of the returned iterate."""

    iterations: int
    """Number of outer iterations performed."""

    converged: bool
    """``False`` when ``max_iter`` was exhausted; the returned iterate
    is then the best one found."""

    # ---- Coefficients ----------------------------------------------
    beta: np.ndarray
    """Genetic-block coefficients (sparse)."""

    c: np.ndarray
    """Covariate-block coefficients."""

    # ---- Model metadata --------------------------------------------
    family: str
    """Family name (e.g. ``"gaussian"``)."""

    link: str
    """Link name (e.g. ``"identity"``)."""

    k: int | list[int]
    """Sparsity budget (per group when grouped)."""

    J: int
    """Maximum number of active groups."""

    nuisance: dict[str, float] = field(default_factory=dict)
    """Estimated nuisance parameters (``"dispersion"`` or ``"r"``)."""

    covariance: np.ndarray | None = None
    """Estimated error covariance ``Σ`` (multivariate fits only)."""

    covariate_names: list[str] = field(default_factory=list)
    """Names of the covariate columns (intercept first when added)."""

    history: list[IterationRecord] = field(default_factory=list, repr=False)
    """One record per outer iteration."""

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "history": lambda h: [r.to_dict() for r in h],
    }

    @property
    def support(self) -> np.ndarray:
        """Indices of active genetic predictors."""
        if self.beta.ndim == 1:
            return np.flatnonzero(self.beta)
        return np.flatnonzero(np.any(self.beta != 0, axis=0))

    @property
    def n_active(self) -> int:
        """Number of nonzero genetic coefficients."""
        return int(np.count_nonzero(self.beta))


# ------------------------------------------------------------------ #
# CrossValidationResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class CrossValidationResult(_DictAccessMixin):
    """Held-out error curve over a path of sparsity budgets."""

    path: list[int]
    """Candidate sparsity budgets, in the order supplied."""

    fold_errors: np.ndarray
    """Held-out error per fold and budget, shape ``(n_folds, len(path))``."""

    mean_errors: np.ndarray
    """Fold-averaged held-out error per budget, shape ``(len(path),)``."""

    best_k: int
    """Budget with the minimum mean error (smallest on ties)."""

    folds: np.ndarray
    """Fold label ``1..n_folds`` of every sample."""

    elapsed: float
    """Wall-clock seconds for the whole cross-validation."""

    result: FitResult | None = None
    """Refit on the full data at ``best_k`` (``None`` when disabled)."""

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "result": lambda r: None if r is None else r.to_dict(),
    }

    def to_frame(self) -> pd.DataFrame:
        """Return the error curve as a DataFrame indexed by budget."""
        n_folds = self.fold_errors.shape[0]
        data = {"mean_error": self.mean_errors}
        for f in range(n_folds):
            data[f"fold_{f + 1}"] = self.fold_errors[f]
        frame = pd.DataFrame(data, index=pd.Index(self.path, name="k"))
        return frame
