"""Per-run optimisation state for the IHT engines.

An :class:`IHTState` owns every mutable buffer of one IHT run: current
and previous coefficients, linear predictors, mean, score, active-set
masks, the dense active-column arena and the best iterate seen so far.
One state is created per call to :func:`~sparse_iht.engine.fit`; the
parallel cross-validation workers therefore never share mutable data,
only the read-only :class:`~sparse_iht.design.DesignView`.

Buffer lifecycle::

    ┌──────────────────────────────────────────────┐
    │  IHTState.allocate(n, p, q, capacity, …)     │
    │  loop:                                       │
    │  ├─ save_prev()        b0 ← b, c0 ← c, …     │
    │  ├─ gradient step + projection on b, c       │
    │  ├─ update_support()   idx ← b ≠ 0           │
    │  ├─ thin(design)       arena ← X[:, idx]     │
    │  ├─ (backtrack) restore_prev(), retry        │
    │  └─ track_best()                             │
    │  load_best()           b ← best_b, …         │
    └──────────────────────────────────────────────┘

The arena ``xk`` is sized to the sparsity budget (capped at ``p``) and
reused across iterations.  It grows only when a projection leaves more
active columns than the budget, which the excess-selection guard makes
rare.

:class:`MultivariateIHTState` carries matrix-valued coefficients
``B (r, p)`` / ``C (r, q)`` and the trait precision matrix ``Γ``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .design import DesignView, ThinDesign

logger = logging.getLogger(__name__)


def _support(a: np.ndarray) -> np.ndarray:
    if a.ndim == 1:
        return a != 0
    return np.any(a != 0, axis=0)


@dataclass
class IHTState:
    """Mutable buffers of one univariate IHT run."""

    # ---- Run constants -------------------------------------------
    family: Any
    """Current family instance (replaced when nuisance parameters move)."""

    rng: np.random.Generator
    """Random source for the excess-selection guard."""

    weights: np.ndarray
    """Per-sample weights ``(n,)``; zero masks a held-out sample."""

    # ---- Coefficients --------------------------------------------
    b: np.ndarray
    c: np.ndarray
    b0: np.ndarray
    c0: np.ndarray

    # ---- Linear predictors, mean and score -----------------------
    xb: np.ndarray
    zc: np.ndarray
    xb0: np.ndarray
    zc0: np.ndarray
    mu: np.ndarray
    resid: np.ndarray
    """Working residual ``w ⊙ dμ/dη / V(μ) ⊙ (y − μ)``."""

    df: np.ndarray
    """Score of the genetic block ``(p,)``."""

    df2: np.ndarray
    """Score of the covariate block ``(q,)``."""

    # ---- Active sets ---------------------------------------------
    idx: np.ndarray
    idc: np.ndarray
    idx0: np.ndarray
    idc0: np.ndarray

    xk: np.ndarray
    """Arena holding the standardised active genetic columns."""

    # ---- Progress ------------------------------------------------
    loglikelihood: float = float("-inf")
    best_b: np.ndarray | None = None
    best_c: np.ndarray | None = None
    best_loglikelihood: float = float("-inf")
    best_family: Any = None
    history: list[Any] = field(default_factory=list)

    @classmethod
    def allocate(
        cls,
        n: int,
        p: int,
        q: int,
        capacity: int,
        *,
        family: Any,
        rng: np.random.Generator,
        weights: np.ndarray,
    ) -> IHTState:
        """Allocate zeroed buffers for an ``n × (p + q)`` problem."""
        return cls(
            family=family,
            rng=rng,
            weights=weights,
            b=np.zeros(p),
            c=np.zeros(q),
            b0=np.zeros(p),
            c0=np.zeros(q),
            xb=np.zeros(n),
            zc=np.zeros(n),
            xb0=np.zeros(n),
            zc0=np.zeros(n),
            mu=np.zeros(n),
            resid=np.zeros(n),
            df=np.zeros(p),
            df2=np.zeros(q),
            idx=np.zeros(p, dtype=bool),
            idc=np.zeros(q, dtype=bool),
            idx0=np.zeros(p, dtype=bool),
            idc0=np.zeros(q, dtype=bool),
            xk=np.zeros((n, max(min(capacity, p), 1))),
        )

    # ---- Iterate bookkeeping -------------------------------------

    def save_prev(self) -> None:
        """Snapshot the current iterate into the ``*0`` buffers."""
        np.copyto(self.b0, self.b)
        np.copyto(self.c0, self.c)
        np.copyto(self.xb0, self.xb)
        np.copyto(self.zc0, self.zc)
        np.copyto(self.idx0, self.idx)
        np.copyto(self.idc0, self.idc)

    def restore_prev(self) -> None:
        """Reset coefficients to the last snapshot before a retry."""
        np.copyto(self.b, self.b0)
        np.copyto(self.c, self.c0)

    def update_support(self) -> None:
        self.idx = _support(self.b)
        self.idc = _support(self.c)

    def thin(self, design: DesignView) -> ThinDesign:
        """Decode the active genetic columns into the arena."""
        n_active = int(self.idx.sum())
        if n_active > self.xk.shape[1]:
            logger.debug(
                "Growing active-column arena from %d to %d columns.",
                self.xk.shape[1],
                n_active,
            )
            self.xk = np.zeros((self.xk.shape[0], n_active))
        return design.restrict(self.idx, out=self.xk)

    def scaled_norm(self) -> float:
        """``‖Δ‖∞ / (max(‖b0‖∞, ‖c0‖∞) + 1)`` over both blocks."""
        diff = max(_max_abs(self.b - self.b0), _max_abs(self.c - self.c0))
        scale = max(_max_abs(self.b0), _max_abs(self.c0)) + 1.0
        return diff / scale

    def track_best(self) -> None:
        if self.loglikelihood > self.best_loglikelihood:
            self.best_loglikelihood = self.loglikelihood
            self.best_b = self.b.copy()
            self.best_c = self.c.copy()
            self.best_family = self.family

    def load_best(self) -> None:
        """Replace the current iterate by the best one tracked so far."""
        if self.best_b is None:
            return
        np.copyto(self.b, self.best_b)
        np.copyto(self.c, self.best_c)
        self.loglikelihood = self.best_loglikelihood
        self.family = self.best_family
        self.update_support()


def _max_abs(a: np.ndarray) -> float:
    return float(np.max(np.abs(a))) if a.size else 0.0


@dataclass
class MultivariateIHTState(IHTState):
    """Buffers of one multivariate Gaussian run.

    Coefficients are trait-major: ``b`` is ``B (r, p)`` and ``c`` is
    ``C (r, q)``; predictors and residuals are sample-major ``(n, r)``.
    """

    precision: np.ndarray = field(default_factory=lambda: np.eye(1))
    """Trait precision matrix ``Γ = Σ⁻¹`` ``(r, r)``."""

    precision0: np.ndarray = field(default_factory=lambda: np.eye(1))
    best_precision: np.ndarray | None = None

    @classmethod
    def allocate_mv(
        cls,
        n: int,
        p: int,
        q: int,
        r: int,
        capacity: int,
        *,
        rng: np.random.Generator,
        weights: np.ndarray,
        family: Any,
    ) -> MultivariateIHTState:
        return cls(
            family=family,
            rng=rng,
            weights=weights,
            b=np.zeros((r, p)),
            c=np.zeros((r, q)),
            b0=np.zeros((r, p)),
            c0=np.zeros((r, q)),
            xb=np.zeros((n, r)),
            zc=np.zeros((n, r)),
            xb0=np.zeros((n, r)),
            zc0=np.zeros((n, r)),
            mu=np.zeros((n, r)),
            resid=np.zeros((n, r)),
            df=np.zeros((r, p)),
            df2=np.zeros((r, q)),
            idx=np.zeros(p, dtype=bool),
            idc=np.zeros(q, dtype=bool),
            idx0=np.zeros(p, dtype=bool),
            idc0=np.zeros(q, dtype=bool),
            xk=np.zeros((n, max(min(capacity, p), 1))),
            precision=np.eye(r),
            precision0=np.eye(r),
        )

    def save_prev(self) -> None:
        super().save_prev()
        np.copyto(self.precision0, self.precision)

    def restore_prev(self) -> None:
        super().restore_prev()
        np.copyto(self.precision, self.precision0)

    def track_best(self) -> None:
        if self.loglikelihood > self.best_loglikelihood:
            self.best_precision = self.precision.copy()
        super().track_best()

    def load_best(self) -> None:
        if self.best_precision is not None:
            np.copyto(self.precision, self.best_precision)
        super().load_best()
