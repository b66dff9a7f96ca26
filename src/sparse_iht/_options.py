"""Run options for a single IHT fit.

:class:`IHTOptions` gathers every tuning knob of the optimisation loop
into one frozen dataclass.  It is built once from the keyword arguments
of :func:`~sparse_iht.engine.fit` or
:func:`~sparse_iht.cross_validation.cross_validate` and validated in
``__post_init__`` so that an invalid configuration is rejected before
any matrix product is computed.

The options object is immutable and therefore safe to share across the
parallel cross-validation workers — each worker builds its own
:class:`~sparse_iht._state.IHTState` but reads the same options.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

_NB_METHODS = frozenset({"newton", "mm"})


@dataclass(frozen=True)
class IHTOptions:
    """Validated configuration for one IHT run.

    Attributes:
        max_iter: Maximum number of outer iterations.
        max_step: Maximum number of step-halvings per iteration.
        tol: Relative tolerance on the scaled infinity-norm change of
            the coefficients.
        debias: Refit the active set by unpenalised maximum likelihood
            whenever it is exactly full.
        penalize_covariates: When ``True`` the covariate block competes
            with the genetic block in the projection.  When ``False``
            (default) every covariate stays active.
        nb_method: Negative-binomial dispersion estimator, ``"newton"``
            or ``"mm"``.
        nb_r: Starting value of the negative-binomial dispersion ``r``.
        clamp: Bound applied to each block of the linear predictor
            before inverse-link evaluation.
        random_state: Seed (or ``None``) for the tie-breaking random
            source.
    """

    max_iter: int = 200
    max_step: int = 3
    tol: float = 1e-4
    debias: bool = False
    penalize_covariates: bool = False
    nb_method: str = "newton"
    nb_r: float = 1.0
    clamp: float = 20.0
    random_state: int | None = None

    def __post_init__(self) -> None:
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be a positive integer, got {self.max_iter}.")
        if self.max_step < 0:
            raise ValueError(f"max_step must be non-negative, got {self.max_step}.")
        if not (math.isfinite(self.tol) and self.tol > 0):
            raise ValueError(f"tol must be a positive finite number, got {self.tol}.")
        if self.tol <= 2.220446049250313e-16:
            raise ValueError(f"tol must exceed machine precision, got {self.tol}.")
        if self.nb_method not in _NB_METHODS:
            raise ValueError(
                f"Unknown nb_method {self.nb_method!r}.  Choose from: "
                f"{sorted(_NB_METHODS)}."
            )
        if not (math.isfinite(self.nb_r) and self.nb_r > 0):
            raise ValueError(f"nb_r must be positive, got {self.nb_r}.")
        if not (math.isfinite(self.clamp) and self.clamp > 0):
            raise ValueError(f"clamp must be positive, got {self.clamp}.")
