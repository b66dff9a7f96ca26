"""IHT engine — projected gradient ascent on a GLM log-likelihood.

The :class:`IHTEngine` runs one Iterative Hard Thresholding fit at a
fixed sparsity budget.  Every outer iteration

1. computes the step size

       η = ‖g_S‖² / (g_Sᵀ X_Sᵀ W X_S g_S),   W = diag(w ⊙ (dμ/dη)² / V(μ))

   on the current support ``S`` (the information matrix is never
   formed; only the thin active columns are touched);
2. takes the gradient step ``β ← β + η·g`` from the saved iterate and
   projects onto the sparsity set (plain, weighted or grouped);
3. backtracks — halving ``η`` and redoing step 2 from the saved
   iterate — while the log-likelihood is below the previous one, at
   most ``max_step`` times;
4. re-estimates nuisance parameters (negative-binomial ``r``),
   recomputes the score and optionally debiases a full active set by
   an unpenalised statsmodels GLM refit;
5. declares convergence when

       ‖Δβ‖∞ / (max(‖β₀‖∞, ‖c₀‖∞) + 1) < tol

   after at least two iterations.

State machine::

    Init ─▶ Stepping ─▶ Backtracking ─┬─▶ Stepping
                                      ├─▶ Converged
                                      ├─▶ MaxIterExceeded (best iterate)
                                      └─▶ Diverged (NumericalInstabilityError)

Numerical safety
~~~~~~~~~~~~~~~~
For non-identity links each block of the linear predictor is clamped
to ``[−clamp, clamp]`` before the inverse link.  A zero numerator or
denominator in the step size (an all-zero score on the support)
logs a warning and proceeds with ``η = 1e-8``; a non-finite step size
or log-likelihood raises :class:`NumericalInstabilityError`.

Cross-validation masking
~~~~~~~~~~~~~~~~~~~~~~~~
``sample_weights`` multiply every per-sample term of the
log-likelihood, the score and the information.  Cross-validation
trains with a 0/1 mask instead of subsetting the design, so all
workers share one read-only :class:`~sparse_iht.design.DesignView`.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import time
import warnings
from typing import Any

import numpy as np
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from ._errors import NumericalInstabilityError
from ._options import IHTOptions
from ._results import FitResult, IterationRecord
from ._state import IHTState
from ._typing import Budget
from .design import DesignView, ThinDesign, as_design, check_sample_weights
from .families import (
    ModelFamily,
    MultivariateGaussianFamily,
    NegativeBinomialFamily,
    resolve_family,
)
from .projections import (
    check_group_budget,
    choose_excess,
    normalize_groups,
    project,
    project_weighted,
)

logger = logging.getLogger(__name__)

_FALLBACK_STEP = 1e-8
_INTERCEPT_NEWTON_ITERS = 20


# ------------------------------------------------------------------ #
# Budget resolution
# ------------------------------------------------------------------ #


def resolve_budget(
    k: Budget,
    J: int,
    groups: np.ndarray | None,
) -> tuple[Budget, np.ndarray | None, int]:
    """Validate a sparsity budget.

    Returns:
        ``(k, groups, capacity)`` where *groups* is 0-based (or
        ``None``) and *capacity* is the largest number of entries the
        projection can keep.

    Raises:
        ValueError: For non-positive budgets, ``J < 1``, a vector
            budget without groups, or budgets exceeding a group's
            population.
    """
    if isinstance(J, bool) or int(J) != J or J < 1:
        raise ValueError(f"J (max active groups) must be a positive integer, got {J!r}.")
    J = int(J)
    if groups is None:
        if np.ndim(k) != 0:
            raise ValueError("A per-group budget vector requires a group map.")
        if isinstance(k, bool) or int(k) != k or int(k) < 1:
            raise ValueError(f"Sparsity budget k must be a positive integer, got {k!r}.")
        return int(k), None, J * int(k)

    g = normalize_groups(groups)
    kv = check_group_budget(k, g)
    if np.ndim(k) == 0:
        if int(k) < 1:
            raise ValueError(f"Sparsity budget k must be a positive integer, got {k!r}.")
        k_out: Budget = int(k)
    else:
        if not np.any(kv > 0):
            raise ValueError("At least one group must have a positive budget.")
        k_out = kv
    capacity = int(np.sort(kv)[::-1][:J].sum())
    return k_out, g, capacity


# ------------------------------------------------------------------ #
# IHTEngine
# ------------------------------------------------------------------ #


class IHTEngine:
    """One IHT run of a univariate GLM at a fixed sparsity budget.

    The engine resolves everything once in ``__init__`` (family,
    budget, group map, weights) and then only calls family and design
    methods inside :meth:`run`.

    Args:
        design: The shared ``[X | Z]`` design.
        y: Response vector ``(n,)``.
        family: Resolved family instance.
        k: Sparsity budget (scalar, or one entry per group).
        J: Maximum number of active groups.
        groups: Group id per penalised predictor, or ``None``.
        weights: Positive prior weights per penalised predictor.
        sample_weights: Non-negative per-sample weights (0 masks a
            sample out of the fit).
        options: Validated run options.
    """

    def __init__(
        self,
        design: DesignView,
        y: np.ndarray,
        family: ModelFamily,
        k: Budget,
        *,
        J: int = 1,
        groups: np.ndarray | None = None,
        weights: np.ndarray | None = None,
        sample_weights: np.ndarray | None = None,
        options: IHTOptions | None = None,
    ) -> None:
        self.design = design
        self.options = options if options is not None else IHTOptions()
        self.family = family
        n, p, q = design.n_samples, design.n_genetic, design.n_covariates

        y = np.asarray(y, dtype=float)
        if y.ndim == 2 and y.shape[1] == 1:
            y = y[:, 0]
        if y.shape != (n,):
            raise ValueError(f"y must have shape ({n},), got {y.shape}.")
        self.sample_weights = check_sample_weights(sample_weights, n)
        family.validate_y(y[self.sample_weights > 0])
        self.y = y

        penalize = self.options.penalize_covariates
        n_penalized = p + q if penalize else p
        if groups is not None and len(groups) != n_penalized:
            raise ValueError(
                f"groups must have one entry per penalised predictor "
                f"({n_penalized}), got {len(groups)}."
            )
        self.k, self.groups, self.capacity = resolve_budget(k, J, groups)
        self.J = int(J)
        self.prior = self._check_prior(weights, p, q, penalize)

    @staticmethod
    def _check_prior(
        weights: np.ndarray | None,
        p: int,
        q: int,
        penalize: bool,
    ) -> np.ndarray | None:
        if weights is None:
            return None
        w = np.asarray(weights, dtype=float)
        if penalize and w.shape == (p,):
            w = np.concatenate([w, np.ones(q)])
        expected = p + q if penalize else p
        if w.shape != (expected,):
            raise ValueError(f"weights must have shape ({expected},), got {w.shape}.")
        if not np.all(np.isfinite(w)) or np.any(w <= 0):
            raise ValueError("Prior weights must be finite and strictly positive.")
        return w

    # ---- Projection ----------------------------------------------

    def _threshold(self, b: np.ndarray, c: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Project ``b`` (and ``c`` when penalised) onto the sparsity set."""
        penalize = self.options.penalize_covariates
        full = np.concatenate([b, c]) if penalize else b
        if self.prior is not None:
            out = project_weighted(full, self.k, self.prior, groups=self.groups, J=self.J)
        else:
            out = project(full, self.k, groups=self.groups, J=self.J)
        if penalize:
            return out[: len(b)], out[len(b) :]
        return out, c

    def _update_support(self, state: IHTState) -> None:
        state.update_support()
        if not self.options.penalize_covariates:
            state.idc[:] = True

    def _project(self, state: IHTState) -> None:
        b, c = self._threshold(state.b, state.c)
        state.b[:] = b
        state.c[:] = c
        if self.groups is None or np.ndim(self.k) == 0:
            choose_excess(
                state.b,
                state.c,
                self.capacity,
                state.rng,
                self.options.penalize_covariates,
            )
        self._update_support(state)

    def _active_count(self, state: IHTState) -> int:
        n = int(state.idx.sum())
        if self.options.penalize_covariates:
            n += int(state.idc.sum())
        return n

    # ---- Model evaluation ----------------------------------------

    def _clamp(self, eta: np.ndarray) -> np.ndarray:
        if self.family.link.name == "identity":
            return eta
        bound = self.options.clamp
        return np.clip(eta, -bound, bound)

    def _refresh(self, state: IHTState) -> float:
        """Recompute predictors and mean from ``b``, ``c``; return ℓ."""
        self._thin = state.thin(self.design)
        state.xb[:] = self._clamp(self._thin.matvec(state.b[self._thin.indices]))
        state.zc[:] = self._clamp(self.design.Z @ state.c)
        state.mu[:] = state.family.mean(state.xb + state.zc)
        return state.family.loglikelihood(self.y, state.mu, state.weights)

    def _score(self, state: IHTState) -> None:
        """Score ``Xᵀ W (y − μ)`` with ``W = w ⊙ dμ/dη / V(μ)``."""
        fam = state.family
        eta = state.xb + state.zc
        w = state.weights * fam.link_derivative(eta) / fam.variance(state.mu)
        state.resid[:] = w * (self.y - state.mu)
        df, df2 = self.design.matvec_transpose(state.resid)
        state.df[:] = df
        state.df2[:] = df2

    def _step_size(self, state: IHTState) -> float:
        """``η = ‖g_S‖² / (g_Sᵀ X_Sᵀ W X_S g_S)`` on the current support.

        Raises:
            NumericalInstabilityError: If the step size is not finite.
        """
        thin: ThinDesign = self._thin
        gk = state.df[thin.indices]
        gc = state.df2[state.idc]
        numer = float(gk @ gk + gc @ gc)
        xg = thin.matvec(gk) + self.design.Z[:, state.idc] @ gc
        fam = state.family
        info = (
            state.weights
            * np.square(fam.link_derivative(state.xb + state.zc))
            / fam.variance(state.mu)
        )
        denom = float(xg @ (info * xg))
        if numer == 0.0 or denom == 0.0:
            logger.warning(
                "Score is zero on the active set; using fallback step size %g.",
                _FALLBACK_STEP,
            )
            return _FALLBACK_STEP
        eta = numer / denom
        if not math.isfinite(eta):
            raise NumericalInstabilityError(
                f"Step size is not finite (numerator={numer:.6g}, "
                f"denominator={denom:.6g})."
            )
        return eta

    def _step(self, state: IHTState, eta: float) -> float:
        """Gradient step from the saved iterate, projection, new ℓ."""
        state.b += eta * state.df
        state.c += eta * state.df2
        self._project(state)
        return self._refresh(state)

    # ---- Initialisation ------------------------------------------

    def _init_intercept(self, state: IHTState) -> None:
        """Newton iterations so the intercept alone matches the mean of y."""
        j = self.design.intercept_index
        if j is None:
            return
        w = state.weights
        ybar = float(np.dot(w, self.y) / w.sum())
        link = state.family.link
        if link.name == "identity":
            state.c[j] = ybar
            return
        c0 = 0.0
        for _ in range(_INTERCEPT_NEWTON_ITERS):
            g1 = float(link.inverse(np.array(c0)))
            g2 = float(link.mu_eta(np.array(c0)))
            if abs(g1 - ybar) < 1e-10 or g2 == 0.0:
                break
            c0 -= float(np.clip((g1 - ybar) / g2, -1.0, 1.0))
        state.c[j] = c0

    def _initialize(self) -> IHTState:
        design, opts = self.design, self.options
        state = IHTState.allocate(
            design.n_samples,
            design.n_genetic,
            design.n_covariates,
            self.capacity,
            family=self.family,
            rng=np.random.default_rng(opts.random_state),
            weights=self.sample_weights,
        )
        self._init_intercept(state)
        self._update_support(state)
        state.loglikelihood = self._refresh(state)
        self._score(state)

        # Initial support: largest entries of the score.
        sb, sc = self._threshold(state.df, state.df2)
        if not np.any(sb) and not (opts.penalize_covariates and np.any(sc)):
            logger.warning(
                "Score is identically zero at initialisation; starting "
                "from an empty active set."
            )
        state.idx = sb != 0
        if opts.penalize_covariates:
            state.idc = sc != 0
        else:
            state.idc[:] = True
        self._thin = state.thin(design)
        state.track_best()
        return state

    # ---- Debiasing -----------------------------------------------

    def _debias(self, state: IHTState) -> None:
        """Refit the active columns by unpenalised maximum likelihood."""
        thin: ThinDesign = self._thin
        cols = np.flatnonzero(state.idc)
        X = np.column_stack([thin.columns, self.design.Z[:, cols]])
        rows = state.weights > 0
        try:
            with warnings.catch_warnings():
                # Non-convergence and overflow inside IRLS are expected
                # for nearly separable or tiny active sets.
                warnings.filterwarnings("ignore")
                model = sm.GLM(
                    self.y[rows],
                    X[rows],
                    family=state.family.sm_family(),
                    freq_weights=state.weights[rows],
                )
                params = np.asarray(model.fit().params, dtype=float)
        except (np.linalg.LinAlgError, ValueError, PerfectSeparationError) as exc:
            logger.debug("Debiasing refit failed: %s", exc)
            return
        if not np.all(np.isfinite(params)) or not np.any(params):
            logger.debug("Debiasing refit returned degenerate estimates; skipped.")
            return

        b_prev, c_prev, ll_prev = state.b.copy(), state.c.copy(), state.loglikelihood
        s = len(thin.indices)
        state.b[thin.indices] = params[:s]
        state.c[cols] = params[s:]
        self._update_support(state)
        ll = self._refresh(state)
        if not ll >= ll_prev:
            logger.debug("Debiasing lowered the log-likelihood; reverted.")
            np.copyto(state.b, b_prev)
            np.copyto(state.c, c_prev)
            self._update_support(state)
            ll = self._refresh(state)
        state.loglikelihood = ll

    # ---- Main loop -----------------------------------------------

    def run(self) -> FitResult:
        """Run IHT to convergence or ``max_iter``.

        Returns:
            A :class:`FitResult`.  When ``max_iter`` is exhausted the
            best iterate is returned with ``converged=False``.

        Raises:
            NumericalInstabilityError: On a non-finite log-likelihood
                or step size.
        """
        start = time.perf_counter()
        opts = self.options
        state = self._initialize()
        converged = False
        iteration = 0

        for iteration in range(1, opts.max_iter + 1):
            state.save_prev()
            old_ll = state.loglikelihood

            eta = self._step_size(state)
            new_ll = self._step(state, eta)
            backtracks = 0
            while new_ll < old_ll and backtracks < opts.max_step:
                eta /= 2.0
                state.restore_prev()
                new_ll = self._step(state, eta)
                backtracks += 1

            if not math.isfinite(new_ll):
                raise NumericalInstabilityError(
                    f"Log-likelihood is not finite ({new_ll}) at iteration {iteration}."
                )
            state.loglikelihood = new_ll

            # Nuisance parameters at the new mean.
            updated = state.family.update_nuisance(
                self.y, state.mu, state.weights, method=opts.nb_method
            )
            if updated is not state.family:
                state.family = updated
                state.loglikelihood = state.family.loglikelihood(
                    self.y, state.mu, state.weights
                )
                logger.debug("Nuisance parameters updated: %s", updated.nuisance_params())

            if opts.debias and self._active_count(state) == self.capacity:
                self._debias(state)

            self._score(state)

            scaled = state.scaled_norm()
            state.history.append(
                IterationRecord(
                    iteration=iteration,
                    loglikelihood=state.loglikelihood,
                    step_size=eta,
                    backtracks=backtracks,
                    scaled_norm=scaled,
                )
            )
            logger.debug(
                "iter %d: loglik=%.6f eta=%.4g backtracks=%d scaled_norm=%.3g",
                iteration,
                state.loglikelihood,
                eta,
                backtracks,
                scaled,
            )
            state.track_best()

            if iteration > 1 and scaled < opts.tol:
                converged = True
                break

        if not converged:
            logger.warning(
                "IHT did not converge within %d iterations (k=%s); returning "
                "the best iterate found.",
                opts.max_iter,
                self.k,
            )
            state.load_best()
            state.loglikelihood = self._refresh(state)

        return self._package(state, iteration, converged, time.perf_counter() - start)

    def _package(
        self,
        state: IHTState,
        iterations: int,
        converged: bool,
        elapsed: float,
    ) -> FitResult:
        fam = state.family
        nuisance = {"dispersion": fam.dispersion(self.y, state.mu, state.weights)}
        nuisance.update(fam.nuisance_params())
        k = self.k if np.ndim(self.k) == 0 else [int(v) for v in self.k]
        return FitResult(
            elapsed=elapsed,
            loglikelihood=state.loglikelihood,
            iterations=iterations,
            converged=converged,
            beta=state.b.copy(),
            c=state.c.copy(),
            family=fam.name,
            link=fam.link.name,
            k=k,
            J=self.J,
            nuisance=nuisance,
            covariate_names=list(self.design.covariate_names),
            history=list(state.history),
        )


# ------------------------------------------------------------------ #
# Public entry points
# ------------------------------------------------------------------ #


def _resolve_run_family(family: Any, link: Any, nb_r: float) -> Any:
    fam = resolve_family(family, link)
    if isinstance(fam, NegativeBinomialFamily) and not isinstance(
        family, NegativeBinomialFamily
    ):
        fam = dataclasses.replace(fam, r=nb_r)
    return fam


def fit(
    design: Any,
    y: Any,
    family: str | ModelFamily = "gaussian",
    link: str | None = None,
    k: Budget = 10,
    *,
    J: int = 1,
    groups: np.ndarray | None = None,
    weights: np.ndarray | None = None,
    sample_weights: np.ndarray | None = None,
    max_iter: int = 200,
    max_step: int = 3,
    tol: float = 1e-4,
    debias: bool = False,
    penalize_covariates: bool = False,
    nb_method: str = "newton",
    nb_r: float = 1.0,
    random_state: int | None = None,
) -> FitResult:
    """Fit a sparse GLM by Iterative Hard Thresholding.

    Args:
        design: A :class:`~sparse_iht.design.DesignView`, a genetic
            block, or a float array (wrapped with an intercept).
        y: Response ``(n,)``; an ``(n, r)`` array with ``r > 1``
            dispatches to the multivariate Gaussian engine.
        family: Family name or instance.
        link: Link name, or ``None`` for the canonical link.
        k: Sparsity budget; with *groups*, the per-group budget
            (scalar or one entry per group).
        J: Maximum number of active groups.
        groups: Group id (dense, starting at 0 or 1) per penalised
            predictor.
        weights: Positive prior weights per penalised predictor, e.g.
            from :func:`~sparse_iht.design.maf_weights`.
        sample_weights: Non-negative per-sample weights; zeros mask
            samples out of the fit.
        max_iter: Maximum outer iterations.
        max_step: Maximum step-halvings per iteration.
        tol: Relative convergence tolerance.
        debias: Refit full active sets by unpenalised ML.
        penalize_covariates: Let covariates compete in the projection.
        nb_method: ``"newton"`` or ``"mm"`` for negative-binomial ``r``.
        nb_r: Starting negative-binomial ``r``.
        random_state: Seed for the excess-selection tie-break.

    Returns:
        A :class:`~sparse_iht._results.FitResult`.

    Raises:
        ValueError: On invalid configuration or response.
        NumericalInstabilityError: On non-finite likelihoods, step
            sizes or a precision matrix that is not positive definite.
    """
    options = IHTOptions(
        max_iter=max_iter,
        max_step=max_step,
        tol=tol,
        debias=debias,
        penalize_covariates=penalize_covariates,
        nb_method=nb_method,
        nb_r=nb_r,
        random_state=random_state,
    )
    view = as_design(design)
    y_arr = np.asarray(y, dtype=float)

    if y_arr.ndim == 2 and y_arr.shape[1] > 1:
        from .multivariate import MultivariateIHTEngine

        if family not in ("gaussian", "normal", "mvnormal") and not isinstance(
            family, MultivariateGaussianFamily
        ):
            raise ValueError(
                f"Family {family!r} does not support multivariate responses; "
                f"use 'mvnormal'."
            )
        if groups is not None or weights is not None or J != 1:
            raise ValueError(
                "Grouped and weighted projections are not available for "
                "multivariate responses."
            )
        engine: Any = MultivariateIHTEngine(
            view,
            y_arr,
            k,
            sample_weights=sample_weights,
            options=options,
        )
        fam_name = "mvnormal"
    else:
        fam = _resolve_run_family(family, link, nb_r)
        if isinstance(fam, MultivariateGaussianFamily):
            raise ValueError("Family 'mvnormal' requires an (n, r) response with r >= 2.")
        engine = IHTEngine(
            view,
            y_arr,
            fam,
            k,
            J=J,
            groups=groups,
            weights=weights,
            sample_weights=sample_weights,
            options=options,
        )
        fam_name = fam.name

    logger.info(
        "IHT fit: family=%s n=%d p=%d q=%d k=%s J=%d groups=%s weights=%s "
        "debias=%s tol=%g",
        fam_name,
        view.n_samples,
        view.n_genetic,
        view.n_covariates,
        k,
        J,
        groups is not None,
        weights is not None,
        debias,
        tol,
    )
    return engine.run()


def fit_path(
    design: Any,
    y: Any,
    path: list[int] | range,
    **kwargs: Any,
) -> list[FitResult]:
    """Fit every budget in *path* on the full data.

    Keyword arguments are forwarded to :func:`fit`.
    """
    view = as_design(design)
    return [fit(view, y, k=int(k), **kwargs) for k in path]
