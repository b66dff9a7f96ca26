"""Multivariate Gaussian IHT with an estimated trait precision matrix.

For ``r`` correlated traits the model is

    Y = X Bᵀ + Z Cᵀ + E,    rows of E ~ N(0, Σ),   Γ = Σ⁻¹

with ``Y (n, r)``, sparse ``B (r, p)`` and dense ``C (r, q)``.  The
profile log-likelihood is

    ℓ(B, C, Γ) = n/2 · log det Γ − ½ · tr(Γ RᵀR),    R = Y − X Bᵀ − Z Cᵀ

and its gradient with respect to ``B`` is ``Γ Rᵀ X``.

The control flow mirrors :class:`~sparse_iht.engine.IHTEngine`; the
differences are

* ``Γ`` is re-solved in closed form, ``Γ = (RᵀWR / Σw)⁻¹`` via a
  Cholesky factorisation, after every projected step and restored with
  the coefficients on backtracking.  When the covariance is singular
  the eigenvalues of its pseudo-inverse are floored at ``0.01``; a
  result that is still not positive definite raises
  :class:`~sparse_iht._errors.NumericalInstabilityError`.
* The step-size denominator ``tr(Mᵀ Γ M)``, with ``M = G_S X_Sᵀ`` the
  search direction mapped to sample space, is evaluated as
  ``‖U M‖²_F`` using the upper Cholesky factor ``Γ = UᵀU``.
* Sparsity counts individual entries of ``B``: the projection keeps
  the ``k`` largest entries of ``vec(B)``, and a predictor is active
  when any trait uses it.
* Debiasing solves weighted least squares on the active columns for
  all traits at once, then re-projects.
"""

from __future__ import annotations

import logging
import math
import time

import numpy as np
from scipy import linalg

from ._errors import NumericalInstabilityError
from ._options import IHTOptions
from ._results import FitResult, IterationRecord
from ._state import MultivariateIHTState
from ._typing import Budget
from .design import DesignView, ThinDesign, check_sample_weights
from .families import MultivariateGaussianFamily
from .projections import choose_excess, project_k

logger = logging.getLogger(__name__)

_FALLBACK_STEP = 1e-8
_MIN_EIGENVALUE = 0.01


# ------------------------------------------------------------------ #
# Precision matrix
# ------------------------------------------------------------------ #


def project_precision(gamma: np.ndarray, min_eigenvalue: float = _MIN_EIGENVALUE) -> np.ndarray:
    """Nearest symmetric matrix with eigenvalues at least *min_eigenvalue*.

    Raises:
        NumericalInstabilityError: If the projected matrix is still not
            positive definite.
    """
    if not np.all(np.isfinite(gamma)):
        raise NumericalInstabilityError("Precision matrix contains non-finite values.")
    sym = 0.5 * (gamma + gamma.T)
    lam, U = np.linalg.eigh(sym)
    lam = np.maximum(lam, min_eigenvalue)
    out = (U * lam) @ U.T
    out = 0.5 * (out + out.T)
    try:
        linalg.cholesky(out)
    except linalg.LinAlgError:
        raise NumericalInstabilityError(
            "Precision matrix is not positive definite after eigenvalue projection."
        ) from None
    return out


def solve_precision(resid: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """``Γ = (RᵀWR / Σw)⁻¹`` for residuals ``R (n, r)``.

    Falls back to :func:`project_precision` when the empirical
    covariance is singular.
    """
    sigma = (resid * weights[:, None]).T @ resid / weights.sum()
    r = sigma.shape[0]
    try:
        factor = linalg.cho_factor(sigma, lower=False)
        gamma = linalg.cho_solve(factor, np.eye(r))
    except linalg.LinAlgError:
        logger.debug("Residual covariance is singular; projecting its pseudo-inverse.")
        return project_precision(np.linalg.pinv(sigma))
    if not np.all(np.isfinite(gamma)):
        return project_precision(np.linalg.pinv(sigma))
    return 0.5 * (gamma + gamma.T)


# ------------------------------------------------------------------ #
# MultivariateIHTEngine
# ------------------------------------------------------------------ #


class MultivariateIHTEngine:
    """One IHT run of the multivariate Gaussian model.

    Args:
        design: The shared ``[X | Z]`` design.
        Y: Response ``(n, r)`` with ``r >= 2``.
        k: Total number of nonzero entries allowed in ``B``.
        sample_weights: Non-negative per-sample weights.
        options: Validated run options.
    """

    def __init__(
        self,
        design: DesignView,
        Y: np.ndarray,
        k: Budget,
        *,
        sample_weights: np.ndarray | None = None,
        options: IHTOptions | None = None,
    ) -> None:
        self.design = design
        self.options = options if options is not None else IHTOptions()
        self.family = MultivariateGaussianFamily()
        Y = np.asarray(Y, dtype=float)
        n = design.n_samples
        if Y.ndim != 2 or Y.shape[0] != n:
            raise ValueError(f"Y must have shape ({n}, r), got {Y.shape}.")
        self.sample_weights = check_sample_weights(sample_weights, n)
        self.family.validate_y(Y[self.sample_weights > 0])
        self.Y = Y
        if np.ndim(k) != 0 or isinstance(k, bool) or int(k) != k or int(k) < 1:
            raise ValueError(f"Sparsity budget k must be a positive integer, got {k!r}.")
        self.k = int(k)

    @property
    def n_traits(self) -> int:
        return self.Y.shape[1]

    # ---- Projection ----------------------------------------------

    def _update_support(self, state: MultivariateIHTState) -> None:
        state.update_support()
        if not self.options.penalize_covariates:
            state.idc[:] = True

    def _threshold(self, B: np.ndarray, C: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        if self.options.penalize_covariates:
            full = project_k(np.concatenate([B.ravel(), C.ravel()]), self.k)
            return full[: B.size].reshape(B.shape), full[B.size :].reshape(C.shape)
        return project_k(B.ravel(), self.k).reshape(B.shape), C

    def _project(self, state: MultivariateIHTState) -> None:
        B, C = self._threshold(state.b, state.c)
        state.b[...] = B
        state.c[...] = C
        choose_excess(
            state.b.reshape(-1),
            state.c.reshape(-1),
            self.k,
            state.rng,
            self.options.penalize_covariates,
        )
        self._update_support(state)

    # ---- Model evaluation ----------------------------------------

    def _refresh(self, state: MultivariateIHTState) -> None:
        """Predictors, mean and residuals from ``B`` and ``C``."""
        self._thin = state.thin(self.design)
        idx = self._thin.indices
        state.xb[...] = self._thin.columns @ state.b[:, idx].T
        state.zc[...] = self.design.Z @ state.c.T
        state.mu[...] = state.xb + state.zc
        state.resid[...] = self.Y - state.mu

    def _loglikelihood(self, state: MultivariateIHTState) -> float:
        return self.family.loglikelihood(state.resid, state.precision, state.weights)

    def _score(self, state: MultivariateIHTState) -> None:
        """``∇_B = Γ Rᵀ W X`` and ``∇_C = Γ Rᵀ W Z``."""
        weighted = (state.resid * state.weights[:, None]) @ state.precision  # (n, r)
        df, df2 = self.design.matvec_transpose(weighted)
        state.df[...] = df.T
        state.df2[...] = df2.T

    def _step_size(self, state: MultivariateIHTState) -> float:
        """``η = ‖G_S‖²_F / ‖U M‖²_F`` with ``M = G_S X_Sᵀ``.

        Raises:
            NumericalInstabilityError: If the step size is not finite.
        """
        thin: ThinDesign = self._thin
        gk = state.df[:, thin.indices]  # (r, s)
        gc = state.df2[:, state.idc]
        numer = float(np.sum(gk * gk) + np.sum(gc * gc))
        M = gk @ thin.columns.T + gc @ self.design.Z[:, state.idc].T  # (r, n)
        M = M * np.sqrt(state.weights)[None, :]
        try:
            U = linalg.cholesky(state.precision, lower=False)
        except linalg.LinAlgError:
            raise NumericalInstabilityError(
                "Precision matrix is not positive definite."
            ) from None
        UM = U @ M
        denom = float(np.sum(UM * UM))
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

    def _step(self, state: MultivariateIHTState, eta: float) -> float:
        state.b += eta * state.df
        state.c += eta * state.df2
        self._project(state)
        self._refresh(state)
        state.precision[...] = solve_precision(state.resid, state.weights)
        return self._loglikelihood(state)

    # ---- Initialisation ------------------------------------------

    def _initialize(self) -> MultivariateIHTState:
        design, opts = self.design, self.options
        state = MultivariateIHTState.allocate_mv(
            design.n_samples,
            design.n_genetic,
            design.n_covariates,
            self.n_traits,
            self.k,
            rng=np.random.default_rng(opts.random_state),
            weights=self.sample_weights,
            family=self.family,
        )
        j = design.intercept_index
        if j is not None:
            w = state.weights
            state.c[:, j] = (w @ self.Y) / w.sum()
        self._update_support(state)
        self._refresh(state)
        state.precision[...] = solve_precision(state.resid, state.weights)
        state.loglikelihood = self._loglikelihood(state)
        self._score(state)

        sb, sc = self._threshold(state.df, state.df2)
        if not np.any(sb):
            logger.warning(
                "Score is identically zero at initialisation; starting "
                "from an empty active set."
            )
        state.idx = np.any(sb != 0, axis=0)
        if opts.penalize_covariates:
            state.idc = np.any(sc != 0, axis=0)
        self._thin = state.thin(design)
        state.track_best()
        return state

    # ---- Debiasing -----------------------------------------------

    def _debias(self, state: MultivariateIHTState) -> None:
        """Least squares of ``Y − Z Cᵀ`` on the active columns, re-projected."""
        thin: ThinDesign = self._thin
        if len(thin.indices) == 0:
            return
        sw = np.sqrt(state.weights)[:, None]
        target = (self.Y - state.zc) * sw
        try:
            coef, *_ = linalg.lstsq(thin.columns * sw, target)
        except (linalg.LinAlgError, ValueError) as exc:
            logger.debug("Multivariate debiasing failed: %s", exc)
            return
        if not np.all(np.isfinite(coef)):
            return

        saved = (state.b.copy(), state.c.copy(), state.precision.copy(), state.loglikelihood)
        state.b[:, thin.indices] = coef.T
        self._project(state)
        self._refresh(state)
        state.precision[...] = solve_precision(state.resid, state.weights)
        ll = self._loglikelihood(state)
        if not ll >= saved[3]:
            logger.debug("Debiasing lowered the log-likelihood; reverted.")
            np.copyto(state.b, saved[0])
            np.copyto(state.c, saved[1])
            np.copyto(state.precision, saved[2])
            self._update_support(state)
            self._refresh(state)
            ll = saved[3]
        state.loglikelihood = ll

    # ---- Main loop -----------------------------------------------

    def run(self) -> FitResult:
        """Run multivariate IHT to convergence or ``max_iter``.

        Raises:
            NumericalInstabilityError: On a non-finite log-likelihood or
                step size, or a precision matrix that cannot be made
                positive definite.
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

            if opts.debias and int(np.count_nonzero(state.b)) == self.k:
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
                "Multivariate IHT did not converge within %d iterations (k=%d); "
                "returning the best iterate found.",
                opts.max_iter,
                self.k,
            )
            state.load_best()
            self._refresh(state)

        covariance = np.linalg.inv(state.precision)
        return FitResult(
            elapsed=time.perf_counter() - start,
            loglikelihood=state.loglikelihood,
            iterations=iteration,
            converged=converged,
            beta=state.b.copy(),
            c=state.c.copy(),
            family=self.family.name,
            link="identity",
            k=self.k,
            J=1,
            covariance=0.5 * (covariance + covariance.T),
            covariate_names=list(self.design.covariate_names),
            history=list(state.history),
        )
