"""Tests for the multivariate Gaussian IHT engine."""

from __future__ import annotations

import logging

import numpy as np
import pytest

from sparse_iht import MultivariateIHTEngine
from sparse_iht._errors import NumericalInstabilityError
from sparse_iht.design import DenseBlock, DesignView
from sparse_iht.engine import fit
from sparse_iht.multivariate import project_precision, solve_precision

from conftest import standardize

# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def two_traits(rng):
    n, p = 400, 60
    X = rng.standard_normal((n, p))
    Xs = standardize(X)
    B = np.zeros((2, p))
    B[0, 5] = 1.5
    B[0, 12] = -1.0
    B[1, 12] = 1.2
    B[1, 40] = 2.0
    sigma = np.array([[1.0, 0.5], [0.5, 1.0]])
    E = rng.multivariate_normal(np.zeros(2), sigma, size=n)
    Y = Xs @ B.T + np.array([1.0, -2.0]) + E
    return X, Y, B, sigma


# ------------------------------------------------------------------ #
# Precision helpers
# ------------------------------------------------------------------ #


class TestPrecision:
    def test_solve_matches_inverse_covariance(self, rng):
        R = rng.standard_normal((500, 3))
        w = np.ones(500)
        expected = np.linalg.inv(R.T @ R / 500)
        np.testing.assert_allclose(solve_precision(R, w), expected, rtol=1e-10)

    def test_solve_is_symmetric(self, rng):
        R = rng.standard_normal((50, 4))
        gamma = solve_precision(R, rng.uniform(0.5, 2.0, size=50))
        np.testing.assert_array_equal(gamma, gamma.T)

    def test_singular_covariance_is_projected(self, rng):
        r = rng.standard_normal(30)
        R = np.column_stack([r, r])
        gamma = solve_precision(R, np.ones(30))
        assert np.all(np.linalg.eigvalsh(gamma) >= 0.01 - 1e-12)

    def test_project_floors_eigenvalues(self):
        gamma = np.diag([2.0, -1.0])
        out = project_precision(gamma)
        np.testing.assert_allclose(np.linalg.eigvalsh(out), [0.01, 2.0])

    def test_project_rejects_non_finite(self):
        with pytest.raises(NumericalInstabilityError, match="non-finite"):
            project_precision(np.full((2, 2), np.nan))


# ------------------------------------------------------------------ #
# Fitting
# ------------------------------------------------------------------ #


class TestMultivariateFit:
    def test_recovers_entries(self, two_traits):
        X, Y, B, _ = two_traits
        result = fit(X, Y, k=4)
        assert result.family == "mvnormal"
        assert result.beta.shape == (2, 60)
        np.testing.assert_array_equal(result.beta != 0, B != 0)
        np.testing.assert_allclose(result.beta[B != 0], B[B != 0], atol=0.2)
        np.testing.assert_array_equal(result.support, [5, 12, 40])

    def test_covariance_estimate(self, two_traits):
        X, Y, _, sigma = two_traits
        result = fit(X, Y, k=4)
        assert result.covariance.shape == (2, 2)
        np.testing.assert_allclose(result.covariance, sigma, atol=0.2)
        np.testing.assert_array_equal(result.covariance, result.covariance.T)

    def test_intercepts(self, two_traits):
        X, Y, _, _ = two_traits
        result = fit(X, Y, k=4)
        np.testing.assert_allclose(result.c[:, 0], [1.0, -2.0], atol=0.2)

    def test_budget_counts_entries(self, two_traits):
        X, Y, _, _ = two_traits
        result = fit(X, Y, k=3)
        assert result.n_active == 3

    def test_history_and_convergence(self, two_traits):
        X, Y, _, _ = two_traits
        result = fit(X, Y, k=4)
        assert result.converged
        assert len(result.history) == result.iterations

    def test_likelihood_never_decreases(self, two_traits):
        X, Y, _, _ = two_traits
        result = fit(X, Y, k=4, max_step=10)
        lls = np.array([r.loglikelihood for r in result.history])
        assert np.all(np.diff(lls) >= -1e-8 * np.abs(lls[:-1]))

    def test_debias_keeps_sparsity_pattern(self, two_traits):
        X, Y, B, _ = two_traits
        result = fit(X, Y, k=4, debias=True)
        assert result.converged
        np.testing.assert_array_equal(result.beta != 0, B != 0)
        plain = fit(X, Y, k=4).loglikelihood
        assert result.loglikelihood >= plain - 1e-3 * abs(plain)

    def test_max_iter_warns(self, two_traits, caplog):
        X, Y, _, _ = two_traits
        with caplog.at_level(logging.WARNING, logger="sparse_iht.multivariate"):
            result = fit(X, Y, k=4, max_iter=1)
        assert not result.converged
        assert "did not converge" in caplog.text

    def test_masked_samples_are_ignored(self, two_traits):
        X, Y, _, _ = two_traits
        w = np.ones(len(Y))
        w[:40] = 0.0
        garbage = Y.copy()
        garbage[:40] = 50.0
        a = fit(X, Y, k=4, sample_weights=w)
        b = fit(X, garbage, k=4, sample_weights=w)
        np.testing.assert_allclose(a.beta, b.beta)
        np.testing.assert_allclose(a.covariance, b.covariance)

    def test_covariates(self, two_traits, rng):
        X, Y, _, _ = two_traits
        Z = rng.standard_normal((len(Y), 1))
        Y = Y + Z @ np.array([[0.8, -0.4]])
        result = fit(DesignView(DenseBlock(X), Z), Y, k=4)
        np.testing.assert_allclose(result.c[:, 1], [0.8, -0.4], atol=0.2)


# ------------------------------------------------------------------ #
# Validation
# ------------------------------------------------------------------ #


class TestValidation:
    def test_grouped_rejected(self, two_traits):
        X, Y, _, _ = two_traits
        with pytest.raises(ValueError, match="multivariate"):
            fit(X, Y, k=2, groups=np.zeros(60, dtype=int))

    def test_weights_rejected(self, two_traits):
        X, Y, _, _ = two_traits
        with pytest.raises(ValueError, match="multivariate"):
            fit(X, Y, k=2, weights=np.ones(60))

    def test_vector_budget_rejected(self, two_traits):
        X, Y, _, _ = two_traits
        view = DesignView(DenseBlock(X))
        with pytest.raises(ValueError, match="positive integer"):
            MultivariateIHTEngine(view, Y, [1, 2])

    def test_row_mismatch(self, two_traits):
        X, Y, _, _ = two_traits
        view = DesignView(DenseBlock(X))
        with pytest.raises(ValueError, match="Y must have shape"):
            MultivariateIHTEngine(view, Y[:-1], 2)
