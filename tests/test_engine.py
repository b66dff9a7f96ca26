"""Tests for the univariate IHT engine and the fit() entry point."""

from __future__ import annotations

import json
import logging

import numpy as np
import pytest

from sparse_iht._errors import NumericalInstabilityError
from sparse_iht.design import DenseBlock, DesignView, GenotypeMatrix
from sparse_iht.engine import IHTEngine, fit, fit_path, resolve_budget
from sparse_iht.families import GaussianFamily

from conftest import standardize

# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def gaussian_data(rng):
    n, p = 200, 50
    X = rng.standard_normal((n, p))
    truth = np.array([4, 17, 33])
    y = 2.0 + standardize(X)[:, truth] @ np.array([1.5, -2.0, 1.0]) + 0.5 * rng.standard_normal(n)
    return X, y, truth


@pytest.fixture()
def logistic_data(rng):
    n, p = 800, 40
    X = rng.standard_normal((n, p))
    truth = np.array([3, 21])
    eta = standardize(X)[:, truth] @ np.array([1.5, -1.5])
    y = rng.binomial(1, 1.0 / (1.0 + np.exp(-eta))).astype(float)
    return X, y, truth


@pytest.fixture()
def count_data(rng):
    n, p = 600, 30
    X = rng.standard_normal((n, p))
    truth = np.array([2, 11])
    mu = np.exp(0.5 + standardize(X)[:, truth] @ np.array([0.6, -0.5]))
    return X, mu, truth


# ------------------------------------------------------------------ #
# Support recovery
# ------------------------------------------------------------------ #


class TestRecovery:
    def test_gaussian(self, gaussian_data):
        X, y, truth = gaussian_data
        result = fit(X, y, k=3)
        assert result.converged
        np.testing.assert_array_equal(result.support, truth)
        assert result.family == "gaussian"
        assert result.link == "identity"
        assert result.c[0] == pytest.approx(y.mean(), abs=0.2)
        assert result.nuisance["dispersion"] == pytest.approx(0.25, rel=0.3)

    def test_bernoulli(self, logistic_data):
        X, y, truth = logistic_data
        result = fit(X, y, family="bernoulli", k=2)
        np.testing.assert_array_equal(result.support, truth)
        assert np.sign(result.beta[truth]).tolist() == [1.0, -1.0]

    def test_bernoulli_probit(self, logistic_data):
        X, y, truth = logistic_data
        result = fit(X, y, family="bernoulli", link="probit", k=2)
        assert result.link == "probit"
        np.testing.assert_array_equal(result.support, truth)

    def test_poisson(self, count_data, rng):
        X, mu, truth = count_data
        y = rng.poisson(mu).astype(float)
        result = fit(X, y, family="poisson", k=2)
        np.testing.assert_array_equal(result.support, truth)
        np.testing.assert_allclose(result.beta[truth], [0.6, -0.5], atol=0.15)

    def test_negative_binomial_estimates_r(self, count_data, rng):
        X, mu, truth = count_data
        y = rng.negative_binomial(5.0, 5.0 / (mu + 5.0)).astype(float)
        result = fit(X, y, family="negative_binomial", k=2)
        np.testing.assert_array_equal(result.support, truth)
        assert result.nuisance["r"] > 0
        assert result.nuisance["r"] != 1.0

    def test_negative_binomial_mm(self, count_data, rng):
        X, mu, truth = count_data
        y = rng.negative_binomial(5.0, 5.0 / (mu + 5.0)).astype(float)
        result = fit(X, y, family="negative_binomial", k=2, nb_method="mm")
        np.testing.assert_array_equal(result.support, truth)

    @pytest.mark.slow
    def test_exact_recovery_genotypes(self, gwas_gaussian):
        G, y, true_idx, effects = gwas_gaussian
        result = fit(GenotypeMatrix(G), y, k=10)
        assert result.converged
        np.testing.assert_array_equal(result.support, true_idx)
        np.testing.assert_array_equal(np.sign(result.beta[true_idx]), np.sign(effects))
        np.testing.assert_allclose(result.beta[true_idx], effects, atol=0.15)


# ------------------------------------------------------------------ #
# Loop mechanics
# ------------------------------------------------------------------ #


class TestLoop:
    def test_history_is_recorded(self, gaussian_data):
        X, y, _ = gaussian_data
        result = fit(X, y, k=3)
        assert len(result.history) == result.iterations
        assert [r.iteration for r in result.history] == list(range(1, result.iterations + 1))
        assert result.history[-1].scaled_norm < 1e-4

    def test_max_iter_returns_best_iterate(self, gaussian_data, caplog):
        X, y, _ = gaussian_data
        with caplog.at_level(logging.WARNING, logger="sparse_iht.engine"):
            result = fit(X, y, k=3, max_iter=1)
        assert not result.converged
        assert result.iterations == 1
        assert "did not converge" in caplog.text
        assert result.loglikelihood >= result.history[0].loglikelihood - 1e-9

    def test_backtracking_keeps_likelihood_monotone(self, gaussian_data, monkeypatch):
        X, y, _ = gaussian_data
        original = IHTEngine._step_size

        def too_long(self, state):
            return 1e4 * original(self, state)

        monkeypatch.setattr(IHTEngine, "_step_size", too_long)
        result = fit(X, y, k=3, max_step=50, max_iter=50)
        assert any(r.backtracks >= 1 for r in result.history)
        lls = np.array([r.loglikelihood for r in result.history])
        assert np.all(np.diff(lls) >= -1e-8 * np.abs(lls[:-1]))

    def test_non_finite_likelihood_raises(self, gaussian_data, monkeypatch):
        X, y, _ = gaussian_data
        monkeypatch.setattr(
            GaussianFamily, "loglikelihood", lambda self, y, mu, weights=None: float("nan")
        )
        with pytest.raises(NumericalInstabilityError, match="not finite"):
            fit(X, y, k=3)

    def test_zero_score_warns_and_returns_empty_model(self, rng, caplog):
        X = np.ones((40, 5))
        y = rng.standard_normal(40)
        with caplog.at_level(logging.WARNING, logger="sparse_iht.engine"):
            result = fit(DenseBlock(X), y, k=2)
        assert "identically zero" in caplog.text
        assert result.n_active == 0
        assert result.c[0] == pytest.approx(y.mean())

    def test_reproducible_with_seed(self, gaussian_data):
        X, y, _ = gaussian_data
        a = fit(X, y, k=5, random_state=3)
        b = fit(X, y, k=5, random_state=3)
        np.testing.assert_array_equal(a.beta, b.beta)
        np.testing.assert_array_equal(a.c, b.c)

    def test_info_log(self, gaussian_data, caplog):
        X, y, _ = gaussian_data
        with caplog.at_level(logging.INFO, logger="sparse_iht.engine"):
            fit(X, y, k=3)
        assert "IHT fit: family=gaussian" in caplog.text


# ------------------------------------------------------------------ #
# Debiasing
# ------------------------------------------------------------------ #


class TestDebias:
    def test_active_coefficients_match_least_squares(self, gaussian_data):
        X, y, truth = gaussian_data
        result = fit(X, y, k=3, debias=True)
        assert result.converged
        np.testing.assert_array_equal(result.support, truth)
        A = np.column_stack([standardize(X)[:, truth], np.ones(len(y))])
        coef, *_ = np.linalg.lstsq(A, y, rcond=None)
        np.testing.assert_allclose(result.beta[truth], coef[:3], atol=1e-6)
        assert result.c[0] == pytest.approx(coef[3], abs=1e-6)

    def test_debias_does_not_lower_likelihood(self, logistic_data):
        X, y, _ = logistic_data
        plain = fit(X, y, family="bernoulli", k=2)
        debiased = fit(X, y, family="bernoulli", k=2, debias=True)
        assert debiased.loglikelihood >= plain.loglikelihood - 1e-6


# ------------------------------------------------------------------ #
# Sample weights
# ------------------------------------------------------------------ #


class TestSampleWeights:
    def test_masked_samples_are_ignored(self, gaussian_data):
        X, y, _ = gaussian_data
        w = np.ones(len(y))
        w[:50] = 0.0
        garbage = y.copy()
        garbage[:50] = 1e3
        a = fit(X, y, k=3, sample_weights=w)
        b = fit(X, garbage, k=3, sample_weights=w)
        np.testing.assert_allclose(a.beta, b.beta)
        np.testing.assert_allclose(a.c, b.c)
        assert a.loglikelihood == pytest.approx(b.loglikelihood)

    def test_masked_samples_are_not_validated(self, logistic_data):
        X, y, _ = logistic_data
        bad = y.copy()
        bad[0] = 7.0
        w = np.ones(len(y))
        w[0] = 0.0
        fit(X, bad, family="bernoulli", k=2, sample_weights=w)
        with pytest.raises(ValueError, match="binary"):
            fit(X, bad, family="bernoulli", k=2)


# ------------------------------------------------------------------ #
# Grouped, weighted and penalised-covariate fits
# ------------------------------------------------------------------ #


class TestProjectionVariants:
    def test_grouped_fit_respects_budgets(self, gaussian_data):
        X, y, truth = gaussian_data
        groups = np.repeat(np.arange(1, 11), 5)
        result = fit(X, y, k=2, J=2, groups=groups)
        active_groups = np.unique(groups[result.support])
        assert len(active_groups) <= 2
        for g in active_groups:
            assert np.count_nonzero(result.beta[groups == g]) <= 2
        assert result.J == 2

    def test_grouped_vector_budget(self, gaussian_data):
        X, y, _ = gaussian_data
        groups = np.repeat(np.arange(10), 5)
        k = np.zeros(10, dtype=int)
        k[[0, 3, 6]] = [1, 1, 2]
        result = fit(X, y, k=k, J=3, groups=groups)
        assert result.k == k.tolist()
        assert set(np.unique(groups[result.support])) <= {0, 3, 6}

    def test_prior_weights_favour_predictor(self, gaussian_data):
        X, y, truth = gaussian_data
        w = np.ones(X.shape[1])
        w[0] = 1e6
        result = fit(X, y, k=1, weights=w)
        np.testing.assert_array_equal(result.support, [0])

    def test_prior_weights_shape(self, gaussian_data):
        X, y, _ = gaussian_data
        with pytest.raises(ValueError, match="weights must have shape"):
            fit(X, y, k=3, weights=np.ones(3))

    def test_penalized_covariates_share_budget(self, gaussian_data, rng):
        X, y, _ = gaussian_data
        Z = rng.standard_normal((len(y), 2))
        view = DesignView(DenseBlock(X), Z)
        result = fit(view, y, k=3, penalize_covariates=True)
        assert result.n_active + np.count_nonzero(result.c) <= 3

    def test_unpenalized_covariates_all_active(self, gaussian_data, rng):
        X, y, _ = gaussian_data
        Z = rng.standard_normal((len(y), 2))
        y = y + 3.0 * Z[:, 1]
        result = fit(DesignView(DenseBlock(X), Z), y, k=3)
        assert result.covariate_names == ["intercept", "z0", "z1"]
        assert result.c[2] == pytest.approx(3.0, abs=0.3)


# ------------------------------------------------------------------ #
# Validation
# ------------------------------------------------------------------ #


class TestValidation:
    @pytest.mark.parametrize("k", [0, -1, 2.5, True])
    def test_invalid_budget(self, gaussian_data, k):
        X, y, _ = gaussian_data
        with pytest.raises(ValueError, match="positive integer"):
            fit(X, y, k=k)

    def test_vector_budget_needs_groups(self, gaussian_data):
        X, y, _ = gaussian_data
        with pytest.raises(ValueError, match="group map"):
            fit(X, y, k=[1, 2])

    def test_invalid_J(self, gaussian_data):
        X, y, _ = gaussian_data
        with pytest.raises(ValueError, match="J"):
            fit(X, y, k=1, J=0)

    def test_groups_wrong_length(self, gaussian_data):
        X, y, _ = gaussian_data
        with pytest.raises(ValueError, match="one entry per penalised predictor"):
            fit(X, y, k=1, groups=np.zeros(3, dtype=int))

    def test_response_shape(self, gaussian_data):
        X, y, _ = gaussian_data
        with pytest.raises(ValueError, match="y must have shape"):
            fit(X, y[:-1], k=1)

    def test_invalid_option(self, gaussian_data):
        X, y, _ = gaussian_data
        with pytest.raises(ValueError, match="tol"):
            fit(X, y, k=1, tol=0.0)

    def test_multivariate_response_rejects_glm_family(self, gaussian_data):
        X, y, _ = gaussian_data
        Y = np.column_stack([y, y[::-1]])
        with pytest.raises(ValueError, match="does not support multivariate"):
            fit(X, Y, family="poisson", k=2)

    def test_mvnormal_requires_matrix(self, gaussian_data):
        X, y, _ = gaussian_data
        with pytest.raises(ValueError, match="r >= 2"):
            fit(X, y, family="mvnormal", k=2)


class TestResolveBudget:
    def test_scalar(self):
        assert resolve_budget(3, 2, None) == (3, None, 6)

    def test_vector_capacity(self):
        groups = np.array([0, 0, 0, 1, 2, 2, 2])
        k, g, capacity = resolve_budget(np.array([2, 1, 3]), 2, groups)
        np.testing.assert_array_equal(k, [2, 1, 3])
        assert capacity == 5

    def test_all_zero_vector(self):
        with pytest.raises(ValueError, match="positive budget"):
            resolve_budget(np.array([0, 0]), 1, np.array([0, 1]))


# ------------------------------------------------------------------ #
# fit_path and serialisation
# ------------------------------------------------------------------ #


class TestFitPath:
    def test_one_result_per_budget(self, gaussian_data):
        X, y, _ = gaussian_data
        results = fit_path(X, y, range(1, 5))
        assert [r.k for r in results] == [1, 2, 3, 4]
        assert [r.n_active for r in results] == [1, 2, 3, 4]
        lls = [r.loglikelihood for r in results]
        assert lls == sorted(lls)

    def test_result_is_json_serialisable(self, gaussian_data):
        X, y, _ = gaussian_data
        payload = fit(X, y, k=2).to_dict()
        json.dumps(payload)
        assert payload["history"][0]["iteration"] == 1
