"""Tests for fold generation and cross-validated budget selection."""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd
import pytest

from sparse_iht import cross_validation
from sparse_iht.cross_validation import cross_validate, holdout_error, make_folds
from sparse_iht.design import DenseBlock, as_design
from sparse_iht.engine import fit
from sparse_iht.families import GaussianFamily

from conftest import standardize

# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def gaussian_data(rng):
    n, p = 240, 40
    X = rng.standard_normal((n, p))
    truth = np.array([1, 8, 25])
    y = standardize(X)[:, truth] @ np.array([2.0, -1.5, 1.5]) + 0.5 * rng.standard_normal(n)
    return X, y, truth


# ------------------------------------------------------------------ #
# make_folds
# ------------------------------------------------------------------ #


class TestMakeFolds:
    def test_labels_cover_all_samples(self):
        folds = make_folds(23, 5, random_state=0)
        assert folds.shape == (23,)
        assert set(np.unique(folds)) == {1, 2, 3, 4, 5}
        counts = np.bincount(folds)[1:]
        assert counts.max() - counts.min() <= 1

    def test_reproducible(self):
        np.testing.assert_array_equal(make_folds(50, 3, 7), make_folds(50, 3, 7))

    def test_seed_changes_assignment(self):
        assert not np.array_equal(make_folds(50, 3, 1), make_folds(50, 3, 2))

    @pytest.mark.parametrize("n_folds", [1, 11])
    def test_invalid_fold_count(self, n_folds):
        with pytest.raises(ValueError, match="n_folds must be between"):
            make_folds(10, n_folds)


# ------------------------------------------------------------------ #
# Held-out error
# ------------------------------------------------------------------ #


class TestHoldoutError:
    def test_gaussian_is_mean_squared_error(self, gaussian_data):
        X, y, _ = gaussian_data
        view = as_design(X)
        result = fit(view, y, k=3)
        test = np.zeros(len(y), dtype=bool)
        test[:30] = True
        pred = view.matvec(result.beta, result.c)
        expected = np.mean((y[:30] - pred[:30]) ** 2)
        assert holdout_error(view, y, result, test, GaussianFamily()) == pytest.approx(expected)

    def test_column_response(self, gaussian_data):
        X, y, _ = gaussian_data
        view = as_design(X)
        result = fit(view, y, k=3)
        test = np.zeros(len(y), dtype=bool)
        test[:30] = True
        flat = holdout_error(view, y, result, test, GaussianFamily())
        column = holdout_error(view, y[:, None], result, test, GaussianFamily())
        assert column == pytest.approx(flat)


# ------------------------------------------------------------------ #
# cross_validate
# ------------------------------------------------------------------ #


class TestCrossValidate:
    def test_selects_true_budget(self, gaussian_data):
        X, y, truth = gaussian_data
        cv = cross_validate(X, y, range(1, 7), n_folds=4, parallel=False, random_state=1)
        assert cv.fold_errors.shape == (4, 6)
        np.testing.assert_allclose(cv.mean_errors, cv.fold_errors.mean(axis=0))
        assert cv.best_k >= 3
        assert cv.mean_errors[2] < cv.mean_errors[1] < cv.mean_errors[0]
        assert np.all(np.isin(truth, cv.result.support))

    def test_column_response_matches_flat(self, gaussian_data):
        X, y, _ = gaussian_data
        kwargs = dict(n_folds=3, parallel=False, random_state=1, refit=False)
        flat = cross_validate(X, y, range(1, 7), **kwargs)
        column = cross_validate(X, y[:, None], range(1, 7), **kwargs)
        np.testing.assert_allclose(column.fold_errors, flat.fold_errors)
        assert column.best_k == flat.best_k
        assert column.mean_errors[2] < column.mean_errors[0]

    def test_parallel_matches_serial(self, gaussian_data):
        X, y, _ = gaussian_data
        serial = cross_validate(X, y, [1, 3, 5], n_folds=3, parallel=False, random_state=4)
        threaded = cross_validate(
            X, y, [1, 3, 5], n_folds=3, parallel=True, n_jobs=2, random_state=4
        )
        np.testing.assert_array_equal(serial.folds, threaded.folds)
        np.testing.assert_allclose(serial.fold_errors, threaded.fold_errors)
        assert serial.best_k == threaded.best_k

    def test_supplied_folds(self, gaussian_data):
        X, y, _ = gaussian_data
        folds = np.arange(len(y)) % 3
        cv = cross_validate(X, y, [2, 3], folds=folds, parallel=False, refit=False)
        assert cv.fold_errors.shape == (3, 2)
        np.testing.assert_array_equal(cv.folds, folds)
        assert cv.result is None

    def test_ties_go_to_smallest_budget(self, gaussian_data, monkeypatch):
        X, y, _ = gaussian_data
        monkeypatch.setattr(cross_validation, "holdout_error", lambda *args: 1.0)
        cv = cross_validate(X, y, [5, 2, 8], n_folds=3, parallel=False, refit=False)
        assert cv.best_k == 2
        assert cv.path == [5, 2, 8]

    def test_unit_failure_propagates(self, gaussian_data, monkeypatch):
        X, y, _ = gaussian_data

        def broken(*args, **kwargs):
            raise RuntimeError("unit failed")

        monkeypatch.setattr(cross_validation, "fit", broken)
        with pytest.raises(RuntimeError, match="unit failed"):
            cross_validate(X, y, [1, 2], n_folds=3, parallel=True, n_jobs=2)

    def test_sample_weights_exclude_samples(self, gaussian_data):
        X, y, _ = gaussian_data
        w = np.ones(len(y))
        w[:20] = 0.0
        garbage = y.copy()
        garbage[:20] = 100.0
        kwargs = dict(n_folds=3, parallel=False, random_state=0, sample_weights=w)
        a = cross_validate(X, y, [2, 3], **kwargs)
        b = cross_validate(X, garbage, [2, 3], **kwargs)
        np.testing.assert_allclose(a.fold_errors, b.fold_errors)

    def test_bernoulli(self, rng):
        X = rng.standard_normal((300, 20))
        eta = 2.0 * standardize(X)[:, 4]
        y = rng.binomial(1, 1.0 / (1.0 + np.exp(-eta))).astype(float)
        cv = cross_validate(X, y, [1, 2, 4], n_folds=3, family="bernoulli", parallel=False)
        assert np.all(np.isfinite(cv.mean_errors))
        assert cv.result.family == "bernoulli"

    def test_negative_binomial(self, rng):
        X = rng.standard_normal((300, 20))
        mu = np.exp(1.0 + 0.5 * standardize(X)[:, 7])
        y = rng.negative_binomial(3.0, 3.0 / (mu + 3.0)).astype(float)
        cv = cross_validate(
            X, y, [1, 2], n_folds=3, family="negative_binomial", parallel=False
        )
        assert np.all(np.isfinite(cv.mean_errors))
        assert "r" in cv.result.nuisance

    def test_multivariate(self, rng):
        X = rng.standard_normal((200, 20))
        Xs = standardize(X)
        Y = np.column_stack([2.0 * Xs[:, 3], -2.0 * Xs[:, 9]]) + rng.standard_normal((200, 2))
        cv = cross_validate(X, Y, [1, 2, 3], n_folds=3, parallel=False, random_state=0)
        assert cv.best_k >= 2
        assert cv.result.beta.shape == (2, 20)

    def test_selection_is_logged(self, gaussian_data, caplog):
        X, y, _ = gaussian_data
        with caplog.at_level(logging.INFO, logger="sparse_iht.cross_validation"):
            cross_validate(X, y, [2, 3], n_folds=3, parallel=False, refit=False)
        assert "Cross-validation selected k=" in caplog.text

    def test_to_frame(self, gaussian_data):
        X, y, _ = gaussian_data
        cv = cross_validate(X, y, [2, 3], n_folds=3, parallel=False, refit=False)
        frame = cv.to_frame()
        assert isinstance(frame, pd.DataFrame)
        assert frame.index.name == "k"
        assert list(frame.columns) == ["mean_error", "fold_1", "fold_2", "fold_3"]
        assert frame.loc[3, "mean_error"] == pytest.approx(cv.mean_errors[1])

    @pytest.mark.slow
    def test_selects_generating_sparsity(self, gwas_gaussian):
        G, y, true_idx, _ = gwas_gaussian
        cv = cross_validate(DenseBlock(G), y, range(1, 21), n_folds=3, random_state=2024)
        assert cv.best_k == 10
        np.testing.assert_array_equal(cv.result.support, true_idx)


# ------------------------------------------------------------------ #
# Validation
# ------------------------------------------------------------------ #


class TestValidation:
    @pytest.mark.parametrize("path", [[], [0, 1], [1.5], [True]])
    def test_invalid_path(self, gaussian_data, path):
        X, y, _ = gaussian_data
        with pytest.raises(ValueError, match="path|positive integers"):
            cross_validate(X, y, path, parallel=False)

    def test_folds_wrong_shape(self, gaussian_data):
        X, y, _ = gaussian_data
        with pytest.raises(ValueError, match="folds must have shape"):
            cross_validate(X, y, [1], folds=np.ones(3, dtype=int), parallel=False)

    def test_folds_non_integer(self, gaussian_data):
        X, y, _ = gaussian_data
        with pytest.raises(ValueError, match="integer fold labels"):
            cross_validate(X, y, [1], folds=np.full(len(y), 0.5), parallel=False)

    def test_single_fold(self, gaussian_data):
        X, y, _ = gaussian_data
        with pytest.raises(ValueError, match="at least two distinct folds"):
            cross_validate(X, y, [1], folds=np.ones(len(y), dtype=int), parallel=False)
