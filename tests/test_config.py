"""Tests for the BLAS thread configuration."""

import os

import pytest

from sparse_iht._config import get_blas_threads, set_blas_threads


class TestGetBlasThreads:
    """Tests for get_blas_threads() resolution order."""

    def setup_method(self):
        """Reset state before each test."""
        import sparse_iht._config as _cfg
        _cfg._blas_override = None
        os.environ.pop("SPARSE_IHT_BLAS_THREADS", None)

    def teardown_method(self):
        import sparse_iht._config as _cfg
        _cfg._blas_override = None
        os.environ.pop("SPARSE_IHT_BLAS_THREADS", None)

    def test_default_is_one(self):
        assert get_blas_threads() == 1

    def test_env_var_overrides_default(self):
        os.environ["SPARSE_IHT_BLAS_THREADS"] = "4"
        assert get_blas_threads() == 4

    def test_env_var_whitespace_is_stripped(self):
        os.environ["SPARSE_IHT_BLAS_THREADS"] = " 2 "
        assert get_blas_threads() == 2

    def test_programmatic_override_wins_over_env(self):
        os.environ["SPARSE_IHT_BLAS_THREADS"] = "4"
        set_blas_threads(3)
        assert get_blas_threads() == 3

    def test_none_restores_resolution_order(self):
        set_blas_threads(3)
        set_blas_threads(None)
        assert get_blas_threads() == 1

    def test_env_var_non_integer_raises(self):
        os.environ["SPARSE_IHT_BLAS_THREADS"] = "many"
        with pytest.raises(ValueError, match="positive integer"):
            get_blas_threads()

    def test_env_var_zero_raises(self):
        os.environ["SPARSE_IHT_BLAS_THREADS"] = "0"
        with pytest.raises(ValueError, match="positive integer"):
            get_blas_threads()


class TestSetBlasThreads:
    """Tests for set_blas_threads() validation."""

    def teardown_method(self):
        import sparse_iht._config as _cfg
        _cfg._blas_override = None

    @pytest.mark.parametrize("bad", [0, -2, 1.5, "2", True])
    def test_rejects_invalid_values(self, bad):
        with pytest.raises(ValueError, match="positive integer"):
            set_blas_threads(bad)

    def test_accepts_positive_int(self):
        set_blas_threads(8)
        assert get_blas_threads() == 8
