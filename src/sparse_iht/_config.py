"""Thread configuration for the sparse_iht package.

Controls how many BLAS threads each cross-validation worker may use
while the fold × sparsity grid runs in parallel.  Dense kernels inside
a single IHT run (products with the thin active-set matrix, Cholesky
solves on the trait covariance) are small, so letting every worker
spawn a full BLAS thread pool oversubscribes the machine.

Resolution order (first match wins):
    1. Programmatic override via :func:`set_blas_threads`.
    2. The ``SPARSE_IHT_BLAS_THREADS`` environment variable.
    3. Default of ``1`` thread per worker.

Examples:
    Allow two BLAS threads per worker from the shell::

        export SPARSE_IHT_BLAS_THREADS=2

    Programmatically::

        import sparse_iht
        sparse_iht.set_blas_threads(2)

    Restore the default resolution order::

        sparse_iht.set_blas_threads(None)
"""

from __future__ import annotations

import os

_ENV_VAR = "SPARSE_IHT_BLAS_THREADS"
_DEFAULT_BLAS_THREADS = 1

# Sentinel indicating "no programmatic override has been set".
_blas_override: int | None = None


def get_blas_threads() -> int:
    """Return the BLAS thread cap applied to parallel CV workers.

    Resolution order:
        1. Value set by :func:`set_blas_threads`.
        2. ``SPARSE_IHT_BLAS_THREADS`` environment variable.
        3. ``1``.

    Returns:
        A positive thread count.

    Raises:
        ValueError: If the environment variable is set but is not a
            positive integer.
    """
    # 1. Programmatic override
    if _blas_override is not None:
        return _blas_override

    # 2. Environment variable
    env = os.environ.get(_ENV_VAR, "").strip()
    if env:
        try:
            value = int(env)
        except ValueError:
            raise ValueError(
                f"{_ENV_VAR} must be a positive integer, got {env!r}."
            ) from None
        if value < 1:
            raise ValueError(f"{_ENV_VAR} must be a positive integer, got {env!r}.")
        return value

    # 3. Default
    return _DEFAULT_BLAS_THREADS


def set_blas_threads(n: int | None) -> None:
    """Override the per-worker BLAS thread cap.

    Args:
        n: Positive thread count, or ``None`` to restore the default
            resolution order.

    Raises:
        ValueError: If *n* is not a positive integer.
    """
    global _blas_override
    if n is None:
        _blas_override = None
        return
    if isinstance(n, bool) or not isinstance(n, int) or n < 1:
        raise ValueError(f"BLAS thread count must be a positive integer, got {n!r}.")
    _blas_override = n
