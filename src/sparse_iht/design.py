"""Design matrices: a wide genetic block next to a narrow covariate block.

The IHT engines never see a dense ``n × (p + q)`` design.  They talk to
a :class:`DesignView`, which concatenates

* a **genetic block** — either a :class:`GenotypeMatrix` (minor-allele
  counts packed at 2 bits per entry) or a :class:`DenseBlock` (float
  dosages) — standardised on the fly to zero mean and unit variance,
  and
* a **covariate block** ``Z`` — a small dense float matrix, assumed
  pre-standardised except for the intercept column.

and exposes the three products the optimiser needs:

==========================  =====================================
Operation                   Cost
==========================  =====================================
``matvec(b, c)``            decodes only the nonzero columns of b
``matvec_transpose(r)``     one streaming pass over all p columns
``restrict(idx)``           decodes ``|idx|`` columns once
==========================  =====================================

Standardisation cache
~~~~~~~~~~~~~~~~~~~~~
Column means and inverse standard deviations are computed once at
construction and stored read-only (``ndarray.flags.writeable`` is
cleared).  The same cached values are used by every product, so the
design can be shared by concurrent cross-validation workers without
locks, and the effective predictors cannot drift mid-optimisation.

Packed layout
~~~~~~~~~~~~~
Sample ``i`` of SNP ``j`` lives in byte ``i // 4`` of column ``j`` at
bit offset ``2·(i % 4)``.  Codes ``0, 1, 2`` are minor-allele counts and
code ``3`` marks a missing genotype.  Missing genotypes are imputed at
the column mean, i.e. they standardise to ``0``.
"""

from __future__ import annotations

import logging
from typing import Any

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

_MISSING = 3
_DEFAULT_CHUNK = 1024

# Byte value → the four 2-bit codes it holds, in sample order.
_BYTE_CODES = (
    (np.arange(256, dtype=np.uint16)[:, None] >> np.array([0, 2, 4, 6])) & 3
).astype(np.intp)


def _read_only(a: np.ndarray) -> np.ndarray:
    a.setflags(write=False)
    return a


def _pack_codes(codes: np.ndarray) -> np.ndarray:
    """Pack an ``(n, p)`` array of 2-bit codes into ``(ceil(n/4), p)`` bytes."""
    n, p = codes.shape
    m = -(-n // 4)
    padded = np.zeros((m * 4, p), dtype=np.uint8)
    padded[:n] = codes
    padded = padded.reshape(m, 4, p)
    return (
        padded[:, 0, :]
        | (padded[:, 1, :] << 2)
        | (padded[:, 2, :] << 4)
        | (padded[:, 3, :] << 6)
    ).astype(np.uint8)


# ------------------------------------------------------------------ #
# GenotypeMatrix
# ------------------------------------------------------------------ #


class GenotypeMatrix:
    """Compressed ``n × p`` genotype matrix, standardised on access.

    Args:
        genotypes: Integer-valued array of shape ``(n, p)`` with
            entries in ``{0, 1, 2}``; missing entries are ``-1`` or
            ``NaN``.
        chunk_size: Number of columns decoded at a time in streaming
            products.

    Raises:
        ValueError: If *genotypes* is not 2-D or contains values other
            than ``0``, ``1``, ``2`` and the missing markers.
    """

    def __init__(self, genotypes: Any, *, chunk_size: int = _DEFAULT_CHUNK) -> None:
        G = np.asarray(genotypes)
        if G.ndim != 2:
            raise ValueError(f"genotypes must be 2-D, got shape {G.shape}.")
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}.")
        if np.issubdtype(G.dtype, np.floating):
            missing = np.isnan(G) | (G == -1)
        else:
            missing = G == -1
        # Raw values are validated first; 3 is the internal missing code.
        if not np.all(missing | np.isin(G, [0, 1, 2])):
            raise ValueError(
                "genotypes must contain minor-allele counts 0, 1, 2 "
                "(missing as -1 or NaN)."
            )
        codes = np.where(missing, _MISSING, G).astype(np.uint8)
        self._n, self._p = codes.shape
        self._chunk = chunk_size
        self._packed = _read_only(_pack_codes(codes))
        self._init_stats(codes)

    @classmethod
    def from_packed(
        cls,
        packed: np.ndarray,
        n_samples: int,
        *,
        chunk_size: int = _DEFAULT_CHUNK,
    ) -> GenotypeMatrix:
        """Wrap an already packed ``(ceil(n/4), p)`` uint8 array.

        Raises:
            ValueError: If the byte array does not match *n_samples*.
        """
        packed = np.ascontiguousarray(packed, dtype=np.uint8)
        if packed.ndim != 2 or packed.shape[0] != -(-n_samples // 4):
            raise ValueError(
                f"packed array of shape {packed.shape} does not hold "
                f"{n_samples} samples."
            )
        self = cls.__new__(cls)
        self._n, self._p = n_samples, packed.shape[1]
        self._chunk = chunk_size
        self._packed = _read_only(packed.copy())
        codes = np.concatenate(
            [
                self._decode(np.arange(s, min(s + chunk_size, self._p)))
                for s in range(0, self._p, chunk_size)
            ],
            axis=1,
        ) if self._p else np.empty((n_samples, 0), dtype=np.intp)
        self._init_stats(codes)
        return self

    def _init_stats(self, codes: np.ndarray) -> None:
        observed = codes != _MISSING  # (n, p)
        counts = observed.sum(axis=0)  # non-missing samples per SNP
        values = np.where(observed, codes, 0).astype(float)
        sums = values.sum(axis=0)
        means = np.divide(sums, counts, out=np.zeros(self._p), where=counts > 0)
        centred = np.where(observed, values - means, 0.0)
        ss = np.einsum("ij,ij->j", centred, centred)
        denom = max(self._n - 1, 1)
        sd = np.sqrt(ss / denom)
        inv_std = np.divide(1.0, sd, out=np.zeros(self._p), where=sd > 0)
        n_mono = int(np.sum(sd == 0))
        if n_mono:
            logger.warning(
                "%d monomorphic SNP(s) have zero variance and will never "
                "enter the model.",
                n_mono,
            )
        # Standardised value of each code per SNP; missing → 0.
        lookup = np.zeros((self._p, 4))
        for g in range(3):
            lookup[:, g] = (g - means) * inv_std
        self._means = _read_only(means)
        self._inv_stds = _read_only(inv_std)
        self._maf = _read_only(np.minimum(means / 2.0, 1.0 - means / 2.0))
        self._lookup = _read_only(lookup)

    # ---- Properties ------------------------------------------------

    @property
    def shape(self) -> tuple[int, int]:
        return (self._n, self._p)

    @property
    def means(self) -> np.ndarray:
        """Per-SNP mean minor-allele count (read-only)."""
        return self._means

    @property
    def inv_stds(self) -> np.ndarray:
        """Per-SNP inverse standard deviation (read-only)."""
        return self._inv_stds

    @property
    def maf(self) -> np.ndarray:
        """Per-SNP minor-allele frequency."""
        return self._maf

    @property
    def packed(self) -> np.ndarray:
        """The packed ``(ceil(n/4), p)`` byte array (read-only)."""
        return self._packed

    # ---- Decoding --------------------------------------------------

    def _decode(self, cols: np.ndarray) -> np.ndarray:
        """Raw 2-bit codes of columns *cols* as an ``(n, len(cols))`` array."""
        sub = self._packed[:, cols]  # (m, c)
        m, c = sub.shape
        codes = _BYTE_CODES[sub]  # (m, c, 4)
        return codes.transpose(0, 2, 1).reshape(m * 4, c)[: self._n]

    def columns(self, idx: np.ndarray, out: np.ndarray | None = None) -> np.ndarray:
        """Standardised dense columns *idx*, shape ``(n, len(idx))``.

        When *out* is given, the result is written into its leading
        ``len(idx)`` columns and a view is returned.
        """
        idx = np.asarray(idx, dtype=np.intp)
        codes = self._decode(idx)  # (n, c)
        block = np.take_along_axis(self._lookup[idx].T, codes, axis=0)
        if out is None:
            return block
        view = out[:, : len(idx)]
        view[...] = block
        return view

    # ---- Products --------------------------------------------------

    def matvec(self, b: np.ndarray) -> np.ndarray:
        """``X_std @ b`` touching only the nonzero entries of *b*."""
        nz = np.flatnonzero(b)
        out = np.zeros(self._n)
        for s in range(0, len(nz), self._chunk):
            cols = nz[s : s + self._chunk]
            out += self.columns(cols) @ b[cols]
        return out

    def rmatvec(self, r: np.ndarray) -> np.ndarray:
        """``X_stdᵀ @ r`` for a vector ``(n,)`` or matrix ``(n, t)``."""
        r = np.asarray(r, dtype=float)
        out = np.empty((self._p,) + r.shape[1:])
        for s in range(0, self._p, self._chunk):
            cols = np.arange(s, min(s + self._chunk, self._p))
            out[s : s + len(cols)] = self.columns(cols).T @ r
        return out


# ------------------------------------------------------------------ #
# DenseBlock
# ------------------------------------------------------------------ #


class DenseBlock:
    """Dense float predictors with the :class:`GenotypeMatrix` interface.

    The raw matrix is stored once; standardisation is applied inside
    each product using the cached means and inverse standard
    deviations, so no standardised copy is materialised.

    Args:
        X: Float array ``(n, p)``.
        standardize: Centre and scale columns.  When ``False`` the
            block is used as-is.
    """

    def __init__(self, X: Any, *, standardize: bool = True) -> None:
        X = np.array(X, dtype=float)
        if X.ndim != 2:
            raise ValueError(f"X must be 2-D, got shape {X.shape}.")
        if not np.all(np.isfinite(X)):
            raise ValueError("X must not contain NaN or infinite values.")
        n, p = X.shape
        if standardize:
            means = X.mean(axis=0)
            sd = X.std(axis=0, ddof=1) if n > 1 else np.zeros(p)
            inv_std = np.divide(1.0, sd, out=np.zeros(p), where=sd > 0)
        else:
            means = np.zeros(p)
            inv_std = np.ones(p)
        self._X = _read_only(X)
        self._means = _read_only(means)
        self._inv_stds = _read_only(inv_std)

    @property
    def shape(self) -> tuple[int, int]:
        return self._X.shape

    @property
    def means(self) -> np.ndarray:
        return self._means

    @property
    def inv_stds(self) -> np.ndarray:
        return self._inv_stds

    def columns(self, idx: np.ndarray, out: np.ndarray | None = None) -> np.ndarray:
        idx = np.asarray(idx, dtype=np.intp)
        block = (self._X[:, idx] - self._means[idx]) * self._inv_stds[idx]
        if out is None:
            return block
        view = out[:, : len(idx)]
        view[...] = block
        return view

    def matvec(self, b: np.ndarray) -> np.ndarray:
        nz = np.flatnonzero(b)
        if len(nz) == 0:
            return np.zeros(self._X.shape[0])
        return self.columns(nz) @ b[nz]

    def rmatvec(self, r: np.ndarray) -> np.ndarray:
        r = np.asarray(r, dtype=float)
        # X_stdᵀ r = s ⊙ (Xᵀ r − m · Σ r)
        raw = self._X.T @ r
        total = r.sum(axis=0)
        if r.ndim == 1:
            return self._inv_stds * (raw - self._means * total)
        return self._inv_stds[:, None] * (raw - np.outer(self._means, total))


# ------------------------------------------------------------------ #
# ThinDesign
# ------------------------------------------------------------------ #


class ThinDesign:
    """Dense standardised copy of the active genetic columns.

    Built once per support change by :meth:`DesignView.restrict` and
    reused for every product within an iteration.
    """

    def __init__(self, columns: np.ndarray, indices: np.ndarray) -> None:
        self.columns = columns  # (n, s)
        self.indices = indices  # (s,)

    @property
    def shape(self) -> tuple[int, int]:
        return self.columns.shape

    def matvec(self, b_active: np.ndarray) -> np.ndarray:
        return self.columns @ b_active

    def rmatvec(self, r: np.ndarray) -> np.ndarray:
        return self.columns.T @ r


# ------------------------------------------------------------------ #
# DesignView
# ------------------------------------------------------------------ #


class DesignView:
    """Logical ``[X | Z]`` design over a genetic and a covariate block.

    Args:
        genetic: A :class:`GenotypeMatrix`, a :class:`DenseBlock`, or a
            float array (wrapped in a standardising ``DenseBlock``).
        covariates: Optional dense covariates ``(n, q)`` as an array or
            pandas DataFrame.  Column names are kept for reporting.
        intercept: Prepend a column of ones unless one is already
            present.

    Raises:
        ValueError: If the two blocks disagree on the number of
            samples or the covariates are not finite.
    """

    def __init__(
        self,
        genetic: GenotypeMatrix | DenseBlock | np.ndarray,
        covariates: Any = None,
        *,
        intercept: bool = True,
    ) -> None:
        if not isinstance(genetic, (GenotypeMatrix, DenseBlock)):
            genetic = DenseBlock(genetic)
        self.genetic = genetic
        n = genetic.shape[0]

        if covariates is None:
            Z = np.empty((n, 0))
            names: list[str] = []
        elif isinstance(covariates, (pd.DataFrame, pd.Series)):
            frame = covariates.to_frame() if isinstance(covariates, pd.Series) else covariates
            Z = frame.to_numpy(dtype=float)
            names = [str(c) for c in frame.columns]
        else:
            Z = np.asarray(covariates, dtype=float)
            if Z.ndim == 1:
                Z = Z[:, None]
            names = [f"z{j}" for j in range(Z.shape[1])]

        if Z.shape[0] != n:
            raise ValueError(
                f"covariates have {Z.shape[0]} rows but the genetic block has {n}."
            )
        if not np.all(np.isfinite(Z)):
            raise ValueError("covariates must not contain NaN or infinite values.")

        ones = np.flatnonzero(np.all(Z == 1.0, axis=0)) if Z.shape[1] else np.empty(0, int)
        if intercept and len(ones) == 0:
            Z = np.column_stack([np.ones(n), Z])
            names = ["intercept", *names]
            ones = np.array([0])
        self.intercept_index: int | None = int(ones[0]) if len(ones) else None
        self.Z = _read_only(np.ascontiguousarray(Z))
        self.covariate_names = names

    # ---- Shape -----------------------------------------------------

    @property
    def n_samples(self) -> int:
        return self.genetic.shape[0]

    @property
    def n_genetic(self) -> int:
        return self.genetic.shape[1]

    @property
    def n_covariates(self) -> int:
        return self.Z.shape[1]

    @property
    def shape(self) -> tuple[int, int]:
        return (self.n_samples, self.n_genetic + self.n_covariates)

    # ---- Products --------------------------------------------------

    def matvec_blocks(self, b: np.ndarray, c: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Genetic and covariate contributions ``(X b, Z c)`` separately."""
        return self.genetic.matvec(b), self.Z @ c

    def matvec(self, b: np.ndarray, c: np.ndarray) -> np.ndarray:
        """Linear predictor ``X b + Z c``."""
        xb, zc = self.matvec_blocks(b, c)
        return xb + zc

    def matvec_transpose(self, r: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """``(Xᵀ r, Zᵀ r)`` for a vector ``(n,)`` or matrix ``(n, t)``."""
        return self.genetic.rmatvec(r), self.Z.T @ r

    def restrict(self, active: np.ndarray, out: np.ndarray | None = None) -> ThinDesign:
        """Dense view of the active genetic columns.

        Args:
            active: Boolean mask ``(p,)`` or integer indices.
            out: Optional ``(n, capacity)`` buffer reused across
                iterations; must have at least ``len(active)`` columns.
        """
        active = np.asarray(active)
        idx = np.flatnonzero(active) if active.dtype == bool else active.astype(np.intp)
        if out is not None and out.shape[1] < len(idx):
            raise ValueError(
                f"restrict buffer holds {out.shape[1]} columns, {len(idx)} requested."
            )
        cols = self.genetic.columns(idx, out=out)
        return ThinDesign(cols, idx)


# ------------------------------------------------------------------ #
# Prior weights
# ------------------------------------------------------------------ #


def maf_weights(
    genotypes: GenotypeMatrix | np.ndarray,
    max_weight: float = np.inf,
) -> np.ndarray:
    """Prior weights from minor-allele frequencies.

    ``w_j = 1 / (2·√(p_j(1 − p_j)))`` clamped to ``[1, max_weight]``,
    which up-weights rare variants in the projection ranking.

    Args:
        genotypes: A :class:`GenotypeMatrix`, or a vector of minor
            allele frequencies.
        max_weight: Upper clamp on any weight.
    """
    if isinstance(genotypes, GenotypeMatrix):
        p = np.asarray(genotypes.maf, dtype=float)
    else:
        p = np.asarray(genotypes, dtype=float)
    with np.errstate(divide="ignore"):
        w = 1.0 / (2.0 * np.sqrt(p * (1.0 - p)))
    return np.clip(w, 1.0, max_weight)


# ------------------------------------------------------------------ #
# Input coercion
# ------------------------------------------------------------------ #


def as_design(design: Any) -> DesignView:
    """Wrap a genetic block or raw array in a :class:`DesignView`.

    A ``DesignView`` is returned unchanged; anything else becomes the
    genetic block of a view with an intercept-only covariate block.
    """
    if isinstance(design, DesignView):
        return design
    if isinstance(design, pd.DataFrame):
        design = design.to_numpy(dtype=float)
    return DesignView(design)


def check_sample_weights(weights: Any, n: int) -> np.ndarray:
    """Validate per-sample weights, defaulting to all ones.

    Raises:
        ValueError: If the weights have the wrong length, are negative
            or non-finite, or are all zero.
    """
    if weights is None:
        return np.ones(n)
    w = np.asarray(weights, dtype=float)
    if w.shape != (n,):
        raise ValueError(f"sample_weights must have shape ({n},), got {w.shape}.")
    if not np.all(np.isfinite(w)) or np.any(w < 0):
        raise ValueError("sample_weights must be finite and non-negative.")
    if not np.any(w > 0):
        raise ValueError("sample_weights must select at least one sample.")
    return w
