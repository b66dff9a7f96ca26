"""Shared simulated data for the sparse_iht test suite."""

import numpy as np
import pytest


def simulate_genotypes(rng, n, p, maf_range=(0.05, 0.5)):
    """Minor-allele counts ``(n, p)`` under Hardy-Weinberg equilibrium."""
    maf = rng.uniform(*maf_range, size=p)
    return rng.binomial(2, maf, size=(n, p)).astype(np.int8)


def standardize(G):
    G = np.asarray(G, dtype=float)
    return (G - G.mean(axis=0)) / G.std(axis=0, ddof=1)


@pytest.fixture()
def rng():
    return np.random.default_rng(42)


@pytest.fixture(scope="session")
def gwas_gaussian():
    """n=1000, p=10000 Gaussian trait driven by exactly 10 SNPs."""
    rng = np.random.default_rng(2024)
    n, p, k = 1000, 10_000, 10
    G = simulate_genotypes(rng, n, p)
    true_idx = np.sort(rng.choice(p, size=k, replace=False))
    effects = rng.uniform(0.5, 1.0, size=k) * rng.choice([-1.0, 1.0], size=k)
    y = standardize(G[:, true_idx]) @ effects + rng.standard_normal(n)
    return G, y, true_idx, effects
