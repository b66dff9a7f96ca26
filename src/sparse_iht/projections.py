"""Hard-thresholding projections onto sparsity constraint sets.

All operators are stateless and return a **new** array; the engine
copies the result back into its own buffers.

Plain top-k
~~~~~~~~~~~
:func:`project_k` keeps the ``k`` largest-magnitude entries.  The
selection uses ``np.argpartition`` as the partial-sort pivot, so
exactly ``k`` positions survive even when magnitudes tie.

Grouped top-k
~~~~~~~~~~~~~
:func:`project_group_sparse` enforces two nested budgets at once — at
most ``J`` active groups, and at most ``k[g]`` active members inside
group ``g``:

1. Rank every entry globally by ``|y|`` (stable, descending).
2. Give every entry its rank *within its own group* in that order.
3. Accumulate each group's sum of squares over the members whose
   within-group rank is below ``k[g]``; later members never count,
   however they were interleaved in the global ranking.
4. Rank the groups by that sum of squares and keep the top ``J``.

An entry survives when its group is among the top ``J`` **and** its
within-group rank is below ``k[g]``.

Weighted variants
~~~~~~~~~~~~~~~~~
:func:`project_weighted` multiplies by positive prior weights before
ranking and divides by the same weights afterwards, so ranking uses
weighted magnitudes while the returned coefficients stay unweighted.
"""

from __future__ import annotations

import numpy as np

from ._typing import Budget

# ------------------------------------------------------------------ #
# Group maps and budgets
# ------------------------------------------------------------------ #


def normalize_groups(groups: np.ndarray) -> np.ndarray:
    """Map group labels to dense 0-based integers.

    Labels must be dense integers starting at ``0`` or ``1``.

    Raises:
        ValueError: If the labels are not integers, do not start at 0
            or 1, or skip an id.
    """
    g = np.asarray(groups)
    if g.ndim != 1:
        raise ValueError(f"groups must be 1-D, got shape {g.shape}.")
    if g.size == 0:
        return g.astype(np.intp)
    if not np.issubdtype(g.dtype, np.integer):
        if not np.all(np.equal(np.mod(g, 1), 0)):
            raise ValueError("groups must contain integer group ids.")
    g = g.astype(np.intp)
    lo = int(g.min())
    if lo not in (0, 1):
        raise ValueError(f"Group ids must start at 0 or 1, got minimum {lo}.")
    g = g - lo
    present = np.unique(g)
    if len(present) != int(g.max()) + 1:
        raise ValueError("Group ids must be dense (no missing ids between min and max).")
    return g


def check_group_budget(k: Budget, groups: np.ndarray) -> np.ndarray:
    """Validate a per-group budget against the group populations.

    Args:
        k: Scalar budget shared by every group, or one budget per group.
        groups: 0-based dense group ids (see :func:`normalize_groups`).

    Returns:
        The budget broadcast to one entry per group.

    Raises:
        ValueError: If a budget is negative, the vector length differs
            from the number of groups, or a budget exceeds its group's
            population.
    """
    population = np.bincount(groups)
    n_groups = len(population)
    kv = np.asarray(k, dtype=np.intp)
    if kv.ndim == 0:
        kv = np.full(n_groups, int(kv), dtype=np.intp)
    elif kv.shape != (n_groups,):
        raise ValueError(
            f"Vector budget has {kv.size} entries but there are {n_groups} groups."
        )
    if np.any(kv < 0):
        raise ValueError("Per-group budgets must be non-negative.")
    over = np.flatnonzero(kv > population)
    if len(over):
        g = int(over[0])
        raise ValueError(
            f"Maximum predictors for group {g} was {int(kv[g])} but there are "
            f"only {int(population[g])} predictors in this group."
        )
    return kv


# ------------------------------------------------------------------ #
# Top-k
# ------------------------------------------------------------------ #


def project_k(x: np.ndarray, k: int) -> np.ndarray:
    """Keep the ``k`` largest-magnitude entries of *x*, zero the rest.

    ``k <= 0`` returns all zeros; ``k >= len(x)`` returns a copy.
    """
    x = np.asarray(x, dtype=float)
    n = x.shape[0]
    if k <= 0:
        return np.zeros_like(x)
    if k >= n:
        return x.copy()
    keep = np.argpartition(-np.abs(x), k - 1)[:k]
    out = np.zeros_like(x)
    out[keep] = x[keep]
    return out


def project_group_sparse(
    y: np.ndarray,
    groups: np.ndarray,
    J: int,
    k: Budget,
) -> np.ndarray:
    """Grouped hard threshold: at most *J* groups, ``k[g]`` per group.

    Args:
        y: Vector to project.
        groups: 0-based group id of every entry.
        J: Maximum number of active groups.
        k: Scalar or per-group budget.
    """
    y = np.asarray(y, dtype=float)
    groups = np.asarray(groups, dtype=np.intp)
    n = y.shape[0]
    if n == 0:
        return y.copy()
    n_groups = int(groups.max()) + 1
    kv = np.asarray(k, dtype=np.intp)
    if kv.ndim == 0:
        kv = np.full(n_groups, int(kv), dtype=np.intp)

    # Phase 1: global magnitude order, then rank within each group.
    order = np.argsort(-np.abs(y), kind="stable")
    g_sorted = groups[order]
    by_group = np.argsort(g_sorted, kind="stable")
    gs = g_sorted[by_group]
    within = np.arange(n) - np.searchsorted(gs, gs, side="left")
    rank = np.empty(n, dtype=np.intp)
    rank[order[by_group]] = within

    counted = rank < kv[groups]
    group_ss = np.bincount(
        groups, weights=np.where(counted, y * y, 0.0), minlength=n_groups
    )

    # Phase 2: rank groups by their budgeted sum of squares.
    group_order = np.argsort(-group_ss, kind="stable")
    group_rank = np.empty(n_groups, dtype=np.intp)
    group_rank[group_order] = np.arange(n_groups)

    keep = counted & (group_rank[groups] < J)
    return np.where(keep, y, 0.0)


def project(
    x: np.ndarray,
    k: Budget,
    *,
    groups: np.ndarray | None = None,
    J: int = 1,
) -> np.ndarray:
    """Dispatch to :func:`project_k` or :func:`project_group_sparse`."""
    if groups is None:
        return project_k(x, int(J * int(k)))
    return project_group_sparse(x, groups, J, k)


def project_weighted(
    x: np.ndarray,
    k: Budget,
    weights: np.ndarray,
    *,
    groups: np.ndarray | None = None,
    J: int = 1,
) -> np.ndarray:
    """Project ``x ⊙ w`` and divide the survivors by ``w`` again.

    Raises:
        ValueError: If a weight is not strictly positive.
    """
    w = np.asarray(weights, dtype=float)
    if np.any(w <= 0):
        raise ValueError("Prior weights must be strictly positive.")
    return project(np.asarray(x, dtype=float) * w, k, groups=groups, J=J) / w


# ------------------------------------------------------------------ #
# Excess-selection guard
# ------------------------------------------------------------------ #


def choose_excess(
    b: np.ndarray,
    c: np.ndarray,
    budget: int,
    rng: np.random.Generator,
    penalize_covariates: bool = False,
) -> int:
    """Randomly zero active entries until at most *budget* remain.

    Ties in magnitude can leave more than ``budget`` entries active.
    Excess entries are discarded from the genetic block *b* first and
    from the covariate block *c* only if that is not enough.  When the
    covariates are unpenalised they never count towards the budget.
    Both arrays are modified in place.

    Returns:
        Number of entries discarded.
    """
    nz_b = np.flatnonzero(b)
    nz_c = np.flatnonzero(c) if penalize_covariates else np.empty(0, dtype=np.intp)
    excess = len(nz_b) + len(nz_c) - budget
    if excess <= 0:
        return 0
    dropped = 0
    take = min(excess, len(nz_b))
    if take:
        b[rng.choice(nz_b, size=take, replace=False)] = 0.0
        dropped += take
    rest = excess - take
    if rest > 0 and len(nz_c):
        c[rng.choice(nz_c, size=min(rest, len(nz_c)), replace=False)] = 0.0
        dropped += min(rest, len(nz_c))
    return dropped
