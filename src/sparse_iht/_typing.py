"""Shared type aliases for the sparse_iht package."""

import numpy as np

# A per-group sparsity budget: one cap for every group, or one per group.
Budget = int | np.ndarray | list[int]
