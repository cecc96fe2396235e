# gradient_gmm/_rdd.py
"""Row-block datasets on PySpark.

The trainer consumes an RDD whose elements are row blocks, 2-d arrays or
tensors of shape (m, D); a 1-d element is read as a single row. Blocks keep
the per-task work in batched torch kernels instead of one call per row.
"""

from __future__ import annotations

import math
from typing import Optional

import numpy as np
import torch


def parallelize_rows(sc, X, n_partitions: Optional[int] = None, block_size: Optional[int] = None):
    """Distribute the rows of X (N, D) as an RDD of numpy row blocks.

    Rows keep their order. Blocks hold at most ``block_size`` rows; with
    ``block_size=None`` each partition receives a single block. Partitions
    default to ``sc.defaultParallelism``.
    """
    X = torch.as_tensor(X, dtype=torch.float64).cpu().numpy()
    if X.ndim != 2:
        raise ValueError(f"X must be 2-d (N,D), got shape {X.shape}")
    if n_partitions is None:
        n_partitions = sc.defaultParallelism
    if n_partitions <= 0:
        raise ValueError("n_partitions must be positive")
    if block_size is not None and block_size <= 0:
        raise ValueError("block_size must be positive")

    N = X.shape[0]
    if block_size is None:
        n_blocks = min(n_partitions, N)
    else:
        n_blocks = math.ceil(N / block_size)
    blocks = np.array_split(X, n_blocks, axis=0) if n_blocks > 0 else []
    return sc.parallelize(blocks, n_partitions)
