"""Layered graph clustering: per sample, per sub-cluster, and all samples.

Each layer is a pure function returning a fresh label array; layers are
chained by passing one layer's labels into the next, never by mutating a
shared table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from scipy import sparse
from sklearn.decomposition import PCA

from .features import column_mean_var
from .utils import snn_graph_and_communities

logger = logging.getLogger(__name__)

MIN_CELLS_TO_CLUSTER = 3


@dataclass(frozen=True, order=True)
class SubclusterKey:
    """Composite Layer-2 label: (Layer-1 cluster, sub-cluster within it)."""

    parent: int
    sub: int


def fit_pca(
    values,
    n_components: int = 50,
    seed: int = 123456,
) -> Tuple[Optional[PCA], np.ndarray]:
    """Fit PCA on a cells x genes matrix, capping components at ``n_cells - 1``.

    Sparse input uses the ARPACK solver, which centres implicitly. Returns
    ``(None, zeros)`` when the matrix has no variance to decompose.
    """
    n_cells, n_genes = values.shape
    is_sparse = sparse.issparse(values)
    cap = min(n_cells - 1, n_genes - 1 if is_sparse else n_genes)
    n_comp = min(int(n_components), cap)
    _, var = column_mean_var(values)
    if n_comp < 1 or not np.any(var > 0):
        return None, np.zeros((n_cells, 0))

    if is_sparse:
        pca = PCA(n_components=n_comp, svd_solver="arpack", random_state=seed)
        coords = pca.fit_transform(values.tocsr().astype(np.float64))
    else:
        pca = PCA(n_components=n_comp, svd_solver="full", random_state=seed)
        coords = pca.fit_transform(np.asarray(values, dtype=np.float64))
    return pca, coords


def cluster_embedding(
    embedding: np.ndarray,
    *,
    k: int = 10,
    resolution: float = 1.0,
    seed: int = 123456,
) -> np.ndarray:
    """Partition cells of a precomputed embedding (used directly for Layer 3)."""
    embedding = np.asarray(embedding, dtype=float)
    n = embedding.shape[0]
    if n < MIN_CELLS_TO_CLUSTER or embedding.shape[1] == 0:
        return np.zeros(n, dtype=int)
    _, labels = snn_graph_and_communities(embedding, k=k, resolution=resolution, seed=seed)
    return labels


def cluster_cells(
    logcounts,
    *,
    n_pcs: int = 50,
    k: int = 10,
    resolution: float = 1.0,
    seed: int = 123456,
) -> np.ndarray:
    """Layer 1: PCA over all genes, SNN graph, modularity partition."""
    n = logcounts.shape[0]
    if n < MIN_CELLS_TO_CLUSTER:
        return np.zeros(n, dtype=int)
    _, coords = fit_pca(logcounts, n_components=n_pcs, seed=seed)
    return cluster_embedding(coords, k=k, resolution=resolution, seed=seed)


def subcluster_cells(
    logcounts,
    parent_labels: np.ndarray,
    *,
    n_pcs: int = 50,
    k: int = 10,
    resolution: float = 1.0,
    seed: int = 123456,
) -> np.ndarray:
    """Layer 2: re-cluster every Layer-1 cluster on its own cells.

    Returns an object array of :class:`SubclusterKey`, one per cell.
    """
    parent_labels = np.asarray(parent_labels)
    if parent_labels.shape[0] != logcounts.shape[0]:
        raise ValueError("parent_labels must have one entry per cell (row) of logcounts.")
    if sparse.issparse(logcounts):
        logcounts = logcounts.tocsr()

    keys = np.empty(parent_labels.shape[0], dtype=object)
    for parent in np.unique(parent_labels):
        idx = np.flatnonzero(parent_labels == parent)
        sub = cluster_cells(
            logcounts[idx],
            n_pcs=n_pcs,
            k=k,
            resolution=resolution,
            seed=seed,
        )
        for cell, sub_id in zip(idx, sub):
            keys[cell] = SubclusterKey(int(parent), int(sub_id))
        logger.debug("Cluster %s: %d cells -> %d sub-clusters", parent, idx.size, len(set(sub.tolist())))
    return keys


def split_keys(keys) -> Tuple[List[int], List[int]]:
    """Unpack composite keys into parent and sub-cluster integer columns."""
    return [key.parent for key in keys], [key.sub for key in keys]
