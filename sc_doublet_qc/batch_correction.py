"""Batch ordering and sequential mutual-nearest-neighbour correction."""

from __future__ import annotations

import logging
from typing import Dict, Hashable, List, Sequence, Tuple

import numpy as np
import pandas as pd
import scipy.sparse as sp
from sklearn.neighbors import NearestNeighbors

from .errors import BatchCorrectionError, BatchOrderError

logger = logging.getLogger(__name__)


def sample_stages(obs: pd.DataFrame, sample_key: str = "sample", stage_key: str = "stage") -> pd.DataFrame:
    """Summarise samples as ``sample``, ``stage``, ``n_cells``.

    Raises :class:`BatchOrderError` when a sample carries more than one stage.
    """
    for key in (sample_key, stage_key):
        if key not in obs.columns:
            raise KeyError(f"obs is missing required column '{key}'.")
    samples = obs[sample_key].astype(str).to_numpy()
    stage_values = obs[stage_key].astype(str).to_numpy()
    rows = []
    mixed = {}
    for sample in sorted(set(samples)):
        mask = samples == sample
        stages = sorted(set(stage_values[mask]))
        if len(stages) != 1:
            mixed[sample] = stages
            continue
        rows.append({"sample": sample, "stage": stages[0], "n_cells": int(mask.sum())})
    if mixed:
        raise BatchOrderError(f"Samples carry more than one stage: {mixed}")
    return pd.DataFrame(rows, columns=["sample", "stage", "n_cells"])


def order_batches(samples: pd.DataFrame, stage_order: Sequence[str]) -> List[str]:
    """Merge order for batch correction.

    Stages follow ``stage_order``; within a stage, larger samples come first
    and ties break on sample id.
    """
    rank = {stage: i for i, stage in enumerate(stage_order)}
    unknown = sorted(set(samples["stage"]) - set(rank))
    if unknown:
        raise BatchOrderError(
            f"Stages {unknown} are not in the configured stage order {list(stage_order)}."
        )
    keyed = samples.assign(
        _stage_rank=samples["stage"].map(rank),
        _neg_size=-samples["n_cells"].astype(int),
        _sample=samples["sample"].astype(str),
    )
    keyed = keyed.sort_values(["_stage_rank", "_neg_size", "_sample"], kind="mergesort")
    return keyed["_sample"].tolist()


def find_mutual_nn(reference: np.ndarray, target: np.ndarray, k: int = 20) -> Tuple[np.ndarray, np.ndarray]:
    """Mutual nearest-neighbour pairs between two point sets.

    Returns ``(target_idx, reference_idx)``: pair ``i`` links
    ``target[target_idx[i]]`` with ``reference[reference_idx[i]]``.
    """
    n_ref, n_tgt = reference.shape[0], target.shape[0]
    k_ref = min(k, n_ref)
    k_tgt = min(k, n_tgt)
    if k_ref < 1 or k_tgt < 1:
        return np.zeros(0, dtype=int), np.zeros(0, dtype=int)

    # target -> its k nearest reference cells
    tgt_to_ref = NearestNeighbors(n_neighbors=k_ref).fit(reference).kneighbors(target, return_distance=False)
    a = sp.csr_matrix(
        (np.ones(tgt_to_ref.size), (np.repeat(np.arange(n_tgt), k_ref), tgt_to_ref.ravel())),
        shape=(n_tgt, n_ref),
    )
    # reference -> its k nearest target cells
    ref_to_tgt = NearestNeighbors(n_neighbors=k_tgt).fit(target).kneighbors(reference, return_distance=False)
    b = sp.csr_matrix(
        (np.ones(ref_to_tgt.size), (np.repeat(np.arange(n_ref), k_tgt), ref_to_tgt.ravel())),
        shape=(n_ref, n_tgt),
    )
    mutual = a.multiply(b.T).tocoo()
    order = np.lexsort((mutual.col, mutual.row))
    return mutual.row[order].astype(int), mutual.col[order].astype(int)


def smooth_correction(
    target: np.ndarray,
    paired_idx: np.ndarray,
    paired_vectors: np.ndarray,
    smooth_k: int = 20,
) -> np.ndarray:
    """Spread per-cell correction vectors to every target cell.

    Each target cell takes a Gaussian-weighted mean of the vectors of its
    ``smooth_k`` nearest paired cells; the kernel width is the median of
    those distances.
    """
    k = min(smooth_k, paired_idx.size)
    nbrs = NearestNeighbors(n_neighbors=k).fit(target[paired_idx])
    dist, idx = nbrs.kneighbors(target)
    positive = dist[dist > 0]
    sigma = float(np.median(positive)) if positive.size else 1.0
    weights = np.exp(-(dist ** 2) / (2.0 * sigma ** 2))
    weights /= weights.sum(axis=1, keepdims=True)
    return np.einsum("ij,ijk->ik", weights, paired_vectors[idx])


def correct_batch(
    reference: np.ndarray,
    target: np.ndarray,
    *,
    k: int = 20,
    smooth_k: int = 20,
    batch: Hashable = None,
) -> np.ndarray:
    """Move ``target`` onto ``reference`` and return the corrected coordinates."""
    tgt_idx, ref_idx = find_mutual_nn(reference, target, k=k)
    if tgt_idx.size == 0:
        raise BatchCorrectionError(f"No mutual nearest neighbours found for batch {batch!r}.")

    # per paired target cell: mean of its reference partners minus itself
    paired = np.unique(tgt_idx)
    pos = np.searchsorted(paired, tgt_idx)
    sums = np.zeros((paired.size, reference.shape[1]))
    np.add.at(sums, pos, reference[ref_idx])
    counts = np.bincount(pos, minlength=paired.size)[:, None]
    vectors = sums / counts - target[paired]

    logger.debug("Batch %r: %d MNN pairs over %d target cells.", batch, tgt_idx.size, paired.size)
    return target + smooth_correction(target, paired, vectors, smooth_k=smooth_k)


def mnn_correct(
    embedding: np.ndarray,
    batches: Sequence[Hashable],
    order: Sequence[Hashable],
    *,
    k: int = 20,
    smooth_k: int = 20,
) -> np.ndarray:
    """Sequentially merge batches in ``order``; the first batch is the anchor.

    Every cell must belong to a batch named in ``order``. Returns a new array
    of the same shape with corrected coordinates.
    """
    embedding = np.asarray(embedding, dtype=float)
    batches = np.asarray(batches).astype(str)
    order = [str(b) for b in order]
    missing = sorted(set(batches) - set(order))
    if missing:
        raise BatchOrderError(f"Batches {missing} are missing from the merge order.")

    corrected = embedding.copy()
    members: Dict[str, np.ndarray] = {b: np.flatnonzero(batches == b) for b in order}
    merged = members[order[0]]
    for batch in order[1:]:
        idx = members[batch]
        if idx.size == 0:
            continue
        corrected[idx] = correct_batch(
            corrected[merged],
            corrected[idx],
            k=k,
            smooth_k=smooth_k,
            batch=batch,
        )
        merged = np.concatenate([merged, idx])
    logger.info("MNN-corrected %d batches (%d cells).", len(order), embedding.shape[0])
    return corrected
