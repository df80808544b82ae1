"""Stripped-nucleus calls from cluster-level mitochondrial fraction."""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import sparse

from .normalization import library_sizes

logger = logging.getLogger(__name__)


def mito_fraction(counts, chromosomes: Sequence, mito_chromosome: str = "MT") -> np.ndarray:
    """Per-cell fraction of annotated counts falling on mitochondrial genes.

    ``chromosomes`` gives one entry per gene column; missing entries (None or
    NaN) mark unannotated genes, which are left out of the denominator.
    Cells with no annotated counts get NaN.
    """
    chrom = pd.Series(list(chromosomes), dtype=object)
    if chrom.shape[0] != counts.shape[1]:
        raise ValueError(
            f"Expected {counts.shape[1]} chromosome annotations (one per gene), got {chrom.shape[0]}."
        )
    annotated = chrom.notna().to_numpy()
    is_mito = annotated & (chrom.astype(str).to_numpy() == str(mito_chromosome))

    mtx = sparse.csr_matrix(counts) if not sparse.issparse(counts) else counts.tocsr()
    annotated_total = library_sizes(mtx[:, np.flatnonzero(annotated)])
    mito_total = library_sizes(mtx[:, np.flatnonzero(is_mito)])
    out = np.full(mtx.shape[0], np.nan)
    ok = annotated_total > 0
    out[ok] = mito_total[ok] / annotated_total[ok]
    if not annotated.any():
        logger.warning("No annotated genes; mitochondrial fraction is undefined for every cell.")
    elif not is_mito.any():
        logger.warning("No genes annotated to chromosome '%s'.", mito_chromosome)
    return out


def cluster_summary(labels, mito, library_size) -> pd.DataFrame:
    """Median mito fraction and library size per cluster (NaN values skipped)."""
    frame = pd.DataFrame({
        "cluster": np.asarray(labels),
        "mito_fraction": np.asarray(mito, dtype=float),
        "library_size": np.asarray(library_size, dtype=float),
    })
    grouped = frame.groupby("cluster", sort=True)
    return pd.DataFrame({
        "n_cells": grouped.size(),
        "median_mito_fraction": grouped["mito_fraction"].median(),
        "median_library_size": grouped["library_size"].median(),
    })


def classify_stripped(
    labels,
    mito,
    library_size,
    *,
    threshold: float = 0.005,
    max_library_size: Optional[float] = None,
) -> Tuple[np.ndarray, pd.DataFrame]:
    """Call clusters whose median mito fraction is strictly below ``threshold``.

    Returns ``(cell_flags, cluster_table)``. With ``max_library_size`` set,
    a stripped cluster must also have a median library size below it.
    """
    table = cluster_summary(labels, mito, library_size)
    stripped = (table["median_mito_fraction"] < threshold).to_numpy()
    if max_library_size is not None:
        stripped &= (table["median_library_size"] < max_library_size).to_numpy()
    table["stripped"] = stripped
    flagged = table.index[stripped]
    cell_flags = np.isin(np.asarray(labels), flagged.to_numpy())
    logger.info("%d of %d clusters called stripped nuclei (%d cells).",
                len(flagged), table.shape[0], int(cell_flags.sum()))
    return cell_flags, table
