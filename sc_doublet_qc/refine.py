"""Cross-sample refinement of doublet calls and final label assignment."""

from __future__ import annotations

import logging
from typing import Hashable, Tuple

import numpy as np
import pandas as pd

from .outliers import flagged_units, outlier_test_family

logger = logging.getLogger(__name__)

SINGLET = "singlet"
SAMPLE_DOUBLET = "sample_doublet"
CLUSTER_DOUBLET = "cluster_doublet"
LABEL_CATEGORIES = [SINGLET, SAMPLE_DOUBLET, CLUSTER_DOUBLET]

ALL_SAMPLES_FAMILY = "all_samples"


def doublet_fraction_by_cluster(labels, sample_doublet) -> dict:
    """Fraction of cells per cluster already called doublets within their sample."""
    frame = pd.DataFrame({
        "cluster": np.asarray(labels),
        "doublet": np.asarray(sample_doublet, dtype=bool),
    })
    return frame.groupby("cluster", sort=True)["doublet"].mean().to_dict()


def assign_labels(sample_doublet, cluster_doublet) -> pd.Categorical:
    """Combine both calls with precedence sample_doublet > cluster_doublet > singlet."""
    sample_doublet = np.asarray(sample_doublet, dtype=bool)
    cluster_doublet = np.asarray(cluster_doublet, dtype=bool)
    if sample_doublet.shape != cluster_doublet.shape:
        raise ValueError("sample_doublet and cluster_doublet must have the same length.")
    labels = np.full(sample_doublet.shape[0], SINGLET, dtype=object)
    labels[cluster_doublet] = CLUSTER_DOUBLET
    labels[sample_doublet] = SAMPLE_DOUBLET
    return pd.Categorical(labels, categories=LABEL_CATEGORIES)


def refine_calls(
    cluster_labels,
    sample_doublet,
    *,
    fdr: float = 0.1,
    min_clusters: int = 2,
    strict: bool = False,
    family: Hashable = ALL_SAMPLES_FAMILY,
) -> Tuple[np.ndarray, pd.DataFrame]:
    """Flag all-sample clusters enriched for sample-level doublets.

    Returns ``(cluster_doublet, table)``. ``cluster_doublet`` is True for
    cells in a flagged cluster that were not already sample doublets.
    """
    cluster_labels = np.asarray(cluster_labels)
    sample_doublet = np.asarray(sample_doublet, dtype=bool)
    fractions = doublet_fraction_by_cluster(cluster_labels, sample_doublet)
    table = outlier_test_family(
        fractions,
        family=family,
        fdr=fdr,
        min_clusters=min_clusters,
        strict=strict,
    )
    flagged = flagged_units(table)
    in_flagged = np.isin(cluster_labels, list(flagged)) if flagged else np.zeros(cluster_labels.shape[0], dtype=bool)
    cluster_doublet = in_flagged & ~sample_doublet
    logger.info(
        "%d of %d all-sample clusters flagged; %d additional cells called cluster doublets.",
        len(flagged),
        len(fractions),
        int(cluster_doublet.sum()),
    )
    return cluster_doublet, table
