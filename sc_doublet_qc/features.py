"""Highly variable gene selection from a fitted mean-variance trend."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.stats import chi2
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger(__name__)

_MIN_TREND_GENES = 5


def column_mean_var(logcounts) -> tuple:
    n = logcounts.shape[0]
    if sparse.issparse(logcounts):
        mean = np.asarray(logcounts.mean(axis=0)).ravel()
        sq = np.asarray(logcounts.multiply(logcounts).mean(axis=0)).ravel()
        var = (sq - mean**2) * n / max(n - 1, 1)
    else:
        arr = np.asarray(logcounts, dtype=float)
        mean = arr.mean(axis=0)
        var = arr.var(axis=0, ddof=1) if n > 1 else np.zeros_like(mean)
    return mean, np.clip(var, 0.0, None)


def model_gene_variance(
    logcounts,
    *,
    gene_ids: Optional[Sequence[str]] = None,
    span: float = 0.3,
) -> pd.DataFrame:
    """Decompose per-gene variance into technical (trend) and biological parts.

    A LOWESS trend of variance against mean is fitted over expressed genes;
    the trend value is taken as the technical variance. Each gene's variance
    is tested against it with ``(n - 1) * var / tech ~ chi2(n - 1)`` and the
    p-values are BH-corrected.

    Returns a DataFrame indexed by gene with columns ``mean``, ``total``,
    ``tech``, ``bio``, ``p_value`` and ``FDR``. Unexpressed genes get
    ``p_value = 1``.
    """
    n_cells, n_genes = logcounts.shape
    mean, var = column_mean_var(logcounts)
    index = pd.Index(gene_ids if gene_ids is not None else np.arange(n_genes).astype(str), name="gene_id")
    out = pd.DataFrame({"mean": mean, "total": var}, index=index)
    out["tech"] = np.nan
    out["bio"] = np.nan
    out["p_value"] = 1.0

    expressed = (mean > 0) & (var > 0)
    if n_cells < 3 or expressed.sum() < _MIN_TREND_GENES:
        logger.warning(
            "Too few cells (%d) or expressed genes (%d) to fit a variance trend.",
            n_cells,
            int(expressed.sum()),
        )
        out["FDR"] = 1.0
        return out

    fitted = lowess(var[expressed], mean[expressed], frac=span, return_sorted=False)
    floor = np.min(var[expressed][var[expressed] > 0]) if np.any(var[expressed] > 0) else 1e-8
    tech = np.clip(fitted, floor, None)

    dof = n_cells - 1
    stat = dof * var[expressed] / tech
    pvals = chi2.sf(stat, dof)

    out.loc[expressed, "tech"] = tech
    out.loc[expressed, "bio"] = var[expressed] - tech
    out.loc[expressed, "p_value"] = pvals
    out["FDR"] = multipletests(out["p_value"].to_numpy(), method="fdr_bh")[1]
    return out


def select_hvgs(
    logcounts,
    *,
    fdr: float = 0.05,
    min_genes: int = 50,
    gene_ids: Optional[Sequence[str]] = None,
) -> np.ndarray:
    """Return column indices of highly variable genes.

    Genes with trend-test FDR below ``fdr`` are kept. When fewer than
    ``min_genes`` pass, the genes with the largest biological component are
    used instead so that downstream PCA always has input.
    """
    table = model_gene_variance(logcounts, gene_ids=gene_ids)
    selected = np.flatnonzero((table["FDR"] < fdr).to_numpy())
    if selected.size >= min(min_genes, table.shape[0]):
        logger.debug("Selected %d HVGs at FDR < %s", selected.size, fdr)
        return selected

    bio = table["bio"].fillna(-np.inf).to_numpy()
    if not np.isfinite(bio).any():
        bio = table["total"].to_numpy()
    n_keep = min(min_genes, int(np.sum(table["total"].to_numpy() > 0)) or table.shape[0])
    fallback = np.sort(np.argsort(-bio, kind="stable")[:n_keep])
    logger.warning(
        "Only %d genes passed the HVG test at FDR < %s; using the top %d genes by biological variance.",
        selected.size,
        fdr,
        fallback.size,
    )
    return fallback
