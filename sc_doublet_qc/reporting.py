"""Validation summaries and diagnostic plots for doublet calls.

Two checks support the calls: doublets should carry larger libraries and
detect more genes than singlets, and in pools of mixed-sex embryos doublets
should more often coexpress female-specific and chrY genes.
"""

from __future__ import annotations

import pathlib
from typing import Optional, Sequence, Tuple, Union

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp
import seaborn as sns
from matplotlib import pyplot as plt

# Xist
DEFAULT_FEMALE_GENES: Tuple[str, ...] = ("ENSMUSG00000086503",)


def library_size_check(adata: ad.AnnData, labels, *, layer: Optional[str] = None) -> pd.DataFrame:
    """Median library size and detected genes per label, via Scanpy QC metrics."""
    obs_metrics, _ = sc.pp.calculate_qc_metrics(
        adata,
        layer=layer,
        percent_top=None,
        log1p=False,
        inplace=False,
    )
    frame = pd.DataFrame({
        "label": np.asarray(labels),
        "total_counts": obs_metrics["total_counts"].to_numpy(dtype=float),
        "n_genes_by_counts": obs_metrics["n_genes_by_counts"].to_numpy(dtype=float),
    })
    grouped = frame.groupby("label", sort=True, observed=True)
    return pd.DataFrame({
        "n_cells": grouped.size(),
        "median_total_counts": grouped["total_counts"].median(),
        "median_n_genes": grouped["n_genes_by_counts"].median(),
    })


def sex_gene_coexpression(
    adata: ad.AnnData,
    chromosomes: pd.Series,
    *,
    female_genes: Sequence[str] = DEFAULT_FEMALE_GENES,
    y_chromosome: str = "Y",
    layer: Optional[str] = None,
) -> pd.DataFrame:
    """Per-cell counts of female-specific and chrY genes and whether both are seen."""
    counts = adata.X if layer is None else adata.layers[layer]
    counts = sp.csr_matrix(counts)
    names = adata.var_names.astype(str)
    female_idx = np.flatnonzero(names.isin(list(female_genes)))
    chrom = pd.Series(np.asarray(chromosomes, dtype=object))
    y_idx = np.flatnonzero((chrom.notna() & (chrom.astype(str) == y_chromosome)).to_numpy())
    female = np.asarray(counts[:, female_idx].sum(axis=1)).ravel()
    male = np.asarray(counts[:, y_idx].sum(axis=1)).ravel()
    return pd.DataFrame({
        "female_counts": female,
        "y_counts": male,
        "coexpressed": (female > 0) & (male > 0),
    }, index=adata.obs_names.copy())


def coexpression_by_label(coexpression: pd.DataFrame, labels) -> pd.DataFrame:
    frame = coexpression.assign(label=np.asarray(labels))
    grouped = frame.groupby("label", sort=True, observed=True)
    return pd.DataFrame({
        "n_cells": grouped.size(),
        "n_coexpressed": grouped["coexpressed"].sum().astype(int),
        "fraction_coexpressed": grouped["coexpressed"].mean(),
    })


def plot_score_distributions(cells: pd.DataFrame, output_dir: Union[str, pathlib.Path]) -> Optional[pathlib.Path]:
    """Boxplots of log2 doublet score per label, one row per sample."""
    output_dir = pathlib.Path(output_dir)
    plot_df = cells.loc[cells["doublet_score_defined"].to_numpy(dtype=bool), ["sample", "doublet_label", "doublet_score"]]
    if plot_df.empty:
        return None
    plot_df = plot_df.assign(log2_score=np.log2(plot_df["doublet_score"].to_numpy(dtype=float) + 1.0))
    output_dir.mkdir(parents=True, exist_ok=True)
    g = sns.catplot(
        data=plot_df,
        kind="box",
        x="log2_score",
        y="sample",
        hue="doublet_label",
        sharex=True,
    )
    g.set_axis_labels("log2(doublet score + 1)", "sample")
    g.fig.tight_layout()
    path = output_dir / "doublet_score_by_label.png"
    g.fig.savefig(path, dpi=200)
    plt.close(g.fig)
    return path


def plot_outlier_tests(
    table: pd.DataFrame,
    output_dir: Union[str, pathlib.Path],
    *,
    name: str,
) -> Optional[pathlib.Path]:
    """Cluster statistic against -log10 q-value, coloured by the outlier call."""
    output_dir = pathlib.Path(output_dir)
    tested = table.dropna(subset=["qvalue"])
    if tested.empty:
        return None
    plot_df = tested.assign(neg_log10_q=-np.log10(np.clip(tested["qvalue"].to_numpy(dtype=float), 1e-300, None)))
    output_dir.mkdir(parents=True, exist_ok=True)
    plt.figure(figsize=(6, 4))
    ax = sns.scatterplot(data=plot_df, x="statistic", y="neg_log10_q", hue="outlier", s=20, edgecolor="none")
    ax.set_title(f"Outlier tests: {name}")
    ax.set_xlabel("cluster statistic")
    ax.set_ylabel("-log10 q")
    plt.tight_layout()
    path = output_dir / f"outliers_{name}.png"
    plt.savefig(path, dpi=200)
    plt.close()
    return path


def save_report_plots(result, output_dir: Union[str, pathlib.Path]) -> Tuple[pathlib.Path, ...]:
    """Write every diagnostic plot for a pipeline result; returns the paths written."""
    paths = [
        plot_score_distributions(result.cells, output_dir),
        plot_outlier_tests(result.sample_outliers, output_dir, name="per_sample"),
        plot_outlier_tests(result.pooled_outliers, output_dir, name="all_samples"),
    ]
    return tuple(p for p in paths if p is not None)
