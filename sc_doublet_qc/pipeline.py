"""End-to-end doublet and stripped-nucleus calling across samples.

Per-sample scoring, clustering and outlier testing run in a worker pool.
After every sample has finished, the pooled stage batch-corrects all cells,
clusters them together, refines the doublet calls and flags stripped nuclei.
"""

from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from .batch_correction import mnn_correct, order_batches, sample_stages
from .clustering import cluster_cells, cluster_embedding, fit_pca, split_keys, subcluster_cells
from .config import DoubletQCConfig
from .doublet_scores import score_doublets
from .errors import SampleProcessingError
from .features import select_hvgs
from .io import counts_matrix, gene_chromosomes, obs_size_factors
from .normalization import check_size_factors, library_size_factors, library_sizes, log_normalize
from .outliers import RESULT_COLUMNS, flagged_units, outlier_test_family
from .refine import assign_labels, refine_calls
from .stripped import classify_stripped, mito_fraction
from .utils import effective_n_jobs, save_result

logger = logging.getLogger(__name__)


@dataclass
class SampleDoubletResult:
    """Everything the per-sample stage produces for one sample."""

    sample: str
    cell_idx: np.ndarray
    scores: np.ndarray
    defined: np.ndarray
    sample_cluster: np.ndarray
    subclusters: np.ndarray
    outliers: pd.DataFrame
    sample_doublet: np.ndarray
    parameters: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class DoubletPipelineResult:
    """Structured output of :func:`run_doublet_pipeline`."""

    cells: pd.DataFrame
    sample_summary: pd.DataFrame
    sample_outliers: pd.DataFrame
    pooled_outliers: pd.DataFrame
    stripped_clusters: pd.DataFrame
    embedding: np.ndarray
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def to_dataframe(self, columns=None) -> pd.DataFrame:
        """Copy of the per-cell table, optionally restricted to ``columns``."""
        cells = self.cells if columns is None else self.cells.loc[:, list(columns)]
        return cells.copy()

    @property
    def doublets(self) -> pd.Index:
        return self.cells.index[self.cells["doublet_label"] != "singlet"]

    @property
    def stripped_cells(self) -> pd.Index:
        return self.cells.index[self.cells["stripped"].to_numpy(dtype=bool)]

    def label_counts(self) -> pd.Series:
        return self.cells["doublet_label"].value_counts().reindex(
            self.cells["doublet_label"].cat.categories, fill_value=0
        )

    def save(self, f: Union[str, Path]) -> None:
        """Save the result to a file using dill."""
        save_result(self, f)


def subcluster_median_scores(subclusters, scores, defined) -> Dict[Any, float]:
    """Median defined doublet score per sub-cluster; NaN when none is defined."""
    stats: Dict[Any, float] = {}
    keys = np.asarray(subclusters, dtype=object)
    for key in sorted(set(keys)):
        mask = (keys == key) & defined
        stats[key] = float(np.median(scores[mask])) if mask.any() else np.nan
    return stats


def process_sample(sample, cell_idx, counts, size_factors, config: DoubletQCConfig) -> SampleDoubletResult:
    """Score, cluster and outlier-test the cells of one sample."""
    counts = sp.csr_matrix(counts)
    logcounts = log_normalize(counts, size_factors)

    scored = score_doublets(
        counts,
        size_factors,
        logcounts=logcounts,
        n_simulated=config.n_simulated,
        neighbor_fraction=config.score_neighbor_fraction,
        n_neighbors=config.score_n_neighbors,
        n_pcs=config.n_pcs,
        hvg_fdr=config.hvg_fdr,
        min_hvgs=config.min_hvgs,
        min_cells=config.min_cells_for_scoring,
        seed=config.seed,
    )
    cluster_kwargs = dict(n_pcs=config.n_pcs, k=config.snn_k, resolution=config.resolution, seed=config.seed)
    layer1 = cluster_cells(logcounts, **cluster_kwargs)
    layer2 = subcluster_cells(logcounts, layer1, **cluster_kwargs)

    stats = subcluster_median_scores(layer2, scored.scores, scored.defined)
    table = outlier_test_family(
        stats,
        family=sample,
        fdr=config.outlier_fdr,
        min_clusters=config.min_clusters_for_testing,
        strict=config.strict_testing,
    )
    flagged = flagged_units(table)
    sample_doublet = np.array([key in flagged for key in layer2], dtype=bool)
    logger.info(
        "Sample %s: %d cells, %d clusters, %d sub-clusters, %d flagged (%d cells).",
        sample,
        counts.shape[0],
        len(set(layer1.tolist())),
        len(stats),
        len(flagged),
        int(sample_doublet.sum()),
    )
    return SampleDoubletResult(
        sample=sample,
        cell_idx=np.asarray(cell_idx, dtype=int),
        scores=scored.scores,
        defined=scored.defined,
        sample_cluster=layer1,
        subclusters=layer2,
        outliers=table,
        sample_doublet=sample_doublet,
        parameters={"n_hvgs": int(scored.hvg_idx.size), "n_neighbors": scored.n_neighbors},
    )


def run_per_sample(counts, samples, size_factors, config: DoubletQCConfig) -> Dict[str, SampleDoubletResult]:
    """Run :func:`process_sample` for every sample and wait for all of them.

    Raises :class:`SampleProcessingError` naming every sample that failed.
    """
    counts = sp.csr_matrix(counts)
    samples = np.asarray(samples).astype(str)
    tasks = []
    for sample in sorted(set(samples)):
        idx = np.flatnonzero(samples == sample)
        tasks.append((sample, idx, counts[idx], size_factors[idx], config))

    results: Dict[str, SampleDoubletResult] = {}
    failures: Dict[str, BaseException] = {}
    workers = min(effective_n_jobs(config.n_jobs), len(tasks))
    if config.backend == "sequential" or workers <= 1:
        for task in tasks:
            try:
                results[task[0]] = process_sample(*task)
            except Exception as exc:
                logger.error("Sample %s failed: %s", task[0], exc)
                failures[task[0]] = exc
    else:
        executor_cls = ProcessPoolExecutor if config.backend == "process" else ThreadPoolExecutor
        with executor_cls(max_workers=workers) as executor:
            future_map = {executor.submit(process_sample, *task): task[0] for task in tasks}
            for future in as_completed(future_map):
                sample = future_map[future]
                try:
                    results[sample] = future.result()
                except Exception as exc:
                    logger.error("Sample %s failed: %s", sample, exc)
                    failures[sample] = exc
    if failures:
        raise SampleProcessingError(failures)
    return results


def pooled_embedding(counts, size_factors, config: DoubletQCConfig) -> np.ndarray:
    """PCA coordinates of all cells over HVGs chosen on the pooled data."""
    logcounts = log_normalize(counts, size_factors)
    hvg_idx = select_hvgs(logcounts, fdr=config.hvg_fdr, min_genes=config.min_hvgs)
    _, coords = fit_pca(logcounts[:, hvg_idx], n_components=config.n_pcs, seed=config.seed)
    return coords


def _resolve_size_factors(adata: ad.AnnData, counts, config: DoubletQCConfig) -> np.ndarray:
    sf = obs_size_factors(adata, config.size_factor_key)
    if sf is None:
        logger.info("No '%s' column in obs; using library-size factors.", config.size_factor_key)
        sf = library_size_factors(counts)
    return check_size_factors(sf, adata.n_obs)


def run_doublet_pipeline(
    adata: ad.AnnData,
    config: Optional[DoubletQCConfig] = None,
    gene_annotations: Optional[pd.DataFrame] = None,
) -> DoubletPipelineResult:
    """Call doublets and stripped nuclei for every cell of ``adata``.

    Parameters
    ----------
    adata:
        Raw counts (cells x genes) with sample and stage columns in ``obs``.
    config:
        Pipeline parameters; defaults to :class:`DoubletQCConfig()`.
    gene_annotations:
        Table mapping ``gene_id`` to ``chromosome``. When omitted,
        ``adata.var["chromosome"]`` is used if present.
    """
    config = config or DoubletQCConfig()
    summary = sample_stages(adata.obs, config.sample_key, config.stage_key)
    merge_order = order_batches(summary, config.stage_order)

    counts = sp.csr_matrix(counts_matrix(adata, config.counts_layer), dtype=np.float64)
    size_factors = _resolve_size_factors(adata, counts, config)
    samples = adata.obs[config.sample_key].astype(str).to_numpy()

    per_sample = run_per_sample(counts, samples, size_factors, config)

    n = adata.n_obs
    scores = np.full(n, np.nan)
    defined = np.zeros(n, dtype=bool)
    sample_cluster = np.zeros(n, dtype=int)
    sub_parent = np.zeros(n, dtype=int)
    sub_id = np.zeros(n, dtype=int)
    sample_doublet = np.zeros(n, dtype=bool)
    for res in per_sample.values():
        scores[res.cell_idx] = res.scores
        defined[res.cell_idx] = res.defined
        sample_cluster[res.cell_idx] = res.sample_cluster
        parents, subs = split_keys(res.subclusters)
        sub_parent[res.cell_idx] = parents
        sub_id[res.cell_idx] = subs
        sample_doublet[res.cell_idx] = res.sample_doublet
    sample_outliers = pd.concat(
        [per_sample[s].outliers for s in sorted(per_sample)], ignore_index=True
    ) if per_sample else pd.DataFrame(columns=RESULT_COLUMNS)

    # pooled stage
    embedding = pooled_embedding(counts, size_factors, config)
    if len(merge_order) > 1 and embedding.shape[1] > 0:
        embedding = mnn_correct(embedding, samples, merge_order, k=config.mnn_k, smooth_k=config.mnn_smooth_k)
    all_sample_cluster = cluster_embedding(embedding, k=config.snn_k, resolution=config.resolution, seed=config.seed)
    cluster_doublet, pooled_outliers = refine_calls(
        all_sample_cluster,
        sample_doublet,
        fdr=config.outlier_fdr,
        min_clusters=config.min_clusters_for_testing,
        strict=config.strict_testing,
    )
    labels = assign_labels(sample_doublet, cluster_doublet)

    lib = library_sizes(counts)
    if gene_annotations is None and "chromosome" not in adata.var.columns:
        logger.warning("No gene chromosome annotation; stripped-nucleus calls are skipped.")
        mito = np.full(n, np.nan)
    else:
        chromosomes = gene_chromosomes(adata, gene_annotations)
        mito = mito_fraction(counts, chromosomes.to_numpy(), mito_chromosome=config.mito_chromosome)
    stripped, stripped_clusters = classify_stripped(
        all_sample_cluster,
        mito,
        lib,
        threshold=config.mito_threshold,
        max_library_size=config.max_library_size,
    )

    cells = pd.DataFrame({
        "sample": samples,
        "stage": adata.obs[config.stage_key].astype(str).to_numpy(),
        "size_factor": size_factors,
        "doublet_score": scores,
        "doublet_score_defined": defined,
        "sample_cluster": sample_cluster,
        "subcluster_parent": sub_parent,
        "subcluster_id": sub_id,
        "all_sample_cluster": np.asarray(all_sample_cluster, dtype=int),
        "sample_doublet": sample_doublet,
        "cluster_doublet": cluster_doublet,
        "doublet_label": labels,
        "library_size": lib,
        "mito_fraction": mito,
        "stripped": stripped,
    }, index=adata.obs_names.copy())

    rank = {sample: i for i, sample in enumerate(merge_order)}
    summary["batch_order"] = summary["sample"].map(rank).astype(int)
    summary = summary.sort_values("batch_order").reset_index(drop=True)
    by_sample = cells.groupby("sample", sort=False)
    summary["n_scored"] = summary["sample"].map(by_sample["doublet_score_defined"].sum()).astype(int)
    summary["n_sample_doublets"] = summary["sample"].map(by_sample["sample_doublet"].sum()).astype(int)
    summary["n_cluster_doublets"] = summary["sample"].map(by_sample["cluster_doublet"].sum()).astype(int)

    logger.info(
        "Labelled %d cells: %d sample doublets, %d cluster doublets, %d stripped.",
        n,
        int(sample_doublet.sum()),
        int(cluster_doublet.sum()),
        int(stripped.sum()),
    )
    return DoubletPipelineResult(
        cells=cells,
        sample_summary=summary,
        sample_outliers=sample_outliers,
        pooled_outliers=pooled_outliers,
        stripped_clusters=stripped_clusters,
        embedding=embedding,
        parameters=config.to_dict(),
    )
