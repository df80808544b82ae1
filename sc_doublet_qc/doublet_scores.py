"""Simulation-based doublet scoring for a single sample.

Doublets are simulated by summing the raw counts of random cell pairs and
dividing by the pair's summed size factors. Real cells and simulated doublets
share one PCA space (fitted on real cells only), and each real cell is scored
by the ratio of simulated-doublet density to real-cell density around it.
Both densities are taken over one kernel ball per cell, sized so that it holds
a fixed share of the simulated doublets and the same share of the real cells.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import numpy as np
from scipy import sparse
from sklearn.metrics import pairwise_distances_chunked
from sklearn.neighbors import NearestNeighbors

from .clustering import fit_pca
from .features import select_hvgs
from .normalization import check_size_factors, log_normalize

logger = logging.getLogger(__name__)

SIMULATION_CHUNK = 2000


@dataclass
class DoubletScoreResult:
    """Scores for the real cells of one sample."""

    scores: np.ndarray
    defined: np.ndarray
    hvg_idx: np.ndarray
    n_simulated: int
    n_neighbors: int
    parameters: Mapping[str, Any] = field(default_factory=dict)


def tricube(distances: np.ndarray, bandwidth: np.ndarray) -> np.ndarray:
    """Tricube kernel weights ``(1 - (d/h)^3)^3``; zero at or beyond ``h``."""
    ratio = distances / bandwidth[:, None]
    weights = (1.0 - np.clip(ratio, 0.0, 1.0) ** 3) ** 3
    return weights


def neighborhood_size(n_simulated: int, n_available: int, fraction: float = 0.1,
                      n_neighbors: Optional[int] = None) -> int:
    """Simulated-doublet neighbourhood size, capped at the points available."""
    k = int(n_neighbors) if n_neighbors is not None else int(round(n_simulated * fraction))
    return int(min(max(k, 1), n_available))


def real_neighborhood_size(k_sim: int, n_real: int, n_sim: int) -> int:
    """Real-cell neighbourhood holding the same share of real cells as ``k_sim`` of the simulations.

    At least two other cells, at most ``n_real - 1``.
    """
    k = int(round(k_sim * n_real / n_sim))
    return int(min(max(k, 2), n_real - 1))


def _kernel_sums(queries: np.ndarray, points: np.ndarray, bandwidth: np.ndarray,
                 exclude_self: bool = False) -> np.ndarray:
    sums = np.zeros(queries.shape[0])
    start = 0
    for chunk in pairwise_distances_chunked(queries, points):
        stop = start + chunk.shape[0]
        weights = tricube(chunk, bandwidth[start:stop])
        if exclude_self:
            rows = np.arange(chunk.shape[0])
            weights[rows, start + rows] = 0.0
        sums[start:stop] = weights.sum(axis=1)
        start = stop
    return sums


def density_ratio_scores(
    real_coords: np.ndarray,
    sim_coords: np.ndarray,
    *,
    n_neighbors: int,
) -> np.ndarray:
    """Ratio of simulated-doublet to real-cell kernel density at each real cell.

    The bandwidth for a cell is the radius of the smallest ball around it that
    holds its ``n_neighbors`` nearest simulated doublets and the same share of
    the other real cells (see :func:`real_neighborhood_size`). Tricube weights
    are summed over every point inside the ball; a cell never counts towards
    its own real density. Densities are normalised by the number of points of
    each kind. Zero bandwidth or zero real density gives NaN.
    """
    real_coords = np.asarray(real_coords, dtype=float)
    sim_coords = np.asarray(sim_coords, dtype=float)
    n_real = real_coords.shape[0]
    n_sim = sim_coords.shape[0]
    scores = np.full(n_real, np.nan)
    if n_real < 2 or n_sim < 1:
        return scores

    k_sim = neighborhood_size(n_sim, n_sim, n_neighbors=n_neighbors)
    k_real = real_neighborhood_size(k_sim, n_real, n_sim)
    sim_dist, _ = NearestNeighbors(n_neighbors=k_sim).fit(sim_coords).kneighbors(real_coords)
    # no query points: each cell's own row is left out
    real_dist, _ = NearestNeighbors(n_neighbors=k_real).fit(real_coords).kneighbors()
    bandwidth = np.maximum(sim_dist[:, -1], real_dist[:, -1])

    ok = bandwidth > 0
    if not np.any(ok):
        return scores
    safe = np.where(ok, bandwidth, 1.0)
    real_density = _kernel_sums(real_coords, real_coords, safe, exclude_self=True) / n_real
    sim_density = _kernel_sums(real_coords, sim_coords, safe) / n_sim
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = np.where(real_density > 0, sim_density / real_density, np.nan)
    scores[ok] = ratio[ok]
    return scores


def simulate_doublets(
    counts,
    size_factors: np.ndarray,
    *,
    n_simulated: int,
    rng: np.random.Generator,
    pca,
    chunk_size: int = SIMULATION_CHUNK,
) -> np.ndarray:
    """Simulate doublets and project them with existing PCA loadings.

    ``counts`` must already be restricted to the genes ``pca`` was fitted on.
    Pairs are drawn uniformly with replacement. Returns the projected
    coordinates, shape ``(n_simulated, n_components)``.
    """
    counts = sparse.csr_matrix(counts, dtype=np.float64)
    n_cells = counts.shape[0]
    coords = []
    for start in range(0, n_simulated, chunk_size):
        size = min(chunk_size, n_simulated - start)
        first = rng.integers(0, n_cells, size=size)
        second = rng.integers(0, n_cells, size=size)
        summed = (counts[first] + counts[second]).toarray()
        sf = size_factors[first] + size_factors[second]
        logged = np.log2(summed / sf[:, None] + 1.0)
        coords.append(pca.transform(logged))
    return np.vstack(coords)


def score_doublets(
    counts,
    size_factors,
    *,
    logcounts=None,
    n_simulated: int = 10000,
    neighbor_fraction: float = 0.1,
    n_neighbors: Optional[int] = None,
    n_pcs: int = 50,
    hvg_fdr: float = 0.05,
    min_hvgs: int = 50,
    min_cells: int = 10,
    seed: int = 123456,
) -> DoubletScoreResult:
    """Compute a doublet score for every cell of one sample.

    Parameters:
      counts: Raw counts (cells x genes) of a single sample.
      size_factors: Positive size factor per cell.
      logcounts: Optional precomputed ``log2(counts / sf + 1)``.
      n_simulated: Number of simulated doublets.
      neighbor_fraction: Density neighbourhood as a fraction of ``n_simulated``.
      n_neighbors: Explicit neighbourhood size (overrides the fraction).
      n_pcs: Maximum PCA components.
      hvg_fdr: FDR cutoff for HVG selection.
      min_hvgs: Fallback HVG count.
      min_cells: Samples with fewer cells are not scored (NaN).
      seed: Seed for the pair sampler and PCA.

    Returns:
      DoubletScoreResult whose ``defined`` mask marks finite scores.
    """
    n_cells = counts.shape[0]
    size_factors = check_size_factors(size_factors, n_cells)
    params = {
        "n_simulated": n_simulated,
        "neighbor_fraction": neighbor_fraction,
        "n_pcs": n_pcs,
        "hvg_fdr": hvg_fdr,
        "seed": seed,
    }

    def undefined(reason: str, hvg_idx=np.zeros(0, dtype=int)) -> DoubletScoreResult:
        logger.warning("Doublet scores undefined for %d cells: %s", n_cells, reason)
        return DoubletScoreResult(
            scores=np.full(n_cells, np.nan),
            defined=np.zeros(n_cells, dtype=bool),
            hvg_idx=hvg_idx,
            n_simulated=0,
            n_neighbors=0,
            parameters={**params, "undefined_reason": reason},
        )

    if n_cells < max(min_cells, 2):
        return undefined(f"sample has {n_cells} cells (< {max(min_cells, 2)})")

    if logcounts is None:
        logcounts = log_normalize(counts, size_factors)
    hvg_idx = select_hvgs(logcounts, fdr=hvg_fdr, min_genes=min_hvgs)
    if hvg_idx.size == 0:
        return undefined("no variable genes")

    hvg_log = logcounts[:, hvg_idx]
    hvg_log = hvg_log.toarray() if sparse.issparse(hvg_log) else np.asarray(hvg_log)
    pca, real_coords = fit_pca(hvg_log, n_components=n_pcs, seed=seed)
    if pca is None:
        return undefined("no variance among selected genes", hvg_idx)

    hvg_counts = counts[:, hvg_idx] if sparse.issparse(counts) else np.asarray(counts)[:, hvg_idx]
    rng = np.random.default_rng(seed)
    sim_coords = simulate_doublets(
        hvg_counts,
        size_factors,
        n_simulated=n_simulated,
        rng=rng,
        pca=pca,
    )
    k = neighborhood_size(n_simulated, n_simulated, neighbor_fraction, n_neighbors)
    params["n_real_neighbors"] = real_neighborhood_size(k, n_cells, n_simulated)
    scores = density_ratio_scores(real_coords, sim_coords, n_neighbors=k)
    defined = np.isfinite(scores)
    if not defined.all():
        logger.warning("%d of %d cells have an undefined doublet score.", int((~defined).sum()), n_cells)
    logger.debug("Scored %d cells against %d simulated doublets (k=%d, %d HVGs, %d PCs).",
                 n_cells, n_simulated, k, hvg_idx.size, real_coords.shape[1])
    return DoubletScoreResult(
        scores=scores,
        defined=defined,
        hvg_idx=hvg_idx,
        n_simulated=n_simulated,
        n_neighbors=k,
        parameters=params,
    )
