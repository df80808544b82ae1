"""Configuration for the doublet / stripped-nucleus pipeline.

Every empirical choice (simulation count, PCA dimensionality, SNN neighbour
count, FDR cutoffs, thresholds) lives on :class:`DoubletQCConfig` so runs can
be reproduced from a JSON file.
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

# Oldest stage first; the mixed-stage group sits between E7.25 and E7.0.
DEFAULT_STAGE_ORDER: Tuple[str, ...] = (
    "E8.5",
    "E8.25",
    "E8.0",
    "E7.75",
    "E7.5",
    "E7.25",
    "mixed_gastrulation",
    "E7.0",
    "E6.75",
    "E6.5",
)


@dataclass(frozen=True)
class DoubletQCConfig:
    """Parameters for every stage of the pipeline.

    Parameters
    ----------
    n_simulated:
        Number of simulated doublets per sample.
    score_neighbor_fraction:
        Density neighbourhood size as a fraction of ``n_simulated``.
    score_n_neighbors:
        Explicit neighbourhood size; overrides ``score_neighbor_fraction``.
    min_cells_for_scoring:
        Samples with fewer cells receive undefined (NaN) scores.
    n_pcs:
        Maximum number of principal components for scoring and clustering.
    hvg_fdr:
        FDR cutoff for the mean-variance trend test.
    min_hvgs:
        Fallback number of genes when too few pass ``hvg_fdr``.
    snn_k:
        Neighbours used to build the shared-nearest-neighbour graph.
    resolution:
        Resolution passed to modularity-based community detection.
    outlier_fdr:
        q-value cutoff for flagging outlier clusters.
    min_clusters_for_testing:
        Families with fewer defined clusters are reported as untestable.
    strict_testing:
        Raise instead of reporting untestable families.
    mnn_k:
        Neighbours used to find mutual nearest neighbours between batches.
    mnn_smooth_k:
        Paired cells used to smooth correction vectors onto a whole batch.
    stage_order:
        Stages from oldest to youngest; defines the batch merge order.
    mito_threshold:
        Clusters with a median mitochondrial fraction strictly below this are stripped.
    max_library_size:
        Optional extra condition: stripped clusters must also have a median
        library size below this value.
    mito_chromosome:
        Chromosome name selecting mitochondrial genes.
    seed:
        Seed for simulation, PCA and clustering.
    n_jobs:
        Worker count for per-sample processing (0 = all CPUs).
    backend:
        ``"process"``, ``"thread"`` or ``"sequential"``.
    """

    n_simulated: int = 10000
    score_neighbor_fraction: float = 0.1
    score_n_neighbors: Optional[int] = None
    min_cells_for_scoring: int = 10
    n_pcs: int = 50
    hvg_fdr: float = 0.05
    min_hvgs: int = 50
    snn_k: int = 10
    resolution: float = 1.0
    outlier_fdr: float = 0.1
    min_clusters_for_testing: int = 2
    strict_testing: bool = False
    mnn_k: int = 20
    mnn_smooth_k: int = 20
    stage_order: Tuple[str, ...] = DEFAULT_STAGE_ORDER
    mito_threshold: float = 0.005
    max_library_size: Optional[float] = None
    mito_chromosome: str = "MT"
    seed: int = 123456
    n_jobs: int = 0
    backend: str = "process"
    sample_key: str = "sample"
    stage_key: str = "stage"
    size_factor_key: str = "size_factor"
    counts_layer: Optional[str] = None

    def __post_init__(self) -> None:
        if self.n_simulated < 1:
            raise ValueError("n_simulated must be at least 1.")
        if not 0 < self.score_neighbor_fraction <= 1:
            raise ValueError("score_neighbor_fraction must be in (0, 1].")
        if self.n_pcs < 1:
            raise ValueError("n_pcs must be at least 1.")
        if self.snn_k < 1:
            raise ValueError("snn_k must be at least 1.")
        if self.backend not in ("process", "thread", "sequential"):
            raise ValueError("backend must be one of: process, thread, sequential.")
        # JSON gives lists; keep the frozen config hashable
        object.__setattr__(self, "stage_order", tuple(self.stage_order))

    def replace(self, **overrides: Any) -> "DoubletQCConfig":
        """Return a copy with selected fields overridden."""
        return dataclasses.replace(self, **overrides)

    def to_dict(self) -> Dict[str, Any]:
        out = dataclasses.asdict(self)
        out["stage_order"] = list(self.stage_order)
        return out


def load_config(path: Union[str, Path]) -> DoubletQCConfig:
    """Load a :class:`DoubletQCConfig` from a JSON file."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(f"Unsupported config format for '{config_path}'. Use a .json config file.")

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': expected JSON object, got {type(data).__name__}."
        )
    known = {f.name for f in dataclasses.fields(DoubletQCConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown config keys in '{config_path}': {unknown}")
    return DoubletQCConfig(**data)
