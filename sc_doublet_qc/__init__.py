"""Doublet and stripped-nucleus detection for multi-sample scRNA-seq."""

from ._version import __version__
from .config import DEFAULT_STAGE_ORDER, DoubletQCConfig, load_config
from .errors import (
    BatchCorrectionError,
    BatchOrderError,
    DoubletQCError,
    InsufficientClustersError,
    SampleProcessingError,
)
from .clustering import SubclusterKey, cluster_cells, cluster_embedding, subcluster_cells
from .doublet_scores import DoubletScoreResult, score_doublets
from .outliers import outlier_test_families, outlier_test_family
from .batch_correction import mnn_correct, order_batches
from .refine import assign_labels, refine_calls
from .stripped import classify_stripped, mito_fraction
from .pipeline import DoubletPipelineResult, run_doublet_pipeline

__all__ = [
    "__version__",
    "DEFAULT_STAGE_ORDER",
    "DoubletQCConfig",
    "load_config",
    "DoubletQCError",
    "SampleProcessingError",
    "InsufficientClustersError",
    "BatchOrderError",
    "BatchCorrectionError",
    "SubclusterKey",
    "cluster_cells",
    "subcluster_cells",
    "cluster_embedding",
    "DoubletScoreResult",
    "score_doublets",
    "outlier_test_family",
    "outlier_test_families",
    "order_batches",
    "mnn_correct",
    "refine_calls",
    "assign_labels",
    "mito_fraction",
    "classify_stripped",
    "DoubletPipelineResult",
    "run_doublet_pipeline",
]
