"""Exception types raised by the doublet / stripped-nucleus pipeline."""

from __future__ import annotations

from typing import Mapping


class DoubletQCError(Exception):
    """Base class for pipeline errors."""


class SampleProcessingError(DoubletQCError):
    """One or more samples failed during the per-sample stage.

    The pooled stage assumes every sample was processed, so failures are
    collected and raised together rather than dropped.
    """

    def __init__(self, failures: Mapping[str, BaseException]):
        self.failures = dict(failures)
        details = "; ".join(
            f"{sample}: {type(exc).__name__}: {exc}" for sample, exc in sorted(self.failures.items())
        )
        super().__init__(f"{len(self.failures)} sample(s) failed during per-sample processing ({details})")


class InsufficientClustersError(DoubletQCError):
    """Raised by strict outlier testing when a family cannot be tested."""


class BatchOrderError(DoubletQCError):
    """Samples cannot be placed into a batch-correction merge order."""


class BatchCorrectionError(DoubletQCError):
    """MNN correction could not align a batch to the running reference."""
