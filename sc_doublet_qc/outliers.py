"""Robust one-sided outlier testing of cluster-level statistics.

Statistics are grouped into independently corrected families, modelled as
``{family: {unit: statistic}}``. Each family gets its own null: a normal
centred on the family median, with a spread taken only from values above the
median (the lower tail is often truncated at zero, which would shrink a
symmetric MAD).
"""

from __future__ import annotations

import logging
from typing import Hashable, Mapping

import numpy as np
import pandas as pd
from scipy.stats import norm
from statsmodels.stats.multitest import multipletests

from .errors import InsufficientClustersError

logger = logging.getLogger(__name__)

MAD_CONSTANT = 1.4826

STATUS_TESTED = "tested"
STATUS_INSUFFICIENT = "insufficient_clusters"
STATUS_UNDEFINED = "undefined_statistic"

RESULT_COLUMNS = [
    "family",
    "unit",
    "statistic",
    "median",
    "spread",
    "pvalue",
    "qvalue",
    "outlier",
    "status",
]


def upper_tail_null(values) -> tuple:
    """Return ``(median, spread)`` of the one-sided robust null model.

    ``spread`` is 1.4826 times the median of ``x - median`` over values
    strictly above the median; zero when nothing lies above it.
    """
    values = np.asarray(values, dtype=float)
    center = float(np.median(values))
    above = values[values > center] - center
    if above.size == 0:
        return center, 0.0
    return center, float(MAD_CONSTANT * np.median(above))


def upper_tail_pvalues(values) -> tuple:
    """One-sided upper-tail p-values for every value against the family null.

    Returns ``(pvalues, median, spread)``. With zero spread nothing can
    exceed the median, so every p-value is 1.
    """
    values = np.asarray(values, dtype=float)
    center, spread = upper_tail_null(values)
    if spread <= 0:
        pvals = np.where(values > center, 0.0, 1.0)
    else:
        pvals = norm.sf(values, loc=center, scale=spread)
    return pvals, center, spread


def outlier_test_family(
    statistics: Mapping[Hashable, float],
    *,
    family: Hashable = None,
    fdr: float = 0.1,
    min_clusters: int = 2,
    strict: bool = False,
) -> pd.DataFrame:
    """Test one family of cluster statistics for upper-tail outliers.

    Parameters
    ----------
    statistics:
        Mapping from cluster/unit key to its summary statistic.
    family:
        Family identifier copied into the output.
    fdr:
        Units with BH q-value strictly below ``fdr`` are outliers.
    min_clusters:
        Families with fewer defined statistics cannot estimate a spread and are
        reported with status ``insufficient_clusters``.
    strict:
        Raise :class:`InsufficientClustersError` instead of reporting.
    """
    units = list(statistics.keys())
    stats = np.array([statistics[u] for u in units], dtype=float)
    defined = np.isfinite(stats)

    out = pd.DataFrame({
        "family": [family] * len(units),
        "unit": units,
        "statistic": stats,
        "median": np.nan,
        "spread": np.nan,
        "pvalue": np.nan,
        "qvalue": np.nan,
        "outlier": False,
        "status": np.where(defined, STATUS_TESTED, STATUS_UNDEFINED),
    }, columns=RESULT_COLUMNS)

    n_defined = int(defined.sum())
    if n_defined < max(min_clusters, 2):
        msg = (
            f"Family {family!r} has {n_defined} cluster(s) with a defined statistic; "
            f"at least {max(min_clusters, 2)} are needed to estimate a spread."
        )
        if strict:
            raise InsufficientClustersError(msg)
        logger.warning("%s Reporting as '%s'.", msg, STATUS_INSUFFICIENT)
        out.loc[defined, "status"] = STATUS_INSUFFICIENT
        return out

    pvals, center, spread = upper_tail_pvalues(stats[defined])
    qvals = multipletests(pvals, method="fdr_bh")[1]
    out.loc[defined, "median"] = center
    out.loc[defined, "spread"] = spread
    out.loc[defined, "pvalue"] = pvals
    out.loc[defined, "qvalue"] = qvals
    out.loc[defined, "outlier"] = qvals < fdr
    out["outlier"] = out["outlier"].astype(bool)
    return out


def outlier_test_families(
    families: Mapping[Hashable, Mapping[Hashable, float]],
    *,
    fdr: float = 0.1,
    min_clusters: int = 2,
    strict: bool = False,
) -> pd.DataFrame:
    """Test every family independently and return one flat table.

    Rows are keyed by ``(family, unit)``; multiple-testing correction never
    crosses family boundaries.
    """
    frames = [
        outlier_test_family(stats, family=family, fdr=fdr, min_clusters=min_clusters, strict=strict)
        for family, stats in families.items()
    ]
    if not frames:
        return pd.DataFrame(columns=RESULT_COLUMNS)
    table = pd.concat(frames, ignore_index=True)
    table["outlier"] = table["outlier"].astype(bool)
    n_flagged = int(table["outlier"].sum())
    logger.info("Tested %d famil%s; %d outlier cluster(s) flagged.",
                len(frames), "y" if len(frames) == 1 else "ies", n_flagged)
    return table


def flagged_units(table: pd.DataFrame, family: Hashable = None) -> set:
    """Units flagged as outliers, optionally restricted to one family."""
    sel = table["outlier"].to_numpy(dtype=bool)
    if family is not None:
        sel &= (table["family"] == family).to_numpy()
    return set(table.loc[sel, "unit"].tolist())
