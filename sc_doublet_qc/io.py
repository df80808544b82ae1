"""Loading inputs and writing the per-cell output table."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

import anndata as ad
import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

ANNOTATION_RENAME_MAP = {
    "Gene stable ID": "gene_id",
    "geneID": "gene_id",
    "GeneID": "gene_id",
    "ensg": "gene_id",
    "ensembl_id": "gene_id",
    "Chromosome/scaffold name": "chromosome",
    "chrom": "chromosome",
    "chr": "chromosome",
    "Gene name": "gene_name",
    "geneSymbol": "gene_name",
    "symbol": "gene_name",
}


def read_h5ad(path: Union[str, Path]) -> ad.AnnData:
    """Read an AnnData file holding raw counts."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")
    adata = ad.read_h5ad(path)
    logger.info("Loaded %d cells x %d genes from %s", adata.n_obs, adata.n_vars, path)
    return adata


def standardize_gene_annotations(df: pd.DataFrame) -> pd.DataFrame:
    """Rename common annotation headers and index the table by ``gene_id``."""
    annot = df.copy()
    for orig, new in ANNOTATION_RENAME_MAP.items():
        if orig in annot.columns and new not in annot.columns:
            annot = annot.rename(columns={orig: new})

    if "gene_id" not in annot.columns:
        if annot.index.name == "gene_id":
            annot = annot.reset_index(drop=False)
        else:
            raise KeyError(
                "Gene annotations must include a 'gene_id' column or be indexed by gene_id."
            )
    if "chromosome" not in annot.columns:
        raise KeyError("Gene annotations must include a 'chromosome' column.")

    annot["gene_id"] = annot["gene_id"].astype(str)
    annot = annot.drop_duplicates(subset="gene_id", keep="first")
    annot = annot.set_index("gene_id", drop=False)
    annot["chromosome"] = annot["chromosome"].where(annot["chromosome"].isna(), annot["chromosome"].astype(str))
    return annot


def load_gene_annotations(path: Union[str, Path], sep: Optional[str] = None) -> pd.DataFrame:
    """Read a gene annotation table (CSV or TSV) and standardize its columns."""
    path = Path(path)
    if sep is None:
        sep = "," if path.suffix.lower() == ".csv" else "\t"
    df = pd.read_csv(path, sep=sep)
    return standardize_gene_annotations(df)


def gene_chromosomes(adata: ad.AnnData, gene_annotations: Optional[pd.DataFrame] = None) -> pd.Series:
    """Chromosome per gene of ``adata`` (NaN where unannotated).

    Uses ``gene_annotations`` when given, otherwise ``adata.var["chromosome"]``.
    """
    if gene_annotations is not None:
        annot = standardize_gene_annotations(gene_annotations)
        chrom = annot["chromosome"].reindex(adata.var_names.astype(str))
    elif "chromosome" in adata.var.columns:
        chrom = adata.var["chromosome"].astype(object)
    else:
        raise KeyError(
            "No chromosome annotation: pass gene_annotations or set adata.var['chromosome']."
        )
    chrom = pd.Series(chrom.to_numpy(dtype=object), index=adata.var_names, name="chromosome")
    n_missing = int(chrom.isna().sum())
    if n_missing:
        logger.info("%d of %d genes have no chromosome annotation.", n_missing, chrom.shape[0])
    return chrom


def write_cell_table(table: pd.DataFrame, path: Union[str, Path]) -> Path:
    """Write the per-cell table; ``.tsv``/``.txt`` are tab separated, anything else CSV."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    sep = "\t" if path.suffix.lower() in (".tsv", ".txt") else ","
    out = table.copy()
    for col in out.columns:
        if isinstance(out[col].dtype, pd.CategoricalDtype):
            out[col] = out[col].astype(str)
    out.to_csv(path, sep=sep, index=True, index_label="cell", na_rep="NA")
    logger.info("Wrote %d cells to %s", out.shape[0], path)
    return path


def counts_matrix(adata: ad.AnnData, layer: Optional[str] = None):
    """Raw counts from ``adata.X`` or a named layer."""
    if layer is None:
        return adata.X
    if layer not in adata.layers:
        raise KeyError(f"Layer '{layer}' not found in adata.layers.")
    return adata.layers[layer]


def obs_size_factors(adata: ad.AnnData, key: str) -> Optional[np.ndarray]:
    if key in adata.obs.columns:
        return adata.obs[key].to_numpy(dtype=float)
    return None
