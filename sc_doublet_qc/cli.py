"""Command-line entry point: ``sc-doublet-qc``."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional, Sequence

from .config import DoubletQCConfig, load_config
from .io import gene_chromosomes, load_gene_annotations, read_h5ad, write_cell_table
from .pipeline import run_doublet_pipeline
from .reporting import coexpression_by_label, library_size_check, save_report_plots, sex_gene_coexpression

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="sc-doublet-qc",
        description="Call doublets and stripped nuclei in multi-sample scRNA-seq counts.",
    )
    p.add_argument("h5ad", type=Path, help="AnnData file with raw counts and sample/stage columns in obs.")
    p.add_argument("out", type=Path, help="Output cell table (.csv or .tsv).")
    p.add_argument("--config", type=Path, default=None, help="JSON config with parameter overrides.")
    p.add_argument("--annotations", type=Path, default=None, help="Gene annotation table with gene_id and chromosome.")
    p.add_argument("--plot-dir", type=Path, default=None, help="Write diagnostic plots to this directory.")
    p.add_argument("--save-result", type=Path, default=None, help="Pickle the full result (dill) to this path.")
    p.add_argument("--n-jobs", type=int, default=None, help="Override the worker count (0 = all CPUs).")
    p.add_argument("--backend", choices=("process", "thread", "sequential"), default=None)
    p.add_argument("--seed", type=int, default=None)
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config(args.config) if args.config is not None else DoubletQCConfig()
    overrides = {
        key: value
        for key, value in (("n_jobs", args.n_jobs), ("backend", args.backend), ("seed", args.seed))
        if value is not None
    }
    if overrides:
        config = config.replace(**overrides)

    adata = read_h5ad(args.h5ad)
    annotations = load_gene_annotations(args.annotations) if args.annotations is not None else None
    result = run_doublet_pipeline(adata, config, gene_annotations=annotations)

    write_cell_table(result.cells, args.out)
    if args.plot_dir is not None:
        args.plot_dir.mkdir(parents=True, exist_ok=True)
        for path in save_report_plots(result, args.plot_dir):
            logger.info("Wrote plot %s", path)
        labels = result.cells["doublet_label"].astype(str).to_numpy()
        lib_table = library_size_check(adata, labels, layer=config.counts_layer)
        lib_table.to_csv(args.plot_dir / "library_size_by_label.tsv", sep="\t")
        if annotations is not None or "chromosome" in adata.var.columns:
            coexpr = sex_gene_coexpression(
                adata, gene_chromosomes(adata, annotations), layer=config.counts_layer
            )
            coexpression_by_label(coexpr, labels).to_csv(args.plot_dir / "sex_gene_coexpression_by_label.tsv", sep="\t")
    if args.save_result is not None:
        result.save(args.save_result)
        logger.info("Saved result to %s", args.save_result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
