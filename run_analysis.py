"""
Run the edgeR-like differential expression pipeline on CSV inputs.

Usage Examples:
    python run_analysis.py \\
        --counts data/counts.csv \\
        --metadata data/coldata.csv \\
        --factor group \\
        --contrast "group[T.B]" \\
        --out results/de_results.tsv

    # Several factors, reference level, exclusion list and config file
    python run_analysis.py \\
        --counts data/counts.csv --metadata data/coldata.csv \\
        --factor dex --factor cell --reference dex=untrt \\
        --contrast "dex[T.trt]" --exclude data/mito_genes.txt \\
        --config config.yaml --n-jobs 4 --out results/dex.tsv
"""

import argparse
import logging
import sys
import time
from pathlib import Path

import pandas as pd

from edger_py import (
    AnalysisConfig,
    CountMatrix,
    align_metadata,
    model_matrix,
    run_pipeline,
    summary,
    write_results,
)
from edger_py.errors import ConfigurationError, EdgePyError

logger = logging.getLogger("run_analysis")


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Differential expression from RNA-seq counts")
    p.add_argument("--counts", required=True, type=Path,
                   help="CSV of counts, genes in rows, samples in columns")
    p.add_argument("--metadata", required=True, type=Path,
                   help="CSV of sample metadata indexed by sample id")
    p.add_argument("--factor", action="append", required=True,
                   help="Metadata column to include in the design (repeatable)")
    p.add_argument("--reference", action="append", default=[],
                   help="Reference level as factor=level (repeatable)")
    p.add_argument("--contrast", required=True,
                   help="Coefficient name, index or expression such as 'B - A'")
    p.add_argument("--exclude", type=Path,
                   help="Text file with one gene id per line to remove")
    p.add_argument("--config", type=Path, help="YAML analysis config")
    p.add_argument("--annotation", type=Path,
                   help="CSV indexed by gene id with symbol/description columns")
    p.add_argument("--out", type=Path, default=Path("results/de_results.tsv"))
    p.add_argument("--n-jobs", type=int, default=None)
    p.add_argument("-v", "--verbose", action="store_true")
    p.add_argument("-q", "--quiet", action="store_true")
    return p.parse_args(argv)


def load_data(counts_path, metadata_path):
    logger.info("Loading %s...", counts_path)
    counts_df = pd.read_csv(counts_path, index_col=0)
    logger.info("Loading %s...", metadata_path)
    coldata_df = pd.read_csv(metadata_path, index_col=0)
    return counts_df, coldata_df


def read_exclusions(path):
    if path is None:
        return set()
    with open(path, "r") as f:
        return {line.strip() for line in f if line.strip() and not line.startswith("#")}


def parse_references(items):
    references = {}
    for item in items:
        factor, sep, level = item.partition("=")
        if not sep or not factor or not level:
            raise ConfigurationError(f"--reference expects factor=level, got {item!r}")
        references[factor] = level
    return references


def parse_contrast(text):
    try:
        return int(text)
    except ValueError:
        return text


def main(argv=None):
    args = parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.WARNING if args.quiet else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                        datefmt="%Y-%m-%d %H:%M:%S")

    try:
        config = AnalysisConfig.from_yaml(args.config) if args.config else AnalysisConfig()
        if args.n_jobs is not None:
            config = config.with_n_jobs(args.n_jobs)

        counts_df, coldata_df = load_data(args.counts, args.metadata)
        counts = CountMatrix.from_dataframe(counts_df)
        metadata = align_metadata(coldata_df, counts.sample_ids, required=args.factor)
        references = parse_references(args.reference)
        design = model_matrix(metadata, args.factor, reference_levels=references)

        start_time = time.time()
        res = run_pipeline(counts, design, parse_contrast(args.contrast),
                           exclude=read_exclusions(args.exclude), config=config)
        logger.info("Done in %.1f seconds.", time.time() - start_time)

        annotation = pd.read_csv(args.annotation, index_col=0) if args.annotation else None
        warnings_path = args.out.with_name(args.out.stem + "_warnings.tsv")
        write_results(res.ranked, args.out, annotation=annotation, warnings_path=warnings_path)
        summary(res.ranked, fdr=config.testing.fdr, lfc=config.testing.lfc_threshold)
    except (EdgePyError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
