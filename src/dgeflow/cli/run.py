"""
dgeflow run command - full pipeline from counts to enrichment tables.

Usage:
    dgeflow run --config config.yaml
    dgeflow run --config config.yaml --normalization tmm --output results/tmm
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np

from dgeflow.cli._validators import (
    _fold_change,
    _n_jobs,
    _non_negative_float,
    _positive_int,
    _probability,
)
from dgeflow.exceptions import DgeflowError

logger = logging.getLogger(__name__)


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    """Input, design and model flags shared by run and differential."""
    parser.add_argument("--config", "-c", type=Path, help="YAML or JSON configuration file")

    io_group = parser.add_argument_group("inputs and outputs")
    io_group.add_argument("--counts", type=Path, help="Merged featureCounts table (TSV)")
    io_group.add_argument("--sample-sheet", type=Path, help="Sample sheet (TSV)")
    io_group.add_argument("--annotation", type=Path, help="Gene annotation table (TSV)")
    io_group.add_argument("--output", "-o", type=Path, help="Output directory")

    design_group = parser.add_argument_group("design")
    design_group.add_argument("--cell-line", help="Restrict the analysis to one cell line")
    design_group.add_argument("--treatment", help="Treated level (default: DHT)")
    design_group.add_argument("--reference", help="Reference level (default: Veh)")

    model_group = parser.add_argument_group("filter and model")
    model_group.add_argument("--min-cpm", type=_non_negative_float,
                             help="CPM threshold of the expression filter (default: 1.5)")
    model_group.add_argument("--min-samples", type=_positive_int,
                             help="Samples that must pass --min-cpm (default: half)")
    model_group.add_argument("--normalization", choices=["cqn", "tmm", "none"],
                             help="Normalization method (default: cqn)")
    model_group.add_argument("--fold-change", type=_fold_change,
                             help="Linear fold-change threshold for TREAT (default: 1.2)")
    model_group.add_argument("--alpha", type=_probability,
                             help="FDR threshold for DE calls (default: 0.05)")
    model_group.add_argument("--no-robust", action="store_true",
                             help="Disable robust empirical Bayes")
    model_group.add_argument("--n-jobs", type=_n_jobs,
                             help="Parallel workers for per-gene fits (default: 1)")


def common_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Dotted config keys for every flag the user set."""
    return {
        'paths.counts': args.counts,
        'paths.sample_sheet': args.sample_sheet,
        'paths.annotation': args.annotation,
        'paths.output_dir': args.output,
        'design.cell_line': args.cell_line,
        'design.treatment_level': args.treatment,
        'design.reference_level': args.reference,
        'filter.min_cpm': args.min_cpm,
        'filter.min_samples': args.min_samples,
        'normalization.method': args.normalization,
        'model.lfc': float(np.log2(args.fold_change)) if args.fold_change else None,
        'model.alpha': args.alpha,
        'model.robust': False if args.no_robust else None,
        'model.n_jobs': args.n_jobs,
        'enrichment.n_jobs': args.n_jobs,
    }


def build_config(config_path: Path | None, overrides: dict[str, Any]):
    """Load the config file (if any) and apply command-line overrides."""
    from dgeflow.cli.config import PipelineConfig, apply_overrides, config_from_dict, load_config

    config = config_from_dict(load_config(config_path)) if config_path else PipelineConfig()
    return apply_overrides(config, overrides)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser(
        "run",
        help="Run the full pipeline (filter, normalize, fit, test, enrichment)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    add_common_arguments(parser)

    enr_group = parser.add_argument_group("enrichment")
    enr_group.add_argument("--gene-sets", type=Path, help="Gene-set database export (TSV or GMT)")
    enr_group.add_argument("--bias-covariate", choices=["length", "gc_content"],
                           help="Covariate modelled by the PWF (default: length)")
    enr_group.add_argument("--no-enrichment", action="store_true",
                           help="Skip gene-set enrichment")
    parser.set_defaults(func=run_run)


def run_run(args: argparse.Namespace) -> int:
    """Execute the run command."""
    from dgeflow.pipeline import run_pipeline

    overrides = common_overrides(args)
    overrides.update({
        'paths.gene_sets': args.gene_sets,
        'enrichment.bias_covariate': args.bias_covariate,
        'enrichment.enabled': False if args.no_enrichment else None,
    })

    try:
        config = build_config(args.config, overrides)
    except (FileNotFoundError, DgeflowError) as e:
        print(f"ERROR: Config error: {e}")
        return 1

    start_time = datetime.now()
    print(f"\n{'=' * 70}")
    print("  dgeflow: differential expression and enrichment")
    print(f"{'=' * 70}")
    print(f"Started: {start_time.strftime('%Y-%m-%d %H:%M:%S')}\n")

    try:
        result = run_pipeline(config)
    except (FileNotFoundError, DgeflowError) as e:
        print(f"ERROR: {e}")
        return 1

    summary = result.differential.summary()
    print(f"\n{result.differential.contrast}: {summary['de']} DE genes "
          f"({summary['up']} up, {summary['down']} down) of {summary['tested']} tested")
    for (universe, subset), enr in result.enrichment.items():
        print(f"  {universe}.{subset}: {len(enr.significant_sets())} significant of "
              f"{len(enr.table)} sets (FDR < {enr.alpha})")
    for name, path in result.outputs.items():
        print(f"  wrote {name}: {path}")
    print(f"\nFinished in {(datetime.now() - start_time).total_seconds():.1f}s")
    return 0
