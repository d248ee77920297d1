"""
dgeflow enrichment command - enrichment families from an existing DE table.

Usage:
    dgeflow enrichment --de-table results/DHT_vs_Veh.de.tsv \\
        --gene-sets msigdb.tsv --output results/
"""

from __future__ import annotations

import argparse
from pathlib import Path

from dgeflow.cli._validators import _n_jobs, _positive_int
from dgeflow.cli.run import build_config
from dgeflow.exceptions import DgeflowError


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser(
        "enrichment",
        help="Run bias-corrected gene-set enrichment on a DE table",
    )
    parser.add_argument("--config", "-c", type=Path, help="YAML or JSON configuration file")
    parser.add_argument("--de-table", type=Path, required=True,
                        help="DE table written by 'dgeflow run' or 'dgeflow differential'")
    parser.add_argument("--gene-sets", type=Path, help="Gene-set database export (TSV or GMT)")
    parser.add_argument("--output", "-o", type=Path, help="Output directory")
    parser.add_argument("--bias-covariate", choices=["length", "gc_content"],
                        help="Covariate modelled by the PWF (default: length)")
    parser.add_argument("--method", choices=["wallenius", "hypergeometric"],
                        help="Set test (default: wallenius)")
    parser.add_argument("--pwf-bin-size", type=_positive_int,
                        help="Genes per PWF bin (default: 500)")
    parser.add_argument("--n-jobs", type=_n_jobs, help="Parallel workers for set tests")
    parser.set_defaults(func=run_enrichment_command)


def run_enrichment_command(args: argparse.Namespace) -> int:
    """Execute the enrichment command."""
    from dgeflow.pipeline import run_enrichment_stage, write_enrichment_results

    overrides = {
        'paths.gene_sets': args.gene_sets,
        'paths.output_dir': args.output,
        'enrichment.bias_covariate': args.bias_covariate,
        'enrichment.method': args.method,
        'enrichment.pwf_bin_size': args.pwf_bin_size,
        'enrichment.n_jobs': args.n_jobs,
    }
    if not args.de_table.exists():
        print(f"ERROR: DE table not found: {args.de_table}")
        return 1

    try:
        config = build_config(args.config, overrides)
        results = run_enrichment_stage(args.de_table, config)
    except (FileNotFoundError, DgeflowError) as e:
        print(f"ERROR: {e}")
        return 1

    prefix = args.de_table.name.removesuffix('.tsv').removesuffix('.de')
    outputs = write_enrichment_results(results, config.paths.output_dir, prefix)
    for (universe, subset), result in results.items():
        print(f"{universe}.{subset}: {len(result.significant_sets())} significant of "
              f"{len(result.table)} sets (FDR < {result.alpha})")
    for path in outputs.values():
        print(f"  wrote {path}")
    return 0
