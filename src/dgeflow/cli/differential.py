"""
dgeflow differential command - DE table without enrichment.

Usage:
    dgeflow differential --counts counts.out --sample-sheet samples.tsv \\
        --annotation annotation.tsv --output results/
"""

from __future__ import annotations

import argparse

from dgeflow.cli.run import add_common_arguments, build_config, common_overrides
from dgeflow.exceptions import DgeflowError


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser(
        "differential",
        help="Filter, normalize, fit and TREAT-test genes; write the DE table",
    )
    add_common_arguments(parser)
    parser.set_defaults(func=run_differential)


def run_differential(args: argparse.Namespace) -> int:
    """Execute the differential command."""
    from dgeflow.pipeline import run_pipeline

    overrides = common_overrides(args)
    overrides['enrichment.enabled'] = False
    try:
        config = build_config(args.config, overrides)
        result = run_pipeline(config)
    except (FileNotFoundError, DgeflowError) as e:
        print(f"ERROR: {e}")
        return 1

    summary = result.differential.summary()
    print(f"{result.differential.contrast}: {summary['de']} DE genes "
          f"({summary['up']} up, {summary['down']} down), "
          f"{summary['unavailable']} unavailable")
    print(f"DE table: {result.outputs['de']}")
    return 0
