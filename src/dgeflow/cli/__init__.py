"""
dgeflow CLI - paired RNA-seq differential expression and enrichment.

Commands:
    dgeflow run           - Full pipeline from counts to enrichment tables
    dgeflow differential  - DE table only
    dgeflow enrichment    - Enrichment families from an existing DE table
"""

import argparse
import logging
import sys
from typing import List, Optional


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI dispatcher for dgeflow."""
    parser = argparse.ArgumentParser(
        prog="dgeflow",
        description="Differential expression and bias-corrected enrichment for paired RNA-seq",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  run           Filter, normalize, fit, TREAT-test and run enrichment
  differential  Write the DE table only
  enrichment    Run enrichment families on an existing DE table

Examples:
  dgeflow run --config config.yaml
  dgeflow differential --config config.yaml --normalization tmm
  dgeflow enrichment --de-table results/DHT_vs_Veh.de.tsv --gene-sets msigdb.tsv -o results
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version="%(prog)s 0.1.0"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    from dgeflow.cli import run, differential, enrichment
    run.register_parser(subparsers)
    differential.register_parser(subparsers)
    enrichment.register_parser(subparsers)

    parsed_args = parser.parse_args(args)

    if parsed_args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if parsed_args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
    )
    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
