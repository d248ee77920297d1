"""Shared argparse type validators for CLI parameter bounds checking.

Used as the ``type=`` argument in ``add_argument()`` so that values such
as ``--alpha 2.0`` or ``--n-jobs 0`` fail with a clear message.
"""

from __future__ import annotations

import argparse


def _positive_int(value: str) -> int:
    """argparse type for positive integers (> 0)."""
    ivalue = int(value)
    if ivalue <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer")
    return ivalue


def _n_jobs(value: str) -> int:
    """argparse type for joblib worker counts (positive, or -1 for all cores)."""
    ivalue = int(value)
    if ivalue == 0 or ivalue < -1:
        raise argparse.ArgumentTypeError(f"{value} is not a valid worker count (use >= 1 or -1)")
    return ivalue


def _probability(value: str) -> float:
    """argparse type for values in the open interval (0, 1)."""
    fvalue = float(value)
    if not (0 < fvalue < 1):
        raise argparse.ArgumentTypeError(
            f"{value} is not a valid probability (must be in (0, 1))"
        )
    return fvalue


def _non_negative_float(value: str) -> float:
    """argparse type for floats >= 0."""
    fvalue = float(value)
    if fvalue < 0:
        raise argparse.ArgumentTypeError(f"{value} is not a non-negative number")
    return fvalue


def _fold_change(value: str) -> float:
    """argparse type for a linear fold-change threshold (>= 1)."""
    fvalue = float(value)
    if fvalue < 1:
        raise argparse.ArgumentTypeError(f"{value} is not a valid fold change (must be >= 1)")
    return fvalue
