"""Utility modules for pipeline output handling."""

from dgeflow.utils.fileio import (
    atomic_write_json,
    atomic_write_text,
    atomic_write_table,
)

__all__ = [
    'atomic_write_json',
    'atomic_write_text',
    'atomic_write_table',
]
