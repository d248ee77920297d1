"""
Atomic output writers.

Pipeline outputs are written once at the end of the run. Each file is first
written to a temporary file in the destination directory and then moved into
place with ``os.replace()``, so an interrupted run never leaves a truncated
results table behind.
"""

from __future__ import annotations

import json
import os
import tempfile
from contextlib import contextmanager
from typing import Any, Iterator, TextIO

import pandas as pd

__all__ = ['atomic_write_json', 'atomic_write_text', 'atomic_write_table']


@contextmanager
def _atomic_handle(path: str | os.PathLike) -> Iterator[TextIO]:
    """Yield a temp-file handle that replaces *path* on successful exit."""
    path = os.fspath(path)
    dir_path = os.path.dirname(path) or "."
    os.makedirs(dir_path, exist_ok=True)
    tmp_path: str | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w", dir=dir_path, suffix=".tmp", delete=False, newline=""
        ) as tmp:
            tmp_path = tmp.name
            yield tmp
        os.replace(tmp_path, path)
    except BaseException:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def atomic_write_json(path: str | os.PathLike, data: Any, *, indent: int = 2) -> None:
    """Write *data* as JSON atomically."""
    with _atomic_handle(path) as fh:
        json.dump(data, fh, indent=indent, default=str)


def atomic_write_text(path: str | os.PathLike, content: str) -> None:
    """Write *content* as text atomically."""
    with _atomic_handle(path) as fh:
        fh.write(content)


def atomic_write_table(
    path: str | os.PathLike,
    df: pd.DataFrame,
    *,
    index: bool = False,
    float_format: str | None = "%.8g",
) -> None:
    """Write *df* as a tab-separated table atomically.

    Parameters
    ----------
    path:
        Destination file path.
    df:
        Table to write.
    index:
        Whether to write the DataFrame index as the first column.
    float_format:
        printf-style format for floats; defines the round-trip precision.
    """
    with _atomic_handle(path) as fh:
        df.to_csv(fh, sep="\t", index=index, float_format=float_format)
