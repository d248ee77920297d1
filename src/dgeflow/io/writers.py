"""
Tab-separated writers for pipeline results.

Every output is written atomically (temp file + rename) once its stage has
finished, so a failed run leaves either the previous file or no file.

Output Files:
    - ``<contrast>.de.tsv``: one row per analysed gene, sorted by p-value
    - ``<contrast>.<universe>.<subset>.enrichment.tsv``: one row per tested set
    - ``normalized_expression.tsv``: log2 CPM plus normalization offset
    - ``run_parameters.json``: configuration and software provenance

Floats are written with ``%.8g`` so a table read back with
:func:`read_de_table` reproduces the written values to eight significant
digits and keeps row order.

Examples:
    >>> from pathlib import Path
    >>> from dgeflow.io.writers import write_de_table, read_de_table
    >>> write_de_table(result, Path("out/DHT_vs_Veh.de.tsv"))
    >>> table = read_de_table(Path("out/DHT_vs_Veh.de.tsv"))
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from dgeflow.core.matrix import CountMatrix
from dgeflow.exceptions import InputFormatError
from dgeflow.utils.fileio import atomic_write_json, atomic_write_table

logger = logging.getLogger(__name__)

__all__ = [
    'DE_COLUMNS',
    'ENRICHMENT_COLUMNS',
    'FLOAT_FORMAT',
    'write_de_table',
    'read_de_table',
    'write_enrichment_table',
    'write_normalized_expression',
    'write_run_parameters',
]

FLOAT_FORMAT = "%.8g"

DE_COLUMNS = [
    'gene_id', 'gene_name', 'logCPM', 'logFC', 'PValue', 'FDR', 'biotype',
    'entrezid', 'length', 'gc_content', 'rankingStat', 'signedRank', 'DE',
]

ENRICHMENT_COLUMNS = [
    'category', 'gs_cat', 'gs_subcat', 'numDE', 'expected', 'setSize',
    'PValue', 'FDR', 'significant',
]


def _as_frame(result: Any) -> pd.DataFrame:
    if isinstance(result, pd.DataFrame):
        return result
    return result.to_dataframe()


def write_de_table(result: Any, path: Path) -> None:
    """
    Write the differential expression table.

    Args:
        result: DifferentialResult (annotated) or a DataFrame with DE_COLUMNS
        path: Output file

    Raises:
        ValueError: If required columns are missing
    """
    df = _as_frame(result)
    missing = [c for c in DE_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"DE table is missing columns: {missing}")

    out = df[DE_COLUMNS].copy()
    out['entrezid'] = [
        ';'.join(v) if isinstance(v, (tuple, list)) else ('' if pd.isna(v) else str(v))
        for v in out['entrezid']
    ]
    out['DE'] = out['DE'].astype(bool)
    atomic_write_table(path, out, float_format=FLOAT_FORMAT)
    logger.info(f"Wrote {len(out)} genes to {path}")


def read_de_table(path: Path) -> pd.DataFrame:
    """
    Read a table written by :func:`write_de_table`.

    Returns:
        DataFrame with DE_COLUMNS in file order; ``entrezid`` as tuples and
        ``DE`` as bool.

    Raises:
        InputFormatError: If the file lacks the expected columns
    """
    path = Path(path)
    df = pd.read_csv(
        path, sep='\t',
        dtype={'gene_id': str, 'gene_name': str, 'biotype': str, 'entrezid': str},
        keep_default_na=False, na_values=['', 'NA', 'NaN', 'nan'],
    )
    missing = [c for c in DE_COLUMNS if c not in df.columns]
    if missing:
        raise InputFormatError(f"DE table {path} is missing columns: {missing}")

    df['gene_name'] = df['gene_name'].fillna('')
    df['biotype'] = df['biotype'].fillna('')
    df['entrezid'] = [
        tuple(v.split(';')) if isinstance(v, str) and v else ()
        for v in df['entrezid']
    ]
    df['DE'] = df['DE'].astype(str).str.lower().isin(['true', '1'])
    return df[DE_COLUMNS]


def write_enrichment_table(result: Any, path: Path) -> None:
    """Write one enrichment family (sets sorted by p-value)."""
    df = _as_frame(result)
    missing = [c for c in ENRICHMENT_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Enrichment table is missing columns: {missing}")
    atomic_write_table(path, df[ENRICHMENT_COLUMNS], float_format=FLOAT_FORMAT)
    logger.info(f"Wrote {len(df)} gene sets to {path}")


def write_normalized_expression(
    matrix: CountMatrix,
    offsets: np.ndarray | None,
    path: Path,
) -> None:
    """
    Write normalized log2 expression (genes × samples).

    Args:
        matrix: Filtered count matrix
        offsets: log2-scale offsets added to log2 CPM (e.g. the CQN offset).
            ``None`` writes plain log2 CPM.
        path: Output file
    """
    values = matrix.cpm(log=True)
    if offsets is not None:
        offsets = np.asarray(offsets, dtype=float)
        if offsets.shape != values.shape:
            raise ValueError(
                f"offsets shape {offsets.shape} does not match matrix shape {values.shape}"
            )
        values = values + offsets

    df = pd.DataFrame(values, index=matrix.feature_ids, columns=matrix.sample_ids)
    df.index.name = 'gene_id'
    atomic_write_table(path, df, index=True, float_format=FLOAT_FORMAT)
    logger.info(f"Wrote normalized expression for {matrix.n_features} genes to {path}")


def write_run_parameters(parameters: dict[str, Any], path: Path) -> None:
    """Write run provenance (configuration, versions, stage summaries) as JSON."""
    atomic_write_json(path, parameters)
    logger.info(f"Wrote run parameters to {path}")
