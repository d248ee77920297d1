"""
Gene reference annotation.

Per-gene reference data consumed read-only by the pipeline: symbol, biotype,
Entrez cross references, transcript length and GC content. Length and GC
content are the technical covariates used by conditional quantile
normalization and by the enrichment bias model.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from dgeflow.exceptions import AnnotationError

logger = logging.getLogger(__name__)

__all__ = ['GeneAnnotation', 'ANNOTATION_COLUMNS']

ANNOTATION_COLUMNS = ['gene_name', 'gene_biotype', 'entrezid', 'length', 'gc_content']


class GeneAnnotation:
    """
    Immutable gene-id keyed annotation table.

    Attributes:
        table: DataFrame indexed by gene_id with ANNOTATION_COLUMNS.
            ``entrezid`` holds a tuple of zero or more Entrez ids.

    Invariants:
        - gene ids are unique
        - length is positive and gc_content lies in [0, 1]
    """

    def __init__(self, table: pd.DataFrame):
        missing = [c for c in ANNOTATION_COLUMNS if c not in table.columns]
        if missing:
            raise AnnotationError(f"Annotation is missing columns: {missing}")

        if table.index.has_duplicates:
            dups = table.index[table.index.duplicated()].unique().tolist()
            raise AnnotationError(
                f"Annotation has multiple records for {len(dups)} gene(s): {dups[:5]}"
            )

        length = pd.to_numeric(table['length'], errors='coerce')
        gc = pd.to_numeric(table['gc_content'], errors='coerce')
        bad_length = table.index[~(length > 0)]
        if len(bad_length) > 0:
            raise AnnotationError(
                f"Invalid or missing length for {len(bad_length)} gene(s): {bad_length[:5].tolist()}"
            )
        bad_gc = table.index[~((gc >= 0) & (gc <= 1))]
        if len(bad_gc) > 0:
            raise AnnotationError(
                f"gc_content outside [0, 1] for {len(bad_gc)} gene(s): {bad_gc[:5].tolist()}"
            )

        table = table.copy()
        table['length'] = length.astype(float)
        table['gc_content'] = gc.astype(float)
        table.index.name = 'gene_id'
        self._table = table

    @property
    def table(self) -> pd.DataFrame:
        return self._table

    @property
    def gene_ids(self) -> pd.Index:
        return self._table.index

    def __len__(self) -> int:
        return len(self._table)

    def __contains__(self, gene_id: str) -> bool:
        return gene_id in self._table.index

    def align(self, feature_ids: pd.Index | list[str]) -> GeneAnnotation:
        """
        Return the annotation restricted and ordered to ``feature_ids``.

        Raises:
            AnnotationError: If any feature id has no annotation record
        """
        feature_ids = pd.Index(feature_ids)
        missing = feature_ids.difference(self._table.index)
        if len(missing) > 0:
            raise AnnotationError(
                f"{len(missing)} gene(s) have no annotation record: {missing[:5].tolist()}"
            )
        return GeneAnnotation(self._table.loc[feature_ids])

    def covariate(self, name: str) -> np.ndarray:
        """Values of a technical covariate ('length' or 'gc_content')."""
        if name not in ('length', 'gc_content'):
            raise AnnotationError(f"Unknown annotation covariate: {name}")
        return self._table[name].to_numpy(dtype=float)

    def __repr__(self) -> str:
        return f"GeneAnnotation({len(self)} genes)"
