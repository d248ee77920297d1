"""
Low-expression filtering for RNA-seq count matrices.

Genes with too few reads carry almost no information about differential
expression but still count towards the multiple-testing burden, and their
dispersion estimates are unstable. They are removed before normalization.

Engineering Design:
    - Pure Transform: input matrix -> output matrix
    - CPM is computed internally from raw library sizes
    - A filter that removes every gene is reported, not raised; the pipeline
      decides whether an empty matrix is fatal
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

import numpy as np

from dgeflow.core.matrix import CountMatrix
from dgeflow.core.transform import Transform

logger = logging.getLogger(__name__)

__all__ = ['ExpressionFilter', 'ExpressionFilterResult']


@dataclass
class ExpressionFilterResult:
    """Genes passing / failing the expression filter, with parameters."""
    passed_genes: Set[str]
    failed_genes: Set[str]
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_passed(self) -> int:
        return len(self.passed_genes)

    @property
    def n_failed(self) -> int:
        return len(self.failed_genes)

    @property
    def pass_rate(self) -> float:
        total = self.n_passed + self.n_failed
        return self.n_passed / total if total > 0 else 0.0


class ExpressionFilter(Transform):
    """
    Keep genes expressed above a CPM threshold in enough samples.

    A gene is kept when CPM > ``min_cpm`` in at least ``min_samples``
    samples. When ``min_samples`` is not given, half of the sample columns
    (rounded up) is used, which for a paired design is the size of one
    treatment arm.

    Params:
        min_cpm: Counts-per-million threshold (strict inequality).
        min_samples: Number of samples that must exceed the threshold.

    Examples:
        >>> flt = ExpressionFilter(min_cpm=1.5)
        >>> filtered = flt.apply(matrix)
    """

    def __init__(self, min_cpm: float = 1.5, min_samples: Optional[int] = None):
        if min_cpm < 0:
            raise ValueError(f"min_cpm must be non-negative, got {min_cpm}")
        if min_samples is not None and min_samples < 1:
            raise ValueError(f"min_samples must be at least 1, got {min_samples}")
        super().__init__(
            name="ExpressionFilter",
            params={"min_cpm": min_cpm, "min_samples": min_samples},
        )
        self.min_cpm = min_cpm
        self.min_samples = min_samples

    def resolve_min_samples(self, n_samples: int) -> int:
        if self.min_samples is not None:
            return self.min_samples
        return max(1, int(np.ceil(n_samples / 2)))

    def validate(self, matrix: CountMatrix) -> list[str]:
        errors = super().validate(matrix)
        if self.min_samples is not None and self.min_samples > matrix.n_samples:
            errors.append(
                f"min_samples ({self.min_samples}) exceeds number of samples ({matrix.n_samples})"
            )
        return errors

    def compute_keep_mask(self, matrix: CountMatrix) -> np.ndarray:
        """
        Boolean mask, one entry per gene, True where the gene is kept.

        Raises:
            ValueError: If the matrix fails validation
        """
        errors = self.validate(matrix)
        if errors:
            raise ValueError("; ".join(errors))

        cpm = matrix.cpm()
        threshold_samples = self.resolve_min_samples(matrix.n_samples)
        expressed_in_samples = (cpm > self.min_cpm).sum(axis=1)
        keep_mask = expressed_in_samples >= threshold_samples

        if not keep_mask.any():
            logger.warning(
                f"No gene has CPM > {self.min_cpm} in {threshold_samples} or more samples"
            )
        return keep_mask

    def apply(self, matrix: CountMatrix) -> CountMatrix:
        """Return the matrix restricted to genes passing the filter."""
        keep_mask = self.compute_keep_mask(matrix)

        n_kept = int(keep_mask.sum())
        n_removed = matrix.n_features - n_kept
        logger.info(
            f"Expression filter (CPM > {self.min_cpm} in >= "
            f"{self.resolve_min_samples(matrix.n_samples)} samples): kept {n_kept}/"
            f"{matrix.n_features} genes ({100 * n_kept / max(matrix.n_features, 1):.1f}%), "
            f"removed {n_removed}"
        )
        return matrix.select_features(keep_mask)

    def get_passing_genes(self, matrix: CountMatrix) -> ExpressionFilterResult:
        """Passing and failing gene ids without transforming the matrix."""
        keep_mask = self.compute_keep_mask(matrix)
        ids = matrix.feature_ids
        return ExpressionFilterResult(
            passed_genes=set(ids[keep_mask]),
            failed_genes=set(ids[~keep_mask]),
            parameters={
                "min_cpm": self.min_cpm,
                "min_samples": self.resolve_min_samples(matrix.n_samples),
            },
        )
