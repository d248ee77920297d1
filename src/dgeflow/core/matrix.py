"""
Core data structure for RNA-seq count matrices.

CountMatrix couples the raw gene-by-sample read counts with the sample
annotations they were measured under. It is the object every pipeline stage
receives and returns.

Biological Context:
    A merged featureCounts table is the starting point of a DGE analysis:
    - Rows = genes (Ensembl gene identifiers)
    - Columns = sequenced libraries (one per sample)
    - Values = reads assigned to the gene (non-negative integers)

    Most downstream quantities are derived from it on the fly:
    - Library sizes (column sums) for depth normalization
    - Counts-per-million (CPM) for filtering and visualisation
    - log2 CPM with a prior count for linear-scale summaries

Engineering Design:
    - Immutable: subsetting returns new instances
    - Validated: constructor checks shape, index and value consistency
    - Identifier-keyed: sample_metadata is indexed by sample_ids so joins are
      explicit rather than positional

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from dgeflow.core.matrix import CountMatrix
    >>>
    >>> counts = np.array([[10, 20], [30, 40]])
    >>> feature_ids = pd.Index(["ENSG001", "ENSG002"])
    >>> sample_ids = pd.Index(["R1_Veh", "R1_DHT"])
    >>> sample_metadata = pd.DataFrame({'treat': ['Veh', 'DHT']}, index=sample_ids)
    >>> matrix = CountMatrix(counts, feature_ids, sample_ids, sample_metadata)
    >>> matrix.library_sizes
    array([40., 60.])
"""

from __future__ import annotations

import numpy as np
import pandas as pd

__all__ = ['CountMatrix']


class CountMatrix:
    """
    Immutable container for a gene × sample count matrix and sample metadata.

    Attributes:
        counts: Read counts (genes × samples), non-negative
        feature_ids: Row identifiers (gene ids)
        sample_ids: Column identifiers (sample ids)
        sample_metadata: Sample annotations indexed by sample_ids

    Shape Invariants:
        - counts.shape[0] == len(feature_ids)
        - counts.shape[1] == len(sample_ids)
        - sample_metadata.index equals sample_ids
    """

    def __init__(
        self,
        counts: np.ndarray,
        feature_ids: pd.Index,
        sample_ids: pd.Index,
        sample_metadata: pd.DataFrame | None = None,
    ):
        """
        Initialize CountMatrix with validation.

        Args:
            counts: Count matrix (genes × samples)
            feature_ids: Gene identifiers, unique
            sample_ids: Sample identifiers, unique
            sample_metadata: Sample annotations with index matching sample_ids.
                An empty frame is created when omitted.

        Raises:
            TypeError: If argument types are wrong
            ValueError: If shapes, indices or values are inconsistent
        """
        if not isinstance(counts, np.ndarray):
            raise TypeError(f"counts must be np.ndarray, got {type(counts)}")
        if not isinstance(feature_ids, pd.Index):
            raise TypeError(f"feature_ids must be pd.Index, got {type(feature_ids)}")
        if not isinstance(sample_ids, pd.Index):
            raise TypeError(f"sample_ids must be pd.Index, got {type(sample_ids)}")
        if sample_metadata is None:
            sample_metadata = pd.DataFrame(index=sample_ids)
        if not isinstance(sample_metadata, pd.DataFrame):
            raise TypeError(f"sample_metadata must be pd.DataFrame, got {type(sample_metadata)}")

        if counts.ndim != 2:
            raise ValueError(f"counts must be 2D, got shape {counts.shape}")

        n_features, n_samples = counts.shape
        if len(feature_ids) != n_features:
            raise ValueError(
                f"feature_ids length ({len(feature_ids)}) must match count rows ({n_features})"
            )
        if len(sample_ids) != n_samples:
            raise ValueError(
                f"sample_ids length ({len(sample_ids)}) must match count columns ({n_samples})"
            )
        if feature_ids.has_duplicates:
            raise ValueError("feature_ids must be unique")
        if sample_ids.has_duplicates:
            raise ValueError("sample_ids must be unique")
        if not sample_metadata.index.equals(sample_ids):
            raise ValueError(
                "sample_metadata.index must match sample_ids exactly. "
                f"Got {len(sample_metadata.index)} metadata rows for {len(sample_ids)} samples."
            )
        if counts.size and (not np.all(np.isfinite(counts)) or np.any(counts < 0)):
            raise ValueError("counts must be finite and non-negative")

        self._counts = counts.astype(np.float64, copy=False)
        self._feature_ids = feature_ids
        self._sample_ids = sample_ids
        self._sample_metadata = sample_metadata

    @property
    def counts(self) -> np.ndarray:
        """Read counts (genes × samples)."""
        return self._counts

    @property
    def feature_ids(self) -> pd.Index:
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        return self._sample_ids

    @property
    def sample_metadata(self) -> pd.DataFrame:
        return self._sample_metadata

    @property
    def shape(self) -> tuple[int, int]:
        return self._counts.shape

    @property
    def n_features(self) -> int:
        return self._counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self._counts.shape[1]

    @property
    def library_sizes(self) -> np.ndarray:
        """Total counts per sample."""
        return self._counts.sum(axis=0)

    def cpm(self, log: bool = False, prior_count: float = 2.0,
            lib_sizes: np.ndarray | None = None) -> np.ndarray:
        """
        Counts per million.

        Args:
            log: Return log2 CPM. A prior count scaled to library size is
                added to avoid log of zero (edgeR convention).
            prior_count: Average prior count added before taking logs.
            lib_sizes: Effective library sizes. Defaults to column sums.

        Returns:
            Matrix with the same shape as counts.
        """
        lib = self.library_sizes if lib_sizes is None else np.asarray(lib_sizes, dtype=float)
        lib = np.where(lib > 0, lib, 1.0)
        if not log:
            return self._counts / lib[None, :] * 1e6

        scaled_prior = prior_count * lib / lib.mean()
        adj_lib = lib + 2.0 * scaled_prior
        return np.log2((self._counts + scaled_prior[None, :]) / adj_lib[None, :] * 1e6)

    def select_samples(self, mask: np.ndarray | pd.Series) -> CountMatrix:
        """
        Subset by samples (columns), preserving metadata.

        Raises:
            ValueError: If mask length doesn't match n_samples
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)
        if len(mask) != self.n_samples:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_samples ({self.n_samples})"
            )

        return CountMatrix(
            counts=self._counts[:, mask],
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids[mask],
            sample_metadata=self._sample_metadata.loc[self._sample_ids[mask]],
        )

    def select_features(self, mask: np.ndarray | pd.Series) -> CountMatrix:
        """
        Subset by genes (rows).

        Raises:
            ValueError: If mask length doesn't match n_features
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)
        if len(mask) != self.n_features:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_features ({self.n_features})"
            )

        return CountMatrix(
            counts=self._counts[mask, :],
            feature_ids=self._feature_ids[mask],
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
        )

    def reorder_samples(self, sample_ids: pd.Index | list[str]) -> CountMatrix:
        """Return a matrix with columns in the given order (all ids must exist)."""
        sample_ids = pd.Index(sample_ids)
        missing = sample_ids.difference(self._sample_ids)
        if len(missing) > 0:
            raise ValueError(f"Samples not present in matrix: {list(missing)}")
        positions = self._sample_ids.get_indexer(sample_ids)
        return CountMatrix(
            counts=self._counts[:, positions],
            feature_ids=self._feature_ids,
            sample_ids=sample_ids,
            sample_metadata=self._sample_metadata.loc[sample_ids],
        )

    def with_metadata(self, sample_metadata: pd.DataFrame) -> CountMatrix:
        """Return a matrix carrying new sample metadata (index must match)."""
        return CountMatrix(
            counts=self._counts,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=sample_metadata,
        )

    def copy(self) -> CountMatrix:
        return CountMatrix(
            counts=self._counts.copy(),
            feature_ids=self._feature_ids.copy(),
            sample_ids=self._sample_ids.copy(),
            sample_metadata=self._sample_metadata.copy(),
        )

    def to_frame(self) -> pd.DataFrame:
        """Counts as a DataFrame (genes × samples)."""
        return pd.DataFrame(self._counts, index=self._feature_ids, columns=self._sample_ids)

    def __repr__(self) -> str:
        if self.n_features == 0 or self.n_samples == 0:
            return f"CountMatrix({self.n_features} genes × {self.n_samples} samples)"
        return (
            f"CountMatrix({self.n_features} genes × {self.n_samples} samples)\n"
            f"  Genes: {self.feature_ids[0]}...{self.feature_ids[-1]}\n"
            f"  Samples: {self.sample_ids[0]}...{self.sample_ids[-1]}\n"
            f"  Metadata columns: {list(self.sample_metadata.columns)}"
        )
