"""
Paired experimental design for two-level treatment experiments.

Each biological replicate (a passage or harvest of a cell line) is observed
once under the reference level and once under the treated level. The design
matrix therefore carries one baseline indicator per replicate plus a single
treatment-effect column:

    X = [rep_1 | rep_2 | ... | rep_k | treatment]

The treatment coefficient is the within-replicate log fold change, and the
replicate columns absorb between-replicate baselines without an intercept.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from dgeflow.exceptions import DesignError

logger = logging.getLogger(__name__)

__all__ = ['ExperimentDesign', 'PairedDesign', 'build_paired_design']


@dataclass(frozen=True)
class PairedDesign:
    """Design matrix for a paired two-level comparison.

    Attributes:
        X: Design matrix (n_samples, n_replicates + 1), full column rank.
        col_names: Names of the design columns.
        coef: Index of the treatment-effect column.
        sample_ids: Sample order the rows of X correspond to.
        replicates: Replicate label per sample.
        treatment: Treatment label per sample.
        contrast_name: Human-readable "treated_vs_reference" label.
    """

    X: NDArray[np.float64]
    col_names: list[str]
    coef: int
    sample_ids: pd.Index
    replicates: list[str]
    treatment: list[str]
    contrast_name: str

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    @property
    def n_params(self) -> int:
        return self.X.shape[1]

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.n_params


@dataclass(frozen=True)
class ExperimentDesign:
    """Declarative description of which samples are analysed and how.

    Attributes:
        treatment_col: Sample sheet column holding the treatment label.
        pairing_col: Column holding the replicate / pairing label.
        reference_level: Baseline treatment level.
        treatment_level: Treated level whose effect is tested.
        group_covariates: Columns that jointly define the sample group.
            Resolved once; all must exist in the sample sheet.
        cell_line_col: Column holding the cell line.
        cell_line: If set, only samples from this cell line are analysed.
    """

    treatment_col: str = "treat"
    pairing_col: str = "replicate"
    reference_level: str = "Veh"
    treatment_level: str = "DHT"
    group_covariates: tuple[str, ...] = field(default_factory=lambda: ("treat",))
    cell_line_col: str = "cell_line"
    cell_line: str | None = None

    @property
    def required_columns(self) -> list[str]:
        cols = [self.treatment_col, self.pairing_col, *self.group_covariates]
        if self.cell_line is not None:
            cols.append(self.cell_line_col)
        return list(dict.fromkeys(cols))

    def validate_columns(self, sample_sheet: pd.DataFrame) -> None:
        """Check every configured column is present in the sample sheet."""
        missing = [c for c in self.required_columns if c not in sample_sheet.columns]
        if missing:
            raise DesignError(
                f"Sample sheet is missing required column(s) {missing}; "
                f"available: {list(sample_sheet.columns)}"
            )

    def resolve_samples(self, sample_sheet: pd.DataFrame) -> pd.DataFrame:
        """
        Select the analysis samples and validate the paired structure.

        Args:
            sample_sheet: Sample metadata indexed by sample id.

        Returns:
            Metadata for the analysis samples, ordered by replicate then
            treatment (reference first), with a derived ``group`` column.

        Raises:
            DesignError: If columns are missing, levels are absent, or any
                replicate lacks exactly one sample per treatment level.
        """
        self.validate_columns(sample_sheet)
        samples = sample_sheet

        if self.cell_line is not None:
            samples = samples[samples[self.cell_line_col].astype(str) == self.cell_line]
            if samples.empty:
                raise DesignError(f"No samples found for cell line '{self.cell_line}'")

        levels = {self.reference_level, self.treatment_level}
        if len(levels) != 2:
            raise DesignError("reference_level and treatment_level must differ")
        treat = samples[self.treatment_col].astype(str)
        unknown = sorted(set(treat) - levels)
        if unknown:
            logger.info(f"Excluding samples with treatment level(s) {unknown}")
            samples = samples[treat.isin(levels)]
            treat = samples[self.treatment_col].astype(str)
        for level in (self.reference_level, self.treatment_level):
            if not (treat == level).any():
                raise DesignError(f"No samples with treatment level '{level}'")

        pairing = samples[self.pairing_col].astype(str)
        table = pd.crosstab(pairing, treat)
        for replicate, row in table.iterrows():
            bad = {lvl: int(row.get(lvl, 0)) for lvl in (self.reference_level, self.treatment_level)
                   if row.get(lvl, 0) != 1}
            if bad:
                raise DesignError(
                    f"Replicate '{replicate}' must have exactly one sample per treatment "
                    f"level; found {bad}"
                )
        if len(table) < 2:
            raise DesignError(
                f"At least two replicates are required, found {len(table)}"
            )

        samples = samples.copy()
        samples['group'] = samples[list(self.group_covariates)].astype(str).agg('_'.join, axis=1)
        order = (
            samples.assign(
                _rep=pairing,
                _trt=(treat == self.treatment_level).astype(int),
            )
            .sort_values(['_rep', '_trt'], kind='mergesort')
            .index
        )
        logger.info(
            f"Resolved {len(order)} analysis samples across {len(table)} replicates "
            f"({self.treatment_level} vs {self.reference_level})"
        )
        return samples.loc[order]


def build_paired_design(
    sample_metadata: pd.DataFrame,
    design: ExperimentDesign,
) -> PairedDesign:
    """
    Build the replicate-baseline + treatment design matrix.

    Args:
        sample_metadata: Analysis samples (as returned by
            ExperimentDesign.resolve_samples), in count-matrix column order.
        design: Experiment description.

    Returns:
        PairedDesign with full-rank X.

    Raises:
        DesignError: If the design matrix is rank-deficient.
    """
    replicates = sample_metadata[design.pairing_col].astype(str)
    treatment = sample_metadata[design.treatment_col].astype(str)

    rep_levels = list(dict.fromkeys(replicates))
    rep_dummies = pd.get_dummies(
        pd.Categorical(replicates, categories=rep_levels), dtype=float
    )
    X = np.column_stack([
        rep_dummies.to_numpy(),
        (treatment == design.treatment_level).to_numpy(dtype=float),
    ])
    col_names = [f"{design.pairing_col}{r}" for r in rep_levels] + [
        f"{design.treatment_col}{design.treatment_level}"
    ]

    rank = np.linalg.matrix_rank(X)
    if rank < X.shape[1]:
        raise DesignError(
            f"Design matrix is rank-deficient (rank {rank} < {X.shape[1]} columns)"
        )

    return PairedDesign(
        X=X,
        col_names=col_names,
        coef=X.shape[1] - 1,
        sample_ids=pd.Index(sample_metadata.index),
        replicates=replicates.tolist(),
        treatment=treatment.tolist(),
        contrast_name=f"{design.treatment_level}_vs_{design.reference_level}",
    )
