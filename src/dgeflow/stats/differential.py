"""
Differential expression testing relative to a fold-change threshold.

Tests the treatment coefficient of the QL GLM fit with limma's TREAT
procedure: the null hypothesis is |log fold change| <= lambda rather than
log fold change == 0, so genes with tiny but precisely estimated changes
are not called differentially expressed.

Statistical Framework:
    With b the estimated coefficient, se its moderated standard error and
    df the posterior residual degrees of freedom,

        p = P(T_df > (|b| - lambda) / se) + P(T_df > (|b| + lambda) / se)

    With lambda = 0 this is the two-sided moderated t-test. P-values are
    adjusted by Benjamini-Hochberg over all available genes, and a gene is
    called DE when its FDR is below alpha.

References:
    - McCarthy & Smyth (2009) Bioinformatics 25(6):765-771 (TREAT)
    - Benjamini & Hochberg (1995) J R Stat Soc B 57(1):289-300
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats
from statsmodels.stats.multitest import multipletests

from dgeflow.core.annotation import GeneAnnotation
from dgeflow.stats.dispersion import QLFit

logger = logging.getLogger(__name__)

__all__ = [
    'DifferentialResult',
    'treat_pvalues',
    'fdr_correction',
    'ranking_statistics',
    'run_differential_test',
]

DEFAULT_LFC = float(np.log2(1.2))
LN2 = np.log(2.0)


@dataclass
class DifferentialResult:
    """Per-gene results of the differential test.

    Attributes:
        table: Indexed by gene_id and sorted by PValue (stable, unavailable
            genes last). Columns: logFC, logCPM, SE, df, PValue, FDR, DE,
            rankingStat, signedRank, converged, issue.
        contrast: Contrast label (e.g. ``DHT_vs_Veh``)
        lfc: log2 fold-change threshold of the TREAT null
        alpha: FDR threshold for DE calls
        fdr_method: Multiple testing method
        annotation: Gene annotation merged by :meth:`to_dataframe`
    """

    table: pd.DataFrame
    contrast: str
    lfc: float = DEFAULT_LFC
    alpha: float = 0.05
    fdr_method: str = "BH"
    annotation: GeneAnnotation | None = None

    @property
    def gene_ids(self) -> pd.Index:
        return self.table.index

    @property
    def analysed_genes(self) -> frozenset[str]:
        """Genes with an available test result."""
        return frozenset(self.table.index[self.table['converged']])

    def de_genes(self) -> list[str]:
        return self.table.index[self.table['DE']].tolist()

    def up(self) -> list[str]:
        t = self.table
        return t.index[t['DE'] & (t['logFC'] > 0)].tolist()

    def down(self) -> list[str]:
        t = self.table
        return t.index[t['DE'] & (t['logFC'] < 0)].tolist()

    def subset_genes(self, subset: Literal["all", "up", "down"]) -> list[str]:
        """DE genes of a direction subset."""
        if subset == "all":
            return self.de_genes()
        if subset == "up":
            return self.up()
        if subset == "down":
            return self.down()
        raise ValueError(f"Unknown subset '{subset}' (expected all, up or down)")

    def to_dataframe(self) -> pd.DataFrame:
        """Result table with annotation columns, in p-value order."""
        df = self.table.reset_index()
        n = len(df)
        if self.annotation is not None:
            ann = self.annotation.align(self.table.index).table
            df['gene_name'] = ann['gene_name'].to_numpy()
            df['biotype'] = ann['gene_biotype'].to_numpy()
            df['entrezid'] = list(ann['entrezid'])
            df['length'] = ann['length'].to_numpy()
            df['gc_content'] = ann['gc_content'].to_numpy()
        else:
            df['gene_name'] = [''] * n
            df['biotype'] = [''] * n
            df['entrezid'] = [()] * n
            df['length'] = np.nan
            df['gc_content'] = np.nan
        return df

    def summary(self) -> dict[str, int]:
        return {
            "tested": int(self.table['converged'].sum()),
            "unavailable": int((~self.table['converged']).sum()),
            "de": len(self.de_genes()),
            "up": len(self.up()),
            "down": len(self.down()),
        }


def treat_pvalues(
    logfc: NDArray[np.float64],
    se: NDArray[np.float64],
    df: NDArray[np.float64] | float,
    lfc: float = 0.0,
) -> NDArray[np.float64]:
    """
    TREAT p-values for H0: |logFC| <= lfc.

    ``logfc``, ``se`` and ``lfc`` must be on the same log scale. NaN inputs
    give NaN p-values; ``df`` may be infinite (normal limit).
    """
    if lfc < 0:
        raise ValueError(f"lfc must be non-negative, got {lfc}")
    b = np.abs(np.asarray(logfc, dtype=float))
    se = np.asarray(se, dtype=float)
    with np.errstate(divide='ignore', invalid='ignore'):
        t_lo = (b - lfc) / se
        t_hi = (b + lfc) / se
    p = stats.t.sf(t_lo, df) + stats.t.sf(t_hi, df)
    return np.minimum(p, 1.0)


def fdr_correction(
    pvalues: NDArray[np.float64],
    method: Literal["BH", "BY", "bonferroni"] = "BH",
) -> NDArray[np.float64]:
    """
    Adjust p-values for multiple testing, ignoring NaN entries.

    Args:
        pvalues: Raw p-values (NaN for unavailable tests)
        method: "BH" (Benjamini-Hochberg), "BY" or "bonferroni"

    Returns:
        Adjusted p-values, NaN where the input is NaN
    """
    pvalues = np.asarray(pvalues, dtype=float)
    adjusted = np.full_like(pvalues, np.nan)
    valid = ~np.isnan(pvalues)
    if not valid.any():
        return adjusted

    method_map = {"BH": "fdr_bh", "BY": "fdr_by", "bonferroni": "bonferroni"}
    adjusted[valid] = multipletests(pvalues[valid], method=method_map.get(method, method))[1]
    return adjusted


def ranking_statistics(
    logfc: NDArray[np.float64],
    pvalues: NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Gene ranking statistics for pre-ranked downstream analyses.

    Returns:
        (rankingStat, signedRank) where ``rankingStat = -log10(p)`` and
        ``signedRank = sign(logFC) * rankingStat`` (0 for logFC == 0).
        P-values of zero are clamped to the smallest positive double.
    """
    logfc = np.asarray(logfc, dtype=float)
    p = np.asarray(pvalues, dtype=float)
    ranking = -np.log10(np.clip(p, np.finfo(float).tiny, 1.0))
    signed = np.sign(logfc) * ranking
    return ranking, signed


def run_differential_test(
    fit: QLFit,
    lfc: float = DEFAULT_LFC,
    alpha: float = 0.05,
    annotation: GeneAnnotation | None = None,
    fdr_method: str = "BH",
    coef: int | None = None,
) -> DifferentialResult:
    """
    TREAT test of the treatment coefficient for every gene.

    Args:
        fit: QL GLM fit
        lfc: log2 fold-change threshold (default log2(1.2))
        alpha: FDR threshold for DE calls
        annotation: Optional annotation attached to the result
        fdr_method: Multiple testing correction
        coef: Coefficient to test (default: the design's treatment column)

    Returns:
        DifferentialResult sorted by p-value
    """
    if not 0 < alpha < 1:
        raise ValueError(f"alpha must be in (0, 1), got {alpha}")
    coef = fit.design.coef if coef is None else coef

    b = fit.coefficients[:, coef]
    se = fit.coef_se(coef)
    pvalues = treat_pvalues(b, se, fit.df_total, lfc=lfc * LN2)
    pvalues[~fit.converged] = np.nan
    fdr = fdr_correction(pvalues, method=fdr_method)

    logfc = b / LN2
    ranking, signed = ranking_statistics(logfc, pvalues)

    table = pd.DataFrame({
        'logFC': logfc,
        'logCPM': fit.ave_log_cpm,
        'SE': se / LN2,
        'df': fit.df_total,
        'PValue': pvalues,
        'FDR': fdr,
        'DE': np.nan_to_num(fdr, nan=1.0) < alpha,
        'rankingStat': ranking,
        'signedRank': signed,
        'converged': fit.converged,
        'issue': fit.issue,
    }, index=pd.Index(fit.feature_ids, name='gene_id'))
    table = table.sort_values('PValue', kind='mergesort', na_position='last')

    result = DifferentialResult(
        table=table,
        contrast=fit.design.contrast_name,
        lfc=lfc,
        alpha=alpha,
        fdr_method=fdr_method,
        annotation=annotation,
    )
    s = result.summary()
    logger.info(
        f"{result.contrast}: {s['de']} DE genes at FDR < {alpha} "
        f"(|logFC| > {lfc:.3g}; {s['up']} up, {s['down']} down, "
        f"{s['unavailable']} unavailable)"
    )
    return result
