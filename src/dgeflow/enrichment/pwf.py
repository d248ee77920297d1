"""
Probability weighting function (PWF) for bias-aware enrichment.

Longer (or GC-richer) genes collect more reads and therefore reach
significance more easily. The PWF estimates, for every gene, the
probability that it is called DE as a function of the bias covariate
alone. Set tests then weight genes by this probability instead of treating
every gene as equally likely to be DE.

Algorithm (goseq ``nullp``):
    1. Order genes by the covariate and group them into bins of
       ``bin_size`` genes
    2. Compute the DE fraction and median covariate per bin
    3. Fit a monotone curve through the bin fractions (isotonic regression,
       direction chosen from the data)
    4. Evaluate the curve at every gene and clip to (eps, 1 - eps)

With fewer than two bins' worth of genes a single bin is used, so the PWF is
constant and the Wallenius test reduces to the hypergeometric test.

References:
    Young et al. (2010) Genome Biology 11:R14 (goseq)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from sklearn.isotonic import IsotonicRegression

logger = logging.getLogger(__name__)

__all__ = ['ProbabilityWeighting', 'fit_pwf']

PWF_EPS = 1e-6


@dataclass(frozen=True)
class ProbabilityWeighting:
    """Per-gene DE probability given the bias covariate.

    Attributes:
        gene_ids: Genes the PWF was fitted on
        pwf: Probability weight per gene, in (0, 1)
        covariate: Bias covariate value per gene
        de: DE indicator the PWF was fitted to
        direction: "increasing", "decreasing" or "constant"
        bins: Per-bin median covariate, DE fraction and size
    """

    gene_ids: pd.Index
    pwf: NDArray[np.float64]
    covariate: NDArray[np.float64]
    de: NDArray[np.bool_]
    direction: str
    bins: pd.DataFrame

    @property
    def n_de(self) -> int:
        return int(self.de.sum())

    def to_series(self) -> pd.Series:
        return pd.Series(self.pwf, index=self.gene_ids, name='pwf')


def _bin_genes(covariate: NDArray[np.float64], de: NDArray[np.bool_], n_bins: int) -> pd.DataFrame:
    order = np.argsort(covariate, kind='mergesort')
    rows = []
    for idx in np.array_split(order, n_bins):
        rows.append({
            'covariate': float(np.median(covariate[idx])),
            'de_fraction': float(de[idx].mean()),
            'n_genes': len(idx),
        })
    return pd.DataFrame(rows)


def fit_pwf(
    de_indicator: NDArray[np.bool_],
    bias_covariate: NDArray[np.float64],
    gene_ids: pd.Index | None = None,
    bin_size: int = 500,
    eps: float = PWF_EPS,
) -> ProbabilityWeighting:
    """
    Fit the probability weighting function.

    Args:
        de_indicator: True for DE genes, one entry per analysed gene
        bias_covariate: Covariate per gene (e.g. length)
        gene_ids: Gene identifiers (default: positional)
        bin_size: Genes per bin
        eps: Clipping margin keeping weights strictly inside (0, 1)

    Returns:
        ProbabilityWeighting

    Raises:
        ValueError: If inputs are empty, misaligned or non-finite
    """
    de = np.asarray(de_indicator, dtype=bool)
    covariate = np.asarray(bias_covariate, dtype=float)
    if de.shape != covariate.shape or de.ndim != 1:
        raise ValueError(
            f"DE indicator {de.shape} and covariate {covariate.shape} must be 1D and aligned"
        )
    if len(de) == 0:
        raise ValueError("Cannot fit a PWF to zero genes")
    if not np.all(np.isfinite(covariate)):
        raise ValueError("Bias covariate contains non-finite values")
    if bin_size < 1:
        raise ValueError(f"bin_size must be positive, got {bin_size}")
    gene_ids = pd.RangeIndex(len(de)) if gene_ids is None else pd.Index(gene_ids)

    n_bins = max(1, len(de) // bin_size)
    bins = _bin_genes(covariate, de, n_bins)

    if n_bins < 2 or de.all() or not de.any() or bins['covariate'].nunique() < 2:
        pwf = np.full(len(de), de.mean())
        direction = "constant"
    else:
        iso = IsotonicRegression(increasing='auto', out_of_bounds='clip')
        iso.fit(bins['covariate'], bins['de_fraction'], sample_weight=bins['n_genes'])
        pwf = iso.predict(covariate)
        direction = "increasing" if iso.increasing_ else "decreasing"

    pwf = np.clip(pwf, eps, 1.0 - eps)
    logger.debug(
        f"PWF over {len(de)} genes ({de.sum()} DE) in {n_bins} bin(s): {direction}, "
        f"range [{pwf.min():.3g}, {pwf.max():.3g}]"
    )
    return ProbabilityWeighting(
        gene_ids=gene_ids,
        pwf=pwf,
        covariate=covariate,
        de=de,
        direction=direction,
        bins=bins,
    )
