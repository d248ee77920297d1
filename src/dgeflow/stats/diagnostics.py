"""
Technical covariate bias diagnostic.

Checks whether the leading principal components of log expression track
per-sample summaries of GC content or gene length. A strong association
indicates that library preparation left a sample-specific composition bias
that CQN is designed to remove. The result is reported in the run
parameters; the normalization method itself is always taken from the
configuration.
"""

from __future__ import annotations

import logging
from typing import Mapping

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats
from sklearn.decomposition import PCA

logger = logging.getLogger(__name__)

__all__ = ['covariate_pc_association', 'recommend_cqn']


def _weighted_covariate_means(
    logcpm: NDArray[np.float64],
    covariate: NDArray[np.float64],
) -> NDArray[np.float64]:
    weights = np.exp2(logcpm)
    return (weights * covariate[:, None]).sum(axis=0) / weights.sum(axis=0)


def covariate_pc_association(
    logcpm: NDArray[np.float64],
    covariates: Mapping[str, NDArray[np.float64]],
    n_components: int | None = None,
) -> pd.DataFrame:
    """
    Association between per-sample covariate summaries and expression PCs.

    Args:
        logcpm: log2 CPM (genes × samples)
        covariates: Per-gene covariate values keyed by name, e.g.
            ``{"gc_content": gc, "log_length": np.log2(length)}``
        n_components: Number of PCs (default: all, at most n_samples - 1)

    Returns:
        DataFrame with one row per covariate × component and columns
        ``covariate, component, explained_variance_ratio, r_squared, p_value``.
    """
    n_genes, n_samples = logcpm.shape
    max_components = max(1, min(n_samples - 1, n_genes))
    n_components = max_components if n_components is None else min(n_components, max_components)

    pca = PCA(n_components=n_components)
    scores = pca.fit_transform(logcpm.T)

    rows = []
    for name, values in covariates.items():
        summary = _weighted_covariate_means(logcpm, np.asarray(values, dtype=float))
        for k in range(n_components):
            pc = scores[:, k]
            if np.allclose(summary, summary[0]) or np.ptp(pc) == 0 or n_samples < 3:
                r2, p = 0.0, 1.0
            else:
                fit = stats.linregress(summary, pc)
                r2, p = float(fit.rvalue ** 2), float(fit.pvalue)
            rows.append({
                'covariate': name,
                'component': f"PC{k + 1}",
                'explained_variance_ratio': float(pca.explained_variance_ratio_[k]),
                'r_squared': r2,
                'p_value': p,
            })

    return pd.DataFrame(rows)


def recommend_cqn(
    association: pd.DataFrame,
    r2_threshold: float = 0.5,
    n_leading: int = 2,
) -> bool:
    """True if any covariate explains at least ``r2_threshold`` of a leading PC."""
    leading = [f"PC{k + 1}" for k in range(n_leading)]
    hits = association[
        association['component'].isin(leading) & (association['r_squared'] >= r2_threshold)
    ]
    for _, row in hits.iterrows():
        logger.info(
            f"{row['covariate']} summary has r2={row['r_squared']:.2f} with "
            f"{row['component']}; CQN recommended"
        )
    return not hits.empty
