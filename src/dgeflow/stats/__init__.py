"""
Statistical core: normalization, dispersion and QL GLM fitting, and
thresholded differential testing.

Modules:
    normalization: CQN, TMM and library-size offsets
    diagnostics: PCA-based technical covariate bias check
    dispersion: NB dispersion trend, QL GLM fit and empirical Bayes squeeze
    differential: TREAT test, BH correction and ranking statistics
"""

from dgeflow.stats.normalization import (
    NormalizationMethod,
    NormalizationResult,
    CQNResult,
    cqn,
    tmm_factors,
    library_size_offsets,
    quantile_normalization,
    normalize_counts,
)
from dgeflow.stats.diagnostics import covariate_pc_association, recommend_cqn
from dgeflow.stats.dispersion import (
    DispersionEstimate,
    QLFit,
    ave_log_cpm,
    estimate_nb_dispersion,
    trigamma_inverse,
    fit_f_dist,
    squeeze_var,
    fit_glm_ql,
)
from dgeflow.stats.differential import (
    DifferentialResult,
    treat_pvalues,
    fdr_correction,
    ranking_statistics,
    run_differential_test,
)

__all__ = [
    'NormalizationMethod',
    'NormalizationResult',
    'CQNResult',
    'cqn',
    'tmm_factors',
    'library_size_offsets',
    'quantile_normalization',
    'normalize_counts',
    'covariate_pc_association',
    'recommend_cqn',
    'DispersionEstimate',
    'QLFit',
    'ave_log_cpm',
    'estimate_nb_dispersion',
    'trigamma_inverse',
    'fit_f_dist',
    'squeeze_var',
    'fit_glm_ql',
    'DifferentialResult',
    'treat_pvalues',
    'fdr_correction',
    'ranking_statistics',
    'run_differential_test',
]
