"""
Gene-set enrichment with selection-bias correction.

Modules:
    pwf: Probability weighting function of DE calls on a bias covariate
    enrichment_tests: Wallenius / hypergeometric set tests and family runs
"""

from dgeflow.enrichment.pwf import ProbabilityWeighting, fit_pwf
from dgeflow.enrichment.enrichment_tests import (
    SUBSETS,
    EnrichmentResult,
    WalleniusTest,
    HypergeometricTest,
    run_enrichment,
    run_enrichment_families,
)

__all__ = [
    'ProbabilityWeighting',
    'fit_pwf',
    'SUBSETS',
    'EnrichmentResult',
    'WalleniusTest',
    'HypergeometricTest',
    'run_enrichment',
    'run_enrichment_families',
]
