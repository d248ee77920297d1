"""
dgeflow - Differential gene expression and enrichment for paired RNA-seq

A pipeline for testing treatment effects in paired RNA-seq designs:
low-expression filtering, conditional quantile normalization, quasi-likelihood
negative binomial GLMs with TREAT testing, and length-bias corrected
gene-set enrichment.
"""

__version__ = "0.1.0"

from dgeflow.core.matrix import CountMatrix
from dgeflow.core.transform import Transform
from dgeflow.core.annotation import GeneAnnotation

__all__ = [
    "CountMatrix",
    "Transform",
    "GeneAnnotation",
]
