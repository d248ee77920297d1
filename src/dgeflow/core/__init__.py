"""
Core data structures for the DGE pipeline.

1. CountMatrix: gene × sample counts with sample annotations
2. GeneAnnotation: per-gene reference data (symbol, biotype, length, GC)
3. ExperimentDesign / PairedDesign: paired two-level design description
4. Transform: abstract base class for immutable matrix transformations
"""

from dgeflow.core.matrix import CountMatrix
from dgeflow.core.annotation import GeneAnnotation, ANNOTATION_COLUMNS
from dgeflow.core.design import ExperimentDesign, PairedDesign, build_paired_design
from dgeflow.core.gene_sets import GeneSet, GeneSetCollection
from dgeflow.core.transform import Transform

__all__ = [
    'GeneSet',
    'GeneSetCollection',
    'CountMatrix',
    'GeneAnnotation',
    'ANNOTATION_COLUMNS',
    'ExperimentDesign',
    'PairedDesign',
    'build_paired_design',
    'Transform',
]
