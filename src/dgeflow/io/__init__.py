"""
Input/output for count tables, reference data and result tables.
"""

from dgeflow.io.loaders import (
    load_count_matrix,
    load_sample_sheet,
    load_gene_annotation,
    load_gene_sets,
    resolve_universe,
    align_inputs,
)
from dgeflow.io.writers import (
    DE_COLUMNS,
    ENRICHMENT_COLUMNS,
    write_de_table,
    read_de_table,
    write_enrichment_table,
    write_normalized_expression,
    write_run_parameters,
)

__all__ = [
    'load_count_matrix',
    'load_sample_sheet',
    'load_gene_annotation',
    'load_gene_sets',
    'resolve_universe',
    'align_inputs',
    'DE_COLUMNS',
    'ENRICHMENT_COLUMNS',
    'write_de_table',
    'read_de_table',
    'write_enrichment_table',
    'write_normalized_expression',
    'write_run_parameters',
]
