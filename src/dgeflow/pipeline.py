"""
End-to-end orchestration of the differential expression workflow.

Stages (each receives the outputs of the previous one and the frozen
configuration):

    1. Load and align counts, sample sheet and annotation
    2. Low-expression filter
    3. Covariate bias diagnostic (reported only)
    4. Normalization (CQN, TMM or library size)
    5. NB dispersion trend and QL GLM fit
    6. TREAT differential test
    7. Gene-set enrichment for every (universe, subset) family
    8. Write result tables and run parameters

Input errors surface before any statistics run. Outputs are written only
after every stage has finished.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from importlib import metadata as importlib_metadata
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

import dgeflow
from dgeflow.cli.config import PipelineConfig, config_to_dict
from dgeflow.core.annotation import GeneAnnotation
from dgeflow.core.design import PairedDesign, build_paired_design
from dgeflow.core.gene_sets import GeneSetCollection
from dgeflow.core.matrix import CountMatrix
from dgeflow.enrichment.enrichment_tests import EnrichmentResult, run_enrichment_families
from dgeflow.exceptions import ConfigError, DegenerateDataError
from dgeflow.io.loaders import (
    align_inputs,
    load_count_matrix,
    load_gene_annotation,
    load_gene_sets,
    load_sample_sheet,
)
from dgeflow.io.writers import (
    read_de_table,
    write_de_table,
    write_enrichment_table,
    write_normalized_expression,
    write_run_parameters,
)
from dgeflow.quality.filtering import ExpressionFilter, ExpressionFilterResult
from dgeflow.stats.diagnostics import covariate_pc_association, recommend_cqn
from dgeflow.stats.differential import DifferentialResult, run_differential_test
from dgeflow.stats.dispersion import DispersionEstimate, QLFit, estimate_nb_dispersion, fit_glm_ql
from dgeflow.stats.normalization import NormalizationResult, normalize_counts

logger = logging.getLogger(__name__)

__all__ = [
    'PipelineResult',
    'run_pipeline',
    'run_differential_stage',
    'run_enrichment_stage',
    'write_enrichment_results',
]

_VERSIONED_PACKAGES = ['numpy', 'pandas', 'scipy', 'statsmodels', 'scikit-learn', 'joblib']


@dataclass
class PipelineResult:
    """Everything a run produced, stage by stage."""
    counts: CountMatrix
    annotation: GeneAnnotation
    filter_result: ExpressionFilterResult
    design: PairedDesign
    normalization: NormalizationResult
    dispersion: DispersionEstimate
    fit: QLFit
    differential: DifferentialResult
    enrichment: dict[tuple[str, str], EnrichmentResult] = field(default_factory=dict)
    diagnostics: pd.DataFrame | None = None
    outputs: dict[str, Path] = field(default_factory=dict)
    parameters: dict[str, Any] = field(default_factory=dict)


def _require(path: Path | None, name: str) -> Path:
    if path is None:
        raise ConfigError(f"paths.{name} is required")
    return Path(path)


def _versions() -> dict[str, str]:
    versions = {'dgeflow': dgeflow.__version__}
    for pkg in _VERSIONED_PACKAGES:
        try:
            versions[pkg] = importlib_metadata.version(pkg)
        except importlib_metadata.PackageNotFoundError:
            versions[pkg] = 'unknown'
    return versions


def _run_diagnostic(matrix: CountMatrix, annotation: GeneAnnotation,
                    config: PipelineConfig) -> tuple[pd.DataFrame | None, bool | None]:
    if matrix.n_features < 2 or matrix.n_samples < 3:
        logger.info("Skipping covariate bias diagnostic (too few genes or samples)")
        return None, None
    association = covariate_pc_association(
        matrix.cpm(log=True),
        {
            'gc_content': annotation.covariate('gc_content'),
            'log_length': np.log2(annotation.covariate('length')),
        },
    )
    recommended = recommend_cqn(association, r2_threshold=config.normalization.diagnostic_r2)
    if recommended and config.normalization.method != 'cqn':
        logger.warning(
            f"Technical covariates track leading PCs but normalization.method is "
            f"'{config.normalization.method}'"
        )
    return association, recommended


def run_differential_stage(
    matrix: CountMatrix,
    annotation: GeneAnnotation,
    config: PipelineConfig,
) -> dict[str, Any]:
    """
    Filter, normalize, fit and test an aligned count matrix.

    Args:
        matrix: Counts restricted to the analysis samples, with metadata
        annotation: Annotation aligned to ``matrix`` rows
        config: Run configuration

    Returns:
        Dict of stage outputs keyed by PipelineResult field name

    Raises:
        DegenerateDataError: If no gene passes the expression filter
    """
    expression_filter = ExpressionFilter(
        min_cpm=config.filter.min_cpm,
        min_samples=config.filter.min_samples,
    )
    filter_result = expression_filter.get_passing_genes(matrix)
    filtered = expression_filter.apply(matrix)
    if filtered.n_features == 0:
        raise DegenerateDataError(
            f"No gene passed the expression filter (CPM > {config.filter.min_cpm})"
        )
    annotation = annotation.align(filtered.feature_ids)

    design = build_paired_design(filtered.sample_metadata, config.design)
    diagnostics, recommended = _run_diagnostic(filtered, annotation, config)

    normalization = normalize_counts(
        filtered.counts,
        config.normalization.method,
        gc_content=annotation.covariate('gc_content'),
        length=annotation.covariate('length'),
        sample_ids=list(filtered.sample_ids),
        cqn_df=config.normalization.spline_df,
        cqn_tau=config.normalization.tau,
    )

    dispersion = estimate_nb_dispersion(
        filtered.counts,
        design,
        normalization.glm_offset,
        min_dispersion=config.model.min_dispersion,
        n_jobs=config.model.n_jobs,
    )
    fit = fit_glm_ql(
        filtered.counts,
        design,
        normalization.glm_offset,
        dispersion.trended,
        feature_ids=filtered.feature_ids,
        robust=config.model.robust,
        n_jobs=config.model.n_jobs,
    )
    differential = run_differential_test(
        fit,
        lfc=config.model.lfc,
        alpha=config.model.alpha,
        annotation=annotation,
    )
    return {
        'counts': filtered,
        'annotation': annotation,
        'filter_result': filter_result,
        'design': design,
        'normalization': normalization,
        'dispersion': dispersion,
        'fit': fit,
        'differential': differential,
        'diagnostics': diagnostics,
        'cqn_recommended': recommended,
    }


def _load_configured_gene_sets(config: PipelineConfig) -> GeneSetCollection:
    return load_gene_sets(
        _require(config.paths.gene_sets, 'gene_sets'),
        config.enrichment.universe_map,
    )


def run_enrichment_stage(
    de_result: DifferentialResult | pd.DataFrame | Path,
    config: PipelineConfig,
    gene_sets: GeneSetCollection | None = None,
) -> dict[tuple[str, str], EnrichmentResult]:
    """
    Run every configured enrichment family on a DE result or DE table file.

    ``gene_sets`` defaults to the collection named by ``config.paths.gene_sets``.
    """
    if isinstance(de_result, (str, Path)):
        de_result = read_de_table(Path(de_result))
    if gene_sets is None:
        gene_sets = _load_configured_gene_sets(config)
    return run_enrichment_families(
        de_result,
        gene_sets,
        alphas=config.enrichment.alpha,
        subsets=config.enrichment.subsets,
        bias_covariate=config.enrichment.bias_covariate,
        method=config.enrichment.method,
        pwf_bin_size=config.enrichment.pwf_bin_size,
        n_jobs=config.enrichment.n_jobs,
    )


def write_enrichment_results(
    results: dict[tuple[str, str], EnrichmentResult],
    output_dir: Path,
    prefix: str,
) -> dict[str, Path]:
    outputs = {}
    for (universe, subset), result in results.items():
        path = Path(output_dir) / f"{prefix}.{universe}.{subset}.enrichment.tsv"
        write_enrichment_table(result, path)
        outputs[f"enrichment.{universe}.{subset}"] = path
    return outputs


def run_pipeline(config: PipelineConfig, write_outputs: bool = True) -> PipelineResult:
    """
    Run the full workflow described by ``config``.

    Args:
        config: Validated configuration
        write_outputs: Write result tables to ``config.paths.output_dir``

    Returns:
        PipelineResult

    Raises:
        ConfigError: If required paths are missing
        InputFormatError, AnnotationError, DesignError: On invalid inputs
        DegenerateDataError: If nothing is left to analyse
        NormalizationError: If normalization fails
    """
    started = datetime.now()
    counts_path = _require(config.paths.counts, 'counts')
    sheet_path = _require(config.paths.sample_sheet, 'sample_sheet')
    annotation_path = _require(config.paths.annotation, 'annotation')
    sample_sheet = load_sample_sheet(sheet_path, required_columns=config.design.required_columns)
    counts = load_count_matrix(counts_path)
    annotation = load_gene_annotation(annotation_path)
    gene_sets = _load_configured_gene_sets(config) if config.enrichment.enabled else None
    matrix, annotation = align_inputs(counts, annotation, sample_sheet, config.design)

    stages = run_differential_stage(matrix, annotation, config)
    differential: DifferentialResult = stages['differential']

    enrichment: dict[tuple[str, str], EnrichmentResult] = {}
    if config.enrichment.enabled:
        enrichment = run_enrichment_stage(differential, config, gene_sets)

    parameters = {
        'started': started.isoformat(timespec='seconds'),
        'finished': datetime.now().isoformat(timespec='seconds'),
        'versions': _versions(),
        'config': config_to_dict(config),
        'samples': list(stages['counts'].sample_ids),
        'design_columns': stages['design'].col_names,
        'contrast': differential.contrast,
        'filter': {
            'n_input': matrix.n_features,
            'n_passed': stages['filter_result'].n_passed,
            **stages['filter_result'].parameters,
        },
        'normalization': {
            'method': stages['normalization'].method.value,
            'cqn_recommended': stages['cqn_recommended'],
            **stages['normalization'].diagnostics,
        },
        'dispersion': {
            'common': stages['dispersion'].common,
            'trend': stages['dispersion'].method,
        },
        'ql': stages['fit'].hyperparameters,
        'differential': differential.summary(),
        'enrichment': {
            f"{u}.{s}": {
                'alpha': r.alpha,
                'tested': len(r.table),
                'significant': int(r.table['significant'].sum()),
                'n_de': r.n_de,
                'pwf_direction': r.pwf.direction if r.pwf is not None else None,
            }
            for (u, s), r in enrichment.items()
        },
    }

    outputs: dict[str, Path] = {}
    if write_outputs:
        out_dir = Path(config.paths.output_dir)
        prefix = differential.contrast
        outputs['de'] = out_dir / f"{prefix}.de.tsv"
        write_de_table(differential, outputs['de'])
        outputs['normalized_expression'] = out_dir / "normalized_expression.tsv"
        write_normalized_expression(
            stages['counts'], stages['normalization'].log2_offset, outputs['normalized_expression']
        )
        outputs.update(write_enrichment_results(enrichment, out_dir, prefix))
        outputs['run_parameters'] = out_dir / "run_parameters.json"
        parameters['outputs'] = {k: str(v) for k, v in outputs.items()}
        write_run_parameters(parameters, outputs['run_parameters'])

    return PipelineResult(
        counts=stages['counts'],
        annotation=stages['annotation'],
        filter_result=stages['filter_result'],
        design=stages['design'],
        normalization=stages['normalization'],
        dispersion=stages['dispersion'],
        fit=stages['fit'],
        differential=differential,
        enrichment=enrichment,
        diagnostics=stages['diagnostics'],
        outputs=outputs,
        parameters=parameters,
    )
