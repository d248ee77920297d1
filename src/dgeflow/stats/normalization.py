"""
Normalization methods for RNA-seq count data.

Implements the between-sample normalizations used before the negative
binomial model is fitted:
- Conditional quantile normalization (CQN): removes sample-specific GC
  content and gene length bias, then equalizes the residual distributions
- TMM (trimmed mean of M-values): composition-robust scaling factors
- Library size only: plain sequencing-depth scaling

Each method produces two views of the same correction:
- ``log2_offset`` (genes × samples), added to log2 CPM to obtain the
  normalized expression matrix
- ``glm_offset`` (genes × samples, natural log), passed unchanged to the GLM
  so that counts are modelled on their original scale

References:
    - Hansen, Irizarry & Wu (2012) Biostatistics 13(2):204-216 (CQN)
    - Robinson & Oshlack (2010) Genome Biology 11:R25 (TMM)
    - Bolstad et al. (2003) Bioinformatics 19(2):185-193 (quantile normalization)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

import numpy as np
import patsy
from numpy.typing import NDArray
from scipy.stats import rankdata
from statsmodels.regression.quantile_regression import QuantReg

from dgeflow.exceptions import NormalizationError

logger = logging.getLogger(__name__)

__all__ = [
    'NormalizationMethod',
    'NormalizationResult',
    'CQNResult',
    'cqn',
    'tmm_factors',
    'library_size_offsets',
    'quantile_normalization',
    'normalize_counts',
]

LN2 = np.log(2.0)


class NormalizationMethod(Enum):
    """Available normalization methods."""

    NONE = "none"  # library size only
    TMM = "tmm"
    CQN = "cqn"


@dataclass(frozen=True)
class CQNResult:
    """Result of conditional quantile normalization.

    Attributes:
        y: log2 reads per million (genes × samples), pseudo-count 0.5
        offset: log2 correction; ``y + offset`` is the normalized expression
        glm_offset: Natural-log GLM offset (correction plus log library size)
        fitted: Per-sample quantile regression fit of ``y`` on the covariates
        fit_at_median: Fitted value at the median covariate values, per sample
        lib_sizes: Library sizes used
        coefficients: Quantile regression coefficients (n_basis × samples)
    """

    y: NDArray[np.float64]
    offset: NDArray[np.float64]
    glm_offset: NDArray[np.float64]
    fitted: NDArray[np.float64]
    fit_at_median: NDArray[np.float64]
    lib_sizes: NDArray[np.float64]
    coefficients: NDArray[np.float64]

    @property
    def normalized(self) -> NDArray[np.float64]:
        return self.y + self.offset


@dataclass(frozen=True)
class NormalizationResult:
    """Offsets produced by a normalization method.

    Attributes:
        method: Normalization method used
        log2_offset: Added to log2 CPM to give normalized expression
        glm_offset: Natural-log offset for the count GLM
        norm_factors: Per-sample scaling factors (all ones for CQN)
        cqn: Full CQN result when method is CQN
        diagnostics: Additional summary information for provenance
    """

    method: NormalizationMethod
    log2_offset: NDArray[np.float64]
    glm_offset: NDArray[np.float64]
    norm_factors: NDArray[np.float64]
    cqn: CQNResult | None = None
    diagnostics: dict = field(default_factory=dict)


def quantile_normalization(
    data: NDArray[np.float64],
    target_distribution: NDArray[np.float64] | None = None,
) -> NDArray[np.float64]:
    """
    Quantile normalization (Bolstad et al. 2003).

    Replaces each value by the value of the same rank in the target
    distribution, by default the mean of the sorted columns. Ties receive
    the interpolated target value at their average rank. NaN values keep
    their positions and are not used.

    Args:
        data: 2D array (n_features, n_samples)
        target_distribution: Sorted target values. Defaults to the mean of
            the sorted complete rows.

    Returns:
        Array of the same shape with identical column distributions.
    """
    if data.ndim != 2:
        raise ValueError(f"Expected 2D array, got {data.ndim}D")

    if target_distribution is None:
        complete = ~np.isnan(data).any(axis=1)
        source = data[complete] if complete.any() else data
        target = np.nanmean(np.sort(source, axis=0), axis=1)
    else:
        target = np.sort(np.asarray(target_distribution, dtype=float))

    normalized = np.full_like(data, np.nan, dtype=float)
    grid = np.arange(len(target), dtype=float)
    for j in range(data.shape[1]):
        col = data[:, j]
        valid = ~np.isnan(col)
        n_valid = int(valid.sum())
        if n_valid == 0:
            continue
        if n_valid == 1:
            normalized[valid, j] = np.median(target)
            continue
        ranks = rankdata(col[valid], method='average')
        positions = (ranks - 1) * (len(target) - 1) / (n_valid - 1)
        normalized[valid, j] = np.interp(positions, grid, target)

    return normalized


def _covariate_basis(
    gc_content: NDArray[np.float64],
    log_length: NDArray[np.float64],
    df: int,
) -> patsy.DesignMatrix:
    formula = (
        f"cr(gc, df={df}, constraints='center') "
        f"+ cr(loglen, df={df}, constraints='center')"
    )
    try:
        return patsy.dmatrix(formula, {"gc": gc_content, "loglen": log_length})
    except (patsy.PatsyError, ValueError) as e:
        raise NormalizationError(
            f"Cannot build spline basis for GC content and length: {e}"
        ) from e


def cqn(
    counts: NDArray[np.float64],
    gc_content: NDArray[np.float64],
    length: NDArray[np.float64],
    lib_sizes: NDArray[np.float64] | None = None,
    df: int = 3,
    tau: float = 0.5,
    sample_ids: Sequence[str] | None = None,
    max_iter: int = 1000,
) -> CQNResult:
    """
    Conditional quantile normalization.

    For every sample, log2 reads per million are regressed on natural cubic
    spline bases of GC content and log2 gene length by quantile regression
    at ``tau`` (the median by default). The residuals are quantile
    normalized across samples and the fitted function evaluated at the
    median covariate values is added back, so every sample ends up with the
    same covariate-free expression distribution.

    Args:
        counts: Raw counts (genes × samples)
        gc_content: GC fraction per gene
        length: Gene length in bases
        lib_sizes: Library sizes; defaults to column sums
        df: Degrees of freedom of each spline basis
        tau: Regression quantile
        sample_ids: Names used in error messages
        max_iter: Iteration limit for the quantile regression solver

    Returns:
        CQNResult

    Raises:
        NormalizationError: If inputs are inconsistent or the quantile
            regression of a sample fails
    """
    counts = np.asarray(counts, dtype=float)
    gc_content = np.asarray(gc_content, dtype=float)
    length = np.asarray(length, dtype=float)
    n_genes, n_samples = counts.shape
    if gc_content.shape != (n_genes,) or length.shape != (n_genes,):
        raise NormalizationError(
            f"Covariates must have one value per gene ({n_genes}); got "
            f"gc_content {gc_content.shape}, length {length.shape}"
        )
    if not (np.all(np.isfinite(gc_content)) and np.all(length > 0)):
        raise NormalizationError("GC content must be finite and length positive for all genes")
    if sample_ids is None:
        sample_ids = [f"sample_{j}" for j in range(n_samples)]

    lib = counts.sum(axis=0) if lib_sizes is None else np.asarray(lib_sizes, dtype=float)
    if np.any(lib <= 0):
        empty = [sample_ids[j] for j in np.where(lib <= 0)[0]]
        raise NormalizationError(f"Sample(s) with zero library size: {empty}")

    y = np.log2(counts + 0.5) - np.log2(lib / 1e6)[None, :]
    log_length = np.log2(length)

    basis = _covariate_basis(gc_content, log_length, df)
    if basis.shape[1] >= n_genes:
        raise NormalizationError(
            f"CQN needs more genes ({n_genes}) than spline basis columns ({basis.shape[1]})"
        )
    median_basis = patsy.build_design_matrices(
        [basis.design_info],
        {"gc": np.array([np.median(gc_content)]), "loglen": np.array([np.median(log_length)])},
    )[0]
    X = np.asarray(basis)
    X_median = np.asarray(median_basis)

    fitted = np.empty_like(y)
    fit_at_median = np.empty(n_samples)
    coefficients = np.empty((X.shape[1], n_samples))
    for j in range(n_samples):
        try:
            res = QuantReg(y[:, j], X).fit(q=tau, max_iter=max_iter)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise NormalizationError(
                f"Quantile regression failed for sample '{sample_ids[j]}': {e}"
            ) from e
        params = np.asarray(res.params)
        if not np.all(np.isfinite(params)):
            raise NormalizationError(
                f"Quantile regression for sample '{sample_ids[j]}' gave non-finite coefficients"
            )
        coefficients[:, j] = params
        fitted[:, j] = X @ params
        fit_at_median[j] = float(X_median[0] @ params)

    residuals = y - fitted
    normalized = quantile_normalization(residuals) + fit_at_median[None, :]
    offset = normalized - y
    glm_offset = LN2 * (np.log2(lib / 1e6)[None, :] - offset)

    logger.info(
        f"CQN: fitted {n_samples} samples on GC content and log2 length "
        f"(spline df={df}, tau={tau})"
    )
    return CQNResult(
        y=y,
        offset=offset,
        glm_offset=glm_offset,
        fitted=fitted,
        fit_at_median=fit_at_median,
        lib_sizes=lib,
        coefficients=coefficients,
    )


def _tmm_pair(
    obs: NDArray[np.float64],
    ref: NDArray[np.float64],
    lib_obs: float,
    lib_ref: float,
    logratio_trim: float,
    sum_trim: float,
    do_weighting: bool,
    a_cutoff: float,
) -> float:
    with np.errstate(divide='ignore', invalid='ignore'):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]
    if len(log_r) == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = len(log_r)
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)
    if not keep.any():
        return 1.0

    if do_weighting:
        f = np.sum(log_r[keep] / v[keep]) / np.sum(1.0 / v[keep])
    else:
        f = np.mean(log_r[keep])
    if not np.isfinite(f):
        f = 0.0
    return float(2.0 ** f)


def tmm_factors(
    counts: NDArray[np.float64],
    lib_sizes: NDArray[np.float64] | None = None,
    ref_column: int | None = None,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    a_cutoff: float = -1e10,
) -> NDArray[np.float64]:
    """
    TMM normalization factors (edgeR ``calcNormFactors(method="TMM")``).

    The reference sample is the one whose upper quartile of
    counts-per-library is closest to the mean upper quartile. For every
    other sample, gene-wise log ratios against the reference are trimmed by
    ``logratio_trim`` (M values) and ``sum_trim`` (A values) and their
    precision-weighted mean is the log2 factor. Factors are scaled to a
    geometric mean of one.

    Returns:
        Normalization factors, one per sample
    """
    counts = np.asarray(counts, dtype=float)
    lib = counts.sum(axis=0) if lib_sizes is None else np.asarray(lib_sizes, dtype=float)
    if np.any(lib <= 0):
        raise NormalizationError("TMM requires every sample to have a positive library size")

    nonzero = counts.sum(axis=1) > 0
    x = counts[nonzero]
    if x.shape[0] == 0:
        return np.ones(counts.shape[1])

    if ref_column is None:
        f75 = np.quantile(x / lib[None, :], 0.75, axis=0)
        ref_column = int(np.argmin(np.abs(f75 - f75.mean())))

    factors = np.array([
        _tmm_pair(
            x[:, j], x[:, ref_column], lib[j], lib[ref_column],
            logratio_trim, sum_trim, do_weighting, a_cutoff,
        )
        for j in range(x.shape[1])
    ])
    return factors / np.exp(np.mean(np.log(factors)))


def library_size_offsets(
    counts: NDArray[np.float64],
    norm_factors: NDArray[np.float64] | None = None,
) -> NDArray[np.float64]:
    """Natural-log GLM offsets from (effective) library sizes, genes × samples."""
    counts = np.asarray(counts, dtype=float)
    lib = counts.sum(axis=0)
    if norm_factors is not None:
        lib = lib * np.asarray(norm_factors, dtype=float)
    if np.any(lib <= 0):
        raise NormalizationError("Library sizes must be positive")
    return np.broadcast_to(np.log(lib)[None, :], counts.shape).copy()


def normalize_counts(
    counts: NDArray[np.float64],
    method: NormalizationMethod | str,
    gc_content: NDArray[np.float64] | None = None,
    length: NDArray[np.float64] | None = None,
    sample_ids: Sequence[str] | None = None,
    cqn_df: int = 3,
    cqn_tau: float = 0.5,
) -> NormalizationResult:
    """
    Run the configured normalization and return its offsets.

    Raises:
        NormalizationError: If CQN is requested without covariates, or any
            method fails
    """
    method = NormalizationMethod(method)
    counts = np.asarray(counts, dtype=float)
    n_samples = counts.shape[1]

    if method == NormalizationMethod.CQN:
        if gc_content is None or length is None:
            raise NormalizationError("CQN requires GC content and gene length for every gene")
        result = cqn(counts, gc_content, length, df=cqn_df, tau=cqn_tau, sample_ids=sample_ids)
        return NormalizationResult(
            method=method,
            log2_offset=result.offset,
            glm_offset=result.glm_offset,
            norm_factors=np.ones(n_samples),
            cqn=result,
            diagnostics={
                "spline_df": cqn_df,
                "tau": cqn_tau,
                "fit_at_median": result.fit_at_median.tolist(),
            },
        )

    if method == NormalizationMethod.TMM:
        factors = tmm_factors(counts)
    else:
        factors = np.ones(n_samples)

    log2_offset = np.broadcast_to(-np.log2(factors)[None, :], counts.shape).copy()
    logger.info(f"{method.value} normalization factors: {np.round(factors, 4).tolist()}")
    return NormalizationResult(
        method=method,
        log2_offset=log2_offset,
        glm_offset=library_size_offsets(counts, factors),
        norm_factors=factors,
        diagnostics={"norm_factors": factors.tolist()},
    )
