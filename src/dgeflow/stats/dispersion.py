"""
Negative binomial dispersion estimation and quasi-likelihood GLM fitting.

Statistical Framework:
    Counts for gene g in sample i are modelled as

        y_gi ~ NB(mu_gi, phi_g),   log(mu_gi) = x_i' beta_g + offset_gi

    where phi_g is a trended NB dispersion (a smooth function of average
    expression) and the offset carries library size and normalization. On
    top of the NB variance, each gene gets a quasi-likelihood (QL)
    dispersion s2_g = deviance_g / df_residual that absorbs gene-specific
    extra variability. The QL dispersions are squeezed towards a trend by
    empirical Bayes (limma's fitFDist / squeezeVar), giving posterior
    dispersions with increased degrees of freedom.

Robust mode:
    Genes whose raw QL dispersion is extreme relative to the prior (upper
    tail of the scaled F distribution) are not excluded. Instead their
    individual prior df is reduced in proportion to the BH-adjusted tail
    probability, so outliers are shrunk less and keep their own variance.

Per-gene model failures (solver exceptions, non-convergence, non-finite
estimates) are recorded as NaN with ``converged=False`` and an ``issue``
message. They never abort the batch.

References:
    - Smyth (2004) Stat Appl Genet Mol Biol 3:3 (empirical Bayes moderation)
    - Lund et al. (2012) Stat Appl Genet Mol Biol 11(5) (QL F-tests)
    - Phipson et al. (2016) Ann Appl Stat 10(2):946-963 (robust hyperparameters)
    - Chen, Lun & Smyth (2016) F1000Research 5:1438 (edgeR QL pipeline)
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
import statsmodels.api as sm
from joblib import Parallel, delayed
from numpy.typing import NDArray
from scipy import stats as scipy_stats
from scipy.special import digamma, polygamma
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.stats.multitest import multipletests
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from dgeflow.core.design import PairedDesign

logger = logging.getLogger(__name__)

__all__ = [
    'DispersionEstimate',
    'QLFit',
    'ave_log_cpm',
    'estimate_nb_dispersion',
    'trigamma_inverse',
    'fit_f_dist',
    'squeeze_var',
    'fit_glm_ql',
]

MIN_DISPERSION = 1e-4
TREND_MIN_GENES = 50


@dataclass(frozen=True)
class DispersionEstimate:
    """NB dispersion estimates.

    Attributes:
        gene: Per-gene moment estimates (floored)
        trended: Dispersion trend evaluated at each gene (used by the GLM)
        common: Pooled dispersion over all genes
        ave_log_cpm: Average log2 CPM per gene (trend covariate)
        method: "lowess" or "common" (too few genes for a trend)
    """

    gene: NDArray[np.float64]
    trended: NDArray[np.float64]
    common: float
    ave_log_cpm: NDArray[np.float64]
    method: str


@dataclass
class QLFit:
    """Quasi-likelihood negative binomial GLM fit for all genes.

    Coefficients are on the natural log scale. Unavailable genes carry NaN
    in every per-gene numeric field and ``converged=False``.
    """

    feature_ids: pd.Index
    design: PairedDesign
    coefficients: NDArray[np.float64]
    unscaled_se: NDArray[np.float64]
    deviance: NDArray[np.float64]
    df_residual: int
    dispersion: NDArray[np.float64]
    ave_log_cpm: NDArray[np.float64]
    s2: NDArray[np.float64]
    s2_prior: NDArray[np.float64]
    df_prior: NDArray[np.float64]
    s2_post: NDArray[np.float64]
    df_total: NDArray[np.float64]
    converged: NDArray[np.bool_]
    issue: list[str | None]
    robust: bool = True
    hyperparameters: dict = field(default_factory=dict)

    @property
    def n_genes(self) -> int:
        return len(self.feature_ids)

    @property
    def n_failed(self) -> int:
        return int((~self.converged).sum())

    def coef_se(self, coef: int | None = None) -> NDArray[np.float64]:
        """Moderated standard error of a coefficient (default: treatment)."""
        coef = self.design.coef if coef is None else coef
        return self.unscaled_se[:, coef] * np.sqrt(self.s2_post)


def ave_log_cpm(
    counts: NDArray[np.float64],
    offset: NDArray[np.float64] | None = None,
    prior_count: float = 2.0,
) -> NDArray[np.float64]:
    """
    Average log2 CPM per gene (edgeR ``aveLogCPM`` without the NB refit).

    Effective library sizes are ``exp(offset)`` when an offset is given,
    otherwise column sums. The prior count is scaled by relative library
    size.
    """
    counts = np.asarray(counts, dtype=float)
    if offset is None:
        lib = np.broadcast_to(counts.sum(axis=0)[None, :], counts.shape)
    else:
        lib = np.exp(np.asarray(offset, dtype=float))
    prior = prior_count * lib / lib.mean(axis=1, keepdims=True)
    return np.mean(np.log2((counts + prior) / (lib + 2 * prior) * 1e6), axis=1)


def _trend(x: NDArray[np.float64], y: NDArray[np.float64], frac: float) -> NDArray[np.float64]:
    return lowess(y, x, frac=frac, return_sorted=False)


def _poisson_means(
    y: NDArray[np.float64],
    X: NDArray[np.float64],
    offset: NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64]] | None:
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            warnings.simplefilter("ignore", RuntimeWarning)
            res = sm.GLM(y, X, family=sm.families.Poisson(), offset=offset).fit()
            mu = np.asarray(res.fittedvalues)
            hat = np.asarray(res.get_influence().hat_matrix_diag)
    except (ValueError, np.linalg.LinAlgError, FloatingPointError, OverflowError):
        return None
    if not np.all(np.isfinite(mu)):
        return None
    return mu, hat


def estimate_nb_dispersion(
    counts: NDArray[np.float64],
    design: PairedDesign | NDArray[np.float64],
    offset: NDArray[np.float64],
    min_dispersion: float = MIN_DISPERSION,
    trend_min_genes: int = TREND_MIN_GENES,
    span: float = 0.3,
    n_jobs: int = 1,
) -> DispersionEstimate:
    """
    Trended negative binomial dispersion.

    Each gene gets a leverage-adjusted Pearson moment estimate
    ``sum(((y - mu)^2 - (1 - h) * mu) / mu^2) / df_residual`` with mu and
    the hat values h from a Poisson GLM under the same design and offset.
    Since ``sum(1 - h) == df_residual``, the Poisson part of the residual
    variance is removed without bias. The square root (biological
    coefficient of variation) is smoothed against average log CPM with
    lowess. With fewer than ``trend_min_genes`` usable genes the pooled
    estimate is used for every gene.

    Args:
        counts: Raw counts (genes × samples)
        design: Design matrix or PairedDesign
        offset: Natural-log GLM offsets (genes × samples)
        min_dispersion: Lower bound for every estimate
        trend_min_genes: Minimum genes needed to fit a trend
        span: lowess span
        n_jobs: joblib workers for the Poisson fits

    Returns:
        DispersionEstimate
    """
    X = design.X if isinstance(design, PairedDesign) else np.asarray(design, dtype=float)
    counts = np.asarray(counts, dtype=float)
    offset = np.asarray(offset, dtype=float)
    n_genes, n_samples = counts.shape
    df_residual = n_samples - X.shape[1]
    if df_residual < 1:
        raise ValueError(f"Design leaves no residual degrees of freedom (df={df_residual})")

    alc = ave_log_cpm(counts, offset)
    means = Parallel(n_jobs=n_jobs)(
        delayed(_poisson_means)(counts[g], X, offset[g]) for g in range(n_genes)
    )

    pearson = np.full(n_genes, np.nan)
    for g, fit in enumerate(means):
        if fit is None:
            continue
        mu, hat = fit
        if np.any(mu <= 0) or not np.all(np.isfinite(hat)):
            continue
        pearson[g] = np.sum(((counts[g] - mu) ** 2 - (1.0 - hat) * mu) / mu ** 2)

    usable = np.isfinite(pearson)
    if not usable.any():
        logger.warning("No gene allows a dispersion estimate; using the minimum dispersion")
        floor = np.full(n_genes, min_dispersion)
        return DispersionEstimate(floor, floor.copy(), min_dispersion, alc, "common")

    common = max(min_dispersion, float(np.sum(pearson[usable]) / (df_residual * usable.sum())))
    gene = np.where(usable, np.maximum(pearson / df_residual, min_dispersion), common)

    if usable.sum() >= trend_min_genes:
        bcv = _trend(alc[usable], np.sqrt(gene[usable]), frac=span)
        trended = np.interp(alc, np.sort(alc[usable]), bcv[np.argsort(alc[usable])])
        trended = np.maximum(trended ** 2, min_dispersion)
        method = "lowess"
    else:
        trended = np.full(n_genes, common)
        method = "common"

    logger.info(
        f"NB dispersion: common={common:.4g}, trend={method}, "
        f"range=[{trended.min():.4g}, {trended.max():.4g}]"
    )
    return DispersionEstimate(gene, trended, common, alc, method)


def trigamma_inverse(x: float, tol: float = 1e-8, max_iter: int = 50) -> float:
    """
    Solve trigamma(y) = x for y (limma ``trigammaInverse``).

    Newton iteration on 1/trigamma(y), which is convex and nearly linear,
    started from y = 0.5 + 1/x. Very large and very small x use the
    asymptotic forms directly.
    """
    if not np.isfinite(x) or x <= 0:
        return np.inf
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(max_iter):
        tri = polygamma(1, y)
        step = tri * (1.0 - tri / x) / polygamma(2, y)
        y = y + step
        if -step / y < tol:
            break
    return float(y)


def fit_f_dist(
    sigma2: NDArray[np.float64],
    df: float,
    covariate: NDArray[np.float64] | None = None,
    trend_min_genes: int = TREND_MIN_GENES,
    span: float = 0.3,
) -> tuple[float, NDArray[np.float64]]:
    """
    Moment estimates of the scaled-F prior (limma ``fitFDist``).

    Assumes s2_g ~ s0_g^2 * F(df, d0). With a covariate, log(s0^2) follows a
    lowess trend in the covariate; otherwise it is constant.

    Algorithm:
        1. e = log(s2) - digamma(df/2) + log(df/2)
        2. trend = lowess(e ~ covariate) or mean(e)
        3. evar = var(e - trend) - trigamma(df/2)
        4. d0 = 2 * trigamma_inverse(evar)   (inf when evar <= 0)
        5. s0^2 = exp(trend + digamma(d0/2) - log(d0/2))

    Args:
        sigma2: Sample variances; non-positive or non-finite values are
            ignored when estimating
        df: Residual degrees of freedom (shared by all genes)
        covariate: Optional trend covariate (e.g. average log CPM)

    Returns:
        (d0, s0_sq) where s0_sq has one entry per input variance
    """
    sigma2 = np.asarray(sigma2, dtype=float)
    n = len(sigma2)
    valid = np.isfinite(sigma2) & (sigma2 > 0)
    if covariate is not None:
        covariate = np.asarray(covariate, dtype=float)
        valid &= np.isfinite(covariate)

    if valid.sum() < 3:
        fallback = float(np.median(sigma2[valid])) if valid.any() else 1.0
        return np.inf, np.full(n, fallback)

    e = np.log(sigma2[valid]) - digamma(df / 2.0) + np.log(df / 2.0)
    use_trend = covariate is not None and valid.sum() >= trend_min_genes
    if use_trend:
        fitted = _trend(covariate[valid], e, frac=span)
        order = np.argsort(covariate[valid])
        trend_all = np.interp(covariate, covariate[valid][order], fitted[order])
        trend_valid = fitted
    else:
        trend_all = np.full(n, np.mean(e))
        trend_valid = trend_all[valid]

    evar = np.var(e - trend_valid, ddof=1) - polygamma(1, df / 2.0)
    if evar <= 0:
        return np.inf, np.exp(trend_all)

    d0 = 2.0 * trigamma_inverse(evar)
    if not np.isfinite(d0) or d0 > 1e10:
        return np.inf, np.exp(trend_all)
    s0_sq = np.exp(trend_all + digamma(d0 / 2.0) - np.log(d0 / 2.0))
    return float(d0), s0_sq


def squeeze_var(
    sigma2: NDArray[np.float64],
    df: float,
    d0: float | NDArray[np.float64],
    s0_sq: float | NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Posterior variances (limma ``squeezeVar``).

        s2_post = (d0 * s0^2 + df * s2) / (d0 + df)

    ``d0`` may be per gene (robust mode). Where d0 is infinite the posterior
    equals the prior and the total df is infinite.

    Returns:
        (s2_post, df_total), both per gene
    """
    sigma2 = np.asarray(sigma2, dtype=float)
    d0 = np.broadcast_to(np.asarray(d0, dtype=float), sigma2.shape)
    s0_sq = np.broadcast_to(np.asarray(s0_sq, dtype=float), sigma2.shape)

    infinite = np.isinf(d0)
    with np.errstate(invalid='ignore'):
        s2_post = np.where(
            infinite,
            s0_sq,
            (np.where(infinite, 0.0, d0) * s0_sq + df * sigma2) / (np.where(infinite, 1.0, d0) + df),
        )
    df_total = np.where(infinite, np.inf, d0 + df)
    return s2_post, df_total


def _robust_prior_df(
    sigma2: NDArray[np.float64],
    df: float,
    d0: float,
    s0_sq: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Per-gene prior df, reduced for genes with outlying large variances."""
    prior = np.full(sigma2.shape, d0, dtype=float)
    valid = np.isfinite(sigma2)
    if not valid.any():
        return prior
    d0_eff = min(d0, df * valid.sum())
    tail = scipy_stats.f.sf(sigma2[valid] / s0_sq[valid], df, d0_eff)
    q = multipletests(tail, method='fdr_bh')[1]
    prior[valid] = d0_eff * np.minimum(1.0, q)
    return prior


@dataclass
class _GeneFit:
    coefficients: NDArray[np.float64]
    unscaled_se: NDArray[np.float64]
    deviance: float
    converged: bool
    issue: str | None = None


def _fit_gene(
    y: NDArray[np.float64],
    X: NDArray[np.float64],
    offset: NDArray[np.float64],
    dispersion: float,
    maxiter: int,
) -> _GeneFit:
    n_params = X.shape[1]
    failed = np.full(n_params, np.nan)
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            warnings.simplefilter("ignore", RuntimeWarning)
            res = sm.GLM(
                y, X,
                family=sm.families.NegativeBinomial(alpha=dispersion),
                offset=offset,
            ).fit(maxiter=maxiter, scale=1.0)
    except (ValueError, np.linalg.LinAlgError, FloatingPointError, OverflowError) as e:
        return _GeneFit(failed, failed.copy(), np.nan, False, f"fit failed: {e}")

    params = np.asarray(res.params, dtype=float)
    bse = np.asarray(res.bse, dtype=float)
    deviance = float(res.deviance)
    if not getattr(res, "converged", True):
        return _GeneFit(failed, failed.copy(), np.nan, False, f"did not converge in {maxiter} iterations")
    if not (np.all(np.isfinite(params)) and np.all(np.isfinite(bse)) and np.isfinite(deviance)):
        return _GeneFit(failed, failed.copy(), np.nan, False, "non-finite estimates")
    return _GeneFit(params, bse, max(deviance, 0.0), True)


def fit_glm_ql(
    counts: NDArray[np.float64],
    design: PairedDesign,
    offset: NDArray[np.float64],
    dispersion: NDArray[np.float64] | float,
    feature_ids: pd.Index | None = None,
    robust: bool = True,
    abundance_trend: bool = True,
    n_jobs: int = 1,
    maxiter: int = 100,
) -> QLFit:
    """
    Fit the QL negative binomial GLM for every gene.

    Args:
        counts: Raw counts (genes × samples), columns in design order
        design: Paired design
        offset: Natural-log offsets (genes × samples)
        dispersion: NB dispersion per gene (or one value for all)
        feature_ids: Gene ids; defaults to a RangeIndex
        robust: Robust empirical Bayes (reduced prior df for outliers)
        abundance_trend: Trend the QL prior on average log CPM
        n_jobs: joblib workers for the per-gene fits
        maxiter: IRLS iteration limit

    Returns:
        QLFit
    """
    counts = np.asarray(counts, dtype=float)
    offset = np.asarray(offset, dtype=float)
    n_genes, n_samples = counts.shape
    if n_samples != design.n_samples:
        raise ValueError(
            f"Count matrix has {n_samples} samples but design has {design.n_samples}"
        )
    if offset.shape != counts.shape:
        raise ValueError(f"offset shape {offset.shape} does not match counts {counts.shape}")
    df_residual = design.df_residual
    if df_residual < 1:
        raise ValueError(f"Design leaves no residual degrees of freedom (df={df_residual})")

    dispersion = np.broadcast_to(np.asarray(dispersion, dtype=float), (n_genes,)).copy()
    feature_ids = pd.RangeIndex(n_genes) if feature_ids is None else pd.Index(feature_ids)

    logger.info(f"Fitting NB GLM for {n_genes} genes (n_jobs={n_jobs})")
    fits = Parallel(n_jobs=n_jobs)(
        delayed(_fit_gene)(counts[g], design.X, offset[g], dispersion[g], maxiter)
        for g in range(n_genes)
    )

    coefficients = np.vstack([f.coefficients for f in fits]) if fits else np.empty((0, design.n_params))
    unscaled_se = np.vstack([f.unscaled_se for f in fits]) if fits else np.empty((0, design.n_params))
    deviance = np.array([f.deviance for f in fits], dtype=float)
    converged = np.array([f.converged for f in fits], dtype=bool)
    issue = [f.issue for f in fits]

    n_failed = int((~converged).sum())
    if n_failed:
        failed_ids = feature_ids[~converged]
        logger.warning(
            f"{n_failed} gene(s) could not be fitted and are reported as unavailable: "
            f"{failed_ids[:5].tolist()}{' ...' if n_failed > 5 else ''}"
        )

    alc = ave_log_cpm(counts, offset)
    s2 = deviance / df_residual
    d0, s0_sq = fit_f_dist(s2, df_residual, covariate=alc if abundance_trend else None)

    if robust:
        df_prior = _robust_prior_df(s2, df_residual, d0, s0_sq)
    else:
        df_prior = np.full(n_genes, d0)
    s2_post, df_total = squeeze_var(s2, df_residual, df_prior, s0_sq)

    df_pooled = float(df_residual * converged.sum())
    if df_pooled > 0:
        df_total = np.minimum(df_total, df_pooled)

    s2_post[~converged] = np.nan
    df_total = np.where(converged, df_total, np.nan)

    logger.info(
        f"QL empirical Bayes: prior df={d0:.4g}, median prior s2={np.median(s0_sq):.4g}"
        f"{' (robust)' if robust else ''}"
    )
    return QLFit(
        feature_ids=feature_ids,
        design=design,
        coefficients=coefficients,
        unscaled_se=unscaled_se,
        deviance=deviance,
        df_residual=df_residual,
        dispersion=dispersion,
        ave_log_cpm=alc,
        s2=s2,
        s2_prior=s0_sq,
        df_prior=df_prior,
        s2_post=s2_post,
        df_total=df_total,
        converged=converged,
        issue=issue,
        robust=robust,
        hyperparameters={"df_prior": d0, "s2_prior_median": float(np.median(s0_sq))},
    )
