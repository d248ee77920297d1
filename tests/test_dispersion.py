"""
Tests for NB dispersion estimation, empirical Bayes moderation and the QL
GLM fit.
"""

import numpy as np
import pandas as pd
import pytest
import statsmodels.api as sm
from scipy.special import polygamma

from dgeflow.core.design import ExperimentDesign, build_paired_design
from dgeflow.stats import dispersion as dispersion_module
from dgeflow.stats.dispersion import (
    ave_log_cpm,
    estimate_nb_dispersion,
    fit_f_dist,
    fit_glm_ql,
    squeeze_var,
    trigamma_inverse,
)
from dgeflow.stats.normalization import normalize_counts

from conftest import make_sample_sheet, simulate_paired_counts


@pytest.fixture(scope="module")
def fitted():
    data = simulate_paired_counts(n_genes=200, n_replicates=3, n_de=20, seed=3)
    matrix = data['matrix']
    design = build_paired_design(matrix.sample_metadata, ExperimentDesign())
    norm = normalize_counts(matrix.counts, "tmm")
    disp = estimate_nb_dispersion(matrix.counts, design, norm.glm_offset)
    return data, design, norm, disp


class TestTrigammaInverse:
    """trigamma_inverse()"""

    @pytest.mark.parametrize("x", [0.05, 0.5, 1.0, 4.0, 50.0])
    def test_inverts_trigamma(self, x):
        y = trigamma_inverse(x)
        assert float(polygamma(1, y)) == pytest.approx(x, rel=1e-6)

    def test_non_positive_is_infinite(self):
        assert np.isinf(trigamma_inverse(0.0))
        assert np.isinf(trigamma_inverse(-1.0))


class TestFitFDist:
    """fit_f_dist() moment estimates."""

    def test_recovers_prior(self):
        rng = np.random.default_rng(11)
        df, d0, s0 = 4.0, 10.0, 0.5
        sigma2 = s0 * rng.f(df, d0, size=20000)
        d0_hat, s0_hat = fit_f_dist(sigma2, df)
        assert d0_hat == pytest.approx(d0, rel=0.3)
        assert np.median(s0_hat) == pytest.approx(s0, rel=0.1)

    def test_no_extra_variation_gives_infinite_prior(self):
        rng = np.random.default_rng(12)
        df = 4.0
        sigma2 = 0.3 * rng.chisquare(df, size=50000) / df
        d0_hat, s0_hat = fit_f_dist(sigma2, df)
        assert d0_hat > 50 or np.isinf(d0_hat)
        assert np.median(s0_hat) == pytest.approx(0.3, rel=0.1)

    def test_too_few_values(self):
        d0, s0 = fit_f_dist(np.array([0.5, np.nan]), 2.0)
        assert np.isinf(d0)
        np.testing.assert_allclose(s0, [0.5, 0.5])


class TestSqueezeVar:
    """squeeze_var()"""

    def test_weighted_average(self):
        s2_post, df_total = squeeze_var(np.array([1.0, 4.0]), 2.0, 6.0, 2.0)
        np.testing.assert_allclose(s2_post, [(6 * 2 + 2 * 1) / 8, (6 * 2 + 2 * 4) / 8])
        np.testing.assert_allclose(df_total, [8.0, 8.0])

    def test_infinite_prior_df(self):
        s2_post, df_total = squeeze_var(np.array([1.0, 4.0]), 2.0, np.inf, np.array([2.0, 3.0]))
        np.testing.assert_allclose(s2_post, [2.0, 3.0])
        assert np.all(np.isinf(df_total))

    def test_zero_prior_df_keeps_gene_variance(self):
        s2_post, df_total = squeeze_var(np.array([1.0, 4.0]), 2.0, np.array([0.0, 0.0]), 2.0)
        np.testing.assert_allclose(s2_post, [1.0, 4.0])
        np.testing.assert_allclose(df_total, [2.0, 2.0])


class TestDispersion:
    """estimate_nb_dispersion()"""

    def test_trend_and_floor(self, fitted):
        _, _, _, disp = fitted
        assert disp.method == "lowess"
        assert np.all(disp.trended >= 1e-4)
        assert np.all(disp.gene >= 1e-4)
        # Simulated NB dispersion is 0.02
        assert 0.005 < np.median(disp.trended) < 0.08

    def test_common_for_few_genes(self):
        counts = np.array([[10, 12, 30, 33], [100, 80, 90, 120], [5, 7, 6, 4]], dtype=float)
        X = np.array([[1, 0, 0], [1, 0, 1], [0, 1, 0], [0, 1, 1]], dtype=float)
        offset = np.log(np.broadcast_to(counts.sum(axis=0), counts.shape))
        disp = estimate_nb_dispersion(counts, X, offset)
        assert disp.method == "common"
        np.testing.assert_allclose(disp.trended, disp.common)

    def test_ave_log_cpm_orders_genes(self):
        counts = np.array([[1, 2], [100, 200], [1000, 2000]], dtype=float)
        alc = ave_log_cpm(counts)
        assert alc[0] < alc[1] < alc[2]


class TestFitGlmQL:
    """fit_glm_ql()"""

    def test_recovers_fold_changes(self, fitted):
        data, design, norm, disp = fitted
        fit = fit_glm_ql(data['matrix'].counts, design, norm.glm_offset, disp.trended,
                         feature_ids=data['matrix'].feature_ids)

        assert fit.n_failed == 0
        b = pd.Series(fit.coefficients[:, design.coef], index=fit.feature_ids)
        assert b[data['up']].median() == pytest.approx(np.log(3.0), abs=0.25)
        assert b[data['down']].median() == pytest.approx(-np.log(3.0), abs=0.25)
        assert np.all(fit.df_total >= design.df_residual)
        assert np.all(fit.df_total <= design.df_residual * fit.n_genes)
        assert np.all(fit.s2_post > 0)

    def test_robust_prior_df_not_above_global(self, fitted):
        data, design, norm, disp = fitted
        fit = fit_glm_ql(data['matrix'].counts, design, norm.glm_offset, disp.trended)
        d0 = fit.hyperparameters['df_prior']
        assert np.all(fit.df_prior <= min(d0, design.df_residual * fit.n_genes) + 1e-9)

    def test_robust_downweights_outlier_gene(self, fitted):
        data, design, norm, disp = fitted
        counts = data['matrix'].counts.copy()
        # Treatment effect flips sign between replicates
        counts[7] = [50, 5000, 5000, 50, 50, 5000]
        robust = fit_glm_ql(counts, design, norm.glm_offset, disp.trended, robust=True)
        plain = fit_glm_ql(counts, design, norm.glm_offset, disp.trended, robust=False)

        d0 = min(robust.hyperparameters['df_prior'], design.df_residual * robust.n_genes)
        assert robust.s2[7] > 10 * np.median(robust.s2)
        assert robust.df_prior[7] < 0.1 * d0
        assert abs(robust.s2_post[7] - robust.s2[7]) < abs(plain.s2_post[7] - plain.s2[7])

    def test_failed_gene_is_unavailable(self, fitted, monkeypatch):
        data, design, norm, disp = fitted
        counts = data['matrix'].counts.copy()
        counts[5] = [1e7, 1, 2, 3, 4, 5]
        real_glm = sm.GLM

        def flaky_glm(endog, exog, **kwargs):
            if endog[0] == 1e7:
                raise np.linalg.LinAlgError("Singular matrix")
            return real_glm(endog, exog, **kwargs)

        monkeypatch.setattr(dispersion_module.sm, "GLM", flaky_glm)
        fit = fit_glm_ql(counts, design, norm.glm_offset, disp.trended,
                         feature_ids=data['matrix'].feature_ids)

        assert fit.n_failed == 1
        assert not fit.converged[5]
        assert np.isnan(fit.coefficients[5]).all()
        assert np.isnan(fit.s2_post[5])
        assert np.isnan(fit.df_total[5])
        assert "Singular matrix" in fit.issue[5]
        assert fit.converged[np.arange(fit.n_genes) != 5].all()

    def test_sample_mismatch(self, fitted):
        data, design, norm, disp = fitted
        with pytest.raises(ValueError, match="samples"):
            fit_glm_ql(data['matrix'].counts[:, :4], design, norm.glm_offset[:, :4], 0.1)


class TestDispersionRecovery:
    """Moment estimates recover a known NB dispersion across abundance."""

    @pytest.mark.parametrize("mean", [30.0, 300.0, 3000.0])
    def test_known_dispersion(self, mean):
        rng = np.random.default_rng(int(mean))
        phi = 0.05
        sheet = ExperimentDesign().resolve_samples(make_sample_sheet(n_replicates=3))
        design = build_paired_design(sheet, ExperimentDesign())
        mu = mean * rng.uniform(0.8, 1.25, size=(600, 1)) * np.ones((1, 6))
        counts = rng.negative_binomial(n=1.0 / phi, p=1.0 / (1.0 + mu * phi)).astype(float)

        disp = estimate_nb_dispersion(counts, design, np.zeros_like(counts))
        assert disp.common == pytest.approx(phi, abs=0.015)
        assert np.median(disp.gene) > 0.01
