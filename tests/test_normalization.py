"""
Tests for normalization: quantile normalization, TMM and CQN.
"""

import numpy as np
import pytest
from scipy.stats import spearmanr

from dgeflow.exceptions import NormalizationError
from dgeflow.stats.diagnostics import covariate_pc_association, recommend_cqn
from dgeflow.stats.normalization import (
    NormalizationMethod,
    cqn,
    normalize_counts,
    quantile_normalization,
    tmm_factors,
)

from conftest import simulate_paired_counts


class TestQuantileNormalization:
    """quantile_normalization()"""

    def test_columns_share_distribution(self):
        rng = np.random.default_rng(0)
        data = np.column_stack([rng.normal(0, 1, 200), rng.normal(3, 2, 200), rng.gamma(2, 1, 200)])
        normalized = quantile_normalization(data)
        sorted_cols = np.sort(normalized, axis=0)
        np.testing.assert_allclose(sorted_cols[:, 0], sorted_cols[:, 1])
        np.testing.assert_allclose(sorted_cols[:, 0], sorted_cols[:, 2])

    def test_preserves_within_column_ranks(self):
        rng = np.random.default_rng(1)
        data = rng.normal(size=(50, 3))
        normalized = quantile_normalization(data)
        for j in range(3):
            np.testing.assert_array_equal(np.argsort(data[:, j]), np.argsort(normalized[:, j]))

    def test_nan_positions_kept(self):
        data = np.array([[1.0, 2.0], [np.nan, 3.0], [2.0, 1.0]])
        normalized = quantile_normalization(data)
        assert np.isnan(normalized[1, 0])
        assert np.isfinite(normalized[[0, 2], 0]).all()

    def test_rejects_1d(self):
        with pytest.raises(ValueError):
            quantile_normalization(np.arange(3.0))


class TestTMM:
    """tmm_factors()"""

    def test_identical_samples(self):
        counts = np.tile(np.arange(1, 101, dtype=float)[:, None], (1, 3))
        np.testing.assert_allclose(tmm_factors(counts), [1, 1, 1])

    def test_composition_bias(self):
        counts = np.full((100, 2), 100.0)
        counts[0, 1] = 10000.0
        factors = tmm_factors(counts)

        assert np.exp(np.mean(np.log(factors))) == pytest.approx(1.0)
        assert factors[1] / factors[0] == pytest.approx(10000 / 19900, rel=1e-3)
        effective = counts.sum(axis=0) * factors
        assert effective[0] == pytest.approx(effective[1], rel=1e-3)

    def test_zero_library_rejected(self):
        counts = np.ones((5, 2))
        counts[:, 1] = 0
        with pytest.raises(NormalizationError):
            tmm_factors(counts)


class TestCQN:
    """cqn()"""

    @pytest.fixture(scope="class")
    def gc_biased(self):
        return simulate_paired_counts(n_genes=600, n_replicates=2, n_de=0,
                                      gc_bias={1: 6.0}, seed=7)

    def test_shapes_and_offset_identity(self, gc_biased):
        counts = gc_biased['matrix'].counts
        ann = gc_biased['annotation']
        result = cqn(counts, ann.covariate('gc_content'), ann.covariate('length'))

        assert result.y.shape == counts.shape
        assert result.offset.shape == counts.shape
        np.testing.assert_allclose(result.normalized, result.y + result.offset)
        expected_glm = np.log(2) * (np.log2(result.lib_sizes / 1e6)[None, :] - result.offset)
        np.testing.assert_allclose(result.glm_offset, expected_glm)

    def test_residual_distributions_equalized(self, gc_biased):
        counts = gc_biased['matrix'].counts
        ann = gc_biased['annotation']
        result = cqn(counts, ann.covariate('gc_content'), ann.covariate('length'))

        centred = np.sort(result.normalized - result.fit_at_median[None, :], axis=0)
        for j in range(1, counts.shape[1]):
            np.testing.assert_allclose(centred[:, 0], centred[:, j], atol=1e-8)

    def test_removes_sample_specific_gc_bias(self, gc_biased):
        counts = gc_biased['matrix'].counts
        gc = gc_biased['annotation'].covariate('gc_content')
        result = cqn(counts, gc, gc_biased['annotation'].covariate('length'))

        # Sample 1 carries the GC slope; compare it with sample 0
        raw_diff = result.y[:, 1] - result.y[:, 0]
        norm_diff = result.normalized[:, 1] - result.normalized[:, 0]
        raw_rho = spearmanr(raw_diff, gc)[0]
        norm_rho = spearmanr(norm_diff, gc)[0]
        assert raw_rho > 0.5
        assert abs(norm_rho) < 0.2

    def test_zero_library_names_sample(self, gc_biased):
        counts = gc_biased['matrix'].counts.copy()
        counts[:, 2] = 0
        ann = gc_biased['annotation']
        with pytest.raises(NormalizationError, match="R2_Veh"):
            cqn(counts, ann.covariate('gc_content'), ann.covariate('length'),
                sample_ids=list(gc_biased['matrix'].sample_ids))

    def test_too_few_genes(self):
        counts = np.array([[10.0, 12.0], [20.0, 18.0], [30.0, 33.0], [40.0, 41.0], [50.0, 47.0], [60.0, 66.0]])
        gc = np.array([0.35, 0.4, 0.45, 0.5, 0.55, 0.6])
        length = np.array([800.0, 1500.0, 2200.0, 3100.0, 4500.0, 9000.0])
        with pytest.raises(NormalizationError):
            cqn(counts, gc, length)


class TestNormalizeCounts:
    """normalize_counts() dispatch and offset conventions."""

    def test_none_uses_library_sizes(self):
        counts = np.array([[10.0, 20.0], [30.0, 60.0]])
        result = normalize_counts(counts, "none")
        assert result.method is NormalizationMethod.NONE
        np.testing.assert_allclose(result.log2_offset, 0.0)
        np.testing.assert_allclose(result.glm_offset[0], np.log([40.0, 80.0]))

    def test_tmm_offsets(self):
        counts = np.full((100, 2), 100.0)
        counts[0, 1] = 10000.0
        result = normalize_counts(counts, NormalizationMethod.TMM)
        np.testing.assert_allclose(result.log2_offset[0], -np.log2(result.norm_factors))
        np.testing.assert_allclose(
            result.glm_offset[0], np.log(counts.sum(axis=0) * result.norm_factors)
        )

    def test_cqn_requires_covariates(self):
        with pytest.raises(NormalizationError, match="GC content and gene length"):
            normalize_counts(np.ones((10, 2)), "cqn")

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            normalize_counts(np.ones((10, 2)), "upperquartile")


class TestCovariateDiagnostic:
    """covariate_pc_association() / recommend_cqn()"""

    def test_gc_slope_tracks_leading_pc(self):
        rng = np.random.default_rng(3)
        gc = rng.uniform(0.35, 0.65, size=500)
        base = rng.normal(5.0, 1.0, size=500)
        slopes = np.array([-6.0, -3.0, 0.0, 2.0, 4.0, 6.0])
        logcpm = base[:, None] + (gc[:, None] - 0.5) * slopes + rng.normal(0, 0.05, (500, 6))

        association = covariate_pc_association(logcpm, {'gc_content': gc}, n_components=2)
        pc1 = association.set_index('component').loc['PC1']
        assert pc1['r_squared'] > 0.9
        assert recommend_cqn(association)

    def test_constant_covariate_has_no_association(self):
        rng = np.random.default_rng(4)
        logcpm = rng.normal(5.0, 1.0, size=(100, 4))
        association = covariate_pc_association(logcpm, {'log_length': np.full(100, 11.0)})
        assert len(association) == 3
        assert (association['r_squared'] == 0.0).all()
        assert not recommend_cqn(association)
