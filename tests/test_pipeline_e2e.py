"""
End-to-end tests: files on disk through to result tables.

The four-gene example has one gene (G1) rising four-fold under DHT and three
flat genes. Gene lengths are 3000, 1000, 3000, 3000 so that, with one gene
per PWF bin, the short gene G2 gets a near-zero selection weight.
"""

import json

import numpy as np
import pandas as pd
import pytest

from dgeflow import pipeline as pipeline_module
from dgeflow.cli.config import apply_overrides, config_from_dict, load_config
from dgeflow.exceptions import DegenerateDataError, DesignError, InputFormatError
from dgeflow.io.writers import DE_COLUMNS, ENRICHMENT_COLUMNS, read_de_table
from dgeflow.pipeline import run_enrichment_stage, run_pipeline

from conftest import E2E_GENES


@pytest.fixture
def e2e_config(e2e_inputs):
    return config_from_dict(load_config(e2e_inputs['config']))


@pytest.fixture
def e2e_result(e2e_config):
    return run_pipeline(e2e_config)


class TestFourGeneExample:
    """Differential test on the four-gene example."""

    def test_only_g1_is_de(self, e2e_result):
        de = e2e_result.differential
        assert de.de_genes() == [E2E_GENES[0]]
        assert de.table.loc[E2E_GENES[0], 'logFC'] > 0
        assert de.table.loc[E2E_GENES[0], 'logFC'] == pytest.approx(2.0, abs=0.1)
        assert de.up() == [E2E_GENES[0]]
        assert de.down() == []

    def test_flat_genes_inside_threshold(self, e2e_result):
        table = e2e_result.differential.table
        flat = table.loc[E2E_GENES[1:]]
        assert (flat['logFC'].abs() < np.log2(1.2)).all()
        assert (flat['PValue'] >= 0.5).all()

    def test_de_table_written(self, e2e_result, e2e_inputs):
        path = e2e_result.outputs['de']
        assert path == e2e_inputs['output_dir'] / "DHT_vs_Veh.de.tsv"
        table = read_de_table(path)
        assert list(table.columns) == DE_COLUMNS
        assert table['gene_id'].tolist()[0] == E2E_GENES[0]
        assert table['DE'].tolist() == [True, False, False, False]

    def test_normalized_expression_written(self, e2e_result):
        df = pd.read_csv(e2e_result.outputs['normalized_expression'], sep='\t', index_col=0)
        assert list(df.columns) == ["R1_Veh", "R1_DHT", "R2_Veh", "R2_DHT"]
        assert df.shape == (4, 4)

    def test_run_parameters(self, e2e_result):
        params = json.loads(e2e_result.outputs['run_parameters'].read_text())
        assert params['contrast'] == "DHT_vs_Veh"
        assert params['normalization']['method'] == "tmm"
        assert params['differential']['de'] == 1
        assert params['config']['enrichment']['pwf_bin_size'] == 1
        assert 'numpy' in params['versions']


class TestFourGeneEnrichment:
    """Enrichment families on the four-gene example."""

    def test_families(self, e2e_result):
        assert set(e2e_result.enrichment) == {
            (u, s) for u in ("pathway", "regulation") for s in ("all", "up", "down")
        }

    def test_two_gene_set_with_de_gene(self, e2e_result):
        table = e2e_result.enrichment[("pathway", "all")].table.set_index('category')
        row = table.loc["SET_G1_G2"]
        assert row['numDE'] == 1
        assert row['setSize'] == 2
        # G1 weight 1/3, G2 weight ~0: odds 1/2, P(X >= 1) = 1/3
        assert row['PValue'] == pytest.approx(1 / 3, rel=1e-3)
        assert row['PValue'] < 0.5
        assert row['expected'] == pytest.approx(1 / 3, rel=1e-3)

    def test_disjoint_and_excluded_sets_absent(self, e2e_result):
        for result in e2e_result.enrichment.values():
            names = set(result.table['category'])
            assert "SET_DISJOINT" not in names
            assert "SET_EXCLUDED" not in names
            assert "UNMAPPED_SET" not in names

    def test_regulation_family(self, e2e_result):
        table = e2e_result.enrichment[("regulation", "all")].table
        assert table['category'].tolist() == ["TFT_G3_G4"]
        assert table.loc[0, 'numDE'] == 0
        assert table.loc[0, 'PValue'] == 1.0

    def test_down_family_has_no_de(self, e2e_result):
        result = e2e_result.enrichment[("pathway", "down")]
        assert result.n_de == 0
        assert (result.table['PValue'] == 1.0).all()
        assert not result.table['significant'].any()

    def test_enrichment_files(self, e2e_result, e2e_inputs):
        path = e2e_inputs['output_dir'] / "DHT_vs_Veh.pathway.all.enrichment.tsv"
        assert e2e_result.outputs['enrichment.pathway.all'] == path
        df = pd.read_csv(path, sep='\t', keep_default_na=False)
        assert list(df.columns) == ENRICHMENT_COLUMNS

    def test_enrichment_from_written_de_table(self, e2e_result, e2e_config):
        results = run_enrichment_stage(e2e_result.outputs['de'], e2e_config)
        from_disk = results[("pathway", "all")].table
        in_memory = e2e_result.enrichment[("pathway", "all")].table
        assert from_disk['category'].tolist() == in_memory['category'].tolist()
        np.testing.assert_allclose(from_disk['PValue'], in_memory['PValue'], rtol=1e-6)


class TestPipelineErrors:
    """Input problems surface before any output is written."""

    def test_no_gene_passes_filter(self, e2e_config, e2e_inputs):
        config = apply_overrides(e2e_config, {'filter.min_cpm': 1e6})
        with pytest.raises(DegenerateDataError):
            run_pipeline(config)
        assert not e2e_inputs['output_dir'].exists()

    def test_unknown_cell_line(self, e2e_config, e2e_inputs):
        config = apply_overrides(e2e_config, {'design.cell_line': 'VCaP'})
        with pytest.raises(DesignError, match="VCaP"):
            run_pipeline(config)
        assert not e2e_inputs['output_dir'].exists()

    def test_no_write(self, e2e_config, e2e_inputs):
        result = run_pipeline(e2e_config, write_outputs=False)
        assert result.outputs == {}
        assert not e2e_inputs['output_dir'].exists()

    def test_gene_set_file_checked_before_model_fit(self, e2e_config, e2e_inputs, monkeypatch):
        pd.DataFrame({'gs_cat': ['H'], 'gene_id': [E2E_GENES[0]]}).to_csv(
            e2e_inputs['gene_sets'], sep='\t', index=False
        )
        calls = []
        monkeypatch.setattr(pipeline_module, "fit_glm_ql",
                            lambda *args, **kwargs: calls.append(args))
        with pytest.raises(InputFormatError, match="gs_name"):
            run_pipeline(e2e_config)
        assert calls == []


class TestDefaultNormalization:
    """Full run on simulated data with the default CQN normalization."""

    @pytest.fixture
    def cqn_result(self, simulated_inputs):
        config = config_from_dict(load_config(simulated_inputs['config']))
        assert config.normalization.method == "cqn"
        return run_pipeline(config)

    def test_cqn_run_detects_changes(self, cqn_result, simulated_inputs):
        data = simulated_inputs['data']
        assert cqn_result.normalization.method.value == "cqn"
        assert len(set(cqn_result.differential.up()) & set(data['up'])) >= 15
        assert len(set(cqn_result.differential.down()) & set(data['down'])) >= 15
        assert not set(cqn_result.differential.up()) & set(data['down'])

    def test_cqn_run_enrichment(self, cqn_result):
        table = cqn_result.enrichment[("pathway", "up")].table.set_index('category')
        assert table.loc["UP_MEMBERS", 'PValue'] < 1e-3
        assert table.loc["UP_MEMBERS", 'PValue'] < table.loc["NULL_MEMBERS", 'PValue']

    def test_cqn_run_parameters(self, cqn_result):
        params = json.loads(cqn_result.outputs['run_parameters'].read_text())
        assert params['normalization']['method'] == "cqn"
