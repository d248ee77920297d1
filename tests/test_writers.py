"""Tests for result table writers."""

import json

import numpy as np
import pandas as pd
import pytest

from dgeflow.io.writers import (
    DE_COLUMNS,
    read_de_table,
    write_de_table,
    write_enrichment_table,
    write_normalized_expression,
    write_run_parameters,
)
from dgeflow.exceptions import InputFormatError

from conftest import simulate_paired_counts


def _de_frame():
    return pd.DataFrame({
        'gene_id': ['ENSG1', 'ENSG2', 'ENSG3'],
        'gene_name': ['KLK3', '', 'FKBP5'],
        'logCPM': [8.123456789, 3.5, 5.25],
        'logFC': [2.5, -0.01, np.nan],
        'PValue': [1.234567891e-12, 0.8, np.nan],
        'FDR': [3.7e-12, 0.8, np.nan],
        'biotype': ['protein_coding', 'lncRNA', 'protein_coding'],
        'entrezid': [('354',), (), ('2289', '100')],
        'length': [1500.0, 800.0, 4000.0],
        'gc_content': [0.52, 0.41, 0.47],
        'rankingStat': [11.9, 0.097, np.nan],
        'signedRank': [11.9, -0.097, np.nan],
        'DE': [True, False, False],
    })


class TestDETable:
    """write_de_table() / read_de_table()"""

    def test_round_trip(self, tmp_path):
        path = tmp_path / "out" / "DHT_vs_Veh.de.tsv"
        original = _de_frame()
        write_de_table(original, path)
        restored = read_de_table(path)

        assert list(restored.columns) == DE_COLUMNS
        assert restored['gene_id'].tolist() == original['gene_id'].tolist()
        assert restored['entrezid'].tolist() == original['entrezid'].tolist()
        assert restored['DE'].tolist() == [True, False, False]
        assert restored['gene_name'].tolist() == ['KLK3', '', 'FKBP5']
        np.testing.assert_allclose(restored['PValue'], original['PValue'], rtol=1e-7)
        np.testing.assert_allclose(restored['logCPM'], original['logCPM'], rtol=1e-7)
        assert np.isnan(restored.loc[2, 'logFC'])

    def test_missing_column_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="signedRank"):
            write_de_table(_de_frame().drop(columns=['signedRank']), tmp_path / "x.tsv")

    def test_read_rejects_foreign_table(self, tmp_path):
        path = tmp_path / "other.tsv"
        path.write_text("gene_id\tscore\nA\t1\n")
        with pytest.raises(InputFormatError):
            read_de_table(path)

    def test_no_temp_files_left(self, tmp_path):
        write_de_table(_de_frame(), tmp_path / "de.tsv")
        assert [p.name for p in tmp_path.iterdir()] == ["de.tsv"]


class TestOtherWriters:
    """Enrichment, normalized expression and run parameters."""

    def test_enrichment_table_column_order(self, tmp_path):
        df = pd.DataFrame({
            'significant': [True], 'category': ['HALLMARK_ANDROGEN_RESPONSE'], 'gs_cat': ['H'],
            'gs_subcat': [''], 'numDE': [12], 'expected': [3.2], 'setSize': [95],
            'PValue': [1e-5], 'FDR': [2e-4],
        })
        path = tmp_path / "e.tsv"
        write_enrichment_table(df, path)
        header = path.read_text().splitlines()[0].split('\t')
        assert header == ['category', 'gs_cat', 'gs_subcat', 'numDE', 'expected', 'setSize',
                          'PValue', 'FDR', 'significant']

    def test_normalized_expression(self, tmp_path):
        matrix = simulate_paired_counts(n_genes=20, n_de=0)['matrix']
        offsets = np.full(matrix.shape, 0.5)
        path = tmp_path / "norm.tsv"
        write_normalized_expression(matrix, offsets, path)
        df = pd.read_csv(path, sep='\t', index_col=0)
        assert df.index.name == 'gene_id'
        np.testing.assert_allclose(df.to_numpy(), matrix.cpm(log=True) + 0.5, rtol=1e-7)

    def test_normalized_expression_shape_check(self, tmp_path):
        matrix = simulate_paired_counts(n_genes=20, n_de=0)['matrix']
        with pytest.raises(ValueError, match="offsets shape"):
            write_normalized_expression(matrix, np.zeros((3, 3)), tmp_path / "n.tsv")

    def test_run_parameters_json(self, tmp_path):
        path = tmp_path / "run_parameters.json"
        write_run_parameters({'config': {'alpha': 0.05}, 'path': tmp_path}, path)
        data = json.loads(path.read_text())
        assert data['config']['alpha'] == 0.05
        assert data['path'] == str(tmp_path)
