"""
Pytest configuration and shared fixtures.

Provides synthetic paired RNA-seq data generators and helpers that write the
four pipeline inputs (counts, sample sheet, annotation, gene sets) to a
temporary directory.
"""

from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from dgeflow.core.annotation import GeneAnnotation
from dgeflow.core.design import ExperimentDesign
from dgeflow.core.matrix import CountMatrix


def make_sample_sheet(n_replicates: int = 2, cell_line: str = "LNCaP") -> pd.DataFrame:
    """Paired sample sheet: one Veh and one DHT sample per replicate."""
    rows = []
    for r in range(1, n_replicates + 1):
        for treat in ("Veh", "DHT"):
            rows.append({
                'sample': f"R{r}_{treat}",
                'treat': treat,
                'replicate': f"R{r}",
                'cell_line': cell_line,
            })
    return pd.DataFrame(rows).set_index('sample')


def make_annotation(gene_ids, length=None, gc_content=None, seed: int = 0) -> GeneAnnotation:
    """Annotation with random (or given) length and GC content."""
    rng = np.random.RandomState(seed)
    n = len(gene_ids)
    if length is None:
        length = np.round(rng.lognormal(mean=7.5, sigma=0.6, size=n))
    if gc_content is None:
        gc_content = rng.uniform(0.35, 0.6, size=n)
    table = pd.DataFrame({
        'gene_name': [f"GENE{i}" for i in range(n)],
        'gene_biotype': 'protein_coding',
        'entrezid': [(str(1000 + i),) for i in range(n)],
        'length': np.asarray(length, dtype=float),
        'gc_content': np.asarray(gc_content, dtype=float),
    }, index=pd.Index(gene_ids, name='gene_id'))
    return GeneAnnotation(table)


def simulate_paired_counts(
    n_genes: int = 400,
    n_replicates: int = 3,
    n_de: int = 40,
    fold: float = 3.0,
    dispersion: float = 0.02,
    gc_bias: dict | None = None,
    seed: int = 42,
) -> dict:
    """
    Negative binomial counts for a paired Veh/DHT design.

    The first ``n_de // 2`` genes are up-regulated by ``fold``, the next
    ``n_de // 2`` down-regulated. ``gc_bias`` maps a sample index to a
    log-scale slope on centred GC content.

    Returns:
        Dict with matrix (CountMatrix with metadata), annotation,
        sample_sheet, up and down gene id lists
    """
    rng = np.random.RandomState(seed)
    sheet = make_sample_sheet(n_replicates)
    gene_ids = [f"ENSG{i:011d}" for i in range(n_genes)]
    annotation = make_annotation(gene_ids, seed=seed + 1)
    gc = annotation.covariate('gc_content')

    base = rng.lognormal(mean=5.5, sigma=1.0, size=n_genes)
    rep_idx = sheet['replicate'].str[1:].astype(int).to_numpy() - 1
    rep_effect = rng.normal(0, 0.1, size=n_replicates)[rep_idx]
    treated = (sheet['treat'] == 'DHT').to_numpy(dtype=float)
    depth = rng.uniform(0.8, 1.2, size=len(sheet))

    lfc = np.zeros(n_genes)
    half = n_de // 2
    lfc[:half] = np.log(fold)
    lfc[half:2 * half] = -np.log(fold)

    log_mu = (
        np.log(base)[:, None]
        + rep_effect[None, :]
        + lfc[:, None] * treated[None, :]
        + np.log(depth)[None, :]
    )
    for j, slope in (gc_bias or {}).items():
        log_mu[:, j] += slope * (gc - gc.mean())
    mu = np.exp(log_mu)
    counts = rng.negative_binomial(n=1.0 / dispersion, p=1.0 / (1.0 + mu * dispersion))

    matrix = CountMatrix(
        counts=counts.astype(float),
        feature_ids=pd.Index(gene_ids, name='gene_id'),
        sample_ids=pd.Index(sheet.index),
        sample_metadata=ExperimentDesign().resolve_samples(sheet).loc[sheet.index],
    )
    return {
        'matrix': matrix,
        'annotation': annotation,
        'sample_sheet': sheet,
        'up': gene_ids[:half],
        'down': gene_ids[half:2 * half],
    }


# Four-gene paired example: G1 rises four-fold under DHT, the rest are flat
# up to half-percent perturbations. Columns scale with sequencing depth.
E2E_GENES = ["ENSG00000000001", "ENSG00000000002", "ENSG00000000003", "ENSG00000000004"]
E2E_SAMPLES = ["R1_Veh", "R1_DHT", "R2_Veh", "R2_DHT"]
E2E_COUNTS = np.array([
    [2000, 8800, 1900, 8400],
    [10000, 11055, 9500, 10500],
    [20000, 22000, 19000, 20895],
    [15075, 16500, 14250, 15750],
])
E2E_LENGTHS = [3000, 1000, 3000, 3000]


def write_counts(path: Path, counts: np.ndarray, gene_ids, sample_ids) -> Path:
    df = pd.DataFrame(np.asarray(counts, dtype=int), index=pd.Index(gene_ids, name='Geneid'),
                      columns=list(sample_ids))
    with open(path, 'w') as f:
        f.write("# Program:featureCounts v2.0.1; Command:\"featureCounts\" -p -s 2\n")
        df.to_csv(f, sep='\t')
    return path


def write_sample_sheet(path: Path, sheet: pd.DataFrame) -> Path:
    sheet.reset_index().to_csv(path, sep='\t', index=False)
    return path


def write_annotation(path: Path, annotation: GeneAnnotation) -> Path:
    df = annotation.table.copy()
    df['entrezid'] = [';'.join(v) for v in df['entrezid']]
    df.reset_index().to_csv(path, sep='\t', index=False)
    return path


def write_gene_sets(path: Path, rows: list[tuple]) -> Path:
    """Rows of (gs_name, gs_cat, gs_subcat, gene_id, excluded)."""
    pd.DataFrame(rows, columns=['gs_name', 'gs_cat', 'gs_subcat', 'gene_id', 'excluded']).to_csv(
        path, sep='\t', index=False
    )
    return path


@pytest.fixture
def sample_sheet():
    return make_sample_sheet(n_replicates=2)


@pytest.fixture
def paired_data():
    """400 genes × 6 samples with 20 up- and 20 down-regulated genes."""
    return simulate_paired_counts()


@pytest.fixture
def e2e_inputs(tmp_path):
    """Four-gene example written to disk, with a YAML config."""
    sheet = make_sample_sheet(n_replicates=2)
    annotation = make_annotation(E2E_GENES, length=E2E_LENGTHS, gc_content=[0.45, 0.5, 0.55, 0.4])

    paths = {
        'counts': write_counts(tmp_path / "counts.out", E2E_COUNTS, E2E_GENES, E2E_SAMPLES),
        'sample_sheet': write_sample_sheet(tmp_path / "samples.tsv", sheet),
        'annotation': write_annotation(tmp_path / "annotation.tsv", annotation),
        'gene_sets': write_gene_sets(tmp_path / "gene_sets.tsv", [
            ("SET_G1_G2", "H", "", E2E_GENES[0], "False"),
            ("SET_G1_G2", "H", "", E2E_GENES[1], "False"),
            ("SET_DISJOINT", "H", "", "ENSG99999999998", "False"),
            ("SET_DISJOINT", "H", "", "ENSG99999999999", "False"),
            ("SET_EXCLUDED", "C5", "GO:BP", E2E_GENES[0], "True"),
            ("SET_EXCLUDED", "C5", "GO:BP", E2E_GENES[2], "True"),
            ("TFT_G3_G4", "C3", "TFT:GTRD", E2E_GENES[2], "False"),
            ("TFT_G3_G4", "C3", "TFT:GTRD", E2E_GENES[3], "False"),
            ("UNMAPPED_SET", "C7", "", E2E_GENES[0], "False"),
        ]),
        'output_dir': tmp_path / "results",
    }
    config = tmp_path / "config.yaml"
    config.write_text(
        "paths:\n"
        f"  counts: {paths['counts']}\n"
        f"  sample_sheet: {paths['sample_sheet']}\n"
        f"  annotation: {paths['annotation']}\n"
        f"  gene_sets: {paths['gene_sets']}\n"
        f"  output_dir: {paths['output_dir']}\n"
        "normalization:\n"
        "  method: tmm\n"
        "enrichment:\n"
        "  pwf_bin_size: 1\n"
    )
    paths['config'] = config
    return paths


@pytest.fixture
def simulated_inputs(tmp_path):
    """400 simulated genes written to disk, with a config using default normalization."""
    data = simulate_paired_counts(n_genes=400, n_replicates=3, n_de=40, fold=4.0, seed=11)
    matrix = data['matrix']
    gene_ids = list(matrix.feature_ids)

    paths = {
        'counts': write_counts(tmp_path / "counts.out", matrix.counts, gene_ids, matrix.sample_ids),
        'sample_sheet': write_sample_sheet(tmp_path / "samples.tsv", data['sample_sheet']),
        'annotation': write_annotation(tmp_path / "annotation.tsv", data['annotation']),
        'gene_sets': write_gene_sets(tmp_path / "gene_sets.tsv", (
            [("UP_MEMBERS", "H", "", g, "False") for g in data['up'][:10] + gene_ids[200:210]]
            + [("NULL_MEMBERS", "H", "", g, "False") for g in gene_ids[300:320]]
        )),
        'output_dir': tmp_path / "results",
    }
    config = tmp_path / "config.yaml"
    config.write_text(
        "paths:\n"
        + "".join(f"  {key}: {value}\n" for key, value in paths.items())
    )
    paths['config'] = config
    paths['data'] = data
    return paths
