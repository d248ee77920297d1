"""
Loaders for count matrices, sample sheets, gene annotation and gene sets.

Biological Context:
    The statistical core consumes four tab-separated inputs produced upstream:
    - Merged featureCounts table (genes × samples, integer counts)
    - Sample sheet (sample, treatment, replicate, cell line)
    - Gene annotation (symbol, biotype, Entrez ids, length, GC content)
    - Gene-set database export (one row per set × member gene)

Engineering Design:
    - Fail fast: malformed rows raise with the offending gene or sample named
    - No positional alignment: inputs are joined on identifiers and the joins
      are validated for completeness before any stage runs
    - The only rows ever dropped silently are gene sets whose category maps
      to no configured universe, and those drops are logged

Examples:
    >>> from pathlib import Path
    >>> from dgeflow.io.loaders import load_count_matrix, load_sample_sheet
    >>> sheet = load_sample_sheet(Path("samples.tsv"), ["treat", "replicate"])
    >>> counts = load_count_matrix(Path("counts.out"), samples=sheet.index)
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable, Mapping

import numpy as np
import pandas as pd

from dgeflow.core.annotation import GeneAnnotation, ANNOTATION_COLUMNS
from dgeflow.core.design import ExperimentDesign
from dgeflow.core.gene_sets import GeneSet, GeneSetCollection
from dgeflow.core.matrix import CountMatrix
from dgeflow.exceptions import AnnotationError, InputFormatError

logger = logging.getLogger(__name__)

__all__ = [
    'load_count_matrix',
    'load_sample_sheet',
    'load_gene_annotation',
    'load_gene_sets',
    'resolve_universe',
    'align_inputs',
]

_ENTREZ_SEPARATORS = r'[;,|]'


def _split_entrez(value) -> tuple[str, ...]:
    if not isinstance(value, str):
        return ()
    return tuple(x.strip() for x in re.split(_ENTREZ_SEPARATORS, value) if x.strip())


# Per-gene annotation columns written by featureCounts before the sample columns
FEATURECOUNTS_ANNOTATION_COLUMNS = ("Chr", "Start", "End", "Strand", "Length")


def _check_file(path: Path) -> Path:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    if not path.is_file():
        raise InputFormatError(f"Path is not a file: {path}")
    return path


def _read_tsv(path: Path, **kwargs) -> pd.DataFrame:
    try:
        return pd.read_csv(path, sep='\t', comment='#', **kwargs)
    except pd.errors.EmptyDataError as e:
        raise InputFormatError(f"File is empty: {path}") from e
    except pd.errors.ParserError as e:
        raise InputFormatError(f"Failed to parse {path}: {e}") from e


def load_count_matrix(
    path: Path,
    samples: Iterable[str] | None = None,
    sample_metadata: pd.DataFrame | None = None,
) -> CountMatrix:
    """
    Load a merged gene × sample count table.

    Expected format (tab-separated, leading ``#`` lines ignored)::

        # Program:featureCounts ...
        Geneid             R1_Veh  R1_DHT  R2_Veh  R2_DHT
        ENSG00000000003    612     1056    590     1012

    featureCounts' own ``Chr``, ``Start``, ``End``, ``Strand`` and ``Length``
    columns are dropped if present.

    Args:
        path: Path to the count table
        samples: Analysis sample ids. When given, the matrix is subset and
            ordered to exactly these samples; any id missing from the table
            is an error. Extra table columns are dropped.
        sample_metadata: Metadata for ``samples`` (indexed by sample id),
            attached to the returned matrix.

    Returns:
        CountMatrix with integer-valued counts

    Raises:
        FileNotFoundError: If path does not exist
        InputFormatError: If the table is empty, has duplicate ids, missing
            samples, or any non-integer / negative / missing count
    """
    path = _check_file(path)
    df = _read_tsv(path, index_col=0)

    if df.shape[0] == 0:
        raise InputFormatError(f"Count table contains no genes: {path}")
    if df.shape[1] == 0:
        raise InputFormatError(f"Count table contains no samples: {path}")

    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)
    annotation_cols = [c for c in FEATURECOUNTS_ANNOTATION_COLUMNS if c in df.columns]
    if annotation_cols:
        df = df.drop(columns=annotation_cols)
        if df.shape[1] == 0:
            raise InputFormatError(f"Count table contains no samples: {path}")

    if df.index.has_duplicates:
        dups = df.index[df.index.duplicated()].unique().tolist()
        raise InputFormatError(f"Duplicate gene ids in {path}: {dups[:5]}")
    if df.columns.has_duplicates:
        dups = df.columns[df.columns.duplicated()].unique().tolist()
        raise InputFormatError(f"Duplicate sample ids in {path}: {dups[:5]}")

    if samples is not None:
        samples = [str(s) for s in samples]
        missing = [s for s in samples if s not in df.columns]
        if missing:
            raise InputFormatError(
                f"Sample(s) {missing} from the sample sheet are absent from {path}"
            )
        dropped = [c for c in df.columns if c not in set(samples)]
        if dropped:
            logger.info(f"Ignoring {len(dropped)} count column(s) not in the analysis: {dropped}")
        df = df[samples]

    values = df.apply(pd.to_numeric, errors='coerce')
    bad = values.isna() | (values < 0) | (values != np.floor(values))
    if bad.to_numpy().any():
        examples = []
        for gene, sample in zip(*np.where(bad.to_numpy())):
            examples.append(
                f"gene '{df.index[gene]}', sample '{df.columns[sample]}': "
                f"{df.iat[gene, sample]!r}"
            )
            if len(examples) >= 5:
                break
        raise InputFormatError(
            f"Count table {path} has {int(bad.to_numpy().sum())} invalid value(s) "
            "(expected non-negative integers):\n" + "\n".join(f"  - {x}" for x in examples)
        )

    sample_ids = pd.Index(df.columns)
    if sample_metadata is not None:
        sample_metadata = sample_metadata.loc[sample_ids]

    matrix = CountMatrix(
        counts=values.to_numpy(dtype=np.float64),
        feature_ids=pd.Index(df.index, name='gene_id'),
        sample_ids=sample_ids,
        sample_metadata=sample_metadata,
    )
    logger.info(f"Loaded {matrix.n_features} genes × {matrix.n_samples} samples from {path}")
    return matrix


def load_sample_sheet(
    path: Path,
    required_columns: Iterable[str] = (),
    sample_col: str = "sample",
) -> pd.DataFrame:
    """
    Load the sample sheet, indexed by sample id.

    Raises:
        InputFormatError: If the sample id column or any required column is
            missing, a required cell is blank, or sample ids repeat
    """
    path = _check_file(path)
    df = _read_tsv(path, dtype=str)

    if sample_col not in df.columns:
        raise InputFormatError(
            f"Sample sheet {path} has no '{sample_col}' column; found {list(df.columns)}"
        )
    required = list(dict.fromkeys(required_columns))
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise InputFormatError(f"Sample sheet {path} is missing column(s): {missing}")

    df[sample_col] = df[sample_col].str.strip()
    if df[sample_col].isna().any() or (df[sample_col] == '').any():
        raise InputFormatError(f"Sample sheet {path} has rows without a sample id")
    if df[sample_col].duplicated().any():
        dups = df.loc[df[sample_col].duplicated(), sample_col].unique().tolist()
        raise InputFormatError(f"Duplicate sample ids in {path}: {dups}")

    df = df.set_index(sample_col)
    for col in required:
        blank = df.index[df[col].isna() | (df[col].str.strip() == '')]
        if len(blank) > 0:
            raise InputFormatError(
                f"Sample(s) {blank.tolist()} have no value for '{col}' in {path}"
            )
    return df


def load_gene_annotation(path: Path, gene_col: str = "gene_id") -> GeneAnnotation:
    """
    Load the gene annotation table.

    Expected columns: gene_id, gene_name, gene_biotype, entrezid, length,
    gc_content. ``entrezid`` may hold several ids separated by ``;``, ``,``
    or ``|``, or be empty.

    Raises:
        AnnotationError: If columns are missing, a gene id has multiple
            records, or length / GC values are invalid
    """
    path = _check_file(path)
    df = _read_tsv(path, dtype={gene_col: str, 'entrezid': str})
    if gene_col not in df.columns:
        raise AnnotationError(f"Annotation {path} has no '{gene_col}' column")

    missing = [c for c in ANNOTATION_COLUMNS if c not in df.columns]
    if missing:
        raise AnnotationError(f"Annotation {path} is missing column(s): {missing}")

    df = df.set_index(gene_col)
    df["entrezid"] = [_split_entrez(v) for v in df["entrezid"]]
    df['gene_name'] = df['gene_name'].fillna('')
    df['gene_biotype'] = df['gene_biotype'].fillna('')

    annotation = GeneAnnotation(df[ANNOTATION_COLUMNS])
    logger.info(f"Loaded annotation for {len(annotation)} genes from {path}")
    return annotation


def resolve_universe(
    category: str,
    subcategory: str,
    universe_map: Mapping[str, str],
) -> str | None:
    """
    Map a gene-set category to its universe.

    The most specific key wins: ``C3:TFT:GTRD`` is looked up before
    ``C3:TFT`` and then ``C3``.
    """
    parts = [category] + [p for p in str(subcategory or '').split(':') if p]
    for n in range(len(parts), 0, -1):
        key = ':'.join(parts[:n])
        if key in universe_map:
            return universe_map[key]
    return None


def _read_gmt(path: Path) -> pd.DataFrame:
    category = path.stem
    rows = []
    with open(path, 'r') as f:
        for line_no, line in enumerate(f, 1):
            fields = line.rstrip('\n').split('\t')
            if not line.strip():
                continue
            if len(fields) < 3:
                raise InputFormatError(
                    f"{path}:{line_no}: GMT line needs a name, description and members"
                )
            for gene in fields[2:]:
                if gene:
                    rows.append((fields[0], category, '', gene, False))
    return pd.DataFrame(rows, columns=['gs_name', 'gs_cat', 'gs_subcat', 'gene_id', 'excluded'])


def load_gene_sets(
    path: Path,
    universe_map: Mapping[str, str],
    gene_col: str = "gene_id",
) -> GeneSetCollection:
    """
    Load a gene-set database export.

    Long format (tab-separated), one row per set member::

        gs_name                     gs_cat  gs_subcat   gene_id          excluded
        HALLMARK_ANDROGEN_RESPONSE  H                   ENSG00000096060  False

    ``excluded`` is optional (ontology-depth pruning flag). ``.gmt`` files
    are also accepted; the file stem becomes the category.

    Args:
        path: Gene-set file
        universe_map: ``category[:subcategory]`` → universe name
        gene_col: Column holding member gene ids

    Returns:
        GeneSetCollection of sets whose category maps to a universe

    Raises:
        InputFormatError: If required columns are missing
        AnnotationError: If a set name occurs under more than one category
    """
    path = _check_file(path)
    if path.suffix.lower() == '.gmt':
        df = _read_gmt(path)
        gene_col = 'gene_id'
    else:
        df = _read_tsv(path, dtype=str, keep_default_na=False)

    required = ['gs_name', 'gs_cat', gene_col]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise InputFormatError(f"Gene-set file {path} is missing column(s): {missing}")
    if 'gs_subcat' not in df.columns:
        df['gs_subcat'] = ''
    if 'excluded' not in df.columns:
        df['excluded'] = False
    df['excluded'] = df['excluded'].astype(str).str.strip().str.lower().isin(['true', '1', 'yes'])
    df = df[df[gene_col].astype(str).str.strip() != '']

    sets = []
    skipped: dict[str, int] = {}
    for name, group in df.groupby('gs_name', sort=False):
        cats = group[['gs_cat', 'gs_subcat']].drop_duplicates()
        if len(cats) > 1:
            raise AnnotationError(
                f"Gene set '{name}' appears under multiple categories: "
                f"{cats.astype(str).agg(':'.join, axis=1).tolist()}"
            )
        category, subcategory = cats.iloc[0]
        universe = resolve_universe(category, subcategory, universe_map)
        if universe is None:
            key = f"{category}:{subcategory}" if subcategory else category
            skipped[key] = skipped.get(key, 0) + 1
            continue
        sets.append(GeneSet(
            name=str(name),
            category=str(category),
            subcategory=str(subcategory),
            members=tuple(dict.fromkeys(group[gene_col].astype(str))),
            excluded=bool(group['excluded'].any()),
            universe=universe,
        ))

    for key, n in skipped.items():
        logger.info(f"Dropped {n} gene set(s) in category {key} (no universe configured)")

    collection = GeneSetCollection(sets)
    logger.info(f"Loaded {len(collection)} gene sets from {path} (universes: {collection.universes})")
    return collection


def align_inputs(
    counts: CountMatrix,
    annotation: GeneAnnotation,
    sample_sheet: pd.DataFrame,
    design: ExperimentDesign,
) -> tuple[CountMatrix, GeneAnnotation]:
    """
    Join counts, annotation and sample sheet on identifiers.

    Resolves the analysis samples from the sample sheet, reorders the count
    columns to match, attaches the sample metadata and aligns the annotation
    to the count rows. Every join is checked for completeness.

    Returns:
        (counts restricted to analysis samples, annotation aligned to genes)

    Raises:
        DesignError: If the sample sheet does not describe a paired design
        InputFormatError: If analysis samples are absent from the counts
        AnnotationError: If any counted gene lacks an annotation record
    """
    metadata = design.resolve_samples(sample_sheet)
    missing = [s for s in metadata.index if s not in counts.sample_ids]
    if missing:
        raise InputFormatError(f"Sample(s) {missing} are absent from the count matrix")

    aligned = counts.reorder_samples(metadata.index).with_metadata(metadata)
    aligned_annotation = annotation.align(aligned.feature_ids)
    return aligned, aligned_annotation
