"""
Gene-set database records.

Gene sets come from an external database export (e.g., MSigDB through
msigdbr) and are immutable for the duration of a run. Each set belongs to a
*universe*: the family of sets it is tested and FDR-corrected with
(``pathway`` for curated pathways / GO processes, ``regulation`` for
transcription factor target sets).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator

__all__ = ['GeneSet', 'GeneSetCollection']


@dataclass(frozen=True)
class GeneSet:
    """A named set of genes.

    Attributes:
        name: Unique set name (e.g., ``HALLMARK_ANDROGEN_RESPONSE``).
        category: Database category (e.g., ``H``, ``C2``, ``C3``).
        subcategory: Sub-category (e.g., ``CP:KEGG``, ``TFT:GTRD``); may be empty.
        members: Member gene ids in database order, without duplicates.
        excluded: True when ontology-depth pruning removed the set.
        universe: Correction family the set belongs to.
    """

    name: str
    category: str
    subcategory: str
    members: tuple[str, ...]
    excluded: bool = False
    universe: str = "pathway"

    @property
    def size(self) -> int:
        return len(self.members)

    def overlap(self, genes: set[str] | frozenset[str]) -> list[str]:
        """Members present in ``genes``, in member order."""
        return [g for g in self.members if g in genes]


class GeneSetCollection:
    """Ordered, name-unique collection of gene sets."""

    def __init__(self, gene_sets: Iterable[GeneSet]):
        self._sets: dict[str, GeneSet] = {}
        for gs in gene_sets:
            if gs.name in self._sets:
                raise ValueError(f"Duplicate gene set name: {gs.name}")
            self._sets[gs.name] = gs

    def __len__(self) -> int:
        return len(self._sets)

    def __iter__(self) -> Iterator[GeneSet]:
        return iter(self._sets.values())

    def __getitem__(self, name: str) -> GeneSet:
        return self._sets[name]

    def __contains__(self, name: str) -> bool:
        return name in self._sets

    @property
    def universes(self) -> list[str]:
        return list(dict.fromkeys(gs.universe for gs in self))

    def in_universe(self, universe: str) -> GeneSetCollection:
        return GeneSetCollection(gs for gs in self if gs.universe == universe)

    def testable(self, analysed_genes: set[str] | frozenset[str]) -> GeneSetCollection:
        """Non-excluded sets with at least one member among ``analysed_genes``."""
        return GeneSetCollection(
            gs for gs in self
            if not gs.excluded and any(g in analysed_genes for g in gs.members)
        )

    def __repr__(self) -> str:
        return f"GeneSetCollection({len(self)} sets, universes={self.universes})"
