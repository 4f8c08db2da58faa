"""Read-only concept catalog used to render and export assignment targets.

The catalog is an external collaborator: the core only ever reads from it and
never lets a lookup failure break a mapping operation.  :class:`CatalogResolver`
wraps any catalog with a bounded wait and degrades to an "unknown target"
rendering on timeout or miss.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

from .errors import ConceptNotFound
from .shared.models import Assignment

log = logging.getLogger(__name__)

UNKNOWN_TARGET = "unknown target"


@dataclass(frozen=True)
class StandardConcept:
    concept_id: int
    code: str
    name: str
    vocabulary: str
    is_valid: bool
    is_standard: bool


@dataclass(frozen=True)
class DictionaryConcept:
    concept_id: int
    name: str
    category: str
    subcategory: str = ""


class ConceptCatalog:
    """Lookup interface; both methods raise :class:`ConceptNotFound` for unknown ids."""

    def lookup_standard(self, concept_id: int) -> StandardConcept:
        raise NotImplementedError

    def lookup_dictionary(self, concept_id: int) -> DictionaryConcept:
        raise NotImplementedError


def _read_table(path: Path, *, sep: str | None = None) -> pd.DataFrame:
    if path.suffix.lower() in {".parquet", ".pq"}:
        frame = pd.read_parquet(path)
        return frame.astype(object).where(pd.notnull(frame), "")
    return pd.read_csv(
        path,
        sep=sep,
        engine="python" if sep is None else "c",
        dtype=str,
        keep_default_na=False,
        quoting=3 if sep == "\t" else 0,
    )


def _find_concept_file(vocabulary_dir: Path) -> Path:
    for name in ("CONCEPT.parquet", "CONCEPT.csv", "CONCEPT.tsv", "concept.parquet", "concept.csv"):
        candidate = vocabulary_dir / name
        if candidate.exists():
            return candidate
    raise FileNotFoundError(vocabulary_dir / "CONCEPT.csv")


class VocabularyCatalog(ConceptCatalog):
    """In-memory catalog built from an OMOP-style ``CONCEPT`` table.

    ``CONCEPT.csv`` files are tab-delimited as distributed by vocabulary
    download services; parquet copies are read as-is.  The dictionary file is
    a CSV with ``general_concept_id``, ``general_concept_name``, ``category``
    and optionally ``subcategory``.
    """

    def __init__(
        self,
        standard: Dict[int, StandardConcept],
        dictionary: Dict[int, DictionaryConcept],
    ) -> None:
        self._standard = standard
        self._dictionary = dictionary

    @classmethod
    def from_files(
        cls,
        vocabulary_dir: Optional[Path] = None,
        dictionary_path: Optional[Path] = None,
    ) -> "VocabularyCatalog":
        standard: Dict[int, StandardConcept] = {}
        dictionary: Dict[int, DictionaryConcept] = {}
        if vocabulary_dir is not None:
            concept_path = _find_concept_file(vocabulary_dir)
            sep = None if concept_path.suffix.lower() in {".parquet", ".pq"} else "\t"
            standard = cls._standard_from_frame(_read_table(concept_path, sep=sep))
            log.info("Loaded %d standardized concepts from %s", len(standard), concept_path)
        if dictionary_path is not None:
            dictionary = cls._dictionary_from_frame(_read_table(dictionary_path, sep=","))
            log.info("Loaded %d dictionary concepts from %s", len(dictionary), dictionary_path)
        return cls(standard, dictionary)

    @staticmethod
    def _standard_from_frame(frame: pd.DataFrame) -> Dict[int, StandardConcept]:
        concepts: Dict[int, StandardConcept] = {}
        for record in frame.to_dict(orient="records"):
            raw_id = str(record.get("concept_id", "")).strip()
            if not raw_id.lstrip("-").isdigit():
                continue
            concept_id = int(raw_id)
            concepts[concept_id] = StandardConcept(
                concept_id=concept_id,
                code=str(record.get("concept_code", "")),
                name=str(record.get("concept_name", "")),
                vocabulary=str(record.get("vocabulary_id", "")),
                is_valid=str(record.get("invalid_reason", "") or "").strip() == "",
                is_standard=str(record.get("standard_concept", "") or "").strip().upper() == "S",
            )
        return concepts

    @staticmethod
    def _dictionary_from_frame(frame: pd.DataFrame) -> Dict[int, DictionaryConcept]:
        concepts: Dict[int, DictionaryConcept] = {}
        for record in frame.to_dict(orient="records"):
            raw_id = str(record.get("general_concept_id", "")).strip()
            if not raw_id.isdigit():
                continue
            concept_id = int(raw_id)
            concepts[concept_id] = DictionaryConcept(
                concept_id=concept_id,
                name=str(record.get("general_concept_name", "")),
                category=str(record.get("category", "")),
                subcategory=str(record.get("subcategory", "")),
            )
        return concepts

    def lookup_standard(self, concept_id: int) -> StandardConcept:
        try:
            return self._standard[int(concept_id)]
        except KeyError:
            raise ConceptNotFound("standard", concept_id) from None

    def lookup_dictionary(self, concept_id: int) -> DictionaryConcept:
        try:
            return self._dictionary[int(concept_id)]
        except KeyError:
            raise ConceptNotFound("dictionary", concept_id) from None


@dataclass(frozen=True)
class ResolvedTarget:
    """Display-ready view of an assignment target."""

    assignment: Assignment
    dictionary: Optional[DictionaryConcept] = None
    standard: Optional[StandardConcept] = None

    @property
    def resolved(self) -> bool:
        if self.dictionary is None:
            return False
        if self.assignment.standard_concept_id is not None:
            return self.standard is not None
        return True

    @property
    def label(self) -> str:
        if not self.resolved:
            return UNKNOWN_TARGET
        assert self.dictionary is not None
        if self.standard is not None:
            return f"{self.dictionary.name} -> {self.standard.vocabulary} {self.standard.code} {self.standard.name}"
        if self.assignment.custom_concept_id is not None:
            return f"{self.dictionary.name} -> custom concept {self.assignment.custom_concept_id}"
        return self.dictionary.name

    @property
    def target_vocabulary_id(self) -> str:
        return self.standard.vocabulary if self.standard is not None else ""


class CatalogResolver:
    """Bounded-time catalog reads with an unresolved fallback.

    A lookup that exceeds ``timeout`` seconds is abandoned: its future is
    cancelled if it has not started and otherwise left to finish in the
    background, since lookups are read-only.
    """

    def __init__(self, catalog: Optional[ConceptCatalog], *, timeout: float = 2.0, max_workers: int = 4) -> None:
        self.catalog = catalog
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="catalog")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "CatalogResolver":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _bounded(self, func, concept_id: int):
        future = self._executor.submit(func, concept_id)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            log.warning("Catalog lookup of concept %s timed out after %.1fs", concept_id, self.timeout)
            return None
        except ConceptNotFound:
            log.debug("Catalog has no concept %s", concept_id)
            return None

    def standard(self, concept_id: Optional[int]) -> Optional[StandardConcept]:
        if self.catalog is None or concept_id is None:
            return None
        return self._bounded(self.catalog.lookup_standard, concept_id)

    def dictionary(self, concept_id: Optional[int]) -> Optional[DictionaryConcept]:
        if self.catalog is None or concept_id is None:
            return None
        return self._bounded(self.catalog.lookup_dictionary, concept_id)

    def resolve(self, assignment: Assignment) -> ResolvedTarget:
        return ResolvedTarget(
            assignment=assignment,
            dictionary=self.dictionary(assignment.dictionary_concept_id),
            standard=self.standard(assignment.standard_concept_id),
        )
