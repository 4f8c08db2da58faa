"""Dataclass style records representing the persistent schema.

``review.db`` holds the alignment registry, the relational mirror of every
assigned source row (``mappings``) and the reviewers' judgments on those
mirrors (``evaluations``).  Each persisted model inherits from :class:`Record`
which provides helper utilities for creating tables and hydrating rows.

:class:`Assignment` and :class:`SourceRow` are not tables; they describe the
per-alignment source-row files and the target an assignment points at.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

from ..errors import InvalidAssignment, InvalidVerdict
from .database import Record


VERDICT_APPROVED = "approved"
VERDICT_REJECTED = "rejected"
VERDICT_UNCERTAIN = "uncertain"
VERDICTS = (VERDICT_APPROVED, VERDICT_REJECTED, VERDICT_UNCERTAIN)

# Largest value a sqlite INTEGER column can hold.
MAX_CONCEPT_ID = 2**63 - 1

_VERDICT_ALIASES = {
    "approved": VERDICT_APPROVED,
    "approve": VERDICT_APPROVED,
    "1": VERDICT_APPROVED,
    "rejected": VERDICT_REJECTED,
    "reject": VERDICT_REJECTED,
    "0": VERDICT_REJECTED,
    "uncertain": VERDICT_UNCERTAIN,
    "-1": VERDICT_UNCERTAIN,
}


def normalize_verdict(value: object) -> str:
    """Return the canonical verdict string for ``value``.

    Accepts the canonical names case-insensitively as well as the legacy
    ``1`` / ``0`` / ``-1`` encoding used by older exports.
    """
    key = str(value).strip().casefold() if value is not None else ""
    verdict = _VERDICT_ALIASES.get(key)
    if verdict is None:
        raise InvalidVerdict(value)
    return verdict


# --------------------------- assignment values ------------------------------ #


@dataclass(frozen=True)
class Assignment:
    """Target of an assigned source row.

    Always names a dictionary concept and optionally refines it with either a
    standardized-vocabulary concept or a locally-defined concept, never both.
    """

    dictionary_concept_id: Optional[int]
    standard_concept_id: Optional[int] = None
    custom_concept_id: Optional[int] = None

    def validate(self) -> "Assignment":
        details = {
            "dictionary_concept_id": self.dictionary_concept_id,
            "standard_concept_id": self.standard_concept_id,
            "custom_concept_id": self.custom_concept_id,
        }
        if self.dictionary_concept_id is None:
            raise InvalidAssignment("An assignment must name a dictionary concept", details)
        if self.standard_concept_id is not None and self.custom_concept_id is not None:
            raise InvalidAssignment(
                "An assignment cannot target both a standard and a custom concept", details
            )
        for name, value in details.items():
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise InvalidAssignment(f"{name} must be a positive integer", details)
            if value > MAX_CONCEPT_ID:
                raise InvalidAssignment(f"{name} exceeds the largest storable id", details)
        return self

    @classmethod
    def from_values(
        cls,
        dictionary_concept_id: object,
        standard_concept_id: object = None,
        custom_concept_id: object = None,
    ) -> Optional["Assignment"]:
        """Build an assignment from loosely typed cells; ``None`` when all are empty."""
        values = [
            _coerce_concept_id(dictionary_concept_id),
            _coerce_concept_id(standard_concept_id),
            _coerce_concept_id(custom_concept_id),
        ]
        if all(value is None for value in values):
            return None
        return cls(*values)


def _coerce_concept_id(value: object) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidAssignment(f"Concept id {value!r} is not an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value:  # NaN
            return None
        if not value.is_integer():
            raise InvalidAssignment(f"Concept id {value!r} is not an integer")
        return int(value)
    text = str(value).strip()
    if not text or text.casefold() in {"na", "nan", "none", "null"}:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError as exc:
        raise InvalidAssignment(f"Concept id {value!r} is not an integer") from exc
    if not number.is_integer():
        raise InvalidAssignment(f"Concept id {value!r} is not an integer")
    return int(number)


@dataclass
class SourceRow:
    alignment_id: int
    row_id: int
    vocabulary_id: str
    concept_code: str
    concept_name: str
    statistical_summary: str = ""
    extra: Dict[str, str] = field(default_factory=dict)
    assignment: Optional[Assignment] = None
    mapped_by: Optional[str] = None
    mapped_at: Optional[str] = None
    # Set instead of ``assignment`` when the stored target columns are malformed.
    assignment_error: Optional[str] = None

    @property
    def is_assigned(self) -> bool:
        return self.assignment is not None


# --------------------------- review.db tables ------------------------------- #


@dataclass
class AlignmentRecord(Record):
    alignment_id: int
    name: str
    description: str
    file_id: str
    original_filename: Optional[str]
    next_row_id: int
    created_at: str
    updated_at: str

    __tablename__ = "alignments"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS alignments (
            alignment_id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            file_id TEXT NOT NULL UNIQUE,
            original_filename TEXT NULL,
            next_row_id INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
    )


@dataclass
class Mapping(Record):
    mapping_id: int
    alignment_id: int
    row_id: int
    dictionary_concept_id: int
    standard_concept_id: Optional[int]
    custom_concept_id: Optional[int]
    mapped_by: Optional[str]
    mapped_at: str

    __tablename__ = "mappings"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS mappings (
            mapping_id INTEGER PRIMARY KEY AUTOINCREMENT,
            alignment_id INTEGER NOT NULL,
            row_id INTEGER NOT NULL,
            dictionary_concept_id INTEGER NOT NULL,
            standard_concept_id INTEGER NULL,
            custom_concept_id INTEGER NULL,
            mapped_by TEXT NULL,
            mapped_at TEXT NOT NULL,
            UNIQUE(alignment_id, row_id),
            CHECK(standard_concept_id IS NULL OR custom_concept_id IS NULL),
            FOREIGN KEY(alignment_id) REFERENCES alignments(alignment_id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_mappings_alignment ON mappings(alignment_id);
        """
    )

    @property
    def assignment(self) -> Assignment:
        return Assignment(self.dictionary_concept_id, self.standard_concept_id, self.custom_concept_id)


@dataclass
class Evaluation(Record):
    evaluation_id: int
    mapping_id: int
    evaluator_id: str
    verdict: Optional[str]
    comment: Optional[str]
    evaluated_at: str

    __tablename__ = "evaluations"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS evaluations (
            evaluation_id INTEGER PRIMARY KEY AUTOINCREMENT,
            mapping_id INTEGER NOT NULL,
            evaluator_id TEXT NOT NULL,
            verdict TEXT NULL CHECK(verdict IN ('approved','rejected','uncertain')),
            comment TEXT NULL,
            evaluated_at TEXT NOT NULL,
            UNIQUE(mapping_id, evaluator_id),
            FOREIGN KEY(mapping_id) REFERENCES mappings(mapping_id) ON DELETE CASCADE
        );
        """
    )


@dataclass
class ImportRecord(Record):
    import_id: int
    alignment_id: int
    original_filename: Optional[str]
    rows_received: int
    rows_imported: int
    imported_by: Optional[str]
    imported_at: str

    __tablename__ = "imports"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS imports (
            import_id INTEGER PRIMARY KEY AUTOINCREMENT,
            alignment_id INTEGER NOT NULL,
            original_filename TEXT NULL,
            rows_received INTEGER NOT NULL,
            rows_imported INTEGER NOT NULL,
            imported_by TEXT NULL,
            imported_at TEXT NOT NULL,
            FOREIGN KEY(alignment_id) REFERENCES alignments(alignment_id) ON DELETE CASCADE
        );
        """
    )


@dataclass(frozen=True)
class Tally:
    approved: int = 0
    rejected: int = 0
    uncertain: int = 0

    @property
    def total(self) -> int:
        return self.approved + self.rejected + self.uncertain

    def as_dict(self) -> Dict[str, int]:
        return {"approved": self.approved, "rejected": self.rejected, "uncertain": self.uncertain}


@dataclass
class MappingSummary:
    """A :class:`Mapping` joined with its vote aggregates."""

    mapping: Mapping
    tally: Tally
    comment_count: int = 0
