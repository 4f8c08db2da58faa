"""Exception classes for alignment storage, synchronization and review.

All domain errors inherit from :class:`AlignmentError` so callers (the CLI in
particular) can report them uniformly.  Storage-layer failures are not wrapped
here; they surface as ``sqlite3.Error`` / ``OSError`` unless the sync engine
converts them into :class:`SyncFailure`.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


class AlignmentError(Exception):
    """Base exception for all domain errors.

    Attributes:
        code: Error code (e.g. ``"MAPPING_NOT_FOUND"``)
        message: Human-readable message
        details: Additional context
    """

    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "timestamp": self.timestamp,
            }
        }


class InvalidAssignment(AlignmentError, ValueError):
    """Assignment shape violates the one-target invariant."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("INVALID_ASSIGNMENT", message, details)


class NotFoundError(AlignmentError, LookupError):
    """Referenced alignment, source row, mapping or concept is absent."""

    def __init__(self, resource: str, identifier: object, code: Optional[str] = None):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            code or f"{resource.upper().replace(' ', '_')}_NOT_FOUND",
            f"{resource} {identifier} not found",
            {"id": identifier},
        )


class ConceptNotFound(NotFoundError):
    """Catalog has no concept with the requested id."""

    def __init__(self, kind: str, concept_id: object):
        super().__init__(f"{kind} concept", concept_id, code="CONCEPT_NOT_FOUND")


class AlignmentImportError(AlignmentError):
    """Import aborted: unreadable input, missing columns or no surviving rows."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("IMPORT_FAILED", message, details)


class SyncFailure(AlignmentError):
    """Review store write failed after the retry; the row was rolled back."""

    def __init__(self, alignment_id: int, row_id: int, message: str):
        super().__init__(
            "SYNC_FAILURE",
            message,
            {"alignment_id": alignment_id, "row_id": row_id},
        )


class InvalidVerdict(AlignmentError, ValueError):
    def __init__(self, value: object):
        super().__init__(
            "INVALID_VERDICT",
            f"Unknown verdict {value!r}; expected approved, rejected or uncertain",
            {"value": None if value is None else str(value)},
        )
