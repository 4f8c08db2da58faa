"""Keeps source-row assignments and their review mirrors in step.

``assign`` and ``unassign`` are the only entry points that change a row's
assignment.  They write the alignment table and the ``mappings`` table in a
fixed order so that a crash between the two writes leaves either nothing
visible or an orphaned mapping, which :meth:`SyncEngine.reconcile` removes.

Locking model: each alignment has a gate.  Row operations hold it in shared
mode together with a per-row lock, so different rows proceed concurrently and
calls for the same row serialize.  ``reconcile`` holds the gate exclusively
for its whole run.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from .alignments import AlignmentStore
from .errors import SyncFailure
from .review import ReviewStore
from .shared.models import Assignment, SourceRow
from .utils import utcnow_iso

log = logging.getLogger(__name__)


class _AlignmentGate:
    """Shared/exclusive gate; pending exclusive requests block new shared entries."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._shared = 0
        self._exclusive = False
        self._waiting_exclusive = 0

    @contextmanager
    def shared(self) -> Iterator[None]:
        with self._cond:
            while self._exclusive or self._waiting_exclusive:
                self._cond.wait()
            self._shared += 1
        try:
            yield
        finally:
            with self._cond:
                self._shared -= 1
                if self._shared == 0:
                    self._cond.notify_all()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._cond:
            self._waiting_exclusive += 1
            try:
                while self._exclusive or self._shared:
                    self._cond.wait()
            finally:
                self._waiting_exclusive -= 1
            self._exclusive = True
        try:
            yield
        finally:
            with self._cond:
                self._exclusive = False
                self._cond.notify_all()


class _RowLock:
    """Per-row lock, dropped once nobody holds or waits on it."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


@dataclass
class ReconcileReport:
    alignment_id: int
    removed_missing_rows: List[int] = field(default_factory=list)
    removed_unassigned_rows: List[int] = field(default_factory=list)
    removed_invalid_rows: List[int] = field(default_factory=list)
    updated_rows: List[int] = field(default_factory=list)
    created_rows: List[int] = field(default_factory=list)
    # Rows whose target columns are malformed; reported, never mirrored.
    invalid_rows: List[int] = field(default_factory=list)

    @property
    def changes(self) -> int:
        return (
            len(self.removed_missing_rows)
            + len(self.removed_unassigned_rows)
            + len(self.removed_invalid_rows)
            + len(self.updated_rows)
            + len(self.created_rows)
        )

    def as_dict(self) -> Dict[str, object]:
        return {
            "alignment_id": self.alignment_id,
            "removed_missing_rows": list(self.removed_missing_rows),
            "removed_unassigned_rows": list(self.removed_unassigned_rows),
            "removed_invalid_rows": list(self.removed_invalid_rows),
            "updated_rows": list(self.updated_rows),
            "created_rows": list(self.created_rows),
            "invalid_rows": list(self.invalid_rows),
        }


class SyncEngine:
    def __init__(self, alignments: AlignmentStore, reviews: ReviewStore, *, retries: int = 1) -> None:
        self.alignments = alignments
        self.reviews = reviews
        self.retries = max(0, retries)
        # Gates live only while some caller holds or waits on them.
        self._gates: "weakref.WeakValueDictionary[int, _AlignmentGate]" = weakref.WeakValueDictionary()
        self._row_locks: Dict[Tuple[int, int], _RowLock] = {}
        self._guard = threading.Lock()

    def _gate(self, alignment_id: int) -> _AlignmentGate:
        with self._guard:
            gate = self._gates.get(alignment_id)
            if gate is None:
                gate = _AlignmentGate()
                self._gates[alignment_id] = gate
            return gate

    @contextmanager
    def _row_lock(self, alignment_id: int, row_id: int) -> Iterator[None]:
        key = (alignment_id, row_id)
        with self._guard:
            entry = self._row_locks.get(key)
            if entry is None:
                entry = self._row_locks[key] = _RowLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._row_locks[key]

    @contextmanager
    def _row_scope(self, alignment_id: int, row_id: int) -> Iterator[None]:
        gate = self._gate(alignment_id)
        with gate.shared():
            with self._row_lock(alignment_id, row_id):
                yield

    # ------------------------------------------------------------------ #

    def assign(
        self,
        alignment_id: int,
        row_id: int,
        assignment: Assignment,
        user_id: str | None,
        *,
        mapped_at: str | None = None,
    ) -> int:
        """Point a row at ``assignment`` and mirror it; returns the mapping id.

        ``mapped_at`` defaults to now; archive replays pass the recorded time.
        """
        assignment.validate()
        with self._row_scope(alignment_id, row_id):
            previous = self.alignments.get_row(alignment_id, row_id)
            mapped_at = mapped_at or utcnow_iso()
            self.alignments.set_assignment(alignment_id, row_id, assignment, mapped_by=user_id, mapped_at=mapped_at)
            try:
                mapping_id = self._record_mapping(alignment_id, row_id, assignment, user_id, mapped_at)
            except BaseException:
                self._restore(previous)
                log.error("Rolled back assignment of alignment %s row %s", alignment_id, row_id)
                raise
            log.debug("Assigned alignment %s row %s -> mapping %s", alignment_id, row_id, mapping_id)
            return mapping_id

    def _record_mapping(
        self,
        alignment_id: int,
        row_id: int,
        assignment: Assignment,
        user_id: str | None,
        mapped_at: str,
    ) -> int:
        attempts = 1 + self.retries
        last_error: Optional[sqlite3.Error] = None
        for attempt in range(1, attempts + 1):
            try:
                return self.reviews.upsert_mapping(
                    alignment_id,
                    row_id,
                    assignment,
                    user_id,
                    mapped_at=mapped_at,
                )
            except sqlite3.Error as exc:
                last_error = exc
                log.warning(
                    "Mapping upsert for alignment %s row %s failed (attempt %d/%d): %s",
                    alignment_id,
                    row_id,
                    attempt,
                    attempts,
                    exc,
                )
        raise SyncFailure(
            alignment_id,
            row_id,
            f"Could not record the mapping for row {row_id}: {last_error}",
        ) from last_error

    def unassign(self, alignment_id: int, row_id: int) -> bool:
        """Clear a row's assignment and drop its mirror; ``True`` if a mapping was removed."""
        with self._row_scope(alignment_id, row_id):
            mapping_id = self.reviews.find_mapping(alignment_id, row_id)
            self.alignments.clear_assignment(alignment_id, row_id)
            if mapping_id is None:
                log.debug("Unassigned alignment %s row %s (no mapping on record)", alignment_id, row_id)
                return False
            self.reviews.delete_mapping(mapping_id)
            log.debug("Unassigned alignment %s row %s, removed mapping %s", alignment_id, row_id, mapping_id)
            return True

    def reconcile(self, alignment_id: int) -> ReconcileReport:
        """Heal drift between the alignment table and its mappings.

        The table is authoritative both for whether a row is mapped and for
        what it is mapped to.  Running it twice in a row changes nothing the
        second time.
        Rows whose target columns are malformed count as unassigned and are
        listed in ``invalid_rows``.
        """
        report = ReconcileReport(alignment_id=alignment_id)
        with self._gate(alignment_id).exclusive():
            rows = self.alignments.load_rows(alignment_id, strict=False)
            for row in rows.values():
                if row.assignment_error is not None:
                    report.invalid_rows.append(row.row_id)
                    log.warning(
                        "Reconcile %s: row %s has a malformed assignment (%s)",
                        alignment_id,
                        row.row_id,
                        row.assignment_error,
                    )
            mapped_rows = set()
            for mapping in self.reviews.mappings_for(alignment_id):
                row = rows.get(mapping.row_id)
                if row is None:
                    self.reviews.delete_mapping(mapping.mapping_id)
                    report.removed_missing_rows.append(mapping.row_id)
                    log.info(
                        "Reconcile %s: removed mapping %s for missing row %s",
                        alignment_id,
                        mapping.mapping_id,
                        mapping.row_id,
                    )
                    continue
                if row.assignment is None:
                    self.reviews.delete_mapping(mapping.mapping_id)
                    if row.assignment_error is not None:
                        report.removed_invalid_rows.append(mapping.row_id)
                    else:
                        report.removed_unassigned_rows.append(mapping.row_id)
                    log.info(
                        "Reconcile %s: removed mapping %s for unassigned row %s",
                        alignment_id,
                        mapping.mapping_id,
                        mapping.row_id,
                    )
                    continue
                mapped_rows.add(mapping.row_id)
                if row.assignment != mapping.assignment:
                    self._mirror(row)
                    report.updated_rows.append(row.row_id)
                    log.info("Reconcile %s: updated mapping %s for row %s", alignment_id, mapping.mapping_id, row.row_id)
            for row in rows.values():
                if row.assignment is None or row.row_id in mapped_rows:
                    continue
                self._mirror(row)
                report.created_rows.append(row.row_id)
                log.info("Reconcile %s: created mapping for row %s", alignment_id, row.row_id)
        log.info("Reconcile of alignment %s finished with %d change(s)", alignment_id, report.changes)
        return report

    # ------------------------------------------------------------------ #

    def _mirror(self, row: SourceRow) -> int:
        return self.reviews.upsert_mapping(
            row.alignment_id,
            row.row_id,
            row.assignment,
            row.mapped_by,
            mapped_at=row.mapped_at,
        )

    def _restore(self, previous: SourceRow) -> None:
        if previous.assignment is None:
            self.alignments.clear_assignment(previous.alignment_id, previous.row_id)
        else:
            self.alignments.set_assignment(
                previous.alignment_id,
                previous.row_id,
                previous.assignment,
                mapped_by=previous.mapped_by,
                mapped_at=previous.mapped_at,
            )
