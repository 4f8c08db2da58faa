"""Relational mirror of assigned source rows.

One ``mappings`` row exists per (alignment, row) that currently carries an
assignment.  Its ``mapping_id`` is stable across re-assignments because
evaluations hang off it.  Only :class:`conceptalign.sync.SyncEngine` should
call the mutating methods here.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from .errors import NotFoundError
from .shared.database import Database, fetch_all, fetch_one
from .shared.models import Assignment, Mapping, MappingSummary, Tally
from .utils import utcnow_iso

log = logging.getLogger(__name__)

_UPSERT_SQL = """
    INSERT INTO mappings(
        alignment_id, row_id, dictionary_concept_id, standard_concept_id, custom_concept_id, mapped_by, mapped_at
    ) VALUES (?,?,?,?,?,?,?)
    ON CONFLICT(alignment_id, row_id) DO UPDATE SET
        dictionary_concept_id=excluded.dictionary_concept_id,
        standard_concept_id=excluded.standard_concept_id,
        custom_concept_id=excluded.custom_concept_id,
        mapped_by=excluded.mapped_by,
        mapped_at=excluded.mapped_at
"""

_SUMMARY_SQL = """
    SELECT m.*,
           COUNT(DISTINCT CASE WHEN e.verdict='approved' THEN e.evaluator_id END) AS approved,
           COUNT(DISTINCT CASE WHEN e.verdict='rejected' THEN e.evaluator_id END) AS rejected,
           COUNT(DISTINCT CASE WHEN e.verdict='uncertain' THEN e.evaluator_id END) AS uncertain,
           COUNT(CASE WHEN e.comment IS NOT NULL AND e.comment != '' THEN 1 END) AS comment_count
    FROM mappings m
    LEFT JOIN evaluations e ON e.mapping_id = m.mapping_id
    WHERE m.alignment_id=?
    GROUP BY m.mapping_id
    ORDER BY m.row_id
"""


class ReviewStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def upsert_mapping(
        self,
        alignment_id: int,
        row_id: int,
        assignment: Assignment,
        user_id: str | None,
        *,
        mapped_at: str | None = None,
    ) -> int:
        """Insert or update the mapping for ``(alignment_id, row_id)`` and return its id."""
        with self.db.transaction() as conn:
            conn.execute(
                _UPSERT_SQL,
                (
                    alignment_id,
                    row_id,
                    assignment.dictionary_concept_id,
                    assignment.standard_concept_id,
                    assignment.custom_concept_id,
                    user_id,
                    mapped_at or utcnow_iso(),
                ),
            )
            row = fetch_one(
                conn,
                "SELECT mapping_id FROM mappings WHERE alignment_id=? AND row_id=?",
                (alignment_id, row_id),
            )
        return int(row["mapping_id"])

    def delete_mapping(self, mapping_id: int) -> bool:
        """Delete a mapping; its evaluations go with it through the foreign key."""
        with self.db.transaction() as conn:
            cur = conn.execute("DELETE FROM mappings WHERE mapping_id=?", (mapping_id,))
        return cur.rowcount > 0

    def find_mapping(self, alignment_id: int, row_id: int) -> Optional[int]:
        with self.db.transaction() as conn:
            row = fetch_one(
                conn,
                "SELECT mapping_id FROM mappings WHERE alignment_id=? AND row_id=?",
                (alignment_id, row_id),
            )
        return int(row["mapping_id"]) if row else None

    def get_mapping(self, mapping_id: int) -> Mapping:
        with self.db.transaction() as conn:
            row = fetch_one(conn, "SELECT * FROM mappings WHERE mapping_id=?", (mapping_id,))
        if not row:
            raise NotFoundError("mapping", mapping_id)
        return Mapping.from_row(row)

    def mappings_for(self, alignment_id: int) -> List[Mapping]:
        with self.db.transaction() as conn:
            rows = fetch_all(
                conn,
                "SELECT * FROM mappings WHERE alignment_id=? ORDER BY row_id",
                (alignment_id,),
            )
        return [Mapping.from_row(row) for row in rows]

    def list_mappings(self, alignment_id: int) -> List[MappingSummary]:
        """Mappings of one alignment with their vote aggregates joined in."""
        with self.db.transaction() as conn:
            rows = fetch_all(conn, _SUMMARY_SQL, (alignment_id,))
        return [
            MappingSummary(
                mapping=Mapping.from_row(row),
                tally=Tally(
                    approved=int(row["approved"]),
                    rejected=int(row["rejected"]),
                    uncertain=int(row["uncertain"]),
                ),
                comment_count=int(row["comment_count"]),
            )
            for row in rows
        ]
