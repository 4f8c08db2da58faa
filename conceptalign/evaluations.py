"""Reviewer verdicts and comments on mappings."""
from __future__ import annotations

import logging
import sqlite3
from typing import List, Optional, Tuple

from .errors import NotFoundError
from .shared.database import Database, fetch_all, fetch_one
from .shared.models import Evaluation, Tally, normalize_verdict
from .utils import utcnow_iso

log = logging.getLogger(__name__)


class EvaluationEngine:
    """Sole writer of the ``evaluations`` table.

    Every write first checks that the mapping exists so that votes against a
    stale mapping id fail loudly with :class:`NotFoundError`.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def vote(self, mapping_id: int, evaluator_id: str, verdict: str) -> Evaluation:
        canonical = normalize_verdict(verdict)
        return self._upsert(
            mapping_id,
            evaluator_id,
            """
            INSERT INTO evaluations(mapping_id, evaluator_id, verdict, comment, evaluated_at)
            VALUES (?,?,?,NULL,?)
            ON CONFLICT(mapping_id, evaluator_id) DO UPDATE SET
                verdict=excluded.verdict,
                evaluated_at=excluded.evaluated_at
            """,
            (mapping_id, evaluator_id, canonical, utcnow_iso()),
        )

    def comment(self, mapping_id: int, evaluator_id: str, text: str) -> Evaluation:
        return self._upsert(
            mapping_id,
            evaluator_id,
            """
            INSERT INTO evaluations(mapping_id, evaluator_id, verdict, comment, evaluated_at)
            VALUES (?,?,NULL,?,?)
            ON CONFLICT(mapping_id, evaluator_id) DO UPDATE SET
                comment=excluded.comment,
                evaluated_at=excluded.evaluated_at
            """,
            (mapping_id, evaluator_id, text, utcnow_iso()),
        )

    def clear(self, mapping_id: int, evaluator_id: str) -> bool:
        """Remove the evaluator's verdict and comment together.

        Returns ``False`` when the evaluator had nothing recorded.
        """
        with self.db.transaction() as conn:
            self._require_mapping(conn, mapping_id)
            cur = conn.execute(
                "DELETE FROM evaluations WHERE mapping_id=? AND evaluator_id=?",
                (mapping_id, evaluator_id),
            )
        return cur.rowcount > 0

    def get(self, mapping_id: int, evaluator_id: str) -> Optional[Evaluation]:
        with self.db.transaction() as conn:
            row = fetch_one(
                conn,
                "SELECT * FROM evaluations WHERE mapping_id=? AND evaluator_id=?",
                (mapping_id, evaluator_id),
            )
        return Evaluation.from_row(row) if row else None

    def evaluations_in(self, alignment_id: int) -> List[Tuple[int, Evaluation]]:
        """``(row_id, evaluation)`` pairs for every evaluation in an alignment."""
        with self.db.transaction() as conn:
            rows = fetch_all(
                conn,
                """
                SELECT m.row_id AS row_id, e.*
                FROM evaluations e
                JOIN mappings m ON m.mapping_id = e.mapping_id
                WHERE m.alignment_id=?
                ORDER BY m.row_id, e.evaluator_id
                """,
                (alignment_id,),
            )
        return [(int(row["row_id"]), Evaluation.from_row(row)) for row in rows]

    def tally(self, mapping_id: int) -> Tally:
        with self.db.transaction() as conn:
            self._require_mapping(conn, mapping_id)
            rows = fetch_all(
                conn,
                """
                SELECT verdict, COUNT(DISTINCT evaluator_id) AS n
                FROM evaluations
                WHERE mapping_id=? AND verdict IS NOT NULL
                GROUP BY verdict
                """,
                (mapping_id,),
            )
        counts = {row["verdict"]: int(row["n"]) for row in rows}
        return Tally(
            approved=counts.get("approved", 0),
            rejected=counts.get("rejected", 0),
            uncertain=counts.get("uncertain", 0),
        )

    def _upsert(self, mapping_id: int, evaluator_id: str, sql: str, params: tuple) -> Evaluation:
        try:
            with self.db.transaction() as conn:
                self._require_mapping(conn, mapping_id)
                conn.execute(sql, params)
                row = fetch_one(
                    conn,
                    "SELECT * FROM evaluations WHERE mapping_id=? AND evaluator_id=?",
                    (mapping_id, evaluator_id),
                )
        except sqlite3.IntegrityError as exc:
            # mapping deleted between the existence check and the write
            raise NotFoundError("mapping", mapping_id) from exc
        log.debug("Evaluation by %s recorded on mapping %s", evaluator_id, mapping_id)
        return Evaluation.from_row(row)

    @staticmethod
    def _require_mapping(conn: sqlite3.Connection, mapping_id: int) -> None:
        if not fetch_one(conn, "SELECT 1 FROM mappings WHERE mapping_id=?", (mapping_id,)):
            raise NotFoundError("mapping", mapping_id)
