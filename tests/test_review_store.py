from __future__ import annotations

import sqlite3
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from conceptalign.errors import NotFoundError
from conceptalign.evaluations import EvaluationEngine
from conceptalign.review import ReviewStore
from conceptalign.schema import SCHEMA_VERSION, open_review_db, schema_version
from conceptalign.shared.database import Database
from conceptalign.shared.models import Assignment


@pytest.fixture()
def db(tmp_path: Path) -> Database:
    db = open_review_db(tmp_path / "review.db")
    with db.transaction() as conn:
        conn.execute(
            "INSERT INTO alignments(name, description, file_id, next_row_id, created_at, updated_at) VALUES (?,?,?,?,?,?)",
            ("vitals", "", "alignment_test", 4, "2024-01-01T00:00:00", "2024-01-01T00:00:00"),
        )
    return db


def test_schema_is_versioned(db: Database) -> None:
    with db.transaction() as conn:
        assert schema_version(conn) == SCHEMA_VERSION
        tables = {row["name"] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    assert {"alignments", "mappings", "evaluations", "imports"} <= tables


def test_upsert_returns_stable_mapping_id(db: Database) -> None:
    reviews = ReviewStore(db)

    first = reviews.upsert_mapping(1, 2, Assignment(7, 12345), "alice")
    second = reviews.upsert_mapping(1, 2, Assignment(7, 12345), "alice")
    third = reviews.upsert_mapping(1, 2, Assignment(8, custom_concept_id=99), "bob", mapped_at="2024-02-02T10:00:00")

    assert first == second == third
    mapping = reviews.get_mapping(first)
    assert mapping.assignment == Assignment(8, None, 99)
    assert mapping.mapped_by == "bob"
    assert mapping.mapped_at == "2024-02-02T10:00:00"
    assert len(reviews.mappings_for(1)) == 1


def test_find_and_delete_mapping(db: Database) -> None:
    reviews = ReviewStore(db)
    assert reviews.find_mapping(1, 2) is None

    mapping_id = reviews.upsert_mapping(1, 2, Assignment(7), None)
    assert reviews.find_mapping(1, 2) == mapping_id

    assert reviews.delete_mapping(mapping_id) is True
    assert reviews.delete_mapping(mapping_id) is False
    assert reviews.find_mapping(1, 2) is None
    with pytest.raises(NotFoundError):
        reviews.get_mapping(mapping_id)


def test_delete_mapping_cascades_to_evaluations(db: Database) -> None:
    reviews = ReviewStore(db)
    evaluations = EvaluationEngine(db)
    mapping_id = reviews.upsert_mapping(1, 1, Assignment(3), "alice")
    evaluations.vote(mapping_id, "alice", "approved")
    evaluations.comment(mapping_id, "bob", "looks off")

    reviews.delete_mapping(mapping_id)

    with db.transaction() as conn:
        remaining = conn.execute("SELECT COUNT(*) FROM evaluations").fetchone()[0]
    assert remaining == 0


def test_list_mappings_joins_vote_aggregates(db: Database) -> None:
    reviews = ReviewStore(db)
    evaluations = EvaluationEngine(db)
    first = reviews.upsert_mapping(1, 1, Assignment(3), "alice")
    second = reviews.upsert_mapping(1, 3, Assignment(4, 555), "alice")
    evaluations.vote(first, "u1", "approved")
    evaluations.vote(first, "u2", "rejected")
    evaluations.vote(first, "u3", "approved")
    evaluations.comment(first, "u2", "wrong unit")
    evaluations.comment(second, "u1", "no vote yet")

    summaries = reviews.list_mappings(1)

    assert [s.mapping.row_id for s in summaries] == [1, 3]
    assert summaries[0].tally.as_dict() == {"approved": 2, "rejected": 1, "uncertain": 0}
    assert summaries[0].comment_count == 1
    assert summaries[1].tally.total == 0
    assert summaries[1].comment_count == 1


def test_mapping_requires_existing_alignment(db: Database) -> None:
    with pytest.raises(sqlite3.IntegrityError):
        ReviewStore(db).upsert_mapping(99, 1, Assignment(3), None)


def test_mapping_table_rejects_double_target(db: Database) -> None:
    with pytest.raises(sqlite3.IntegrityError):
        with db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO mappings(alignment_id, row_id, dictionary_concept_id, standard_concept_id, custom_concept_id, mapped_at)
                VALUES (1, 1, 3, 4, 5, '2024-01-01T00:00:00')
                """
            )
