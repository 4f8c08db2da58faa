from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from conceptalign.errors import InvalidVerdict, NotFoundError
from conceptalign.evaluations import EvaluationEngine
from conceptalign.review import ReviewStore
from conceptalign.schema import open_review_db
from conceptalign.shared.models import Assignment, Tally, normalize_verdict


@pytest.fixture()
def engines(tmp_path: Path) -> tuple[ReviewStore, EvaluationEngine]:
    db = open_review_db(tmp_path / "review.db")
    with db.transaction() as conn:
        conn.execute(
            "INSERT INTO alignments(name, description, file_id, next_row_id, created_at, updated_at) VALUES (?,?,?,?,?,?)",
            ("vitals", "", "alignment_test", 2, "2024-01-01T00:00:00", "2024-01-01T00:00:00"),
        )
    return ReviewStore(db), EvaluationEngine(db)


def test_votes_are_isolated_per_evaluator(engines) -> None:
    reviews, evaluations = engines
    mapping_id = reviews.upsert_mapping(1, 1, Assignment(7, 12345), "alice")

    evaluations.vote(mapping_id, "u1", "approved")
    evaluations.vote(mapping_id, "u2", "rejected")
    assert evaluations.tally(mapping_id) == Tally(approved=1, rejected=1, uncertain=0)

    evaluations.clear(mapping_id, "u1")
    assert evaluations.tally(mapping_id) == Tally(approved=0, rejected=1, uncertain=0)


def test_revote_updates_in_place(engines) -> None:
    reviews, evaluations = engines
    mapping_id = reviews.upsert_mapping(1, 1, Assignment(7), "alice")

    first = evaluations.vote(mapping_id, "u1", "approved")
    second = evaluations.vote(mapping_id, "u1", "uncertain")

    assert first.evaluation_id == second.evaluation_id
    assert evaluations.tally(mapping_id).as_dict() == {"approved": 0, "rejected": 0, "uncertain": 1}


def test_comment_and_vote_preserve_each_other(engines) -> None:
    reviews, evaluations = engines
    mapping_id = reviews.upsert_mapping(1, 1, Assignment(7), "alice")

    commented = evaluations.comment(mapping_id, "u1", "check the unit")
    assert commented.verdict is None
    assert evaluations.tally(mapping_id).total == 0

    voted = evaluations.vote(mapping_id, "u1", "rejected")
    assert voted.comment == "check the unit"

    recommented = evaluations.comment(mapping_id, "u1", "unit is mmHg")
    assert recommented.verdict == "rejected"
    assert recommented.comment == "unit is mmHg"


def test_clear_removes_verdict_and_comment(engines) -> None:
    reviews, evaluations = engines
    mapping_id = reviews.upsert_mapping(1, 1, Assignment(7), "alice")
    evaluations.vote(mapping_id, "u1", "approved")
    evaluations.comment(mapping_id, "u1", "fine")

    assert evaluations.clear(mapping_id, "u1") is True
    assert evaluations.get(mapping_id, "u1") is None
    assert evaluations.clear(mapping_id, "u1") is False


def test_operations_on_missing_mapping_raise_not_found(engines) -> None:
    _, evaluations = engines
    with pytest.raises(NotFoundError):
        evaluations.vote(404, "u1", "approved")
    with pytest.raises(NotFoundError):
        evaluations.comment(404, "u1", "hello")
    with pytest.raises(NotFoundError):
        evaluations.clear(404, "u1")
    with pytest.raises(NotFoundError):
        evaluations.tally(404)


def test_unknown_verdict_is_rejected(engines) -> None:
    reviews, evaluations = engines
    mapping_id = reviews.upsert_mapping(1, 1, Assignment(7), "alice")
    with pytest.raises(InvalidVerdict):
        evaluations.vote(mapping_id, "u1", "maybe")
    assert evaluations.get(mapping_id, "u1") is None


@pytest.mark.parametrize(
    "raw, expected",
    [("Approved", "approved"), ("1", "approved"), ("0", "rejected"), ("-1", "uncertain"), (" REJECTED ", "rejected")],
)
def test_normalize_verdict_accepts_names_and_legacy_codes(raw: str, expected: str) -> None:
    assert normalize_verdict(raw) == expected


def test_evaluations_in_lists_row_ids(engines) -> None:
    reviews, evaluations = engines
    mapping_id = reviews.upsert_mapping(1, 1, Assignment(7), "alice")
    evaluations.vote(mapping_id, "zed", "approved")
    evaluations.vote(mapping_id, "amy", "rejected")

    pairs = evaluations.evaluations_in(1)

    assert [(row_id, e.evaluator_id, e.verdict) for row_id, e in pairs] == [
        (1, "amy", "rejected"),
        (1, "zed", "approved"),
    ]
