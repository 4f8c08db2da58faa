"""Tests for the assign/unassign pipeline between alignment tables and mappings."""

from __future__ import annotations

import gc
import sqlite3
import sys
import threading
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from conceptalign.config import Settings
from conceptalign.errors import InvalidAssignment, NotFoundError, SyncFailure
from conceptalign.project import Workspace
from conceptalign.shared.models import Assignment, Tally


ROWS = [
    {"vocabulary_id": "LOCAL", "concept_code": "HR", "concept_name": "Heart rate"},
    {"vocabulary_id": "LOCAL", "concept_code": "SBP", "concept_name": "Systolic BP"},
    {"vocabulary_id": "LOCAL", "concept_code": "TEMP", "concept_name": "Temperature"},
]


@pytest.fixture()
def workspace(tmp_path: Path):
    settings = Settings(home=tmp_path, sync_retries=1, vocabulary_dir=None, dictionary_path=None)
    with Workspace.open(tmp_path / "ws", settings) as ws:
        yield ws


@pytest.fixture()
def alignment_id(workspace: Workspace) -> int:
    alignment_id, _ = workspace.alignments.import_alignment("vitals", "", ROWS)
    return alignment_id


def _assert_in_sync(workspace: Workspace, alignment_id: int) -> None:
    assigned = {row.row_id for row in workspace.alignments.scan_assigned(alignment_id)}
    mirrored = {mapping.row_id for mapping in workspace.reviews.mappings_for(alignment_id)}
    assert assigned == mirrored


def test_assign_vote_unassign_scenario(workspace: Workspace, alignment_id: int) -> None:
    mapping_id = workspace.sync.assign(alignment_id, 2, Assignment(7, standard_concept_id=12345), "carol")
    assert workspace.evaluations.tally(mapping_id) == Tally()

    workspace.evaluations.vote(mapping_id, "alice", "approved")
    assert workspace.evaluations.tally(mapping_id) == Tally(approved=1)

    assert workspace.sync.unassign(alignment_id, 2) is True

    assert workspace.reviews.find_mapping(alignment_id, 2) is None
    assert workspace.alignments.get_row(alignment_id, 2).assignment is None
    with pytest.raises(NotFoundError):
        workspace.evaluations.tally(mapping_id)
    with workspace.db.transaction() as conn:
        assert conn.execute("SELECT COUNT(*) FROM evaluations").fetchone()[0] == 0
    _assert_in_sync(workspace, alignment_id)


def test_assign_twice_is_idempotent(workspace: Workspace, alignment_id: int) -> None:
    assignment = Assignment(7, standard_concept_id=12345)

    first = workspace.sync.assign(alignment_id, 1, assignment, "carol")
    row_after_first = workspace.alignments.get_row(alignment_id, 1)
    second = workspace.sync.assign(alignment_id, 1, assignment, "carol")

    assert first == second
    assert workspace.alignments.get_row(alignment_id, 1).assignment == row_after_first.assignment
    assert len(workspace.reviews.mappings_for(alignment_id)) == 1
    _assert_in_sync(workspace, alignment_id)


def test_reassign_keeps_mapping_id_and_votes(workspace: Workspace, alignment_id: int) -> None:
    mapping_id = workspace.sync.assign(alignment_id, 1, Assignment(7, standard_concept_id=12345), "carol")
    workspace.evaluations.vote(mapping_id, "alice", "rejected")

    again = workspace.sync.assign(alignment_id, 1, Assignment(7, custom_concept_id=2000000001), "dave")

    assert again == mapping_id
    mapping = workspace.reviews.get_mapping(mapping_id)
    assert mapping.assignment == Assignment(7, None, 2000000001)
    assert mapping.mapped_by == "dave"
    assert workspace.evaluations.tally(mapping_id).rejected == 1


@pytest.mark.parametrize(
    "assignment",
    [
        Assignment(7, standard_concept_id=1, custom_concept_id=2),
        Assignment(None, standard_concept_id=1),
        Assignment(-3),
        Assignment(2**63),
        Assignment(7, custom_concept_id=2**63),
    ],
)
def test_invalid_assignment_changes_nothing(workspace: Workspace, alignment_id: int, assignment: Assignment) -> None:
    with pytest.raises(InvalidAssignment):
        workspace.sync.assign(alignment_id, 1, assignment, "carol")
    assert workspace.alignments.get_row(alignment_id, 1).assignment is None
    assert workspace.reviews.find_mapping(alignment_id, 1) is None


def test_assign_to_missing_row_raises(workspace: Workspace, alignment_id: int) -> None:
    with pytest.raises(NotFoundError):
        workspace.sync.assign(alignment_id, 99, Assignment(7), "carol")
    assert workspace.reviews.mappings_for(alignment_id) == []


def test_failed_upsert_rolls_back_row(workspace: Workspace, alignment_id: int, monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []

    def failing_upsert(*args, **kwargs):
        calls.append(args)
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(workspace.reviews, "upsert_mapping", failing_upsert)

    with pytest.raises(SyncFailure) as excinfo:
        workspace.sync.assign(alignment_id, 1, Assignment(7, standard_concept_id=12345), "carol")

    assert len(calls) == 2
    assert isinstance(excinfo.value.__cause__, sqlite3.OperationalError)
    assert excinfo.value.details == {"alignment_id": alignment_id, "row_id": 1}
    assert workspace.alignments.get_row(alignment_id, 1).assignment is None
    _assert_in_sync(workspace, alignment_id)


def test_failed_reassign_restores_previous_assignment(
    workspace: Workspace, alignment_id: int, monkeypatch: pytest.MonkeyPatch
) -> None:
    workspace.sync.assign(alignment_id, 1, Assignment(7, standard_concept_id=12345), "carol")
    before = workspace.alignments.get_row(alignment_id, 1)

    def failing_upsert(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(workspace.reviews, "upsert_mapping", failing_upsert)
    with pytest.raises(SyncFailure):
        workspace.sync.assign(alignment_id, 1, Assignment(8), "dave")

    after = workspace.alignments.get_row(alignment_id, 1)
    assert after.assignment == before.assignment
    assert after.mapped_by == "carol"
    assert after.mapped_at == before.mapped_at


def test_unexpected_upsert_error_rolls_back_row(
    workspace: Workspace, alignment_id: int, monkeypatch: pytest.MonkeyPatch
) -> None:
    workspace.sync.assign(alignment_id, 2, Assignment(5), "carol")
    before = workspace.alignments.get_row(alignment_id, 2)

    def overflowing_upsert(*args, **kwargs):
        raise OverflowError("Python int too large to convert to SQLite INTEGER")

    monkeypatch.setattr(workspace.reviews, "upsert_mapping", overflowing_upsert)

    with pytest.raises(OverflowError):
        workspace.sync.assign(alignment_id, 1, Assignment(7), "carol")
    with pytest.raises(OverflowError):
        workspace.sync.assign(alignment_id, 2, Assignment(8), "dave")

    assert workspace.alignments.get_row(alignment_id, 1).assignment is None
    assert workspace.alignments.get_row(alignment_id, 2).assignment == before.assignment
    monkeypatch.undo()
    _assert_in_sync(workspace, alignment_id)


def test_upsert_retry_recovers(workspace: Workspace, alignment_id: int, monkeypatch: pytest.MonkeyPatch) -> None:
    original = workspace.reviews.upsert_mapping
    calls = []

    def flaky_upsert(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise sqlite3.OperationalError("database is locked")
        return original(*args, **kwargs)

    monkeypatch.setattr(workspace.reviews, "upsert_mapping", flaky_upsert)

    mapping_id = workspace.sync.assign(alignment_id, 3, Assignment(9), "carol")

    assert len(calls) == 2
    assert workspace.reviews.find_mapping(alignment_id, 3) == mapping_id
    _assert_in_sync(workspace, alignment_id)


def test_no_retries_when_disabled(workspace: Workspace, alignment_id: int, monkeypatch: pytest.MonkeyPatch) -> None:
    workspace.sync.retries = 0
    calls = []

    def failing_upsert(*args, **kwargs):
        calls.append(args)
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(workspace.reviews, "upsert_mapping", failing_upsert)
    with pytest.raises(SyncFailure):
        workspace.sync.assign(alignment_id, 1, Assignment(7), "carol")
    assert len(calls) == 1


def test_unassign_tolerates_missing_mapping(workspace: Workspace, alignment_id: int) -> None:
    workspace.alignments.set_assignment(alignment_id, 2, Assignment(7))

    assert workspace.sync.unassign(alignment_id, 2) is False
    assert workspace.alignments.get_row(alignment_id, 2).assignment is None
    assert workspace.sync.unassign(alignment_id, 2) is False


def test_unassign_missing_row_raises(workspace: Workspace, alignment_id: int) -> None:
    with pytest.raises(NotFoundError):
        workspace.sync.unassign(alignment_id, 42)


def test_random_sequence_keeps_stores_in_sync(workspace: Workspace, alignment_id: int) -> None:
    steps = [
        ("assign", 1, Assignment(1)),
        ("assign", 2, Assignment(2, standard_concept_id=20)),
        ("unassign", 1, None),
        ("assign", 3, Assignment(3, custom_concept_id=30)),
        ("assign", 2, Assignment(2)),
        ("unassign", 3, None),
        ("unassign", 3, None),
        ("assign", 1, Assignment(4, standard_concept_id=40)),
    ]
    for action, row_id, assignment in steps:
        if action == "assign":
            workspace.sync.assign(alignment_id, row_id, assignment, "u")
        else:
            workspace.sync.unassign(alignment_id, row_id)
        _assert_in_sync(workspace, alignment_id)

    assert workspace.reviews.get_mapping(workspace.reviews.find_mapping(alignment_id, 1)).standard_concept_id == 40


def test_concurrent_assignments_to_different_rows(workspace: Workspace) -> None:
    rows = [{"vocabulary_id": "LOCAL", "concept_code": f"C{i}", "concept_name": f"Concept {i}"} for i in range(12)]
    alignment_id, row_ids = workspace.alignments.import_alignment("bulk", "", rows)
    errors = []

    def worker(row_id: int) -> None:
        try:
            workspace.sync.assign(alignment_id, row_id, Assignment(100 + row_id), f"user{row_id}")
        except Exception as exc:  # pragma: no cover - reported below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(row_id,)) for row_id in row_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assigned = {row.row_id: row.assignment for row in workspace.alignments.scan_assigned(alignment_id)}
    assert assigned == {row_id: Assignment(100 + row_id) for row_id in row_ids}
    _assert_in_sync(workspace, alignment_id)


def test_concurrent_assignments_to_same_row_serialize(workspace: Workspace, alignment_id: int) -> None:
    mapping_ids = []
    lock = threading.Lock()

    def worker(dictionary_id: int) -> None:
        mapping_id = workspace.sync.assign(alignment_id, 1, Assignment(dictionary_id), "u")
        with lock:
            mapping_ids.append(mapping_id)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(1, 7)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(set(mapping_ids)) == 1
    row = workspace.alignments.get_row(alignment_id, 1)
    mapping = workspace.reviews.get_mapping(mapping_ids[0])
    assert mapping.assignment == row.assignment


def test_row_locks_and_gates_are_released(workspace: Workspace, alignment_id: int) -> None:
    for row_id in (1, 2, 3):
        workspace.sync.assign(alignment_id, row_id, Assignment(row_id), "u")
    workspace.sync.unassign(alignment_id, 2)
    workspace.sync.reconcile(alignment_id)

    assert workspace.sync._row_locks == {}
    gc.collect()
    assert len(workspace.sync._gates) == 0
