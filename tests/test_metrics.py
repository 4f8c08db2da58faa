from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from conceptalign.config import Settings
from conceptalign.metrics import alignment_statistics, fleiss_kappa, percent_agreement, verdict_agreement
from conceptalign.project import Workspace
from conceptalign.shared.models import Assignment


def test_percent_agreement_skips_single_ratings() -> None:
    units = [["approved", "approved"], ["approved", "rejected"], ["uncertain"], [None, "approved", "approved"]]
    assert percent_agreement(units) == pytest.approx(2 / 3)
    assert percent_agreement([]) == 0.0


def test_fleiss_kappa_extremes() -> None:
    assert fleiss_kappa([[2, 0, 0], [0, 2, 0]]) == pytest.approx(1.0)
    assert fleiss_kappa([[1, 1, 0], [1, 1, 0]]) == pytest.approx(-1.0)
    assert fleiss_kappa([]) == 0.0


def test_fleiss_kappa_requires_equal_rater_counts() -> None:
    with pytest.raises(ValueError):
        fleiss_kappa([[2, 0, 0], [1, 0, 0]])


@pytest.fixture()
def workspace(tmp_path: Path):
    settings = Settings(home=tmp_path, vocabulary_dir=None, dictionary_path=None)
    with Workspace.open(tmp_path / "ws", settings) as ws:
        yield ws


def test_statistics_and_agreement(workspace: Workspace) -> None:
    rows = [{"vocabulary_id": "L", "concept_code": f"C{i}", "concept_name": f"c{i}"} for i in range(4)]
    alignment_id, _ = workspace.alignments.import_alignment("stats", "", rows)
    first = workspace.sync.assign(alignment_id, 1, Assignment(1), "u")
    second = workspace.sync.assign(alignment_id, 2, Assignment(2, standard_concept_id=20), "u")
    third = workspace.sync.assign(alignment_id, 3, Assignment(3), "u")
    workspace.evaluations.vote(first, "a", "approved")
    workspace.evaluations.vote(first, "b", "approved")
    workspace.evaluations.vote(second, "a", "approved")
    workspace.evaluations.vote(second, "b", "rejected")
    workspace.evaluations.vote(third, "a", "uncertain")
    workspace.evaluations.comment(third, "b", "not sure either")

    stats = alignment_statistics(workspace, alignment_id)
    agreement = verdict_agreement(workspace, alignment_id)

    assert stats.as_dict() == {
        "source_rows": 4,
        "mapped_rows": 3,
        "mappings": 3,
        "evaluations": 6,
        "approved": 3,
        "rejected": 1,
        "uncertain": 1,
        "comments": 1,
    }
    assert agreement.units == 2
    assert agreement.percent_agreement == pytest.approx(0.5)
    # matrix [[2,0,0],[1,1,0]]: p_bar = 0.5, p_e = 0.625
    assert agreement.fleiss_kappa == pytest.approx(-1 / 3)


def test_agreement_without_enough_votes(workspace: Workspace) -> None:
    alignment_id, _ = workspace.alignments.import_alignment(
        "quiet", "", [{"vocabulary_id": "L", "concept_code": "A", "concept_name": "a"}]
    )
    mapping_id = workspace.sync.assign(alignment_id, 1, Assignment(1), "u")
    workspace.evaluations.vote(mapping_id, "a", "approved")

    agreement = verdict_agreement(workspace, alignment_id)

    assert agreement.units == 0
    assert agreement.fleiss_kappa is None
