"""Review statistics and inter-reviewer agreement."""
from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence

from .shared.models import VERDICTS

if TYPE_CHECKING:
    from .project import Workspace


@dataclass
class AlignmentStatistics:
    source_rows: int = 0
    mapped_rows: int = 0
    mappings: int = 0
    evaluations: int = 0
    approved: int = 0
    rejected: int = 0
    uncertain: int = 0
    comments: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class AgreementReport:
    units: int
    percent_agreement: float
    fleiss_kappa: Optional[float]


def percent_agreement(unit_values: Iterable[Sequence[str | None]]) -> float:
    """Share of units on which every observed verdict is the same.

    Units with fewer than two observed verdicts carry no agreement signal and
    are skipped.
    """
    total = 0
    agree = 0
    for values in unit_values:
        observed = [value for value in values if value is not None]
        if len(observed) < 2:
            continue
        total += 1
        if len(set(observed)) == 1:
            agree += 1
    return agree / total if total else 0.0


def fleiss_kappa(matrix: List[List[int]]) -> float:
    """Fleiss' kappa for a subjects x categories count matrix.

    Every subject must have been rated by the same number of raters.
    """
    if not matrix:
        return 0.0
    raters = sum(matrix[0])
    if raters < 2:
        return 0.0
    if any(sum(row) != raters for row in matrix):
        raise ValueError("Fleiss' kappa needs the same number of ratings per subject")
    subjects = len(matrix)
    categories = len(matrix[0])
    column_totals = [sum(row[j] for row in matrix) for j in range(categories)]
    p_j = [total / (subjects * raters) for total in column_totals]
    p_i = [sum(count * (count - 1) for count in row) / (raters * (raters - 1)) for row in matrix]
    p_bar = sum(p_i) / subjects
    p_e = sum(p**2 for p in p_j)
    if p_e == 1:
        return 1.0
    return (p_bar - p_e) / (1 - p_e)


def _verdicts_by_row(workspace: "Workspace", alignment_id: int) -> Dict[int, List[str]]:
    grouped: Dict[int, List[str]] = defaultdict(list)
    for row_id, evaluation in workspace.evaluations.evaluations_in(alignment_id):
        if evaluation.verdict is not None:
            grouped[row_id].append(evaluation.verdict)
    return grouped


def alignment_statistics(workspace: "Workspace", alignment_id: int) -> AlignmentStatistics:
    stats = AlignmentStatistics()
    for row in workspace.alignments.iter_rows(alignment_id):
        stats.source_rows += 1
        if row.is_assigned:
            stats.mapped_rows += 1
    for summary in workspace.reviews.list_mappings(alignment_id):
        stats.mappings += 1
        stats.approved += summary.tally.approved
        stats.rejected += summary.tally.rejected
        stats.uncertain += summary.tally.uncertain
        stats.comments += summary.comment_count
    stats.evaluations = len(workspace.evaluations.evaluations_in(alignment_id))
    return stats


def verdict_agreement(workspace: "Workspace", alignment_id: int) -> AgreementReport:
    """Agreement over the mappings that at least two evaluators voted on.

    Fleiss' kappa is only reported when all of those mappings carry the same
    number of verdicts; otherwise it is ``None``.
    """
    units = [values for values in _verdicts_by_row(workspace, alignment_id).values() if len(values) >= 2]
    matrix = [[values.count(verdict) for verdict in VERDICTS] for values in units]
    kappa: Optional[float] = None
    if matrix and len({sum(row) for row in matrix}) == 1:
        kappa = fleiss_kappa(matrix)
    return AgreementReport(units=len(units), percent_agreement=percent_agreement(units), fleiss_kappa=kappa)
