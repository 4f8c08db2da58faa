"""Interchange formats: source-to-concept-map CSV and alignment archives.

The concept map holds one record per assigned source row and is
byte-for-byte reproducible for a given set of assignments.  Archives bundle
an alignment's source rows, mappings and evaluations into a ZIP file that
:func:`import_archive` can replay into another workspace.
"""
from __future__ import annotations

import csv
import io
import json
import logging
import zipfile
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

import pandas as pd

from .alignments import CANONICAL_COLUMNS
from .catalog import CatalogResolver
from .errors import AlignmentImportError
from .metrics import alignment_statistics
from .shared.models import Assignment
from .utils import atomic_write, utcnow_iso

if TYPE_CHECKING:
    from .project import Workspace

log = logging.getLogger(__name__)

CONCEPT_MAP_COLUMNS = (
    "source_code",
    "source_description",
    "source_vocabulary_id",
    "target_concept_id",
    "target_vocabulary_id",
    "valid_start_date",
    "valid_end_date",
    "invalid_reason",
)

DEFAULT_START_DATE = "1970-01-01"
OPEN_END_DATE = "2099-12-31"

ARCHIVE_FORMAT = "conceptalign-alignment"
ARCHIVE_VERSION = "1.0"
ARCHIVE_MEMBERS = ("metadata.json", "source_concepts.csv", "mappings.csv", "evaluations.csv")

MAPPING_COLUMNS = (
    "row_id",
    "dictionary_concept_id",
    "standard_concept_id",
    "custom_concept_id",
    "mapped_by",
    "mapped_at",
)
EVALUATION_COLUMNS = ("row_id", "evaluator_id", "verdict", "comment", "evaluated_at")


# ----------------------------- concept map --------------------------------- #


def _id_text(value: Optional[int]) -> str:
    return "" if value is None else str(value)


def _start_date(mapped_at: Optional[str]) -> str:
    if not mapped_at:
        return DEFAULT_START_DATE
    return mapped_at[:10]


def export_concept_map(
    workspace: "Workspace",
    alignment_id: int,
    resolver: Optional[CatalogResolver] = None,
) -> List[Dict[str, str]]:
    """Build concept-map records for every assigned row, ordered by ``row_id``.

    ``target_concept_id`` is the standardized concept id, or ``0`` for rows
    assigned to a dictionary or custom concept only.  ``target_vocabulary_id``
    comes from the catalog and is left empty when the lookup fails.
    """
    resolver = resolver if resolver is not None else workspace.resolver
    records: List[Dict[str, str]] = []
    for row in sorted(workspace.alignments.scan_assigned(alignment_id), key=lambda r: r.row_id):
        assignment = row.assignment
        assert assignment is not None
        target_vocabulary = ""
        if assignment.standard_concept_id is not None:
            concept = resolver.standard(assignment.standard_concept_id)
            if concept is not None:
                target_vocabulary = concept.vocabulary
        records.append(
            {
                "source_code": row.concept_code,
                "source_description": row.concept_name,
                "source_vocabulary_id": row.vocabulary_id,
                "target_concept_id": str(assignment.standard_concept_id or 0),
                "target_vocabulary_id": target_vocabulary,
                "valid_start_date": _start_date(row.mapped_at),
                "valid_end_date": OPEN_END_DATE,
                "invalid_reason": "",
            }
        )
    return records


def write_concept_map(records: List[Dict[str, str]], path: Path) -> Path:
    with atomic_write(path) as handle:
        writer = csv.DictWriter(handle, fieldnames=CONCEPT_MAP_COLUMNS, lineterminator="\n")
        writer.writeheader()
        for record in records:
            writer.writerow({column: record.get(column, "") for column in CONCEPT_MAP_COLUMNS})
    log.info("Wrote %d concept map records to %s", len(records), path)
    return path


def read_concept_map(path: Path) -> Dict[Tuple[str, str], int]:
    """Parse a concept-map CSV into ``{(source_vocabulary_id, source_code): target_concept_id}``."""
    try:
        frame = pd.read_csv(path, dtype=str, keep_default_na=False)
    except (OSError, ValueError) as exc:
        raise AlignmentImportError(f"Could not read concept map {path}: {exc}", {"path": str(path)}) from exc
    missing = {"source_code", "source_vocabulary_id", "target_concept_id"} - set(frame.columns)
    if missing:
        raise AlignmentImportError(
            f"Concept map is missing columns: {', '.join(sorted(missing))}",
            {"missing": sorted(missing)},
        )
    result: Dict[Tuple[str, str], int] = {}
    for record in frame.to_dict(orient="records"):
        target = record["target_concept_id"].strip()
        result[(record["source_vocabulary_id"], record["source_code"])] = int(target) if target else 0
    return result


# ------------------------------- archives ---------------------------------- #


def _csv_text(frame: pd.DataFrame) -> str:
    buffer = io.StringIO()
    frame.to_csv(buffer, index=False, lineterminator="\n")
    return buffer.getvalue()


def export_archive(
    workspace: "Workspace",
    alignment_id: int,
    path: Path,
    exported_by: str | None = None,
) -> Path:
    record = workspace.alignments.get_alignment(alignment_id)
    rows = workspace.alignments.load_rows(alignment_id)
    extra_columns: List[str] = []
    for row in rows.values():
        for column in row.extra:
            if column not in extra_columns:
                extra_columns.append(column)
    source = pd.DataFrame(
        [
            {
                "row_id": row.row_id,
                "vocabulary_id": row.vocabulary_id,
                "concept_code": row.concept_code,
                "concept_name": row.concept_name,
                "statistical_summary": row.statistical_summary,
                **row.extra,
            }
            for row in sorted(rows.values(), key=lambda r: r.row_id)
        ],
        columns=["row_id", *CANONICAL_COLUMNS, *extra_columns],
    )
    mappings = pd.DataFrame(
        [
            {
                "row_id": mapping.row_id,
                "dictionary_concept_id": _id_text(mapping.dictionary_concept_id),
                "standard_concept_id": _id_text(mapping.standard_concept_id),
                "custom_concept_id": _id_text(mapping.custom_concept_id),
                "mapped_by": mapping.mapped_by or "",
                "mapped_at": mapping.mapped_at,
            }
            for mapping in workspace.reviews.mappings_for(alignment_id)
        ],
        columns=list(MAPPING_COLUMNS),
    )
    evaluations = pd.DataFrame(
        [
            {
                "row_id": row_id,
                "evaluator_id": evaluation.evaluator_id,
                "verdict": evaluation.verdict or "",
                "comment": evaluation.comment or "",
                "evaluated_at": evaluation.evaluated_at,
            }
            for row_id, evaluation in workspace.evaluations.evaluations_in(alignment_id)
        ],
        columns=list(EVALUATION_COLUMNS),
    )
    metadata = {
        "format_type": ARCHIVE_FORMAT,
        "format_version": ARCHIVE_VERSION,
        "export_date": utcnow_iso(),
        "exported_by": exported_by,
        "alignment": {
            "name": record.name,
            "description": record.description,
            "original_filename": record.original_filename,
            "created_at": record.created_at,
        },
        "statistics": alignment_statistics(workspace, alignment_id).as_dict(),
    }
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("metadata.json", json.dumps(metadata, indent=2, ensure_ascii=False))
        archive.writestr("source_concepts.csv", _csv_text(source))
        archive.writestr("mappings.csv", _csv_text(mappings))
        archive.writestr("evaluations.csv", _csv_text(evaluations))
    log.info("Exported alignment %s to %s", alignment_id, path)
    return path


def _read_archive(path: Path) -> Tuple[dict, pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    try:
        with zipfile.ZipFile(path) as archive:
            names = set(archive.namelist())
            missing = [member for member in ARCHIVE_MEMBERS if member not in names]
            if missing:
                raise AlignmentImportError(
                    f"Archive is missing {', '.join(missing)}",
                    {"path": str(path), "missing": missing},
                )
            metadata = json.loads(archive.read("metadata.json").decode("utf-8"))
            frames = [
                pd.read_csv(io.BytesIO(archive.read(member)), dtype=str, keep_default_na=False)
                for member in ARCHIVE_MEMBERS[1:]
            ]
    except (OSError, zipfile.BadZipFile, ValueError) as exc:
        raise AlignmentImportError(f"Could not read archive {path}: {exc}", {"path": str(path)}) from exc
    if not isinstance(metadata, dict) or metadata.get("format_type") != ARCHIVE_FORMAT:
        raise AlignmentImportError("Not an alignment archive", {"path": str(path)})
    source, mappings, evaluations = frames
    for frame, required in (
        (source, {"row_id", "vocabulary_id", "concept_code", "concept_name"}),
        (mappings, set(MAPPING_COLUMNS)),
        (evaluations, set(EVALUATION_COLUMNS)),
    ):
        absent = required - set(frame.columns)
        if absent:
            raise AlignmentImportError(
                f"Archive table is missing columns: {', '.join(sorted(absent))}",
                {"path": str(path), "missing": sorted(absent)},
            )
    return metadata, source, mappings, evaluations


def import_archive(workspace: "Workspace", path: Path, imported_by: str | None = None) -> int:
    """Recreate an archived alignment and return its new id.

    Rows get new row ids; assignments are replayed through the sync engine
    and evaluations through the evaluation engine.  Any failure removes the
    partially imported alignment.
    """
    path = Path(path)
    metadata, source, mappings, evaluations = _read_archive(path)
    info = metadata.get("alignment") or {}

    raw_rows = [
        {column: value for column, value in record.items() if column != "row_id"}
        for record in source.to_dict(orient="records")
    ]
    alignment_id, new_ids = workspace.alignments.import_alignment(
        str(info.get("name") or path.stem),
        str(info.get("description") or ""),
        raw_rows,
        original_filename=info.get("original_filename") or path.name,
        imported_by=imported_by,
    )
    try:
        row_map: Dict[str, int] = {}
        seen: Dict[tuple, int] = {}
        for old_id, raw in zip(source["row_id"], raw_rows):
            key = tuple(
                value.strip() if column in CANONICAL_COLUMNS else value for column, value in raw.items()
            )
            if key not in seen:
                seen[key] = new_ids[len(seen)]
            row_map[str(old_id)] = seen[key]

        def _new_row(old_id: str) -> int:
            try:
                return row_map[str(old_id)]
            except KeyError:
                raise AlignmentImportError(
                    f"Archive references unknown row {old_id}", {"row_id": old_id}
                ) from None

        for record in mappings.to_dict(orient="records"):
            assignment = Assignment.from_values(
                record["dictionary_concept_id"],
                record["standard_concept_id"],
                record["custom_concept_id"],
            )
            if assignment is None:
                continue
            workspace.sync.assign(
                alignment_id,
                _new_row(record["row_id"]),
                assignment,
                record["mapped_by"] or None,
                mapped_at=record["mapped_at"] or None,
            )
        for record in evaluations.to_dict(orient="records"):
            row_id = _new_row(record["row_id"])
            mapping_id = workspace.reviews.find_mapping(alignment_id, row_id)
            if mapping_id is None:
                raise AlignmentImportError(
                    f"Archive has an evaluation for unmapped row {record['row_id']}",
                    {"row_id": record["row_id"]},
                )
            if record["verdict"]:
                workspace.evaluations.vote(mapping_id, record["evaluator_id"], record["verdict"])
            if record["comment"]:
                workspace.evaluations.comment(mapping_id, record["evaluator_id"], record["comment"])
    except Exception:
        workspace.alignments.delete_alignment(alignment_id)
        raise
    log.info("Imported archive %s as alignment %s", path, alignment_id)
    return alignment_id
