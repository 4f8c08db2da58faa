"""Alignment registry and per-alignment source-row tables.

Each alignment owns one CSV table under ``<workspace>/alignments`` named after
its ``file_id``.  Rows carry the imported source fields, any extra columns
verbatim, and the assignment columns.  The assignment columns are only meant
to be written through :class:`conceptalign.sync.SyncEngine`; the methods here
are the primitives it composes.
"""
from __future__ import annotations

import csv
import logging
import re
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from .errors import AlignmentImportError, InvalidAssignment, NotFoundError
from .shared.database import Database, fetch_all, fetch_one
from .shared.models import AlignmentRecord, Assignment, ImportRecord, SourceRow
from .utils import atomic_write, ensure_dir, utcnow_iso

log = logging.getLogger(__name__)

CANONICAL_COLUMNS = ("vocabulary_id", "concept_code", "concept_name", "statistical_summary")

REQUIRED_COLUMNS = {"vocabulary_id", "concept_code", "concept_name"}

ASSIGNMENT_COLUMNS = (
    "target_dictionary_concept_id",
    "target_standard_concept_id",
    "target_custom_concept_id",
    "mapping_datetime",
    "mapped_by_user_id",
)

RESERVED_COLUMNS = {"row_id", *CANONICAL_COLUMNS, *ASSIGNMENT_COLUMNS}

TABULAR_EXTENSIONS = {".csv", ".tsv", ".txt", ".xlsx", ".xls", ".parquet", ".pq"}

_COLUMN_ALIAS_MAP = {
    "vocabularyid": "vocabulary_id",
    "vocabulary": "vocabulary_id",
    "sourcevocabularyid": "vocabulary_id",
    "conceptcode": "concept_code",
    "code": "concept_code",
    "sourcecode": "concept_code",
    "conceptname": "concept_name",
    "name": "concept_name",
    "sourcename": "concept_name",
    "sourcecodedescription": "concept_name",
    "statisticalsummary": "statistical_summary",
    "summary": "statistical_summary",
}

_CHUNK_SIZE = 5000


def _canonical_column(column: str) -> str | None:
    normalized = re.sub(r"[^a-z0-9]", "", column.lower())
    return _COLUMN_ALIAS_MAP.get(normalized)


def _cell_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value != value:
        return ""
    return str(value)


def load_source_table(
    path: Path,
    *,
    delimiter: str | None = None,
    encoding: str = "utf-8",
    sheet: str | int | None = None,
) -> List[dict]:
    """Read a CSV / TSV / Excel / Parquet file into raw row dictionaries.

    All cells are returned as text; empty cells become ``""``.
    """
    suffix = path.suffix.lower()
    if suffix not in TABULAR_EXTENSIONS:
        raise AlignmentImportError(f"Unsupported source format: {path.suffix}", {"path": str(path)})
    try:
        if suffix in {".csv", ".tsv", ".txt"}:
            sep = delimiter if delimiter else ("\t" if suffix == ".tsv" else None)
            df = pd.read_csv(
                path,
                sep=sep,
                engine="python" if sep is None else "c",
                dtype=str,
                keep_default_na=False,
                encoding=encoding,
            )
        elif suffix in {".xlsx", ".xls"}:
            df = pd.read_excel(path, sheet_name=sheet if sheet is not None else 0, dtype=str)
        else:
            df = pd.read_parquet(path)
    except (OSError, UnicodeDecodeError, ValueError, ImportError, csv.Error) as exc:
        raise AlignmentImportError(f"Could not read {path.name}: {exc}", {"path": str(path)}) from exc
    if not isinstance(df, pd.DataFrame):
        raise AlignmentImportError("Source data could not be loaded into a table", {"path": str(path)})
    df = df.astype(object).where(pd.notnull(df), None)
    return [{str(k): _cell_text(v) for k, v in record.items()} for record in df.to_dict(orient="records")]


def prepare_rows(
    rows: Iterable[Mapping[str, object]],
    column_map: Optional[Mapping[str, str]] = None,
) -> Tuple[List[str], List[dict]]:
    """Canonicalize, validate and de-duplicate raw rows.

    Returns the extra column names (in first-seen order, renamed away from
    reserved names) and the surviving rows.  Rows identical on every imported
    field are collapsed onto their first occurrence.
    """
    materialized = [dict(row) for row in rows]
    source_columns: List[str] = []
    seen_columns: set[str] = set()
    for row in materialized:
        for column in row:
            key = str(column)
            if key not in seen_columns:
                seen_columns.add(key)
                source_columns.append(key)

    rename: Dict[str, str] = {}
    if column_map:
        for canonical, source in column_map.items():
            if canonical not in CANONICAL_COLUMNS:
                raise AlignmentImportError(f"Unknown target column '{canonical}' in column map")
            if source:
                rename[str(source)] = canonical
        absent = sorted(source for source in rename if source not in seen_columns)
        if absent:
            raise AlignmentImportError(
                f"Column map names columns absent from the source: {', '.join(absent)}",
                {"absent": absent},
            )
    else:
        for column in source_columns:
            canonical = _canonical_column(column)
            if canonical and canonical not in rename.values():
                rename[column] = canonical

    missing = REQUIRED_COLUMNS - set(rename.values())
    if missing:
        raise AlignmentImportError(
            f"Source is missing required columns: {', '.join(sorted(missing))}",
            {"missing": sorted(missing)},
        )

    extra_names: Dict[str, str] = {}
    taken = set(RESERVED_COLUMNS)
    for column in source_columns:
        if column in rename:
            continue
        final_name = column
        suffix = 2
        while final_name in taken:
            final_name = f"{column}_{suffix}"
            suffix += 1
        taken.add(final_name)
        extra_names[column] = final_name

    prepared: List[dict] = []
    seen_keys: set[tuple] = set()
    for row in materialized:
        normalized: Dict[str, str] = {column: "" for column in CANONICAL_COLUMNS}
        for column, value in row.items():
            key = str(column)
            if key in rename:
                normalized[rename[key]] = _cell_text(value).strip()
            else:
                normalized[extra_names[key]] = _cell_text(value)
        for final_name in extra_names.values():
            normalized.setdefault(final_name, "")
        identity = tuple(normalized[c] for c in CANONICAL_COLUMNS) + tuple(
            normalized[name] for name in extra_names.values()
        )
        if identity in seen_keys:
            continue
        seen_keys.add(identity)
        prepared.append(normalized)

    if not prepared:
        raise AlignmentImportError("No rows to import after removing duplicates")
    return list(extra_names.values()), prepared


class AssignedRows:
    """Restartable, lazily read view over the assigned rows of one alignment."""

    def __init__(self, store: "AlignmentStore", alignment_id: int) -> None:
        self._store = store
        self.alignment_id = alignment_id

    def __iter__(self) -> Iterator[SourceRow]:
        for row in self._store.iter_rows(self.alignment_id):
            if row.assignment is not None:
                yield row


class AlignmentStore:
    """Owns the alignment registry and the per-alignment source-row tables."""

    def __init__(self, db: Database, tables_dir: Path) -> None:
        self.db = db
        self.tables_dir = ensure_dir(tables_dir)
        self._locks: Dict[int, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------ #
    # registry

    def _file_lock(self, alignment_id: int) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(alignment_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[alignment_id] = lock
            return lock

    def create_alignment(
        self,
        name: str,
        description: str = "",
        *,
        original_filename: str | None = None,
    ) -> int:
        file_id = f"alignment_{uuid.uuid4().hex}"
        path = self._path_for(file_id)
        self._write_frame(path, pd.DataFrame(columns=self._columns([])))
        timestamp = utcnow_iso()
        try:
            with self.db.transaction() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO alignments(name, description, file_id, original_filename, next_row_id, created_at, updated_at)
                    VALUES (?,?,?,?,1,?,?)
                    """,
                    (name, description or "", file_id, original_filename, timestamp, timestamp),
                )
                alignment_id = int(cur.lastrowid)
        except sqlite3.Error:
            path.unlink(missing_ok=True)
            raise
        log.info("Created alignment %s (%s)", alignment_id, name)
        return alignment_id

    def get_alignment(self, alignment_id: int) -> AlignmentRecord:
        with self.db.transaction() as conn:
            row = fetch_one(conn, "SELECT * FROM alignments WHERE alignment_id=?", (alignment_id,))
        if not row:
            raise NotFoundError("alignment", alignment_id)
        return AlignmentRecord.from_row(row)

    def list_alignments(self) -> List[AlignmentRecord]:
        with self.db.transaction() as conn:
            rows = fetch_all(conn, "SELECT * FROM alignments ORDER BY created_at DESC, alignment_id DESC")
        return [AlignmentRecord.from_row(row) for row in rows]

    def rename_alignment(self, alignment_id: int, name: str, description: str | None = None) -> None:
        with self.db.transaction() as conn:
            if description is None:
                cur = conn.execute(
                    "UPDATE alignments SET name=?, updated_at=? WHERE alignment_id=?",
                    (name, utcnow_iso(), alignment_id),
                )
            else:
                cur = conn.execute(
                    "UPDATE alignments SET name=?, description=?, updated_at=? WHERE alignment_id=?",
                    (name, description, utcnow_iso(), alignment_id),
                )
            if cur.rowcount == 0:
                raise NotFoundError("alignment", alignment_id)
        log.info("Renamed alignment %s to %s", alignment_id, name)

    def delete_alignment(self, alignment_id: int) -> None:
        """Delete the alignment, its table, and (by cascade) its mappings."""
        record = self.get_alignment(alignment_id)
        with self._file_lock(alignment_id):
            with self.db.transaction() as conn:
                conn.execute("DELETE FROM alignments WHERE alignment_id=?", (alignment_id,))
            self._path_for(record.file_id).unlink(missing_ok=True)
        with self._locks_guard:
            self._locks.pop(alignment_id, None)
        log.info("Deleted alignment %s", alignment_id)

    def table_path(self, alignment_id: int) -> Path:
        return self._path_for(self.get_alignment(alignment_id).file_id)

    def import_history(self, alignment_id: int) -> List[ImportRecord]:
        self.get_alignment(alignment_id)
        with self.db.transaction() as conn:
            rows = fetch_all(
                conn,
                "SELECT * FROM imports WHERE alignment_id=? ORDER BY import_id",
                (alignment_id,),
            )
        return [ImportRecord.from_row(row) for row in rows]

    # ------------------------------------------------------------------ #
    # imports

    def import_rows(
        self,
        alignment_id: int,
        rows: Iterable[Mapping[str, object]],
        *,
        column_map: Optional[Mapping[str, str]] = None,
        original_filename: str | None = None,
        imported_by: str | None = None,
    ) -> List[int]:
        """Append rows with freshly minted row ids and return those ids."""
        materialized = list(rows)
        extra_columns, prepared = prepare_rows(materialized, column_map)
        return self._append_prepared(
            alignment_id,
            extra_columns,
            prepared,
            rows_received=len(materialized),
            original_filename=original_filename,
            imported_by=imported_by,
        )

    def import_alignment(
        self,
        name: str,
        description: str,
        rows: Iterable[Mapping[str, object]],
        *,
        column_map: Optional[Mapping[str, str]] = None,
        original_filename: str | None = None,
        imported_by: str | None = None,
    ) -> Tuple[int, List[int]]:
        """Create an alignment from rows; nothing is created if the rows are rejected."""
        materialized = list(rows)
        extra_columns, prepared = prepare_rows(materialized, column_map)
        alignment_id = self.create_alignment(name, description, original_filename=original_filename)
        try:
            row_ids = self._append_prepared(
                alignment_id,
                extra_columns,
                prepared,
                rows_received=len(materialized),
                original_filename=original_filename,
                imported_by=imported_by,
            )
        except Exception:
            self.delete_alignment(alignment_id)
            raise
        return alignment_id, row_ids

    def _append_prepared(
        self,
        alignment_id: int,
        extra_columns: Sequence[str],
        prepared: Sequence[dict],
        *,
        rows_received: int,
        original_filename: str | None,
        imported_by: str | None,
    ) -> List[int]:
        with self._file_lock(alignment_id):
            with self.db.transaction() as conn:
                record = fetch_one(
                    conn,
                    "SELECT file_id, next_row_id FROM alignments WHERE alignment_id=?",
                    (alignment_id,),
                )
                if not record:
                    raise NotFoundError("alignment", alignment_id)
                start = int(record["next_row_id"])
                conn.execute(
                    "UPDATE alignments SET next_row_id=?, updated_at=? WHERE alignment_id=?",
                    (start + len(prepared), utcnow_iso(), alignment_id),
                )
            row_ids = list(range(start, start + len(prepared)))
            new_frame = pd.DataFrame(
                [{"row_id": row_id, **row} for row_id, row in zip(row_ids, prepared)]
            )
            path = self._path_for(record["file_id"])
            current = self._read_frame(path)
            existing_extras = [c for c in current.columns if c not in RESERVED_COLUMNS]
            extras = existing_extras + [c for c in extra_columns if c not in existing_extras]
            combined = pd.concat([current, new_frame], ignore_index=True)
            combined = combined.reindex(columns=self._columns(extras)).fillna("")
            self._write_frame(path, combined)
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO imports(alignment_id, original_filename, rows_received, rows_imported, imported_by, imported_at)
                    VALUES (?,?,?,?,?,?)
                    """,
                    (alignment_id, original_filename, rows_received, len(row_ids), imported_by, utcnow_iso()),
                )
        log.info(
            "Imported %d of %d rows into alignment %s",
            len(row_ids),
            rows_received,
            alignment_id,
        )
        return row_ids

    # ------------------------------------------------------------------ #
    # rows

    def get_row(self, alignment_id: int, row_id: int) -> SourceRow:
        frame = self._read_frame(self.table_path(alignment_id))
        matches = frame[frame["row_id"] == int(row_id)]
        if matches.empty:
            raise NotFoundError("source row", f"{alignment_id}:{row_id}")
        return self._to_source_row(alignment_id, matches.iloc[0].to_dict())

    def iter_rows(self, alignment_id: int, *, strict: bool = True) -> Iterator[SourceRow]:
        """Yield every row of the alignment table in row order.

        With ``strict=False`` a row whose target columns do not form a valid
        assignment is yielded unassigned, with ``assignment_error`` set,
        instead of raising :class:`InvalidAssignment`.
        """
        path = self.table_path(alignment_id)
        for chunk in pd.read_csv(path, dtype=str, keep_default_na=False, chunksize=_CHUNK_SIZE):
            for record in chunk.to_dict(orient="records"):
                yield self._to_source_row(alignment_id, record, strict=strict)

    def load_rows(self, alignment_id: int, *, strict: bool = True) -> Dict[int, SourceRow]:
        return {row.row_id: row for row in self.iter_rows(alignment_id, strict=strict)}

    def scan_assigned(self, alignment_id: int) -> AssignedRows:
        self.get_alignment(alignment_id)
        return AssignedRows(self, alignment_id)

    def set_assignment(
        self,
        alignment_id: int,
        row_id: int,
        assignment: Assignment,
        *,
        mapped_by: str | None = None,
        mapped_at: str | None = None,
    ) -> None:
        values = {
            "target_dictionary_concept_id": _id_text(assignment.dictionary_concept_id),
            "target_standard_concept_id": _id_text(assignment.standard_concept_id),
            "target_custom_concept_id": _id_text(assignment.custom_concept_id),
            "mapping_datetime": mapped_at or utcnow_iso(),
            "mapped_by_user_id": mapped_by or "",
        }
        self._update_row(alignment_id, row_id, values)

    def clear_assignment(self, alignment_id: int, row_id: int) -> None:
        self._update_row(alignment_id, row_id, {column: "" for column in ASSIGNMENT_COLUMNS})

    def _update_row(self, alignment_id: int, row_id: int, values: Mapping[str, str]) -> None:
        path = self.table_path(alignment_id)
        with self._file_lock(alignment_id):
            frame = self._read_frame(path)
            mask = frame["row_id"] == int(row_id)
            if not mask.any():
                raise NotFoundError("source row", f"{alignment_id}:{row_id}")
            for column, value in values.items():
                frame.loc[mask, column] = value
            self._write_frame(path, frame)

    # ------------------------------------------------------------------ #
    # file helpers

    def _path_for(self, file_id: str) -> Path:
        return self.tables_dir / f"{file_id}.csv"

    @staticmethod
    def _columns(extras: Sequence[str]) -> List[str]:
        return ["row_id", *CANONICAL_COLUMNS, *extras, *ASSIGNMENT_COLUMNS]

    @staticmethod
    def _read_frame(path: Path) -> pd.DataFrame:
        frame = pd.read_csv(path, dtype=str, keep_default_na=False)
        frame["row_id"] = frame["row_id"].astype(int)
        return frame

    @staticmethod
    def _write_frame(path: Path, frame: pd.DataFrame) -> None:
        with atomic_write(path) as handle:
            frame.to_csv(handle, index=False, lineterminator="\n")

    @staticmethod
    def _to_source_row(alignment_id: int, record: Mapping[str, object], *, strict: bool = True) -> SourceRow:
        assignment_error = None
        try:
            assignment = Assignment.from_values(
                record.get("target_dictionary_concept_id"),
                record.get("target_standard_concept_id"),
                record.get("target_custom_concept_id"),
            )
            if not strict and assignment is not None:
                assignment.validate()
        except InvalidAssignment as exc:
            if strict:
                raise
            assignment, assignment_error = None, exc.message
        extra = {
            str(key): _cell_text(value)
            for key, value in record.items()
            if key not in RESERVED_COLUMNS
        }
        return SourceRow(
            alignment_id=alignment_id,
            row_id=int(record["row_id"]),
            vocabulary_id=_cell_text(record.get("vocabulary_id")),
            concept_code=_cell_text(record.get("concept_code")),
            concept_name=_cell_text(record.get("concept_name")),
            statistical_summary=_cell_text(record.get("statistical_summary")),
            extra=extra,
            assignment=assignment,
            mapped_by=_cell_text(record.get("mapped_by_user_id")) or None,
            mapped_at=_cell_text(record.get("mapping_datetime")) or None,
            assignment_error=assignment_error,
        )


def _id_text(value: Optional[int]) -> str:
    return "" if value is None else str(int(value))


def rows_from_frame(frame: pd.DataFrame) -> List[dict]:
    """Convert a DataFrame into raw rows suitable for :meth:`AlignmentStore.import_rows`."""
    cleaned = frame.astype(object).where(pd.notnull(frame), None)
    return [{str(k): v for k, v in record.items()} for record in cleaned.to_dict(orient="records")]
