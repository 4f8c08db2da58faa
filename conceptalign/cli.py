"""Command-line tools for alignment curation and review."""
from __future__ import annotations

import json
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich import print
from rich.table import Table

from .alignments import CANONICAL_COLUMNS, load_source_table
from .config import Settings
from .errors import AlignmentError
from .export import export_archive as write_archive
from .export import export_concept_map as build_concept_map
from .export import import_archive as read_archive
from .export import write_concept_map
from .metrics import alignment_statistics, verdict_agreement
from .project import Workspace, init_workspace
from .runtime import setup_logging
from .shared.models import Assignment

app = typer.Typer(help="Concept alignment CLI")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Log level (defaults to CONCEPTALIGN_LOG_LEVEL)"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit one JSON object per log record"),
) -> None:
    setup_logging(log_level or Settings().log_level, json_format=json_logs)


@contextmanager
def _workspace(
    workspace_dir: Path,
    *,
    vocabulary_dir: Optional[Path] = None,
    dictionary: Optional[Path] = None,
) -> Iterator[Workspace]:
    settings = Settings()
    if vocabulary_dir is not None:
        settings.vocabulary_dir = vocabulary_dir
    if dictionary is not None:
        settings.dictionary_path = dictionary
    try:
        with Workspace.open(workspace_dir, settings) as workspace:
            yield workspace
    except AlignmentError as exc:
        print(f"[red]Error ({exc.code}):[/red] {exc.message}")
        raise typer.Exit(code=1) from exc


def _column_map(pairs: Optional[List[str]]) -> Optional[dict]:
    if not pairs:
        return None
    mapping = {}
    for pair in pairs:
        canonical, sep, source = pair.partition("=")
        if not sep or canonical.strip() not in CANONICAL_COLUMNS:
            raise typer.BadParameter(
                f"Expected <column>=<source column> with column in {', '.join(CANONICAL_COLUMNS)}: {pair}"
            )
        mapping[canonical.strip()] = source.strip()
    return mapping


@app.command()
def init(workspace_dir: Path = typer.Argument(..., help="Workspace directory")) -> None:
    """Initialize a workspace folder."""
    paths = init_workspace(workspace_dir, timeout=Settings().db_timeout)
    print(f"Initialized workspace at {paths.root}")


@app.command()
def create_alignment(
    workspace_dir: Path = typer.Argument(..., help="Workspace directory"),
    name: str = typer.Option(..., help="Alignment name"),
    description: str = typer.Option("", help="Alignment description"),
    source: Optional[Path] = typer.Option(None, help="CSV/TSV/Excel/Parquet file of source concepts"),
    column: Optional[List[str]] = typer.Option(None, "--map", help="Column mapping, e.g. concept_code=CODE"),
    delimiter: Optional[str] = typer.Option(None, help="Field delimiter (sniffed when omitted)"),
    encoding: str = typer.Option("utf-8"),
    sheet: Optional[str] = typer.Option(None, help="Excel sheet name"),
    user: Optional[str] = typer.Option(None, help="Importing user id"),
) -> None:
    """Create an alignment, optionally importing its source concepts in one step."""
    with _workspace(workspace_dir) as workspace:
        if source is None:
            alignment_id = workspace.alignments.create_alignment(name, description)
            print(f"Created alignment {alignment_id}")
            return
        rows = load_source_table(source, delimiter=delimiter, encoding=encoding, sheet=sheet)
        alignment_id, row_ids = workspace.alignments.import_alignment(
            name,
            description,
            rows,
            column_map=_column_map(column),
            original_filename=source.name,
            imported_by=user,
        )
        print(f"Created alignment {alignment_id} with {len(row_ids)} rows")


@app.command()
def import_rows(
    workspace_dir: Path = typer.Argument(..., help="Workspace directory"),
    alignment_id: int = typer.Argument(...),
    source: Path = typer.Argument(..., help="CSV/TSV/Excel/Parquet file of source concepts"),
    column: Optional[List[str]] = typer.Option(None, "--map", help="Column mapping, e.g. concept_code=CODE"),
    delimiter: Optional[str] = typer.Option(None),
    encoding: str = typer.Option("utf-8"),
    sheet: Optional[str] = typer.Option(None, help="Excel sheet name"),
    user: Optional[str] = typer.Option(None),
) -> None:
    with _workspace(workspace_dir) as workspace:
        rows = load_source_table(source, delimiter=delimiter, encoding=encoding, sheet=sheet)
        row_ids = workspace.alignments.import_rows(
            alignment_id,
            rows,
            column_map=_column_map(column),
            original_filename=source.name,
            imported_by=user,
        )
    print(f"Imported {len(row_ids)} rows into alignment {alignment_id}")


@app.command()
def alignments(workspace_dir: Path = typer.Argument(..., help="Workspace directory")) -> None:
    with _workspace(workspace_dir) as workspace:
        records = workspace.alignments.list_alignments()
    if not records:
        print("No alignments")
        return
    table = Table(title="Alignments")
    for heading in ("ID", "Name", "Description", "Source file", "Created"):
        table.add_column(heading)
    for record in records:
        table.add_row(
            str(record.alignment_id),
            record.name,
            record.description,
            record.original_filename or "",
            record.created_at,
        )
    print(table)


@app.command()
def rename(
    workspace_dir: Path = typer.Argument(...),
    alignment_id: int = typer.Argument(...),
    name: str = typer.Option(...),
    description: Optional[str] = typer.Option(None),
) -> None:
    with _workspace(workspace_dir) as workspace:
        workspace.alignments.rename_alignment(alignment_id, name, description)
    print(f"Renamed alignment {alignment_id}")


@app.command()
def delete_alignment(
    workspace_dir: Path = typer.Argument(...),
    alignment_id: int = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation"),
) -> None:
    if not yes:
        typer.confirm(f"Delete alignment {alignment_id} with all its mappings and evaluations?", abort=True)
    with _workspace(workspace_dir) as workspace:
        workspace.alignments.delete_alignment(alignment_id)
    print(f"Deleted alignment {alignment_id}")


@app.command()
def rows(
    workspace_dir: Path = typer.Argument(...),
    alignment_id: int = typer.Argument(...),
    assigned_only: bool = typer.Option(False, "--assigned-only"),
    vocabulary_dir: Optional[Path] = typer.Option(None, help="Folder with the CONCEPT table"),
    dictionary: Optional[Path] = typer.Option(None, help="Dictionary concepts CSV"),
) -> None:
    """List source rows with their assignment targets."""
    with _workspace(workspace_dir, vocabulary_dir=vocabulary_dir, dictionary=dictionary) as workspace:
        source = (
            workspace.alignments.scan_assigned(alignment_id)
            if assigned_only
            else workspace.alignments.iter_rows(alignment_id)
        )
        table = Table(title=f"Alignment {alignment_id}")
        for heading in ("Row", "Vocabulary", "Code", "Name", "Target", "Mapped by"):
            table.add_column(heading)
        for row in source:
            target = workspace.resolver.resolve(row.assignment).label if row.assignment else ""
            table.add_row(
                str(row.row_id),
                row.vocabulary_id,
                row.concept_code,
                row.concept_name,
                target,
                row.mapped_by or "",
            )
    print(table)


@app.command()
def assign(
    workspace_dir: Path = typer.Argument(...),
    alignment_id: int = typer.Argument(...),
    row_id: int = typer.Argument(...),
    dictionary_concept: int = typer.Option(..., "--dictionary", help="Dictionary concept id"),
    standard_concept: Optional[int] = typer.Option(None, "--standard", help="Standardized concept id"),
    custom_concept: Optional[int] = typer.Option(None, "--custom", help="Custom concept id"),
    user: Optional[str] = typer.Option(None),
) -> None:
    assignment = Assignment(dictionary_concept, standard_concept, custom_concept)
    with _workspace(workspace_dir) as workspace:
        mapping_id = workspace.sync.assign(alignment_id, row_id, assignment, user)
    print(f"Assigned row {row_id} -> mapping {mapping_id}")


@app.command()
def unassign(
    workspace_dir: Path = typer.Argument(...),
    alignment_id: int = typer.Argument(...),
    row_id: int = typer.Argument(...),
) -> None:
    with _workspace(workspace_dir) as workspace:
        removed = workspace.sync.unassign(alignment_id, row_id)
    suffix = " and removed its mapping" if removed else ""
    print(f"Cleared row {row_id}{suffix}")


@app.command()
def mappings(
    workspace_dir: Path = typer.Argument(...),
    alignment_id: int = typer.Argument(...),
) -> None:
    """List mappings with their vote tallies."""
    with _workspace(workspace_dir) as workspace:
        workspace.alignments.get_alignment(alignment_id)
        summaries = workspace.reviews.list_mappings(alignment_id)
    table = Table(title=f"Mappings of alignment {alignment_id}")
    for heading in ("Mapping", "Row", "Dictionary", "Standard", "Custom", "Approved", "Rejected", "Uncertain", "Comments"):
        table.add_column(heading)
    for summary in summaries:
        mapping = summary.mapping
        table.add_row(
            str(mapping.mapping_id),
            str(mapping.row_id),
            str(mapping.dictionary_concept_id),
            str(mapping.standard_concept_id or ""),
            str(mapping.custom_concept_id or ""),
            str(summary.tally.approved),
            str(summary.tally.rejected),
            str(summary.tally.uncertain),
            str(summary.comment_count),
        )
    print(table)


@app.command()
def vote(
    workspace_dir: Path = typer.Argument(...),
    mapping_id: int = typer.Argument(...),
    evaluator: str = typer.Option(...),
    verdict: str = typer.Option(..., help="approved, rejected or uncertain"),
) -> None:
    with _workspace(workspace_dir) as workspace:
        evaluation = workspace.evaluations.vote(mapping_id, evaluator, verdict)
        tally = workspace.evaluations.tally(mapping_id)
    print(f"{evaluator} voted {evaluation.verdict} on mapping {mapping_id}: {json.dumps(tally.as_dict())}")


@app.command()
def comment(
    workspace_dir: Path = typer.Argument(...),
    mapping_id: int = typer.Argument(...),
    evaluator: str = typer.Option(...),
    text: str = typer.Option(...),
) -> None:
    with _workspace(workspace_dir) as workspace:
        workspace.evaluations.comment(mapping_id, evaluator, text)
    print(f"Comment by {evaluator} saved on mapping {mapping_id}")


@app.command()
def clear_evaluation(
    workspace_dir: Path = typer.Argument(...),
    mapping_id: int = typer.Argument(...),
    evaluator: str = typer.Option(...),
) -> None:
    with _workspace(workspace_dir) as workspace:
        removed = workspace.evaluations.clear(mapping_id, evaluator)
    if removed:
        print(f"Cleared evaluation by {evaluator} on mapping {mapping_id}")
    else:
        print(f"No evaluation by {evaluator} on mapping {mapping_id}")


@app.command()
def reconcile(
    workspace_dir: Path = typer.Argument(...),
    alignment_id: int = typer.Argument(...),
) -> None:
    with _workspace(workspace_dir) as workspace:
        workspace.alignments.get_alignment(alignment_id)
        report = workspace.sync.reconcile(alignment_id)
    print(json.dumps(report.as_dict(), indent=2))


@app.command()
def export_concept_map(
    workspace_dir: Path = typer.Argument(...),
    alignment_id: int = typer.Argument(...),
    output: Path = typer.Option(..., help="Destination CSV"),
    vocabulary_dir: Optional[Path] = typer.Option(None, help="Folder with the CONCEPT table"),
    dictionary: Optional[Path] = typer.Option(None, help="Dictionary concepts CSV"),
) -> None:
    with _workspace(workspace_dir, vocabulary_dir=vocabulary_dir, dictionary=dictionary) as workspace:
        records = build_concept_map(workspace, alignment_id)
        write_concept_map(records, output)
    print(f"Wrote {len(records)} records to {output}")


@app.command()
def export_archive(
    workspace_dir: Path = typer.Argument(...),
    alignment_id: int = typer.Argument(...),
    output: Path = typer.Option(..., help="Destination ZIP file"),
    user: Optional[str] = typer.Option(None),
) -> None:
    with _workspace(workspace_dir) as workspace:
        path = write_archive(workspace, alignment_id, output, exported_by=user)
    print(f"Archive written to {path}")


@app.command()
def import_archive(
    workspace_dir: Path = typer.Argument(...),
    archive: Path = typer.Argument(..., help="ZIP file produced by export-archive"),
    user: Optional[str] = typer.Option(None),
) -> None:
    with _workspace(workspace_dir) as workspace:
        alignment_id = read_archive(workspace, archive, imported_by=user)
    print(f"Imported archive as alignment {alignment_id}")


@app.command()
def stats(
    workspace_dir: Path = typer.Argument(...),
    alignment_id: int = typer.Argument(...),
) -> None:
    with _workspace(workspace_dir) as workspace:
        workspace.alignments.get_alignment(alignment_id)
        statistics = alignment_statistics(workspace, alignment_id)
        agreement = verdict_agreement(workspace, alignment_id)
    table = Table(title=f"Alignment {alignment_id}")
    table.add_column("Measure")
    table.add_column("Value")
    for key, value in statistics.as_dict().items():
        table.add_row(key.replace("_", " "), str(value))
    print(table)
    if agreement.units:
        print(f"Percent agreement: {agreement.percent_agreement:.3f} over {agreement.units} mappings")
        if agreement.fleiss_kappa is not None:
            print(f"Fleiss kappa: {agreement.fleiss_kappa:.3f}")
    else:
        print("No mappings with two or more verdicts")


if __name__ == "__main__":
    app()
