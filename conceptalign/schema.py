"""Database schema helpers."""
from __future__ import annotations

from pathlib import Path
import sqlite3

from .shared import models
from .shared.database import Database, ensure_schema


SCHEMA_VERSION = 1

REVIEW_MODELS = [
    models.AlignmentRecord,
    models.Mapping,
    models.Evaluation,
    models.ImportRecord,
]


def initialize_review_db(db: Database) -> Database:
    """Create the review tables if needed and stamp the schema version."""
    with db.transaction() as conn:
        ensure_schema(conn, REVIEW_MODELS)
        version = conn.execute("PRAGMA user_version").fetchone()[0]
        if version < SCHEMA_VERSION:
            conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")
    return db


def open_review_db(path: Path, *, timeout: float = 30.0) -> Database:
    return initialize_review_db(Database(path, timeout=timeout))


def schema_version(conn: sqlite3.Connection) -> int:
    return int(conn.execute("PRAGMA user_version").fetchone()[0])
