"""Lightweight SQLite helpers and simple ORM primitives for the review store."""
from __future__ import annotations

import contextlib
import sqlite3
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Type, TypeVar

Row = sqlite3.Row
T = TypeVar("T", bound="Record")


class Database:
    """A thin wrapper around sqlite3 with sane defaults for shared workspaces.

    Every call to :meth:`connect` opens a fresh connection, so the object can be
    shared between threads as long as each thread uses its own connection.  The
    helper applies WAL journaling, NORMAL synchronous writes and enables foreign
    keys, which the review tables rely on for cascading deletes.
    """

    def __init__(self, path: Path | str, *, timeout: float = 30.0) -> None:
        self.path = Path(path)
        if not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout

    def _apply_pragmas(self, conn: sqlite3.Connection) -> None:
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self.timeout)
        self._apply_pragmas(conn)
        return conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


class Record:
    """Base class for ORM style records."""

    __tablename__: str = ""
    __schema__: str = ""

    @classmethod
    def create_table(cls, conn: sqlite3.Connection) -> None:
        if not cls.__schema__:
            raise ValueError(f"{cls.__name__} does not define __schema__")
        conn.executescript(cls.__schema__)

    @classmethod
    def from_row(cls: Type[T], row: Row) -> T:
        data = {field.name: row[field.name] for field in fields(cls) if field.name in row.keys()}
        return cls(**data)  # type: ignore[arg-type]

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


def ensure_schema(conn: sqlite3.Connection, models: Sequence[Type[Record]]) -> None:
    for model in models:
        model.create_table(conn)


def fetch_all(conn: sqlite3.Connection, sql: str, params: Sequence[Any] | None = None) -> List[sqlite3.Row]:
    cur = conn.execute(sql, params or [])
    return cur.fetchall()


def fetch_one(conn: sqlite3.Connection, sql: str, params: Sequence[Any] | None = None) -> Optional[sqlite3.Row]:
    cur = conn.execute(sql, params or [])
    return cur.fetchone()
