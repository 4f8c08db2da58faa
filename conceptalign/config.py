"""Configuration dataclass for workspaces, storage and catalog lookups."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _env_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    try:
        return float(val)
    except ValueError:
        return default


def _env_path(name: str) -> Optional[Path]:
    val = os.getenv(name)
    if not val:
        return None
    return Path(val).expanduser()


def _default_home() -> Path:
    return _env_path("CONCEPTALIGN_HOME") or (Path.home() / ".conceptalign")


@dataclass
class Settings:
    """Runtime knobs; every field can be overridden from the environment.

    Attributes:
        home: workspace root used when the CLI is not given one explicitly.
        db_timeout: seconds sqlite waits on a locked database before failing.
        catalog_timeout: seconds a catalog lookup may take before the target is
            rendered as unresolved.
        sync_retries: extra attempts at the review-store upsert inside
            ``SyncEngine.assign`` before the row is rolled back.
        vocabulary_dir: folder holding the standardized vocabulary ``CONCEPT``
            table.
        dictionary_path: CSV of dictionary (general) concepts.
    """

    home: Path = field(default_factory=_default_home)
    db_timeout: float = field(default_factory=lambda: _env_float("CONCEPTALIGN_DB_TIMEOUT", 30.0))
    catalog_timeout: float = field(
        default_factory=lambda: _env_float("CONCEPTALIGN_CATALOG_TIMEOUT", 2.0)
    )
    sync_retries: int = field(default_factory=lambda: max(0, _env_int("CONCEPTALIGN_SYNC_RETRIES", 1)))
    vocabulary_dir: Optional[Path] = field(default_factory=lambda: _env_path("CONCEPTALIGN_VOCABULARY_DIR"))
    dictionary_path: Optional[Path] = field(default_factory=lambda: _env_path("CONCEPTALIGN_DICTIONARY"))
    log_level: str = field(default_factory=lambda: os.getenv("CONCEPTALIGN_LOG_LEVEL", "INFO").upper())
