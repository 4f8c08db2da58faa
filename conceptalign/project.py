"""Workspace level helpers."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .alignments import AlignmentStore
from .catalog import CatalogResolver, ConceptCatalog, VocabularyCatalog
from .config import Settings
from .evaluations import EvaluationEngine
from .review import ReviewStore
from .schema import open_review_db
from .sync import SyncEngine
from .utils import ensure_dir


@dataclass
class WorkspacePaths:
    root: Path
    review_db: Path
    alignments_dir: Path


def build_workspace_paths(root: Path) -> WorkspacePaths:
    return WorkspacePaths(
        root=root,
        review_db=root / "review.db",
        alignments_dir=root / "alignments",
    )


def init_workspace(root: Path, *, timeout: float = 30.0) -> WorkspacePaths:
    paths = build_workspace_paths(root)
    ensure_dir(paths.root)
    ensure_dir(paths.alignments_dir)
    open_review_db(paths.review_db, timeout=timeout)
    return paths


class Workspace:
    """Wires the stores and engines that share one workspace directory.

    The catalog is loaded on first use from ``settings.vocabulary_dir`` and
    ``settings.dictionary_path`` unless one is passed in.  Without either the
    resolver renders every target as unresolved.
    """

    def __init__(
        self,
        paths: WorkspacePaths,
        settings: Optional[Settings] = None,
        catalog: Optional[ConceptCatalog] = None,
    ) -> None:
        self.paths = paths
        self.settings = settings or Settings()
        self.db = open_review_db(paths.review_db, timeout=self.settings.db_timeout)
        self.alignments = AlignmentStore(self.db, paths.alignments_dir)
        self.reviews = ReviewStore(self.db)
        self.evaluations = EvaluationEngine(self.db)
        self.sync = SyncEngine(self.alignments, self.reviews, retries=self.settings.sync_retries)
        self._catalog = catalog
        self._resolver: Optional[CatalogResolver] = None

    @classmethod
    def open(
        cls,
        root: Optional[Path] = None,
        settings: Optional[Settings] = None,
        catalog: Optional[ConceptCatalog] = None,
    ) -> "Workspace":
        settings = settings or Settings()
        paths = init_workspace(Path(root) if root is not None else settings.home, timeout=settings.db_timeout)
        return cls(paths, settings, catalog)

    @property
    def catalog(self) -> Optional[ConceptCatalog]:
        if self._catalog is None and (self.settings.vocabulary_dir or self.settings.dictionary_path):
            self._catalog = VocabularyCatalog.from_files(self.settings.vocabulary_dir, self.settings.dictionary_path)
        return self._catalog

    @property
    def resolver(self) -> CatalogResolver:
        if self._resolver is None:
            self._resolver = CatalogResolver(self.catalog, timeout=self.settings.catalog_timeout)
        return self._resolver

    def close(self) -> None:
        if self._resolver is not None:
            self._resolver.close()
            self._resolver = None

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
