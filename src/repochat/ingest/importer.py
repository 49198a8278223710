"""Import a local repository checkout into the document store.

Per file:
  unchanged hash      → skipped (chunks and vectors kept)
  changed hash        → old chunks + vectors removed, file re-chunked
  new file            → chunked
  file gone from disk → chunks + vectors removed
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from repochat.db.models import CodeRepository, RepositoryFile
from repochat.db.store import DocumentStore
from repochat.errors import RepositoryNotFoundError
from repochat.ids import new_uuid
from repochat.ingest.chunker import LineChunker
from repochat.ingest.languages import SKIP_DIRS, detect_language, is_binary

logger = logging.getLogger(__name__)

_MAX_DEPTH = 32


@dataclass
class ImportResult:
    """Outcome of one import run."""

    repository_id: str
    files_added: int = 0
    files_updated: int = 0
    files_unchanged: int = 0
    files_removed: int = 0
    files_skipped: int = 0
    chunks_created: int = 0
    removed_vector_ids: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.files_added or self.files_updated or self.files_removed)


class RepositoryImporter:
    """Walk a checkout, chunk supported files and persist them.

    Args:
        store: Document store to write to.
        chunker: Line chunker configured from ``chunking:``.
        max_file_bytes: Files larger than this are skipped.
        remove_vectors: Called with vector ids whose chunks were deleted, so
            the vector index can drop them.
        exclude: Extra glob patterns (matched against file and directory names).
    """

    def __init__(
        self,
        store: DocumentStore,
        chunker: LineChunker,
        *,
        max_file_bytes: int = 1_000_000,
        remove_vectors: Callable[[list[str]], None] | None = None,
        exclude: list[str] | None = None,
    ) -> None:
        self._store = store
        self._chunker = chunker
        self._max_file_bytes = max_file_bytes
        self._remove_vectors = remove_vectors
        self._exclude = list(exclude or [])

    def import_directory(
        self,
        root: Path,
        *,
        name: str | None = None,
        repository_id: str | None = None,
    ) -> ImportResult:
        """Import (or re-import) the checkout at *root*.

        Args:
            root: Repository working tree.
            name: Display name; defaults to the directory name.
            repository_id: Re-import into this existing repository. When
                omitted, the repository registered for *root* is reused or a
                new one is created.

        Returns:
            ImportResult with per-file counts.

        Raises:
            FileNotFoundError: If *root* is not a directory.
            RepositoryNotFoundError: If *repository_id* is unknown.
        """
        root = root.resolve()
        if not root.is_dir():
            raise FileNotFoundError(f"Not a directory: {root}")

        repo = self._resolve_repository(root, name, repository_id)
        result = ImportResult(repository_id=repo.id)

        known = {f.path: f for f in self._store.list_files(repo.id)}
        seen: set[str] = set()

        for file_path in self._scan_dir(root, depth=0):
            rel = file_path.relative_to(root).as_posix()
            language = detect_language(file_path)
            if language is None:
                continue
            try:
                data = file_path.read_bytes()
            except OSError as exc:
                logger.warning("Cannot read %s: %s", file_path, exc)
                result.files_skipped += 1
                continue
            if len(data) > self._max_file_bytes or is_binary(data):
                result.files_skipped += 1
                continue
            seen.add(rel)

            digest = hashlib.sha256(data).hexdigest()
            previous = known.get(rel)
            if previous is not None and previous.content_hash == digest:
                result.files_unchanged += 1
                continue

            if previous is not None:
                result.removed_vector_ids.extend(
                    self._store.delete_chunks_for_file(repo.id, rel)
                )
                result.files_updated += 1
            else:
                result.files_added += 1

            text = data.decode("utf-8", errors="replace")
            created = self._store.add_chunks(
                self._chunker.chunk(repo.id, rel, text, language)
            )
            result.chunks_created += created
            self._store.upsert_file(
                RepositoryFile(
                    repository_id=repo.id,
                    path=rel,
                    language=language,
                    content_hash=digest,
                    size_bytes=len(data),
                    line_count=len(text.splitlines()),
                )
            )

        for rel in sorted(set(known) - seen):
            result.removed_vector_ids.extend(self._store.delete_file(repo.id, rel))
            result.files_removed += 1

        if result.removed_vector_ids and self._remove_vectors is not None:
            self._remove_vectors(result.removed_vector_ids)

        logger.info(
            "Imported %s: %d added, %d updated, %d unchanged, %d removed, %d chunks",
            repo.id,
            result.files_added,
            result.files_updated,
            result.files_unchanged,
            result.files_removed,
            result.chunks_created,
        )
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_repository(
        self, root: Path, name: str | None, repository_id: str | None
    ) -> CodeRepository:
        if repository_id is not None:
            repo = self._store.get_repository(repository_id)
            if repo is None:
                raise RepositoryNotFoundError(repository_id)
            return repo
        repo = self._store.get_repository_by_path(str(root))
        if repo is not None:
            return repo
        repo = CodeRepository(id=new_uuid(), name=name or root.name, path=str(root))
        self._store.add_repository(repo)
        return repo

    def _excluded(self, name: str) -> bool:
        return any(fnmatch.fnmatch(name, pat) for pat in self._exclude)

    def _scan_dir(self, directory: Path, depth: int) -> list[Path]:
        """Return candidate files under *directory*, sorted, skipping ignored dirs."""
        if depth > _MAX_DEPTH:
            return []
        files: list[Path] = []
        try:
            entries = sorted(directory.iterdir())
        except PermissionError:
            return []
        for entry in entries:
            if self._excluded(entry.name) or entry.is_symlink():
                continue
            if entry.is_dir():
                if entry.name not in SKIP_DIRS:
                    files.extend(self._scan_dir(entry, depth + 1))
            elif entry.is_file():
                files.append(entry)
        return files
