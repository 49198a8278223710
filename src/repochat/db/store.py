"""Document store: one interface for repositories, files, chunks, FTS5 search and chat history.

The store owns a single sqlite3 connection shared by the embedding workers,
so every public method takes the store lock before touching it.
"""

from __future__ import annotations

import json
import re
import sqlite3
import threading
from collections.abc import Iterable
from typing import Any

from repochat.db.models import (
    ChatMessage,
    ChatSession,
    ChunkMetadata,
    CodeChunk,
    CodeRepository,
    EmbeddingState,
    MessageRole,
    RepositoryFile,
    RetrievedChunk,
)
from repochat.ids import now_utc_iso

# bm25() column weights for chunks_fts(content, symbols, path).
_FTS_WEIGHTS = (10.0, 8.0, 5.0)

_CHUNK_COLUMNS = (
    "id, repository_id, file_path, file_name, language, start_line, end_line, "
    "content, content_hash, imports, metadata, vector_id, embedded_at, created_at"
)


class DocumentStore:
    """Data access layer for every persisted repochat entity.

    Wraps an open sqlite3.Connection; close() closes it.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with the schema applied (see
                repochat.db.migrations.run_migrations).
        """
        self._conn = conn
        self._lock = threading.RLock()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Repositories
    # ------------------------------------------------------------------

    def add_repository(self, repo: CodeRepository) -> None:
        """Insert a new repository record."""
        with self._lock:
            self._conn.execute(
                "INSERT INTO repositories (id, name, path, embedding_status) VALUES (?, ?, ?, ?)",
                (repo.id, repo.name, repo.path, repo.embedding_status.value),
            )
            self._conn.commit()

    def get_repository(self, repository_id: str) -> CodeRepository | None:
        """Return a repository by ID, or None if not found."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM repositories WHERE id = ?", (repository_id,)
            ).fetchone()
        return _row_to_repository(row) if row else None

    def get_repository_by_path(self, path: str) -> CodeRepository | None:
        """Return the repository imported from *path*, or None."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM repositories WHERE path = ?", (path,)
            ).fetchone()
        return _row_to_repository(row) if row else None

    def list_repositories(self) -> list[CodeRepository]:
        """Return all repositories, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM repositories ORDER BY created_at, id"
            ).fetchall()
        return [_row_to_repository(r) for r in rows]

    def set_embedding_state(
        self,
        repository_id: str,
        state: EmbeddingState,
        error: str | None = None,
    ) -> None:
        """Persist the latest embedding state for a repository.

        ``embedded_at`` is stamped when the state is ``completed``.
        """
        embedded_at = now_utc_iso() if state is EmbeddingState.COMPLETED else None
        with self._lock:
            self._conn.execute(
                """
                UPDATE repositories
                SET embedding_status = ?, embedding_error = ?,
                    embedded_at = COALESCE(?, embedded_at), updated_at = datetime('now')
                WHERE id = ?
                """,
                (state.value, error, embedded_at, repository_id),
            )
            self._conn.commit()

    def delete_repository(self, repository_id: str) -> None:
        """Delete a repository with its files, chunks, FTS rows and sessions."""
        with self._lock:
            self._delete_fts_where("repository_id = ?", (repository_id,))
            self._conn.execute(
                "DELETE FROM chat_sessions WHERE repository_id = ?", (repository_id,)
            )
            self._conn.execute("DELETE FROM repositories WHERE id = ?", (repository_id,))
            self._conn.commit()

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def upsert_file(self, f: RepositoryFile) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO repository_files
                    (repository_id, path, language, content_hash, size_bytes, line_count)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(repository_id, path) DO UPDATE SET
                    language = excluded.language,
                    content_hash = excluded.content_hash,
                    size_bytes = excluded.size_bytes,
                    line_count = excluded.line_count,
                    imported_at = datetime('now')
                """,
                (f.repository_id, f.path, f.language, f.content_hash, f.size_bytes, f.line_count),
            )
            self._conn.commit()

    def get_file(self, repository_id: str, path: str) -> RepositoryFile | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM repository_files WHERE repository_id = ? AND path = ?",
                (repository_id, path),
            ).fetchone()
        return _row_to_file(row) if row else None

    def list_files(self, repository_id: str) -> list[RepositoryFile]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM repository_files WHERE repository_id = ? ORDER BY path",
                (repository_id,),
            ).fetchall()
        return [_row_to_file(r) for r in rows]

    def delete_file(self, repository_id: str, path: str) -> list[str]:
        """Delete a file record and its chunks. Returns the removed chunks' vector ids."""
        with self._lock:
            vector_ids = self.delete_chunks_for_file(repository_id, path)
            self._conn.execute(
                "DELETE FROM repository_files WHERE repository_id = ? AND path = ?",
                (repository_id, path),
            )
            self._conn.commit()
        return vector_ids

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def add_chunks(self, chunks: Iterable[CodeChunk]) -> int:
        """Insert chunks + sync the FTS5 index in one transaction. Returns the count."""
        count = 0
        with self._lock:
            for chunk in chunks:
                cur = self._conn.execute(
                    f"""
                    INSERT INTO chunks ({_CHUNK_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, COALESCE(?, datetime('now')))
                    """,
                    (
                        chunk.id,
                        chunk.repository_id,
                        chunk.file_path,
                        chunk.file_name,
                        chunk.language,
                        chunk.start_line,
                        chunk.end_line,
                        chunk.content,
                        chunk.content_hash,
                        json.dumps(chunk.imports),
                        json.dumps(chunk.metadata.to_dict()),
                        chunk.vector_id,
                        chunk.embedded_at,
                        chunk.created_at,
                    ),
                )
                # Keep FTS5 in sync with explicit rowid mapping
                self._conn.execute(
                    "INSERT INTO chunks_fts(rowid, content, symbols, path) VALUES (?, ?, ?, ?)",
                    (cur.lastrowid, chunk.content, _symbols_text(chunk), chunk.file_path),
                )
                count += 1
            self._conn.commit()
        return count

    def get_chunk(self, chunk_id: str) -> CodeChunk | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id = ?", (chunk_id,)
            ).fetchone()
        return _row_to_chunk(row) if row else None

    def get_chunks(self, chunk_ids: Iterable[str]) -> dict[str, CodeChunk]:
        """Return ``{chunk_id: chunk}`` for the ids that exist."""
        ids = list(dict.fromkeys(chunk_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id IN ({placeholders})", ids
            ).fetchall()
        return {r["id"]: _row_to_chunk(r) for r in rows}

    def list_chunks(self, repository_id: str) -> list[CodeChunk]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE repository_id = ? "
                "ORDER BY file_path, start_line",
                (repository_id,),
            ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def list_unembedded_chunks(self, repository_id: str) -> list[CodeChunk]:
        """Chunks of *repository_id* that have no vector yet, in file/line order."""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks "
                "WHERE repository_id = ? AND vector_id IS NULL "
                "ORDER BY file_path, start_line",
                (repository_id,),
            ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def find_embedded_duplicate(
        self, repository_id: str, content_hash: str, language: str
    ) -> CodeChunk | None:
        """Return an already-embedded chunk with the same (hash, language), if any."""
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks "
                "WHERE repository_id = ? AND content_hash = ? AND language = ? "
                "AND vector_id IS NOT NULL LIMIT 1",
                (repository_id, content_hash, language),
            ).fetchone()
        return _row_to_chunk(row) if row else None

    def mark_embedded(self, assignments: Iterable[tuple[str, str]]) -> None:
        """Set ``vector_id`` and ``embedded_at`` for each ``(chunk_id, vector_id)`` pair."""
        stamp = now_utc_iso()
        with self._lock:
            self._conn.executemany(
                "UPDATE chunks SET vector_id = ?, embedded_at = ? WHERE id = ?",
                [(vector_id, stamp, chunk_id) for chunk_id, vector_id in assignments],
            )
            self._conn.commit()

    def clear_vector_ids(self, repository_id: str) -> None:
        """Forget all vector assignments of a repository (forces re-embedding)."""
        with self._lock:
            self._conn.execute(
                "UPDATE chunks SET vector_id = NULL, embedded_at = NULL WHERE repository_id = ?",
                (repository_id,),
            )
            self._conn.commit()

    def vector_ids_for_repository(self, repository_id: str) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT vector_id FROM chunks WHERE repository_id = ? AND vector_id IS NOT NULL",
                (repository_id,),
            ).fetchall()
        return [r["vector_id"] for r in rows]

    def count_chunks(self, repository_id: str | None, *, embedded: bool | None = None) -> int:
        """Count chunks of one repository, or all for None; ``embedded`` filters by vectors."""
        clauses: list[str] = []
        params: tuple[Any, ...] = ()
        if repository_id is not None:
            clauses.append("repository_id = ?")
            params = (repository_id,)
        if embedded is True:
            clauses.append("vector_id IS NOT NULL")
        elif embedded is False:
            clauses.append("vector_id IS NULL")
        sql = "SELECT COUNT(*) FROM chunks"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        with self._lock:
            return self._conn.execute(sql, params).fetchone()[0]

    def delete_chunks_for_file(self, repository_id: str, path: str) -> list[str]:
        """Delete chunks + FTS entries for one file. Returns their vector ids."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT vector_id FROM chunks WHERE repository_id = ? AND file_path = ?",
                (repository_id, path),
            ).fetchall()
            self._delete_fts_where("repository_id = ? AND file_path = ?", (repository_id, path))
            self._conn.execute(
                "DELETE FROM chunks WHERE repository_id = ? AND file_path = ?",
                (repository_id, path),
            )
            self._conn.commit()
        return [r["vector_id"] for r in rows if r["vector_id"]]

    def get_languages(self, repository_id: str) -> dict[str, int]:
        """Return ``{language: chunk_count}`` for a repository, most common first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT language, COUNT(*) AS n FROM chunks WHERE repository_id = ? "
                "GROUP BY language ORDER BY n DESC, language",
                (repository_id,),
            ).fetchall()
        return {r["language"]: r["n"] for r in rows}

    def get_recent_chunks(self, repository_id: str, limit: int = 10) -> list[CodeChunk]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE repository_id = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (repository_id, limit),
            ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    # ------------------------------------------------------------------
    # FTS5 / BM25 search
    # ------------------------------------------------------------------

    def search_fts(
        self, repository_id: str | None, query: str, limit: int = 10
    ) -> list[tuple[CodeChunk, float]]:
        """BM25 full-text search within one repository, or all of them for None.

        Returns (chunk, score) best-first.

        bm25() returns negative values; lower (more negative) = better match.
        The raw score is returned; callers normalise it.
        """
        fts_query = build_fts_query(query)
        if not fts_query:
            return []
        scope = ""
        params: tuple[Any, ...] = (fts_query,)
        if repository_id is not None:
            scope = " AND c.repository_id = ?"
            params += (repository_id,)
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {", ".join("c." + col.strip() for col in _CHUNK_COLUMNS.split(","))},
                       bm25(chunks_fts, {_FTS_WEIGHTS[0]}, {_FTS_WEIGHTS[1]}, {_FTS_WEIGHTS[2]}) AS score
                FROM chunks_fts
                JOIN chunks c ON c.rowid = chunks_fts.rowid
                WHERE chunks_fts MATCH ?{scope}
                ORDER BY score, c.id
                LIMIT ?
                """,
                params + (limit,),
            ).fetchall()
        return [(_row_to_chunk(r), r["score"]) for r in rows]

    # ------------------------------------------------------------------
    # Chat sessions
    # ------------------------------------------------------------------

    def create_session(self, session: ChatSession) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO chat_sessions (id, repository_id, title) VALUES (?, ?, ?)",
                (session.id, session.repository_id, session.title),
            )
            self._conn.commit()

    def get_session(self, session_id: str) -> ChatSession | None:
        """Return a session with its messages in order, or None."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM chat_sessions WHERE id = ?", (session_id,)
            ).fetchone()
            if row is None:
                return None
            msg_rows = self._conn.execute(
                "SELECT * FROM chat_messages WHERE session_id = ? ORDER BY seq",
                (session_id,),
            ).fetchall()
        return ChatSession(
            id=row["id"],
            repository_id=row["repository_id"],
            title=row["title"],
            messages=[_row_to_message(m) for m in msg_rows],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def list_sessions(self, repository_id: str | None = None) -> list[ChatSession]:
        """Return sessions (without messages), most recently updated first."""
        sql = "SELECT * FROM chat_sessions"
        params: tuple[Any, ...] = ()
        if repository_id is not None:
            sql += " WHERE repository_id = ?"
            params = (repository_id,)
        with self._lock:
            rows = self._conn.execute(sql + " ORDER BY updated_at DESC, id", params).fetchall()
        return [
            ChatSession(
                id=r["id"],
                repository_id=r["repository_id"],
                title=r["title"],
                created_at=r["created_at"],
                updated_at=r["updated_at"],
            )
            for r in rows
        ]

    def save_message(self, session_id: str, message: ChatMessage) -> None:
        """Insert *message*, or replace its content if it was saved before.

        Replacing keeps the original position, so a streamed assistant reply
        is stored once no matter how often it is saved.
        """
        retrieved = json.dumps([rc.to_dict() for rc in message.retrieved_chunks])
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO chat_messages
                    (id, session_id, seq, role, content, tokens_used, retrieved_chunks, timestamp)
                VALUES (
                    ?, ?,
                    (SELECT COALESCE(MAX(seq), 0) + 1 FROM chat_messages WHERE session_id = ?),
                    ?, ?, ?, ?, COALESCE(?, datetime('now'))
                )
                ON CONFLICT(id) DO UPDATE SET
                    content = excluded.content,
                    tokens_used = excluded.tokens_used,
                    retrieved_chunks = excluded.retrieved_chunks
                """,
                (
                    message.id,
                    session_id,
                    session_id,
                    message.role.value,
                    message.content,
                    message.tokens_used,
                    retrieved,
                    message.timestamp,
                ),
            )
            self._conn.execute(
                "UPDATE chat_sessions SET updated_at = datetime('now') WHERE id = ?",
                (session_id,),
            )
            self._conn.commit()

    def update_session_title(self, session_id: str, title: str) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE chat_sessions SET title = ?, updated_at = datetime('now') WHERE id = ?",
                (title, session_id),
            )
            self._conn.commit()

    def update_session_repository(self, session_id: str, repository_id: str) -> None:
        """Scope a session to *repository_id*."""
        with self._lock:
            self._conn.execute(
                "UPDATE chat_sessions SET repository_id = ?, updated_at = datetime('now') WHERE id = ?",
                (repository_id, session_id),
            )
            self._conn.commit()

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM chat_sessions WHERE id = ?", (session_id,))
            self._conn.commit()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _delete_fts_where(self, where: str, params: tuple[Any, ...]) -> None:
        """Delete FTS rows for chunks matching *where* (FTS has no cascade)."""
        self._conn.execute(
            f"DELETE FROM chunks_fts WHERE rowid IN (SELECT rowid FROM chunks WHERE {where})",
            params,
        )


# ------------------------------------------------------------------
# Query helpers
# ------------------------------------------------------------------


def build_fts_query(query: str) -> str:
    """Turn free text into an FTS5 OR-query of quoted terms.

    FTS5 MATCH rejects punctuation as syntax; every term is quoted so
    keywords like ``AND`` or ``NEAR`` are matched literally.
    """
    terms = re.sub(r"[^\w\s]", " ", query).split()
    return " OR ".join(f'"{t}"' for t in dict.fromkeys(terms))


def _symbols_text(chunk: CodeChunk) -> str:
    meta = chunk.metadata
    return " ".join([*meta.functions, *meta.classes, *meta.types, *chunk.imports])


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _row_to_repository(row: sqlite3.Row) -> CodeRepository:
    return CodeRepository(
        id=row["id"],
        name=row["name"],
        path=row["path"],
        embedding_status=EmbeddingState(row["embedding_status"]),
        embedding_error=row["embedding_error"],
        embedded_at=row["embedded_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_file(row: sqlite3.Row) -> RepositoryFile:
    return RepositoryFile(
        repository_id=row["repository_id"],
        path=row["path"],
        language=row["language"],
        content_hash=row["content_hash"],
        size_bytes=row["size_bytes"],
        line_count=row["line_count"],
        imported_at=row["imported_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> CodeChunk:
    return CodeChunk(
        id=row["id"],
        repository_id=row["repository_id"],
        file_path=row["file_path"],
        file_name=row["file_name"],
        language=row["language"],
        start_line=row["start_line"],
        end_line=row["end_line"],
        content=row["content"],
        content_hash=row["content_hash"],
        imports=json.loads(row["imports"]),
        metadata=ChunkMetadata.from_dict(json.loads(row["metadata"])),
        vector_id=row["vector_id"],
        embedded_at=row["embedded_at"],
        created_at=row["created_at"],
    )


def _row_to_message(row: sqlite3.Row) -> ChatMessage:
    return ChatMessage(
        id=row["id"],
        role=MessageRole(row["role"]),
        content=row["content"],
        timestamp=row["timestamp"],
        tokens_used=row["tokens_used"],
        retrieved_chunks=[
            RetrievedChunk.from_dict(d) for d in json.loads(row["retrieved_chunks"])
        ],
    )
