"""Hybrid retriever: vector similarity (Qdrant) + BM25 text search (FTS5), fused by weight.

Score normalisation, both into [0, 1]:
  vector  cosine s in [-1, 1]  →  (s + 1) / 2
  text    bm25 (lower = better) → min-max within the result set; a single
          result scores 1.0

Fusion:
  fused = w * vector + (1 - w) * text      (missing channel contributes 0)
  order: fused desc, vector desc, chunk id asc
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from repochat.cancel import CancelToken
from repochat.db.models import CodeChunk
from repochat.db.store import DocumentStore
from repochat.errors import (
    ChunkNotFoundError,
    InvalidArgumentError,
    RepositoryNotFoundError,
)
from repochat.rag.llm_client import Embedder
from repochat.vector.store import ScoredPoint, VectorStore

logger = logging.getLogger(__name__)

MIN_LIMIT = 1
MAX_LIMIT = 100
DEFAULT_VECTOR_WEIGHT = 0.7

_HIGHLIGHT_WIDTH = 200
_HIGHLIGHT_STEP = 50


@dataclass
class SearchResult:
    """A retrieved chunk with its fused and per-channel scores.

    Attributes:
        chunk: The stored chunk.
        score: Fused score in [0, 1] (equals the single channel's score for
            vector-only or text-only searches).
        vector_score: Normalised vector similarity, 0 if not retrieved by vector.
        text_score: Normalised text relevance, 0 if not retrieved by text.
        highlight: Up to 200 chars of content around the best query match.
    """

    chunk: CodeChunk
    score: float
    vector_score: float = 0.0
    text_score: float = 0.0
    highlight: str = ""

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk.id,
            "file_path": self.chunk.file_path,
            "start_line": self.chunk.start_line,
            "end_line": self.chunk.end_line,
            "language": self.chunk.language,
            "score": self.score,
            "vector_score": self.vector_score,
            "text_score": self.text_score,
            "highlight": self.highlight,
        }


# ------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------


def validate_limit(limit: int) -> int:
    """Return *limit* if it is an int in [1, 100].

    Raises:
        InvalidArgumentError: Otherwise. Callers clamp before calling.
    """
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise InvalidArgumentError(f"limit must be an integer (got {limit!r})")
    if not MIN_LIMIT <= limit <= MAX_LIMIT:
        raise InvalidArgumentError(
            f"limit must be between {MIN_LIMIT} and {MAX_LIMIT} (got {limit})"
        )
    return limit


def validate_weight(weight: float) -> float:
    if not 0.0 <= weight <= 1.0:
        raise InvalidArgumentError(f"vector_weight must be in [0, 1] (got {weight})")
    return float(weight)


def clamp_limit(limit: int) -> int:
    """Clamp *limit* into [1, 100] for callers that accept any int."""
    return max(MIN_LIMIT, min(MAX_LIMIT, int(limit)))


# ------------------------------------------------------------------
# Normalisation + fusion (pure)
# ------------------------------------------------------------------


def normalize_vector_score(score: float) -> float:
    """Map cosine similarity in [-1, 1] onto [0, 1]."""
    return min(1.0, max(0.0, (score + 1.0) / 2.0))


def normalize_text_scores(raw: dict[str, float]) -> dict[str, float]:
    """Min-max normalise bm25 scores (lower = better) into [0, 1], best = 1."""
    if not raw:
        return {}
    best = min(raw.values())
    worst = max(raw.values())
    if worst == best:
        return {k: 1.0 for k in raw}
    span = worst - best
    return {k: (worst - v) / span for k, v in raw.items()}


def fuse_scores(
    vector_scores: dict[str, float],
    text_scores: dict[str, float],
    vector_weight: float,
) -> list[tuple[str, float, float, float]]:
    """Combine normalised channel scores.

    Args:
        vector_scores: ``{chunk_id: score in [0, 1]}``.
        text_scores: ``{chunk_id: score in [0, 1]}``.
        vector_weight: w in [0, 1].

    Returns:
        ``[(chunk_id, fused, vector, text), ...]`` ordered by fused desc,
        vector desc, chunk id asc.
    """
    w = validate_weight(vector_weight)
    fused: list[tuple[str, float, float, float]] = []
    for chunk_id in set(vector_scores) | set(text_scores):
        v = vector_scores.get(chunk_id, 0.0)
        t = text_scores.get(chunk_id, 0.0)
        fused.append((chunk_id, w * v + (1.0 - w) * t, v, t))
    fused.sort(key=lambda item: (-item[1], -item[2], item[0]))
    return fused


# ------------------------------------------------------------------
# Highlights
# ------------------------------------------------------------------


def _truncate(content: str, max_len: int) -> str:
    if len(content) <= max_len:
        return content
    return content[:max_len] + "..."


def generate_highlight(content: str, query: str) -> str:
    """Return the 200-char window of *content* containing the most query words.

    Windows start every 50 chars; ``...`` marks cut sides. Without any
    matching window the content is truncated to 200 chars.
    """
    words = query.lower().split()
    if not words:
        return _truncate(content, _HIGHLIGHT_WIDTH)

    lower = content.lower()
    best_pos = -1
    best_matches = 0
    for i in range(0, max(0, len(content) - _HIGHLIGHT_WIDTH // 2), _HIGHLIGHT_STEP):
        section = lower[i : i + _HIGHLIGHT_WIDTH]
        matches = sum(1 for w in words if w in section)
        if matches > best_matches:
            best_matches = matches
            best_pos = i

    if best_pos == -1:
        return _truncate(content, _HIGHLIGHT_WIDTH)

    end = min(len(content), best_pos + _HIGHLIGHT_WIDTH)
    result = content[best_pos:end]
    if end < len(content):
        result += "..."
    if best_pos > 0:
        result = "..." + result
    return result


# ------------------------------------------------------------------
# Retriever
# ------------------------------------------------------------------


class HybridRetriever:
    """Search chunks by vector, text, or both.

    Every search takes an optional repository id; None searches all
    repositories.

    Args:
        store: Document store (chunks + FTS5 index).
        vectors: Vector index adapter.
        embedder: Embedding client for query strings.
        collection: Qdrant collection holding chunk vectors.
    """

    def __init__(
        self,
        store: DocumentStore,
        vectors: VectorStore,
        embedder: Embedder,
        collection: str,
    ) -> None:
        self._store = store
        self._vectors = vectors
        self._embedder = embedder
        self.collection = collection

    def vector_search(
        self,
        repository_id: str | None,
        query: str,
        limit: int = 10,
        cancel: CancelToken | None = None,
    ) -> list[SearchResult]:
        """Embed *query* and return the most similar chunks.

        Raises:
            InvalidArgumentError: On a bad limit or an empty query.
            RepositoryNotFoundError: If a repository id is given and it does not exist.
            ServiceUnavailableError: If the embedding provider or index fails.
        """
        validate_limit(limit)
        self._check_query(repository_id, query)
        raw = self._vector_channel(repository_id, query, limit, cancel)
        chunks = self._store.get_chunks(raw)
        ranked = sorted(
            ((cid, score) for cid, score in raw.items() if cid in chunks),
            key=lambda item: (-item[1], item[0]),
        )
        return [
            SearchResult(
                chunk=chunks[cid],
                score=score,
                vector_score=score,
                highlight=generate_highlight(chunks[cid].content, query),
            )
            for cid, score in ranked[:limit]
        ]

    def text_search(
        self, repository_id: str | None, query: str, limit: int = 10
    ) -> list[SearchResult]:
        """BM25 search over content, symbols and file paths.

        Raises:
            InvalidArgumentError: On a bad limit or an empty query.
            RepositoryNotFoundError: If a repository id is given and it does not exist.
        """
        validate_limit(limit)
        self._check_query(repository_id, query)
        hits = self._store.search_fts(repository_id, query, limit)
        normalized = normalize_text_scores({c.id: s for c, s in hits})
        results = [
            SearchResult(
                chunk=chunk,
                score=normalized[chunk.id],
                text_score=normalized[chunk.id],
                highlight=generate_highlight(chunk.content, query),
            )
            for chunk, _ in hits
        ]
        results.sort(key=lambda r: (-r.score, r.chunk.id))
        return results

    def hybrid_search(
        self,
        repository_id: str | None,
        query: str,
        vector_weight: float = DEFAULT_VECTOR_WEIGHT,
        limit: int = 10,
        cancel: CancelToken | None = None,
    ) -> list[SearchResult]:
        """Fuse vector and text results: ``w * vector + (1 - w) * text``.

        Each channel is over-fetched at twice *limit* before fusion.

        Raises:
            InvalidArgumentError: On a bad limit, weight or empty query.
            RepositoryNotFoundError: If a repository id is given and it does not exist.
            ServiceUnavailableError: If the embedding provider or index fails.
        """
        validate_limit(limit)
        validate_weight(vector_weight)
        self._check_query(repository_id, query)
        fetch = limit * 2

        vector_scores: dict[str, float] = {}
        if vector_weight > 0.0:
            vector_scores = self._vector_channel(repository_id, query, fetch, cancel)
        text_scores: dict[str, float] = {}
        if vector_weight < 1.0:
            hits = self._store.search_fts(repository_id, query, fetch)
            text_scores = normalize_text_scores({c.id: s for c, s in hits})

        fused = fuse_scores(vector_scores, text_scores, vector_weight)
        chunks = self._store.get_chunks(cid for cid, *_ in fused)
        results: list[SearchResult] = []
        for cid, score, v, t in fused:
            chunk = chunks.get(cid)
            if chunk is None:
                continue
            results.append(
                SearchResult(
                    chunk=chunk,
                    score=score,
                    vector_score=v,
                    text_score=t,
                    highlight=generate_highlight(chunk.content, query),
                )
            )
            if len(results) == limit:
                break
        return results

    def find_similar(self, chunk_id: str, limit: int = 10) -> list[SearchResult]:
        """Chunks of the same repository closest to *chunk_id*'s stored vector.

        The source chunk is never returned and is not re-embedded.

        Raises:
            InvalidArgumentError: On a bad limit, or if the chunk has no vector.
            ChunkNotFoundError: If the chunk does not exist.
        """
        validate_limit(limit)
        chunk = self._store.get_chunk(chunk_id)
        if chunk is None:
            raise ChunkNotFoundError(chunk_id)
        if not chunk.vector_id:
            raise InvalidArgumentError(f"chunk {chunk_id} has not been embedded yet")
        stored = self._vectors.retrieve(self.collection, [chunk.vector_id], with_vectors=True)
        if not stored or stored[0].vector is None:
            raise InvalidArgumentError(f"no stored vector for chunk {chunk_id}")

        hits = self._vectors.search(
            self.collection,
            stored[0].vector,
            limit,
            repository_id=chunk.repository_id,
            exclude_ids=[chunk.vector_id],
        )
        raw = {
            cid: normalize_vector_score(h.score)
            for h in hits
            if (cid := _chunk_id(h)) and cid != chunk_id
        }
        chunks = self._store.get_chunks(raw)
        ranked = sorted(
            ((cid, s) for cid, s in raw.items() if cid in chunks),
            key=lambda item: (-item[1], item[0]),
        )
        return [
            SearchResult(
                chunk=chunks[cid],
                score=s,
                vector_score=s,
                highlight=_truncate(chunks[cid].content, _HIGHLIGHT_WIDTH),
            )
            for cid, s in ranked[:limit]
        ]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _check_query(self, repository_id: str | None, query: str) -> None:
        if not query or not query.strip():
            raise InvalidArgumentError("query must not be empty")
        if repository_id is not None and self._store.get_repository(repository_id) is None:
            raise RepositoryNotFoundError(repository_id)

    def _vector_channel(
        self,
        repository_id: str | None,
        query: str,
        limit: int,
        cancel: CancelToken | None,
    ) -> dict[str, float]:
        """``{chunk_id: normalised similarity}``; empty if nothing is embedded or cancelled."""
        if self._store.count_chunks(repository_id, embedded=True) == 0:
            return {}
        vector = self._embedder.embed_query(query, cancel)
        if vector is None:
            return {}
        hits = self._vectors.search(
            self.collection, vector, limit, repository_id=repository_id
        )
        scores: dict[str, float] = {}
        for hit in hits:
            cid = _chunk_id(hit)
            if cid and cid not in scores:
                scores[cid] = normalize_vector_score(hit.score)
        return scores


def _chunk_id(point: ScoredPoint) -> str | None:
    cid = point.payload.get("chunkId")
    return str(cid) if cid is not None else None
