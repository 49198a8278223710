"""Typed wrapper over a Qdrant collection of chunk vectors.

Every call is all-or-nothing: the adapter never retries and never splits a
batch. Transport failures surface as VectorStoreError carrying the operation
and collection name.
"""

from __future__ import annotations

import enum
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import PurePath
from typing import Any, Union

from qdrant_client import QdrantClient
from qdrant_client.http import models

from repochat.errors import VectorStoreError
from repochat.ids import deterministic_uuid

logger = logging.getLogger(__name__)

PointId = Union[str, int]

_UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


# ---------------------------------------------------------------------------
# Point ids + payloads
# ---------------------------------------------------------------------------


def is_valid_uuid(value: str) -> bool:
    """Lexical check: 36 chars, five hyphen-separated hex groups of 8-4-4-4-12."""
    return len(value) == 36 and bool(_UUID_RE.match(value))


def normalize_point_id(value: PointId) -> PointId:
    """Return the id form Qdrant accepts.

    Non-negative ints and digit strings become ints; valid UUIDs are
    lower-cased; any other string maps to a deterministic UUID5.
    """
    if isinstance(value, bool):
        raise TypeError("point id cannot be a bool")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"numeric point id must be non-negative (got {value})")
        return value
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    if is_valid_uuid(text):
        return text.lower()
    return deterministic_uuid(text)


def sanitize_value(value: Any) -> Any:
    """Convert *value* into the primitive/list/map kinds the transport accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, enum.Enum):
        return sanitize_value(value.value)
    if isinstance(value, Mapping):
        return sanitize_payload(value)
    if isinstance(value, (list, tuple)):
        return [sanitize_value(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return [sanitize_value(v) for v in sorted(value, key=repr)]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, PurePath):
        return value.as_posix()
    if isinstance(value, Iterable):
        return [sanitize_value(v) for v in value]
    return str(value)


def sanitize_payload(payload: Mapping[Any, Any]) -> dict[str, Any]:
    """Return a copy of *payload* with string keys and sanitised values, recursively."""
    return {str(k): sanitize_value(v) for k, v in payload.items()}


@dataclass
class VectorPoint:
    id: PointId
    vector: list[float]
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class ScoredPoint:
    id: PointId
    score: float
    payload: dict[str, Any] = field(default_factory=dict)
    vector: list[float] | None = None


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class VectorStore:
    """Collection-level operations on a Qdrant instance.

    Args:
        client: A ready QdrantClient (server, on-disk, or ``:memory:``).
    """

    def __init__(self, client: QdrantClient) -> None:
        self._client = client

    @classmethod
    def connect(
        cls,
        *,
        url: str | None = None,
        path: str | None = None,
        api_key: str | None = None,
        timeout: float = 10.0,
    ) -> VectorStore:
        """Open a client for a server *url*, or a local *path* (``":memory:"`` allowed)."""
        if url:
            client = QdrantClient(url=url, api_key=api_key, timeout=int(max(1, timeout)))
        elif path in (None, ":memory:"):
            client = QdrantClient(location=":memory:")
        else:
            client = QdrantClient(path=path)
        return cls(client)

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    def exists(self, collection: str) -> bool:
        """Return True if *collection* exists."""
        try:
            return bool(self._client.collection_exists(collection_name=collection))
        except Exception as exc:
            raise VectorStoreError("exists", collection, str(exc)) from exc

    def create_collection(self, name: str, dimension: int) -> None:
        """Create a cosine-distance collection of *dimension*-sized vectors.

        Raises:
            ValueError: If *dimension* is not positive.
            VectorStoreError: On transport failure (including an existing collection).
        """
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        try:
            self._client.create_collection(
                collection_name=name,
                vectors_config=models.VectorParams(
                    size=dimension, distance=models.Distance.COSINE
                ),
            )
        except Exception as exc:
            raise VectorStoreError("create_collection", name, str(exc)) from exc
        logger.info("Created collection %s (dim=%d)", name, dimension)

    def ensure_collection(self, name: str, dimension: int) -> None:
        """Create *name* if missing; otherwise check its vector size matches."""
        if not self.exists(name):
            self.create_collection(name, dimension)
            return
        try:
            info = self._client.get_collection(collection_name=name)
        except Exception as exc:
            raise VectorStoreError("get_collection", name, str(exc)) from exc
        vectors = getattr(getattr(info.config, "params", None), "vectors", None)
        configured = getattr(vectors, "size", None)
        if configured is not None and int(configured) != int(dimension):
            raise VectorStoreError(
                "ensure_collection",
                name,
                f"collection has vector size {configured}, expected {dimension}",
            )

    # ------------------------------------------------------------------
    # Points
    # ------------------------------------------------------------------

    def upsert(self, collection: str, points: list[VectorPoint]) -> None:
        """Insert or overwrite *points* by id in one call."""
        if not points:
            return
        structs = [
            models.PointStruct(
                id=normalize_point_id(p.id),
                vector=list(p.vector),
                payload=sanitize_payload(p.payload),
            )
            for p in points
        ]
        try:
            self._client.upsert(collection_name=collection, points=structs, wait=True)
        except Exception as exc:
            raise VectorStoreError("upsert", collection, str(exc)) from exc
        logger.debug("Upserted %d points into %s", len(structs), collection)

    def search(
        self,
        collection: str,
        query_vector: list[float],
        limit: int,
        include_payload: bool = True,
        *,
        repository_id: str | None = None,
        exclude_ids: Iterable[PointId] = (),
    ) -> list[ScoredPoint]:
        """Return up to *limit* points ranked by cosine similarity (best first).

        Args:
            collection: Collection to query.
            query_vector: Query embedding.
            limit: Maximum number of points.
            include_payload: Return payloads with the points.
            repository_id: Restrict to points whose payload ``repositoryId`` matches.
            exclude_ids: Point ids never returned.
        """
        must: list[Any] = []
        if repository_id is not None:
            must.append(
                models.FieldCondition(
                    key="repositoryId", match=models.MatchValue(value=repository_id)
                )
            )
        excluded = [normalize_point_id(i) for i in exclude_ids]
        must_not: list[Any] = [models.HasIdCondition(has_id=excluded)] if excluded else []
        query_filter = (
            models.Filter(must=must or None, must_not=must_not or None)
            if (must or must_not)
            else None
        )
        try:
            response = self._client.query_points(
                collection_name=collection,
                query=list(query_vector),
                query_filter=query_filter,
                with_payload=include_payload,
                with_vectors=False,
                limit=max(1, limit),
            )
        except Exception as exc:
            raise VectorStoreError("search", collection, str(exc)) from exc
        return [
            ScoredPoint(
                id=hit.id,
                score=float(hit.score),
                payload=dict(hit.payload or {}),
            )
            for hit in response.points
        ]

    def retrieve(
        self, collection: str, ids: Iterable[PointId], with_vectors: bool = True
    ) -> list[ScoredPoint]:
        """Fetch points by id. Missing ids are omitted; ``score`` is 0."""
        normalized = [normalize_point_id(i) for i in ids]
        if not normalized:
            return []
        try:
            records = self._client.retrieve(
                collection_name=collection,
                ids=normalized,
                with_payload=True,
                with_vectors=with_vectors,
            )
        except Exception as exc:
            raise VectorStoreError("retrieve", collection, str(exc)) from exc
        return [
            ScoredPoint(
                id=r.id,
                score=0.0,
                payload=dict(r.payload or {}),
                vector=list(r.vector) if isinstance(r.vector, list) else None,
            )
            for r in records
        ]

    def delete(self, collection: str, ids: Iterable[PointId]) -> None:
        """Delete points by id; UUID strings and numeric ids are both accepted."""
        normalized = [normalize_point_id(i) for i in ids]
        if not normalized:
            return
        try:
            self._client.delete(
                collection_name=collection,
                points_selector=models.PointIdsList(points=normalized),
                wait=True,
            )
        except Exception as exc:
            raise VectorStoreError("delete", collection, str(exc)) from exc
        logger.debug("Deleted %d points from %s", len(normalized), collection)

    def delete_by_repository(self, collection: str, repository_id: str) -> None:
        """Delete every point whose payload ``repositoryId`` is *repository_id*."""
        selector = models.FilterSelector(
            filter=models.Filter(
                must=[
                    models.FieldCondition(
                        key="repositoryId", match=models.MatchValue(value=repository_id)
                    )
                ]
            )
        )
        try:
            self._client.delete(collection_name=collection, points_selector=selector, wait=True)
        except Exception as exc:
            raise VectorStoreError("delete", collection, str(exc)) from exc

    def count(self, collection: str, repository_id: str | None = None) -> int:
        count_filter = None
        if repository_id is not None:
            count_filter = models.Filter(
                must=[
                    models.FieldCondition(
                        key="repositoryId", match=models.MatchValue(value=repository_id)
                    )
                ]
            )
        try:
            result = self._client.count(
                collection_name=collection, count_filter=count_filter, exact=True
            )
        except Exception as exc:
            raise VectorStoreError("count", collection, str(exc)) from exc
        return int(result.count)

    def close(self) -> None:
        self._client.close()
