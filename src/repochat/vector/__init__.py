"""repochat vector index adapter (Qdrant)."""

from repochat.vector.store import (
    ScoredPoint,
    VectorPoint,
    VectorStore,
    is_valid_uuid,
    normalize_point_id,
    sanitize_payload,
)

__all__ = [
    "ScoredPoint",
    "VectorPoint",
    "VectorStore",
    "is_valid_uuid",
    "normalize_point_id",
    "sanitize_payload",
]
