"""Tests for the Qdrant vector store adapter (in-memory client)."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from unittest.mock import MagicMock

import pytest

from repochat.errors import ServiceUnavailableError, VectorStoreError
from repochat.vector.store import (
    VectorPoint,
    VectorStore,
    is_valid_uuid,
    normalize_point_id,
    sanitize_payload,
)

COLLECTION = "code_chunks"


@pytest.fixture
def ready(vectors):
    vectors.create_collection(COLLECTION, 3)
    return vectors


def _id(n: int) -> str:
    return str(uuid.UUID(int=n))


# ------------------------------------------------------------------
# Point ids
# ------------------------------------------------------------------


def test_is_valid_uuid():
    assert is_valid_uuid("123e4567-e89b-12d3-a456-426614174000")
    assert not is_valid_uuid("123e4567e89b12d3a456426614174000")
    assert not is_valid_uuid("chunk-1")


def test_normalize_point_id_numeric_forms():
    assert normalize_point_id(7) == 7
    assert normalize_point_id("42") == 42


def test_normalize_point_id_uuid_lowercased():
    assert normalize_point_id("123E4567-E89B-12D3-A456-426614174000") == (
        "123e4567-e89b-12d3-a456-426614174000"
    )


def test_normalize_point_id_other_string_is_stable_uuid():
    first = normalize_point_id("chunk-abc")
    assert is_valid_uuid(first)
    assert normalize_point_id("chunk-abc") == first
    assert normalize_point_id("chunk-abd") != first


def test_normalize_point_id_rejects_negative_and_bool():
    with pytest.raises(ValueError):
        normalize_point_id(-1)
    with pytest.raises(TypeError):
        normalize_point_id(True)


# ------------------------------------------------------------------
# Payload sanitisation
# ------------------------------------------------------------------


class _Color(Enum):
    RED = "red"


def test_sanitize_payload_converts_to_primitives():
    stamp = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    payload = sanitize_payload(
        {
            "functions": ("a", "b"),
            "tags": {"x"},
            "when": stamp,
            "path": PurePosixPath("src/a.py"),
            "color": _Color.RED,
            "nested": {1: {"raw": b"bytes"}},
            "count": 3,
            "none": None,
        }
    )
    assert payload == {
        "functions": ["a", "b"],
        "tags": ["x"],
        "when": stamp.isoformat(),
        "path": "src/a.py",
        "color": "red",
        "nested": {"1": {"raw": "bytes"}},
        "count": 3,
        "none": None,
    }


def test_sanitize_payload_does_not_mutate_input():
    original = {"items": ("a",)}
    sanitize_payload(original)
    assert original == {"items": ("a",)}


# ------------------------------------------------------------------
# Collections
# ------------------------------------------------------------------


def test_create_and_exists(vectors):
    assert not vectors.exists(COLLECTION)
    vectors.create_collection(COLLECTION, 3)
    assert vectors.exists(COLLECTION)


def test_create_collection_rejects_bad_dimension(vectors):
    with pytest.raises(ValueError):
        vectors.create_collection(COLLECTION, 0)


def test_ensure_collection_idempotent(vectors):
    vectors.ensure_collection(COLLECTION, 3)
    vectors.ensure_collection(COLLECTION, 3)
    assert vectors.exists(COLLECTION)


def test_ensure_collection_dimension_mismatch(ready):
    with pytest.raises(VectorStoreError, match="vector size"):
        ready.ensure_collection(COLLECTION, 5)


# ------------------------------------------------------------------
# Points
# ------------------------------------------------------------------


def test_upsert_is_idempotent(ready):
    point = VectorPoint(_id(1), [1.0, 0.0, 0.0], {"repositoryId": "r1"})
    ready.upsert(COLLECTION, [point])
    ready.upsert(COLLECTION, [point])
    assert ready.count(COLLECTION) == 1


def test_search_orders_by_similarity(ready):
    ready.upsert(
        COLLECTION,
        [
            VectorPoint(_id(1), [1.0, 0.0, 0.0], {"repositoryId": "r1", "chunkId": "a"}),
            VectorPoint(_id(2), [0.0, 1.0, 0.0], {"repositoryId": "r1", "chunkId": "b"}),
            VectorPoint(_id(3), [0.9, 0.1, 0.0], {"repositoryId": "r1", "chunkId": "c"}),
        ],
    )
    hits = ready.search(COLLECTION, [1.0, 0.0, 0.0], limit=2)
    assert [h.payload["chunkId"] for h in hits] == ["a", "c"]
    assert hits[0].score == pytest.approx(1.0)


def test_search_filters_repository_and_excluded_ids(ready):
    ready.upsert(
        COLLECTION,
        [
            VectorPoint(_id(1), [1.0, 0.0, 0.0], {"repositoryId": "r1"}),
            VectorPoint(_id(2), [1.0, 0.1, 0.0], {"repositoryId": "r1"}),
            VectorPoint(_id(3), [1.0, 0.0, 0.0], {"repositoryId": "r2"}),
        ],
    )
    hits = ready.search(
        COLLECTION, [1.0, 0.0, 0.0], limit=10, repository_id="r1", exclude_ids=[_id(1)]
    )
    assert [str(h.id) for h in hits] == [_id(2)]


def test_retrieve_returns_vectors(ready):
    ready.upsert(COLLECTION, [VectorPoint(_id(1), [3.0, 4.0, 0.0], {"chunkId": "a"})])
    [point] = ready.retrieve(COLLECTION, [_id(1), _id(9)])
    assert point.payload["chunkId"] == "a"
    assert len(point.vector) == 3


def test_delete_by_id_and_numeric_id(ready):
    ready.upsert(
        COLLECTION,
        [
            VectorPoint(_id(1), [1.0, 0.0, 0.0]),
            VectorPoint(5, [0.0, 1.0, 0.0]),
        ],
    )
    ready.delete(COLLECTION, [_id(1), "5"])
    assert ready.count(COLLECTION) == 0


def test_delete_by_repository(ready):
    ready.upsert(
        COLLECTION,
        [
            VectorPoint(_id(1), [1.0, 0.0, 0.0], {"repositoryId": "r1"}),
            VectorPoint(_id(2), [0.0, 1.0, 0.0], {"repositoryId": "r2"}),
        ],
    )
    ready.delete_by_repository(COLLECTION, "r1")
    assert ready.count(COLLECTION, repository_id="r1") == 0
    assert ready.count(COLLECTION, repository_id="r2") == 1


def test_empty_upsert_and_delete_are_noops():
    client = MagicMock()
    store = VectorStore(client)
    store.upsert(COLLECTION, [])
    store.delete(COLLECTION, [])
    client.upsert.assert_not_called()
    client.delete.assert_not_called()


# ------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------


def test_transport_failure_wrapped():
    client = MagicMock()
    client.query_points.side_effect = ConnectionError("refused")
    store = VectorStore(client)

    with pytest.raises(VectorStoreError) as exc_info:
        store.search(COLLECTION, [1.0, 0.0, 0.0], limit=3)

    assert exc_info.value.operation == "search"
    assert exc_info.value.collection == COLLECTION
    assert isinstance(exc_info.value, ServiceUnavailableError)


def test_search_missing_collection_raises(vectors):
    with pytest.raises(VectorStoreError):
        vectors.search("nope", [1.0, 0.0, 0.0], limit=1)
