"""Identifier and timestamp helpers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

# Namespace for ids derived from non-UUID chunk identifiers.
CHUNK_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "repochat:chunk")


def new_uuid() -> str:
    """Generate a new UUID4 as a string."""
    return str(uuid.uuid4())


def deterministic_uuid(name: str, namespace: uuid.UUID = CHUNK_NAMESPACE) -> str:
    """Generate a deterministic UUID5 from a stable name."""
    return str(uuid.uuid5(namespace, name))


def now_utc_iso() -> str:
    """Return an ISO timestamp in UTC with seconds precision."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()
