"""Exception hierarchy shared by every repochat layer.

Callers can catch ``RepochatError`` for anything raised by this package, or a
specific subclass to react to one failure class. Cancellation is not an error
and has no exception here; cancelled streams simply stop.
"""

from __future__ import annotations


class RepochatError(Exception):
    """Base class for all repochat errors."""


class ConfigError(RepochatError, ValueError):
    """Raised when configuration contains an invalid or forbidden value."""


class InvalidArgumentError(RepochatError, ValueError):
    """Raised when a caller passes an out-of-range argument (limit, weight...)."""


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFoundError(RepochatError):
    """Raised when a requested entity does not exist."""

    kind = "entity"

    def __init__(self, entity_id: str) -> None:
        self.entity_id = entity_id
        super().__init__(f"{self.kind} not found: {entity_id}")


class RepositoryNotFoundError(NotFoundError):
    kind = "repository"


class ChunkNotFoundError(NotFoundError):
    kind = "chunk"


class SessionNotFoundError(NotFoundError):
    kind = "chat session"


# ---------------------------------------------------------------------------
# Transient / upstream
# ---------------------------------------------------------------------------


class ServiceUnavailableError(RepochatError):
    """An upstream dependency failed or timed out; the call may be retried.

    Attributes:
        operation: What was being attempted (e.g. ``"embed"``, ``"upsert"``).
        target: The upstream that failed (model name, collection name...).
    """

    def __init__(self, operation: str, target: str, message: str = "") -> None:
        self.operation = operation
        self.target = target
        detail = f": {message}" if message else ""
        super().__init__(f"{operation} failed for '{target}'{detail}")


class VectorStoreError(ServiceUnavailableError):
    """A vector-index call failed. ``target`` is the collection name."""

    @property
    def collection(self) -> str:
        return self.target


class QueueFullError(RepochatError):
    """The embedding job queue is at capacity and the overflow policy is reject."""

    def __init__(self, repository_id: str, capacity: int) -> None:
        self.repository_id = repository_id
        self.capacity = capacity
        super().__init__(
            f"embedding queue is full ({capacity} jobs); repository {repository_id} not queued"
        )
