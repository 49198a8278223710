"""repochat embedding pipeline and status tracking."""

from repochat.pipeline.embedding import (
    EmbeddingJob,
    EmbeddingPipeline,
    OverflowPolicy,
    ProcessingStats,
    QueueOutcome,
    QueueResult,
)
from repochat.pipeline.status import EmbeddingStatus, StatusTracker

__all__ = [
    "EmbeddingJob",
    "EmbeddingPipeline",
    "EmbeddingStatus",
    "OverflowPolicy",
    "ProcessingStats",
    "QueueOutcome",
    "QueueResult",
    "StatusTracker",
]
