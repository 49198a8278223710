"""repochat retrieval and chat: hybrid search, prompt building, LLM calls."""

from repochat.rag.chat import ChatOrchestrator, StreamChunk
from repochat.rag.retriever import HybridRetriever, SearchResult

__all__ = [
    "ChatOrchestrator",
    "HybridRetriever",
    "SearchResult",
    "StreamChunk",
]
