"""Chat orchestrator: session handling, retrieval, prompt assembly and completion.

One turn runs in this order: load or create the session, store the user
message, retrieve context from the session's repository, render the prompt,
call the model, and store the assistant reply. The streaming variant yields
StreamChunk items and keeps the assistant message in the store up to date
while deltas arrive, so a cancelled or failed stream leaves its partial reply.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Generator
from dataclasses import dataclass

from repochat.cancel import CancelToken
from repochat.db.models import ChatMessage, ChatSession, MessageRole, RetrievedChunk
from repochat.db.store import DocumentStore
from repochat.errors import InvalidArgumentError, RepochatError
from repochat.ids import new_uuid, now_utc_iso
from repochat.rag.llm_client import complete, count_tokens, stream_complete
from repochat.rag.prompt import build_chat_prompt, build_messages
from repochat.rag.retriever import HybridRetriever, SearchResult

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"
_TITLE_MAX = 50

# Minimum seconds between saves of a streaming reply.
_SAVE_INTERVAL = 0.5


@dataclass
class StreamChunk:
    """One item of a streamed reply.

    Attributes:
        type: ``content``, ``done`` or ``error``.
        content: Reply text accumulated so far, or the error message.
        delta: Text added by this item (``content`` items only).
    """

    type: str
    content: str = ""
    delta: str = ""

    def to_dict(self) -> dict:
        if self.type == "content":
            return {"type": "content", "content": self.content, "delta": self.delta}
        if self.type == "error":
            return {"type": "error", "content": self.content}
        return {"type": self.type}


def generate_title(session: ChatSession) -> str:
    """Title from the first non-empty user message, cut to 50 characters."""
    for message in session.messages:
        if message.role is MessageRole.USER and message.content:
            if len(message.content) <= _TITLE_MAX:
                return message.content
            return message.content[: _TITLE_MAX - 3] + "..."
    return DEFAULT_TITLE


def _to_retrieved(result: SearchResult) -> RetrievedChunk:
    chunk = result.chunk
    return RetrievedChunk(
        chunk_id=chunk.id,
        file_path=chunk.file_path,
        start_line=chunk.start_line,
        end_line=chunk.end_line,
        content=chunk.content,
        similarity=result.score,
        language=chunk.language,
    )


class ChatOrchestrator:
    """Answer questions about a repository with retrieved code as context.

    Args:
        store: Document store holding sessions and chunks.
        retriever: Hybrid retriever over the same store.
        model: LiteLLM chat model string.
        context_chunks: Snippets retrieved per turn.
        vector_weight: Fusion weight for retrieval.
        max_prompt_length: Upper bound on the rendered user prompt, in characters.
        max_tokens: Completion token limit.
        temperature: Sampling temperature.
        timeout: Completion timeout in seconds.
    """

    def __init__(
        self,
        store: DocumentStore,
        retriever: HybridRetriever,
        *,
        model: str,
        context_chunks: int = 8,
        vector_weight: float = 0.7,
        max_prompt_length: int = 12_000,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        timeout: float = 30.0,
    ) -> None:
        self._store = store
        self._retriever = retriever
        self.model = model
        self.context_chunks = context_chunks
        self.vector_weight = vector_weight
        self.max_prompt_length = max_prompt_length
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process_message(
        self,
        session_id: str,
        message: str,
        repository_id: str | None = None,
    ) -> ChatSession:
        """Run one full turn and return the updated session.

        Raises:
            InvalidArgumentError: If *message* is empty.
            ServiceUnavailableError: If the completion provider fails. The
                user message is kept; no assistant message is stored.
        """
        session, retrieved, messages = self._prepare_turn(session_id, message, repository_id)

        started = time.monotonic()
        result = complete(
            self.model,
            messages,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            timeout=self.timeout,
        )
        tokens = result.total_tokens
        if tokens is None:
            tokens = count_tokens(self.model, messages[-1]["content"] + result.content)
        logger.info(
            "Chat completion for session %s: %d chars, %d tokens in %.2fs",
            session.id,
            len(result.content),
            tokens,
            time.monotonic() - started,
        )

        reply = ChatMessage(
            id=new_uuid(),
            role=MessageRole.ASSISTANT,
            content=result.content,
            timestamp=now_utc_iso(),
            tokens_used=tokens,
            retrieved_chunks=retrieved,
        )
        self._store.save_message(session.id, reply)
        session.messages.append(reply)
        self._maybe_title(session)
        return session

    def process_message_streaming(
        self,
        session_id: str,
        message: str,
        cancel: CancelToken | None = None,
        repository_id: str | None = None,
    ) -> Generator[StreamChunk, None, None]:
        """Run one turn and return a generator of StreamChunk items.

        The user message is stored and context retrieved before this returns;
        the completion starts on the first ``next()``. The stream ends with a
        single ``done`` or ``error`` item, or stops silently when *cancel*
        fires. Closing the generator also stops it. In every case the partial
        assistant reply is stored.

        Raises:
            InvalidArgumentError: If *message* is empty.
        """
        session, retrieved, messages = self._prepare_turn(
            session_id, message, repository_id, cancel
        )
        return self._stream_reply(session, retrieved, messages, cancel)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _prepare_turn(
        self,
        session_id: str,
        message: str,
        repository_id: str | None,
        cancel: CancelToken | None = None,
    ) -> tuple[ChatSession, list[RetrievedChunk], list[dict]]:
        if not message or not message.strip():
            raise InvalidArgumentError("message must not be empty")

        session = self._load_session(session_id, repository_id)
        user_message = ChatMessage(
            id=new_uuid(),
            role=MessageRole.USER,
            content=message,
            timestamp=now_utc_iso(),
        )
        self._store.save_message(session.id, user_message)
        session.messages.append(user_message)

        retrieved = self._retrieve(session, message, cancel)
        prompt = build_chat_prompt(message, retrieved, self.max_prompt_length)
        return session, retrieved, build_messages(prompt)

    def _load_session(self, session_id: str, repository_id: str | None) -> ChatSession:
        session = self._store.get_session(session_id)
        if session is None:
            session = ChatSession(id=session_id, repository_id=repository_id)
            self._store.create_session(session)
            logger.debug("Created chat session %s", session_id)
        elif repository_id is not None and session.repository_id is None:
            session.repository_id = repository_id
            self._store.update_session_repository(session_id, repository_id)
        return session

    def _retrieve(
        self,
        session: ChatSession,
        message: str,
        cancel: CancelToken | None,
    ) -> list[RetrievedChunk]:
        if session.repository_id is None:
            return []
        started = time.monotonic()
        try:
            results = self._retriever.hybrid_search(
                session.repository_id,
                message,
                vector_weight=self.vector_weight,
                limit=self.context_chunks,
                cancel=cancel,
            )
        except RepochatError as exc:
            logger.warning(
                "Context retrieval failed for session %s (repository %s): %s",
                session.id,
                session.repository_id,
                exc,
            )
            return []
        logger.debug(
            "Retrieved %d chunks for session %s in %.2fs",
            len(results),
            session.id,
            time.monotonic() - started,
        )
        return [_to_retrieved(r) for r in results]

    def _stream_reply(
        self,
        session: ChatSession,
        retrieved: list[RetrievedChunk],
        messages: list[dict],
        cancel: CancelToken | None,
    ) -> Generator[StreamChunk, None, None]:
        reply = ChatMessage(
            id=new_uuid(),
            role=MessageRole.ASSISTANT,
            content="",
            timestamp=now_utc_iso(),
            retrieved_chunks=retrieved,
        )
        parts: list[str] = []
        last_save = 0.0
        deltas = stream_complete(
            self.model,
            messages,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            timeout=self.timeout,
            cancel=cancel,
        )
        try:
            for delta in deltas:
                if cancel is not None and cancel.cancelled:
                    break
                parts.append(delta)
                reply.content = "".join(parts)
                now = time.monotonic()
                if now - last_save >= _SAVE_INTERVAL:
                    self._store.save_message(session.id, reply)
                    last_save = now
                yield StreamChunk(type="content", content=reply.content, delta=delta)
        except RepochatError as exc:
            logger.warning("Chat stream failed for session %s: %s", session.id, exc)
            yield StreamChunk(type="error", content=str(exc))
            return
        finally:
            deltas.close()
            self._finish_stream(session, reply)

        if cancel is not None and cancel.cancelled:
            logger.info(
                "Chat stream cancelled for session %s after %d chars",
                session.id,
                len(reply.content),
            )
            return
        yield StreamChunk(type="done")

    def _finish_stream(self, session: ChatSession, reply: ChatMessage) -> None:
        """Store the reply as it stands and title the session on its first exchange."""
        if not reply.content:
            return
        reply.tokens_used = count_tokens(self.model, reply.content)
        self._store.save_message(session.id, reply)
        session.messages.append(reply)
        self._maybe_title(session)

    def _maybe_title(self, session: ChatSession) -> None:
        if session.message_count == 2 and session.title == DEFAULT_TITLE:
            session.title = generate_title(session)
            self._store.update_session_title(session.id, session.title)
