"""LiteLLM client wrapper: batch embeddings, completions, streaming and API key validation.

All embedding and completion calls route through this module. litellm
exceptions are translated to ServiceUnavailableError here and nowhere else.
Retries are off by default (``num_retries=0``): the embedding pipeline
accounts for failures per batch instead of retrying.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import OrderedDict
from collections.abc import Iterator
from dataclasses import dataclass

import litellm

from repochat.cancel import CancelToken
from repochat.errors import ServiceUnavailableError

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    litellm.exceptions.APIError,
    litellm.exceptions.APIConnectionError,
    litellm.exceptions.Timeout,
    litellm.exceptions.RateLimitError,
    litellm.exceptions.ServiceUnavailableError,
    litellm.exceptions.InternalServerError,
    litellm.exceptions.AuthenticationError,
    litellm.exceptions.BadRequestError,
)


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
}


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = model.split("/")[0].lower() if "/" in model else "openai"
    env_var = _PROVIDER_ENV.get(provider, f"{provider.upper()}_API_KEY")

    if env_var is None:
        return

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


# ------------------------------------------------------------------
# Rate limiting
# ------------------------------------------------------------------


class RateLimiter:
    """Enforce a minimum interval between calls across threads.

    Args:
        requests_per_second: Upper bound on call rate.
    """

    def __init__(self, requests_per_second: float) -> None:
        self._interval = 1.0 / requests_per_second
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def acquire(self, cancel: CancelToken | None = None) -> bool:
        """Block until the next slot. Returns False if *cancel* fired while waiting."""
        with self._lock:
            now = time.monotonic()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self._interval
        delay = slot - time.monotonic()
        if delay <= 0:
            return not (cancel and cancel.cancelled)
        if cancel is not None:
            return not cancel.wait(delay)
        time.sleep(delay)
        return True


# ------------------------------------------------------------------
# Embeddings
# ------------------------------------------------------------------


def embed_batch(
    model: str,
    texts: list[str],
    *,
    timeout: float,
    num_retries: int = 0,
) -> list[list[float]]:
    """Embed *texts* in one provider call; vectors are returned in input order.

    Args:
        model: LiteLLM embedding model string (provider/model format).
        texts: Non-empty list of texts.
        timeout: Per-call timeout in seconds.
        num_retries: Retries on transient errors.

    Raises:
        ServiceUnavailableError: On provider failure, or when the provider
            returns a different number of vectors than inputs.
    """
    try:
        response = litellm.embedding(
            model=model,
            input=texts,
            timeout=timeout,
            num_retries=num_retries,
        )
    except _TRANSIENT_ERRORS as exc:
        raise ServiceUnavailableError("embed", model, str(exc)) from exc

    items = list(response.data)
    if len(items) != len(texts):
        raise ServiceUnavailableError(
            "embed", model, f"expected {len(texts)} embeddings, got {len(items)}"
        )
    # Providers may return items out of order; "index" is authoritative.
    items.sort(key=lambda item: _field(item, "index") or 0)
    return [list(_field(item, "embedding")) for item in items]


def _field(item: object, name: str):
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


class Embedder:
    """Rate-limited embedding client with a small LRU cache for query strings.

    Args:
        model: LiteLLM embedding model string.
        timeout: Per-call timeout in seconds.
        requests_per_second: Provider call rate limit.
        cache_size: Number of query embeddings kept (0 disables the cache).
    """

    def __init__(
        self,
        model: str,
        *,
        timeout: float = 60.0,
        requests_per_second: float = 10.0,
        cache_size: int = 256,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self._limiter = RateLimiter(requests_per_second)
        self._cache: OrderedDict[str, list[float]] = OrderedDict()
        self._cache_size = cache_size
        self._cache_lock = threading.Lock()

    def embed_batch(
        self, texts: list[str], cancel: CancelToken | None = None
    ) -> list[list[float]]:
        """Embed *texts* with one provider call. Returns [] if cancelled before the call."""
        if not texts:
            return []
        if not self._limiter.acquire(cancel):
            return []
        return embed_batch(self.model, texts, timeout=self.timeout)

    def embed_query(self, text: str, cancel: CancelToken | None = None) -> list[float] | None:
        """Embed a single query string, using the cache. None if cancelled."""
        with self._cache_lock:
            cached = self._cache.get(text)
            if cached is not None:
                self._cache.move_to_end(text)
                return cached
        vectors = self.embed_batch([text], cancel)
        if not vectors:
            return None
        vector = vectors[0]
        if self._cache_size > 0:
            with self._cache_lock:
                self._cache[text] = vector
                while len(self._cache) > self._cache_size:
                    self._cache.popitem(last=False)
        return vector


# ------------------------------------------------------------------
# Completions
# ------------------------------------------------------------------


@dataclass
class Completion:
    content: str
    total_tokens: int | None = None


def complete(
    model: str,
    messages: list[dict],
    *,
    max_tokens: int = 1000,
    temperature: float = 0.7,
    timeout: float = 30.0,
    num_retries: int = 0,
) -> Completion:
    """Call litellm.completion() and return the first choice's text plus usage.

    Raises:
        ServiceUnavailableError: On provider failure.
    """
    try:
        response = litellm.completion(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            timeout=timeout,
            num_retries=num_retries,
        )
    except _TRANSIENT_ERRORS as exc:
        raise ServiceUnavailableError("complete", model, str(exc)) from exc
    usage = getattr(response, "usage", None)
    total = getattr(usage, "total_tokens", None) if usage is not None else None
    return Completion(
        content=response.choices[0].message.content or "",
        total_tokens=int(total) if isinstance(total, int) else None,
    )


def stream_complete(
    model: str,
    messages: list[dict],
    *,
    max_tokens: int = 1000,
    temperature: float = 0.7,
    timeout: float = 30.0,
    cancel: CancelToken | None = None,
) -> Iterator[str]:
    """Yield text deltas from a streamed completion.

    Stops without error once *cancel* fires; the upstream stream is closed
    whenever the generator finishes, fails or is closed by the consumer.

    Raises:
        ServiceUnavailableError: On provider failure (before or during streaming).
    """
    try:
        stream = litellm.completion(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            timeout=timeout,
            stream=True,
        )
    except _TRANSIENT_ERRORS as exc:
        raise ServiceUnavailableError("stream", model, str(exc)) from exc

    try:
        for part in stream:
            if cancel is not None and cancel.cancelled:
                logger.debug("Completion stream cancelled")
                return
            choices = getattr(part, "choices", None) or []
            if not choices:
                continue
            delta = getattr(choices[0].delta, "content", None)
            if delta:
                yield delta
    except _TRANSIENT_ERRORS as exc:
        raise ServiceUnavailableError("stream", model, str(exc)) from exc
    finally:
        close = getattr(stream, "close", None)
        if callable(close):
            close()


def count_tokens(model: str, text: str) -> int:
    """Count tokens in *text* for *model* using LiteLLM's provider-aware counter.

    Falls back to character-based approximation (4 chars ≈ 1 token) if the model
    is not supported by litellm.token_counter().
    """
    try:
        return litellm.token_counter(model=model, text=text)
    except Exception:
        return max(1, len(text) // 4)
