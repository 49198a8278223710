"""Chat prompt templates and length-bounded truncation.

The user prompt is: instructions, one block per retrieved snippet, the
question, then answering guidelines. When it exceeds ``max_length`` whole
snippets are dropped from the end and the prompt ends with a truncation
marker; the question and guidelines are kept.
"""

from __future__ import annotations

from collections.abc import Sequence

from repochat.db.models import RetrievedChunk
from repochat.errors import InvalidArgumentError

SYSTEM_PROMPT = """\
You are a helpful AI assistant specialized in code analysis and software development. \
You help developers understand and improve their codebase by analyzing provided code \
snippets and answering questions about them.

Key principles:
- Always base your answers on the provided code snippets
- Reference specific files and line numbers when relevant
- Be precise and accurate in your explanations
- If information is not available in the provided snippets, clearly state this
- Format code blocks with proper syntax highlighting when possible"""

_HEADER = (
    "You are an AI assistant helping developers understand code. "
    "Use ONLY the provided code snippets to answer questions.\n\n"
)

_SNIPPET = "--- File: {path} ({start}-{end})\n{content}\n\n"

_FOOTER = """\
User question: {question}

Guidelines:
- Reference file paths & line numbers when discussing code
- Be concise and focused in your responses
- If you're not certain about something, say "I'm not certain"
- Only use information from the provided code snippets
- Format code references as: filename:line_number"""

CHUNK_BOUNDARY = "\n---"
TRUNCATION_MARKER = "\n\n[Content truncated due to length...]"
WORD_TRUNCATION_MARKER = "... [truncated]"

# Room left for the marker when cutting.
_RESERVE = 100


def truncate_prompt(text: str, max_length: int) -> str:
    """Shorten *text* to at most *max_length* characters.

    Cuts to ``max_length - 100`` first, then back to the last snippet
    boundary (``\\n---``) and appends TRUNCATION_MARKER; without a boundary
    it cuts at the last space past the halfway point, and appends
    WORD_TRUNCATION_MARKER. Text already within the limit is returned as is.

    Raises:
        InvalidArgumentError: If *max_length* cannot hold a marker.
    """
    if len(text) <= max_length:
        return text
    if max_length <= len(TRUNCATION_MARKER):
        raise InvalidArgumentError(
            f"max_length must be > {len(TRUNCATION_MARKER)} (got {max_length})"
        )
    reserve = max(len(TRUNCATION_MARKER), min(_RESERVE, max_length // 2))
    cut = text[: max_length - reserve]

    boundary = cut.rfind(CHUNK_BOUNDARY)
    if boundary > 0:
        return cut[:boundary] + TRUNCATION_MARKER

    space = cut.rfind(" ")
    if space > max_length // 2:
        return cut[:space] + WORD_TRUNCATION_MARKER
    return cut + WORD_TRUNCATION_MARKER


def render_snippets(chunks: Sequence[RetrievedChunk]) -> str:
    return "".join(
        _SNIPPET.format(
            path=c.file_path, start=c.start_line, end=c.end_line, content=c.content
        )
        for c in chunks
    )


def build_chat_prompt(
    question: str,
    chunks: Sequence[RetrievedChunk],
    max_length: int = 12_000,
) -> str:
    """Render the user prompt for *question* with *chunks* as context.

    The result never exceeds *max_length*. Snippets are dropped from the end
    first and TRUNCATION_MARKER closes the prompt; only a question too long
    to fit on its own gets cut itself.
    """
    footer = _FOOTER.format(question=question.strip())
    blocks = [render_snippets([c]) for c in chunks]
    full = _HEADER + "".join(blocks) + footer
    if len(full) <= max_length:
        return full

    room = max_length - len(_HEADER) - len(footer) - len(TRUNCATION_MARKER)
    if room < 0:
        return truncate_prompt(full, max_length)
    kept: list[str] = []
    for block in blocks:
        if len(block) > room:
            break
        kept.append(block)
        room -= len(block)
    return _HEADER + "".join(kept) + footer + TRUNCATION_MARKER


def build_messages(prompt: str, system_prompt: str = SYSTEM_PROMPT) -> list[dict]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": prompt},
    ]
