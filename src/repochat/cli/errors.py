"""repochat rich error messages: actionable feedback for the CLI.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from repochat.cli.errors import err_repository_not_found
    console.print(err_repository_not_found(repo_id))
    raise typer.Exit(1)
"""

from __future__ import annotations


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
        "cohere": "COHERE_API_KEY",
        "voyage": "VOYAGE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "azure": "AZURE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_config(message: str) -> str:
    """Config file or REPOCHAT_* variable failed validation."""
    return (
        f"[red]Error:[/] Invalid configuration: {message}\n"
        "  Fix repochat.yaml (or the REPOCHAT_* environment variable) and retry."
    )


def err_not_a_directory(path: str) -> str:
    return (
        f"[red]Error:[/] Not a directory: '{path}'\n"
        "  Pass the root of a repository checkout."
    )


def err_repository_not_found(repository_id: str) -> str:
    """Repository id unknown to the document store."""
    return (
        f"[red]Error:[/] Repository not found: '{repository_id}'\n"
        "  Run:  repochat status  to list imported repositories."
    )


def err_chunk_not_found(chunk_id: str) -> str:
    return (
        f"[red]Error:[/] Chunk not found: '{chunk_id}'\n"
        "  Run:  repochat search QUERY --repo ID  to find chunk ids."
    )


def err_queue_full(capacity: int) -> str:
    """Embedding queue full under the reject policy."""
    return (
        f"[red]Error:[/] Embedding queue is full ({capacity} jobs).\n"
        "  Retry later, or set pipeline.overflow_policy: fallback in repochat.yaml."
    )


def err_service_unavailable(message: str) -> str:
    """An upstream (embedding provider, LLM, Qdrant) failed."""
    return (
        f"[red]Error:[/] Upstream service unavailable: {message}\n"
        "  Check network access and provider status, then retry."
    )


def err_invalid_argument(message: str) -> str:
    return f"[red]Error:[/] {message}"
