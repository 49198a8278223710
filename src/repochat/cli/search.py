"""repochat search: vector, text or hybrid search over one repository or all of them."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Annotated

import typer
from rich.table import Table

from repochat.cli.common import console, open_service
from repochat.cli.errors import err_no_api_key
from repochat.rag.llm_client import validate_api_key
from repochat.rag.retriever import SearchResult


class SearchMode(str, Enum):
    hybrid = "hybrid"
    vector = "vector"
    text = "text"


def search_cmd(
    query: Annotated[str, typer.Argument(help="Search query.")],
    repository_id: Annotated[
        str | None,
        typer.Option("--repo", help="Repository id to search (default: all repositories)."),
    ] = None,
    mode: Annotated[
        SearchMode,
        typer.Option("--mode", help="hybrid, vector or text."),
    ] = SearchMode.hybrid,
    limit: Annotated[
        int | None,
        typer.Option("--limit", "-n", help="Maximum results (1-100)."),
    ] = None,
    weight: Annotated[
        float | None,
        typer.Option("--weight", help="Vector weight for hybrid mode (0-1)."),
    ] = None,
    similar_to: Annotated[
        str | None,
        typer.Option("--similar-to", help="Find chunks similar to this chunk id instead."),
    ] = None,
    project: Annotated[
        Path,
        typer.Option("--project", help="Directory holding repochat.yaml and the stores."),
    ] = Path("."),
) -> None:
    """Search code chunks of one repository, or of every imported one."""
    with open_service(project) as svc:
        if mode is not SearchMode.text or similar_to:
            model = svc.config.embedding.model
            try:
                validate_api_key(model)
            except EnvironmentError:
                console.print(err_no_api_key(model.split("/")[0] if "/" in model else "openai"))
                raise typer.Exit(1)

        if similar_to:
            results = svc.find_similar_chunks(similar_to, limit)
        elif mode is SearchMode.vector:
            results = svc.vector_search(repository_id, query, limit)
        elif mode is SearchMode.text:
            results = svc.text_search(repository_id, query, limit)
        else:
            results = svc.hybrid_search(repository_id, query, weight, limit)

    _show_results(results)


def _show_results(results: list[SearchResult]) -> None:
    if not results:
        console.print("[yellow]No matching chunks.[/]")
        return

    table = Table(show_header=True, box=None, padding=(0, 1))
    table.add_column("Score", justify="right")
    table.add_column("Location", style="bold")
    table.add_column("Chunk", style="dim")
    table.add_column("Match")

    for r in results:
        table.add_row(
            f"{r.score:.3f}",
            f"{r.chunk.file_path}:{r.chunk.start_line}-{r.chunk.end_line}",
            r.chunk.id,
            r.highlight.replace("\n", " ")[:80],
        )
    console.print(table)
