"""repochat status: list repositories, or show one repository's embedding status."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.panel import Panel
from rich.table import Table

from repochat.cli.common import console, open_service
from repochat.db.models import EmbeddingState
from repochat.pipeline.embedding import ProcessingStats
from repochat.service import RepochatService

_STATE_STYLE = {
    EmbeddingState.PENDING: "[yellow]pending[/]",
    EmbeddingState.PROCESSING: "[cyan]processing[/]",
    EmbeddingState.COMPLETED: "[green]completed[/]",
    EmbeddingState.FAILED: "[red]failed[/]",
}


def status_cmd(
    repository_id: Annotated[
        str | None,
        typer.Argument(help="Repository id; omit to list all repositories."),
    ] = None,
    project: Annotated[
        Path,
        typer.Option("--project", help="Directory holding repochat.yaml and the stores."),
    ] = Path("."),
) -> None:
    """Show imported repositories and their embedding status."""
    with open_service(project) as svc:
        if repository_id is None:
            _show_repositories(svc)
        else:
            _show_repository(svc.get_processing_stats(repository_id), svc)


# ---------------------------------------------------------------------------
# Renderers
# ---------------------------------------------------------------------------


def _show_repositories(svc: RepochatService) -> None:
    repos = svc.store.list_repositories()
    if not repos:
        console.print(
            Panel(
                "[dim]No repositories imported yet.[/]\n"
                "  Run:  repochat import PATH",
                title="[bold]Repositories[/]",
                expand=False,
            )
        )
        return

    table = Table(show_header=True, box=None, padding=(0, 1))
    table.add_column("ID", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Chunks", justify="right")
    table.add_column("Embedding")

    for repo in repos:
        table.add_row(
            repo.id,
            repo.name,
            f"{svc.store.count_chunks(repo.id):,}",
            _STATE_STYLE[repo.embedding_status],
        )
    console.print(Panel(table, title=f"[bold]Repositories[/] [dim]({len(repos)})[/]", expand=False))


def _show_repository(stats: ProcessingStats, svc: RepochatService) -> None:
    repo = svc.store.get_repository(stats.repository_id)
    lines = [
        f"Repository: [bold]{repo.name if repo else stats.repository_id}[/]",
        f"Path:       [dim]{repo.path if repo else '?'}[/]",
        f"Embedding:  {_STATE_STYLE[stats.state]}  ({stats.progress}%)",
        f"Chunks:     [bold]{stats.total_chunks:,}[/]  |  "
        f"Embedded: [bold]{stats.embedded_chunks:,}[/]  |  "
        f"Pending: [bold]{stats.pending_chunks:,}[/]",
    ]
    if stats.languages:
        langs = ", ".join(f"{lang} ({n})" for lang, n in stats.languages.items())
        lines.append(f"Languages:  {langs}")
    if repo and repo.embedding_error:
        lines.append(f"[red]Error:[/] {repo.embedding_error}")

    console.print(Panel("\n".join(lines), title="[bold]Repository[/]", expand=False))
