"""repochat embed: embed a repository's pending chunks in the foreground."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Annotated

import typer
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from repochat.cli.common import console, open_service
from repochat.cli.errors import err_no_api_key
from repochat.db.models import EmbeddingState
from repochat.rag.llm_client import validate_api_key
from repochat.service import RepochatService

_POLL_SECONDS = 0.25


def embed_cmd(
    repository_id: Annotated[str, typer.Argument(help="Repository id to embed.")],
    project: Annotated[
        Path,
        typer.Option("--project", help="Directory holding repochat.yaml and the stores."),
    ] = Path("."),
) -> None:
    """Embed all chunks of a repository that have no vector yet."""
    with open_service(project) as svc:
        run_embedding(svc, repository_id)


def run_embedding(svc: RepochatService, repository_id: str) -> None:
    """Run one embedding pass with a progress bar; exit 1 if the run failed."""
    model = svc.config.embedding.model
    try:
        validate_api_key(model)
    except EnvironmentError:
        console.print(err_no_api_key(model.split("/")[0] if "/" in model else "openai"))
        raise typer.Exit(1)

    svc.start()
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        transient=True,
        console=console,
    ) as prog:
        task = prog.add_task(f"Embedding with {model}…", total=100)
        status = svc.queue_repository(repository_id).status
        while not status.state.is_terminal:
            time.sleep(_POLL_SECONDS)
            status = svc.get_embedding_status(repository_id)
            prog.update(task, completed=status.progress)

    if status.state is EmbeddingState.FAILED:
        console.print(f"  [red]✗[/] Embedding failed: {status.error}")
        raise typer.Exit(1)
    console.print(
        f"  [green]✓[/] Embedded {status.processed_chunks:,} chunks "
        f"({status.skipped_chunks:,} reused, {status.failed_chunks:,} failed)"
    )
