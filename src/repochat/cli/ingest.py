"""repochat import: walk a checkout, chunk supported files, store them."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.progress import Progress, SpinnerColumn, TextColumn

from repochat.cli.common import console, open_service
from repochat.cli.embed import run_embedding
from repochat.cli.errors import err_not_a_directory


def import_cmd(
    path: Annotated[Path, typer.Argument(help="Repository checkout to import.")],
    name: Annotated[
        str | None,
        typer.Option("--name", help="Display name (default: directory name)."),
    ] = None,
    repository_id: Annotated[
        str | None,
        typer.Option("--repo", help="Re-import into this existing repository id."),
    ] = None,
    embed: Annotated[
        bool,
        typer.Option("--embed", help="Embed new and changed chunks after importing."),
    ] = False,
    project: Annotated[
        Path,
        typer.Option("--project", help="Directory holding repochat.yaml and the stores."),
    ] = Path("."),
) -> None:
    """Import (or refresh) a repository checkout."""
    if not path.is_dir():
        console.print(err_not_a_directory(str(path)))
        raise typer.Exit(1)

    with open_service(project) as svc:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
            console=console,
        ) as prog:
            prog.add_task(f"Importing {path}…", total=None)
            result = svc.import_repository(path.resolve(), name=name, repository_id=repository_id)

        console.print(f"  [green]✓[/] Repository [bold]{result.repository_id}[/]")
        console.print(
            f"  [dim]{result.files_added} added, {result.files_updated} updated, "
            f"{result.files_unchanged} unchanged, {result.files_removed} removed, "
            f"{result.files_skipped} skipped — {result.chunks_created:,} chunks[/]"
        )

        if embed:
            run_embedding(svc, result.repository_id)
