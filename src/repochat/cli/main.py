"""repochat CLI entry point."""

from __future__ import annotations

import importlib.metadata
import logging
from typing import Annotated

import typer
from rich.logging import RichHandler

from repochat.cli.ask import ask_cmd
from repochat.cli.common import console
from repochat.cli.embed import embed_cmd
from repochat.cli.ingest import import_cmd
from repochat.cli.search import search_cmd
from repochat.cli.status import status_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("repochat")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"repochat {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="repochat",
    help=(
        "repochat — chat with a code repository.\n\n"
        "  repochat import PATH    Chunk a checkout into the local store.\n"
        "  repochat embed REPO_ID  Embed its chunks into the vector index.\n"
        "  repochat ask QUESTION   Answer with retrieved code as context."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log debug output to stderr."),
    ] = False,
) -> None:
    """repochat — chat with a code repository."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    if not verbose:
        logging.getLogger("LiteLLM").setLevel(logging.ERROR)
        logging.getLogger("httpx").setLevel(logging.WARNING)


app.command("import")(import_cmd)
app.command("embed")(embed_cmd)
app.command("status")(status_cmd)
app.command("search")(search_cmd)
app.command("ask")(ask_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed repochat version."""
    typer.echo(f"repochat {_installed_version()}")


if __name__ == "__main__":
    app()
