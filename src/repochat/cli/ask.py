"""repochat ask: ask a question about a repository and stream the answer."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from repochat.cancel import CancelToken
from repochat.cli.common import console, open_service
from repochat.cli.errors import err_no_api_key
from repochat.ids import new_uuid
from repochat.rag.llm_client import validate_api_key


def ask_cmd(
    question: Annotated[str, typer.Argument(help="Question about the code.")],
    repository_id: Annotated[
        str | None,
        typer.Option("--repo", help="Repository to retrieve context from."),
    ] = None,
    session_id: Annotated[
        str | None,
        typer.Option("--session", help="Continue this chat session (default: a new one)."),
    ] = None,
    timeout: Annotated[
        float | None,
        typer.Option("--timeout", help="Stop streaming after this many seconds."),
    ] = None,
    project: Annotated[
        Path,
        typer.Option("--project", help="Directory holding repochat.yaml and the stores."),
    ] = Path("."),
) -> None:
    """Answer a question using retrieved code as context; the reply is streamed."""
    with open_service(project) as svc:
        for model in {svc.config.chat.model, svc.config.embedding.model}:
            try:
                validate_api_key(model)
            except EnvironmentError:
                console.print(err_no_api_key(model.split("/")[0] if "/" in model else "openai"))
                raise typer.Exit(1)

        session = session_id or new_uuid()
        cancel = CancelToken(timeout=timeout)
        stream = svc.process_message_streaming(
            session, question, cancel=cancel, repository_id=repository_id
        )
        failed = False
        try:
            for item in stream:
                if item.type == "content":
                    console.print(item.delta, end="", markup=False, highlight=False)
                elif item.type == "error":
                    console.print(f"\n[red]Error:[/] {item.content}")
                    failed = True
        except KeyboardInterrupt:
            cancel.cancel()
            console.print("\n[dim]Cancelled.[/]")
        finally:
            stream.close()

        console.print(f"\n[dim]Session: {session}[/]")
        if failed:
            raise typer.Exit(1)
