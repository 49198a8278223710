"""Helpers shared by the repochat commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import typer
from rich.console import Console

from repochat.cli.errors import (
    err_chunk_not_found,
    err_config,
    err_invalid_argument,
    err_queue_full,
    err_repository_not_found,
    err_service_unavailable,
)
from repochat.config import load_config
from repochat.errors import (
    ChunkNotFoundError,
    ConfigError,
    InvalidArgumentError,
    QueueFullError,
    RepositoryNotFoundError,
    ServiceUnavailableError,
)
from repochat.service import RepochatService

console = Console()


@contextmanager
def open_service(project_dir: Path) -> Iterator[RepochatService]:
    """Yield a service for *project_dir*; repochat errors become exit code 1."""
    try:
        cfg = load_config(project_dir)
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)

    svc = RepochatService.from_config(cfg, project_dir)
    try:
        yield svc
    except RepositoryNotFoundError as exc:
        console.print(err_repository_not_found(exc.entity_id))
        raise typer.Exit(1)
    except ChunkNotFoundError as exc:
        console.print(err_chunk_not_found(exc.entity_id))
        raise typer.Exit(1)
    except QueueFullError as exc:
        console.print(err_queue_full(exc.capacity))
        raise typer.Exit(1)
    except ServiceUnavailableError as exc:
        console.print(err_service_unavailable(str(exc)))
        raise typer.Exit(1)
    except InvalidArgumentError as exc:
        console.print(err_invalid_argument(str(exc)))
        raise typer.Exit(1)
    finally:
        svc.close()
