"""repochat document store (SQLite + FTS5)."""

from repochat.db.connection import Database
from repochat.db.migrations import MIGRATIONS, run_migrations
from repochat.db.store import DocumentStore

__all__ = [
    "Database",
    "DocumentStore",
    "MIGRATIONS",
    "run_migrations",
]
