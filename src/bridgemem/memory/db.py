"""SQLite connection helpers for the memory tables."""

from __future__ import annotations

from contextlib import closing
from pathlib import Path
import sqlite3
import time

from .resources import read_schema

__all__ = ["connect", "ensure_schema", "now_ms"]


def now_ms() -> int:
    """Return the current wall-clock time in Unix milliseconds."""

    return time.time_ns() // 1_000_000


def connect(db_path: str | Path) -> sqlite3.Connection:
    """Open a connection to the memory database."""

    connection = sqlite3.connect(db_path)
    connection.row_factory = sqlite3.Row
    return connection


def ensure_schema(db_path: str | Path) -> None:
    """Create the memory tables when missing."""

    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with closing(connect(path)) as conn, conn:
        conn.executescript(read_schema())
