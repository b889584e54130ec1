"""Similarity store backed by the SQLite ``vec0`` extension."""

from __future__ import annotations

from contextlib import nullcontext
from pathlib import Path
import re
import sqlite3
import threading
from typing import Iterable, Sequence

import numpy as np

from bridgemem.core.config import VectorSettings
from bridgemem.core.logging import Logger, get_logger

from .errors import (
    VectorDimensionMismatchError,
    VectorStoreError,
    VectorUnavailableError,
)

__all__ = ["VECTOR_TABLE", "VectorStore", "vector_to_blob"]

VECTOR_TABLE = "ai_memory_chunks_vec"

_DIMS_PATTERN = re.compile(r"FLOAT\s*\[\s*(\d+)\s*\]", re.IGNORECASE)


def vector_to_blob(values: Sequence[float]) -> bytes:
    """Pack ``values`` as little-endian float32, four bytes per dimension.

    Example:
        >>> len(vector_to_blob([0.5, 1.0, -2.0]))
        12
    """

    if len(values) == 0:
        return b""
    return np.asarray(values, dtype="<f4").tobytes()


class VectorStore:
    """Lazily connected wrapper around a ``vec0`` virtual table.

    The store retains one dedicated connection because the extension must be
    loaded per connection. A failed extension load is sticky: every later call
    raises :class:`VectorUnavailableError` without touching SQLite again.
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        settings: VectorSettings,
        lock: threading.RLock | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._db_path = Path(db_path)
        self._settings = settings
        self._lock = lock
        self._logger = logger or get_logger(__name__, component="memory-vector")
        self._conn: sqlite3.Connection | None = None
        self._ready: bool | None = None
        self._last_error: str | None = None
        self._dims: int | None = None

    def _guard(self):
        return self._lock if self._lock is not None else nullcontext()

    @property
    def available(self) -> bool | None:
        """``None`` until checked, then whether the extension is usable."""

        if not self._settings.enabled:
            return False
        return self._ready

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def dims(self) -> int | None:
        return self._dims

    def ensure_connection(self) -> bool:
        """Open the retained connection and load the extension once."""

        with self._guard():
            if self._ready is not None:
                return self._ready
            if not self._settings.enabled:
                self._mark_failed("disabled by configuration")
                return False

            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                conn = sqlite3.connect(self._db_path, check_same_thread=False)
            except sqlite3.Error as exc:
                self._mark_failed(f"open failed: {exc}")
                return False

            extension = self._settings.extension_path
            if extension:
                try:
                    conn.enable_load_extension(True)
                except (AttributeError, sqlite3.Error):
                    self._logger.debug(
                        "memory-vector-enable-extension-unsupported",
                        extension=extension,
                    )
                try:
                    conn.load_extension(extension)
                except (AttributeError, sqlite3.Error) as exc:
                    conn.close()
                    self._mark_failed(f"load failed: {exc}")
                    return False
                try:
                    conn.enable_load_extension(False)
                except (AttributeError, sqlite3.Error):
                    pass

            # A blank path relies on a compiled-in vec0; confirm it is there.
            try:
                conn.execute("SELECT vec_version()").fetchone()
            except sqlite3.Error as exc:
                conn.close()
                self._mark_failed(f"vec0 unavailable: {exc}")
                return False

            self._conn = conn
            self._ready = True
            self._dims = self._table_dims(conn)
            self._logger.info(
                "memory-vector-ready",
                extension=extension or None,
                dims=self._dims,
            )
            return True

    def _mark_failed(self, reason: str) -> None:
        self._ready = False
        self._last_error = reason
        self._logger.warning("memory-vector-unavailable", reason=reason)

    def _require(self) -> sqlite3.Connection:
        if not self.ensure_connection() or self._conn is None:
            raise VectorUnavailableError(self._last_error or "not connected")
        return self._conn

    @staticmethod
    def _table_dims(conn: sqlite3.Connection) -> int | None:
        row = conn.execute(
            "SELECT sql FROM sqlite_master WHERE name = ?",
            (VECTOR_TABLE,),
        ).fetchone()
        if row is None or not row[0]:
            return None
        match = _DIMS_PATTERN.search(row[0])
        return int(match.group(1)) if match else None

    def ensure_table(self, dims: int) -> None:
        """Create the virtual table for ``dims`` if it does not exist.

        Raises:
            VectorUnavailableError: If the extension could not be loaded.
            VectorDimensionMismatchError: If the table exists with other dims.
            VectorStoreError: If SQLite rejects the statement.
        """

        if dims <= 0:
            raise ValueError("dims must be >= 1")
        with self._guard():
            conn = self._require()
            if self._dims is not None:
                if self._dims != dims:
                    raise VectorDimensionMismatchError(self._dims, dims)
                return
            try:
                with conn:
                    conn.execute(
                        f"CREATE VIRTUAL TABLE IF NOT EXISTS {VECTOR_TABLE} "
                        f"USING vec0(id TEXT PRIMARY KEY, embedding FLOAT[{dims}]);"
                    )
            except sqlite3.Error as exc:
                self._last_error = str(exc)
                raise VectorStoreError(f"vector table create failed: {exc}") from exc
            self._dims = self._table_dims(conn) or dims

    def upsert(self, chunk_id: str, embedding: Sequence[float]) -> None:
        """Replace the vector stored under ``chunk_id``."""

        with self._guard():
            conn = self._require()
            self.ensure_table(len(embedding))
            try:
                with conn:
                    conn.execute(
                        f"DELETE FROM {VECTOR_TABLE} WHERE id = ?",
                        (chunk_id,),
                    )
                    conn.execute(
                        f"INSERT INTO {VECTOR_TABLE} (id, embedding) VALUES (?, ?)",
                        (chunk_id, vector_to_blob(embedding)),
                    )
            except sqlite3.Error as exc:
                raise VectorStoreError(f"vector upsert failed: {exc}") from exc

    def query(
        self,
        embedding: Sequence[float],
        limit: int,
    ) -> list[tuple[str, float]]:
        """Return ``(id, cosine distance)`` pairs nearest to ``embedding``."""

        if len(embedding) == 0 or limit <= 0:
            return []
        with self._guard():
            conn = self._require()
            if self._dims is None:
                return []
            if self._dims != len(embedding):
                raise VectorDimensionMismatchError(self._dims, len(embedding))
            try:
                rows = conn.execute(
                    f"SELECT id, vec_distance_cosine(embedding, ?) AS dist "
                    f"FROM {VECTOR_TABLE} ORDER BY dist ASC LIMIT ?",
                    (vector_to_blob(embedding), limit),
                ).fetchall()
            except sqlite3.Error as exc:
                raise VectorStoreError(f"vector query failed: {exc}") from exc
        return [(str(row[0]), float(row[1])) for row in rows]

    def delete_by_ids(self, ids: Iterable[str]) -> int:
        """Delete vectors for ``ids``; blank ids are skipped."""

        targets = [value for value in ids if value]
        with self._guard():
            conn = self._require()
            if not targets or self._dims is None:
                return 0
            try:
                with conn:
                    for chunk_id in targets:
                        conn.execute(
                            f"DELETE FROM {VECTOR_TABLE} WHERE id = ?",
                            (chunk_id,),
                        )
            except sqlite3.Error as exc:
                raise VectorStoreError(f"vector delete failed: {exc}") from exc
        return len(targets)

    def drop_table(self) -> None:
        """Drop the virtual table so it can be recreated with new dims."""

        with self._guard():
            conn = self._require()
            try:
                with conn:
                    conn.execute(f"DROP TABLE IF EXISTS {VECTOR_TABLE}")
            except sqlite3.Error as exc:
                raise VectorStoreError(f"vector table drop failed: {exc}") from exc
            self._logger.info("memory-vector-table-dropped", dims=self._dims)
            self._dims = None

    def close(self) -> None:
        with self._guard():
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            if self._ready:
                self._ready = None
