"""Content-addressed embedding cache backed by SQLite."""

from __future__ import annotations

from contextlib import closing, nullcontext
from dataclasses import dataclass
import json
from pathlib import Path
import sqlite3
import threading
from typing import Callable, Iterable, Sequence

from bridgemem.core.logging import Logger, get_logger

from .db import connect, ensure_schema, now_ms
from .models import MemoryScope

__all__ = ["EmbeddingCache", "EmbeddingCacheKey", "LOOKUP_BATCH_SIZE"]

LOOKUP_BATCH_SIZE = 400

_KEY_CLAUSE = (
    "bridge_id = ? AND login_id = ? AND agent_id = ? "
    "AND provider = ? AND model = ? AND provider_key = ?"
)


@dataclass(frozen=True, slots=True)
class EmbeddingCacheKey:
    """Namespace shared by every cache row of one scope and endpoint."""

    scope: MemoryScope
    provider: str
    model: str
    provider_key: str

    def as_params(self) -> tuple[str, ...]:
        return (*self.scope.as_params(), self.provider, self.model, self.provider_key)


def _parse_embedding(raw: str | None) -> list[float]:
    if not raw:
        return []
    try:
        values = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(values, list):
        return []
    return [float(value) for value in values]


class EmbeddingCache:
    """Memoize embeddings by ``(scope, provider, model, provider_key, hash)``.

    Rows are upserted on every store so ``updated_at`` tracks recency, which
    :meth:`prune` uses to evict the oldest entries first. SQLite errors are
    propagated unchanged.
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        lock: threading.RLock | None = None,
        logger: Logger | None = None,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        self._db_path = Path(db_path)
        self._lock = lock
        self._clock_ms = clock_ms
        self._logger = logger or get_logger(__name__, component="memory-cache")
        self._schema_ready = False

    def _guard(self):
        return self._lock if self._lock is not None else nullcontext()

    def _connect(self) -> sqlite3.Connection:
        if not self._schema_ready:
            ensure_schema(self._db_path)
            self._schema_ready = True
        return connect(self._db_path)

    def lookup(
        self,
        key: EmbeddingCacheKey,
        chunk_hash: str,
    ) -> list[float] | None:
        """Return the cached embedding for ``chunk_hash`` or ``None``."""

        with self._guard(), closing(self._connect()) as conn:
            row = conn.execute(
                f"SELECT embedding FROM ai_memory_embedding_cache "
                f"WHERE {_KEY_CLAUSE} AND hash = ?",
                (*key.as_params(), chunk_hash),
            ).fetchone()
        if row is None:
            return None
        embedding = _parse_embedding(row["embedding"])
        return embedding or None

    def lookup_many(
        self,
        key: EmbeddingCacheKey,
        hashes: Iterable[str],
    ) -> dict[str, list[float]]:
        """Return cached embeddings for every known hash in ``hashes``."""

        unique = [value for value in dict.fromkeys(hashes) if value]
        found: dict[str, list[float]] = {}
        if not unique:
            return found

        with self._guard(), closing(self._connect()) as conn:
            for start in range(0, len(unique), LOOKUP_BATCH_SIZE):
                batch = unique[start : start + LOOKUP_BATCH_SIZE]
                placeholders = ", ".join("?" for _ in batch)
                rows = conn.execute(
                    f"SELECT hash, embedding FROM ai_memory_embedding_cache "
                    f"WHERE {_KEY_CLAUSE} AND hash IN ({placeholders})",
                    (*key.as_params(), *batch),
                ).fetchall()
                for row in rows:
                    embedding = _parse_embedding(row["embedding"])
                    if embedding:
                        found[row["hash"]] = embedding
        return found

    def store(
        self,
        key: EmbeddingCacheKey,
        chunk_hash: str,
        embedding: Sequence[float],
        *,
        now_ms: int | None = None,
    ) -> None:
        """Upsert ``embedding`` for ``chunk_hash``; empty vectors are ignored."""

        if not embedding:
            return
        values = [float(value) for value in embedding]
        timestamp = self._clock_ms() if now_ms is None else now_ms
        with self._guard(), closing(self._connect()) as conn, conn:
            conn.execute(
                """
                INSERT INTO ai_memory_embedding_cache (
                    bridge_id, login_id, agent_id, provider, model,
                    provider_key, hash, embedding, dims, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (
                    bridge_id, login_id, agent_id, provider, model,
                    provider_key, hash
                )
                DO UPDATE SET
                    embedding = excluded.embedding,
                    dims = excluded.dims,
                    updated_at = excluded.updated_at
                """,
                (
                    *key.as_params(),
                    chunk_hash,
                    json.dumps(values),
                    len(values),
                    timestamp,
                ),
            )

    def count(self, key: EmbeddingCacheKey) -> int:
        """Return the number of rows stored under ``key``."""

        with self._guard(), closing(self._connect()) as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM ai_memory_embedding_cache "
                f"WHERE {_KEY_CLAUSE}",
                key.as_params(),
            ).fetchone()
        return int(row["total"])

    def prune(self, key: EmbeddingCacheKey, max_entries: int) -> int:
        """Delete the oldest rows beyond ``max_entries``; return removed count.

        A non-positive ``max_entries`` disables pruning.
        """

        if max_entries <= 0:
            return 0
        with self._guard(), closing(self._connect()) as conn, conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM ai_memory_embedding_cache "
                f"WHERE {_KEY_CLAUSE}",
                key.as_params(),
            ).fetchone()
            overflow = int(row["total"]) - max_entries
            if overflow <= 0:
                return 0
            conn.execute(
                f"""
                DELETE FROM ai_memory_embedding_cache
                WHERE rowid IN (
                    SELECT rowid FROM ai_memory_embedding_cache
                    WHERE {_KEY_CLAUSE}
                    ORDER BY updated_at ASC
                    LIMIT ?
                )
                """,
                (*key.as_params(), overflow),
            )
        self._logger.debug(
            "memory-cache-pruned",
            provider=key.provider,
            model=key.model,
            removed=overflow,
            max_entries=max_entries,
        )
        return overflow
