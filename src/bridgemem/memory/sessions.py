"""Debounced re-sync scheduling for chat session memory."""

from __future__ import annotations

from contextlib import closing
from pathlib import Path
import sqlite3
import threading
from typing import Callable, Protocol

from bridgemem.core.config import MemorySettings
from bridgemem.core.logging import Logger, get_logger

from .db import connect, ensure_schema, now_ms
from .models import MemoryScope, SessionSyncState

__all__ = [
    "DEFAULT_SESSION_DEBOUNCE",
    "SessionStateStore",
    "SessionSyncScheduler",
    "TimerFactory",
]

DEFAULT_SESSION_DEBOUNCE = 5.0


class _Timer(Protocol):
    daemon: bool

    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[..., _Timer]


class SessionStateStore:
    """Persist per-session indexing progress."""

    def __init__(
        self,
        db_path: str | Path,
        *,
        scope: MemoryScope,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        self._db_path = Path(db_path)
        self._scope = scope
        self._clock_ms = clock_ms
        self._schema_ready = False

    def _connect(self) -> sqlite3.Connection:
        if not self._schema_ready:
            ensure_schema(self._db_path)
            self._schema_ready = True
        return connect(self._db_path)

    def load(self, session_key: str) -> SessionSyncState | None:
        with closing(self._connect()) as conn:
            row = conn.execute(
                """
                SELECT session_key, last_rowid, pending_bytes,
                       pending_messages, updated_at
                FROM ai_memory_session_state
                WHERE bridge_id = ? AND login_id = ? AND agent_id = ?
                  AND session_key = ?
                """,
                (*self._scope.as_params(), session_key),
            ).fetchone()
        if row is None:
            return None
        return SessionSyncState(
            session_key=row["session_key"],
            last_rowid=row["last_rowid"],
            pending_bytes=row["pending_bytes"],
            pending_messages=row["pending_messages"],
            updated_at_ms=row["updated_at"],
        )

    def save(self, state: SessionSyncState) -> SessionSyncState:
        """Upsert ``state``; a zero ``updated_at_ms`` is stamped with now."""

        stamped = state.updated_at_ms or self._clock_ms()
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                INSERT INTO ai_memory_session_state (
                    bridge_id, login_id, agent_id, session_key, last_rowid,
                    pending_bytes, pending_messages, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (bridge_id, login_id, agent_id, session_key)
                DO UPDATE SET
                    last_rowid = excluded.last_rowid,
                    pending_bytes = excluded.pending_bytes,
                    pending_messages = excluded.pending_messages,
                    updated_at = excluded.updated_at
                """,
                (
                    *self._scope.as_params(),
                    state.session_key,
                    state.last_rowid,
                    state.pending_bytes,
                    state.pending_messages,
                    stamped,
                ),
            )
        return SessionSyncState(
            session_key=state.session_key,
            last_rowid=state.last_rowid,
            pending_bytes=state.pending_bytes,
            pending_messages=state.pending_messages,
            updated_at_ms=stamped,
        )

    def reset(self, session_key: str) -> SessionSyncState:
        """Zero the persisted progress for ``session_key``."""

        return self.save(SessionSyncState(session_key=session_key))


class SessionSyncScheduler:
    """Coalesce bursts of session change notifications into one sync.

    Every notification replaces the pending session key and restarts the
    countdown, so only the last key of a burst reaches ``sync``. At most one
    timer is outstanding; a generation counter turns superseded timers that
    already fired into no-ops.
    """

    def __init__(
        self,
        *,
        settings: MemorySettings,
        sync: Callable[[str], None],
        state_store: SessionStateStore | None = None,
        lock: threading.RLock | None = None,
        logger: Logger | None = None,
        timer_factory: TimerFactory = threading.Timer,
        debounce: float | None = None,
    ) -> None:
        self._enabled = settings.session_memory_enabled
        self._sync = sync
        self._store = state_store
        self._lock = lock if lock is not None else threading.RLock()
        self._logger = logger or get_logger(__name__, component="memory-sessions")
        self._timer_factory = timer_factory
        if debounce is None:
            debounce = settings.sync.session_debounce or DEFAULT_SESSION_DEBOUNCE
        self._debounce = debounce
        self._timer: _Timer | None = None
        self._pending_key = ""
        self._generation = 0
        self._dirty = False
        self._closed = False

    @property
    def dirty(self) -> bool:
        with self._lock:
            return self._dirty

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def notify_session_changed(self, session_key: str, force: bool = False) -> bool:
        """Schedule a debounced sync for ``session_key``.

        Returns ``False`` when session memory is disabled and nothing was
        scheduled.
        """

        if not self._enabled:
            return False
        key = session_key.strip()
        if force and key and self._store is not None:
            try:
                self._store.reset(key)
            except sqlite3.Error as exc:
                self._logger.warning(
                    "memory-session-reset-failed",
                    session_key=key,
                    error=str(exc),
                )

        with self._lock:
            if self._closed:
                return False
            self._dirty = True
            self._pending_key = key
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
            timer = self._timer_factory(
                self._debounce,
                self._fire,
                args=(self._generation,),
            )
            timer.daemon = True
            self._timer = timer
            timer.start()
        self._logger.debug(
            "memory-session-sync-scheduled",
            session_key=key,
            delay=self._debounce,
            forced=force,
        )
        return True

    def _fire(self, generation: int) -> None:
        with self._lock:
            if self._closed or generation != self._generation:
                return
            key = self._pending_key
            self._timer = None

        try:
            self._sync(key)
        except Exception as exc:
            self._logger.warning(
                "memory-session-sync-failed",
                session_key=key,
                error=str(exc),
            )
            return

        with self._lock:
            if generation == self._generation:
                self._dirty = False

    def close(self) -> None:
        """Cancel any pending timer; later notifications are ignored."""

        with self._lock:
            self._closed = True
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
