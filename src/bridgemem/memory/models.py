"""Data models shared by the memory subsystem."""

from __future__ import annotations

from dataclasses import dataclass
import enum
import hashlib
from typing import Any, Mapping

__all__ = [
    "BATCH_FAILURE_LIMIT",
    "BATCH_MAX_REQUESTS",
    "BatchJob",
    "BatchJobState",
    "Chunk",
    "CircuitBreakerState",
    "MemoryScope",
    "MemoryStatus",
    "MissingChunk",
    "SessionSyncState",
    "batch_custom_id",
]

BATCH_FAILURE_LIMIT = 2
BATCH_MAX_REQUESTS = 50_000


@dataclass(frozen=True, slots=True)
class MemoryScope:
    """Identify the ``(bridge, login, agent)`` tuple owning memory rows."""

    bridge_id: str
    login_id: str
    agent_id: str

    def __post_init__(self) -> None:
        for name in ("bridge_id", "login_id", "agent_id"):
            value = getattr(self, name).strip()
            if not value:
                raise ValueError(f"{name} cannot be blank")
            object.__setattr__(self, name, value)

    def as_params(self) -> tuple[str, str, str]:
        """Return the scope as SQL parameters."""

        return (self.bridge_id, self.login_id, self.agent_id)


@dataclass(frozen=True, slots=True)
class Chunk:
    """Bounded span of source text that is the unit of embedding."""

    text: str
    hash: str
    start_line: int
    end_line: int
    source_id: str = ""
    rel_path: str = ""


@dataclass(frozen=True, slots=True)
class MissingChunk:
    """Chunk lacking an embedding together with its position in the input."""

    index: int
    chunk: Chunk


def batch_custom_id(
    source: str,
    rel_path: str,
    chunk_hash: str,
    start_line: int,
    end_line: int,
    index: int,
) -> str:
    """Return the deterministic identifier correlating a request to its row.

    Example:
        >>> len(batch_custom_id("memory", "notes.md", "abc", 1, 4, 0))
        64
    """

    payload = f"{source}:{rel_path}:{start_line}:{end_line}:{chunk_hash}:{index}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class BatchJobState(str, enum.Enum):
    """Normalized lifecycle states of a provider batch job."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not BatchJobState.PROCESSING

    @property
    def failed(self) -> bool:
        return self in {
            BatchJobState.FAILED,
            BatchJobState.EXPIRED,
            BatchJobState.CANCELLED,
        }


@dataclass(frozen=True, slots=True)
class BatchJob:
    """Transient view of a provider batch job."""

    id: str
    state: BatchJobState
    raw_state: str = ""
    output_file: str | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class CircuitBreakerState:
    """Snapshot of the batch circuit breaker."""

    batch_enabled: bool
    batch_failures: int
    batch_last_error: str | None
    batch_last_provider: str | None


@dataclass(frozen=True, slots=True)
class SessionSyncState:
    """Persisted progress of indexing one chat session."""

    session_key: str
    last_rowid: int = 0
    pending_bytes: int = 0
    pending_messages: int = 0
    updated_at_ms: int = 0


@dataclass(frozen=True, slots=True)
class MemoryStatus:
    """Status snapshot for one memory manager."""

    provider: str
    model: str
    sources: tuple[str, ...]
    breaker: CircuitBreakerState
    vector_enabled: bool
    vector_available: bool | None
    vector_error: str | None
    vector_dims: int | None
    cache_enabled: bool
    cache_entries: int
    sessions_dirty: bool

    def to_mapping(self) -> Mapping[str, Any]:
        """Return a JSON-serializable mapping of the snapshot."""

        return {
            "provider": self.provider,
            "model": self.model,
            "sources": list(self.sources),
            "batch": {
                "enabled": self.breaker.batch_enabled,
                "failures": self.breaker.batch_failures,
                "limit": BATCH_FAILURE_LIMIT,
                "last_error": self.breaker.batch_last_error,
                "last_provider": self.breaker.batch_last_provider,
            },
            "vector": {
                "enabled": self.vector_enabled,
                "available": self.vector_available,
                "error": self.vector_error,
                "dims": self.vector_dims,
            },
            "cache": {
                "enabled": self.cache_enabled,
                "entries": self.cache_entries,
            },
            "sessions_dirty": self.sessions_dirty,
        }
