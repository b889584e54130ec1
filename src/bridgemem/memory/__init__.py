"""Semantic memory primitives: caching, batch embeddings, vectors, sessions."""

from __future__ import annotations

from .batch import BatchProvider, BatchRequest, BatchRunSettings, run_batches
from .breaker import CircuitBreaker
from .cache import EmbeddingCache, EmbeddingCacheKey
from .concurrency import run_with_concurrency
from .errors import (
    BatchCancelledError,
    BatchEmbeddingError,
    BatchRetryExceededError,
    BatchTimeoutError,
    EmbeddingProviderError,
    VectorDimensionMismatchError,
    VectorStoreError,
    VectorUnavailableError,
)
from .manager import MemoryManager
from .models import (
    Chunk,
    MemoryScope,
    MemoryStatus,
    MissingChunk,
    SessionSyncState,
    batch_custom_id,
)
from .orchestrator import BatchOrchestrator
from .sessions import SessionStateStore, SessionSyncScheduler
from .vector import VectorStore

__all__ = [
    "BatchCancelledError",
    "BatchEmbeddingError",
    "BatchOrchestrator",
    "BatchProvider",
    "BatchRequest",
    "BatchRetryExceededError",
    "BatchRunSettings",
    "BatchTimeoutError",
    "Chunk",
    "CircuitBreaker",
    "EmbeddingCache",
    "EmbeddingCacheKey",
    "EmbeddingProviderError",
    "MemoryManager",
    "MemoryScope",
    "MemoryStatus",
    "MissingChunk",
    "SessionStateStore",
    "SessionSyncScheduler",
    "SessionSyncState",
    "VectorDimensionMismatchError",
    "VectorStore",
    "VectorStoreError",
    "VectorUnavailableError",
    "batch_custom_id",
    "run_batches",
    "run_with_concurrency",
]
