"""Per-scope facade composing the memory components."""

from __future__ import annotations

from pathlib import Path
import threading
import time
from typing import Callable, Mapping, Sequence

import httpx

from bridgemem.core.config import MemorySettings
from bridgemem.core.logging import Logger, get_logger

from .batch import BatchProvider, BatchRunSettings
from .batch.gemini import GeminiBatchProvider
from .batch.openai import OpenAIBatchProvider
from .breaker import CircuitBreaker
from .cache import EmbeddingCache, EmbeddingCacheKey
from .errors import BatchCancelledError, BatchEmbeddingError, VectorUnavailableError
from .models import (
    Chunk,
    MemoryScope,
    MemoryStatus,
    MissingChunk,
    batch_custom_id,
)
from .orchestrator import BatchOrchestrator
from .providers import (
    EmbeddingsProvider,
    EmbedRequestOptions,
    ProviderRegistry,
    create_default_provider_registry,
)
from .sessions import SessionStateStore, SessionSyncScheduler, TimerFactory
from .vector import VectorStore

__all__ = ["MemoryManager"]

_BATCH_PROVIDER_TYPES: Mapping[str, type] = {
    "openai": OpenAIBatchProvider,
    "gemini": GeminiBatchProvider,
}


class MemoryManager:
    """Own the cache, breaker, batch orchestrator, vector store and scheduler.

    One instance serves one ``(bridge, login, agent)`` scope. All mutable
    state lives on the instance and is guarded by a single re-entrant lock
    shared with every component.

    Example:
        >>> manager = MemoryManager(  # doctest: +SKIP
        ...     db_path="memory.db",
        ...     scope=MemoryScope("bridge", "login", "agent"),
        ...     settings=MemorySettings(),
        ... )
        >>> manager.embed_chunks(chunks, source="memory", rel_path="notes.md")  # doctest: +SKIP
    """

    def __init__(
        self,
        *,
        db_path: str | Path,
        scope: MemoryScope,
        settings: MemorySettings,
        sync: Callable[[str], None] | None = None,
        embeddings_provider: EmbeddingsProvider | None = None,
        batch_providers: Mapping[str, BatchProvider] | None = None,
        http_client: httpx.Client | None = None,
        registry: ProviderRegistry | None = None,
        logger: Logger | None = None,
        timer_factory: TimerFactory = threading.Timer,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.scope = scope
        self.settings = settings
        self._lock = threading.RLock()
        self._logger = logger or get_logger(
            __name__,
            component="memory",
            agent=scope.agent_id,
        )
        self._api_key = settings.resolve_api_key(environ)
        self._registry = registry or create_default_provider_registry()
        self._embeddings_provider = embeddings_provider
        self._external_sync = sync

        self._owns_client = http_client is None and batch_providers is None
        self._http_client = http_client
        if self._owns_client:
            self._http_client = httpx.Client(timeout=60.0)

        self.cache_key = EmbeddingCacheKey(
            scope=scope,
            provider=settings.provider,
            model=settings.model,
            provider_key=settings.provider_key,
        )
        self.cache = EmbeddingCache(db_path, lock=self._lock)
        self.breaker = CircuitBreaker(
            enabled_by_config=settings.remote.batch.enabled,
            lock=self._lock,
        )
        if batch_providers is None:
            batch_providers = self._default_batch_providers()
        self.orchestrator = BatchOrchestrator(
            providers=batch_providers,
            breaker=self.breaker,
            settings=BatchRunSettings.from_settings(settings.remote.batch),
            agent_id=scope.agent_id,
            cache=self.cache if settings.cache.enabled else None,
            cache_key=self.cache_key if settings.cache.enabled else None,
            sleep=sleep,
            clock=clock,
        )
        self.vector = VectorStore(
            db_path,
            settings=settings.store.vector,
            lock=self._lock,
        )
        self.session_state = SessionStateStore(db_path, scope=scope)
        self.scheduler = SessionSyncScheduler(
            settings=settings,
            sync=self._run_sync,
            state_store=self.session_state,
            lock=self._lock,
            timer_factory=timer_factory,
        )

    def _default_batch_providers(self) -> dict[str, BatchProvider]:
        provider_type = _BATCH_PROVIDER_TYPES.get(self.settings.provider)
        if provider_type is None or not self._api_key or self._http_client is None:
            return {}
        provider = provider_type(
            self._http_client,
            base_url=self.settings.base_url,
            api_key=self._api_key,
            model=self.settings.model,
            headers=self.settings.remote.headers,
        )
        return {self.settings.provider: provider}

    # ------------------------------------------------------------------#
    # Embeddings
    # ------------------------------------------------------------------#
    def embed_chunks(
        self,
        chunks: Sequence[Chunk],
        *,
        source: str,
        rel_path: str,
        cancel: threading.Event | None = None,
    ) -> list[list[float] | None]:
        """Return one embedding per chunk, ``None`` for blank chunks.

        Cached embeddings are reused; the rest go through batch mode when the
        breaker allows it and through the online provider otherwise or when
        the batch run fails.
        """

        embeddings: list[list[float] | None] = [None] * len(chunks)
        cached = self._lookup_cached(chunk for chunk in chunks if chunk.text)
        missing: list[MissingChunk] = []
        for index, chunk in enumerate(chunks):
            if not chunk.text:
                continue
            hit = cached.get(chunk.hash)
            if hit:
                embeddings[index] = hit
                continue
            missing.append(MissingChunk(index=index, chunk=chunk))

        if not missing:
            return embeddings

        provider = self.settings.provider
        if self.orchestrator.should_use_batch(provider):
            try:
                results = self.orchestrator.embed_missing(
                    provider,
                    missing,
                    source=source,
                    rel_path=rel_path,
                    cancel=cancel,
                )
            except BatchCancelledError:
                raise
            except BatchEmbeddingError:
                # Recorded by the orchestrator; continue with online embeddings.
                pass
            else:
                for item in missing:
                    custom_id = batch_custom_id(
                        source,
                        rel_path,
                        item.chunk.hash,
                        item.chunk.start_line,
                        item.chunk.end_line,
                        item.index,
                    )
                    if custom_id in results:
                        embeddings[item.index] = results[custom_id]
                self._prune()
                return embeddings

        self._embed_online(missing, embeddings)
        return embeddings

    def _lookup_cached(self, chunks) -> dict[str, list[float]]:
        if not self.settings.cache.enabled:
            return {}
        return self.cache.lookup_many(
            self.cache_key,
            (chunk.hash for chunk in chunks),
        )

    def _embed_online(
        self,
        missing: Sequence[MissingChunk],
        embeddings: list[list[float] | None],
    ) -> None:
        # Rows persisted by a failed batch run are picked up here.
        cached = self._lookup_cached(item.chunk for item in missing)
        pending: list[MissingChunk] = []
        for item in missing:
            hit = cached.get(item.chunk.hash)
            if hit:
                embeddings[item.index] = hit
            else:
                pending.append(item)
        if not pending:
            return

        provider = self._online_provider()
        caps = provider.capabilities(model=self.settings.model)
        vectors = provider.embed_texts(
            [item.chunk.text for item in pending],
            model=self.settings.model,
            options=EmbedRequestOptions(
                max_batch_size=caps.max_batch_size,
                max_request_tokens=caps.max_request_tokens,
            ),
        )
        for item, vector in zip(pending, vectors):
            values = list(vector)
            embeddings[item.index] = values
            if self.settings.cache.enabled and values:
                self.cache.store(self.cache_key, item.chunk.hash, values)
        self._logger.info(
            "memory-embeddings-online",
            provider=self.settings.provider,
            model=self.settings.model,
            embedded=len(pending),
        )
        self._prune()

    def _online_provider(self) -> EmbeddingsProvider:
        with self._lock:
            if self._embeddings_provider is None:
                self._embeddings_provider = self._registry.create(
                    self.settings.provider,
                    logger=self._logger,
                    config={
                        "api_key": self._api_key,
                        "base_url": self.settings.base_url,
                        "headers": dict(self.settings.remote.headers),
                    },
                )
            return self._embeddings_provider

    def _prune(self) -> None:
        if self.settings.cache.enabled and self.settings.cache.max_entries > 0:
            self.cache.prune(self.cache_key, self.settings.cache.max_entries)

    # ------------------------------------------------------------------#
    # Vectors
    # ------------------------------------------------------------------#
    def index_vectors(
        self,
        ids: Sequence[str],
        embeddings: Sequence[Sequence[float]],
    ) -> int:
        """Upsert vectors for ``ids``; returns 0 when vectors are unavailable."""

        if len(ids) != len(embeddings):
            raise ValueError("ids and embeddings must have the same length")
        if not self.settings.store.vector.enabled:
            return 0
        written = 0
        try:
            for chunk_id, embedding in zip(ids, embeddings):
                if not chunk_id or len(embedding) == 0:
                    continue
                self.vector.upsert(chunk_id, embedding)
                written += 1
        except VectorUnavailableError as exc:
            self._logger.debug("memory-vector-skipped", reason=str(exc))
        return written

    def query_vectors(
        self,
        embedding: Sequence[float],
        limit: int,
    ) -> list[tuple[str, float]]:
        """Return nearest ids; empty when vectors are unavailable."""

        if not self.settings.store.vector.enabled:
            return []
        try:
            return self.vector.query(embedding, limit)
        except VectorUnavailableError as exc:
            self._logger.debug("memory-vector-skipped", reason=str(exc))
            return []

    # ------------------------------------------------------------------#
    # Sessions
    # ------------------------------------------------------------------#
    def notify_session_changed(self, session_key: str, force: bool = False) -> bool:
        return self.scheduler.notify_session_changed(session_key, force=force)

    def _run_sync(self, session_key: str) -> None:
        if self._external_sync is None:
            self._logger.debug("memory-session-sync-unhandled", session_key=session_key)
            return
        self._external_sync(session_key)

    # ------------------------------------------------------------------#
    # Lifecycle
    # ------------------------------------------------------------------#
    def status(self) -> MemoryStatus:
        """Return a point-in-time status snapshot."""

        return MemoryStatus(
            provider=self.settings.provider,
            model=self.settings.model,
            sources=self.settings.sources,
            breaker=self.breaker.snapshot(),
            vector_enabled=self.settings.store.vector.enabled,
            vector_available=self.vector.available,
            vector_error=self.vector.last_error,
            vector_dims=self.vector.dims,
            cache_enabled=self.settings.cache.enabled,
            cache_entries=self.cache.count(self.cache_key),
            sessions_dirty=self.scheduler.dirty,
        )

    def close(self) -> None:
        self.scheduler.close()
        self.vector.close()
        if self._owns_client and self._http_client is not None:
            self._http_client.close()
            self._http_client = None
