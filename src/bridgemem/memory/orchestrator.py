"""Turn missing chunks into embeddings via provider batch jobs."""

from __future__ import annotations

import threading
import time
from typing import Callable, Mapping, Sequence, TypeVar

from bridgemem.core.logging import Logger, get_logger

from .batch import BatchProvider, BatchRequest, BatchRunSettings, run_batches
from .breaker import CircuitBreaker
from .cache import EmbeddingCache, EmbeddingCacheKey
from .errors import (
    BatchCancelledError,
    BatchCapabilityError,
    BatchEmbeddingError,
    BatchRetryExceededError,
    batch_attempts,
    is_batch_timeout,
)
from .models import MissingChunk, batch_custom_id

__all__ = ["BatchOrchestrator", "CAPABILITY_MARKER", "is_capability_gap"]

T = TypeVar("T")

CAPABILITY_MARKER = "asyncbatchembedcontent not available"


def is_capability_gap(error: BaseException) -> bool:
    """Return ``True`` when ``error`` means batch embedding is unsupported."""

    if isinstance(error, BatchCapabilityError):
        return True
    return CAPABILITY_MARKER in str(error).lower()


class BatchOrchestrator:
    """Compose breaker, cache and batch providers for one memory scope."""

    def __init__(
        self,
        *,
        providers: Mapping[str, BatchProvider],
        breaker: CircuitBreaker,
        settings: BatchRunSettings,
        agent_id: str,
        cache: EmbeddingCache | None = None,
        cache_key: EmbeddingCacheKey | None = None,
        logger: Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if cache is not None and cache_key is None:
            raise ValueError("cache_key is required when cache is provided")
        self._providers = dict(providers)
        self._breaker = breaker
        self._settings = settings
        self._agent_id = agent_id
        self._cache = cache
        self._cache_key = cache_key
        self._logger = logger or get_logger(
            __name__,
            component="memory-batch",
            agent=agent_id,
        )
        self._sleep = sleep
        self._clock = clock

    def should_use_batch(self, provider: str) -> bool:
        return provider in self._providers and self._breaker.should_use_batch(
            provider
        )

    def run_with_timeout_retry(self, provider: str, run: Callable[[], T]) -> T:
        """Call ``run`` and retry exactly once when it fails with a timeout.

        A failed retry is re-raised as :class:`BatchRetryExceededError` with
        ``attempts=2`` so the breaker counts both attempts.
        """

        try:
            return run()
        except BatchEmbeddingError as exc:
            if not is_batch_timeout(exc):
                raise
            self._logger.warning(
                "memory-batch-timeout-retry",
                provider=provider,
                error=str(exc),
            )
        try:
            return run()
        except BatchCancelledError:
            raise
        except BatchEmbeddingError as retry_exc:
            raise BatchRetryExceededError(
                str(retry_exc),
                provider=provider,
                batch_id=retry_exc.batch_id,
                status_code=retry_exc.status_code,
                attempts=2,
            ) from retry_exc

    def embed_missing(
        self,
        provider: str,
        missing: Sequence[MissingChunk],
        *,
        source: str,
        rel_path: str,
        cancel: threading.Event | None = None,
    ) -> dict[str, list[float]]:
        """Embed ``missing`` chunks, keyed by their batch custom IDs.

        Each successful row is written to the cache as soon as it is parsed.
        On failure the breaker records it and the error is re-raised so the
        caller can fall back to online embeddings.
        """

        if not missing:
            return {}
        batch_provider = self._providers.get(provider)
        if batch_provider is None:
            raise ValueError(f"no batch provider registered for {provider!r}")

        hashes: dict[str, str] = {}
        requests: list[BatchRequest] = []
        for item in missing:
            custom_id = batch_custom_id(
                source,
                rel_path,
                item.chunk.hash,
                item.chunk.start_line,
                item.chunk.end_line,
                item.index,
            )
            hashes[custom_id] = item.chunk.hash
            requests.append(BatchRequest(custom_id=custom_id, text=item.chunk.text))

        def _persist(custom_id: str, embedding: tuple[float, ...]) -> None:
            if self._cache is None or self._cache_key is None:
                return
            self._cache.store(self._cache_key, hashes[custom_id], embedding)

        def _run() -> dict[str, tuple[float, ...]]:
            return run_batches(
                batch_provider,
                requests,
                settings=self._settings,
                agent_id=self._agent_id,
                cancel=cancel,
                on_row=_persist,
                sleep=self._sleep,
                clock=self._clock,
                logger=self._logger,
            )

        try:
            results = self.run_with_timeout_retry(provider, _run)
        except BatchCancelledError:
            raise
        except BatchEmbeddingError as exc:
            self._record(provider, exc)
            raise

        self._breaker.reset_on_success()
        return {custom_id: list(values) for custom_id, values in results.items()}

    def _record(self, provider: str, error: BatchEmbeddingError) -> None:
        disabled, count = self._breaker.record_failure(
            provider,
            error,
            attempts=batch_attempts(error),
            force_disable=is_capability_gap(error),
        )
        self._logger.warning(
            "memory-batch-failed",
            provider=provider,
            failures=f"{count}/{self._breaker.failure_limit}",
            action="disabling batch" if disabled else "keeping batch enabled",
            fallback="non-batch embeddings",
            error=str(error),
        )
