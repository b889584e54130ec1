"""Failure-counting gate for batch embedding mode."""

from __future__ import annotations

import threading

from bridgemem.core.logging import Logger, get_logger

from .models import BATCH_FAILURE_LIMIT, CircuitBreakerState

__all__ = ["BATCH_PROVIDERS", "CircuitBreaker"]

BATCH_PROVIDERS = frozenset({"openai", "gemini"})


class CircuitBreaker:
    """Disable batch embedding after repeated failures.

    The failure counter only grows until :meth:`reset_on_success` zeroes it.
    Once the counter reaches ``failure_limit`` the breaker opens and stays
    open; a success resets the bookkeeping but does not re-enable batch mode.
    Only :meth:`enable` closes the breaker again.
    """

    def __init__(
        self,
        *,
        enabled_by_config: bool,
        lock: threading.RLock | None = None,
        failure_limit: int = BATCH_FAILURE_LIMIT,
        logger: Logger | None = None,
    ) -> None:
        if failure_limit < 1:
            raise ValueError("failure_limit must be >= 1")
        self._configured = enabled_by_config
        self._lock = lock if lock is not None else threading.RLock()
        self._limit = failure_limit
        self._logger = logger or get_logger(__name__, component="memory-breaker")
        self._enabled = True
        self._failures = 0
        self._last_error: str | None = None
        self._last_provider: str | None = None

    @property
    def failure_limit(self) -> int:
        return self._limit

    def should_use_batch(self, provider: str) -> bool:
        """Return ``True`` when batch mode may be attempted for ``provider``."""

        if not self._configured:
            return False
        if provider not in BATCH_PROVIDERS:
            return False
        with self._lock:
            return self._enabled

    def record_failure(
        self,
        provider: str,
        error: BaseException | None,
        attempts: int = 1,
        force_disable: bool = False,
    ) -> tuple[bool, int]:
        """Record a failed batch run.

        Returns:
            ``(disabled, total_failures)`` after applying the failure.
        """

        increment = self._limit if force_disable else max(attempts, 1)
        with self._lock:
            self._failures += increment
            if error is not None:
                self._last_error = str(error)
            self._last_provider = provider
            disabled = force_disable or self._failures >= self._limit
            if disabled:
                self._enabled = False
            return disabled, self._failures

    def reset_on_success(self) -> None:
        """Zero the failure bookkeeping after a successful batch run."""

        with self._lock:
            if self._failures > 0:
                self._logger.debug(
                    "memory-batch-recovered",
                    failures=self._failures,
                )
            self._failures = 0
            self._last_error = None
            self._last_provider = None

    def enable(self) -> None:
        """Close the breaker again after an operator decision."""

        with self._lock:
            self._enabled = True
            self._failures = 0
            self._last_error = None
            self._last_provider = None
        self._logger.info("memory-batch-reenabled")

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            return CircuitBreakerState(
                batch_enabled=self._configured and self._enabled,
                batch_failures=self._failures,
                batch_last_error=self._last_error,
                batch_last_provider=self._last_provider,
            )
