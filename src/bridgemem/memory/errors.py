"""Typed error hierarchy for the memory subsystem."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "BatchEmbeddingError",
    "BatchRequestError",
    "BatchCapabilityError",
    "BatchJobFailedError",
    "BatchTimeoutError",
    "BatchPendingError",
    "BatchOutputError",
    "BatchCancelledError",
    "BatchRetryExceededError",
    "EmbeddingProviderError",
    "EmbeddingProviderConfigurationError",
    "EmbeddingProviderRequestError",
    "EmbeddingProviderRetryableError",
    "EmbeddingProviderRateLimitError",
    "EmbeddingProviderRetryExceededError",
    "EmbeddingProviderInputTooLargeError",
    "VectorStoreError",
    "VectorUnavailableError",
    "VectorDimensionMismatchError",
    "batch_attempts",
    "is_batch_timeout",
]


# ---------------------------------------------------------------------------#
# Batch embedding jobs
# ---------------------------------------------------------------------------#


@dataclass(slots=True)
class BatchEmbeddingError(RuntimeError):
    """Base error raised while running batch embedding jobs."""

    message: str
    provider: str
    batch_id: str | None = None
    status_code: int | None = None

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)


@dataclass(slots=True)
class BatchRequestError(BatchEmbeddingError):
    """Raised for non-2xx responses and malformed provider payloads."""


@dataclass(slots=True)
class BatchCapabilityError(BatchRequestError):
    """Raised when the endpoint does not offer batch embedding at all."""


@dataclass(slots=True)
class BatchJobFailedError(BatchEmbeddingError):
    """Raised when a job reaches a failed, expired or cancelled state."""

    state: str = ""


@dataclass(slots=True)
class BatchTimeoutError(BatchEmbeddingError):
    """Raised when a job does not complete before the wait deadline."""


@dataclass(slots=True)
class BatchPendingError(BatchEmbeddingError):
    """Raised when a job is still running and waiting is disabled."""

    state: str = ""


@dataclass(slots=True)
class BatchOutputError(BatchEmbeddingError):
    """Raised when job output carries row errors or misses rows."""

    missing: int = 0
    row_errors: tuple[str, ...] = ()


@dataclass(slots=True)
class BatchCancelledError(BatchEmbeddingError):
    """Raised when the caller cancels an in-flight batch run."""


@dataclass(slots=True)
class BatchRetryExceededError(BatchEmbeddingError):
    """Raised when the timeout retry also failed."""

    attempts: int = 0


def _error_chain(error: BaseException):
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__


def batch_attempts(error: BaseException) -> int:
    """Return how many batch attempts ``error`` accounts for."""

    for item in _error_chain(error):
        if isinstance(item, BatchRetryExceededError) and item.attempts > 0:
            return item.attempts
    return 1


def is_batch_timeout(error: BaseException) -> bool:
    """Return ``True`` when ``error`` signals a batch wait timeout."""

    for item in _error_chain(error):
        if isinstance(item, BatchTimeoutError):
            return True
        message = str(item).lower()
        if "timed out" in message or "timeout" in message:
            return True
    return False


# ---------------------------------------------------------------------------#
# Online embedding providers
# ---------------------------------------------------------------------------#


@dataclass(slots=True)
class EmbeddingProviderError(RuntimeError):
    """Base error raised by online embedding providers."""

    message: str
    provider: str
    model: str
    request_id: str | None = None
    status_code: int | None = None

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)


@dataclass(slots=True)
class EmbeddingProviderConfigurationError(EmbeddingProviderError):
    """Raised when the provider configuration is invalid."""


@dataclass(slots=True)
class EmbeddingProviderRequestError(EmbeddingProviderError):
    """Raised for non-retryable request errors."""


@dataclass(slots=True)
class EmbeddingProviderRetryableError(EmbeddingProviderError):
    """Raised for retryable transport or server-side errors."""


@dataclass(slots=True)
class EmbeddingProviderRateLimitError(EmbeddingProviderRetryableError):
    """Raised when the provider returns a rate limiting response."""


@dataclass(slots=True)
class EmbeddingProviderRetryExceededError(EmbeddingProviderError):
    """Raised when retry attempts are exhausted."""

    attempts: int = 0


@dataclass(slots=True)
class EmbeddingProviderInputTooLargeError(EmbeddingProviderError):
    """Raised when a single input exceeds provider token limits."""

    token_count: int | None = None
    limit: int | None = None


# ---------------------------------------------------------------------------#
# Vector store
# ---------------------------------------------------------------------------#


class VectorStoreError(RuntimeError):
    """Base error raised for vector store failures."""


class VectorUnavailableError(VectorStoreError):
    """Raised when the vector extension could not be loaded."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"vector extension unavailable: {reason}")
        self.reason = reason


class VectorDimensionMismatchError(VectorStoreError):
    """Raised when a vector table exists with a different dimension."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            "vector table dimension mismatch: "
            f"table has {expected}, requested {actual}"
        )
        self.expected = expected
        self.actual = actual
