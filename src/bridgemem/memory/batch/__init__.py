"""Batch embedding protocol and the shared group runner.

Providers translate between :class:`BatchRequest` objects and their wire
format; :func:`run_batches` owns grouping, concurrency, polling and the
all-or-nothing contract on job output.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import threading
import time
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Mapping,
    Protocol,
    Sequence,
    runtime_checkable,
)

import httpx

from bridgemem.core.config import BatchSettings
from bridgemem.core.logging import Logger, get_logger

from ..concurrency import run_with_concurrency
from ..errors import (
    BatchCancelledError,
    BatchJobFailedError,
    BatchOutputError,
    BatchPendingError,
    BatchTimeoutError,
)
from ..models import BATCH_MAX_REQUESTS, BatchJob, BatchJobState

__all__ = [
    "BatchOutputRow",
    "BatchProvider",
    "BatchRequest",
    "BatchRunSettings",
    "GeminiBatchProvider",
    "OpenAIBatchProvider",
    "RowCallback",
    "build_headers",
    "check_cancelled",
    "parse_jsonl",
    "run_batches",
]


@dataclass(frozen=True, slots=True)
class BatchRequest:
    """One embedding request correlated to its chunk by ``custom_id``."""

    custom_id: str
    text: str


@dataclass(frozen=True, slots=True)
class BatchOutputRow:
    """Decoded output line; exactly one of ``embedding``/``error`` is set."""

    custom_id: str
    embedding: tuple[float, ...] | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class BatchRunSettings:
    """Wait/poll/timeout knobs for one batch run."""

    wait: bool = True
    poll_interval: float = 2.0
    timeout: float = 3600.0
    concurrency: int = 2
    group_size: int = BATCH_MAX_REQUESTS

    def __post_init__(self) -> None:
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.group_size < 1:
            raise ValueError("group_size must be >= 1")

    @classmethod
    def from_settings(cls, settings: BatchSettings) -> "BatchRunSettings":
        return cls(
            wait=settings.wait,
            poll_interval=settings.poll_interval,
            timeout=settings.timeout,
            concurrency=settings.concurrency,
        )


RowCallback = Callable[[str, tuple[float, ...]], None]


@runtime_checkable
class BatchProvider(Protocol):
    """Provider-specific half of a batch embedding run."""

    name: str

    def build_request_line(self, request: BatchRequest) -> Mapping[str, Any]:
        """Return the JSONL payload for ``request``."""

    def submit(
        self,
        lines: Sequence[Mapping[str, Any]],
        *,
        agent_id: str,
        cancel: threading.Event | None = None,
    ) -> BatchJob:
        """Upload ``lines`` and create a job, returning its initial state."""

    def poll(
        self,
        job_id: str,
        *,
        cancel: threading.Event | None = None,
    ) -> BatchJob:
        """Return the current state of ``job_id``."""

    def fetch_output(
        self,
        file_id: str,
        *,
        cancel: threading.Event | None = None,
    ) -> str:
        """Download the raw JSONL output file."""

    def parse_output_line(
        self,
        payload: Mapping[str, Any],
    ) -> BatchOutputRow | None:
        """Decode one output line; ``None`` when it carries no identifier."""


def build_headers(
    extra: Mapping[str, str] | None,
    *,
    auth_header: str,
    auth_value: str | None,
    content_type: str | None = "application/json",
) -> httpx.Headers:
    """Merge caller headers with auth and content type.

    Blank caller values are dropped. The auth header is added only when the
    caller did not set it (case-insensitively) and ``content_type`` only when
    no ``Content-Type`` is present.
    """

    headers = httpx.Headers()
    for key, value in (extra or {}).items():
        if not str(value).strip():
            continue
        headers[key] = value
    if auth_value and auth_header not in headers:
        headers[auth_header] = auth_value
    if content_type and "content-type" not in headers:
        headers["Content-Type"] = content_type
    return headers


def check_cancelled(
    cancel: threading.Event | None,
    *,
    provider: str,
    batch_id: str | None = None,
) -> None:
    """Raise :class:`BatchCancelledError` when ``cancel`` is set."""

    if cancel is not None and cancel.is_set():
        raise BatchCancelledError(
            f"{provider} batch cancelled",
            provider=provider,
            batch_id=batch_id,
        )


def parse_jsonl(content: str) -> list[Mapping[str, Any]]:
    """Split ``content`` into JSON objects, skipping blank or invalid lines."""

    rows: list[Mapping[str, Any]] = []
    for line in content.split("\n"):
        stripped = line.strip()
        if not stripped:
            continue
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            rows.append(payload)
    return rows


class _GroupRunner:
    def __init__(
        self,
        provider: BatchProvider,
        *,
        settings: BatchRunSettings,
        agent_id: str,
        cancel: threading.Event | None,
        on_row: RowCallback | None,
        sleep: Callable[[float], None],
        clock: Callable[[], float],
        logger: Logger,
    ) -> None:
        self.provider = provider
        self.settings = settings
        self.agent_id = agent_id
        self.cancel = cancel
        self.on_row = on_row
        self.sleep = sleep
        self.clock = clock
        self.logger = logger

    def run(self, group: Sequence[BatchRequest]) -> dict[str, tuple[float, ...]]:
        name = self.provider.name
        check_cancelled(self.cancel, provider=name)
        lines = [self.provider.build_request_line(item) for item in group]
        job = self.provider.submit(
            lines,
            agent_id=self.agent_id,
            cancel=self.cancel,
        )
        self.logger.info(
            "memory-batch-submitted",
            provider=name,
            batch_id=job.id,
            requests=len(group),
            state=job.raw_state,
        )

        if job.state.failed:
            raise self._job_failed(job)
        if job.state is not BatchJobState.COMPLETED:
            if not self.settings.wait:
                raise BatchPendingError(
                    f"{name} batch {job.id} still {job.raw_state}; wait disabled",
                    provider=name,
                    batch_id=job.id,
                    state=job.raw_state,
                )
            job = self._wait(job.id)

        if not job.output_file:
            raise BatchOutputError(
                f"{name} batch {job.id} completed without output file",
                provider=name,
                batch_id=job.id,
            )

        content = self.provider.fetch_output(job.output_file, cancel=self.cancel)
        embeddings = self._collect(job.id, group, content)
        self.logger.info(
            "memory-batch-completed",
            provider=name,
            batch_id=job.id,
            embeddings=len(embeddings),
        )
        return embeddings

    def _job_failed(self, job: BatchJob) -> BatchJobFailedError:
        message = f"{self.provider.name} batch {job.id} {job.raw_state}"
        if job.error:
            message = f"{message}: {job.error}"
        return BatchJobFailedError(
            message,
            provider=self.provider.name,
            batch_id=job.id,
            state=job.raw_state,
        )

    def _wait(self, job_id: str) -> BatchJob:
        name = self.provider.name
        deadline = self.clock() + self.settings.timeout
        while True:
            check_cancelled(self.cancel, provider=name, batch_id=job_id)
            job = self.provider.poll(job_id, cancel=self.cancel)
            if job.state is BatchJobState.COMPLETED:
                return job
            if job.state.failed:
                raise self._job_failed(job)
            if self.clock() > deadline:
                raise BatchTimeoutError(
                    f"{name} batch {job_id} timed out",
                    provider=name,
                    batch_id=job_id,
                )
            self.logger.debug(
                "memory-batch-pending",
                provider=name,
                batch_id=job_id,
                state=job.raw_state,
            )
            self._pause(job_id)

    def _pause(self, job_id: str) -> None:
        interval = self.settings.poll_interval
        if self.cancel is None:
            self.sleep(interval)
            return
        if self.cancel.wait(interval):
            check_cancelled(
                self.cancel,
                provider=self.provider.name,
                batch_id=job_id,
            )

    def _collect(
        self,
        job_id: str,
        group: Sequence[BatchRequest],
        content: str,
    ) -> dict[str, tuple[float, ...]]:
        name = self.provider.name
        expected = {item.custom_id for item in group}
        remaining = set(expected)
        embeddings: dict[str, tuple[float, ...]] = {}
        row_errors: list[str] = []

        for payload in parse_jsonl(content):
            row = self.provider.parse_output_line(payload)
            if row is None or row.custom_id not in expected:
                continue
            remaining.discard(row.custom_id)
            if row.error is not None or not row.embedding:
                row_errors.append(
                    f"{row.custom_id}: {row.error or 'empty embedding'}"
                )
                continue
            embeddings[row.custom_id] = row.embedding
            if self.on_row is not None:
                self.on_row(row.custom_id, row.embedding)

        if row_errors:
            raise BatchOutputError(
                f"{name} batch {job_id} failed: {'; '.join(row_errors)}",
                provider=name,
                batch_id=job_id,
                row_errors=tuple(row_errors),
            )
        if remaining:
            raise BatchOutputError(
                f"{name} batch {job_id} missing {len(remaining)} "
                "embedding responses",
                provider=name,
                batch_id=job_id,
                missing=len(remaining),
            )
        return embeddings


def run_batches(
    provider: BatchProvider,
    requests: Sequence[BatchRequest],
    *,
    settings: BatchRunSettings,
    agent_id: str,
    cancel: threading.Event | None = None,
    on_row: RowCallback | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    logger: Logger | None = None,
) -> dict[str, tuple[float, ...]]:
    """Embed ``requests`` through ``provider`` batch jobs.

    Requests are split into groups of at most ``settings.group_size`` and
    submitted concurrently. Every expected custom ID must come back with an
    embedding; otherwise the whole call fails. ``on_row`` observes each
    successful row as soon as it is parsed, even when the run later fails.

    Raises:
        BatchEmbeddingError: For any submit, poll, fetch or output failure.
    """

    if not requests:
        return {}
    log = logger or get_logger(__name__, component="memory-batch")
    runner = _GroupRunner(
        provider,
        settings=settings,
        agent_id=agent_id,
        cancel=cancel,
        on_row=on_row,
        sleep=sleep,
        clock=clock,
        logger=log,
    )
    size = settings.group_size
    groups = [requests[start : start + size] for start in range(0, len(requests), size)]
    tasks = [lambda group=group: runner.run(group) for group in groups]

    results = run_with_concurrency(tasks, settings.concurrency)

    merged: dict[str, tuple[float, ...]] = {}
    for index in sorted(results):
        merged.update(results[index])
    return merged


if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from .gemini import GeminiBatchProvider
    from .openai import OpenAIBatchProvider


def __getattr__(name: str) -> object:
    if name == "OpenAIBatchProvider":
        from .openai import OpenAIBatchProvider

        return OpenAIBatchProvider
    if name == "GeminiBatchProvider":
        from .gemini import GeminiBatchProvider

        return GeminiBatchProvider

    message = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(message)


def __dir__() -> list[str]:
    return sorted({*globals(), *__all__})
