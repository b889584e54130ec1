from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Mapping

import pytest

from bridgemem.memory.batch import BatchOutputRow, BatchRequest, BatchRunSettings
from bridgemem.memory.breaker import CircuitBreaker
from bridgemem.memory.cache import EmbeddingCache, EmbeddingCacheKey
from bridgemem.memory.errors import (
    BatchCancelledError,
    BatchCapabilityError,
    BatchOutputError,
    BatchRequestError,
    BatchRetryExceededError,
    BatchTimeoutError,
)
from bridgemem.memory.models import (
    BatchJob,
    BatchJobState,
    Chunk,
    MissingChunk,
    batch_custom_id,
)
from bridgemem.memory.orchestrator import BatchOrchestrator, is_capability_gap


class _Provider:
    """Batch provider whose submissions fail according to a script."""

    name = "openai"

    def __init__(self, failures: list[Exception] | None = None, omit_last: bool = False):
        self.failures = list(failures or [])
        self.omit_last = omit_last
        self.submissions = 0
        self._lines: list[Mapping[str, Any]] = []

    def build_request_line(self, request: BatchRequest) -> Mapping[str, Any]:
        return {"id": request.custom_id, "text": request.text}

    def submit(self, lines, *, agent_id, cancel=None) -> BatchJob:
        self.submissions += 1
        if self.failures:
            raise self.failures.pop(0)
        self._lines = list(lines)
        return BatchJob(
            id=f"job-{self.submissions}",
            state=BatchJobState.COMPLETED,
            raw_state="completed",
            output_file="out",
        )

    def poll(self, job_id, *, cancel=None) -> BatchJob:
        raise AssertionError("jobs complete on submit")

    def fetch_output(self, file_id, *, cancel=None) -> str:
        lines = self._lines[:-1] if self.omit_last else self._lines
        return "\n".join(
            json.dumps({"id": line["id"], "value": [float(len(line["text"])), 1.0]})
            for line in lines
        )

    def parse_output_line(self, payload) -> BatchOutputRow | None:
        return BatchOutputRow(custom_id=payload["id"], embedding=tuple(payload["value"]))


def _timeout() -> BatchTimeoutError:
    return BatchTimeoutError("openai batch job-1 timed out", provider="openai")


def _missing(*texts: str) -> list[MissingChunk]:
    return [
        MissingChunk(
            index=index,
            chunk=Chunk(text=text, hash=f"hash-{text}", start_line=index, end_line=index),
        )
        for index, text in enumerate(texts)
    ]


def _orchestrator(
    provider: _Provider,
    *,
    breaker: CircuitBreaker | None = None,
    cache: EmbeddingCache | None = None,
    cache_key: EmbeddingCacheKey | None = None,
) -> BatchOrchestrator:
    return BatchOrchestrator(
        providers={"openai": provider},
        breaker=breaker or CircuitBreaker(enabled_by_config=True),
        settings=BatchRunSettings(),
        agent_id="agent-1",
        cache=cache,
        cache_key=cache_key,
        sleep=lambda _: None,
    )


def test_embed_missing_keys_results_by_custom_id() -> None:
    orchestrator = _orchestrator(_Provider())

    results = orchestrator.embed_missing(
        "openai",
        _missing("ab", "abcd"),
        source="memory",
        rel_path="notes.md",
    )

    first = batch_custom_id("memory", "notes.md", "hash-ab", 0, 0, 0)
    second = batch_custom_id("memory", "notes.md", "hash-abcd", 1, 1, 1)
    assert results == {first: [2.0, 1.0], second: [4.0, 1.0]}


def test_success_persists_rows_and_resets_breaker(
    db_path: Path,
    cache_key: EmbeddingCacheKey,
) -> None:
    cache = EmbeddingCache(db_path)
    breaker = CircuitBreaker(enabled_by_config=True)
    breaker.record_failure("openai", RuntimeError("earlier"))
    orchestrator = _orchestrator(
        _Provider(),
        breaker=breaker,
        cache=cache,
        cache_key=cache_key,
    )

    orchestrator.embed_missing("openai", _missing("abc"), source="memory", rel_path="a.md")

    assert cache.lookup(cache_key, "hash-abc") == [3.0, 1.0]
    assert breaker.snapshot().batch_failures == 0


def test_partial_group_failure_still_persists_parsed_rows(
    db_path: Path,
    cache_key: EmbeddingCacheKey,
) -> None:
    cache = EmbeddingCache(db_path)
    breaker = CircuitBreaker(enabled_by_config=True)
    orchestrator = _orchestrator(
        _Provider(omit_last=True),
        breaker=breaker,
        cache=cache,
        cache_key=cache_key,
    )

    with pytest.raises(BatchOutputError):
        orchestrator.embed_missing(
            "openai",
            _missing("one", "three"),
            source="memory",
            rel_path="a.md",
        )

    assert cache.lookup(cache_key, "hash-one") == [3.0, 1.0]
    assert cache.lookup(cache_key, "hash-three") is None
    assert breaker.snapshot().batch_failures == 1
    assert breaker.should_use_batch("openai") is True


def test_timeout_is_retried_once_then_succeeds() -> None:
    provider = _Provider(failures=[_timeout()])
    breaker = CircuitBreaker(enabled_by_config=True)
    orchestrator = _orchestrator(provider, breaker=breaker)

    results = orchestrator.embed_missing(
        "openai",
        _missing("ab"),
        source="memory",
        rel_path="a.md",
    )

    assert len(results) == 1
    assert provider.submissions == 2
    assert breaker.snapshot().batch_failures == 0


def test_second_timeout_counts_two_failures_and_disables() -> None:
    provider = _Provider(failures=[_timeout(), _timeout()])
    breaker = CircuitBreaker(enabled_by_config=True)
    orchestrator = _orchestrator(provider, breaker=breaker)

    with pytest.raises(BatchRetryExceededError) as excinfo:
        orchestrator.embed_missing("openai", _missing("ab"), source="memory", rel_path="a.md")

    assert excinfo.value.attempts == 2
    assert isinstance(excinfo.value.__cause__, BatchTimeoutError)
    assert provider.submissions == 2
    state = breaker.snapshot()
    assert state.batch_failures == 2
    assert state.batch_enabled is False
    assert orchestrator.should_use_batch("openai") is False


def test_non_timeout_error_is_not_retried() -> None:
    provider = _Provider(
        failures=[BatchRequestError("openai batch create failed: 400", provider="openai")]
    )
    breaker = CircuitBreaker(enabled_by_config=True)
    orchestrator = _orchestrator(provider, breaker=breaker)

    with pytest.raises(BatchRequestError):
        orchestrator.embed_missing("openai", _missing("ab"), source="memory", rel_path="a.md")

    assert provider.submissions == 1
    assert breaker.snapshot().batch_failures == 1


def test_capability_gap_disables_batch_immediately() -> None:
    provider = _Provider(
        failures=[
            BatchCapabilityError(
                "gemini batch create failed: 404 (asyncBatchEmbedContent not available)",
                provider="gemini",
                status_code=404,
            )
        ]
    )
    breaker = CircuitBreaker(enabled_by_config=True)
    orchestrator = _orchestrator(provider, breaker=breaker)

    with pytest.raises(BatchCapabilityError):
        orchestrator.embed_missing("openai", _missing("ab"), source="memory", rel_path="a.md")

    assert breaker.snapshot().batch_enabled is False
    assert breaker.snapshot().batch_failures == breaker.failure_limit


def test_capability_gap_detected_from_message() -> None:
    error = BatchRequestError(
        "Gemini batch create failed: 404 (asyncBatchEmbedContent not available)",
        provider="gemini",
    )

    assert is_capability_gap(error) is True
    assert is_capability_gap(RuntimeError("plain failure")) is False


def test_cancellation_is_not_counted_as_failure() -> None:
    cancel = threading.Event()
    cancel.set()
    breaker = CircuitBreaker(enabled_by_config=True)
    orchestrator = _orchestrator(_Provider(), breaker=breaker)

    with pytest.raises(BatchCancelledError):
        orchestrator.embed_missing(
            "openai",
            _missing("ab"),
            source="memory",
            rel_path="a.md",
            cancel=cancel,
        )

    assert breaker.snapshot().batch_failures == 0


def test_should_use_batch_requires_registered_provider() -> None:
    orchestrator = _orchestrator(_Provider())

    assert orchestrator.should_use_batch("openai") is True
    assert orchestrator.should_use_batch("gemini") is False


def test_embed_missing_with_nothing_missing_is_noop() -> None:
    provider = _Provider()
    orchestrator = _orchestrator(provider)

    assert orchestrator.embed_missing("openai", [], source="memory", rel_path="a") == {}
    assert provider.submissions == 0


def test_cache_requires_key() -> None:
    with pytest.raises(ValueError):
        BatchOrchestrator(
            providers={},
            breaker=CircuitBreaker(enabled_by_config=True),
            settings=BatchRunSettings(),
            agent_id="agent",
            cache=object(),  # type: ignore[arg-type]
        )
