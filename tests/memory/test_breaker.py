from __future__ import annotations

import pytest

from bridgemem.memory.breaker import CircuitBreaker


def test_breaker_disabled_by_config_never_allows_batch() -> None:
    breaker = CircuitBreaker(enabled_by_config=False)

    assert breaker.should_use_batch("openai") is False
    assert breaker.snapshot().batch_enabled is False


def test_breaker_rejects_unsupported_providers() -> None:
    breaker = CircuitBreaker(enabled_by_config=True)

    assert breaker.should_use_batch("openai") is True
    assert breaker.should_use_batch("gemini") is True
    assert breaker.should_use_batch("local") is False


def test_breaker_opens_after_failure_limit() -> None:
    breaker = CircuitBreaker(enabled_by_config=True)

    disabled, total = breaker.record_failure("openai", RuntimeError("first"))
    assert (disabled, total) == (False, 1)
    assert breaker.should_use_batch("openai") is True

    disabled, total = breaker.record_failure("openai", RuntimeError("second"))
    assert (disabled, total) == (True, 2)
    assert breaker.should_use_batch("openai") is False

    state = breaker.snapshot()
    assert state.batch_failures == 2
    assert state.batch_last_error == "second"
    assert state.batch_last_provider == "openai"


def test_attempts_count_toward_limit() -> None:
    breaker = CircuitBreaker(enabled_by_config=True)

    disabled, total = breaker.record_failure("openai", RuntimeError("x"), attempts=2)

    assert disabled is True
    assert total == 2


def test_force_disable_opens_immediately() -> None:
    breaker = CircuitBreaker(enabled_by_config=True)

    disabled, total = breaker.record_failure(
        "gemini",
        RuntimeError("asyncBatchEmbedContent not available"),
        force_disable=True,
    )

    assert disabled is True
    assert total == breaker.failure_limit
    assert breaker.should_use_batch("gemini") is False


def test_success_resets_counts_but_does_not_reenable() -> None:
    breaker = CircuitBreaker(enabled_by_config=True)
    breaker.record_failure("openai", RuntimeError("one"))
    breaker.reset_on_success()

    state = breaker.snapshot()
    assert state.batch_failures == 0
    assert state.batch_last_error is None
    assert state.batch_last_provider is None

    breaker.record_failure("openai", RuntimeError("a"), attempts=2)
    breaker.reset_on_success()
    assert breaker.should_use_batch("openai") is False

    breaker.enable()
    assert breaker.should_use_batch("openai") is True


def test_failure_limit_must_be_positive() -> None:
    with pytest.raises(ValueError):
        CircuitBreaker(enabled_by_config=True, failure_limit=0)
