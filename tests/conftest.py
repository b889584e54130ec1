"""Shared pytest fixtures for memory subsystem tests."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from bridgemem.core.config import MemorySettings
from bridgemem.memory.cache import EmbeddingCacheKey
from bridgemem.memory.models import MemoryScope


class FakeTimer:
    """Manually fired stand-in for :class:`threading.Timer`."""

    def __init__(
        self,
        interval: float,
        function: Callable[..., Any],
        args: tuple[Any, ...] = (),
    ) -> None:
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.function(*self.args)


class FakeTimerFactory:
    """Record every timer created by a scheduler."""

    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(
        self,
        interval: float,
        function: Callable[..., Any],
        args: tuple[Any, ...] = (),
    ) -> FakeTimer:
        timer = FakeTimer(interval, function, args=args)
        self.timers.append(timer)
        return timer

    @property
    def live(self) -> list[FakeTimer]:
        return [timer for timer in self.timers if not timer.cancelled]


@pytest.fixture
def db_path(tmp_path: Path) -> Iterator[Path]:
    """Provide a fresh SQLite database path per test."""

    yield tmp_path / "memory" / "bridge.db"


@pytest.fixture
def scope() -> MemoryScope:
    return MemoryScope(bridge_id="bridge-1", login_id="login-1", agent_id="agent-1")


@pytest.fixture
def memory_settings() -> MemorySettings:
    return MemorySettings(provider="openai", remote={"api_key": "sk-test"})


@pytest.fixture
def cache_key(scope: MemoryScope, memory_settings: MemorySettings) -> EmbeddingCacheKey:
    return EmbeddingCacheKey(
        scope=scope,
        provider=memory_settings.provider,
        model=memory_settings.model,
        provider_key=memory_settings.provider_key,
    )


@pytest.fixture
def timer_factory() -> FakeTimerFactory:
    return FakeTimerFactory()

