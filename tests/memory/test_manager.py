from __future__ import annotations

import json
from pathlib import Path
import sqlite3
from typing import TYPE_CHECKING, Any, Mapping, Sequence

import httpx
import pytest

from bridgemem.core.config import MemorySettings
from bridgemem.memory.batch import BatchOutputRow, BatchRequest
from bridgemem.memory.errors import BatchRequestError
from bridgemem.memory.manager import MemoryManager
from bridgemem.memory.models import BatchJob, BatchJobState, Chunk, MemoryScope
from bridgemem.memory.providers import (
    EmbedRequestOptions,
    EmbeddingMatrix,
    EmbeddingProviderCaps,
    EmbeddingProviderModel,
)

if TYPE_CHECKING:
    from conftest import FakeTimerFactory


class _OnlineProvider:
    """Online provider embedding each text as ``(len(text), 1.0)``."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []

    def describe_model(self, model: str) -> EmbeddingProviderModel:
        return EmbeddingProviderModel(provider="openai", name=model, dim=2)

    def capabilities(self, *, model: str | None = None) -> EmbeddingProviderCaps:
        return EmbeddingProviderCaps(max_batch_size=8)

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> EmbeddingMatrix:
        assert options.max_batch_size == 8
        self.calls.append(tuple(texts))
        return tuple((float(len(text)), 1.0) for text in texts)


class _BatchProvider:
    """Batch provider embedding each text as ``(len(text), 2.0)``."""

    name = "openai"

    def __init__(self, *, failures: int = 0, omit_last: bool = False) -> None:
        self.failures = failures
        self.omit_last = omit_last
        self.submitted: list[list[str]] = []
        self._lines: list[Mapping[str, Any]] = []

    def build_request_line(self, request: BatchRequest) -> Mapping[str, Any]:
        return {"id": request.custom_id, "text": request.text}

    def submit(self, lines, *, agent_id, cancel=None) -> BatchJob:
        self.submitted.append([line["text"] for line in lines])
        if self.failures:
            self.failures -= 1
            raise BatchRequestError("openai batch create failed: 400", provider="openai")
        self._lines = list(lines)
        return BatchJob(
            id="job",
            state=BatchJobState.COMPLETED,
            raw_state="completed",
            output_file="out",
        )

    def poll(self, job_id, *, cancel=None) -> BatchJob:
        raise AssertionError("jobs complete on submit")

    def fetch_output(self, file_id, *, cancel=None) -> str:
        lines = self._lines[:-1] if self.omit_last else self._lines
        return "\n".join(
            json.dumps({"id": line["id"], "value": [float(len(line["text"])), 2.0]})
            for line in lines
        )

    def parse_output_line(self, payload) -> BatchOutputRow | None:
        return BatchOutputRow(custom_id=payload["id"], embedding=tuple(payload["value"]))


def _chunk(text: str, line: int = 1) -> Chunk:
    return Chunk(text=text, hash=f"hash-{text}", start_line=line, end_line=line)


def _settings(**remote_batch: Any) -> MemorySettings:
    return MemorySettings(
        provider="openai",
        remote={"api_key": "sk-test", "batch": remote_batch},
        store={"vector": {"enabled": False}},
    )


def _manager(
    db_path: Path,
    scope: MemoryScope,
    settings: MemorySettings,
    *,
    batch: _BatchProvider | None = None,
    online: _OnlineProvider | None = None,
    **kwargs: Any,
) -> MemoryManager:
    return MemoryManager(
        db_path=db_path,
        scope=scope,
        settings=settings,
        embeddings_provider=online or _OnlineProvider(),
        batch_providers={"openai": batch} if batch is not None else {},
        sleep=lambda _: None,
        **kwargs,
    )


def test_batch_results_align_with_chunks_and_are_cached(
    db_path: Path,
    scope: MemoryScope,
) -> None:
    batch = _BatchProvider()
    online = _OnlineProvider()
    manager = _manager(db_path, scope, _settings(), batch=batch, online=online)

    embeddings = manager.embed_chunks(
        [_chunk("abc"), _chunk(""), _chunk("abcdef", line=2)],
        source="memory",
        rel_path="notes.md",
    )

    assert embeddings == [[3.0, 2.0], None, [6.0, 2.0]]
    assert batch.submitted == [["abc", "abcdef"]]
    assert online.calls == []

    again = manager.embed_chunks([_chunk("abc")], source="memory", rel_path="notes.md")
    assert again == [[3.0, 2.0]]
    assert len(batch.submitted) == 1
    manager.close()


def test_batch_failure_falls_back_to_online(db_path: Path, scope: MemoryScope) -> None:
    batch = _BatchProvider(failures=1)
    online = _OnlineProvider()
    manager = _manager(db_path, scope, _settings(), batch=batch, online=online)

    embeddings = manager.embed_chunks(
        [_chunk("ab"), _chunk("abcd")],
        source="memory",
        rel_path="notes.md",
    )

    assert embeddings == [[2.0, 1.0], [4.0, 1.0]]
    assert online.calls == [("ab", "abcd")]
    status = manager.status()
    assert status.breaker.batch_failures == 1
    assert status.breaker.batch_enabled is True
    assert status.cache_entries == 2
    manager.close()


def test_online_fallback_reuses_rows_persisted_by_failed_batch(
    db_path: Path,
    scope: MemoryScope,
) -> None:
    batch = _BatchProvider(omit_last=True)
    online = _OnlineProvider()
    manager = _manager(db_path, scope, _settings(), batch=batch, online=online)

    embeddings = manager.embed_chunks(
        [_chunk("ab"), _chunk("abcd")],
        source="memory",
        rel_path="notes.md",
    )

    assert embeddings == [[2.0, 2.0], [4.0, 1.0]]
    assert online.calls == [("abcd",)]
    manager.close()


def test_repeated_failures_open_the_breaker(db_path: Path, scope: MemoryScope) -> None:
    batch = _BatchProvider(failures=5)
    online = _OnlineProvider()
    manager = _manager(db_path, scope, _settings(), batch=batch, online=online)

    for index in range(3):
        manager.embed_chunks(
            [_chunk(f"text-{index}")],
            source="memory",
            rel_path="notes.md",
        )

    assert len(batch.submitted) == 2
    assert len(online.calls) == 3
    mapping = manager.status().to_mapping()
    assert mapping["batch"]["enabled"] is False
    assert mapping["batch"]["failures"] == 2
    assert mapping["batch"]["last_provider"] == "openai"
    manager.close()


def test_batch_disabled_by_config_uses_online_and_prunes(
    db_path: Path,
    scope: MemoryScope,
) -> None:
    settings = MemorySettings(
        provider="openai",
        remote={"api_key": "sk-test", "batch": {"enabled": False}},
        cache={"max_entries": 2},
        store={"vector": {"enabled": False}},
    )
    batch = _BatchProvider()
    online = _OnlineProvider()
    manager = _manager(db_path, scope, settings, batch=batch, online=online)

    manager.embed_chunks(
        [_chunk("a"), _chunk("bb"), _chunk("ccc")],
        source="memory",
        rel_path="notes.md",
    )

    assert batch.submitted == []
    assert online.calls == [("a", "bb", "ccc")]
    assert manager.status().cache_entries == 2
    manager.close()


def test_disabled_cache_always_embeds(db_path: Path, scope: MemoryScope) -> None:
    settings = MemorySettings(
        remote={"api_key": "sk-test", "batch": {"enabled": False}},
        cache={"enabled": False},
        store={"vector": {"enabled": False}},
    )
    online = _OnlineProvider()
    manager = _manager(db_path, scope, settings, online=online)

    manager.embed_chunks([_chunk("a")], source="memory", rel_path="n.md")
    manager.embed_chunks([_chunk("a")], source="memory", rel_path="n.md")

    assert online.calls == [("a",), ("a",)]
    assert manager.status().cache_entries == 0
    manager.close()


def test_vectors_degrade_when_extension_missing(
    db_path: Path,
    scope: MemoryScope,
    tmp_path: Path,
) -> None:
    settings = MemorySettings(
        remote={"api_key": "sk-test"},
        store={"vector": {"extension_path": str(tmp_path / "no-such-vec0")}},
    )
    manager = _manager(db_path, scope, settings)

    assert manager.index_vectors(["chunk-1"], [[1.0, 0.0]]) == 0
    assert manager.query_vectors([1.0, 0.0], 3) == []

    vector = manager.status().to_mapping()["vector"]
    assert vector["enabled"] is True
    assert vector["available"] is False
    assert vector["error"].startswith("load failed")
    manager.close()


def test_default_vector_settings_degrade_without_vec0(
    db_path: Path,
    scope: MemoryScope,
) -> None:
    conn = sqlite3.connect(":memory:")
    try:
        conn.execute("SELECT vec_version()")
    except sqlite3.Error:
        pass
    else:
        pytest.skip("sqlite3 ships vec0 built in")
    finally:
        conn.close()
    settings = MemorySettings(provider="openai", remote={"api_key": "sk-test"})
    manager = _manager(db_path, scope, settings)

    assert manager.index_vectors(["chunk-1"], [[0.1, 0.2]]) == 0
    assert manager.query_vectors([0.1, 0.2], 3) == []

    vector = manager.status().to_mapping()["vector"]
    assert vector["enabled"] is True
    assert vector["available"] is False
    assert vector["error"].startswith("vec0 unavailable")
    manager.close()


def test_index_vectors_validates_lengths(db_path: Path, scope: MemoryScope) -> None:
    manager = _manager(db_path, scope, _settings())

    with pytest.raises(ValueError):
        manager.index_vectors(["a", "b"], [[1.0]])
    assert manager.index_vectors(["a"], [[1.0]]) == 0
    manager.close()


def test_session_notifications_reach_sync_callback(
    db_path: Path,
    scope: MemoryScope,
    timer_factory: FakeTimerFactory,
) -> None:
    settings = MemorySettings(
        remote={"api_key": "sk-test"},
        sources=("memory", "sessions"),
        experimental={"session_memory": True},
        store={"vector": {"enabled": False}},
    )
    synced: list[str] = []
    manager = _manager(
        db_path,
        scope,
        settings,
        sync=synced.append,
        timer_factory=timer_factory,
    )

    assert manager.notify_session_changed("room-1") is True
    assert manager.notify_session_changed("room-2") is True
    assert manager.status().sessions_dirty is True

    timer_factory.live[0].fire()

    assert synced == ["room-2"]
    assert manager.status().sessions_dirty is False
    manager.close()


def test_default_batch_provider_requires_api_key(
    db_path: Path,
    scope: MemoryScope,
) -> None:
    with httpx.Client() as client:
        manager = MemoryManager(
            db_path=db_path,
            scope=scope,
            settings=MemorySettings(store={"vector": {"enabled": False}}),
            http_client=client,
            embeddings_provider=_OnlineProvider(),
            environ={},
        )
        assert manager.orchestrator.should_use_batch("openai") is False

        keyed = MemoryManager(
            db_path=db_path,
            scope=scope,
            settings=MemorySettings(store={"vector": {"enabled": False}}),
            http_client=client,
            embeddings_provider=_OnlineProvider(),
            environ={"OPENAI_API_KEY": "sk-env"},
        )
        assert keyed.orchestrator.should_use_batch("openai") is True


def test_status_reports_configuration(db_path: Path, scope: MemoryScope) -> None:
    manager = _manager(db_path, scope, _settings())

    mapping = manager.status().to_mapping()

    assert mapping["provider"] == "openai"
    assert mapping["model"] == "text-embedding-3-small"
    assert mapping["sources"] == ["memory"]
    assert mapping["vector"] == {
        "enabled": False,
        "available": False,
        "error": None,
        "dims": None,
    }
    assert mapping["cache"] == {"enabled": True, "entries": 0}
    assert mapping["sessions_dirty"] is False
    manager.close()
