"""Tests for :mod:`bridgemem.resources` and the memory schema resource."""

from __future__ import annotations

import pytest

from bridgemem.memory.resources import read_schema
from bridgemem.resources import get_resource


def test_get_resource_missing_file_raises() -> None:
    with pytest.raises(FileNotFoundError):
        get_resource("does-not-exist.toml")


def test_get_resource_returns_packaged_defaults() -> None:
    text = get_resource("bridgemem.defaults.toml").read_text(encoding="utf-8")

    assert "[memory.remote.batch]" in text


def test_read_schema_declares_memory_tables() -> None:
    schema = read_schema()

    assert "ai_memory_embedding_cache" in schema
    assert "ai_memory_session_state" in schema
