"""Bundled SQL resources for the memory module."""

from __future__ import annotations

import importlib.resources as _resources

__all__ = ["SCHEMA_RESOURCE", "read_schema"]

SCHEMA_RESOURCE = "schema.sql"


def read_schema() -> str:
    """Return the packaged schema script applied on first use."""

    return (
        _resources.files(__name__)
        .joinpath(SCHEMA_RESOURCE)
        .read_text(encoding="utf-8")
    )
