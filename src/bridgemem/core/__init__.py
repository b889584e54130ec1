"""Core runtime helpers shared across :mod:`bridgemem`."""

from __future__ import annotations

from .config import AppConfig, MemorySettings, load_config
from .logging import Logger, configure_logging, get_logger

__all__ = [
    "AppConfig",
    "Logger",
    "MemorySettings",
    "configure_logging",
    "get_logger",
    "load_config",
]
