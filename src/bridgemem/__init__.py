"""Top-level package for :mod:`bridgemem`.

The package hosts the semantic memory subsystem of the AI bridge: embedding
caches, batch embedding orchestration, vector storage and session re-sync
scheduling.

Example:
    >>> from bridgemem import __version__
    >>> __version__.split(".")[0]
    '0'
"""

from importlib import metadata

try:
    __version__ = metadata.version("bridgemem")
except metadata.PackageNotFoundError:  # pragma: no cover - fallback for editable installs
    __version__ = "0.0.0"

__all__ = ["__version__"]
