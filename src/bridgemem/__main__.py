"""Console-script entry point for :mod:`bridgemem`."""

from __future__ import annotations

from bridgemem.cli import main

if __name__ == "__main__":  # pragma: no cover - exercised via console script
    main()


__all__ = ["main"]
