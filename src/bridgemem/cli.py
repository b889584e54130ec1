"""Command-line interface for :mod:`bridgemem`.

The ``bridgemem`` console script inspects the memory database of one
``(bridge, login, agent)`` scope using the layered configuration.

Example:
    >>> import typer
    >>> from bridgemem.cli import create_app
    >>> isinstance(create_app(), typer.Typer)
    True
"""

from __future__ import annotations

import json
import os
from pathlib import Path
import tomllib
from typing import Any, Mapping

import typer

from bridgemem.core.config import (
    DEFAULTS_RESOURCE_NAME,
    AppConfig,
    env_config_from_environ,
    load_config,
)
from bridgemem.core.logging import configure_logging, get_logger
from bridgemem.memory.manager import MemoryManager
from bridgemem.memory.models import MemoryScope

_app_help = (
    "Semantic memory tooling for the AI bridge."
    "\n\n"
    "Use `bridgemem status` to inspect the cache, batch breaker and vector "
    "store of one agent scope."
)


def _read_user_config(path: Path | None) -> dict[str, Any]:
    """Return the parsed TOML at ``path`` or an empty overlay."""

    if path is None:
        return {}
    with path.open("rb") as handle:
        return tomllib.load(handle)


def _render_status(config: AppConfig, status: Mapping[str, Any]) -> None:
    batch = status["batch"]
    vector = status["vector"]
    cache = status["cache"]

    typer.secho("Memory status", fg=typer.colors.GREEN, bold=True)
    typer.echo(f"  provider: {status['provider']} ({status['model']})")
    typer.echo(f"  sources: {', '.join(status['sources'])}")
    typer.echo(f"  defaults: packaged resource ({DEFAULTS_RESOURCE_NAME})")
    typer.echo(f"  log level: {config.log_level}")
    state = "enabled" if batch["enabled"] else "disabled"
    typer.echo(f"  batch: {state} ({batch['failures']}/{batch['limit']} failures)")
    if batch["last_error"]:
        typer.echo(f"    last error: {batch['last_error']}")
    if not vector["enabled"]:
        typer.echo("  vector: disabled")
    elif vector["available"]:
        typer.echo(f"  vector: available (dims={vector['dims']})")
    else:
        typer.secho(
            f"  vector: unavailable - {vector['error']}",
            fg=typer.colors.YELLOW,
        )
    if cache["enabled"]:
        typer.echo(f"  cache: {cache['entries']} entries")
    else:
        typer.echo("  cache: disabled")


def create_app() -> "typer.Typer":
    """Return the Typer application powering the ``bridgemem`` CLI."""

    app = typer.Typer(
        help=_app_help,
        no_args_is_help=True,
        rich_markup_mode="rich",
        invoke_without_command=False,
        cls=typer.core.TyperGroup,
    )

    @app.callback()
    def main_callback() -> None:
        """Top-level CLI callback ensuring subcommands are dispatched."""

        return None

    @app.command(
        "status",
        help="Report embedding cache, breaker and vector store state.",
    )
    def status_command(  # noqa: PLR0913 - CLI surface area intentionally explicit
        db: Path = typer.Option(
            ...,
            "--db",
            help="SQLite database holding the memory tables.",
        ),
        bridge: str = typer.Option(..., "--bridge", help="Bridge identifier."),
        login: str = typer.Option(..., "--login", help="Login identifier."),
        agent: str = typer.Option(..., "--agent", help="Agent identifier."),
        config_file: Path | None = typer.Option(
            None,
            "--config",
            "-c",
            help="Optional TOML file layered over the packaged defaults.",
        ),
        log_level: str | None = typer.Option(
            None,
            "--log-level",
            "-l",
            help="Override the configured log level.",
        ),
        log_dir: Path | None = typer.Option(
            None,
            "--log-dir",
            help="Directory receiving the rotated JSON log file.",
        ),
        as_json: bool = typer.Option(
            False,
            "--json",
            help="Emit the status snapshot as JSON.",
        ),
    ) -> None:
        try:
            config = load_config(
                user_config=_read_user_config(config_file),
                env_config=env_config_from_environ(),
                overrides={"log_level": log_level} if log_level else None,
            )
            scope = MemoryScope(bridge_id=bridge, login_id=login, agent_id=agent)
        except (OSError, tomllib.TOMLDecodeError, ValueError) as exc:
            typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1) from exc

        configure_logging(level=config.log_level, log_dir=log_dir)
        logger = get_logger(__name__, command="status")

        manager = MemoryManager(
            db_path=db,
            scope=scope,
            settings=config.memory,
            environ=os.environ,
        )
        try:
            if config.memory.store.vector.enabled:
                manager.vector.ensure_connection()
            status = manager.status().to_mapping()
        finally:
            manager.close()

        logger.info(
            "status-complete",
            db=str(db),
            agent=scope.agent_id,
            vector_available=status["vector"]["available"],
        )
        if as_json:
            typer.echo(json.dumps(status, indent=2, sort_keys=True))
            return
        _render_status(config, status)

    return app


def main() -> None:
    """Execute the CLI application."""

    app = create_app()
    app(prog_name="bridgemem")


__all__ = ["create_app", "main"]
