"""Main CLI entry point for bootrescue.

This module provides the main Typer application with the batch ``run``
command and the ``targets`` sub-commands.

Usage:
    bootrescue run targets.csv --max-concurrent-jobs 10
    bootrescue targets show targets.csv
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.markup import escape

from bootrescue.cli import run as run_cli
from bootrescue.cli import targets as targets_cli
from bootrescue.config import RescueConfig, load_config
from bootrescue.logging import setup_logging

app = typer.Typer(
    name="bootrescue",
    help="bootrescue: batch repair of VMs stuck in a boot loop",
    no_args_is_help=True,
)

app.command(name="run")(run_cli.run)
app.add_typer(targets_cli.app, name="targets", help="Inspect target lists")

console = Console(stderr=True)


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded bootrescue configuration
    """

    def __init__(self, config: RescueConfig):
        self.config = config


_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: RescueConfig) -> AppContext:
    """Initialize the global application context."""
    global _app_context
    _app_context = AppContext(config)
    return _app_context


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure global options and initialize application context.

    Args:
        config_path: Optional path to TOML configuration file
        verbose: Enable debug-level logging
    """
    try:
        config = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/red] {escape(str(e))}")
        raise typer.Exit(code=2)

    if verbose:
        config.logging.level = "DEBUG"

    setup_logging(config.logging)
    initialize_context(config)

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]")


if __name__ == "__main__":
    app()
