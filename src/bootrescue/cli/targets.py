"""Target list CLI commands.

This module provides commands for checking a target list file before a run.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from bootrescue.errors import TargetFileError
from bootrescue.orchestrator.grouper import group_by_subscription
from bootrescue.targets import load_targets

app = typer.Typer(help="Target list commands")
console = Console()


@app.command()
def show(
    targets_file: Annotated[
        Path,
        typer.Argument(help="CSV or JSON file with Subscription, ResourceGroup, VmName"),
    ],
) -> None:
    """Validate a target list and show it grouped by subscription.

    Groups are listed in the order a run would process them.
    """
    try:
        records = load_targets(targets_file)
    except TargetFileError as e:
        console.print(f"[red]Error loading targets:[/red] {escape(str(e))}")
        raise typer.Exit(code=2)

    groups = group_by_subscription(records)
    if not groups:
        console.print("[yellow]No targets found.[/yellow]")
        return

    table = Table(title=f"Targets ({sum(len(g.records) for g in groups)})")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Subscription", style="bold cyan")
    table.add_column("Resource Group")
    table.add_column("VM")

    for order, group in enumerate(groups, start=1):
        for record in group.records:
            table.add_row(str(order), group.subscription_name, record.resource_group, record.vm_name)

    console.print(table)
    console.print(f"[dim]{len(groups)} subscription batch(es)[/dim]")
