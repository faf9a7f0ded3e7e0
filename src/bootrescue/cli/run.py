"""Batch repair CLI command.

This module provides the ``run`` command, which repairs every target of a
target list file through the Azure CLI control plane and prints one report
line per target as soon as its outcome is known.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from bootrescue.config import RepairConfig, RescueConfig, SchedulerConfig
from bootrescue.control_plane.azure_cli import AzureCliControlPlane
from bootrescue.errors import BatchSetupError, TargetFileError
from bootrescue.models import BatchReport, JobState, RepairOutcome
from bootrescue.orchestrator.runner import Orchestrator
from bootrescue.targets import load_targets

console = Console()

STATE_STYLES = {
    JobState.COMPLETED: "green",
    JobState.SKIPPED: "dim",
    JobState.FAILED: "red",
    JobState.TIMED_OUT: "yellow",
}


def run(
    targets_file: Annotated[
        Path,
        typer.Argument(help="CSV or JSON file with Subscription, ResourceGroup, VmName"),
    ],
    max_concurrent_jobs: Annotated[
        Optional[int],
        typer.Option("--max-concurrent-jobs", "-j", help="Concurrent repairs per subscription"),
    ] = None,
    job_timeout_minutes: Annotated[
        Optional[float],
        typer.Option("--job-timeout-minutes", "-t", help="Time budget per target"),
    ] = None,
    repair_script_id: Annotated[
        Optional[str],
        typer.Option("--repair-script-id", "-s", help="Remote repair procedure to run"),
    ] = None,
    poll_interval_seconds: Annotated[
        Optional[float],
        typer.Option("--poll-interval-seconds", help="Seconds between scheduler ticks"),
    ] = None,
) -> None:
    """Repair every target listed in TARGETS_FILE.

    Exit code is 0 when no target failed or timed out, 1 otherwise, and 2
    when the batch could not run at all.
    """
    from bootrescue.main import get_app_context

    ctx = get_app_context()

    try:
        config = apply_overrides(
            ctx.config,
            scheduler={
                "max_concurrent_jobs": max_concurrent_jobs,
                "job_timeout_minutes": job_timeout_minutes,
                "poll_interval_seconds": poll_interval_seconds,
            },
            repair={"repair_script_id": repair_script_id},
        )
    except ValidationError as e:
        console.print(f"[red]Invalid option:[/red] {escape(str(e))}")
        raise typer.Exit(code=2)

    try:
        records = load_targets(targets_file)
    except TargetFileError as e:
        console.print(f"[red]Error loading targets:[/red] {escape(str(e))}")
        raise typer.Exit(code=2)

    if not records:
        console.print("[yellow]No targets to repair.[/yellow]")
        raise typer.Exit(code=0)

    console.print(
        Panel(
            f"[bold]Targets:[/bold] {len(records)}\n"
            f"[bold]Max concurrent jobs:[/bold] {config.scheduler.max_concurrent_jobs}\n"
            f"[bold]Job timeout:[/bold] {config.scheduler.job_timeout_minutes:g} min\n"
            f"[bold]Repair script:[/bold] {config.repair.repair_script_id}",
            title="Starting batch repair",
            border_style="cyan",
        )
    )

    orchestrator = Orchestrator(
        control_plane=AzureCliControlPlane(config.azure),
        config=config,
        on_outcome=print_outcome,
    )

    try:
        report = asyncio.run(orchestrator.run(records))
    except BatchSetupError as e:
        console.print(f"[red]Batch aborted:[/red] {escape(str(e))}")
        if e.report is not None and e.report.outcomes:
            console.print(render_summary(e.report))
        raise typer.Exit(code=2)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted; running repairs were cancelled.[/yellow]")
        raise typer.Exit(code=130)

    console.print(render_summary(report))
    raise typer.Exit(code=1 if report.has_failures else 0)


def apply_overrides(
    config: RescueConfig,
    scheduler: dict[str, Any],
    repair: dict[str, Any],
) -> RescueConfig:
    """Return a copy of the config with non-None command-line overrides applied.

    Raises:
        ValidationError: If an override is out of range.
    """
    scheduler_values = {k: v for k, v in scheduler.items() if v is not None}
    repair_values = {k: v for k, v in repair.items() if v is not None}
    return config.model_copy(
        update={
            "scheduler": SchedulerConfig(**{**config.scheduler.model_dump(), **scheduler_values}),
            "repair": RepairConfig(**{**config.repair.model_dump(), **repair_values}),
        }
    )


def print_outcome(outcome: RepairOutcome) -> None:
    """Print the report line of one reaped target."""
    style = STATE_STYLES.get(outcome.state, "white")
    line = f"{outcome.target.label}: [{style}]{outcome.report_line()}[/{style}]"
    if outcome.repair_resource_group:
        line += f" [dim](repair resources kept in {outcome.repair_resource_group})[/dim]"
    console.print(line, highlight=False)


def render_summary(report: BatchReport) -> Table:
    """Build the end-of-run summary table, one row per subscription."""
    table = Table(title=f"Batch {report.run_id}")
    table.add_column("Subscription", style="bold cyan")
    table.add_column("Completed", justify="right", style="green")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("TimedOut", justify="right", style="yellow")

    for sub in report.subscriptions:
        counts = {state: 0 for state in STATE_STYLES}
        for outcome in sub.outcomes:
            counts[outcome.state] = counts.get(outcome.state, 0) + 1
        table.add_row(
            sub.subscription_name,
            str(counts[JobState.COMPLETED]),
            str(counts[JobState.SKIPPED]),
            str(counts[JobState.FAILED]),
            str(counts[JobState.TIMED_OUT]),
        )

    totals = report.counts()
    table.add_row(
        "[bold]Total[/bold]",
        str(totals[JobState.COMPLETED]),
        str(totals[JobState.SKIPPED]),
        str(totals[JobState.FAILED]),
        str(totals[JobState.TIMED_OUT]),
    )
    return table
