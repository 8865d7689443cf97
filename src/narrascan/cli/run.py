"""CLI commands that drive runs: run and resume."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.table import Table

from narrascan.cli.common import EXIT_CANCELLED, build_context, console, fail
from narrascan.config.run_config import load_run_config
from narrascan.errors import NarrascanError
from narrascan.models.domain import MODE_MISSING, MODE_RETRY_ERRORS, RUN_CANCELLED
from narrascan.services.controller import RunController, RunReport
from narrascan.services.ingest import ingest_source
from narrascan.services.shutdown import install_signal_handlers

_METRIC_KEYS = ["n_results", "n_errors", "n_scored", "accuracy", "precision", "recall", "f1", "mean_confidence", "ece"]


def _fmt(value) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.4f}"
    return str(value)


def _print_report(report: RunReport) -> None:
    o = report.outcome
    console.print(
        f"Attempted {o.attempted} items this session: "
        f"[green]{o.succeeded} ok[/green], [red]{o.failed} errors[/red]"
    )
    if report.status == RUN_CANCELLED:
        console.print(f"[yellow]Run {report.run_id} cancelled.[/yellow] Resume with: narrascan resume --run-id {report.run_id}")
        raise typer.Exit(EXIT_CANCELLED)

    console.print(f"[green]✓[/green] Run {report.run_id} completed ({o.completed_items} results)")
    if report.metrics:
        table = Table(title="Run Metrics")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green", justify="right")
        for key in _METRIC_KEYS:
            table.add_row(key, _fmt(report.metrics.get(key)))
        console.print(table)


def run_cmd(
    config: Path = typer.Option(..., "--config", help="Run config (YAML or JSON)"),
    name: Optional[str] = typer.Option(None, "--name", help="Run name (defaults to the config's name)"),
    source_name: Optional[str] = typer.Option(None, "--source-name", help="Input source to run over"),
    file: Optional[Path] = typer.Option(None, "--file", help="CSV to ingest under --source-name first"),
) -> None:
    """Start a new run over an ingested source."""
    try:
        run_config = load_run_config(config)
    except ValueError as e:
        fail(str(e))

    run_name = name or run_config.name
    source = source_name or run_config.source_name
    source_file = file or run_config.source_file
    if not run_name:
        fail("A run name is required (--name or 'name' in the config)")
    if not source:
        fail("A source name is required (--source-name or 'source_name' in the config)")

    ctx = build_context()
    controller = RunController(ctx)

    try:
        if source_file is not None:
            res = ingest_source(ctx.engine, source, source_file)
            if not res.already_ingested:
                console.print(f"[green]✓[/green] Ingested {res.record_count} records into {source}")
        run_id = controller.start(run_name, run_config.classifier, source)
        console.print(f"[bold blue]Starting run {run_id} ({run_name})[/bold blue]")
        with install_signal_handlers(ctx.cancel_token):
            report = controller.execute(run_id, MODE_MISSING)
    except NarrascanError as e:
        fail(str(e))
    except (ValueError, FileNotFoundError) as e:
        fail(str(e))

    _print_report(report)


def resume_cmd(
    run_id: str = typer.Option(..., "--run-id", help="Run ID to resume"),
    retry_errors_only: bool = typer.Option(
        False, "--retry-errors-only", help="Only re-attempt items whose last attempt errored"
    ),
) -> None:
    """Resume an interrupted, failed or cancelled run."""
    ctx = build_context()
    controller = RunController(ctx)

    check = controller.validate_resume(run_id)
    if not check.can_resume:
        fail(check.reason)

    mode = MODE_RETRY_ERRORS if retry_errors_only else MODE_MISSING
    console.print(f"[bold blue]Resuming run {run_id}[/bold blue]")
    console.print(controller.summary(run_id, mode), highlight=False)

    try:
        with install_signal_handlers(ctx.cancel_token):
            report = controller.resume(run_id, retry_errors_only=retry_errors_only)
    except NarrascanError as e:
        fail(str(e))
    except ValueError as e:
        fail(str(e))

    _print_report(report)
