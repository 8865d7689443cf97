from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich.table import Table

from narrascan.cli.common import build_context, console, fail, load_settings, open_store
from narrascan.cli.export import export_cmd
from narrascan.cli.run import resume_cmd, run_cmd
from narrascan.db.engine import ping_db
from narrascan.db.init_db import schema_version
from narrascan.errors import ChecksumMismatchError
from narrascan.models.domain import RUN_RUNNING, RUN_STATUSES
from narrascan.repos.results_repo import ResultsRepo
from narrascan.repos.runs_repo import RunsRepo
from narrascan.services.controller import eta_from
from narrascan.services.ingest import ingest_source
from narrascan.services.progress import percent_done

app = typer.Typer(help="narrascan: resumable batch classification runs.")


@app.command("init-db")
def init_db_cmd() -> None:
    engine = open_store(load_settings())
    ping = ping_db(engine)
    if not ping.ok:
        fail(f"Database not reachable: {ping.detail}")
    console.print(f"[green]✓[/green] Database initialized (schema version {schema_version(engine)}).")


@app.command("ingest")
def ingest_cmd(
    source_name: str = typer.Option(..., "--source-name", help="Name to register the input under"),
    file: Path = typer.Option(..., "--file", help="CSV with record_id, text and optional ground_truth"),
    id_column: str = typer.Option("record_id", help="Column holding the record id"),
    text_column: str = typer.Option("text", help="Column holding the text to classify"),
    label_column: str = typer.Option("ground_truth", help="Column holding the label, if any"),
) -> None:
    """Ingest a CSV source. Refuses if the source was ingested before from a different file."""
    ctx = build_context()
    try:
        res = ingest_source(
            ctx.engine,
            source_name,
            file,
            id_column=id_column,
            text_column=text_column,
            label_column=label_column,
        )
    except (ChecksumMismatchError, ValueError, FileNotFoundError) as e:
        fail(str(e))

    if res.already_ingested:
        console.print(f"[green]✓[/green] {source_name} already ingested ({res.record_count} records, checksum matches)")
    else:
        console.print(f"[green]✓[/green] Ingested {res.record_count} records into {source_name}")


@app.command("status")
def status_cmd(run_id: str = typer.Option(..., "--run-id", help="Run ID")) -> None:
    """Show one run's state and progress."""
    ctx = build_context()
    run = RunsRepo(ctx.engine).get_run(run_id)
    if run is None:
        fail(f"Run {run_id} not found")

    results = ResultsRepo(ctx.engine)
    n_results = results.count_by_run(run_id)
    n_errors = results.count_errors(run_id)

    table = Table(title=f"Run {run_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("name", run.name)
    table.add_row("source", run.source_name)
    table.add_row("status", run.status)
    table.add_row("progress", f"{run.completed_items}/{run.total_items} ({percent_done(run.completed_items, run.total_items):.1f}%)")
    table.add_row("results", str(n_results))
    table.add_row("errors", str(n_errors))
    table.add_row("started_at", run.started_at.isoformat() if run.started_at else "")
    table.add_row("ended_at", run.ended_at.isoformat() if run.ended_at else "")
    table.add_row("last_progress_at", run.last_progress_at.isoformat() if run.last_progress_at else "")
    eta = eta_from(run)
    if eta and run.status == RUN_RUNNING:
        table.add_row("eta", eta)
    if run.host or run.pid:
        table.add_row("host/pid", f"{run.host or '?'} / {run.pid or '?'}")
    if run.error_text:
        table.add_row("error", run.error_text)
    console.print(table)

    if run.metrics_json:
        metrics = json.loads(run.metrics_json)
        mt = Table(title="Metrics")
        mt.add_column("Metric", style="cyan")
        mt.add_column("Value", style="green", justify="right")
        for k, v in metrics.items():
            mt.add_row(k, f"{v:.4f}" if isinstance(v, float) else str(v))
        console.print(mt)


@app.command("list-runs")
def list_runs_cmd(
    status: Optional[str] = typer.Option(None, "--status", help="Filter by status"),
) -> None:
    """List runs, newest first."""
    if status is not None and status not in RUN_STATUSES:
        fail(f"Unknown status '{status}' (expected one of: {', '.join(RUN_STATUSES)})")

    ctx = build_context()
    runs = RunsRepo(ctx.engine).list_runs(status=status)

    table = Table(title="Runs")
    table.add_column("run_id", style="cyan", no_wrap=True)
    table.add_column("name", style="magenta")
    table.add_column("status", style="green")
    table.add_column("progress", justify="right")
    table.add_column("started_at", style="green")
    for r in runs:
        table.add_row(
            r.run_id,
            r.name,
            r.status,
            f"{r.completed_items}/{r.total_items}",
            r.started_at.isoformat() if r.started_at else "",
        )
    console.print(table)


app.command("run")(run_cmd)
app.command("resume")(resume_cmd)
app.command("export")(export_cmd)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
