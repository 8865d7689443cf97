"""CLI command to export run results."""

from __future__ import annotations

from pathlib import Path

import typer

from narrascan.cli.common import build_context, console, fail
from narrascan.services.export import EXPORT_FORMATS, export_run


def export_cmd(
    run_id: str = typer.Option(..., "--run-id", help="Run ID"),
    fmt: str = typer.Option("both", "--format", help="csv, json or both"),
    out_dir: Path = typer.Option(Path("results"), "--out-dir", help="Output directory"),
) -> None:
    """Write a run's results to CSV and/or JSON."""
    if fmt not in EXPORT_FORMATS:
        fail(f"Unknown format '{fmt}' (expected one of: {', '.join(EXPORT_FORMATS)})")

    ctx = build_context()
    try:
        paths = export_run(ctx.engine, run_id, out_dir, fmt)
    except ValueError as e:
        fail(str(e))

    for p in paths:
        console.print(f"[green]✓[/green] Wrote {p}")
