"""Shared helpers for CLI commands."""

from __future__ import annotations

import os

import typer
from rich.console import Console
from rich.markup import escape
from sqlalchemy.engine import Engine

from narrascan.config.settings import Settings
from narrascan.db.engine import build_engine
from narrascan.db.init_db import ensure_schema
from narrascan.errors import StorageError
from narrascan.logging_config import configure_logging
from narrascan.services.context import RunContext

console = Console()

EXIT_FATAL = 1
EXIT_CANCELLED = 130


def load_settings() -> Settings:
    # Fresh instance per command so env changes (tests, wrappers) apply
    return Settings()


def open_store(settings: Settings) -> Engine:
    engine = build_engine(os.getenv("DATABASE_URL") or settings.db_url)
    try:
        ensure_schema(engine)
    except StorageError as e:
        fail(str(e))
    return engine


def build_context() -> RunContext:
    settings = load_settings()
    configure_logging(settings.log_level)
    return RunContext(engine=open_store(settings), settings=settings)


def fail(message: str, code: int = EXIT_FATAL) -> None:
    console.print(f"[red]✗[/red] {escape(message)}")
    raise typer.Exit(code)
