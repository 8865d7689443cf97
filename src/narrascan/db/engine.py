# src/narrascan/db/engine.py
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import os

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url

from narrascan.config.settings import settings


@dataclass(frozen=True)
class DBPingResult:
    ok: bool
    detail: str


def _ensure_parent_dir(url: str) -> None:
    """File-backed DuckDB/SQLite need their directory to exist before connect."""
    parsed = make_url(url)
    if parsed.get_backend_name() not in {"duckdb", "sqlite"}:
        return
    database = parsed.database
    if not database or database == ":memory:":
        return
    Path(database).parent.mkdir(parents=True, exist_ok=True)


def build_engine(db_url: Optional[str] = None) -> Engine:
    """
    Build a SQLAlchemy Engine.

    db_url override is for tests (temp DBs); CLI defaults to settings.db_url.
    """
    url = db_url or os.getenv("DATABASE_URL") or settings.db_url
    _ensure_parent_dir(url)
    if url.startswith("postgresql"):
        return create_engine(url, future=True, pool_pre_ping=True)
    return create_engine(url, future=True)


def ping_db(engine: Engine) -> DBPingResult:
    """
    Lightweight DB connectivity check.
    Never raises; failures come back as ok=False with the error text.
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("select 1")).scalar_one()
        return DBPingResult(ok=True, detail="ok")
    except Exception as e:
        return DBPingResult(ok=False, detail=f"{type(e).__name__}: {e}")
