from __future__ import annotations

from narrascan.db.engine import build_engine, ping_db


def test_ping_db_inmemory_duckdb() -> None:
    engine = build_engine("duckdb:///:memory:")
    result = ping_db(engine)
    assert result.ok is True


def test_ping_db_reports_failure_instead_of_raising(tmp_path) -> None:
    # A directory is not a database file
    engine = build_engine(f"duckdb:///{tmp_path}")
    result = ping_db(engine)
    assert result.ok is False
    assert result.detail
