from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from narrascan.db.schema import SCHEMA_VERSION, Base
from narrascan.errors import StorageError

logger = logging.getLogger(__name__)


def ensure_schema(engine: Engine) -> None:
    """
    Create missing tables/constraints, then record the schema version.

    Safe on every process start: create_all only issues DDL for absent
    tables. The schema_meta upsert is a real write, so a read-only or
    unreachable store fails here rather than mid-run.

    DuckDB + SQLAlchemy can behave oddly with transactional DDL in a single
    managed transaction, so DDL goes through a plain connection with an
    explicit commit.
    """
    try:
        conn = engine.connect()
    except Exception as exc:
        raise StorageError(f"Store unreachable ({engine.url.render_as_string(hide_password=True)}): {exc}") from exc

    try:
        Base.metadata.create_all(bind=conn, checkfirst=True)
        conn.commit()

        conn.execute(
            text(
                """
                INSERT INTO schema_meta (meta_key, meta_value)
                VALUES ('schema_version', :version)
                ON CONFLICT (meta_key) DO UPDATE SET meta_value = EXCLUDED.meta_value
                """
            ),
            {"version": str(SCHEMA_VERSION)},
        )
        conn.commit()
    except SQLAlchemyError as exc:
        conn.rollback()
        raise StorageError(f"Cannot initialize schema (store read-only or unavailable?): {exc}") from exc
    finally:
        conn.close()

    logger.debug("Schema ensured (version %s)", SCHEMA_VERSION)


def schema_version(engine: Engine) -> int | None:
    with engine.connect() as conn:
        row = conn.execute(
            text("SELECT meta_value FROM schema_meta WHERE meta_key = 'schema_version'")
        ).fetchone()
    return int(row[0]) if row else None
