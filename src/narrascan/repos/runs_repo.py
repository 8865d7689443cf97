from __future__ import annotations

import os
import socket
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from narrascan.errors import DuplicateRunError
from narrascan.models.domain import (
    RUN_CANCELLED,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_RUNNING,
    RunRow,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


_RUN_COLUMNS = """
    run_id, name, source_name, status, config_json,
    total_items, completed_items, last_progress_at, estimated_completion_at,
    metrics_json, error_text, host, pid, started_at, ended_at
"""


def _row_to_run(row) -> RunRow:
    return RunRow(
        run_id=row[0],
        name=row[1],
        source_name=row[2],
        status=row[3],
        config_json=row[4],
        total_items=int(row[5] or 0),
        completed_items=int(row[6] or 0),
        last_progress_at=row[7],
        estimated_completion_at=row[8],
        metrics_json=row[9],
        error_text=row[10],
        host=row[11],
        pid=row[12],
        started_at=row[13],
        ended_at=row[14],
    )


class RunsRepo:
    """
    Repository for the `runs` table.

    Responsibility:
    - create runs
    - progress and status transitions
    - fetch runs

    Every method runs in its own short transaction; nothing here ever
    shares a transaction with result writes.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def create_run(
        self,
        name: str,
        source_name: str,
        config_json: str,
        total_items: int,
        run_id: str | None = None,
        started_at: datetime | None = None,
    ) -> str:
        run_id = run_id or str(uuid4())
        if self.get_run(run_id) is not None:
            raise DuplicateRunError(run_id)
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    text(
                        """
                        INSERT INTO runs (
                            run_id, name, source_name, status, config_json,
                            total_items, completed_items, host, pid, started_at
                        )
                        VALUES (
                            :run_id, :name, :source_name, :status, :config_json,
                            :total_items, 0, :host, :pid, :started_at
                        )
                        """
                    ),
                    {
                        "run_id": run_id,
                        "name": name,
                        "source_name": source_name,
                        "status": RUN_RUNNING,
                        "config_json": config_json,
                        "total_items": total_items,
                        "host": socket.gethostname(),
                        "pid": os.getpid(),
                        "started_at": started_at or utcnow(),
                    },
                )
        except IntegrityError as exc:
            raise DuplicateRunError(run_id) from exc
        return run_id

    def get_run(self, run_id: str) -> RunRow | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT {_RUN_COLUMNS} FROM runs WHERE run_id = :run_id"),
                {"run_id": run_id},
            ).fetchone()
        if row is None:
            return None
        return _row_to_run(row)

    def list_runs(self, status: str | None = None) -> list[RunRow]:
        query = f"SELECT {_RUN_COLUMNS} FROM runs"
        params: dict = {}
        if status:
            query += " WHERE status = :status"
            params["status"] = status
        query += " ORDER BY started_at DESC"
        with self._engine.connect() as conn:
            rows = conn.execute(text(query), params).fetchall()
        return [_row_to_run(r) for r in rows]

    def update_progress(
        self,
        run_id: str,
        completed: int,
        total: int,
        eta_at: datetime | None,
        progress_at: datetime | None = None,
    ) -> None:
        """
        Single-row progress write in its own transaction.

        completed_items never moves backwards, whatever the caller passes.
        """
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    UPDATE runs SET
                        completed_items = CASE
                            WHEN completed_items > :completed THEN completed_items
                            ELSE :completed
                        END,
                        total_items = :total,
                        last_progress_at = :progress_at,
                        estimated_completion_at = :eta_at
                    WHERE run_id = :run_id
                    """
                ),
                {
                    "run_id": run_id,
                    "completed": completed,
                    "total": total,
                    "progress_at": progress_at or utcnow(),
                    "eta_at": eta_at,
                },
            )

    def mark_running(self, run_id: str) -> None:
        """Re-enter `running` on resume; records which process took over."""
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    UPDATE runs SET
                        status = :status, ended_at = NULL, host = :host, pid = :pid
                    WHERE run_id = :run_id
                    """
                ),
                {
                    "run_id": run_id,
                    "status": RUN_RUNNING,
                    "host": socket.gethostname(),
                    "pid": os.getpid(),
                },
            )

    def mark_completed(self, run_id: str, metrics_json: str, completed_items: int, ended_at: datetime | None = None) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    UPDATE runs SET
                        status = :status,
                        metrics_json = :metrics_json,
                        completed_items = CASE
                            WHEN completed_items > :completed THEN completed_items
                            ELSE :completed
                        END,
                        estimated_completion_at = NULL,
                        error_text = NULL,
                        ended_at = :ended_at
                    WHERE run_id = :run_id
                    """
                ),
                {
                    "run_id": run_id,
                    "status": RUN_COMPLETED,
                    "metrics_json": metrics_json,
                    "completed": completed_items,
                    "ended_at": ended_at or utcnow(),
                },
            )

    def mark_failed(self, run_id: str, error_text: str) -> None:
        self._mark_stopped(run_id, RUN_FAILED, error_text)

    def mark_cancelled(self, run_id: str, reason: str) -> None:
        self._mark_stopped(run_id, RUN_CANCELLED, reason)

    def _mark_stopped(self, run_id: str, status: str, error_text: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    UPDATE runs SET status = :status, error_text = :error_text, ended_at = :ended_at
                    WHERE run_id = :run_id
                    """
                ),
                {"run_id": run_id, "status": status, "error_text": error_text, "ended_at": utcnow()},
            )
