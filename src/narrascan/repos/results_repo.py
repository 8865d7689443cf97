"""Per-record results repository."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from narrascan.models.domain import ResultPayload, ResultRow

# attempt_count and first_error_message are the only columns that look at
# the existing row; everything else reflects the latest attempt.
_UPSERT_SQL = text(
    """
    INSERT INTO results (
        run_id, record_id, verdict_json, usage_json,
        detected, confidence, elapsed_sec,
        attempt_count, error_occurred,
        first_error_message, last_error_message, error_category,
        processed_at
    )
    VALUES (
        :run_id, :record_id, :verdict_json, :usage_json,
        :detected, :confidence, :elapsed_sec,
        1, :error_occurred,
        :error_message, :error_message, :error_category,
        :processed_at
    )
    ON CONFLICT (run_id, record_id) DO UPDATE SET
        verdict_json = EXCLUDED.verdict_json,
        usage_json = EXCLUDED.usage_json,
        detected = EXCLUDED.detected,
        confidence = EXCLUDED.confidence,
        elapsed_sec = EXCLUDED.elapsed_sec,
        attempt_count = attempt_count + 1,
        error_occurred = EXCLUDED.error_occurred,
        first_error_message = COALESCE(first_error_message, EXCLUDED.first_error_message),
        last_error_message = EXCLUDED.last_error_message,
        error_category = EXCLUDED.error_category,
        processed_at = EXCLUDED.processed_at
    """
)

_RESULT_COLUMNS = """
    run_id, record_id, verdict_json, usage_json, detected, confidence, elapsed_sec,
    attempt_count, error_occurred, first_error_message, last_error_message,
    error_category, processed_at
"""


@dataclass(frozen=True)
class ScoredRow:
    """One result joined with its record's ground truth, for metrics."""

    record_id: str
    detected: Optional[bool]
    confidence: Optional[float]
    ground_truth: Optional[int]
    error_occurred: bool
    elapsed_sec: Optional[float]


def _row_to_result(row) -> ResultRow:
    return ResultRow(
        run_id=row[0],
        record_id=row[1],
        verdict_json=row[2],
        usage_json=row[3],
        detected=None if row[4] is None else bool(row[4]),
        confidence=row[5],
        elapsed_sec=row[6],
        attempt_count=int(row[7]),
        error_occurred=bool(row[8]),
        first_error_message=row[9],
        last_error_message=row[10],
        error_category=row[11],
        processed_at=row[12],
    )


class ResultsRepo:
    """
    Repository for the `results` table.

    `upsert_result` takes the caller's connection: the batch executor owns
    the transaction and decides when it commits.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @staticmethod
    def upsert_result(conn: Connection, run_id: str, record_id: str, payload: ResultPayload) -> None:
        conn.execute(
            _UPSERT_SQL,
            {
                "run_id": run_id,
                "record_id": record_id,
                "verdict_json": payload.verdict_json,
                "usage_json": payload.usage_json,
                "detected": payload.detected,
                "confidence": payload.confidence,
                "elapsed_sec": payload.elapsed_sec,
                "error_occurred": payload.error_occurred,
                "error_message": payload.error_message if payload.error_occurred else None,
                "error_category": payload.error_category if payload.error_occurred else None,
                "processed_at": payload.processed_at,
            },
        )

    def upsert_one(self, run_id: str, record_id: str, payload: ResultPayload) -> None:
        """Upsert in a transaction of its own (tools and tests)."""
        with self._engine.begin() as conn:
            self.upsert_result(conn, run_id, record_id, payload)

    def get(self, run_id: str, record_id: str) -> ResultRow | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT {_RESULT_COLUMNS} FROM results WHERE run_id = :run_id AND record_id = :record_id"),
                {"run_id": run_id, "record_id": record_id},
            ).fetchone()
        return _row_to_result(row) if row is not None else None

    def list_by_run(self, run_id: str) -> List[ResultRow]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(f"SELECT {_RESULT_COLUMNS} FROM results WHERE run_id = :run_id ORDER BY record_id"),
                {"run_id": run_id},
            ).fetchall()
        return [_row_to_result(r) for r in rows]

    def count_by_run(self, run_id: str) -> int:
        with self._engine.connect() as conn:
            return int(
                conn.execute(
                    text("SELECT COUNT(*) FROM results WHERE run_id = :run_id"),
                    {"run_id": run_id},
                ).scalar_one()
            )

    def count_errors(self, run_id: str) -> int:
        with self._engine.connect() as conn:
            return int(
                conn.execute(
                    text("SELECT COUNT(*) FROM results WHERE run_id = :run_id AND error_occurred = TRUE"),
                    {"run_id": run_id},
                ).scalar_one()
            )

    def mean_elapsed_sec(self, run_id: str) -> Optional[float]:
        with self._engine.connect() as conn:
            value = conn.execute(
                text("SELECT AVG(elapsed_sec) FROM results WHERE run_id = :run_id AND elapsed_sec IS NOT NULL"),
                {"run_id": run_id},
            ).scalar_one()
        return float(value) if value is not None else None

    def scored_rows(self, run_id: str) -> List[ScoredRow]:
        """All results of a run joined with ground truth from its source."""
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT res.record_id, res.detected, res.confidence, ir.ground_truth,
                           res.error_occurred, res.elapsed_sec
                    FROM results res
                    JOIN runs r ON r.run_id = res.run_id
                    LEFT JOIN input_records ir
                      ON ir.source_name = r.source_name AND ir.record_id = res.record_id
                    WHERE res.run_id = :run_id
                    ORDER BY res.record_id
                    """
                ),
                {"run_id": run_id},
            ).fetchall()
        return [
            ScoredRow(
                record_id=r[0],
                detected=None if r[1] is None else bool(r[1]),
                confidence=r[2],
                ground_truth=r[3],
                error_occurred=bool(r[4]),
                elapsed_sec=r[5],
            )
            for r in rows
        ]
