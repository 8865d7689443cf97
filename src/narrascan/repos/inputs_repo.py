"""Input records + source checksum gate."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Iterator

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from narrascan.models.domain import (
    MODE_MISSING,
    MODE_RETRY_ERRORS,
    WORK_MODES,
    InputRecordRow,
    SourceRow,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Both modes are one set-oriented statement over the run's source:
# anti-join for never-attempted records, semi-join for errored ones.
_REMAINING_PREDICATES = {
    MODE_MISSING: """
        NOT EXISTS (
            SELECT 1 FROM results res
            WHERE res.run_id = r.run_id AND res.record_id = ir.record_id
        )
    """,
    MODE_RETRY_ERRORS: """
        EXISTS (
            SELECT 1 FROM results res
            WHERE res.run_id = r.run_id AND res.record_id = ir.record_id
              AND res.error_occurred = TRUE
        )
    """,
}


def _predicate(mode: str) -> str:
    if mode not in WORK_MODES:
        raise ValueError(f"Unknown work mode: {mode!r} (expected one of {', '.join(WORK_MODES)})")
    return _REMAINING_PREDICATES[mode]


class InputsRepo:
    """
    Repository for `sources` and `input_records`.

    Records are written once per source and never updated.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    # -- checksum gate -------------------------------------------------

    def get_source(self, source_name: str) -> SourceRow | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(
                    """
                    SELECT source_name, source_checksum, file_path, record_count, ingested_at
                    FROM sources
                    WHERE source_name = :source_name
                    """
                ),
                {"source_name": source_name},
            ).fetchone()
        if row is None:
            return None
        return SourceRow(
            source_name=row[0],
            source_checksum=row[1],
            file_path=row[2],
            record_count=int(row[3]),
            ingested_at=row[4],
        )

    def verify_or_record_checksum(
        self,
        source_name: str,
        checksum: str,
        file_path: str | None = None,
    ) -> bool:
        """
        First call for a source records `checksum`; later calls compare.
        False means the caller must abort.
        """
        with self._engine.begin() as conn:
            return self._verify_or_record(conn, source_name, checksum, file_path)

    def _verify_or_record(
        self,
        conn: Connection,
        source_name: str,
        checksum: str,
        file_path: str | None,
    ) -> bool:
        existing = conn.execute(
            text("SELECT source_checksum FROM sources WHERE source_name = :source_name"),
            {"source_name": source_name},
        ).fetchone()
        if existing is not None:
            return existing[0] == checksum

        conn.execute(
            text(
                """
                INSERT INTO sources (source_name, source_checksum, file_path, record_count, ingested_at)
                VALUES (:source_name, :checksum, :file_path, 0, :ingested_at)
                """
            ),
            {
                "source_name": source_name,
                "checksum": checksum,
                "file_path": file_path,
                "ingested_at": utcnow(),
            },
        )
        return True

    # -- ingest --------------------------------------------------------

    def ingest(
        self,
        source_name: str,
        checksum: str,
        records: Iterable[dict],
        file_path: str | None = None,
    ) -> tuple[bool, int]:
        """
        Record the checksum and insert records in one transaction.

        Returns (checksum_ok, record_count). Re-ingesting an unchanged
        source inserts nothing and returns the stored count.
        """
        with self._engine.begin() as conn:
            if not self._verify_or_record(conn, source_name, checksum, file_path):
                return False, 0

            already = self._count_for_source(conn, source_name)
            if already > 0:
                return True, already

            rows = [
                {
                    "source_name": source_name,
                    "record_id": r["record_id"],
                    "text": r["text"],
                    "ground_truth": r.get("ground_truth"),
                    "source_checksum": checksum,
                }
                for r in records
            ]
            if rows:
                conn.execute(
                    text(
                        """
                        INSERT INTO input_records (source_name, record_id, text, ground_truth, source_checksum)
                        VALUES (:source_name, :record_id, :text, :ground_truth, :source_checksum)
                        """
                    ),
                    rows,
                )

            conn.execute(
                text("UPDATE sources SET record_count = :n WHERE source_name = :source_name"),
                {"n": len(rows), "source_name": source_name},
            )
        return True, len(rows)

    def count_for_source(self, source_name: str) -> int:
        with self._engine.connect() as conn:
            return self._count_for_source(conn, source_name)

    @staticmethod
    def _count_for_source(conn: Connection, source_name: str) -> int:
        return int(
            conn.execute(
                text("SELECT COUNT(*) FROM input_records WHERE source_name = :source_name"),
                {"source_name": source_name},
            ).scalar_one()
        )

    # -- remaining work ------------------------------------------------

    def remaining_work(self, run_id: str, mode: str = MODE_MISSING, chunk_size: int = 500) -> Iterator[InputRecordRow]:
        """
        Stream the records a run still has to attempt.

        The query runs once; rows are fetched in chunks on a dedicated
        connection whose snapshot is unaffected by result writes made
        while iterating.
        """
        stmt = text(
            f"""
            SELECT ir.source_name, ir.record_id, ir.text, ir.ground_truth, ir.source_checksum
            FROM input_records ir
            JOIN runs r ON r.source_name = ir.source_name
            WHERE r.run_id = :run_id
              AND {_predicate(mode)}
            ORDER BY ir.record_id
            """
        )
        with self._engine.connect() as conn:
            result = conn.execute(stmt, {"run_id": run_id})
            while True:
                chunk = result.fetchmany(chunk_size)
                if not chunk:
                    break
                for row in chunk:
                    yield InputRecordRow(
                        source_name=row[0],
                        record_id=row[1],
                        text=row[2],
                        ground_truth=row[3],
                        source_checksum=row[4],
                    )

    def count_remaining(self, run_id: str, mode: str = MODE_MISSING) -> int:
        stmt = text(
            f"""
            SELECT COUNT(*)
            FROM input_records ir
            JOIN runs r ON r.source_name = ir.source_name
            WHERE r.run_id = :run_id
              AND {_predicate(mode)}
            """
        )
        with self._engine.connect() as conn:
            return int(conn.execute(stmt, {"run_id": run_id}).scalar_one())
