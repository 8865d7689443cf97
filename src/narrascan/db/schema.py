# src/narrascan/db/schema.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Double, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

SCHEMA_VERSION = 4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class SchemaMeta(Base):
    """
    Key/value bookkeeping (schema version). Also the write probe at startup.
    """
    __tablename__ = "schema_meta"

    meta_key: Mapped[str] = mapped_column(String, primary_key=True)
    meta_value: Mapped[str] = mapped_column(Text, nullable=False)


class Source(Base):
    """
    One row per logical input dataset. Holds the checksum of the first ingest.
    """
    __tablename__ = "sources"

    source_name: Mapped[str] = mapped_column(String, primary_key=True)
    source_checksum: Mapped[str] = mapped_column(String, nullable=False)
    file_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ingested_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)


class InputRecord(Base):
    """
    One unit of work. Immutable after ingest.
    """
    __tablename__ = "input_records"

    # (source_name, record_id) is the natural key
    source_name: Mapped[str] = mapped_column(String, primary_key=True)
    record_id: Mapped[str] = mapped_column(String, primary_key=True)

    text: Mapped[str] = mapped_column(Text, nullable=False)
    ground_truth: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    source_checksum: Mapped[str] = mapped_column(String, nullable=False)


class Run(Base):
    """
    One row per run; survives any number of resumes.
    """
    __tablename__ = "runs"

    run_id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    source_name: Mapped[str] = mapped_column(String, nullable=False)

    status: Mapped[str] = mapped_column(String, nullable=False)  # running/completed/failed/cancelled
    config_json: Mapped[str] = mapped_column(Text, nullable=False)

    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_progress_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    estimated_completion_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    metrics_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    host: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    pid: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Result(Base):
    """
    Outcome of classifying one record under one run.

    (run_id, record_id) is the idempotency key: retries update in place.
    No secondary indexes on columns that get rewritten on retry.
    """
    __tablename__ = "results"

    run_id: Mapped[str] = mapped_column(String, primary_key=True)
    record_id: Mapped[str] = mapped_column(String, primary_key=True)

    verdict_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    usage_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Flattened from verdict/usage for set-oriented metrics
    detected: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    confidence: Mapped[Optional[float]] = mapped_column(Double, nullable=True)
    elapsed_sec: Mapped[Optional[float]] = mapped_column(Double, nullable=True)

    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    error_occurred: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    first_error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_category: Mapped[Optional[str]] = mapped_column(String, nullable=True)  # transient/permanent

    processed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)
