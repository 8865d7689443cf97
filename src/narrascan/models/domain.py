from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"
RUN_CANCELLED = "cancelled"

RUN_STATUSES = (RUN_RUNNING, RUN_COMPLETED, RUN_FAILED, RUN_CANCELLED)

MODE_MISSING = "missing"
MODE_RETRY_ERRORS = "retry_errors"

WORK_MODES = (MODE_MISSING, MODE_RETRY_ERRORS)


@dataclass(frozen=True)
class InputRecordRow:
    source_name: str
    record_id: str
    text: str
    ground_truth: int | None
    source_checksum: str


@dataclass(frozen=True)
class SourceRow:
    source_name: str
    source_checksum: str
    file_path: str | None
    record_count: int
    ingested_at: datetime


@dataclass(frozen=True)
class RunRow:
    run_id: str
    name: str
    source_name: str
    status: str
    config_json: str
    total_items: int
    completed_items: int
    last_progress_at: datetime | None
    estimated_completion_at: datetime | None
    metrics_json: str | None
    error_text: str | None
    host: str | None
    pid: int | None
    started_at: datetime
    ended_at: datetime | None


@dataclass(frozen=True)
class ResultRow:
    run_id: str
    record_id: str
    verdict_json: str | None
    usage_json: str | None
    detected: bool | None
    confidence: float | None
    elapsed_sec: float | None
    attempt_count: int
    error_occurred: bool
    first_error_message: str | None
    last_error_message: str | None
    error_category: str | None
    processed_at: datetime


@dataclass(frozen=True)
class Verdict:
    """Structured classifier answer."""

    detected: Optional[bool]
    confidence: Optional[float] = None
    rationale: Optional[str] = None
    raw_output: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "detected": self.detected,
            "confidence": self.confidence,
            "rationale": self.rationale,
            "raw_output": self.raw_output,
            "extra": self.extra,
        }


@dataclass(frozen=True)
class Usage:
    elapsed_sec: float = 0.0
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    model: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "elapsed_sec": self.elapsed_sec,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "model": self.model,
        }


@dataclass(frozen=True)
class ClassificationOutcome:
    """
    What one classifier call produced: a verdict, or an error to record.

    `raw_output` on the verdict is kept on error rows too when the model
    answered but the answer could not be used.
    """

    verdict: Optional[Verdict]
    usage: Usage
    error: Optional[str] = None
    error_category: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.verdict is not None


@dataclass(frozen=True)
class ResultPayload:
    """Column values for one results upsert."""

    verdict_json: Optional[str]
    usage_json: Optional[str]
    detected: Optional[bool]
    confidence: Optional[float]
    elapsed_sec: Optional[float]
    error_occurred: bool
    error_message: Optional[str]
    error_category: Optional[str]
    processed_at: datetime
