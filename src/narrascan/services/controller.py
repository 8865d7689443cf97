"""
Run lifecycle.

    start ─> running ──> completed      (terminal)
                │  ──> failed ──┐
                │  ──> cancelled┤
                └───<── resume ─┘

A completed run is never reopened. Everything else can be resumed, and a
resume always continues the same run_id with the config snapshot stored at
creation.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Dict, Optional

from narrascan.config.run_config import ClassifierConfig
from narrascan.errors import ChecksumMismatchError, NarrascanError, ResumeRejectedError, StorageError
from narrascan.logging_config import run_log_files
from narrascan.models.domain import (
    MODE_MISSING,
    MODE_RETRY_ERRORS,
    RUN_CANCELLED,
    RUN_COMPLETED,
    WORK_MODES,
    RunRow,
)
from narrascan.repos.inputs_repo import InputsRepo
from narrascan.repos.results_repo import ResultsRepo
from narrascan.repos.runs_repo import RunsRepo
from narrascan.services.context import RunContext
from narrascan.services.executor import BatchExecutor, ExecutionOutcome
from narrascan.services.ingest import file_checksum, ingest_source
from narrascan.services.locking import LockManager
from narrascan.services.progress import describe_resume, format_duration

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResumeCheck:
    can_resume: bool
    reason: str
    prior_completed: int


@dataclass(frozen=True)
class RunReport:
    run_id: str
    status: str
    outcome: ExecutionOutcome
    metrics: Optional[Dict[str, object]] = None


class RunController:
    def __init__(
        self,
        ctx: RunContext,
        inputs: InputsRepo | None = None,
        runs: RunsRepo | None = None,
        results: ResultsRepo | None = None,
        locks: LockManager | None = None,
        executor: BatchExecutor | None = None,
    ) -> None:
        self.ctx = ctx
        self.inputs = inputs or InputsRepo(ctx.engine)
        self.runs = runs or RunsRepo(ctx.engine)
        self.results = results or ResultsRepo(ctx.engine)
        self.locks = locks or LockManager(ctx.lock_dir)
        self.executor = executor or BatchExecutor(ctx, self.inputs, self.runs, self.results)

    # -- lifecycle -----------------------------------------------------

    def start(self, name: str, classifier_config: ClassifierConfig, source_name: str) -> str:
        """Create a run over an ingested source and return its run_id."""
        source = self.inputs.get_source(source_name)
        if source is None:
            raise ValueError(f"Source '{source_name}' has not been ingested")
        total = self.inputs.count_for_source(source_name)
        run_id = self.runs.create_run(
            name=name,
            source_name=source_name,
            config_json=classifier_config.snapshot_json(),
            total_items=total,
            started_at=self.ctx.now_fn(),
        )
        logger.info("Created run %s (%s) over %s: %d items", run_id, name, source_name, total)
        return run_id

    def validate_resume(self, run_id: str) -> ResumeCheck:
        run = self.runs.get_run(run_id)
        if run is None:
            return ResumeCheck(False, f"Run {run_id} not found", 0)
        prior = max(run.completed_items, self.results.count_by_run(run_id))
        if run.status == RUN_COMPLETED:
            return ResumeCheck(
                False,
                f"Run {run_id} is already completed ({run.completed_items}/{run.total_items}); start a new run instead",
                prior,
            )
        if run.status == RUN_CANCELLED:
            return ResumeCheck(True, f"Run {run_id} was cancelled ({run.error_text or 'no reason recorded'}); resuming", prior)
        return ResumeCheck(True, f"Run {run_id} is {run.status}; resuming", prior)

    def finalize(self, run_id: str) -> Dict[str, object]:
        """
        Recompute metrics from all results and mark the run completed.

        On an already-completed run the metrics are recomputed but the
        original end time is kept, so repeated calls agree.
        """
        run = self._require_run(run_id)
        already_completed = run.status == RUN_COMPLETED and run.ended_at is not None
        ended_at = run.ended_at if already_completed else self.ctx.now_fn()

        metrics = dict(self.ctx.metrics_fn(self.results.scored_rows(run_id)))
        runtime = max((ended_at - run.started_at).total_seconds(), 0.0)
        metrics["total_runtime_sec"] = runtime
        metrics["avg_time_per_item_sec"] = runtime / run.total_items if run.total_items else None

        completed = self.results.count_by_run(run_id)
        self.runs.mark_completed(run_id, json.dumps(metrics), completed, ended_at=ended_at)
        if already_completed:
            logger.info("Run %s already completed; metrics recomputed", run_id)
        else:
            logger.info("Run %s completed: %d/%d items, %s errors", run_id, completed, run.total_items, metrics.get("n_errors"))
        return metrics

    def mark_failed(self, run_id: str, reason: str) -> None:
        try:
            self.runs.mark_failed(run_id, reason)
        except Exception as e:
            # Store may be the thing that failed
            logger.error("Could not mark run %s failed: %s", run_id, e)
            return
        logger.error("Run %s failed: %s", run_id, reason)

    def mark_cancelled(self, run_id: str, reason: str) -> None:
        self.runs.mark_cancelled(run_id, reason)
        logger.warning("Run %s cancelled: %s", run_id, reason)

    # -- execution -----------------------------------------------------

    def summary(self, run_id: str, mode: str = MODE_MISSING) -> str:
        """Completed / remaining / rough ETA, printed before work starts."""
        run = self._require_run(run_id)
        completed = max(run.completed_items, self.results.count_by_run(run_id))
        remaining = self.inputs.count_remaining(run_id, mode)
        if mode == MODE_RETRY_ERRORS:
            lines = [f"Completed: {completed}/{run.total_items}", f"Errors to retry: {remaining}"]
        else:
            lines = describe_resume(completed, run.total_items, remaining).splitlines()
        mean_elapsed = self.results.mean_elapsed_sec(run_id)
        if mean_elapsed and remaining:
            eta_sec = mean_elapsed * remaining / self.ctx.workers
            lines.append(f"ETA: ~{format_duration(eta_sec)} (at {mean_elapsed:.1f}s/item)")
        return "\n".join(lines)

    def execute(self, run_id: str, mode: str = MODE_MISSING) -> RunReport:
        """
        Lock the run, drain its remaining work, then finalize or record why not.

        RunLockedError propagates before anything is changed.
        """
        if mode not in WORK_MODES:
            raise ValueError(f"Unknown work mode: {mode}")

        with self.locks.acquire(run_id), run_log_files(self.ctx.log_dir, run_id):
            run = self._require_run(run_id)
            # Re-check under the lock; another process may have finished it
            if run.status == RUN_COMPLETED:
                raise ResumeRejectedError(run_id, "run is already completed")

            config = ClassifierConfig.from_snapshot(run.config_json)
            classifier = self.ctx.build_classifier(config)

            self.runs.mark_running(run_id)
            prior = self.results.count_by_run(run_id)
            logger.info("Run %s: %s", run_id, self.summary(run_id, mode).replace("\n", " | "))

            try:
                outcome = self.executor.run(
                    run_id=run_id,
                    mode=mode,
                    classifier=classifier,
                    config=config,
                    total_items=run.total_items,
                    prior_completed=prior,
                )
            except Exception as e:
                self.mark_failed(run_id, _failure_text(e))
                raise

            if outcome.cancelled:
                self.mark_cancelled(run_id, self.ctx.cancel_token.reason or "cancelled")
                return RunReport(run_id, RUN_CANCELLED, outcome)

            try:
                metrics = self.finalize(run_id)
            except Exception as e:
                self.mark_failed(run_id, _failure_text(e))
                raise
            if mode == MODE_RETRY_ERRORS and outcome.failed:
                logger.warning("Run %s: %d items still in error after retry", run_id, outcome.failed)
            return RunReport(run_id, RUN_COMPLETED, outcome, metrics)

    def run_new(
        self,
        name: str,
        classifier_config: ClassifierConfig,
        source_name: str,
        source_file: str | Path | None = None,
    ) -> RunReport:
        if source_file is not None:
            ingest_source(self.ctx.engine, source_name, source_file)
        run_id = self.start(name, classifier_config, source_name)
        return self.execute(run_id, MODE_MISSING)

    def resume(self, run_id: str, retry_errors_only: bool = False) -> RunReport:
        check = self.validate_resume(run_id)
        if not check.can_resume:
            raise ResumeRejectedError(run_id, check.reason)
        run = self._require_run(run_id)
        if run.status == RUN_CANCELLED:
            logger.warning(check.reason)
        else:
            logger.info(check.reason)

        self._verify_source(run)
        mode = MODE_RETRY_ERRORS if retry_errors_only else MODE_MISSING
        return self.execute(run_id, mode)

    # -- helpers -------------------------------------------------------

    def _verify_source(self, run: RunRow) -> None:
        source = self.inputs.get_source(run.source_name)
        if source is None:
            raise StorageError(f"Source '{run.source_name}' for run {run.run_id} is missing from the store")
        if not source.file_path:
            return
        path = Path(source.file_path)
        if not path.exists():
            logger.warning("Source file %s is gone; skipping checksum re-verification", path)
            return
        actual = file_checksum(path)
        if actual != source.source_checksum:
            err = ChecksumMismatchError(run.source_name, source.source_checksum, actual)
            self.mark_failed(run.run_id, str(err))
            raise err

    def _require_run(self, run_id: str) -> RunRow:
        run = self.runs.get_run(run_id)
        if run is None:
            raise ValueError(f"Run {run_id} not found")
        return run


def eta_from(run: RunRow) -> Optional[str]:
    if run.estimated_completion_at is None or run.last_progress_at is None:
        return None
    delta: timedelta = run.estimated_completion_at - run.last_progress_at
    return format_duration(delta.total_seconds())


def _failure_text(exc: BaseException) -> str:
    if isinstance(exc, NarrascanError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"
