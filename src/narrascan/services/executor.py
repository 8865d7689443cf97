"""
Batch executor: drain a run's remaining work through the classifier.

Per item: classify (bounded by a call-level timeout) -> upsert the result on
the open transaction. Every `commit_every` items the transaction is
committed and progress is written on a separate connection. A crash can
therefore lose at most `commit_every - 1` recorded items, and those are
simply picked up again by the next resume.

Classification may run on a small thread pool; this thread stays the only
writer and records outcomes in work order.
"""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from narrascan.config.run_config import ClassifierConfig
from narrascan.errors import StorageError
from narrascan.models.domain import (
    MODE_MISSING,
    ClassificationOutcome,
    InputRecordRow,
    ResultPayload,
    Usage,
)
from narrascan.repos.inputs_repo import InputsRepo
from narrascan.repos.results_repo import ResultsRepo
from narrascan.repos.runs_repo import RunsRepo
from narrascan.services.classifier import Classifier
from narrascan.services.context import RunContext
from narrascan.services.error_categories import ErrorCategory, categorize_exception, describe_exception
from narrascan.services.progress import ProgressTracker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionOutcome:
    attempted: int
    succeeded: int
    failed: int
    cancelled: bool
    completed_items: int


def build_payload(outcome: ClassificationOutcome, processed_at: datetime) -> ResultPayload:
    verdict = outcome.verdict
    ok = outcome.ok
    return ResultPayload(
        verdict_json=json.dumps(verdict.to_dict(), ensure_ascii=False) if verdict is not None else None,
        usage_json=json.dumps(outcome.usage.to_dict()),
        detected=verdict.detected if ok else None,
        confidence=verdict.confidence if ok else None,
        elapsed_sec=outcome.usage.elapsed_sec,
        error_occurred=not ok,
        error_message=None if ok else (outcome.error or "Classifier returned no verdict"),
        error_category=None if ok else (outcome.error_category or ErrorCategory.TRANSIENT.value),
        processed_at=processed_at,
    )


def _timeout_outcome(timeout_s: float, model: Optional[str]) -> ClassificationOutcome:
    return ClassificationOutcome(
        verdict=None,
        usage=Usage(elapsed_sec=float(timeout_s), model=model),
        error=f"Classifier call timed out after {timeout_s:g}s",
        error_category=ErrorCategory.TRANSIENT.value,
    )


class BatchExecutor:
    """
    Single-writer loop over a run's remaining work.

    Classifier calls that miss their deadline are abandoned, not killed.
    Their worker threads are still joined at interpreter exit, so a call
    that never returns holds the process open after the run has ended.
    Classifiers should carry their own transport timeout.
    """

    def __init__(
        self,
        ctx: RunContext,
        inputs: InputsRepo | None = None,
        runs: RunsRepo | None = None,
        results: ResultsRepo | None = None,
        progress: ProgressTracker | None = None,
    ) -> None:
        self.ctx = ctx
        self.inputs = inputs or InputsRepo(ctx.engine)
        self.runs = runs or RunsRepo(ctx.engine)
        self.results = results or ResultsRepo(ctx.engine)
        self.progress = progress or ProgressTracker(self.runs, now_fn=ctx.now_fn)

    def run(
        self,
        run_id: str,
        mode: str,
        classifier: Classifier,
        config: ClassifierConfig,
        total_items: int,
        prior_completed: int,
    ) -> ExecutionOutcome:
        """
        Process everything `remaining_work(run_id, mode)` returns.

        `prior_completed` is the number of result rows that already exist;
        in missing mode every recorded item adds one to it.
        """
        # Materialize before the first write so the read cursor never sees them
        work: List[InputRecordRow] = list(self.inputs.remaining_work(run_id, mode))
        logger.info("Run %s: %d items to process (mode=%s)", run_id, len(work), mode)

        session_start = self.ctx.now_fn()
        commit_every = self.ctx.commit_every
        timeout_s = self.ctx.classify_timeout_s
        counts_new_rows = mode == MODE_MISSING

        attempted = succeeded = failed = 0
        since_commit = 0
        cancelled = False

        def completed_so_far() -> int:
            return prior_completed + (attempted if counts_new_rows else 0)

        pool = ThreadPoolExecutor(max_workers=self.ctx.workers, thread_name_prefix="classify")
        abandoned: List[ThreadPoolExecutor] = []
        in_flight: Deque[Tuple[InputRecordRow, Future, float]] = deque()
        pending = iter(work)
        exhausted = False

        conn = self.ctx.engine.connect()
        trans = conn.begin()
        try:
            while True:
                # Keep the window full unless we are stopping
                while not exhausted and len(in_flight) < self.ctx.workers:
                    if self.ctx.cancel_token.cancelled:
                        cancelled = True
                        exhausted = True
                        break
                    record = next(pending, None)
                    if record is None:
                        exhausted = True
                        break
                    future = pool.submit(classifier.classify, record, config)
                    in_flight.append((record, future, time.monotonic() + timeout_s))

                if not in_flight:
                    break

                record, future, deadline = in_flight.popleft()
                try:
                    outcome = future.result(timeout=max(deadline - time.monotonic(), 0.0))
                except FuturesTimeoutError:
                    outcome = _timeout_outcome(timeout_s, config.model_name)
                    logger.warning(
                        "Classifier call for %s exceeded %gs; abandoning its worker thread "
                        "(a call that never returns delays process exit)",
                        record.record_id,
                        timeout_s,
                    )
                    # The worker is stuck in the call; stop submitting to its pool
                    abandoned.append(pool)
                    pool.shutdown(wait=False)
                    pool = ThreadPoolExecutor(max_workers=self.ctx.workers, thread_name_prefix="classify")
                except Exception as exc:
                    outcome = ClassificationOutcome(
                        verdict=None,
                        usage=Usage(model=config.model_name),
                        error=describe_exception(exc),
                        error_category=categorize_exception(exc).value,
                    )

                payload = build_payload(outcome, self.ctx.now_fn())
                try:
                    self.results.upsert_result(conn, run_id, record.record_id, payload)
                except SQLAlchemyError as e:
                    raise StorageError(f"Failed to record result for {record.record_id}: {e}") from e

                attempted += 1
                since_commit += 1
                if payload.error_occurred:
                    failed += 1
                    logger.warning(
                        "Record %s failed [%s]: %s",
                        record.record_id,
                        payload.error_category,
                        payload.error_message,
                    )
                else:
                    succeeded += 1

                if since_commit >= commit_every:
                    trans = self._commit(conn, trans, run_id)
                    since_commit = 0
                    self.progress.update(run_id, completed_so_far(), total_items, session_start, attempted)

            try:
                trans.commit()
            except SQLAlchemyError as e:
                raise StorageError(f"Final commit failed for run {run_id}: {e}") from e
        except BaseException:
            # Uncommitted items are redone on resume
            self._rollback(trans, run_id)
            pool.shutdown(wait=False, cancel_futures=True)
            raise
        finally:
            conn.close()
            for p in abandoned:
                p.shutdown(wait=False)

        pool.shutdown(wait=True)
        self.progress.update(run_id, completed_so_far(), total_items, session_start, attempted)

        if cancelled:
            logger.warning("Run %s cancelled after %d items this session", run_id, attempted)
        return ExecutionOutcome(
            attempted=attempted,
            succeeded=succeeded,
            failed=failed,
            cancelled=cancelled,
            completed_items=completed_so_far(),
        )

    @staticmethod
    def _commit(conn, trans, run_id: str):
        try:
            trans.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Commit failed for run {run_id}: {e}") from e
        return conn.begin()

    @staticmethod
    def _rollback(trans, run_id: str) -> None:
        if not trans.is_active:
            return
        try:
            trans.rollback()
        except SQLAlchemyError as e:
            logger.error("Rollback failed for run %s: %s", run_id, e)
