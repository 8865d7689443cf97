"""
Progress and ETA for a run.

Rate is measured over the current session only (items recorded since this
process started working), so a resume after a long pause does not report a
meaningless average.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from narrascan.repos.runs_repo import RunsRepo, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressSnapshot:
    run_id: str
    completed: int
    total: int
    remaining: int
    elapsed_sec: float
    items_per_sec: Optional[float]
    eta_at: Optional[datetime]
    persisted: bool

    @property
    def percent(self) -> float:
        return percent_done(self.completed, self.total)


def percent_done(completed: int, total: int) -> float:
    if total <= 0:
        return 100.0
    return 100.0 * completed / total


def format_duration(seconds: float) -> str:
    seconds = max(0, int(round(seconds)))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


def describe_resume(completed: int, total: int, remaining: int) -> str:
    """
    Lines printed before a resume starts work.

    The "Remaining" line quotes the remaining share of the run, e.g.
    237 of 500 done -> "Remaining: 263 (52.6% done)".
    """
    return (
        f"Completed: {completed}/{total} ({percent_done(completed, total):.1f}%)\n"
        f"Remaining: {remaining} ({percent_done(remaining, total):.1f}% done)"
    )


class ProgressTracker:
    def __init__(
        self,
        runs: RunsRepo,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.runs = runs
        self.now_fn = now_fn

    def update(
        self,
        run_id: str,
        completed_so_far: int,
        total_expected: int,
        session_start: datetime,
        session_items: int,
    ) -> ProgressSnapshot:
        """
        Compute rate and ETA, persist them, and log one line.

        `session_items` is how many items were recorded since `session_start`.
        Persist failures are logged; the snapshot comes back with
        persisted=False.
        """
        now = self.now_fn()
        elapsed = max((now - session_start).total_seconds(), 0.0)
        remaining = max(total_expected - completed_so_far, 0)

        rate: Optional[float] = None
        eta_at: Optional[datetime] = None
        if session_items > 0 and elapsed > 0:
            rate = session_items / elapsed
            eta_at = now + timedelta(seconds=remaining / rate)
        elif remaining == 0:
            eta_at = now

        persisted = True
        try:
            self.runs.update_progress(run_id, completed_so_far, total_expected, eta_at, progress_at=now)
        except SQLAlchemyError as e:
            persisted = False
            logger.warning("Could not persist progress for run %s: %s", run_id, e)

        snap = ProgressSnapshot(
            run_id=run_id,
            completed=completed_so_far,
            total=total_expected,
            remaining=remaining,
            elapsed_sec=elapsed,
            items_per_sec=rate,
            eta_at=eta_at,
            persisted=persisted,
        )
        logger.info(self.format(snap))
        return snap

    @staticmethod
    def format(snap: ProgressSnapshot) -> str:
        parts = [f"Progress: {snap.completed}/{snap.total} ({snap.percent:.1f}%)"]
        if snap.items_per_sec is not None:
            parts.append(f"{snap.items_per_sec:.2f} items/s")
            parts.append(f"ETA {format_duration(snap.remaining / snap.items_per_sec)}")
        return " | ".join(parts)
