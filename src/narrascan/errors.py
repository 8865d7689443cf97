"""Engine error taxonomy.

Per-item classification failures are never raised; they are recorded on the
result row. Everything here is fatal for the current invocation.
"""

from __future__ import annotations


class NarrascanError(Exception):
    """Base class for engine errors."""


class IntegrityViolation(NarrascanError):
    """Input or run identity no longer matches what the store recorded."""


class ChecksumMismatchError(IntegrityViolation):
    def __init__(self, source_name: str, expected: str, actual: str) -> None:
        self.source_name = source_name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for source '{source_name}': recorded {expected[:12]}..., "
            f"got {actual[:12]}... The input file changed since it was first ingested; "
            "ingest it under a new source name instead."
        )


class DuplicateRunError(IntegrityViolation):
    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run {run_id} already exists")


class RunLockedError(NarrascanError):
    def __init__(self, run_id: str, pid: int, lock_path: str) -> None:
        self.run_id = run_id
        self.pid = pid
        self.lock_path = lock_path
        super().__init__(
            f"Run {run_id} is already in progress (lock held by PID {pid}). "
            f"If that process is gone, remove {lock_path}."
        )


class ResumeRejectedError(NarrascanError):
    def __init__(self, run_id: str, reason: str) -> None:
        self.run_id = run_id
        self.reason = reason
        super().__init__(f"Cannot resume run {run_id}: {reason}")


class StorageError(NarrascanError):
    """The durable store is unreachable, read-only, or a write failed."""
