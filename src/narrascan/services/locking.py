"""
Host-local run locks backed by PID files.

One lock file per run: <lock_dir>/.resume_lock_<run_id>.pid holding the
owning process id. This only guards against two processes on the same host;
it is not a distributed lock.

Usage:
    locks = LockManager(Path("data"))
    with locks.acquire(run_id):
        executor.run(...)
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from pathlib import Path
from typing import Optional

from narrascan.errors import RunLockedError

logger = logging.getLogger(__name__)

# Lock files without a readable PID are left alone for this long
STALE_GRACE_SEC = 5.0


def _read_pid(path: Path) -> Optional[int]:
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    try:
        return int(raw.splitlines()[0]) if raw else None
    except ValueError:
        return None


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


class RunLock:
    """Handle for an acquired lock. Releases on context exit, error or not."""

    def __init__(self, manager: "LockManager", run_id: str, path: Path, pid: int) -> None:
        self.manager = manager
        self.run_id = run_id
        self.path = path
        self.pid = pid
        self.released = False

    def release(self) -> None:
        self.manager.release(self)

    def __enter__(self) -> "RunLock":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False


class LockManager:
    def __init__(self, lock_dir: str | Path) -> None:
        self.lock_dir = Path(lock_dir)

    def lock_path(self, run_id: str) -> Path:
        return self.lock_dir / f".resume_lock_{run_id}.pid"

    def read_owner(self, run_id: str) -> Optional[int]:
        """PID recorded in the lock file, or None if absent/unreadable."""
        return _read_pid(self.lock_path(run_id))

    def acquire(self, run_id: str) -> RunLock:
        """
        Take the lock for `run_id` or raise RunLockedError.

        The PID is written to a private temp file and published with
        os.link, so the lock file never exists without its owner in it.
        A lock whose PID is dead is stale: it is removed and acquisition is
        tried once more. An unreadable lock only counts as stale once it is
        older than STALE_GRACE_SEC.
        """
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        path = self.lock_path(run_id)
        pid = os.getpid()

        for attempt in range(2):
            if self._publish(path, pid):
                logger.info("Run lock acquired for %s (PID %s)", run_id, pid)
                return RunLock(self, run_id, path, pid)

            owner = self.read_owner(run_id)
            if not self._is_stale(path, owner) or attempt == 1:
                raise RunLockedError(run_id, owner if owner is not None else -1, str(path))
            logger.warning(
                "Stale lock for run %s (PID %s not running). Removing %s",
                run_id,
                owner if owner is not None else "unknown",
                path,
            )
            self._break_stale(run_id, path, owner)

        raise RunLockedError(run_id, -1, str(path))

    def _publish(self, path: Path, pid: int) -> bool:
        tmp = self.lock_dir / f"{path.name}.{pid}.{uuid.uuid4().hex}.tmp"
        tmp.write_text(f"{pid}\n", encoding="utf-8")
        try:
            os.link(tmp, path)
        except FileExistsError:
            return False
        finally:
            tmp.unlink()
        return True

    def _is_stale(self, path: Path, owner: Optional[int]) -> bool:
        if owner is not None:
            return not pid_alive(owner)
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return True
        return age > STALE_GRACE_SEC

    def _break_stale(self, run_id: str, path: Path, owner: Optional[int]) -> None:
        """
        Move the stale lock aside, then check it is the one we judged stale.

        If another process replaced it in the meantime, put it back and
        report the run as locked.
        """
        tomb = self.lock_dir / f"{path.name}.{uuid.uuid4().hex}.stale"
        try:
            os.rename(path, tomb)
        except FileNotFoundError:
            return
        moved_owner = _read_pid(tomb)
        if moved_owner != owner and moved_owner is not None and pid_alive(moved_owner):
            try:
                os.link(tomb, path)
            except FileExistsError:
                pass
            tomb.unlink()
            raise RunLockedError(run_id, moved_owner, str(path))
        tomb.unlink()

    def release(self, lock: RunLock) -> None:
        """Remove the lock file, but only if it is still ours."""
        if lock.released:
            return
        lock.released = True
        owner = self.read_owner(lock.run_id)
        if owner != lock.pid:
            logger.warning(
                "Lock file for run %s now belongs to PID %s, leaving it in place",
                lock.run_id,
                owner,
            )
            return
        try:
            lock.path.unlink()
        except FileNotFoundError:
            pass
        logger.info("Run lock released for %s", lock.run_id)
