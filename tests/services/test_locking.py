from __future__ import annotations

import os
import time
from pathlib import Path

import pytest

from narrascan.errors import RunLockedError
from narrascan.services import locking
from narrascan.services.locking import STALE_GRACE_SEC, LockManager, pid_alive


def test_acquire_writes_pid_and_release_removes(tmp_path):
    locks = LockManager(tmp_path)
    with locks.acquire("run-1") as lock:
        assert lock.path == tmp_path / ".resume_lock_run-1.pid"
        assert lock.path.read_text().strip() == str(os.getpid())
    assert not lock.path.exists()


def test_live_foreign_pid_blocks(tmp_path):
    locks = LockManager(tmp_path)
    # Parent of the test process is alive for the duration of the test
    locks.lock_path("run-1").write_text(f"{os.getppid()}\n")

    with pytest.raises(RunLockedError) as excinfo:
        locks.acquire("run-1")
    assert str(os.getppid()) in str(excinfo.value)
    assert ".resume_lock_run-1.pid" in str(excinfo.value)
    # Someone else's lock is left alone
    assert locks.lock_path("run-1").exists()


def test_second_acquire_in_same_process_blocks(tmp_path):
    locks = LockManager(tmp_path)
    with locks.acquire("run-1"):
        with pytest.raises(RunLockedError):
            locks.acquire("run-1")


def test_stale_lock_is_replaced(tmp_path, monkeypatch):
    locks = LockManager(tmp_path)
    locks.lock_path("run-1").write_text("999999\n")
    monkeypatch.setattr("narrascan.services.locking.pid_alive", lambda pid: False)

    with locks.acquire("run-1") as lock:
        assert locks.read_owner("run-1") == os.getpid()
    assert not lock.path.exists()


def test_fresh_garbage_lock_file_is_held(tmp_path):
    locks = LockManager(tmp_path)
    locks.lock_path("run-1").write_text("not a pid")
    with pytest.raises(RunLockedError):
        locks.acquire("run-1")
    assert locks.lock_path("run-1").read_text() == "not a pid"


def test_old_garbage_lock_file_is_stale(tmp_path):
    locks = LockManager(tmp_path)
    path = locks.lock_path("run-1")
    path.write_text("not a pid")
    old = time.time() - STALE_GRACE_SEC - 60
    os.utime(path, (old, old))

    with locks.acquire("run-1"):
        assert locks.read_owner("run-1") == os.getpid()


def test_empty_lock_file_being_written_is_not_stolen(tmp_path):
    # Another process has created the file but not yet written its PID
    locks = LockManager(tmp_path)
    locks.lock_path("run-1").touch()

    with pytest.raises(RunLockedError):
        locks.acquire("run-1")
    assert locks.lock_path("run-1").exists()


def test_lock_file_is_published_with_pid_already_in_it(tmp_path, monkeypatch):
    locks = LockManager(tmp_path)
    seen = []
    real_link = os.link

    def link(src, dst):
        seen.append(Path(src).read_text().strip())
        return real_link(src, dst)

    monkeypatch.setattr(locking.os, "link", link)
    with locks.acquire("run-1"):
        pass
    assert seen == [str(os.getpid())]
    # Temp files are cleaned up
    assert list(tmp_path.iterdir()) == []


def test_stale_lock_replaced_by_live_owner_is_restored(tmp_path, monkeypatch):
    locks = LockManager(tmp_path)
    path = locks.lock_path("run-1")
    path.write_text("999999\n")
    monkeypatch.setattr(locking, "pid_alive", lambda pid: pid == os.getppid())
    real_rename = os.rename

    def rename(src, dst):
        # A live process takes the lock between our stale check and removal
        Path(src).write_text(f"{os.getppid()}\n")
        return real_rename(src, dst)

    monkeypatch.setattr(locking.os, "rename", rename)
    with pytest.raises(RunLockedError) as excinfo:
        locks.acquire("run-1")
    assert excinfo.value.pid == os.getppid()
    assert path.read_text().strip() == str(os.getppid())
    assert [p.name for p in tmp_path.iterdir()] == [path.name]


def test_release_leaves_lock_taken_over_by_someone_else(tmp_path):
    locks = LockManager(tmp_path)
    lock = locks.acquire("run-1")
    lock.path.write_text(f"{os.getppid()}\n")
    lock.release()
    assert lock.path.exists()


def test_lock_released_when_block_raises(tmp_path):
    locks = LockManager(tmp_path)
    with pytest.raises(RuntimeError):
        with locks.acquire("run-1"):
            raise RuntimeError("executor blew up")
    assert not locks.lock_path("run-1").exists()


def test_pid_alive():
    assert pid_alive(os.getpid()) is True
    assert pid_alive(0) is False
    assert pid_alive(-5) is False
