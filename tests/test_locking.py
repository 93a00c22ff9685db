"""Unit tests for SingletonGuard and FileLockManager."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from cf_autodns.cli import FileLockManager, SingletonConflictError, SingletonGuard


class TestSingletonGuard:
    """Tests for the process-wide lock."""

    def test_acquire_writes_pid(self, tmp_path: Path) -> None:
        lock_path = tmp_path / "cf_autodns.lock"
        guard = SingletonGuard(str(lock_path))

        guard.acquire()
        try:
            assert lock_path.read_text() == str(os.getpid())
        finally:
            guard.release()

    def test_second_holder_fails_immediately(self, tmp_path: Path) -> None:
        lock_path = str(tmp_path / "cf_autodns.lock")

        with SingletonGuard(lock_path):
            with pytest.raises(SingletonConflictError):
                SingletonGuard(lock_path).acquire()

    def test_release_allows_reacquire(self, tmp_path: Path) -> None:
        lock_path = str(tmp_path / "cf_autodns.lock")
        first = SingletonGuard(lock_path)
        first.acquire()
        first.release()

        second = SingletonGuard(lock_path)
        second.acquire()
        second.release()

    def test_release_without_acquire_is_noop(self, tmp_path: Path) -> None:
        SingletonGuard(str(tmp_path / "cf_autodns.lock")).release()


class TestFileLockManager:
    """Tests for per-file locks."""

    def test_try_acquire_is_exclusive(self, tmp_path: Path) -> None:
        locks = FileLockManager(str(tmp_path / "locks"))

        assert locks.try_acquire("host1.conf") is True
        assert locks.try_acquire("host1.conf") is False
        assert locks.try_acquire("host2.conf") is True

    def test_lock_layout(self, tmp_path: Path) -> None:
        locks = FileLockManager(str(tmp_path / "locks"))

        locks.try_acquire("host1.conf")

        lock_path = tmp_path / "locks" / "host1.conf.lock"
        assert lock_path.is_dir()
        assert (lock_path / "pid").read_text() == str(os.getpid())

    def test_release_allows_reacquire(self, tmp_path: Path) -> None:
        locks = FileLockManager(str(tmp_path / "locks"))
        locks.try_acquire("host1.conf")

        locks.release("host1.conf")

        assert not locks.is_locked("host1.conf")
        assert locks.try_acquire("host1.conf") is True

    def test_hold_releases_on_exception(self, tmp_path: Path) -> None:
        locks = FileLockManager(str(tmp_path / "locks"))

        with pytest.raises(RuntimeError):
            with locks.hold("host1.conf") as acquired:
                assert acquired is True
                raise RuntimeError("boom")

        assert not locks.is_locked("host1.conf")

    def test_hold_does_not_release_someone_elses_lock(self, tmp_path: Path) -> None:
        locks = FileLockManager(str(tmp_path / "locks"))
        locks.try_acquire("host1.conf")

        with locks.hold("host1.conf") as acquired:
            assert acquired is False

        assert locks.is_locked("host1.conf")

    def test_try_acquire_removes_lock_when_pid_write_fails(self, tmp_path: Path) -> None:
        locks = FileLockManager(str(tmp_path / "locks"))

        with patch.object(Path, "write_text", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                locks.try_acquire("host1.conf")

        assert not locks.is_locked("host1.conf")
        assert locks.try_acquire("host1.conf") is True

    def test_clear_stale_removes_leftover_locks(self, tmp_path: Path) -> None:
        locks = FileLockManager(str(tmp_path / "locks"))
        locks.try_acquire("host1.conf")
        locks.try_acquire("host2.conf")
        (tmp_path / "locks" / "stray-file").write_text("x")

        assert locks.clear_stale() == 3
        assert list((tmp_path / "locks").iterdir()) == []
        assert locks.try_acquire("host1.conf") is True
