"""Tests for the run lock."""

import os
from pathlib import Path

import pytest

from ralph.errors import LockHeldError
from ralph.lock import RunLock


class TestRunLockAcquire:
    """Tests for RunLock.acquire()."""

    def test_acquire_creates_lock_file(self, tmp_path: Path) -> None:
        """Acquiring the lock writes ralph.lock into the state directory."""
        lock = RunLock(tmp_path / ".ralph")

        assert lock.acquire() is True
        assert (tmp_path / ".ralph" / "ralph.lock").read_text().strip() == str(os.getpid())

    def test_acquire_fails_when_held_by_running_process(self, tmp_path: Path) -> None:
        """Another live process holding the lock blocks acquisition."""
        # The parent process (the test runner's launcher) is alive and is not us
        (tmp_path / "ralph.lock").write_text(str(os.getppid()))

        assert RunLock(tmp_path).acquire() is False

    def test_stale_lock_is_reclaimed(self, tmp_path: Path) -> None:
        """A lock left by a dead process is taken over."""
        lock_file = tmp_path / "ralph.lock"
        lock_file.write_text("99999999")

        assert RunLock(tmp_path).acquire() is True
        assert lock_file.read_text().strip() == str(os.getpid())

    def test_invalid_content_is_reclaimed(self, tmp_path: Path) -> None:
        """A lock file without a PID is taken over."""
        (tmp_path / "ralph.lock").write_text("not_a_pid")

        assert RunLock(tmp_path).acquire() is True


class TestRunLockRelease:
    """Tests for RunLock.release()."""

    def test_release_removes_own_lock(self, tmp_path: Path) -> None:
        """Releasing removes the lock this process holds."""
        lock = RunLock(tmp_path)
        lock.acquire()

        lock.release()

        assert not lock.lock_path.exists()

    def test_release_keeps_foreign_lock(self, tmp_path: Path) -> None:
        """A lock held by another process is never removed."""
        lock_file = tmp_path / "ralph.lock"
        lock_file.write_text(str(os.getppid()))

        RunLock(tmp_path).release()

        assert lock_file.exists()

    def test_release_idempotent(self, tmp_path: Path) -> None:
        """Releasing without a lock does not raise."""
        RunLock(tmp_path).release()


class TestRunLockContextManager:
    """Tests for the RunLock context manager."""

    def test_acquires_and_releases(self, tmp_path: Path) -> None:
        """The lock is held inside the block only."""
        lock = RunLock(tmp_path)

        with lock:
            assert lock.lock_path.exists()

        assert not lock.lock_path.exists()

    def test_raises_when_held(self, tmp_path: Path) -> None:
        """A held lock raises LockHeldError naming the holder."""
        (tmp_path / "ralph.lock").write_text(str(os.getppid()))

        with pytest.raises(LockHeldError, match="already running") as exc_info:
            with RunLock(tmp_path):
                pass

        assert exc_info.value.details["pid"] == os.getppid()

    def test_releases_on_exception(self, tmp_path: Path) -> None:
        """The lock is released when the block raises."""
        lock = RunLock(tmp_path)

        with pytest.raises(ValueError):
            with lock:
                raise ValueError("boom")

        assert not lock.lock_path.exists()
