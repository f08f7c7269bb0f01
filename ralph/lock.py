"""Lock manager for loop runs.

Provides PID-based locking so two ralph processes never drive the same
working tree at once.
"""

import os
from pathlib import Path
from types import TracebackType

from ralph.errors import LockHeldError


class RunLock:
    """PID-based lock for a working tree.

    The lock is a file in the state directory containing the holder's PID.

    Usage:
        with RunLock(state_dir):
            # Loop runs - lock is held
            ...
        # Lock is released

    Attributes:
        lock_path: Path to the lock file
    """

    def __init__(self, state_dir: Path, name: str = "ralph") -> None:
        self.lock_path = state_dir / f"{name}.lock"

    def acquire(self) -> bool:
        """Try to acquire the lock.

        Stale locks (from dead processes) are reclaimed.

        Returns:
            True if lock acquired, False if held by another running process
        """
        if self.lock_path.exists():
            holder_pid = self.get_holder_pid()
            if holder_pid is not None and holder_pid != os.getpid() and self._is_process_running(holder_pid):
                return False

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path.write_text(str(os.getpid()))
        return True

    def release(self) -> None:
        """Release the lock if this process holds it."""
        if self.get_holder_pid() == os.getpid():
            self.lock_path.unlink(missing_ok=True)

    def get_holder_pid(self) -> int | None:
        """Get PID of lock holder.

        Returns:
            PID as int if lock exists and contains valid PID, None otherwise
        """
        if not self.lock_path.exists():
            return None

        try:
            return int(self.lock_path.read_text().strip())
        except ValueError:
            return None

    def _is_process_running(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)  # Signal 0 doesn't kill, just checks existence
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Process exists but we don't have permission to signal it
            return True

    def __enter__(self) -> "RunLock":
        """Acquire lock on context entry.

        Raises:
            LockHeldError: If lock is already held by a running process
        """
        if not self.acquire():
            holder_pid = self.get_holder_pid()
            raise LockHeldError(
                f"Ralph already running in this directory (PID: {holder_pid})",
                error_code="LOCK-Held",
                details={"pid": holder_pid, "lock": str(self.lock_path)},
                suggestion=f"Wait for it to finish or remove {self.lock_path} if stale",
            )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Release lock on context exit."""
        self.release()
