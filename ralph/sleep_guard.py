"""Sleep prevention while the loop runs.

Holds a platform helper process (``caffeinate`` on macOS, ``systemd-inhibit``
on Linux) for the lifetime of the loop. Silently does nothing where neither
helper is available.
"""

import logging
import os
import platform
import shutil
import subprocess
from types import TracebackType

logger = logging.getLogger(__name__)


def sleep_prevention_command(pid: int) -> list[str] | None:
    """Helper command that blocks idle sleep until ``pid`` exits or it is killed."""
    system = platform.system()
    if system == "Darwin" and shutil.which("caffeinate"):
        return ["caffeinate", "-i", "-w", str(pid)]
    if system == "Linux" and shutil.which("systemd-inhibit"):
        return [
            "systemd-inhibit",
            "--what=idle",
            "--who=ralph",
            "--why=Running Ralph iterations",
            "--mode=block",
            "sleep",
            "infinity",
        ]
    return None


class SleepGuard:
    """Context manager that keeps the machine awake.

    Usage:
        with SleepGuard(enabled=True) as guard:
            ...
        # helper terminated, also on exceptions and signals raised as exceptions
    """

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self.process: subprocess.Popen | None = None

    @property
    def active(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def start(self) -> bool:
        """Start the helper.

        Returns:
            True if a helper process is now running
        """
        if not self.enabled or self.active:
            return self.active
        command = sleep_prevention_command(os.getpid())
        if command is None:
            logger.info("No sleep prevention helper available on %s", platform.system())
            return False
        try:
            self.process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning("Could not start sleep prevention (%s): %s", command[0], e)
            return False
        logger.info("Sleep prevention enabled (%s)", command[0])
        return True

    def stop(self) -> None:
        """Terminate the helper. Safe to call repeatedly."""
        process, self.process = self.process, None
        if process is None or process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=2)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait(timeout=2)
        logger.info("Sleep prevention disabled")

    def __enter__(self) -> "SleepGuard":
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.stop()
