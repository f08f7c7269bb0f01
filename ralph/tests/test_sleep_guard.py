"""Tests for sleep prevention."""

import sys
from unittest.mock import patch

from ralph.sleep_guard import SleepGuard, sleep_prevention_command

SLEEPER = [sys.executable, "-c", "import time; time.sleep(60)"]


class TestSleepPreventionCommand:
    """Tests for sleep_prevention_command()."""

    def test_macos_uses_caffeinate(self) -> None:
        """macOS holds caffeinate bound to the loop's PID."""
        with patch("ralph.sleep_guard.platform.system", return_value="Darwin"):
            with patch("ralph.sleep_guard.shutil.which", return_value="/usr/bin/caffeinate"):
                assert sleep_prevention_command(42) == ["caffeinate", "-i", "-w", "42"]

    def test_linux_uses_systemd_inhibit(self) -> None:
        """Linux holds an idle inhibitor."""
        with patch("ralph.sleep_guard.platform.system", return_value="Linux"):
            with patch("ralph.sleep_guard.shutil.which", return_value="/usr/bin/systemd-inhibit"):
                command = sleep_prevention_command(42)

        assert command[0] == "systemd-inhibit"
        assert "--what=idle" in command

    def test_no_helper_available(self) -> None:
        """Without a helper binary there is nothing to run."""
        with patch("ralph.sleep_guard.shutil.which", return_value=None):
            assert sleep_prevention_command(42) is None


class TestSleepGuard:
    """Tests for the SleepGuard context manager."""

    def test_helper_runs_inside_block_only(self) -> None:
        """The helper is started on enter and terminated on exit."""
        with patch("ralph.sleep_guard.sleep_prevention_command", return_value=SLEEPER):
            with SleepGuard(enabled=True) as guard:
                process = guard.process
                assert guard.active

        assert not guard.active
        assert process.poll() is not None

    def test_helper_stopped_on_interrupt(self) -> None:
        """An interrupt inside the block still stops the helper."""
        with patch("ralph.sleep_guard.sleep_prevention_command", return_value=SLEEPER):
            guard = SleepGuard(enabled=True)
            try:
                with guard:
                    process = guard.process
                    raise KeyboardInterrupt
            except KeyboardInterrupt:
                pass

        assert process.poll() is not None

    def test_disabled_does_nothing(self) -> None:
        """A disabled guard never spawns a helper."""
        with patch("ralph.sleep_guard.subprocess.Popen") as popen:
            with SleepGuard(enabled=False) as guard:
                assert not guard.active

        popen.assert_not_called()

    def test_start_failure_is_not_fatal(self) -> None:
        """A helper that cannot start only logs a warning."""
        with patch("ralph.sleep_guard.sleep_prevention_command", return_value=["ralph-no-such-helper"]):
            guard = SleepGuard(enabled=True)

            assert guard.start() is False
            assert not guard.active

    def test_stop_is_idempotent(self) -> None:
        """Stopping twice is safe."""
        guard = SleepGuard(enabled=True)

        guard.stop()
        guard.stop()
