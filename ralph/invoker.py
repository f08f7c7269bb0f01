"""Agent invoker: run one coding-agent process for one prompt.

Spawns the agent with stdout and stderr merged into a single stream, passes
each line through to the operator as it arrives, and enforces a wall-clock
timeout. Output is drained continuously while the timer runs so a chatty
agent can never block on a full pipe.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path

from ralph.agents import AgentDescriptor, build_command
from ralph.errors import AgentInvocationError
from ralph.models import InvocationResult

logger = logging.getLogger(__name__)

# Conventional shell `timeout` exit status; only meaningful with timed_out=True
TIMEOUT_EXIT_CODE = 124
DEFAULT_GRACE_SECONDS = 2.0


class AgentInvoker:
    """Runs agent processes with a timeout and live output passthrough.

    Usage:
        invoker = AgentInvoker(on_output=print_line)
        result = invoker.invoke(descriptor, "gpt-4o", prompt, timeout_seconds=7200)
    """

    def __init__(
        self,
        on_output: Callable[[str], None] | None = None,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        cwd: Path | None = None,
    ) -> None:
        """Initialize invoker.

        Args:
            on_output: Called with each output line (newline included) as it arrives
            grace_seconds: Wait between SIGTERM and SIGKILL on timeout
            cwd: Working directory for the agent (default: current directory)
        """
        self.on_output = on_output
        self.grace_seconds = grace_seconds
        self.cwd = cwd

    def invoke(
        self,
        descriptor: AgentDescriptor,
        model: str,
        prompt: str,
        timeout_seconds: float | None,
    ) -> InvocationResult:
        """Invoke one agent with one prompt.

        Args:
            descriptor: Agent configuration
            model: Model identifier to pass to the agent
            prompt: Prompt text
            timeout_seconds: Wall-clock limit; 0 or None means unbounded

        Returns:
            InvocationResult with exit code and combined output

        Raises:
            AgentInvocationError: If the agent binary cannot be started
        """
        argv = build_command(descriptor, model, prompt)
        logger.info(
            "Invoking %s (model=%s, timeout=%s)",
            descriptor.name,
            model,
            f"{timeout_seconds}s" if timeout_seconds else "none",
        )
        return self.run_command(argv, timeout_seconds)

    def run_command(self, argv: Sequence[str], timeout_seconds: float | None) -> InvocationResult:
        """Run an already-built argv with timeout enforcement."""
        logger.debug("Running: %s", " ".join(argv[:1]) + f" (+{len(argv) - 1} args)")
        started = time.monotonic()

        try:
            process = subprocess.Popen(
                list(argv),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                cwd=self.cwd,
                # Own process group so the whole agent tree can be signalled
                start_new_session=os.name == "posix",
            )
        except FileNotFoundError as e:
            raise AgentInvocationError(
                f"Agent binary not found: {argv[0]}",
                error_code="AGENT-NotFound",
                details={"binary": argv[0]},
                suggestion="Install the agent CLI or configure a different agent",
            ) from e
        except OSError as e:
            raise AgentInvocationError(
                f"Agent failed to start: {e}",
                error_code="AGENT-StartFailed",
                details={"binary": argv[0]},
            ) from e

        timed_out = threading.Event()
        timer: threading.Timer | None = None
        if timeout_seconds:

            def expire() -> None:
                timed_out.set()
                logger.error("Agent timed out after %ss, terminating", timeout_seconds)
                _terminate_process(process, self.grace_seconds)

            timer = threading.Timer(timeout_seconds, expire)
            timer.daemon = True
            timer.start()

        chunks: list[str] = []
        try:
            if process.stdout is not None:
                for line in process.stdout:
                    chunks.append(line)
                    if self.on_output is not None:
                        self.on_output(line)
            exit_code = process.wait()
        finally:
            if timer is not None:
                timer.cancel()
            if process.poll() is None:
                # Interrupted while the agent was running
                _terminate_process(process, self.grace_seconds)
            if process.stdout is not None:
                process.stdout.close()

        duration = time.monotonic() - started
        if timed_out.is_set():
            return InvocationResult(
                exit_code=TIMEOUT_EXIT_CODE,
                output="".join(chunks),
                timed_out=True,
                duration_seconds=duration,
            )

        return InvocationResult(
            exit_code=exit_code,
            output="".join(chunks),
            timed_out=False,
            duration_seconds=duration,
        )


def _terminate_process(process: subprocess.Popen, grace_seconds: float) -> None:
    """SIGTERM, wait ``grace_seconds``, then SIGKILL."""
    try:
        _signal_process(process, signal.SIGTERM)
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            _signal_process(process, signal.SIGKILL if os.name == "posix" else signal.SIGTERM)
        except OSError:
            return
        try:
            process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            logger.error("Agent process %d did not exit after SIGKILL", process.pid)


def _signal_process(process: subprocess.Popen, sig: int) -> None:
    if os.name == "posix":
        try:
            os.killpg(process.pid, sig)
            return
        except ProcessLookupError:
            return
        except PermissionError:
            pass
    process.send_signal(sig)
