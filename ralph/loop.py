"""Iteration loop: the orchestrator.

Each iteration:

    SelectTask -> InvokeAgent -> InterpretOutput -> ReconcileGit -> UpdateStore

and the loop ends in exactly one terminal state (see LoopStatus). Everything
that can be fixed by trying another agent or model is absorbed here; only
structural problems (bad config, unrecoverable git state, exhausted rotation)
end the run early.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from opentelemetry import trace

from ralph import telemetry
from ralph.agents import AgentDescriptor
from ralph.errors import (
    AgentInvocationError,
    BranchSwitchFailed,
    ConfigurationError,
    GitReconciliationError,
    StashRestoreFailed,
)
from ralph.git_ops import GitWorkflow, pr_body, pr_title
from ralph.invoker import AgentInvoker
from ralph.models import (
    InvocationResult,
    IterationOutcome,
    IterationRecord,
    LoopStatus,
    Task,
    TaskSet,
)
from ralph.prd import find_dependency_cycles, load_prd, next_eligible_task
from ralph.rotation import RotationMachine
from ralph.signals import COMPLETION_SENTINEL, interpret_output

logger = logging.getLogger(__name__)

# Process exit code per terminal state
EXIT_CODES: dict[str, int] = {
    "complete": 0,
    "max_iterations": 1,
    "blocked": 2,
    "rate_limited": 3,
    "git_failure": 4,
}

# Reported when the agent binary could not be started at all
NOT_STARTED_EXIT_CODE = 127


@dataclass
class LoopOptions:
    """Per-run knobs, resolved from config plus CLI overrides."""

    max_iterations: int = 10
    timeout_seconds: int | None = 7200
    delay_seconds: float = 2.0
    auto_checkout_branch: bool = True
    base_branch: str = "main"
    push_enabled: bool = False
    push_timing: str = "iteration"
    create_pr: bool = False
    pr_draft: bool = False
    auto_merge: bool = False
    max_branch_failures: int = 3


@dataclass
class LoopResult:
    """Result of a loop run.

    Status values:
        complete: every task passes
        max_iterations: iteration budget spent with work remaining
        blocked: incomplete tasks remain but none is eligible
        rate_limited: every agent is cooling down
        git_failure: the tree could not be put on the feature branch
    """

    status: LoopStatus
    iterations: int
    completed_tasks: int
    total_tasks: int
    duration_seconds: float
    message: str = ""
    records: list[IterationRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    pr_url: str | None = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]


@dataclass
class _Attempt:
    agent: AgentDescriptor
    model: str
    result: InvocationResult
    outcome: IterationOutcome


def build_prompt(task: Task, prd_path: Path) -> str:
    """Prompt for one iteration: the task, the store, and the sentinel convention."""
    return (
        f"Read {prd_path.name} and implement the next incomplete story: {task.id} - {task.title}.\n"
        f"Work on this story only. When its acceptance criteria are met, set its "
        f'"passes" field to true in {prd_path.name} and commit your changes.\n'
        f"When every story in {prd_path.name} has passes: true, output {COMPLETION_SENTINEL} "
        f"on a line by itself."
    )


def describe_blocked(task_set: TaskSet) -> list[str]:
    """Human-readable reasons why incomplete tasks cannot start."""
    completed = task_set.completed_ids
    lines = []
    for task in task_set.active_tasks:
        if task.passes:
            continue
        waiting = [dep for dep in task.blocked_by if dep not in completed]
        if waiting:
            lines.append(f"{task.id} waiting on {', '.join(waiting)}")
    for cycle in find_dependency_cycles(task_set):
        lines.append(f"cycle: {' -> '.join(cycle)}")
    return lines


class IterationLoop:
    """Runs the agent against the task store until a terminal state.

    Args:
        prd_path: Task store file
        invoker: Runs agent processes
        rotation: Chooses the (agent, model) pair per iteration
        options: Iteration budget, timeout and git toggles
        git: Git workflow; None disables all git handling
        fallback: Agent retried once immediately after a failed attempt
        tracer: OpenTelemetry tracer (no-op if None)
        on_iteration_start: Called with (iteration, task, task_set, agent, model)
        on_iteration_end: Called with each IterationRecord
        sleep: Delay function between iterations
        clock: Monotonic clock for durations
    """

    def __init__(
        self,
        prd_path: Path,
        invoker: AgentInvoker,
        rotation: RotationMachine,
        options: LoopOptions,
        git: GitWorkflow | None = None,
        fallback: AgentDescriptor | None = None,
        tracer: trace.Tracer | None = None,
        on_iteration_start: Callable[[int, Task, TaskSet, str, str], None] | None = None,
        on_iteration_end: Callable[[IterationRecord], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.prd_path = prd_path
        self.invoker = invoker
        self.rotation = rotation
        self.options = options
        self.git = git
        self.fallback = fallback
        self.tracer = tracer or trace.get_tracer("ralph")
        self.on_iteration_start = on_iteration_start
        self.on_iteration_end = on_iteration_end
        self.sleep = sleep
        self.clock = clock
        self._records: list[IterationRecord] = []
        self._warnings: list[str] = []
        self._start_branch: str | None = None
        self._branch_failures = 0
        self._git_error = ""

    def run(self) -> LoopResult:
        """Run until a terminal state.

        Raises:
            ConfigurationError: The task store is missing or invalid
        """
        started = self.clock()
        if self.git is not None:
            self._start_branch = self.git.client.current_branch()

        with self.tracer.start_as_current_span("ralph.loop") as span:
            span.set_attribute("loop.max_iterations", self.options.max_iterations)

            status, iterations, message = self._iterate()
            task_set = load_prd(self.prd_path)
            result = LoopResult(
                status=status,
                iterations=iterations,
                completed_tasks=task_set.completed_count,
                total_tasks=task_set.total_count,
                duration_seconds=self.clock() - started,
                message=message,
                records=self._records,
                warnings=self._warnings,
            )
            if status == "complete":
                self._finish_remote(task_set, result)

            span.set_attribute("loop.status", status)
            span.set_attribute("loop.iterations", iterations)
            span.set_attribute("loop.completed_tasks", result.completed_tasks)
            span.set_attribute("loop.total_tasks", result.total_tasks)

        logger.info("Loop finished: %s after %d iteration(s)", status, iterations)
        return result

    def _iterate(self) -> tuple[LoopStatus, int, str]:
        max_iterations = self.options.max_iterations

        for iteration in range(1, max_iterations + 1):
            # SelectTask
            task_set = load_prd(self.prd_path)
            task = next_eligible_task(task_set)
            if task is None:
                if task_set.all_complete:
                    return "complete", iteration - 1, "All tasks complete"
                reasons = describe_blocked(task_set)
                logger.warning("No eligible task, dependencies blocked: %s", "; ".join(reasons))
                return "blocked", iteration - 1, "No eligible task: " + "; ".join(reasons)

            started = self.clock()
            expected_branch = self._expected_branch(task_set)

            if self.git is not None and self.options.auto_checkout_branch and expected_branch:
                try:
                    self.git.ensure_branch(expected_branch, self.options.base_branch)
                    self._branch_failures = 0
                except StashRestoreFailed as e:
                    logger.error("%s", e.message)
                    return "git_failure", iteration, e.message
                except GitReconciliationError as e:
                    self._branch_failures += 1
                    logger.error(
                        "Branch setup failed (%d/%d): %s",
                        self._branch_failures,
                        self.options.max_branch_failures,
                        e.message,
                    )
                    if self._branch_failures >= self.options.max_branch_failures:
                        return "git_failure", iteration, e.message
                    self._record(IterationRecord(iteration, task.id, None, None, self.clock() - started, "skipped"))
                    self._pause(iteration)
                    continue

            # InvokeAgent
            selection = self.rotation.select_next()
            if selection is None:
                return "rate_limited", iteration - 1, "All agents are cooling down after rate limits"
            agent, model = selection

            if self.on_iteration_start is not None:
                self.on_iteration_start(iteration, task, task_set, agent.name, model)

            with self.tracer.start_as_current_span("ralph.iteration") as span:
                span.set_attribute("iteration.number", iteration)
                span.set_attribute("task.id", task.id)
                span.set_attribute("agent.name", agent.name)
                span.set_attribute("agent.model", model)

                attempts = self._invoke_with_fallback(agent, model, build_prompt(task, self.prd_path))
                final = attempts[-1]
                sentinel = any(interpret_output(a.result.output).sentinel for a in attempts)

                # UpdateStore (read first: it is the progress evidence for git)
                store_error: ConfigurationError | None = None
                try:
                    after = load_prd(self.prd_path)
                except ConfigurationError as e:
                    store_error = e
                    after = task_set
                newly_completed = tuple(
                    t.id for t in after.tasks if t.passes and t.id not in task_set.completed_ids
                )
                progress = bool(newly_completed) or (sentinel and after.all_complete)

                # ReconcileGit, regardless of outcome
                self._reconcile(expected_branch, progress, task)
                if store_error is not None:
                    raise store_error

                duration = self.clock() - started
                record = IterationRecord(
                    iteration=iteration,
                    task_id=task.id,
                    agent=agent.name,
                    model=model,
                    duration_seconds=duration,
                    outcome=final.outcome,
                    exit_code=final.result.exit_code,
                    fallback_agent=final.agent.name if len(attempts) > 1 else None,
                    newly_completed=newly_completed,
                )
                span.set_attribute("iteration.outcome", final.outcome)
                span.set_attribute("iteration.duration_seconds", duration)
            self._record(record)

            if self._branch_failures >= self.options.max_branch_failures:
                return "git_failure", iteration, self._git_error

            if final.outcome == "rate_limited" and self.rotation.select_next() is None:
                return "rate_limited", iteration, "All agents are cooling down after rate limits"

            if sentinel:
                if after.all_complete:
                    return "complete", iteration, "Completion signal verified"
                logger.warning(
                    "Ignoring %s: %d of %d tasks still incomplete",
                    COMPLETION_SENTINEL,
                    after.total_count - after.completed_count,
                    after.total_count,
                )

            self._pause(iteration)

        final_set = load_prd(self.prd_path)
        if final_set.all_complete:
            return "complete", max_iterations, "All tasks complete"
        return "max_iterations", max_iterations, f"Reached max iterations ({max_iterations})"

    def _invoke_with_fallback(self, agent: AgentDescriptor, model: str, prompt: str) -> list[_Attempt]:
        attempts = [self._attempt(agent, model, prompt)]
        first = attempts[0]
        fallback = self.fallback
        if (
            first.outcome in ("error", "timeout")
            and fallback is not None
            and fallback.name != agent.name
            and not self.rotation.is_cooling_down(fallback.name)
        ):
            logger.warning("%s failed, trying fallback %s", agent.name, fallback.name)
            attempts.append(self._attempt(fallback, fallback.models[0], prompt))
        return attempts

    def _attempt(self, agent: AgentDescriptor, model: str, prompt: str) -> _Attempt:
        try:
            result = self.invoker.invoke(agent, model, prompt, self.options.timeout_seconds)
        except AgentInvocationError as e:
            logger.error("%s", e.message)
            result = InvocationResult(exit_code=NOT_STARTED_EXIT_CODE, output=e.message)

        signals = interpret_output(result.output)
        outcome: IterationOutcome
        if signals.rate_limited:
            outcome = "rate_limited"
            telemetry.record_rate_limit(agent.name)
            if self.rotation.on_rate_limit(agent.name):
                telemetry.record_rotation("rate_limit")
        elif result.timed_out:
            outcome = "timeout"
            logger.error("%s timed out after %ss", agent.name, self.options.timeout_seconds)
            if self.rotation.on_failure(agent.name, model):
                telemetry.record_rotation("failure_threshold")
        elif result.exit_code != 0:
            outcome = "error"
            logger.error("%s exited with code %d", agent.name, result.exit_code)
            if self.rotation.on_failure(agent.name, model):
                telemetry.record_rotation("failure_threshold")
        else:
            outcome = "success"
            if signals.error_marker:
                logger.warning("%s exited 0 but reported an error (%s)", agent.name, signals.error_marker)
            self.rotation.on_success(agent.name, model)

        telemetry.record_invocation(agent.name, model, outcome)
        return _Attempt(agent, model, result, outcome)

    def _expected_branch(self, task_set: TaskSet) -> str | None:
        if self.options.auto_checkout_branch:
            return task_set.branch_name or self._start_branch
        return self._start_branch

    def _reconcile(self, expected_branch: str | None, progress: bool, task: Task) -> None:
        if self.git is None or not expected_branch:
            return
        push = self.options.push_enabled and self.options.push_timing == "iteration"
        try:
            reconciliation = self.git.reconcile_after_iteration(
                expected_branch,
                progress_made=progress,
                story_id=task.id,
                story_title=task.title,
                push=push,
            )
        except BranchSwitchFailed as e:
            self._branch_failures += 1
            self._git_error = e.message
            logger.error(
                "Could not restore branch (%d/%d): %s",
                self._branch_failures,
                self.options.max_branch_failures,
                e.message,
            )
            self._warnings.append(e.message)
            return
        except GitReconciliationError as e:
            # Retried by the next iteration's ensure_branch
            logger.error("Git reconciliation failed: %s", e.message)
            self._warnings.append(e.message)
            return
        self._branch_failures = 0
        self._warnings.extend(reconciliation.warnings)

    def _finish_remote(self, task_set: TaskSet, result: LoopResult) -> None:
        """Push / open PR / merge once the loop is complete."""
        if self.git is None:
            return
        branch = self._expected_branch(task_set)
        if not branch:
            return

        push_at_end = self.options.push_enabled and self.options.push_timing == "end"
        # gh needs the branch on the remote before it can open a PR
        if push_at_end or self.options.create_pr:
            push_result = self.git.push_branch(branch)
            if not push_result.success:
                result.warnings.append(push_result.message)
                return

        if not self.options.create_pr:
            return
        pr = self.git.open_pull_request(
            branch,
            self.options.base_branch,
            title=pr_title(branch),
            body=pr_body(task_set),
            draft=self.options.pr_draft,
        )
        if not pr.success:
            result.warnings.append(pr.message)
            return
        result.pr_url = pr.url

        if self.options.auto_merge:
            merged = self.git.merge_pull_request(branch)
            if not merged.success:
                result.warnings.append(merged.message)

    def _record(self, record: IterationRecord) -> None:
        self._records.append(record)
        telemetry.record_iteration(record.outcome, record.duration_seconds)
        if self.on_iteration_end is not None:
            self.on_iteration_end(record)

    def _pause(self, iteration: int) -> None:
        if iteration < self.options.max_iterations and self.options.delay_seconds > 0:
            self.sleep(self.options.delay_seconds)
