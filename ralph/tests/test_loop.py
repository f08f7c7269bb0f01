"""Tests for the iteration loop.

The agent is replaced by a scripted invoker that can mark stories complete in
prd.json the way a real agent would.
"""

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from ralph.agents import AgentDescriptor
from ralph.errors import AgentInvocationError, BranchSwitchFailed, ConfigurationError, StashRestoreFailed
from ralph.git_ops import RemoteResult
from ralph.invoker import TIMEOUT_EXIT_CODE
from ralph.loop import IterationLoop, LoopOptions, build_prompt
from ralph.models import InvocationResult, Reconciliation, Task
from ralph.prd import load_prd, mark_completed, persist_prd
from ralph.rotation import RotationMachine, RotationSettings
from ralph.signals import COMPLETION_SENTINEL

Response = InvocationResult | Callable[[Path], InvocationResult] | Exception

CLAUDE = AgentDescriptor(name="claude-code", models=("sonnet",))
CODEX = AgentDescriptor(name="codex", models=("gpt-4o",))


class FakeInvoker:
    """Returns scripted responses and records every call."""

    def __init__(self, prd_path: Path, responses: list[Response] | None = None) -> None:
        self.prd_path = prd_path
        self.responses = list(responses or [])
        self.calls: list[tuple[str, str]] = []

    def invoke(
        self, descriptor: AgentDescriptor, model: str, prompt: str, timeout_seconds: float | None
    ) -> InvocationResult:
        self.calls.append((descriptor.name, model))
        response = self.responses.pop(0) if self.responses else ok()
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(self.prd_path)
        return response


def ok(output: str = "") -> InvocationResult:
    return InvocationResult(exit_code=0, output=output)


def completes(*task_ids: str, output: str = "") -> Callable[[Path], InvocationResult]:
    """Response that marks stories complete in prd.json, then exits 0."""

    def respond(prd_path: Path) -> InvocationResult:
        task_set = load_prd(prd_path)
        for task_id in task_ids:
            task_set = mark_completed(task_set, task_id)
        persist_prd(task_set, prd_path)
        return ok(output)

    return respond


def make_story(story_id: str, priority: int = 1, passes: bool = False, **extra: Any) -> dict[str, Any]:
    story = {
        "id": story_id,
        "title": f"Story {story_id}",
        "description": "d",
        "acceptanceCriteria": [],
        "priority": priority,
        "passes": passes,
    }
    story.update(extra)
    return story


@pytest.fixture
def prd_path(tmp_path: Path) -> Path:
    return tmp_path / "prd.json"


def write_prd(path: Path, *stories: dict[str, Any]) -> Path:
    document = {"project": "Demo", "branchName": "ralph/feature", "userStories": list(stories)}
    path.write_text(json.dumps(document))
    return path


def make_loop(
    prd_path: Path,
    invoker: FakeInvoker,
    agents: list[AgentDescriptor] | None = None,
    rotation_enabled: bool = False,
    threshold: int = 3,
    **kwargs: Any,
) -> IterationLoop:
    max_iterations = kwargs.pop("max_iterations", 10)
    options = kwargs.pop("options", None) or LoopOptions(max_iterations=max_iterations)
    rotation = RotationMachine(
        RotationSettings(enabled=rotation_enabled, failure_threshold=threshold),
        agents or [CLAUDE],
    )
    return IterationLoop(
        prd_path=prd_path,
        invoker=invoker,  # type: ignore[arg-type]
        rotation=rotation,
        options=options,
        sleep=lambda seconds: None,
        **kwargs,
    )


class TestTerminalStates:
    """Tests for how the loop ends."""

    def test_max_iterations_without_progress(self, prd_path: Path) -> None:
        """Three open tasks and one quiet iteration halt at max iterations."""
        write_prd(prd_path, make_story("US-001"), make_story("US-002"), make_story("US-003"))
        invoker = FakeInvoker(prd_path, [ok()])
        loop = make_loop(prd_path, invoker, max_iterations=1)

        result = loop.run()

        assert result.status == "max_iterations"
        assert result.exit_code == 1
        assert result.iterations == 1
        assert result.completed_tasks == 0
        assert result.total_tasks == 3
        assert len(invoker.calls) == 1
        assert loop.rotation.state.failures == {}

    def test_blocked_without_invoking_agent(self, prd_path: Path) -> None:
        """A dependency on an incomplete, unselectable story halts as blocked."""
        write_prd(
            prd_path,
            make_story("US-001", status="removed"),
            make_story("US-002", blockedBy=["US-001"]),
        )
        invoker = FakeInvoker(prd_path)

        result = make_loop(prd_path, invoker).run()

        assert result.status == "blocked"
        assert result.exit_code == 2
        assert result.iterations == 0
        assert invoker.calls == []
        assert "US-002 waiting on US-001" in result.message

    def test_dependency_cycle_is_blocked(self, prd_path: Path) -> None:
        """Stories blocking each other halt as blocked."""
        write_prd(
            prd_path,
            make_story("A", blockedBy=["B"]),
            make_story("B", blockedBy=["A"]),
        )
        invoker = FakeInvoker(prd_path)

        result = make_loop(prd_path, invoker).run()

        assert result.status == "blocked"
        assert "cycle" in result.message
        assert invoker.calls == []

    def test_already_complete(self, prd_path: Path) -> None:
        """A fully passing store completes with zero invocations."""
        write_prd(prd_path, make_story("US-001", passes=True), make_story("US-002", passes=True))
        invoker = FakeInvoker(prd_path)

        result = make_loop(prd_path, invoker).run()

        assert result.status == "complete"
        assert result.exit_code == 0
        assert result.iterations == 0
        assert invoker.calls == []

    def test_completes_when_tasks_pass(self, prd_path: Path) -> None:
        """The loop runs until every story passes."""
        write_prd(prd_path, make_story("US-001", priority=1), make_story("US-002", priority=2))
        invoker = FakeInvoker(prd_path, [completes("US-001"), completes("US-002")])

        result = make_loop(prd_path, invoker).run()

        assert result.status == "complete"
        assert result.iterations == 2
        assert result.completed_tasks == 2
        assert [r.newly_completed for r in result.records] == [("US-001",), ("US-002",)]

    def test_store_broken_by_agent_is_fatal(self, prd_path: Path) -> None:
        """An agent that corrupts prd.json ends the run with a configuration error."""
        write_prd(prd_path, make_story("US-001"))

        def corrupt(path: Path) -> InvocationResult:
            path.write_text("{oops")
            return ok()

        loop = make_loop(prd_path, FakeInvoker(prd_path, [corrupt]))

        with pytest.raises(ConfigurationError):
            loop.run()


class TestCompletionSentinel:
    """Tests for sentinel verification."""

    def test_verified_sentinel_completes(self, prd_path: Path) -> None:
        """The sentinel ends the loop when the store agrees."""
        write_prd(prd_path, make_story("US-001"))
        invoker = FakeInvoker(prd_path, [completes("US-001", output=f"done\n{COMPLETION_SENTINEL}\n")])

        result = make_loop(prd_path, invoker, max_iterations=5).run()

        assert result.status == "complete"
        assert result.message == "Completion signal verified"
        assert result.iterations == 1

    def test_premature_sentinel_is_ignored(self, prd_path: Path) -> None:
        """A sentinel while stories remain incomplete does not stop the loop."""
        write_prd(prd_path, make_story("US-001"), make_story("US-002"))
        invoker = FakeInvoker(
            prd_path, [completes("US-001", output=f"{COMPLETION_SENTINEL}\n"), ok(), ok()]
        )

        result = make_loop(prd_path, invoker, max_iterations=3).run()

        assert result.status == "max_iterations"
        assert len(invoker.calls) == 3


class TestFailureHandling:
    """Tests for failures, timeouts and rate limits."""

    def test_rate_limit_rotates_to_next_agent(self, prd_path: Path) -> None:
        """A rate limit hands the next iteration to the next agent."""
        write_prd(prd_path, make_story("US-001"))
        invoker = FakeInvoker(
            prd_path,
            [InvocationResult(exit_code=1, output="Error: rate limit reached"), completes("US-001")],
        )
        loop = make_loop(prd_path, invoker, agents=[CLAUDE, CODEX], rotation_enabled=True)

        result = loop.run()

        assert result.status == "complete"
        assert invoker.calls == [("claude-code", "sonnet"), ("codex", "gpt-4o")]
        assert result.records[0].outcome == "rate_limited"
        assert loop.rotation.is_cooling_down("claude-code")

    def test_rate_limit_on_only_agent_halts(self, prd_path: Path) -> None:
        """With nothing to rotate to, a rate limit ends the run."""
        write_prd(prd_path, make_story("US-001"))
        invoker = FakeInvoker(prd_path, [ok("You've hit your limit")])

        result = make_loop(prd_path, invoker).run()

        assert result.status == "rate_limited"
        assert result.exit_code == 3
        assert result.iterations == 1

    def test_all_agents_cooling_before_start(self, prd_path: Path) -> None:
        """No invocation happens while every agent is cooling down."""
        write_prd(prd_path, make_story("US-001"))
        invoker = FakeInvoker(prd_path)
        loop = make_loop(prd_path, invoker)
        loop.rotation.on_rate_limit("claude-code")

        result = loop.run()

        assert result.status == "rate_limited"
        assert invoker.calls == []

    def test_timeout_counts_as_failure(self, prd_path: Path) -> None:
        """A timed-out invocation is a failure for rotation purposes."""
        write_prd(prd_path, make_story("US-001"))
        timed_out = InvocationResult(exit_code=TIMEOUT_EXIT_CODE, output="", timed_out=True)
        loop = make_loop(prd_path, FakeInvoker(prd_path, [timed_out]), max_iterations=1)

        result = loop.run()

        assert result.records[0].outcome == "timeout"
        assert loop.rotation.failure_count("claude-code", "sonnet") == 1

    def test_exit_124_without_timeout_is_error(self, prd_path: Path) -> None:
        """A genuine exit code 124 is a plain failure, not a timeout."""
        write_prd(prd_path, make_story("US-001"))
        loop = make_loop(prd_path, FakeInvoker(prd_path, [InvocationResult(124, "")]), max_iterations=1)

        result = loop.run()

        assert result.records[0].outcome == "error"

    def test_failures_rotate_model(self, prd_path: Path) -> None:
        """Consecutive failures past the threshold move to the next agent."""
        write_prd(prd_path, make_story("US-001"))
        invoker = FakeInvoker(
            prd_path, [InvocationResult(1, "boom"), InvocationResult(1, "boom"), completes("US-001")]
        )
        loop = make_loop(prd_path, invoker, agents=[CLAUDE, CODEX], rotation_enabled=True, threshold=2)

        result = loop.run()

        assert result.status == "complete"
        assert [name for name, _ in invoker.calls] == ["claude-code", "claude-code", "codex"]

    def test_fallback_retried_once_on_failure(self, prd_path: Path) -> None:
        """A failing primary is retried immediately with the fallback agent."""
        write_prd(prd_path, make_story("US-001"))
        invoker = FakeInvoker(prd_path, [InvocationResult(2, "crash"), completes("US-001")])
        loop = make_loop(prd_path, invoker, fallback=CODEX)

        result = loop.run()

        assert result.status == "complete"
        assert invoker.calls == [("claude-code", "sonnet"), ("codex", "gpt-4o")]
        assert result.records[0].fallback_agent == "codex"
        assert result.records[0].outcome == "success"

    def test_no_fallback_on_rate_limit(self, prd_path: Path) -> None:
        """Rate limits are handled by cooldown, not by the fallback."""
        write_prd(prd_path, make_story("US-001"))
        invoker = FakeInvoker(prd_path, [ok("429 Too Many Requests")])

        make_loop(prd_path, invoker, fallback=CODEX).run()

        assert invoker.calls == [("claude-code", "sonnet")]

    def test_missing_agent_binary_is_failure(self, prd_path: Path) -> None:
        """An agent that cannot start is recorded as an error, not a crash."""
        write_prd(prd_path, make_story("US-001"))
        error = AgentInvocationError("Agent binary not found: claude", error_code="AGENT-NotFound")
        loop = make_loop(prd_path, FakeInvoker(prd_path, [error]), max_iterations=1)

        result = loop.run()

        assert result.records[0].outcome == "error"
        assert result.records[0].exit_code == 127
        assert loop.rotation.failure_count("claude-code", "sonnet") == 1

    def test_success_resets_failures(self, prd_path: Path) -> None:
        """A clean exit clears the pair's failure counter."""
        write_prd(prd_path, make_story("US-001"))
        loop = make_loop(
            prd_path, FakeInvoker(prd_path, [InvocationResult(1, ""), ok()]), max_iterations=2
        )

        loop.run()

        assert loop.rotation.failure_count("claude-code", "sonnet") == 0


class TestCallbacks:
    """Tests for progress callbacks and the prompt."""

    def test_iteration_callbacks(self, prd_path: Path) -> None:
        """Start and end callbacks fire once per iteration."""
        write_prd(prd_path, make_story("US-001"))
        starts: list[tuple[int, str, str]] = []
        ends: list[str] = []
        loop = make_loop(
            prd_path,
            FakeInvoker(prd_path, [completes("US-001")]),
            on_iteration_start=lambda i, task, ts, agent, model: starts.append((i, task.id, agent)),
            on_iteration_end=lambda record: ends.append(record.outcome),
        )

        loop.run()

        assert starts == [(1, "US-001", "claude-code")]
        assert ends == ["success"]

    def test_delay_between_iterations(self, prd_path: Path) -> None:
        """The loop pauses between iterations but not after the last one."""
        write_prd(prd_path, make_story("US-001"))
        pauses: list[float] = []
        loop = make_loop(
            prd_path,
            FakeInvoker(prd_path),
            options=LoopOptions(max_iterations=3, delay_seconds=2.0),
        )
        loop.sleep = pauses.append

        loop.run()

        assert pauses == [2.0, 2.0]

    def test_prompt_names_task_and_sentinel(self, prd_path: Path) -> None:
        """The prompt points at the store, the story and the sentinel."""
        task = Task(id="US-001", title="Login", description="d", priority=1, passes=False)

        prompt = build_prompt(task, prd_path)

        assert "prd.json" in prompt
        assert "US-001" in prompt
        assert COMPLETION_SENTINEL in prompt


class TestGitCoordination:
    """Tests for the loop's use of the git workflow."""

    @pytest.fixture
    def git(self) -> MagicMock:
        git = MagicMock()
        git.client.current_branch.return_value = "main"
        git.reconcile_after_iteration.return_value = Reconciliation()
        git.push_branch.return_value = RemoteResult(True, "Pushed")
        git.open_pull_request.return_value = RemoteResult(True, "created", url="https://example.com/pr/1")
        git.merge_pull_request.return_value = RemoteResult(True, "merged")
        return git

    def test_branch_ensured_and_reconciled(self, prd_path: Path, git: MagicMock) -> None:
        """Each iteration checks out the feature branch and reconciles after."""
        write_prd(prd_path, make_story("US-001"))
        loop = make_loop(prd_path, FakeInvoker(prd_path, [completes("US-001")]), git=git)

        loop.run()

        git.ensure_branch.assert_called_once_with("ralph/feature", "main")
        git.reconcile_after_iteration.assert_called_once_with(
            "ralph/feature",
            progress_made=True,
            story_id="US-001",
            story_title="Story US-001",
            push=False,
        )

    def test_reconciles_after_failed_iteration(self, prd_path: Path, git: MagicMock) -> None:
        """Reconciliation runs even when the agent fails."""
        write_prd(prd_path, make_story("US-001"))
        loop = make_loop(prd_path, FakeInvoker(prd_path, [InvocationResult(1, "")]), git=git, max_iterations=1)

        loop.run()

        assert git.reconcile_after_iteration.call_args.kwargs["progress_made"] is False

    def test_repeated_branch_failures_escalate(self, prd_path: Path, git: MagicMock) -> None:
        """Branch switch failures become fatal after the configured count."""
        write_prd(prd_path, make_story("US-001"))
        git.ensure_branch.side_effect = BranchSwitchFailed("cannot switch")
        invoker = FakeInvoker(prd_path)
        loop = make_loop(
            prd_path,
            invoker,
            git=git,
            options=LoopOptions(max_iterations=10, max_branch_failures=3),
        )

        result = loop.run()

        assert result.status == "git_failure"
        assert result.exit_code == 4
        assert git.ensure_branch.call_count == 3
        assert invoker.calls == []

    def test_unrestorable_branch_escalates_without_auto_checkout(self, prd_path: Path, git: MagicMock) -> None:
        """Reconciliation that keeps failing to restore the branch halts the loop."""
        write_prd(prd_path, make_story("US-001"))
        git.reconcile_after_iteration.side_effect = BranchSwitchFailed("Could not return to main")
        invoker = FakeInvoker(prd_path)
        loop = make_loop(
            prd_path,
            invoker,
            git=git,
            options=LoopOptions(max_iterations=6, auto_checkout_branch=False, max_branch_failures=3),
        )

        result = loop.run()

        assert result.status == "git_failure"
        assert result.iterations == 3
        assert result.message == "Could not return to main"
        git.ensure_branch.assert_not_called()
        assert len(invoker.calls) == 3

    def test_successful_reconcile_resets_branch_failures(self, prd_path: Path, git: MagicMock) -> None:
        """Only consecutive restore failures count towards the limit."""
        write_prd(prd_path, make_story("US-001"))
        failure = BranchSwitchFailed("Could not return to main")
        git.reconcile_after_iteration.side_effect = [failure, failure, Reconciliation(), failure, failure]
        loop = make_loop(
            prd_path,
            FakeInvoker(prd_path),
            git=git,
            options=LoopOptions(max_iterations=5, auto_checkout_branch=False, max_branch_failures=3),
        )

        result = loop.run()

        assert result.status == "max_iterations"

    def test_stash_conflict_is_immediately_fatal(self, prd_path: Path, git: MagicMock) -> None:
        """A stash that cannot be restored halts at once."""
        write_prd(prd_path, make_story("US-001"))
        git.ensure_branch.side_effect = StashRestoreFailed("conflict")

        result = make_loop(prd_path, FakeInvoker(prd_path), git=git).run()

        assert result.status == "git_failure"
        assert git.ensure_branch.call_count == 1

    def test_reconcile_failure_is_not_fatal(self, prd_path: Path, git: MagicMock) -> None:
        """A failed reconciliation is logged and the loop continues."""
        write_prd(prd_path, make_story("US-001"))
        git.reconcile_after_iteration.side_effect = [BranchSwitchFailed("stuck"), Reconciliation()]
        invoker = FakeInvoker(prd_path, [ok(), completes("US-001")])

        result = make_loop(prd_path, invoker, git=git).run()

        assert result.status == "complete"
        assert "stuck" in result.warnings

    def test_push_each_iteration(self, prd_path: Path, git: MagicMock) -> None:
        """timing: iteration pushes during reconciliation."""
        write_prd(prd_path, make_story("US-001"))
        options = LoopOptions(push_enabled=True, push_timing="iteration")

        make_loop(prd_path, FakeInvoker(prd_path, [completes("US-001")]), git=git, options=options).run()

        assert git.reconcile_after_iteration.call_args.kwargs["push"] is True
        git.push_branch.assert_not_called()

    def test_pull_request_on_completion(self, prd_path: Path, git: MagicMock) -> None:
        """On completion the branch is pushed, a PR opened and auto-merge requested."""
        write_prd(prd_path, make_story("US-001"))
        options = LoopOptions(create_pr=True, pr_draft=True, auto_merge=True)

        result = make_loop(
            prd_path, FakeInvoker(prd_path, [completes("US-001")]), git=git, options=options
        ).run()

        git.push_branch.assert_called_once_with("ralph/feature")
        git.open_pull_request.assert_called_once()
        assert git.open_pull_request.call_args.kwargs["draft"] is True
        git.merge_pull_request.assert_called_once_with("ralph/feature")
        assert result.pr_url == "https://example.com/pr/1"

    def test_no_pull_request_when_incomplete(self, prd_path: Path, git: MagicMock) -> None:
        """PRs are only opened for completed runs."""
        write_prd(prd_path, make_story("US-001"))
        options = LoopOptions(max_iterations=1, create_pr=True)

        make_loop(prd_path, FakeInvoker(prd_path), git=git, options=options).run()

        git.open_pull_request.assert_not_called()

    def test_pull_request_failure_is_a_warning(self, prd_path: Path, git: MagicMock) -> None:
        """A failed PR step is surfaced without changing the terminal state."""
        write_prd(prd_path, make_story("US-001"))
        git.open_pull_request.return_value = RemoteResult(False, "gh not found")
        options = LoopOptions(create_pr=True)

        result = make_loop(
            prd_path, FakeInvoker(prd_path, [completes("US-001")]), git=git, options=options
        ).run()

        assert result.status == "complete"
        assert "gh not found" in result.warnings
        assert result.pr_url is None
