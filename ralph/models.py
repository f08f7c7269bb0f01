"""Data models for ralph.

Defines dataclasses for PRD tasks, agent invocation results, iteration records
and git reconciliation outcomes. Task records are immutable; mutations in
ralph.prd return new TaskSet instances.
"""

from dataclasses import dataclass, field
from typing import Any, Literal

REMOVED_STATUS = "removed"

IterationOutcome = Literal["success", "error", "rate_limited", "timeout", "skipped"]

LoopStatus = Literal[
    "complete",
    "max_iterations",
    "blocked",
    "rate_limited",
    "git_failure",
]


@dataclass(frozen=True)
class Task:
    """A user story from the PRD.

    ``passes`` is the completion flag. ``blocked_by`` lists task IDs that must
    pass before this task becomes eligible. Keys of the on-disk story that ralph
    does not model are kept in ``extra`` so persisting never drops them.
    """

    id: str
    title: str
    description: str
    priority: int
    passes: bool
    acceptance_criteria: tuple[str, ...] = ()
    blocked_by: tuple[str, ...] = ()
    notes: str = ""
    status: str | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def removed(self) -> bool:
        return self.status == REMOVED_STATUS


@dataclass(frozen=True)
class TaskSet:
    """The full PRD: project metadata plus ordered user stories."""

    project: str
    branch_name: str
    tasks: tuple[Task, ...]
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    def get(self, task_id: str) -> Task | None:
        return next((t for t in self.tasks if t.id == task_id), None)

    @property
    def active_tasks(self) -> tuple[Task, ...]:
        """Tasks that are not tagged as removed."""
        return tuple(t for t in self.tasks if not t.removed)

    @property
    def completed_count(self) -> int:
        return sum(1 for t in self.active_tasks if t.passes)

    @property
    def total_count(self) -> int:
        return len(self.active_tasks)

    @property
    def all_complete(self) -> bool:
        return all(t.passes for t in self.active_tasks)

    @property
    def completed_ids(self) -> frozenset[str]:
        return frozenset(t.id for t in self.tasks if t.passes)


@dataclass
class InvocationResult:
    """Result of one agent process run.

    ``output`` is stdout and stderr merged in arrival order. On timeout
    ``timed_out`` is True and ``exit_code`` is the 124 sentinel; callers must
    classify by ``timed_out``, not by the numeric code.
    """

    exit_code: int
    output: str
    timed_out: bool = False
    duration_seconds: float = 0.0

    @property
    def failed(self) -> bool:
        return self.timed_out or self.exit_code != 0


@dataclass
class IterationRecord:
    """One pass of the loop (not persisted)."""

    iteration: int
    task_id: str | None
    agent: str | None
    model: str | None
    duration_seconds: float
    outcome: IterationOutcome
    exit_code: int | None = None
    fallback_agent: str | None = None
    newly_completed: tuple[str, ...] = ()


@dataclass
class Reconciliation:
    """What the git coordinator did after an iteration."""

    auto_committed: bool = False
    pushed: bool = False
    branch_restored: bool = False
    merged_branch: str | None = None
    warnings: list[str] = field(default_factory=list)
