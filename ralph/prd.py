"""Task store for the PRD (``prd.json``).

Loads and validates the user story list, answers "what should the agent work
on next", and persists mutations atomically. All operations that change the
task list are pure: they return a new TaskSet and leave the input untouched.

On-disk format::

    {
      "project": "...",
      "branchName": "ralph/feature",
      "userStories": [
        {"id": "US-001", "title": "...", "description": "...",
         "acceptanceCriteria": ["..."], "priority": 1,
         "blockedBy": ["US-000"], "passes": false, "notes": ""}
      ]
    }
"""

import json
import logging
import os
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Any

from ralph.errors import (
    DanglingReference,
    DuplicateId,
    MalformedInput,
    MissingField,
)
from ralph.models import REMOVED_STATUS, Task, TaskSet

logger = logging.getLogger(__name__)

REQUIRED_PRD_FIELDS = ("project", "branchName", "userStories")
REQUIRED_STORY_FIELDS = (
    "id",
    "title",
    "description",
    "acceptanceCriteria",
    "priority",
    "passes",
)

# Keys mapped onto Task attributes; everything else is carried in Task.extra
_STORY_KEYS = set(REQUIRED_STORY_FIELDS) | {"blockedBy", "notes", "status"}
_PRD_KEYS = set(REQUIRED_PRD_FIELDS)


def load_prd(path: Path) -> TaskSet:
    """Load and validate a PRD file.

    Args:
        path: Path to the PRD JSON file

    Returns:
        Validated TaskSet

    Raises:
        MalformedInput: If the file is missing, not JSON, or has the wrong shape
        MissingField: If the PRD or a story lacks a required attribute
        DanglingReference: If a blockedBy ID does not exist in the store
        DuplicateId: If two stories share an ID
    """
    if not path.exists():
        raise MalformedInput(
            f"PRD file not found: {path}",
            error_code="PRD-FileNotFound",
            details={"path": str(path)},
            suggestion="Generate a PRD first or pass --prd PATH",
        )

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise MalformedInput(
            f"PRD is not valid JSON: {path}: {e}",
            error_code="PRD-InvalidJson",
            details={"path": str(path)},
        ) from e

    task_set = parse_prd(data, source=str(path))
    cycles = find_dependency_cycles(task_set)
    for cycle in cycles:
        logger.warning("Circular blockedBy chain in %s: %s", path, " -> ".join(cycle))
    return task_set


def parse_prd(data: Any, source: str = "<prd>") -> TaskSet:
    """Validate a decoded PRD document and build a TaskSet."""
    if not isinstance(data, dict):
        raise MalformedInput(
            f"PRD must be a JSON object: {source}",
            error_code="PRD-NotAnObject",
        )

    for name in REQUIRED_PRD_FIELDS:
        if name not in data:
            raise MissingField(
                f"PRD missing required field: {name}",
                error_code="PRD-MissingField",
                details={"field": name, "source": source},
            )

    stories = data["userStories"]
    if not isinstance(stories, list):
        raise MalformedInput(
            "PRD field 'userStories' must be an array",
            error_code="PRD-StoriesNotArray",
            details={"source": source},
        )
    if not stories:
        logger.warning("PRD has no user stories: %s", source)

    tasks = tuple(_parse_story(story, index) for index, story in enumerate(stories))

    seen: set[str] = set()
    for task in tasks:
        if task.id in seen:
            raise DuplicateId(
                f"Duplicate story id: {task.id}",
                error_code="PRD-DuplicateId",
                details={"id": task.id, "source": source},
            )
        seen.add(task.id)

    for task in tasks:
        for dep in task.blocked_by:
            if dep not in seen:
                raise DanglingReference(
                    f"Story {task.id} is blocked by unknown story {dep}",
                    error_code="PRD-DanglingReference",
                    details={"id": task.id, "blockedBy": dep, "source": source},
                )

    return TaskSet(
        project=str(data["project"]),
        branch_name=str(data["branchName"] or ""),
        tasks=tasks,
        extra={k: v for k, v in data.items() if k not in _PRD_KEYS},
    )


def _parse_story(story: Any, index: int) -> Task:
    if not isinstance(story, dict):
        raise MalformedInput(
            f"User story at index {index} must be an object",
            error_code="PRD-StoryNotObject",
        )

    for name in REQUIRED_STORY_FIELDS:
        if name not in story:
            raise MissingField(
                f"User story at index {index} missing field: {name}",
                error_code="PRD-MissingField",
                details={"index": index, "field": name},
            )

    priority = story["priority"]
    # bool is an int subclass; reject it explicitly
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise MalformedInput(
            f"User story at index {index} has non-integer priority: {priority!r}",
            error_code="PRD-InvalidPriority",
        )
    if not isinstance(story["passes"], bool):
        raise MalformedInput(
            f"User story at index {index} has non-boolean passes: {story['passes']!r}",
            error_code="PRD-InvalidPasses",
        )

    blocked_by = story.get("blockedBy") or []
    if not isinstance(blocked_by, list) or not all(isinstance(d, str) for d in blocked_by):
        raise MalformedInput(
            f"User story at index {index} has invalid blockedBy (expected list of ids)",
            error_code="PRD-InvalidBlockedBy",
        )

    criteria = story["acceptanceCriteria"]
    if not isinstance(criteria, list):
        raise MalformedInput(
            f"User story at index {index} has invalid acceptanceCriteria",
            error_code="PRD-InvalidCriteria",
        )

    return Task(
        id=str(story["id"]),
        title=str(story["title"]),
        description=str(story["description"]),
        priority=priority,
        passes=story["passes"],
        acceptance_criteria=tuple(str(c) for c in criteria),
        blocked_by=tuple(blocked_by),
        notes=str(story.get("notes") or ""),
        status=story.get("status"),
        extra={k: v for k, v in story.items() if k not in _STORY_KEYS},
    )


def next_eligible_task(task_set: TaskSet) -> Task | None:
    """Return the next story the agent should work on.

    A story is eligible when it is not passing, not removed, and every story in
    its blockedBy list passes. The lowest priority value wins; ties keep input
    order. None means nothing is eligible: callers distinguish "all done" from
    "all blocked" with ``task_set.all_complete``.
    """
    completed = task_set.completed_ids
    best: Task | None = None
    for task in task_set.tasks:
        if task.passes or task.removed:
            continue
        if not all(dep in completed for dep in task.blocked_by):
            continue
        # Strict < keeps the earliest story on equal priority
        if best is None or task.priority < best.priority:
            best = task
    return best


def mark_completed(task_set: TaskSet, task_id: str) -> TaskSet:
    """Return a TaskSet with ``task_id`` passing. Idempotent.

    Raises:
        KeyError: If no story has this ID
    """
    return _update_task(task_set, task_id, passes=True)


def mark_removed(task_set: TaskSet, task_id: str) -> TaskSet:
    """Tag a story as removed. The story stays in the store for history."""
    return _update_task(task_set, task_id, status=REMOVED_STATUS)


def _update_task(task_set: TaskSet, task_id: str, **changes: Any) -> TaskSet:
    task = task_set.get(task_id)
    if task is None:
        raise KeyError(task_id)
    if all(getattr(task, k) == v for k, v in changes.items()):
        return task_set
    tasks = tuple(replace(t, **changes) if t.id == task_id else t for t in task_set.tasks)
    return replace(task_set, tasks=tasks)


def add_task(task_set: TaskSet, task: Task) -> TaskSet:
    """Append a story, enforcing the same invariants as load_prd."""
    if task_set.get(task.id) is not None:
        raise DuplicateId(f"Duplicate story id: {task.id}", error_code="PRD-DuplicateId")
    known = {t.id for t in task_set.tasks}
    for dep in task.blocked_by:
        if dep not in known:
            raise DanglingReference(
                f"Story {task.id} is blocked by unknown story {dep}",
                error_code="PRD-DanglingReference",
            )
    return replace(task_set, tasks=task_set.tasks + (task,))


def find_dependency_cycles(task_set: TaskSet) -> list[list[str]]:
    """Find circular blockedBy chains.

    Cycles are not fatal: tasks on a cycle simply never become eligible and
    the loop halts as blocked.

    Returns:
        One list per cycle, starting and ending with the same ID
    """
    edges = {t.id: t.blocked_by for t in task_set.tasks}
    done: set[str] = set()
    cycles: list[list[str]] = []

    # Iterative DFS; path is the chain currently being walked
    for root in edges:
        if root in done:
            continue
        path = [root]
        on_path = {root}
        pending = [iter(edges[root])]
        while pending:
            dep = next(pending[-1], None)
            if dep is None:
                pending.pop()
                finished = path.pop()
                on_path.discard(finished)
                done.add(finished)
            elif dep in on_path:
                cycles.append(path[path.index(dep):] + [dep])
            elif dep not in done:
                path.append(dep)
                on_path.add(dep)
                pending.append(iter(edges.get(dep, ())))
    return cycles


def to_document(task_set: TaskSet) -> dict[str, Any]:
    """Serialize a TaskSet back to the on-disk JSON structure."""
    document: dict[str, Any] = {
        "project": task_set.project,
        "branchName": task_set.branch_name,
    }
    document.update(task_set.extra)
    document["userStories"] = [_story_document(t) for t in task_set.tasks]
    return document


def _story_document(task: Task) -> dict[str, Any]:
    story: dict[str, Any] = {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "acceptanceCriteria": list(task.acceptance_criteria),
        "priority": task.priority,
    }
    if task.blocked_by:
        story["blockedBy"] = list(task.blocked_by)
    story["passes"] = task.passes
    story["notes"] = task.notes
    if task.status is not None:
        story["status"] = task.status
    story.update(task.extra)
    return story


def persist_prd(task_set: TaskSet, path: Path) -> None:
    """Write the PRD atomically.

    The document is written to a temporary file in the same directory and
    then renamed over ``path``, so a crash mid-write leaves the old file intact.
    """
    write_json_atomic(path, to_document(task_set))


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to ``path`` via write-temp-then-rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def task_list_identity(path: Path, task_set: TaskSet) -> str:
    """Identity of the active task list, used to scope rotation state."""
    return f"{path.name}:{task_set.branch_name}"


FIX_ID_PREFIX = "FIX-"


def next_fix_id(task_set: TaskSet) -> str:
    """Next ``FIX-NNN`` identifier for a change-request store."""
    numbers = [
        int(t.id[len(FIX_ID_PREFIX):])
        for t in task_set.tasks
        if t.id.startswith(FIX_ID_PREFIX) and t.id[len(FIX_ID_PREFIX):].isdigit()
    ]
    return f"{FIX_ID_PREFIX}{max(numbers, default=0) + 1:03d}"


def new_fix_store(main: TaskSet) -> TaskSet:
    """Empty change-request store sharing the main PRD's project and branch."""
    return TaskSet(project=main.project, branch_name=main.branch_name, tasks=())
