"""Git workflow coordination.

Two layers:

- `GitClient`: small methods that each map to one git command, run with
  ``subprocess`` in the repository root. Failures raise `GitCommandError`
  unless the method is a query that answers yes/no.
- `GitWorkflow`: the branch lifecycle built on top of the client. It puts the
  working tree on the feature branch before an iteration, reconciles whatever
  the agent left behind afterwards, and wraps push / PR / merge through the
  remote host's CLI (``gh``).

The working tree is treated as queryable truth: nothing about branch or dirty
state is cached between calls.
"""

import json
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from ralph.errors import (
    BranchSwitchFailed,
    ConfigurationError,
    GitCommandError,
    StashRestoreFailed,
)
from ralph.models import Reconciliation, TaskSet
from ralph.prd import load_prd, mark_completed, parse_prd, persist_prd

logger = logging.getLogger(__name__)

AUTO_COMMIT_MARKER = "(agent forgot to commit)"


@dataclass
class RemoteResult:
    """Outcome of a push / PR / merge call. Never retried silently."""

    success: bool
    message: str
    url: str | None = None


class GitClient:
    """Thin wrapper around the ``git`` binary for one repository.

    Args:
        repo: Repository root
        remote: Remote name for fetch/push
        exclude_paths: Paths (relative to repo) never stashed, staged or
            counted as dirty, e.g. ralph's own state directory
    """

    def __init__(
        self,
        repo: Path,
        remote: str = "origin",
        exclude_paths: tuple[str, ...] = (".ralph",),
    ) -> None:
        self.repo = repo
        self.remote = remote
        self.exclude_paths = exclude_paths

    def _git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.repo,
                capture_output=True,
                text=True,
                env=env,
            )
        except FileNotFoundError as e:
            raise GitCommandError("git executable not found", error_code="GIT-NotFound") from e
        if check and result.returncode != 0:
            raise GitCommandError(
                f"git {' '.join(args)} failed: {result.stderr.strip() or result.stdout.strip()}",
                error_code="GIT-CommandFailed",
                details={"args": args, "returncode": result.returncode},
            )
        return result

    def _ok(self, args: list[str]) -> bool:
        return self._git(args, check=False).returncode == 0

    def _pathspec(self) -> list[str]:
        return ["--", ".", *(f":(exclude){p}" for p in self.exclude_paths)]

    # --- queries ---

    def is_repository(self) -> bool:
        try:
            return self._ok(["rev-parse", "--git-dir"])
        except GitCommandError:
            return False

    def current_branch(self) -> str | None:
        """Checked-out branch name, or None when HEAD is detached."""
        out = self._git(["branch", "--show-current"]).stdout.strip()
        return out or None

    def head_commit(self) -> str | None:
        result = self._git(["rev-parse", "--verify", "-q", "HEAD"], check=False)
        return result.stdout.strip() or None

    def has_uncommitted_changes(self) -> bool:
        out = self._git(["status", "--porcelain", "--untracked-files=all", *self._pathspec()])
        return bool(out.stdout.strip())

    def branch_exists_local(self, name: str) -> bool:
        return self._ok(["show-ref", "--verify", "--quiet", f"refs/heads/{name}"])

    def has_remote(self) -> bool:
        return self._ok(["remote", "get-url", self.remote])

    def branch_exists_remote(self, name: str) -> bool:
        if not self.has_remote():
            return False
        return self._ok(["ls-remote", "--exit-code", "--heads", self.remote, name])

    def list_branches(self, pattern: str) -> list[str]:
        out = self._git(["branch", "--list", pattern, "--format=%(refname:short)"]).stdout
        return [line.strip() for line in out.splitlines() if line.strip()]

    def is_ancestor(self, ref: str, of: str = "HEAD") -> bool:
        return self._ok(["merge-base", "--is-ancestor", ref, of])

    def show_file(self, ref: str, path: str) -> str | None:
        result = self._git(["show", f"{ref}:{path}"], check=False)
        return result.stdout if result.returncode == 0 else None

    # --- mutations ---

    def fetch(self, ref: str) -> None:
        self._git(["fetch", self.remote, ref])

    def checkout(self, name: str) -> None:
        self._git(["checkout", name])

    def create_branch(self, name: str, start: str | None = None) -> None:
        args = ["checkout", "-b", name]
        if start:
            args.append(start)
        self._git(args)

    def stash_push(self, message: str) -> bool:
        """Stash tracked and untracked changes.

        Returns:
            True if a stash entry was created
        """
        before = self._git(["rev-parse", "-q", "--verify", "refs/stash"], check=False).stdout
        self._git(["stash", "push", "--include-untracked", "-m", message, *self._pathspec()])
        after = self._git(["rev-parse", "-q", "--verify", "refs/stash"], check=False).stdout
        return bool(after.strip()) and after != before

    def stash_apply(self) -> bool:
        return self._ok(["stash", "apply"])

    def stash_drop(self) -> None:
        self._git(["stash", "drop"])

    def commit_all(self, message: str) -> bool:
        """Stage everything (minus excluded paths) and commit.

        Returns:
            True if a commit was created, False if there was nothing to commit
        """
        self._git(["add", "-A", *self._pathspec()])
        if self._ok(["diff", "--cached", "--quiet"]):
            return False
        self._git(["commit", "-m", message])
        return True

    def commit_paths(self, paths: list[str], message: str) -> bool:
        self._git(["add", "--", *paths])
        if self._ok(["diff", "--cached", "--quiet"]):
            return False
        self._git(["commit", "-m", message])
        return True

    def merge_no_ff(self, branch: str, message: str) -> bool:
        """Merge ``branch`` into the current branch with a merge commit."""
        return self._ok(["merge", "--no-ff", branch, "-m", message])

    def merge_abort(self) -> None:
        self._git(["merge", "--abort"], check=False)

    def push(self, branch: str) -> subprocess.CompletedProcess[str]:
        return self._git(["push", "-u", self.remote, branch], check=False)


class GitWorkflow:
    """Keeps the working tree on the feature branch and cleans up after agents.

    Args:
        client: Git client for the repository
        prd_filename: Task store path relative to the repository root
    """

    def __init__(self, client: GitClient, prd_filename: str = "prd.json") -> None:
        self.client = client
        self.prd_filename = prd_filename

    # --- branch lifecycle ---

    def ensure_branch(self, name: str, base_branch: str) -> None:
        """Check out ``name``, creating it from ``base_branch`` if needed.

        Order: local branch, then remote branch (tracked), then a fresh branch
        from the remote base, the local base, or HEAD. A dirty tree is stashed
        first and re-applied afterwards.

        Raises:
            StashRestoreFailed: Stashed changes conflict on the target branch.
                The stash entry is kept.
            BranchSwitchFailed: Not on ``name`` after all attempts
        """
        if not name:
            raise BranchSwitchFailed("No branch name provided", error_code="GIT-NoBranch")

        current = self.client.current_branch()
        if current == name:
            return

        logger.info("Switching from %s to feature branch %s", current, name)
        stashed = False
        if self.client.head_commit() and self.client.has_uncommitted_changes():
            logger.info("Stashing uncommitted changes before branch switch")
            stashed = self.client.stash_push(f"ralph auto-stash before switching to {name}")

        try:
            self._switch_or_create(name, base_branch)
        except GitCommandError as e:
            logger.error("Checkout of %s failed: %s", name, e)

        if stashed:
            if not self.client.stash_apply():
                raise StashRestoreFailed(
                    f"Could not re-apply stashed changes on {self.client.current_branch()}",
                    error_code="GIT-StashConflict",
                    suggestion="Resolve manually with: git stash list && git stash apply",
                )
            self.client.stash_drop()

        current = self.client.current_branch()
        if current != name:
            raise BranchSwitchFailed(
                f"Failed to switch to branch {name} (currently on: {current})",
                error_code="GIT-BranchSwitchFailed",
                details={"expected": name, "actual": current},
                suggestion=f"Try: git stash && git checkout {name}",
            )
        logger.info("Now on branch: %s", name)

    def _switch_or_create(self, name: str, base_branch: str) -> None:
        client = self.client
        if client.branch_exists_local(name):
            client.checkout(name)
        elif client.branch_exists_remote(name):
            client.fetch(name)
            client.create_branch(name, f"{client.remote}/{name}")
        elif client.branch_exists_remote(base_branch):
            logger.info("Creating %s from %s/%s", name, client.remote, base_branch)
            client.fetch(base_branch)
            client.create_branch(name, f"{client.remote}/{base_branch}")
        elif client.branch_exists_local(base_branch):
            logger.info("Creating %s from local %s", name, base_branch)
            client.create_branch(name, base_branch)
        else:
            logger.info("Creating %s from HEAD", name)
            client.create_branch(name)

    # --- reconciliation ---

    def reconcile_after_iteration(
        self,
        expected_branch: str,
        progress_made: bool,
        story_id: str | None = None,
        story_title: str | None = None,
        push: bool = False,
    ) -> Reconciliation:
        """Restore a consistent tree after an agent invocation.

        Args:
            expected_branch: Feature branch the tree must end on
            progress_made: Independent evidence the task advanced
            story_id: Story the agent worked on (for sub-branch recovery)
            story_title: Used in merge messages
            push: Push the feature branch afterwards

        Raises:
            BranchSwitchFailed: The tree could not be brought back
        """
        result = Reconciliation()
        client = self.client

        current = client.current_branch()
        if current != expected_branch:
            source = current or client.head_commit()
            warning = f"Agent left the tree on {current or 'a detached HEAD'}"
            logger.warning("%s; restoring %s", warning, expected_branch)
            result.warnings.append(warning)
            if client.has_uncommitted_changes():
                client.commit_all(f"chore: Save work in progress from {source}")
            try:
                client.checkout(expected_branch)
            except GitCommandError as e:
                raise BranchSwitchFailed(
                    f"Could not return to {expected_branch}: {e}",
                    error_code="GIT-BranchSwitchFailed",
                ) from e
            result.branch_restored = True
            if current and not self._is_story_branch(current, expected_branch, story_id):
                result.warnings.append(f"Commits on {current} were not merged into {expected_branch}")

        if story_id:
            story_branch = self.find_story_branch(expected_branch, story_id)
            if story_branch and not client.is_ancestor(story_branch):
                if self.merge_story_branch(story_branch, story_id, story_title):
                    result.merged_branch = story_branch
                else:
                    result.warnings.append(f"Merge conflict merging {story_branch}")

        if client.has_uncommitted_changes():
            if progress_made:
                label = story_id or "iteration"
                client.commit_all(f"chore: Auto-commit {label} changes {AUTO_COMMIT_MARKER}")
                result.auto_committed = True
                logger.info("Auto-committed changes for %s", label)
            else:
                warning = "Uncommitted changes left without task progress; leaving them in place"
                logger.warning(warning)
                result.warnings.append(warning)

        if push:
            pushed = self.push_branch(expected_branch)
            result.pushed = pushed.success
            if not pushed.success:
                result.warnings.append(pushed.message)
        return result

    def _is_story_branch(self, branch: str, feature_branch: str, story_id: str | None) -> bool:
        if not story_id:
            return False
        return branch == f"{feature_branch}/{story_id}" or branch.endswith(
            (f"/{story_id}", f"-{story_id}")
        )

    def find_story_branch(self, feature_branch: str, story_id: str) -> str | None:
        """Find the sub-branch an agent used for a story, even if misnamed."""
        expected = f"{feature_branch}/{story_id}"
        if self.client.branch_exists_local(expected):
            return expected
        for pattern in (f"*/{story_id}", f"*-{story_id}"):
            found = [b for b in self.client.list_branches(pattern) if b != feature_branch]
            if found:
                logger.warning("Branch naming mismatch for %s: expected %s, found %s", story_id, expected, found[0])
                return found[0]
        return None

    def merge_story_branch(self, story_branch: str, story_id: str, story_title: str | None = None) -> bool:
        """Merge a story sub-branch into the current branch with ``--no-ff``.

        On conflict the merge is aborted. If the story was complete on the
        sub-branch, that completion is preserved on the current branch.

        Returns:
            True if the merge succeeded
        """
        passed_on_branch = self._story_passes_on(story_branch, story_id)
        message = f"Merge {story_id}: {story_title or story_id}"
        if self.client.merge_no_ff(story_branch, message):
            logger.info("Merged %s", story_branch)
            return True

        logger.error("Merge conflict for %s, aborting merge", story_branch)
        self.client.merge_abort()
        if passed_on_branch:
            self.preserve_story_completion(story_id)
        return False

    def _story_passes_on(self, ref: str, story_id: str) -> bool:
        content = self.client.show_file(ref, self.prd_filename)
        if content is None:
            return False
        try:
            task = parse_prd(json.loads(content)).get(story_id)
        except (ValueError, ConfigurationError) as e:
            logger.debug("Could not read %s from %s: %s", self.prd_filename, ref, e)
            return False
        return bool(task and task.passes)

    def preserve_story_completion(self, story_id: str) -> None:
        """Mark ``story_id`` complete in the working-tree PRD and commit it."""
        path = self.client.repo / self.prd_filename
        persist_prd(mark_completed(load_prd(path), story_id), path)
        self.client.commit_paths(
            [self.prd_filename], f"chore: Preserve {story_id} completion after merge conflict"
        )
        logger.info("Preserved completion status for %s", story_id)

    # --- remote operations ---

    def push_branch(self, branch: str) -> RemoteResult:
        if not self.client.has_remote():
            message = f"No remote '{self.client.remote}' configured, skipping push"
            logger.warning(message)
            return RemoteResult(False, message)
        result = self.client.push(branch)
        if result.returncode != 0:
            message = f"Failed to push {branch}: {result.stderr.strip()}"
            logger.error(message)
            return RemoteResult(False, message)
        logger.info("Pushed %s", branch)
        return RemoteResult(True, f"Pushed {branch}")

    def open_pull_request(
        self,
        branch: str,
        base: str,
        title: str,
        body: str,
        draft: bool = False,
    ) -> RemoteResult:
        ready = self._gh_ready()
        if ready is not None:
            return ready
        args = ["pr", "create", "--base", base, "--head", branch, "--title", title, "--body", body]
        if draft:
            args.append("--draft")
        result = self._gh(args)
        if result.returncode != 0:
            message = f"Failed to create pull request: {result.stderr.strip() or result.stdout.strip()}"
            logger.error(message)
            return RemoteResult(False, message)
        url = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else None
        logger.info("PR created: %s", url)
        return RemoteResult(True, "Pull request created", url=url)

    def merge_pull_request(self, branch: str) -> RemoteResult:
        ready = self._gh_ready()
        if ready is not None:
            return ready
        result = self._gh(["pr", "merge", branch, "--merge", "--auto"])
        if result.returncode != 0:
            message = f"Failed to merge pull request: {result.stderr.strip() or result.stdout.strip()}"
            logger.error(message)
            return RemoteResult(False, message)
        logger.info("Auto-merge enabled for %s", branch)
        return RemoteResult(True, "Pull request merge requested")

    def _gh_ready(self) -> RemoteResult | None:
        if shutil.which("gh") is None:
            return RemoteResult(False, "GitHub CLI (gh) not found, cannot manage pull requests")
        if self._gh(["auth", "status"]).returncode != 0:
            return RemoteResult(False, "Not authenticated with GitHub CLI. Run: gh auth login")
        return None

    def _gh(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.run(["gh", *args], cwd=self.client.repo, capture_output=True, text=True)


def pr_title(branch: str) -> str:
    """``ralph/user-auth`` -> ``user auth``."""
    return branch.removeprefix("ralph/").replace("-", " ")


def pr_body(task_set: TaskSet) -> str:
    """Pull request body generated from the task list."""
    summary = task_set.extra.get("description") or "Feature implementation completed by Ralph"
    stories = "\n".join(f"- [x] {t.id}: {t.title}" for t in task_set.active_tasks if t.passes)
    return (
        f"## Summary\n{summary}\n\n"
        f"## Completed Stories\n{stories or 'See prd.json for details'}\n\n"
        "## Test Plan\n"
        "- [ ] Review code changes\n"
        "- [ ] Run test suite\n"
        "- [ ] Manual verification\n"
    )
