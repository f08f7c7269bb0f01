"""Shared error types for the ralph package.

Errors carry a human-readable message plus an optional error code, details
dictionary and suggestion so the CLI can print an actionable report.
"""

from typing import Any


class RalphError(Exception):
    """Base exception for ralph errors.

    Use this for user-facing errors that should have actionable messages.

    Attributes:
        message: Human-readable error message
        error_code: Optional short code, e.g. "PRD-DanglingReference"
        details: Optional dictionary with additional context
        suggestion: Optional hint on how to fix the problem
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
        suggestion: str | None = None,
    ) -> None:
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.suggestion = suggestion
        super().__init__(message)


# --- Configuration errors (fatal, reported before the loop starts) ---


class ConfigurationError(RalphError):
    """Malformed task store or agent configuration."""

    pass


class MalformedInput(ConfigurationError):
    """The on-disk container is not the expected structure."""

    pass


class MissingField(ConfigurationError):
    """A required attribute is missing."""

    pass


class DanglingReference(ConfigurationError):
    """A blockedBy entry does not resolve to a task in the same store."""

    pass


class DuplicateId(ConfigurationError):
    """Two tasks share the same ID."""

    pass


# --- Recoverable errors (absorbed inside the loop) ---


class AgentInvocationError(RalphError):
    """An agent process could not be started."""

    pass


class GitReconciliationError(RalphError):
    """Base class for git workflow problems."""

    pass


class GitCommandError(GitReconciliationError):
    """A git or gh command exited with a non-zero status."""

    pass


class BranchSwitchFailed(GitReconciliationError):
    """The working tree is not on the expected branch after all attempts."""

    pass


class StashRestoreFailed(GitReconciliationError):
    """Stashed changes could not be re-applied after a branch switch.

    The stash entry is left in place so no work is lost.
    """

    pass


class LockHeldError(RalphError):
    """Another ralph process already owns this working tree."""

    pass
