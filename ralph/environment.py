"""Environment validation for loop prerequisites.

Validates that ralph is running in a usable context:
- Inside a git repository (when the git workflow is enabled)
- With a task store present
"""

from pathlib import Path

from ralph.errors import ConfigurationError
from ralph.git_ops import GitClient


def validate_environment(prd_path: Path, require_git: bool = True) -> Path:
    """Validate prerequisites and return the working directory.

    Args:
        prd_path: Task store the loop will run against
        require_git: Whether a git repository is required

    Returns:
        Path to the current working directory on success.

    Raises:
        ConfigurationError: If a prerequisite is not met. The error message
            includes an actionable command to fix the issue.
    """
    cwd = Path.cwd()

    if require_git and not GitClient(cwd).is_repository():
        raise ConfigurationError(
            "Not inside a git repository.",
            error_code="ENV-NotAGitRepo",
            suggestion="Run: git init (or disable git.auto-checkout-branch)",
        )

    if not prd_path.exists():
        raise ConfigurationError(
            f"Task store not found: {prd_path}",
            error_code="ENV-NoPrd",
            suggestion="Create prd.json first or pass --prd PATH",
        )

    return cwd
