"""Run archive and progress log.

When the PRD moves to a new feature branch, the previous run's PRD and
progress log are copied under ``archive/<date>-<branch>/`` and the progress
log starts over.
"""

import logging
import shutil
from datetime import date, datetime
from pathlib import Path

logger = logging.getLogger(__name__)


def progress_header(started: datetime | None = None) -> str:
    started = started or datetime.now()
    return f"# Ralph Progress Log\nStarted: {started.strftime('%Y-%m-%d %H:%M:%S')}\n---\n"


def archive_folder_name(branch: str, day: date | None = None) -> str:
    """``ralph/user-auth`` on 2025-01-15 -> ``2025-01-15-user-auth``."""
    day = day or date.today()
    return f"{day.isoformat()}-{branch.removeprefix('ralph/').replace('/', '-')}"


def ensure_progress_file(progress_path: Path) -> None:
    if not progress_path.exists():
        progress_path.write_text(progress_header(), encoding="utf-8")


def archive_previous_run(
    prd_path: Path,
    progress_path: Path,
    archive_dir: Path,
    last_branch_path: Path,
    current_branch: str,
    day: date | None = None,
) -> Path | None:
    """Archive the previous run if the feature branch changed.

    Args:
        prd_path: Current PRD file
        progress_path: Progress log
        archive_dir: Root of the archive
        last_branch_path: File recording the branch of the previous run
        current_branch: branchName of the PRD about to run
        day: Date for the folder name (default: today)

    Returns:
        The archive folder if an archive was written, None otherwise
    """
    if not current_branch or not last_branch_path.exists():
        return None
    last_branch = last_branch_path.read_text(encoding="utf-8").strip()
    if not last_branch or last_branch == current_branch:
        return None

    folder = archive_dir / archive_folder_name(last_branch, day)
    folder.mkdir(parents=True, exist_ok=True)
    for path in (prd_path, progress_path):
        if path.exists():
            shutil.copy2(path, folder / path.name)
    progress_path.write_text(progress_header(), encoding="utf-8")
    logger.info("Archived previous run %s to %s", last_branch, folder)
    return folder


def record_last_branch(last_branch_path: Path, branch: str) -> None:
    if branch:
        last_branch_path.parent.mkdir(parents=True, exist_ok=True)
        last_branch_path.write_text(f"{branch}\n", encoding="utf-8")
