"""Tests for run archiving and the progress log."""

from datetime import date
from pathlib import Path

from ralph.archive import (
    archive_folder_name,
    archive_previous_run,
    ensure_progress_file,
    record_last_branch,
)


class TestArchiveFolderName:
    """Tests for archive_folder_name()."""

    def test_strips_ralph_prefix(self) -> None:
        """The ralph/ prefix is dropped and the date prepended."""
        assert archive_folder_name("ralph/user-auth", date(2025, 1, 15)) == "2025-01-15-user-auth"

    def test_flattens_slashes(self) -> None:
        """Nested branch names become a single folder."""
        assert archive_folder_name("feature/a/b", date(2025, 1, 15)) == "2025-01-15-feature-a-b"


class TestArchivePreviousRun:
    """Tests for archive_previous_run()."""

    def _setup(self, tmp_path: Path, last_branch: str | None) -> tuple[Path, Path, Path]:
        prd = tmp_path / "prd.json"
        prd.write_text('{"branchName": "ralph/old"}')
        progress = tmp_path / "progress.txt"
        progress.write_text("# Ralph Progress Log\nold entries\n")
        last = tmp_path / ".ralph" / "last-branch"
        if last_branch is not None:
            record_last_branch(last, last_branch)
        return prd, progress, last

    def test_archives_on_branch_change(self, tmp_path: Path) -> None:
        """A new branch archives the old PRD and progress log."""
        prd, progress, last = self._setup(tmp_path, "ralph/old")

        folder = archive_previous_run(
            prd, progress, tmp_path / "archive", last, "ralph/new", day=date(2025, 1, 15)
        )

        assert folder == tmp_path / "archive" / "2025-01-15-old"
        assert (folder / "prd.json").exists()
        assert "old entries" in (folder / "progress.txt").read_text()
        assert "old entries" not in progress.read_text()
        assert progress.read_text().startswith("# Ralph Progress Log")

    def test_same_branch_is_not_archived(self, tmp_path: Path) -> None:
        """Continuing the same branch keeps everything in place."""
        prd, progress, last = self._setup(tmp_path, "ralph/old")

        folder = archive_previous_run(prd, progress, tmp_path / "archive", last, "ralph/old")

        assert folder is None
        assert not (tmp_path / "archive").exists()
        assert "old entries" in progress.read_text()

    def test_first_run_is_not_archived(self, tmp_path: Path) -> None:
        """Without a recorded branch there is nothing to archive."""
        prd, progress, last = self._setup(tmp_path, None)

        assert archive_previous_run(prd, progress, tmp_path / "archive", last, "ralph/new") is None


class TestProgressFile:
    """Tests for progress log helpers."""

    def test_creates_missing_progress_file(self, tmp_path: Path) -> None:
        """A missing progress log is created with a header."""
        path = tmp_path / "progress.txt"

        ensure_progress_file(path)

        assert path.read_text().startswith("# Ralph Progress Log\nStarted: ")

    def test_keeps_existing_progress_file(self, tmp_path: Path) -> None:
        """An existing log is left untouched."""
        path = tmp_path / "progress.txt"
        path.write_text("notes\n")

        ensure_progress_file(path)

        assert path.read_text() == "notes\n"

    def test_record_last_branch_skips_empty(self, tmp_path: Path) -> None:
        """An empty branch name is not recorded."""
        path = tmp_path / "last-branch"

        record_last_branch(path, "")

        assert not path.exists()
