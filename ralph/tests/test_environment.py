"""Tests for loop pre-flight checks."""

from pathlib import Path
from unittest.mock import patch

import pytest

from ralph.environment import validate_environment
from ralph.errors import ConfigurationError


class TestValidateEnvironment:
    """Tests for validate_environment() function."""

    def test_returns_cwd_when_valid(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Returns the working directory when all checks pass."""
        (tmp_path / "prd.json").write_text("{}")
        monkeypatch.chdir(tmp_path)

        with patch("ralph.environment.GitClient.is_repository", return_value=True):
            result = validate_environment(Path("prd.json"))

        assert result == tmp_path

    def test_raises_outside_git_repository(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """A directory that is not a repository is rejected with a fix."""
        (tmp_path / "prd.json").write_text("{}")
        monkeypatch.chdir(tmp_path)

        with patch("ralph.environment.GitClient.is_repository", return_value=False):
            with pytest.raises(ConfigurationError) as exc_info:
                validate_environment(Path("prd.json"))

        assert exc_info.value.error_code == "ENV-NotAGitRepo"
        assert "git init" in exc_info.value.suggestion

    def test_git_not_required(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Without the git workflow a plain directory is fine."""
        (tmp_path / "prd.json").write_text("{}")
        monkeypatch.chdir(tmp_path)

        with patch("ralph.environment.GitClient.is_repository", return_value=False):
            assert validate_environment(Path("prd.json"), require_git=False) == tmp_path

    def test_raises_without_task_store(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """A missing prd.json is reported before the loop starts."""
        monkeypatch.chdir(tmp_path)

        with pytest.raises(ConfigurationError) as exc_info:
            validate_environment(Path("prd.json"), require_git=False)

        assert exc_info.value.error_code == "ENV-NoPrd"
