"""Tests for logging configuration."""

import logging
import logging.handlers
from pathlib import Path

import pytest
from rich.logging import RichHandler

from ralph.logging_config import configure_logging


@pytest.fixture(autouse=True)
def restore_ralph_logger():
    """Put the ralph logger back the way pytest expects it."""
    logger = logging.getLogger("ralph")
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


class TestConfigureLogging:
    """Tests for configure_logging()."""

    def test_console_and_file_handlers(self, tmp_path: Path) -> None:
        """A rich console handler and a rotating file handler are installed."""
        configure_logging(tmp_path / ".ralph" / "ralph.log")

        handlers = logging.getLogger("ralph").handlers
        assert any(isinstance(h, RichHandler) for h in handlers)
        assert any(isinstance(h, logging.handlers.RotatingFileHandler) for h in handlers)

    def test_console_level(self, tmp_path: Path) -> None:
        """The console shows warnings by default and debug with verbose."""
        configure_logging(None)
        console = logging.getLogger("ralph").handlers[0]
        assert console.level == logging.WARNING

        configure_logging(None, verbose=True)
        console = logging.getLogger("ralph").handlers[0]
        assert console.level == logging.DEBUG

    def test_file_receives_debug(self, tmp_path: Path) -> None:
        """Debug records from submodules reach the log file."""
        log_file = tmp_path / "ralph.log"
        configure_logging(log_file)

        logging.getLogger("ralph.loop").debug("iteration detail")
        for handler in logging.getLogger("ralph").handlers:
            handler.flush()

        content = log_file.read_text()
        assert "iteration detail" in content
        assert "DEBUG" in content

    def test_reconfigure_replaces_handlers(self, tmp_path: Path) -> None:
        """Calling twice does not duplicate handlers."""
        configure_logging(tmp_path / "ralph.log")
        configure_logging(tmp_path / "ralph.log")

        assert len(logging.getLogger("ralph").handlers) == 2
