"""Logging configuration for ralph.

A rotating file handler keeps the full DEBUG trail in ``.ralph/ralph.log``;
the console only shows warnings (or everything with --verbose) through rich
so log lines do not drown the agent's own output.
"""

import logging
import logging.handlers
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

# Default log format with detailed context
_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(module)s.%(funcName)s:%(lineno)d | %(message)s"


def configure_logging(
    log_file: Path | None,
    verbose: bool = False,
    console: Console | None = None,
    max_file_size_mb: int = 10,
    backup_count: int = 5,
) -> None:
    """Configure the ``ralph`` logger with console and file outputs.

    Args:
        log_file: Rotating log file, or None for console only
        verbose: Show DEBUG on the console instead of WARNING
        console: Rich console to log to (default: stderr)
        max_file_size_mb: Maximum size of each log file before rotation
        backup_count: Number of rotated files to keep
    """
    logger = logging.getLogger("ralph")
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        logger.addHandler(file_handler)

    logger.propagate = False
