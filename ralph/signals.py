"""Deterministic classification of agent output.

Agents are black boxes that only talk through their combined stdout/stderr.
This module turns that text into the three signals the loop acts on: a rate
limit, an error marker and the completion sentinel.
"""

import re
from dataclasses import dataclass

COMPLETION_SENTINEL = "RALPH_COMPLETE"

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    r"hit your limit",
    r"rate limit",
    r"quota exceeded",
    r"too many requests",
    r"resets \d",
)
_ERROR_MARKER_PATTERNS: tuple[str, ...] = (
    r'"is_error"\s*:\s*true',
    r"error_during_execution",
)

# Must be alone on its line; an echoed prompt mentioning it does not count
_SENTINEL_RE = re.compile(rf"^[ \t]*{COMPLETION_SENTINEL}[ \t]*\r?$", re.MULTILINE)


@dataclass(frozen=True)
class OutputSignals:
    """Signals extracted from one invocation's output."""

    rate_limit_pattern: str | None = None
    error_marker: str | None = None
    sentinel: bool = False

    @property
    def rate_limited(self) -> bool:
        return self.rate_limit_pattern is not None


def _first_match(text: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if re.search(pattern, text, re.IGNORECASE):
            return pattern
    return None


def detect_rate_limit(output: str) -> str | None:
    """Return the matched rate-limit pattern, or None."""
    return _first_match(output, _RATE_LIMIT_PATTERNS)


def detect_error_marker(output: str) -> str | None:
    return _first_match(output, _ERROR_MARKER_PATTERNS)


def contains_completion_sentinel(output: str) -> bool:
    """True if the sentinel appears as a standalone line.

    This is only a hypothesis: the loop confirms it against the task store.
    """
    return _SENTINEL_RE.search(output) is not None


def interpret_output(output: str) -> OutputSignals:
    return OutputSignals(
        rate_limit_pattern=detect_rate_limit(output),
        error_marker=detect_error_marker(output),
        sentinel=contains_completion_sentinel(output),
    )
