"""
Ralph - Autonomous coding-agent loop.

This package repeatedly invokes an external AI coding agent against a PRD task
list until every story passes, rotating between agents and models on failure or
rate limiting and keeping the git working tree consistent between iterations.
"""

__version__ = "0.1.0"
