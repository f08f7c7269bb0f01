"""
Global pytest configuration for Ralph.
"""

import shutil

import pytest


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests that drive real git repositories"
    )


@pytest.fixture
def requires_git():
    """Skip the test when the git binary is not installed."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
