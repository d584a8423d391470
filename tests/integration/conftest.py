"""Fixtures for integration tests."""

import subprocess
from pathlib import Path
from typing import Protocol

import pytest


class CommitFn(Protocol):
    """Protocol for git commit function."""

    def __call__(self, message: str) -> str:
        """Commit the working tree and return the new SHA."""


def _git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create an empty git repository with a committer identity."""
    _git(tmp_path, "init")
    _git(tmp_path, "config", "user.email", "ci@example.com")
    _git(tmp_path, "config", "user.name", "CI")
    return tmp_path


@pytest.fixture
def git_commit(git_repo: Path) -> CommitFn:
    """Return a function committing everything in the test repo."""

    def _commit(message: str) -> str:
        _git(git_repo, "add", "-A")
        _git(git_repo, "commit", "--allow-empty", "-m", message)
        return _git(git_repo, "rev-parse", "HEAD")

    return _commit
