"""Shared fixtures: throwaway git repositories."""

import os
import subprocess
import tempfile
from pathlib import Path

import pytest

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


def git(cwd, *args, env=None) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        check=True,
        text=True,
        env=env or GIT_ENV,
    )
    return result.stdout.strip()


def commit_file(repo, name, content, message=None, env=None):
    path = Path(repo) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(repo, "add", name, env=env)
    git(repo, "commit", "-m", message or f"update {name}", env=env)


def init_repo(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init")
    git(path, "checkout", "-b", "main")
    # Worktree commits made by the code under test read identity from config
    git(path, "config", "user.name", "Test")
    git(path, "config", "user.email", "test@test.com")
    return path


@pytest.fixture
def git_repo():
    """Create a temporary git repo with an initial commit."""
    with tempfile.TemporaryDirectory() as tmp:
        repo = init_repo(Path(tmp) / "repo")
        commit_file(repo, "README.md", "# Test", "init")
        yield repo
