"""Disposable git worktrees that isolate a pipeline run from the user's checkout."""

import logging
import re
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from dep_orchestrator.integrations.git import (
    GitError,
    branch_exists,
    delete_branch,
    is_protected_branch,
    worktree_add,
    worktree_prune,
    worktree_remove,
)

logger = logging.getLogger(__name__)

FALLBACK_PREFIX = "dpo/update"


class WorkspaceError(Exception):
    """Raised when an isolated workspace cannot be created."""


@dataclass
class Workspace:
    repo_path: str
    path: str
    branch: str


def fallback_branch_name(now: datetime | None = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return f"{FALLBACK_PREFIX}-{stamp}"


def sanitize_branch_name(name: str | None) -> str:
    """Reduce a requested branch name to characters git accepts everywhere.

    Empty results and protected branch names are replaced with a generated
    ``dpo/update-<timestamp>`` name.
    """
    slug = (name or "").strip()
    slug = slug.replace("..", "-").replace("@{", "-")
    slug = re.sub(r"[^A-Za-z0-9._/-]+", "-", slug)
    slug = re.sub(r"/{2,}", "/", slug)
    slug = re.sub(r"-{2,}", "-", slug)
    slug = "/".join(part.strip("-.") for part in slug.split("/"))
    slug = slug.strip("-./")
    if slug.endswith(".lock"):
        slug = slug[: -len(".lock")].rstrip("-./")
    if not slug or is_protected_branch(slug):
        return fallback_branch_name()
    return slug


def unique_branch_name(repo_path: str | Path, branch: str) -> str:
    """Append -2, -3, ... until the branch name is free."""
    if not branch_exists(repo_path, branch):
        return branch
    i = 2
    while branch_exists(repo_path, f"{branch}-{i}"):
        i += 1
    return f"{branch}-{i}"


def create_workspace(
    repo_path: str | Path,
    branch_name: str,
    root: str | Path | None = None,
) -> Workspace:
    """Check HEAD out onto a new branch in a fresh linked worktree.

    The worktree lives outside the repository, so the source index and
    working tree are untouched.
    """
    repo = Path(repo_path).resolve()
    branch = unique_branch_name(repo, sanitize_branch_name(branch_name))

    base = Path(root) if root else Path(tempfile.gettempdir())
    base.mkdir(parents=True, exist_ok=True)
    parent = Path(tempfile.mkdtemp(prefix="dpo-", dir=base))
    wt_path = parent / repo.name

    try:
        worktree_add(repo, wt_path, branch, base="HEAD", create_branch=True)
    except GitError as e:
        shutil.rmtree(parent, ignore_errors=True)
        raise WorkspaceError(f"Could not create workspace: {e}") from e

    logger.info("Created workspace %s on branch %s", wt_path, branch)
    return Workspace(repo_path=str(repo), path=str(wt_path), branch=branch)


def cleanup_workspace(
    repo_path: str | Path,
    workspace_path: str | Path,
    branch_name: str,
    delete_branch_after: bool = False,
) -> dict:
    """Remove a workspace and optionally its branch. Safe to call repeatedly."""
    repo = Path(repo_path)
    wt_path = Path(workspace_path)
    removed = False

    if wt_path.exists():
        try:
            worktree_remove(repo, wt_path, force=True)
            removed = True
        except GitError as e:
            logger.warning("git worktree remove failed for %s: %s", wt_path, e)
            shutil.rmtree(wt_path, ignore_errors=True)
            removed = not wt_path.exists()

    # Drop the mkdtemp parent as well
    parent = wt_path.parent
    if parent.name.startswith("dpo-") and parent.exists():
        shutil.rmtree(parent, ignore_errors=True)

    try:
        worktree_prune(repo)
    except GitError as e:
        logger.debug("git worktree prune failed: %s", e)

    branch_deleted = False
    if delete_branch_after and branch_name and branch_exists(repo, branch_name):
        try:
            delete_branch(repo, branch_name, force=True)
            branch_deleted = True
        except GitError as e:
            logger.warning("Could not delete branch %s: %s", branch_name, e)

    return {"path": str(wt_path), "removed": removed, "branch_deleted": branch_deleted}


@contextmanager
def workspace(
    repo_path: str | Path,
    branch_name: str,
    root: str | Path | None = None,
    keep_branch: bool = False,
):
    """Create a workspace for the duration of a block."""
    ws = create_workspace(repo_path, branch_name, root=root)
    try:
        yield ws
    finally:
        cleanup_workspace(ws.repo_path, ws.path, ws.branch, delete_branch_after=not keep_branch)
