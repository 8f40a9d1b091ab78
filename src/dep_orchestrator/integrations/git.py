"""Git and hosted-PR CLI wrappers for branch, worktree and publishing operations."""

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from dep_orchestrator.integrations.process import DEFAULT_TIMEOUT, run_command

logger = logging.getLogger(__name__)

PROTECTED_BRANCHES = ("main", "master", "develop", "production", "staging")

COMMON_DEPENDENCY_FILES = (
    "package.json",
    "package-lock.json",
    "requirements.txt",
    "Pipfile.lock",
    "Gemfile",
    "Gemfile.lock",
    "mix.exs",
    "mix.lock",
)

HIGH_SEVERITY_BEHIND = 25


class GitError(Exception):
    """Raised when a git command fails."""


class PRCliError(Exception):
    """Raised when the hosted-PR CLI cannot be used."""


class PRCliMissingError(PRCliError):
    """The hosted-PR CLI is not installed."""


class PRCliNotAuthenticatedError(PRCliError):
    """The hosted-PR CLI is installed but not logged in."""


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False


@dataclass
class RepoInfo:
    branch: str
    remote: str | None
    has_changes: bool
    is_protected_branch: bool
    default_branch: str
    ahead: int = 0
    behind: int = 0


@dataclass
class ConflictWarning:
    path: str
    severity: str
    commits_behind: int


@dataclass
class ConflictReport:
    base_ref: str | None
    commits_behind: int = 0
    warnings: list[ConflictWarning] = field(default_factory=list)


def run_git(
    args: list[str],
    cwd: str | Path | None = None,
    timeout: float | None = DEFAULT_TIMEOUT,
) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    result = run_command(["git"] + args, cwd=cwd, timeout=timeout)
    if not result.ok:
        reason = "timed out" if result.timed_out else result.stderr.strip()
        raise GitError(f"git {' '.join(args)} failed: {reason}")
    return result.stdout.strip()


def is_git_repo(path: str | Path) -> bool:
    return (Path(path) / ".git").exists()


# ── Branches ──────────────────────────────────────────────────────────────────


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name."""
    return run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)


def is_protected_branch(branch: str) -> bool:
    return branch.strip().lower() in PROTECTED_BRANCHES


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a local branch exists."""
    try:
        run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def _ref_exists(repo_path: str | Path, ref: str) -> bool:
    try:
        run_git(["rev-parse", "--verify", "--quiet", ref], cwd=repo_path)
        return True
    except GitError:
        return False


def get_default_branch(repo_path: str | Path) -> str:
    """Resolve the default branch from the remote HEAD, else try main, then master."""
    try:
        ref = run_git(["symbolic-ref", "--short", "refs/remotes/origin/HEAD"], cwd=repo_path)
        if ref.startswith("origin/"):
            return ref[len("origin/"):]
    except GitError:
        pass

    for candidate in ("main", "master"):
        if branch_exists(repo_path, candidate):
            return candidate
    return "main"


def create_branch(repo_path: str | Path, branch: str, start_point: str = "HEAD") -> str:
    """Create a branch without checking it out."""
    return run_git(["branch", branch, start_point], cwd=repo_path)


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path)


def get_remote_url(repo_path: str | Path, remote: str = "origin") -> str | None:
    try:
        return run_git(["remote", "get-url", remote], cwd=repo_path) or None
    except GitError:
        return None


# ── Working tree ──────────────────────────────────────────────────────────────


def get_status(cwd: str | Path) -> str:
    """Get git status of a working directory."""
    return run_git(["status", "--porcelain"], cwd=cwd)


def has_uncommitted_changes(cwd: str | Path) -> bool:
    return bool(get_status(cwd))


def discard_working_tree(cwd: str | Path):
    """Throw away tracked modifications and untracked files."""
    run_git(["checkout", "--", "."], cwd=cwd)
    run_git(["clean", "-fd"], cwd=cwd)


def ahead_behind(repo_path: str | Path, branch: str | None = None) -> tuple[int, int]:
    """Return (ahead, behind) relative to the branch's upstream, or (0, 0)."""
    ref = branch or "HEAD"
    try:
        upstream = run_git(["rev-parse", "--abbrev-ref", f"{ref}@{{upstream}}"], cwd=repo_path)
        counts = run_git(["rev-list", "--left-right", "--count", f"{upstream}...{ref}"], cwd=repo_path)
    except GitError:
        return 0, 0
    parts = counts.split()
    if len(parts) != 2:
        return 0, 0
    behind, ahead = (int(p) if p.isdigit() else 0 for p in parts)
    return ahead, behind


def get_repo_info(repo_path: str | Path) -> RepoInfo:
    """Summarize branch, remote, dirtiness and upstream position."""
    branch = get_current_branch(repo_path)
    try:
        dirty = has_uncommitted_changes(repo_path)
    except GitError:
        dirty = False
    ahead, behind = ahead_behind(repo_path)
    return RepoInfo(
        branch=branch,
        remote=get_remote_url(repo_path),
        has_changes=dirty,
        is_protected_branch=is_protected_branch(branch),
        default_branch=get_default_branch(repo_path),
        ahead=ahead,
        behind=behind,
    )


# ── Worktrees ─────────────────────────────────────────────────────────────────


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base: str = "HEAD",
    create_branch: bool = True,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch, str(worktree_path), base]
    else:
        args += [str(worktree_path), branch]
    return run_git(args, cwd=repo_path)


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """List all worktrees in porcelain format."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    worktrees = []
    current: dict = {}

    def flush():
        if current:
            worktrees.append(
                WorktreeInfo(
                    path=current.get("worktree", ""),
                    branch=current.get("branch", "").replace("refs/heads/", ""),
                    head=current.get("HEAD", ""),
                    is_bare=current.get("bare", False),
                )
            )
            current.clear()

    for line in output.split("\n"):
        if not line:
            flush()
        elif line.startswith("worktree "):
            current["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):]
        elif line == "bare":
            current["bare"] = True
    flush()

    return worktrees


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    return run_git(["worktree", "prune"], cwd=repo_path)


# ── Commit / push ─────────────────────────────────────────────────────────────


def commit_changes(cwd: str | Path, message: str, files: list[str] | None = None) -> list[str]:
    """Stage the given dependency files and commit. Returns the staged paths."""
    candidates = list(files) if files else list(COMMON_DEPENDENCY_FILES)
    staged = []
    for name in candidates:
        if not (Path(cwd) / name).exists():
            continue
        try:
            run_git(["add", "--", name], cwd=cwd)
            staged.append(name)
        except GitError as e:
            logger.debug("Could not stage %s: %s", name, e)

    run_git(["commit", "-m", message], cwd=cwd)
    return staged


def push_branch(cwd: str | Path, branch: str, remote: str = "origin", timeout: float = 120.0) -> str:
    return run_git(["push", "-u", remote, branch], cwd=cwd, timeout=timeout)


def commit_timestamps(cwd: str | Path, since_days: int = 30) -> list[datetime]:
    """Author timestamps of recent commits, converted to local time."""
    output = run_git(
        ["log", "--pretty=format:%ai", f"--since={since_days} days ago"],
        cwd=cwd,
    )
    stamps = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            aware = datetime.strptime(line, "%Y-%m-%d %H:%M:%S %z")
        except ValueError:
            continue
        stamps.append(aware.astimezone().replace(tzinfo=None))
    return stamps


# ── Hosted PR CLI ─────────────────────────────────────────────────────────────


def ensure_pr_cli_ready(cwd: str | Path | None = None, timeout: float = DEFAULT_TIMEOUT):
    """Raise unless the gh CLI is installed and authenticated."""
    if shutil.which("gh") is None:
        raise PRCliMissingError(
            "GitHub CLI (gh) is not installed - install it or disable PR creation."
        )
    result = run_command(["gh", "auth", "status"], cwd=cwd, timeout=timeout)
    if not result.ok:
        raise PRCliNotAuthenticatedError(
            "GitHub CLI is not authenticated - run 'gh auth login' first."
        )


def create_pull_request(
    cwd: str | Path,
    title: str,
    body: str,
    head: str | None = None,
    base: str | None = None,
    timeout: float = 60.0,
) -> str:
    """Open a pull request with gh and return its URL."""
    args = ["gh", "pr", "create", "--title", title, "--body", body]
    if head:
        args += ["--head", head]
    if base:
        args += ["--base", base]
    result = run_command(args, cwd=cwd, timeout=timeout)
    if not result.ok:
        raise PRCliError(f"gh pr create failed: {result.stderr.strip() or result.stdout.strip()}")
    lines = [line for line in result.stdout.splitlines() if line.strip()]
    return lines[-1].strip() if lines else ""


def create_issue(cwd: str | Path, title: str, body: str, timeout: float = 60.0) -> str:
    """Open an issue with gh and return its URL."""
    result = run_command(
        ["gh", "issue", "create", "--title", title, "--body", body],
        cwd=cwd,
        timeout=timeout,
    )
    if not result.ok:
        raise PRCliError(f"gh issue create failed: {result.stderr.strip()}")
    return result.stdout.strip()


# ── Merge-conflict prediction ─────────────────────────────────────────────────


def _changed_files(repo_path: str | Path, since: str, until: str) -> set[str]:
    output = run_git(["diff", "--name-only", f"{since}..{until}"], cwd=repo_path)
    return {line.strip() for line in output.splitlines() if line.strip()}


def predict_merge_conflicts(
    repo_path: str | Path,
    threshold: int = 10,
    base_ref: str | None = None,
    head: str = "HEAD",
) -> ConflictReport:
    """Predict overlap between local work and the default branch.

    Nothing is reported while fewer than ``threshold`` commits behind.
    Past that, every path touched on both sides since the merge base is
    flagged; 25 or more commits behind makes the warning high severity.
    """
    if base_ref is None:
        try:
            run_git(["fetch", "--quiet", "origin"], cwd=repo_path, timeout=60.0)
        except GitError as e:
            logger.debug("Fetch skipped: %s", e)
        default = get_default_branch(repo_path)
        remote_ref = f"origin/{default}"
        base_ref = remote_ref if _ref_exists(repo_path, remote_ref) else default

    if not _ref_exists(repo_path, base_ref):
        return ConflictReport(base_ref=None)

    behind_out = run_git(["rev-list", "--count", f"{head}..{base_ref}"], cwd=repo_path)
    behind = int(behind_out) if behind_out.isdigit() else 0
    report = ConflictReport(base_ref=base_ref, commits_behind=behind)
    if behind < threshold:
        return report

    merge_base = run_git(["merge-base", head, base_ref], cwd=repo_path)
    ours = _changed_files(repo_path, merge_base, head)
    theirs = _changed_files(repo_path, merge_base, base_ref)
    severity = "high" if behind >= HIGH_SEVERITY_BEHIND else "medium"
    report.warnings = [
        ConflictWarning(path=p, severity=severity, commits_behind=behind)
        for p in sorted(ours & theirs)
    ]
    return report
