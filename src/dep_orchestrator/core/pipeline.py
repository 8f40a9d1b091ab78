"""Update pipeline: isolated workspace -> update -> install -> test -> lint -> commit -> push -> PR.

Three variants share one engine:

* ``run_update`` applies an explicit selection of packages,
* ``run_non_breaking`` applies every patch/minor bump the package manager allows,
* ``run_security_patch`` installs audited fix versions one package at a time.

Every run works inside a disposable worktree. The worktree is always
removed when the run ends; the branch is deleted too unless a commit was
made on it, in which case it is kept for manual recovery.
"""

import logging
import re
import threading
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from dep_orchestrator.config import Config, get_config
from dep_orchestrator.core.workspaces import (
    Workspace,
    WorkspaceError,
    cleanup_workspace,
    create_workspace,
)
from dep_orchestrator.db.models import PipelineResult, UpdateTarget, Vulnerability
from dep_orchestrator.ecosystems.registry import (
    EcosystemAdapter,
    detect_ecosystems,
    get_adapter,
    has_manifest,
)
from dep_orchestrator.integrations import git
from dep_orchestrator.integrations.process import (
    CommandResult,
    run_command,
    split_output_lines,
)

logger = logging.getLogger(__name__)


class PreconditionError(Exception):
    """A run was rejected before anything was mutated."""


class StepFailure(Exception):
    """A pipeline step failed; the run ends with a failed result."""


class Stage(str, Enum):
    PREPARING = "preparing"
    UPDATING = "updating"
    INSTALLING = "installing"
    TESTING = "testing"
    LINTING = "linting"
    COMMITTING = "committing"
    PUSHING = "pushing"
    CREATING_PR = "creating_pr"
    DONE = "done"


# ── Observers ─────────────────────────────────────────────────────────────────


class PipelineObserver(Protocol):
    def on_progress(self, message: str, step: int, total: int) -> None: ...

    def on_log(self, line: str) -> None: ...

    def on_warning(self, message: str, output: str) -> None: ...


@dataclass
class CallbackObserver:
    """Observer built from optional plain callables."""

    progress: Callable[[str, int, int], None] | None = None
    log: Callable[[str], None] | None = None
    warning: Callable[[str, str], None] | None = None

    def on_progress(self, message: str, step: int, total: int):
        if self.progress:
            self.progress(message, step, total)

    def on_log(self, line: str):
        if self.log:
            self.log(line)

    def on_warning(self, message: str, output: str):
        if self.warning:
            self.warning(message, output)


# ── Test result classification ───────────────────────────────────────────────


class ResultClassifier(Protocol):
    def passed(self, result: CommandResult) -> bool: ...


class ExitCodeResultClassifier:
    """Trust the exit code alone."""

    def passed(self, result: CommandResult) -> bool:
        return result.ok


class HeuristicResultClassifier:
    """Match common test-runner summaries in the combined output.

    A run passes only if it exited cleanly, printed a success summary, and
    printed no failure summary.
    """

    positive_patterns = (
        re.compile(r"\b\d+\s+(?:passing|passed)\b"),
        re.compile(r"\bPASS(?:ED)?\b"),
        re.compile(r"^OK\b", re.MULTILINE),
        re.compile(r"\b\d+\s+(?:examples?|tests?),\s+0\s+failures\b"),
    )
    failure_patterns = (
        re.compile(r"\b[1-9]\d*\s+(?:failing|failed|failures?|errors?)\b"),
        re.compile(r"\bFAIL(?:ED|URES?)?\b"),
        re.compile(r"^npm ERR!", re.MULTILINE),
    )

    def passed(self, result: CommandResult) -> bool:
        if not result.ok:
            return False
        output = result.output
        if any(p.search(output) for p in self.failure_patterns):
            return False
        return any(p.search(output) for p in self.positive_patterns)


# ── Same-repository mutex ────────────────────────────────────────────────────


class RepositoryLocks:
    """Advisory in-process lock per repository path."""

    def __init__(self):
        self._guard = threading.Lock()
        self._held: set[str] = set()

    @contextmanager
    def hold(self, repo_path: str | Path):
        key = str(Path(repo_path).resolve())
        with self._guard:
            if key in self._held:
                raise PreconditionError(
                    "Another update is already running for this repository."
                )
            self._held.add(key)
        try:
            yield
        finally:
            with self._guard:
                self._held.discard(key)

    def is_held(self, repo_path: str | Path) -> bool:
        with self._guard:
            return str(Path(repo_path).resolve()) in self._held


_default_locks = RepositoryLocks()


# ── Run state ────────────────────────────────────────────────────────────────


@dataclass
class PipelineOptions:
    repo_path: str
    branch_name: str = ""
    targets: list[UpdateTarget] = field(default_factory=list)
    create_pr: bool = False
    run_tests: bool = True
    update_strategy: str = "compatible"
    test_command: str | None = None
    test_timeout: float | None = None
    pr_title: str | None = None
    pr_body: str | None = None
    check_conflicts: bool = True
    ecosystem: str | None = None


@dataclass
class PipelineRun:
    options: PipelineOptions
    total_steps: int = 0
    stage: Stage = Stage.PREPARING
    step: int = 0
    log_lines: list[str] = field(default_factory=list)
    ecosystems: list[str] = field(default_factory=list)
    test_command: str | None = None
    workspace: Workspace | None = None
    committed: bool = False
    updated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    tests_passed: bool | None = None
    test_output: str = ""
    pr_url: str | None = None
    warnings: list[str] = field(default_factory=list)
    result: PipelineResult | None = None

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace.path)


def _plural(n: int, word: str = "package") -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def _bullets(names: list[str]) -> str:
    return "\n".join(f"- {n}" for n in names)


class PipelineEngine:
    """Runs update pipelines against local repositories."""

    def __init__(
        self,
        config: Config | None = None,
        observer: PipelineObserver | None = None,
        classifier: ResultClassifier | None = None,
        adapters: dict[str, EcosystemAdapter] | None = None,
        locks: RepositoryLocks | None = None,
    ):
        self.config = config or get_config()
        self.observer = observer or CallbackObserver()
        self.classifier = classifier or HeuristicResultClassifier()
        self.adapters = adapters
        self.locks = locks or _default_locks

    # ── public entry points ──

    def run_update(self, options: PipelineOptions) -> PipelineResult:
        """Apply the selected package targets."""
        return self._execute(options, self._update_selected, selective=True)

    def run_non_breaking(self, options: PipelineOptions) -> PipelineResult:
        """Apply every patch/minor update available for one ecosystem."""
        return self._execute(options, self._update_non_breaking)

    def run_security_patch(
        self,
        options: PipelineOptions,
        audit: Callable[[Path], list[Vulnerability]] | None = None,
    ) -> PipelineResult:
        """Install audited fix versions one package at a time."""
        return self._execute(
            options, lambda run: self._patch_vulnerabilities(run, audit), security=True
        )

    def adapter(self, ecosystem: str) -> EcosystemAdapter:
        if self.adapters is not None:
            try:
                return self.adapters[ecosystem]
            except KeyError:
                raise ValueError(f"Unsupported ecosystem: {ecosystem}") from None
        return get_adapter(ecosystem)

    # ── orchestration ──

    def _execute(self, options, body, selective=False, security=False) -> PipelineResult:
        run = PipelineRun(options=options)
        try:
            if selective and not options.targets:
                raise PreconditionError("No packages selected for update.")
            with self.locks.hold(options.repo_path):
                self._check_preconditions(run, selective)
                run.total_steps = self._total_steps(run, selective, security)
                try:
                    self._prepare(run)
                    body(run)
                finally:
                    self._cleanup(run)
        except PreconditionError as e:
            return self._finish(run, success=False, error=str(e))
        except StepFailure as e:
            return self._finish(run, success=False, error=str(e))
        except Exception as e:
            logger.exception("Pipeline crashed for %s", options.repo_path)
            return self._finish(run, success=False, error=f"Update failed: {e}")

        if security and run.failed:
            return self._finish(
                run,
                success=False,
                error=f"{_plural(len(run.failed))} could not be patched: {', '.join(run.failed)}",
            )
        return self._finish(run, success=True)

    def _check_preconditions(self, run: PipelineRun, selective: bool):
        opts = run.options
        repo = Path(opts.repo_path)

        if not git.is_git_repo(repo):
            raise PreconditionError("Git not initialized - run 'git init' first.")

        if selective:
            ecosystems = list(dict.fromkeys(t.ecosystem for t in opts.targets))
        elif opts.ecosystem:
            ecosystems = [opts.ecosystem]
        else:
            detected = detect_ecosystems(repo)
            if not detected:
                raise PreconditionError("No supported package manifest found.")
            ecosystems = detected[:1]

        for eco in ecosystems:
            try:
                adapter = self.adapter(eco)
            except ValueError as e:
                raise PreconditionError(str(e)) from e
            if not has_manifest(adapter, repo):
                files = ", ".join(adapter.manifest_files)
                raise PreconditionError(f"No {files} found - is this a {eco} project?")
        run.ecosystems = ecosystems

        if opts.run_tests:
            command = (opts.test_command or "").strip()
            if not command:
                command = self.adapter(ecosystems[0]).test_command(repo) or ""
            if not command:
                raise PreconditionError(
                    "No test command found - add a test script or disable tests."
                )
            run.test_command = command

        if opts.create_pr:
            try:
                git.ensure_pr_cli_ready(repo, timeout=self.config.cli_check_timeout)
            except git.PRCliError as e:
                raise PreconditionError(str(e)) from e

    def _total_steps(self, run: PipelineRun, selective: bool, security: bool) -> int:
        opts = run.options
        if security:
            return 2 + (2 if opts.create_pr else 0)
        total = 2 + (1 if selective else 0) + 1
        if opts.run_tests:
            total += 2
        if opts.create_pr:
            total += 2
        return total

    def _prepare(self, run: PipelineRun):
        opts = run.options
        repo = Path(opts.repo_path)
        self._stage(run, Stage.PREPARING, "Creating isolated workspace...")

        try:
            if git.has_uncommitted_changes(repo):
                self._warn(
                    run,
                    "Repository has uncommitted changes; they are not part of this update.",
                )
        except git.GitError as e:
            logger.debug("Status check failed: %s", e)

        if opts.check_conflicts:
            try:
                report = git.predict_merge_conflicts(
                    repo, threshold=self.config.conflict_threshold
                )
            except git.GitError as e:
                logger.debug("Conflict prediction skipped: %s", e)
            else:
                for w in report.warnings:
                    self._warn(
                        run,
                        f"Possible merge conflict in {w.path} "
                        f"({w.severity}: {w.commits_behind} commits behind {report.base_ref})",
                    )

        try:
            run.workspace = create_workspace(
                repo, opts.branch_name, root=self.config.workspace_root
            )
        except WorkspaceError as e:
            raise StepFailure(str(e)) from e
        self._log(run, f"Working on branch '{run.workspace.branch}' in {run.workspace.path}")

    def _cleanup(self, run: PipelineRun):
        if run.workspace is None:
            return
        ws = run.workspace
        outcome = cleanup_workspace(
            ws.repo_path, ws.path, ws.branch, delete_branch_after=not run.committed
        )
        if outcome["branch_deleted"]:
            self._log(run, f"Removed branch '{ws.branch}'")
        elif run.committed:
            self._log(run, f"Branch '{ws.branch}' kept with committed changes")

    def _finish(self, run: PipelineRun, success: bool, error: str | None = None) -> PipelineResult:
        if error:
            self._log(run, f"✗ {error}")
        run.stage = Stage.DONE
        run.result = PipelineResult(
            success=success,
            updated_packages=list(run.updated),
            failed_packages=list(run.failed),
            branch_name=run.workspace.branch if run.workspace else None,
            pr_url=run.pr_url,
            error=error,
            tests_passed=run.tests_passed,
            test_output=run.test_output,
            warnings=list(run.warnings),
        )
        return run.result

    # ── variant bodies ──

    def _update_selected(self, run: PipelineRun):
        opts = run.options
        self._stage(run, Stage.UPDATING, "Updating packages...")

        by_ecosystem: dict[str, list[str]] = {}
        for target in opts.targets:
            by_ecosystem.setdefault(target.ecosystem, []).append(target.name)

        for eco, names in by_ecosystem.items():
            outcome = self.adapter(eco).update(
                run.workspace_path, names, strategy=opts.update_strategy
            )
            run.updated.extend(outcome.updated)
            run.failed.extend(outcome.failed)

        for name in run.updated:
            self._log(run, f"✓ Updated {name}")
        for name in run.failed:
            self._log(run, f"✗ Skipped {name}")

        if not run.updated:
            raise StepFailure("No packages were updated. Check selections and try again.")

        self._install(run)
        self._verify_and_publish(
            run,
            f"chore(deps): update {_plural(len(run.updated))}\n\n"
            f"Updated packages:\n{_bullets(run.updated)}",
        )

    def _update_non_breaking(self, run: PipelineRun):
        adapter = self.adapter(run.ecosystems[0])
        ws = run.workspace_path
        self._stage(run, Stage.UPDATING, "Applying non-breaking updates...")

        before = [p for p in adapter.list_outdated(ws) if p.is_non_breaking]
        if not before:
            raise StepFailure("No non-breaking updates available.")
        self._log(run, f"Found {_plural(len(before), 'non-breaking update')}")

        outcome = adapter.update_non_breaking(ws, before)
        if not outcome.updated and set(outcome.failed) >= {p.name for p in before}:
            raise StepFailure("Non-breaking update failed. Please check your package manager output.")

        after = {p.name: p for p in adapter.list_outdated(ws)}
        for pkg in before:
            still = after.get(pkg.name)
            if still is None or still.current != pkg.current:
                run.updated.append(pkg.name)
                self._log(run, f"✓ Updated {pkg.name}")
            else:
                run.failed.append(pkg.name)
                self._log(run, f"✗ {pkg.name} did not move")

        if not run.updated:
            raise StepFailure("No packages were updated by the non-breaking update.")

        self._verify_and_publish(
            run,
            f"chore(deps): apply non-breaking updates to {_plural(len(run.updated))}\n\n"
            f"Updated packages:\n{_bullets(run.updated)}",
        )

    def _patch_vulnerabilities(self, run: PipelineRun, audit):
        opts = run.options
        adapter = self.adapter(run.ecosystems[0])
        ws = run.workspace_path
        self._stage(run, Stage.UPDATING, "Auditing dependencies...")

        found = (audit or adapter.audit)(ws)
        targets: dict[str, Vulnerability] = {}
        for vuln in found:
            if vuln.fix_version and not vuln.is_major_fix:
                targets.setdefault(vuln.name, vuln)
        if not targets:
            raise StepFailure("No critical/high vulnerabilities with safe fixes found.")

        run.total_steps += len(targets)
        issue_cli_ready = None
        any_test_failed = False

        for vuln in targets.values():
            self._stage(run, Stage.UPDATING, f"Patching {vuln.name} ({vuln.severity})")
            self._log(run, f"Updating {vuln.name} to {vuln.fix_version}")

            installed = adapter.install_version(ws, vuln.name, vuln.fix_version)
            if not installed.ok:
                self._log(run, f"✗ Install failed for {vuln.name}")
                run.failed.append(vuln.name)
                self._discard(run)
                continue

            if opts.run_tests:
                result = self._run_tests(run, adapter)
                if not run.tests_passed:
                    any_test_failed = True
                    run.failed.append(vuln.name)
                    if issue_cli_ready is None:
                        issue_cli_ready = self._pr_cli_ready(run)
                    if issue_cli_ready:
                        self._open_follow_up_issue(run, vuln, result.output)
                    self._discard(run)
                    continue

            try:
                git.commit_changes(
                    ws,
                    f"chore(security): patch {vuln.name} to {vuln.fix_version}",
                    adapter.files_to_commit(),
                )
            except git.GitError as e:
                self._log(run, f"✗ Commit failed for {vuln.name}: {e}")
                run.failed.append(vuln.name)
                self._discard(run)
                continue
            run.committed = True
            run.updated.append(vuln.name)
            self._log(run, f"✓ Patched {vuln.name}")

        if opts.run_tests and run.tests_passed is not None:
            run.tests_passed = not any_test_failed

        if not run.updated:
            raise StepFailure("No packages were successfully patched.")

        if opts.create_pr:
            self._publish(
                run,
                f"chore(security): patch {_plural(len(run.updated), 'vulnerable package')}",
                f"## Summary\nPatched {_plural(len(run.updated), 'vulnerable package')}.\n\n"
                f"### Updated packages\n{_bullets(run.updated)}",
            )

    # ── shared steps ──

    def _install(self, run: PipelineRun):
        self._stage(run, Stage.INSTALLING, "Running clean install...")
        for eco in run.ecosystems:
            command = self.adapter(eco).clean_install_command()
            if not command:
                continue
            self._log(run, f"> {command}")
            result = run_command(
                command, cwd=run.workspace_path, timeout=self.config.install_timeout
            )
            for line in split_output_lines(result.output):
                self._log(run, line)
            if result.timed_out:
                raise StepFailure(
                    f"Install timed out after {self.config.install_timeout:.0f}s."
                )
            if not result.ok:
                raise StepFailure("Install failed. Please check your package manager output.")

    def _run_tests(self, run: PipelineRun, adapter: EcosystemAdapter) -> CommandResult:
        timeout = run.options.test_timeout or self.config.test_timeout
        self._log(run, f"> {run.test_command}")
        result = run_command(run.test_command, cwd=run.workspace_path, timeout=timeout)
        for line in split_output_lines(result.output):
            self._log(run, line)

        classifier = getattr(adapter, "result_classifier", None) or self.classifier
        run.test_output = result.output
        run.tests_passed = classifier.passed(result)
        if result.timed_out:
            self._log(run, f"✗ Tests timed out after {timeout:.0f}s")
        return result

    def _verify_and_publish(self, run: PipelineRun, commit_message: str):
        opts = run.options
        primary = self.adapter(run.ecosystems[0])

        if opts.run_tests:
            self._stage(run, Stage.TESTING, "Running tests...")
            result = self._run_tests(run, primary)
            if result.timed_out:
                raise StepFailure("Tests timed out - no PR created.")
            if not run.tests_passed:
                raise StepFailure("Tests failed - no PR created.")
            self._log(run, "✓ All tests passed")

            lint_command = primary.lint_command(run.workspace_path)
            self._stage(run, Stage.LINTING, "Running linter...")
            if lint_command:
                self._lint(run, lint_command)
        else:
            self._log(run, "Tests skipped (disabled)")

        self._stage(run, Stage.COMMITTING, "Committing changes...")
        files: list[str] = []
        for eco in run.ecosystems:
            for name in self.adapter(eco).files_to_commit():
                if name not in files:
                    files.append(name)
        try:
            git.commit_changes(run.workspace_path, commit_message, files or None)
        except git.GitError as e:
            raise StepFailure(f"Commit failed: {e}") from e
        run.committed = True
        self._log(run, f"✓ Updates committed to branch '{run.workspace.branch}'")

        if opts.create_pr:
            n = len(run.updated)
            checks = "\n\n### Checks\n- [x] Tests passed\n- [x] Lint checked" if opts.run_tests else ""
            self._publish(
                run,
                opts.pr_title or f"chore(deps): update {_plural(n)}",
                opts.pr_body
                or f"## Summary\nAutomated dependency updates.\n\n"
                f"### Updated packages\n{_bullets(run.updated)}{checks}",
            )

    def _lint(self, run: PipelineRun, command: str):
        self._log(run, f"> {command}")
        result = run_command(command, cwd=run.workspace_path, timeout=self.config.lint_timeout)
        if result.ok:
            self._log(run, "✓ Lint passed")
        else:
            self._warn(run, "Linter found issues", result.output)

    def _publish(self, run: PipelineRun, title: str, body: str):
        branch = run.workspace.branch
        self._stage(run, Stage.PUSHING, "Pushing branch...")
        try:
            git.push_branch(run.workspace_path, branch)
        except git.GitError as e:
            raise StepFailure(
                f"Push failed: {e}. Branch '{branch}' is kept - push it manually."
            ) from e

        self._stage(run, Stage.CREATING_PR, "Creating pull request...")
        try:
            run.pr_url = git.create_pull_request(run.workspace_path, title, body, head=branch)
        except git.PRCliError as e:
            raise StepFailure(f"{e}. Branch '{branch}' is pushed - open a PR manually.") from e
        self._log(run, f"✓ PR created: {run.pr_url}")

    def _discard(self, run: PipelineRun):
        try:
            git.discard_working_tree(run.workspace_path)
        except git.GitError as e:
            logger.warning("Could not discard changes in %s: %s", run.workspace_path, e)

    def _pr_cli_ready(self, run: PipelineRun) -> bool:
        try:
            git.ensure_pr_cli_ready(run.workspace_path, timeout=self.config.cli_check_timeout)
        except git.PRCliError as e:
            self._log(run, f"Skipping follow-up issue: {e}")
            return False
        return True

    def _open_follow_up_issue(self, run: PipelineRun, vuln: Vulnerability, output: str):
        try:
            url = git.create_issue(
                run.workspace_path,
                f"Manual fix needed: {vuln.name} vulnerability",
                f"Patching {vuln.name} to {vuln.fix_version} failed the test suite.\n\n"
                f"Test output:\n```\n{output[-4000:]}\n```",
            )
            self._log(run, f"Opened follow-up issue for {vuln.name}: {url}")
        except git.PRCliError as e:
            self._log(run, f"Could not open follow-up issue for {vuln.name}: {e}")

    # ── events ──

    def _emit(self, method: str, *args):
        try:
            getattr(self.observer, method)(*args)
        except Exception:
            logger.exception("Pipeline observer %s failed", method)

    def _stage(self, run: PipelineRun, stage: Stage, message: str):
        run.stage = stage
        run.step += 1
        logger.info("[%s/%s] %s", run.step, run.total_steps, message)
        self._emit("on_progress", message, run.step, run.total_steps)

    def _log(self, run: PipelineRun, line: str):
        run.log_lines.append(line)
        logger.debug("%s", line)
        self._emit("on_log", line)

    def _warn(self, run: PipelineRun, message: str, output: str = ""):
        run.warnings.append(message)
        logger.warning("%s", message)
        self._emit("on_warning", message, output)
