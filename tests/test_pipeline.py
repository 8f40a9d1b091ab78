"""Tests for the update pipeline, using a file-backed fake ecosystem."""

import sys
from pathlib import Path

import pytest

from conftest import commit_file, git
from dep_orchestrator.config import Config
from dep_orchestrator.core.pipeline import (
    CallbackObserver,
    ExitCodeResultClassifier,
    HeuristicResultClassifier,
    PipelineEngine,
    PipelineOptions,
    RepositoryLocks,
)
from dep_orchestrator.db.models import UpdateOutcome, UpdateTarget, Vulnerability
from dep_orchestrator.ecosystems.base import BaseAdapter
from dep_orchestrator.integrations import git as git_mod
from dep_orchestrator.integrations.git import branch_exists, worktree_list
from dep_orchestrator.integrations.process import CommandResult

PASSING_TESTS = f'"{sys.executable}" -c "print(\'3 passing\')"'
FAILING_TESTS = f'"{sys.executable}" -c "import sys; print(\'1 failing\'); sys.exit(1)"'
# fails whenever a package named "evil" has been installed
EVIL_CHECK = f'"{sys.executable}" -c "import sys; sys.exit(\'evil\' in open(\'deps.txt\').read())"'


def _read_deps(ws) -> dict[str, str]:
    deps = {}
    for line in (Path(ws) / "deps.txt").read_text().splitlines():
        if "==" in line:
            name, version = line.split("==", 1)
            deps[name.strip()] = version.strip()
    return deps


def _write_deps(ws, deps: dict[str, str]):
    (Path(ws) / "deps.txt").write_text("".join(f"{n}=={v}\n" for n, v in deps.items()))


class FakeAdapter(BaseAdapter):
    """Ecosystem whose manifest is deps.txt and whose registry is a dict."""

    name = "fake"
    package_manager = "fakepm"
    manifest_files = ("deps.txt",)
    lockfiles = ()

    def __init__(self, latest=None, test_cmd=PASSING_TESTS, broken=()):
        self.latest = latest or {}
        self.test_cmd = test_cmd
        self.broken = set(broken)

    def list_outdated(self, workspace):
        packages = []
        for name, current in _read_deps(workspace).items():
            latest = self.latest.get(name)
            if latest and latest != current:
                packages.append(self._package(name, current, latest))
        return packages

    def update(self, workspace, names, strategy="compatible"):
        outdated = {p.name: p for p in self.list_outdated(workspace)}
        deps = _read_deps(workspace)
        outcome = UpdateOutcome()
        for name in names:
            pkg = outdated.get(name)
            target = self._target_for(pkg, strategy) if pkg else None
            if target is None or name in self.broken:
                outcome.failed.append(name)
                continue
            deps[name] = target
            outcome.updated.append(name)
        _write_deps(workspace, deps)
        return outcome

    def install_version(self, workspace, name, version):
        if name in self.broken:
            return CommandResult(command=["fakepm", "install", name], exit_code=1, stderr="broken")
        deps = _read_deps(workspace)
        deps[name] = version
        _write_deps(workspace, deps)
        return CommandResult(command=["fakepm", "install", name], exit_code=0)

    def test_command(self, workspace):
        return self.test_cmd


@pytest.fixture
def repo(git_repo):
    commit_file(git_repo, "deps.txt", "left-pad==1.0.0\nlodash==4.17.20\nreact==17.0.2\n", "add deps")
    return git_repo


@pytest.fixture
def config(tmp_path):
    return Config(db_path=tmp_path / "dpo.db", workspace_root=tmp_path / "workspaces")


LATEST = {"left-pad": "1.0.1", "lodash": "4.18.0", "react": "18.2.0"}


def _engine(config, adapter=None, **kwargs):
    return PipelineEngine(
        config,
        adapters={"fake": adapter or FakeAdapter(latest=LATEST)},
        locks=kwargs.pop("locks", RepositoryLocks()),
        **kwargs,
    )


def _source_state(repo) -> tuple[str, str]:
    return git(repo, "rev-parse", "--abbrev-ref", "HEAD"), git(repo, "rev-parse", "HEAD")


def _no_workspaces_left(config) -> bool:
    return not any(config.workspace_root.iterdir())


def _options(repo, names=("left-pad",), **kwargs):
    return PipelineOptions(
        repo_path=str(repo),
        branch_name=kwargs.pop("branch_name", "dpo/test-update"),
        targets=[UpdateTarget(n, "fake") for n in names],
        **kwargs,
    )


class TestSelectiveUpdate:
    def test_success_commits_on_branch(self, repo, config):
        events = []
        observer = CallbackObserver(progress=lambda m, s, t: events.append((s, t, m)))
        result = _engine(config, observer=observer).run_update(_options(repo, ["left-pad", "lodash"]))

        assert result.success, result.error
        assert result.updated_packages == ["left-pad", "lodash"]
        assert result.tests_passed is True
        assert "3 passing" in result.test_output
        assert result.branch_name == "dpo/test-update"

        assert branch_exists(repo, "dpo/test-update")
        subject = git(repo, "log", "-1", "--format=%s", "dpo/test-update")
        assert subject == "chore(deps): update 2 packages"
        body = git(repo, "log", "-1", "--format=%b", "dpo/test-update")
        assert "- left-pad" in body and "- lodash" in body
        assert "left-pad==1.0.1" in git(repo, "show", "dpo/test-update:deps.txt")
        assert git(repo, "rev-list", "--count", "main..dpo/test-update") == "1"
        assert _no_workspaces_left(config)

        # source checkout and worktree list untouched
        assert "left-pad==1.0.0" in (Path(repo) / "deps.txt").read_text()
        assert git(repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"
        assert len(worktree_list(repo)) == 1

        assert [s for s, _, _ in events] == [1, 2, 3, 4, 5, 6]
        assert all(t == 6 for _, t, _ in events)

    def test_failing_tests_leave_no_branch(self, repo, config):
        adapter = FakeAdapter(latest=LATEST, test_cmd=FAILING_TESTS)
        before = _source_state(repo)
        result = _engine(config, adapter).run_update(_options(repo))

        assert not result.success
        assert result.error == "Tests failed - no PR created."
        assert result.tests_passed is False
        assert not branch_exists(repo, "dpo/test-update")
        assert len(worktree_list(repo)) == 1
        assert _no_workspaces_left(config)
        assert _source_state(repo) == before
        assert "left-pad==1.0.0" in (Path(repo) / "deps.txt").read_text()

    def test_tests_disabled(self, repo, config):
        adapter = FakeAdapter(latest=LATEST, test_cmd=None)
        result = _engine(config, adapter).run_update(_options(repo, run_tests=False))
        assert result.success
        assert result.tests_passed is None

    def test_explicit_test_command_overrides_adapter(self, repo, config):
        adapter = FakeAdapter(latest=LATEST, test_cmd=FAILING_TESTS)
        result = _engine(config, adapter).run_update(_options(repo, test_command=PASSING_TESTS))
        assert result.success

    def test_nothing_updatable(self, repo, config):
        result = _engine(config).run_update(_options(repo, ["react"]))
        assert not result.success
        assert result.failed_packages == ["react"]
        assert "No packages were updated" in result.error
        assert not branch_exists(repo, "dpo/test-update")

    def test_latest_strategy_allows_major(self, repo, config):
        result = _engine(config).run_update(_options(repo, ["react"], update_strategy="latest"))
        assert result.success
        assert "react==18.2.0" in git(repo, "show", "dpo/test-update:deps.txt")

    def test_uncommitted_source_changes_warn(self, repo, config):
        (Path(repo) / "README.md").write_text("local edit")
        warnings = []
        observer = CallbackObserver(warning=lambda m, o: warnings.append(m))
        result = _engine(config, observer=observer).run_update(_options(repo))

        assert result.success
        assert any("uncommitted" in w for w in result.warnings)
        assert warnings == result.warnings
        assert (Path(repo) / "README.md").read_text() == "local edit"

    def test_observer_errors_do_not_fail_run(self, repo, config):
        def explode(*args):
            raise RuntimeError("observer broke")

        observer = CallbackObserver(progress=explode, log=explode, warning=explode)
        result = _engine(config, observer=observer).run_update(_options(repo))
        assert result.success

    def test_push_failure_keeps_branch(self, repo, config, monkeypatch):
        monkeypatch.setattr(git_mod, "ensure_pr_cli_ready", lambda *a, **k: None)
        before = _source_state(repo)
        result = _engine(config).run_update(_options(repo, create_pr=True))

        assert not result.success
        assert result.error.startswith("Push failed")
        assert result.updated_packages == ["left-pad"]
        assert branch_exists(repo, "dpo/test-update")
        assert git(repo, "rev-list", "--count", "main..dpo/test-update") == "1"
        assert len(worktree_list(repo)) == 1
        assert _no_workspaces_left(config)
        assert _source_state(repo) == before

    def test_pull_request_created(self, repo, config, monkeypatch):
        monkeypatch.setattr(git_mod, "ensure_pr_cli_ready", lambda *a, **k: None)
        monkeypatch.setattr(git_mod, "push_branch", lambda *a, **k: "")
        calls = {}

        def fake_pr(cwd, title, body, head=None, base=None):
            calls.update(title=title, body=body, head=head)
            return "https://github.com/acme/app/pull/7"

        monkeypatch.setattr(git_mod, "create_pull_request", fake_pr)
        result = _engine(config).run_update(_options(repo, create_pr=True))

        assert result.success
        assert result.pr_url == "https://github.com/acme/app/pull/7"
        assert calls["head"] == "dpo/test-update"
        assert "- left-pad" in calls["body"]
        assert "Tests passed" in calls["body"]


class TestPreconditions:
    def test_no_targets(self, repo, config):
        result = _engine(config).run_update(_options(repo, names=()))
        assert not result.success
        assert result.error == "No packages selected for update."

    def test_not_a_git_repo(self, tmp_path, config):
        plain = tmp_path / "plain"
        plain.mkdir()
        (plain / "deps.txt").write_text("left-pad==1.0.0\n")
        result = _engine(config).run_update(_options(plain))
        assert not result.success
        assert "git init" in result.error

    def test_missing_manifest(self, git_repo, config):
        result = _engine(config).run_update(_options(git_repo))
        assert not result.success
        assert "deps.txt" in result.error

    def test_unknown_ecosystem(self, repo, config):
        options = _options(repo)
        options.targets = [UpdateTarget("left-pad", "cobol")]
        result = _engine(config).run_update(options)
        assert not result.success
        assert "cobol" in result.error

    def test_no_test_command(self, repo, config):
        adapter = FakeAdapter(latest=LATEST, test_cmd=None)
        result = _engine(config, adapter).run_update(_options(repo))
        assert not result.success
        assert "No test command" in result.error

    def test_pr_cli_missing(self, repo, config, monkeypatch):
        def missing(*args, **kwargs):
            raise git_mod.PRCliMissingError("GitHub CLI (gh) is not installed")

        monkeypatch.setattr(git_mod, "ensure_pr_cli_ready", missing)
        result = _engine(config).run_update(_options(repo, create_pr=True))
        assert not result.success
        assert "not installed" in result.error
        assert result.branch_name is None
        assert not branch_exists(repo, "dpo/test-update")

    def test_concurrent_run_rejected(self, repo, config):
        locks = RepositoryLocks()
        with locks.hold(repo):
            result = _engine(config, locks=locks).run_update(_options(repo))
        assert not result.success
        assert "already running" in result.error
        assert not locks.is_held(repo)

    def test_lock_released_after_run(self, repo, config):
        locks = RepositoryLocks()
        engine = _engine(config, locks=locks)
        assert engine.run_update(_options(repo, branch_name="dpo/one")).success
        assert engine.run_update(_options(repo, branch_name="dpo/two")).success


class TestNonBreaking:
    def test_updates_only_non_breaking(self, repo, config):
        options = PipelineOptions(repo_path=str(repo), branch_name="dpo/nb", ecosystem="fake")
        result = _engine(config).run_non_breaking(options)

        assert result.success, result.error
        assert sorted(result.updated_packages) == ["left-pad", "lodash"]
        content = git(repo, "show", "dpo/nb:deps.txt")
        assert "react==17.0.2" in content
        assert "lodash==4.18.0" in content
        subject = git(repo, "log", "-1", "--format=%s", "dpo/nb")
        assert subject == "chore(deps): apply non-breaking updates to 2 packages"

    def test_nothing_available(self, repo, config):
        adapter = FakeAdapter(latest={"react": "18.2.0"})
        options = PipelineOptions(repo_path=str(repo), branch_name="dpo/nb", ecosystem="fake")
        result = _engine(config, adapter).run_non_breaking(options)
        assert not result.success
        assert "No non-breaking updates" in result.error
        assert not branch_exists(repo, "dpo/nb")

    def test_package_manager_failure_aborts(self, repo, config):
        adapter = FakeAdapter(latest=LATEST, broken={"left-pad", "lodash"})
        options = PipelineOptions(repo_path=str(repo), branch_name="dpo/nb", ecosystem="fake")
        before = _source_state(repo)
        result = _engine(config, adapter).run_non_breaking(options)

        assert not result.success
        assert result.error == "Non-breaking update failed. Please check your package manager output."
        assert result.updated_packages == []
        assert not branch_exists(repo, "dpo/nb")
        assert _no_workspaces_left(config)
        assert _source_state(repo) == before

    def test_partial_package_manager_failure_continues(self, repo, config):
        adapter = FakeAdapter(latest=LATEST, broken={"lodash"})
        options = PipelineOptions(repo_path=str(repo), branch_name="dpo/nb", ecosystem="fake")
        result = _engine(config, adapter).run_non_breaking(options)

        assert result.success, result.error
        assert result.updated_packages == ["left-pad"]
        assert result.failed_packages == ["lodash"]

    def test_detects_ecosystem(self, git_repo, config):
        options = PipelineOptions(repo_path=str(git_repo), branch_name="dpo/nb")
        result = _engine(config).run_non_breaking(options)
        assert not result.success
        assert "No supported package manifest" in result.error


class TestSecurityPatch:
    def _options(self, repo, **kwargs):
        return PipelineOptions(
            repo_path=str(repo), branch_name="dpo/security", ecosystem="fake", **kwargs
        )

    def test_patches_each_package_in_own_commit(self, repo, config):
        audit = lambda ws: [
            Vulnerability("left-pad", "high", "1.0.5"),
            Vulnerability("lodash", "critical", "4.17.21"),
            Vulnerability("react", "critical", "18.0.0", is_major_fix=True),
            Vulnerability("lodash", "high", "4.17.21"),
        ]
        result = _engine(config).run_security_patch(self._options(repo), audit=audit)

        assert result.success, result.error
        assert result.updated_packages == ["left-pad", "lodash"]
        assert result.failed_packages == []
        subjects = git(repo, "log", "-2", "--format=%s", "dpo/security").splitlines()
        assert subjects == [
            "chore(security): patch lodash to 4.17.21",
            "chore(security): patch left-pad to 1.0.5",
        ]

    def test_partial_failure(self, repo, config, monkeypatch):
        def missing(*args, **kwargs):
            raise git_mod.PRCliMissingError("gh missing")

        monkeypatch.setattr(git_mod, "ensure_pr_cli_ready", missing)
        adapter = FakeAdapter(test_cmd=EVIL_CHECK, broken={"lodash"})
        audit = lambda ws: [
            Vulnerability("left-pad", "high", "1.0.5"),
            Vulnerability("lodash", "high", "4.17.21"),
            Vulnerability("evil", "critical", "6.6.6"),
        ]
        engine = _engine(config, adapter, classifier=ExitCodeResultClassifier())
        result = engine.run_security_patch(self._options(repo), audit=audit)

        assert not result.success
        assert result.updated_packages == ["left-pad"]
        assert result.error == "2 packages could not be patched: lodash, evil"
        assert sorted(result.failed_packages) == ["evil", "lodash"]
        assert result.tests_passed is False
        content = git(repo, "show", "dpo/security:deps.txt")
        assert "left-pad==1.0.5" in content
        assert "evil" not in content

    def test_nothing_patched_deletes_branch(self, repo, config):
        adapter = FakeAdapter(broken={"left-pad"})
        audit = lambda ws: [Vulnerability("left-pad", "high", "1.0.5")]
        result = _engine(config, adapter).run_security_patch(self._options(repo), audit=audit)
        assert not result.success
        assert result.error == "No packages were successfully patched."
        assert not branch_exists(repo, "dpo/security")

    def test_no_fixable_vulnerabilities(self, repo, config):
        audit = lambda ws: [Vulnerability("react", "critical", None)]
        result = _engine(config).run_security_patch(self._options(repo), audit=audit)
        assert not result.success
        assert "No critical/high vulnerabilities" in result.error


class TestClassifiers:
    def _result(self, stdout, exit_code=0):
        return CommandResult(command="t", exit_code=exit_code, stdout=stdout)

    @pytest.mark.parametrize(
        "output",
        [
            "  12 passing (40ms)",
            "===== 8 passed in 0.12s =====",
            "Ran 4 tests in 0.001s\n\nOK",
            "Finished in 0.5 seconds\n10 examples, 0 failures",
            "3 tests, 0 failures",
            "PASS src/app.test.js",
        ],
    )
    def test_heuristic_passes(self, output):
        assert HeuristicResultClassifier().passed(self._result(output))

    @pytest.mark.parametrize(
        "output",
        [
            "10 passing\n1 failing",
            "===== 1 failed, 7 passed in 0.2s =====",
            "FAIL src/app.test.js",
            "no summary at all",
            "",
        ],
    )
    def test_heuristic_fails(self, output):
        assert not HeuristicResultClassifier().passed(self._result(output))

    def test_heuristic_requires_clean_exit(self):
        assert not HeuristicResultClassifier().passed(self._result("5 passing", exit_code=1))

    def test_exit_code_classifier(self):
        assert ExitCodeResultClassifier().passed(self._result(""))
        assert not ExitCodeResultClassifier().passed(self._result("5 passing", exit_code=2))


def test_repository_locks_are_per_path(tmp_path):
    locks = RepositoryLocks()
    a, b = tmp_path / "a", tmp_path / "b"
    a.mkdir()
    b.mkdir()
    with locks.hold(a):
        with locks.hold(b):
            assert locks.is_held(a) and locks.is_held(b)
        assert not locks.is_held(b)
    assert not locks.is_held(a)
