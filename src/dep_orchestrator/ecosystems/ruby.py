"""Ruby ecosystem adapter backed by bundler."""

from __future__ import annotations

import re
from pathlib import Path

from dep_orchestrator.db.models import OutdatedPackage, UpdateOutcome
from dep_orchestrator.ecosystems.base import OUTDATED_TIMEOUT, BaseAdapter, sort_outdated
from dep_orchestrator.ecosystems.registry import register_adapter
from dep_orchestrator.integrations.process import CommandResult, run_command

# gem_name (newest x.y.z, installed a.b.c[, requested ~> a.b])
_PARSEABLE_RE = re.compile(
    r"^(\S+)\s+\(newest\s+([0-9][^\s,)]*),\s+installed\s+([0-9][^\s,)]*)"
)


def parse_bundle_outdated(output: str) -> list[tuple[str, str, str]]:
    """Return (name, installed, newest) rows from ``bundle outdated --parseable``."""
    rows = []
    for line in output.splitlines():
        match = _PARSEABLE_RE.match(line.strip())
        if match:
            name, newest, installed = match.groups()
            rows.append((name, installed, newest))
    return rows


class RubyAdapter(BaseAdapter):
    name = "ruby"
    package_manager = "bundler"
    manifest_files = ("Gemfile",)
    lockfiles = ("Gemfile.lock",)

    def list_outdated(self, workspace: Path) -> list[OutdatedPackage]:
        # bundler exits 1 when gems are outdated
        result = run_command(
            ["bundle", "outdated", "--parseable"], cwd=workspace, timeout=OUTDATED_TIMEOUT
        )
        packages = [
            self._package(name, installed, newest)
            for name, installed, newest in parse_bundle_outdated(result.stdout)
        ]
        return sort_outdated(packages)

    def update(
        self, workspace: Path, names: list[str], strategy: str = "compatible"
    ) -> UpdateOutcome:
        outcome = UpdateOutcome()
        for name in names:
            cmd = ["bundle", "update", name, "--conservative"]
            if strategy == "compatible":
                cmd.append("--minor")
            if self._run(cmd, workspace).ok:
                outcome.updated.append(name)
            else:
                outcome.failed.append(name)
        return outcome

    def install_version(self, workspace: Path, name: str, version: str) -> CommandResult:
        # Bundler cannot target an exact version from the CLI; a conservative
        # update moves only this gem within the Gemfile constraint.
        return self._run(["bundle", "update", name, "--conservative"], workspace)

    def clean_install_command(self) -> str:
        return "rm -rf .bundle vendor/bundle && bundle install"

    def test_command(self, workspace: Path) -> str:
        return "bundle exec rspec || bundle exec rake test"

    def lint_command(self, workspace: Path) -> str:
        return "bundle exec rubocop"


register_adapter(RubyAdapter())
