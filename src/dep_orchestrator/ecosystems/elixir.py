"""Elixir ecosystem adapter backed by mix and hex."""

from __future__ import annotations

import re
from pathlib import Path

from dep_orchestrator.db.models import OutdatedPackage, UpdateOutcome
from dep_orchestrator.ecosystems.base import OUTDATED_TIMEOUT, BaseAdapter, sort_outdated
from dep_orchestrator.ecosystems.registry import register_adapter
from dep_orchestrator.integrations.process import CommandResult, run_command

_ROW_RE = re.compile(r"^(\S+)\s+([0-9][^\s]*)\s+([0-9][^\s]*)")


def parse_hex_outdated(output: str) -> list[tuple[str, str, str]]:
    """Return (name, current, latest) rows from the ``mix hex.outdated`` table."""
    return [m.groups() for m in map(_ROW_RE.match, output.splitlines()) if m]


class ElixirAdapter(BaseAdapter):
    name = "elixir"
    package_manager = "mix"
    manifest_files = ("mix.exs",)
    lockfiles = ("mix.lock",)

    def list_outdated(self, workspace: Path) -> list[OutdatedPackage]:
        result = run_command(["mix", "hex.outdated"], cwd=workspace, timeout=OUTDATED_TIMEOUT)
        packages = [
            self._package(name, current, latest)
            for name, current, latest in parse_hex_outdated(result.stdout)
        ]
        return sort_outdated(packages)

    def update(
        self, workspace: Path, names: list[str], strategy: str = "compatible"
    ) -> UpdateOutcome:
        # mix.exs requirements bound the update for either strategy
        outcome = UpdateOutcome()
        for name in names:
            if self._run(["mix", "deps.update", name], workspace).ok:
                outcome.updated.append(name)
            else:
                outcome.failed.append(name)
        return outcome

    def install_version(self, workspace: Path, name: str, version: str) -> CommandResult:
        return self._run(["mix", "deps.update", name], workspace)

    def clean_install_command(self) -> str:
        return "rm -rf deps _build && mix deps.get && mix compile"

    def test_command(self, workspace: Path) -> str:
        return "mix test"

    def lint_command(self, workspace: Path) -> str:
        return "mix credo"


register_adapter(ElixirAdapter())
