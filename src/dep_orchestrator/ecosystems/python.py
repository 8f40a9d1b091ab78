"""Python ecosystem adapter backed by pip and requirements.txt pins."""

from __future__ import annotations

import json
import re
from pathlib import Path

from packaging.utils import canonicalize_name

from dep_orchestrator.db.models import OutdatedPackage, UpdateOutcome
from dep_orchestrator.ecosystems.base import (
    OUTDATED_TIMEOUT,
    BaseAdapter,
    sort_outdated,
)
from dep_orchestrator.ecosystems.registry import register_adapter
from dep_orchestrator.integrations.process import CommandResult, run_command

REQUIREMENTS = "requirements.txt"

# name==version, ignoring markers and trailing comments
_PIN_RE = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)(\[[^\]]*\])?\s*==\s*([^\s;#]+)")
_SHOW_VERSION_RE = re.compile(r"^Version:\s*(\S+)", re.MULTILINE)


def parse_pins(content: str) -> dict[str, tuple[str, str]]:
    """Map canonical name to (name as written, pinned version)."""
    pins = {}
    for line in content.splitlines():
        if line.lstrip().startswith(("#", "-")):
            continue
        match = _PIN_RE.match(line)
        if match:
            pins[canonicalize_name(match.group(1))] = (match.group(1), match.group(3))
    return pins


def rewrite_pin(content: str, name: str, version: str) -> str:
    """Replace the pinned version of ``name``, keeping extras and markers."""
    wanted = canonicalize_name(name)
    lines = content.splitlines(keepends=True)
    for i, line in enumerate(lines):
        match = _PIN_RE.match(line)
        if match and canonicalize_name(match.group(1)) == wanted:
            lines[i] = line[: match.start(3)] + version + line[match.end(3):]
    return "".join(lines)


class PythonAdapter(BaseAdapter):
    name = "python"
    package_manager = "pip"
    manifest_files = (REQUIREMENTS,)
    lockfiles = ("Pipfile.lock", "poetry.lock")

    def _requirements(self, workspace: Path) -> Path:
        return Path(workspace) / REQUIREMENTS

    def list_outdated(self, workspace: Path) -> list[OutdatedPackage]:
        req = self._requirements(workspace)
        if not req.exists():
            return []
        pins = parse_pins(req.read_text())

        result = run_command(
            ["pip", "list", "--outdated", "--format=json"],
            cwd=workspace,
            timeout=OUTDATED_TIMEOUT,
        )
        try:
            outdated = json.loads(result.stdout or "[]")
        except json.JSONDecodeError:
            outdated = []

        packages = []
        for item in outdated:
            key = canonicalize_name(item.get("name", ""))
            if key not in pins:
                continue
            written, _pinned = pins[key]
            packages.append(self._package(written, item.get("version", ""), item.get("latest_version", "")))
        return sort_outdated(packages)

    def _installed_version(self, workspace: Path, name: str) -> str | None:
        result = run_command(["pip", "show", name], cwd=workspace)
        match = _SHOW_VERSION_RE.search(result.stdout)
        return match.group(1) if match else None

    def _pin(self, workspace: Path, name: str, version: str):
        req = self._requirements(workspace)
        req.write_text(rewrite_pin(req.read_text(), name, version))

    def update(
        self, workspace: Path, names: list[str], strategy: str = "compatible"
    ) -> UpdateOutcome:
        outdated = {canonicalize_name(p.name): p for p in self.list_outdated(workspace)}
        outcome = UpdateOutcome()

        for name in names:
            pkg = outdated.get(canonicalize_name(name))
            target = self._target_for(pkg, strategy) if pkg else None
            if target is None or not self.install_version(workspace, name, target).ok:
                outcome.failed.append(name)
                continue
            outcome.updated.append(name)
        return outcome

    def install_version(self, workspace: Path, name: str, version: str) -> CommandResult:
        result = self._run(["pip", "install", f"{name}=={version}"], workspace)
        if result.ok:
            self._pin(workspace, name, self._installed_version(workspace, name) or version)
        return result

    def clean_install_command(self) -> str:
        return "pip install -r requirements.txt --upgrade"

    def test_command(self, workspace: Path) -> str:
        return "python -m pytest"

    def lint_command(self, workspace: Path) -> str:
        return "ruff check . || flake8"


register_adapter(PythonAdapter())
