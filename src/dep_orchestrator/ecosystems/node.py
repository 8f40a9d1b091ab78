"""Node-style ecosystem adapter backed by npm."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from dep_orchestrator.db.models import OutdatedPackage, UpdateOutcome, Vulnerability
from dep_orchestrator.ecosystems.base import (
    OUTDATED_TIMEOUT,
    UPDATE_TIMEOUT,
    BaseAdapter,
    sort_outdated,
)
from dep_orchestrator.ecosystems.registry import register_adapter
from dep_orchestrator.ecosystems.versions import range_prefix
from dep_orchestrator.integrations.process import CommandResult, run_command

logger = logging.getLogger(__name__)

NPM_PLACEHOLDER_TEST = "no test specified"
AUDIT_SEVERITIES = ("high", "critical")


def _load_json(text: str) -> dict:
    try:
        data = json.loads(text or "{}")
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


class NodeAdapter(BaseAdapter):
    name = "node"
    package_manager = "npm"
    manifest_files = ("package.json",)
    lockfiles = ("package-lock.json",)

    def read_manifest(self, workspace: Path) -> dict:
        path = Path(workspace) / "package.json"
        if not path.exists():
            raise FileNotFoundError("No package.json found - is this a Node.js project?")
        return json.loads(path.read_text())

    def write_manifest(self, workspace: Path, manifest: dict):
        path = Path(workspace) / "package.json"
        path.write_text(json.dumps(manifest, indent=2) + "\n")

    def list_outdated(self, workspace: Path) -> list[OutdatedPackage]:
        manifest = self.read_manifest(workspace)
        declared = {
            **manifest.get("dependencies", {}),
            **manifest.get("devDependencies", {}),
        }
        dev = set(manifest.get("devDependencies", {}))

        # npm exits 1 whenever something is outdated; stdout is still valid.
        result = run_command(["npm", "outdated", "--json"], cwd=workspace, timeout=OUTDATED_TIMEOUT)
        payload = _load_json(result.stdout)

        packages = []
        for name, info in payload.items():
            if isinstance(info, list):
                info = info[0] if info else {}
            spec = declared.get(name, "")
            current = info.get("current") or spec[len(range_prefix(spec)):] or "0.0.0"
            wanted = info.get("wanted") or current
            latest = info.get("latest") or wanted
            packages.append(
                self._package(
                    name,
                    current,
                    latest,
                    wanted=wanted,
                    dependency_type="dev" if name in dev else "direct",
                )
            )
        return sort_outdated(packages)

    def update(
        self, workspace: Path, names: list[str], strategy: str = "compatible"
    ) -> UpdateOutcome:
        """Rewrite package.json entries, keeping each entry's range prefix."""
        manifest = self.read_manifest(workspace)
        outdated = {p.name: p for p in self.list_outdated(workspace)}
        outcome = UpdateOutcome()

        for name in names:
            pkg = outdated.get(name)
            target = self._target_for(pkg, strategy) if pkg else None
            if target is None:
                outcome.failed.append(name)
                continue

            for section in ("dependencies", "devDependencies"):
                entries = manifest.get(section) or {}
                if name in entries:
                    entries[name] = f"{range_prefix(entries[name])}{target}"
                    outcome.updated.append(name)
                    break
            else:
                outcome.failed.append(name)

        if outcome.updated:
            self.write_manifest(workspace, manifest)
        return outcome

    def update_non_breaking(
        self, workspace: Path, packages: list[OutdatedPackage]
    ) -> UpdateOutcome:
        """Reinstall from scratch and let npm move every range to its newest match."""
        result = self._run(
            "rm -rf node_modules package-lock.json && npm install && npm update --save",
            workspace,
        )
        if not result.ok:
            return UpdateOutcome(failed=[p.name for p in packages])
        return UpdateOutcome()

    def install_version(self, workspace: Path, name: str, version: str) -> CommandResult:
        return self._run(["npm", "install", f"{name}@{version}"], workspace, timeout=UPDATE_TIMEOUT)

    def clean_install_command(self) -> str:
        return "rm -rf node_modules package-lock.json && npm install"

    def test_command(self, workspace: Path) -> str | None:
        try:
            scripts = self.read_manifest(workspace).get("scripts") or {}
        except (FileNotFoundError, json.JSONDecodeError):
            return None
        test = scripts.get("test", "")
        if not test or NPM_PLACEHOLDER_TEST in test:
            return None
        return "npm test"

    def lint_command(self, workspace: Path) -> str:
        try:
            scripts = self.read_manifest(workspace).get("scripts") or {}
        except (FileNotFoundError, json.JSONDecodeError):
            scripts = {}
        if scripts.get("lint"):
            return "npm run lint"
        return "npx --no-install eslint ."

    def audit(self, workspace: Path) -> list[Vulnerability]:
        """High and critical advisories from ``npm audit`` that have a non-major fix."""
        result = run_command(["npm", "audit", "--json"], cwd=workspace, timeout=OUTDATED_TIMEOUT)
        return parse_audit(_load_json(result.stdout))


def parse_audit(payload: dict) -> list[Vulnerability]:
    """Parse both the npm 7+ ``vulnerabilities`` and legacy ``advisories`` shapes."""
    found: dict[str, Vulnerability] = {}

    for name, data in (payload.get("vulnerabilities") or {}).items():
        severity = str(data.get("severity", "")).lower()
        if severity not in AUDIT_SEVERITIES:
            continue
        fix = data.get("fixAvailable")
        if isinstance(fix, dict):
            if fix.get("isSemVerMajor"):
                continue
            found.setdefault(name, Vulnerability(name, severity, fix.get("version")))

    for advisory in (payload.get("advisories") or {}).values():
        severity = str(advisory.get("severity", "")).lower()
        if severity not in AUDIT_SEVERITIES:
            continue
        fix = advisory.get("fix_available")
        if isinstance(fix, dict):
            version = fix.get("version")
        elif isinstance(fix, str):
            version = fix
        else:
            version = None
        name = advisory.get("module_name")
        if name:
            found.setdefault(name, Vulnerability(name, severity, version))

    return list(found.values())


register_adapter(NodeAdapter())
