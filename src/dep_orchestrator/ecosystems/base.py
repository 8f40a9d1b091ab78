"""Shared behaviour for package-manager adapters."""

from __future__ import annotations

import logging
from pathlib import Path

from dep_orchestrator.db.models import OutdatedPackage, UpdateOutcome, Vulnerability
from dep_orchestrator.ecosystems.versions import classify_update, is_non_breaking
from dep_orchestrator.integrations.process import CommandResult, run_command

logger = logging.getLogger(__name__)

UPDATE_STRATEGIES = ("compatible", "latest")

OUTDATED_TIMEOUT = 120.0
UPDATE_TIMEOUT = 300.0


class BaseAdapter:
    name = ""
    package_manager = ""
    manifest_files: tuple[str, ...] = ()
    lockfiles: tuple[str, ...] = ()
    result_classifier = None

    def list_outdated(self, workspace: Path) -> list[OutdatedPackage]:
        raise NotImplementedError

    def update(
        self, workspace: Path, names: list[str], strategy: str = "compatible"
    ) -> UpdateOutcome:
        raise NotImplementedError

    def update_non_breaking(
        self, workspace: Path, packages: list[OutdatedPackage]
    ) -> UpdateOutcome:
        """Apply every non-breaking bump one package at a time."""
        names = [p.name for p in packages if p.is_non_breaking]
        if not names:
            return UpdateOutcome()
        return self.update(workspace, names, strategy="compatible")

    def install_version(self, workspace: Path, name: str, version: str) -> CommandResult:
        raise NotImplementedError

    def clean_install_command(self) -> str | None:
        return None

    def test_command(self, workspace: Path) -> str | None:
        return None

    def lint_command(self, workspace: Path) -> str | None:
        return None

    def files_to_commit(self) -> list[str]:
        return list(self.manifest_files) + list(self.lockfiles)

    def audit(self, workspace: Path) -> list[Vulnerability]:
        return []

    # ── helpers ──

    def _package(
        self,
        name: str,
        current: str,
        latest: str,
        wanted: str | None = None,
        dependency_type: str = "direct",
    ) -> OutdatedPackage:
        wanted = wanted or latest
        return OutdatedPackage(
            name=name,
            current=current,
            wanted=wanted,
            latest=latest,
            ecosystem=self.name,
            dependency_type=dependency_type,
            update_type=classify_update(current, wanted),
        )

    def _run(self, cmd, workspace: Path, timeout: float = UPDATE_TIMEOUT) -> CommandResult:
        result = run_command(cmd, cwd=workspace, timeout=timeout)
        if not result.ok:
            logger.debug("%s exited %s: %s", result.display, result.exit_code, result.stderr.strip())
        return result

    def _target_for(self, package: OutdatedPackage, strategy: str) -> str | None:
        """Version to move to under a strategy, or None if the bump is not allowed."""
        if strategy not in UPDATE_STRATEGIES:
            raise ValueError(f"Unknown update strategy: {strategy}")
        if strategy == "latest":
            target = package.latest
            return target if classify_update(package.current, target) != "unknown" else None
        if is_non_breaking(package.update_type):
            return package.wanted
        if is_non_breaking(classify_update(package.current, package.latest)):
            return package.latest
        return None


def sort_outdated(packages: list[OutdatedPackage]) -> list[OutdatedPackage]:
    """Patch updates first, then by name."""
    return sorted(packages, key=lambda p: (p.update_type != "patch", p.name.lower()))
