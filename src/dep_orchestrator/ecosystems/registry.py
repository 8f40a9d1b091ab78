"""Adapter registry: one package-manager adapter per ecosystem tag."""

from __future__ import annotations

import importlib
from pathlib import Path
from typing import Protocol, runtime_checkable

from dep_orchestrator.db.models import OutdatedPackage, UpdateOutcome, Vulnerability
from dep_orchestrator.integrations.process import CommandResult


@runtime_checkable
class EcosystemAdapter(Protocol):
    """Interface every package-manager adapter must satisfy."""

    name: str
    package_manager: str
    manifest_files: tuple[str, ...]

    def list_outdated(self, workspace: Path) -> list[OutdatedPackage]: ...

    def update(
        self, workspace: Path, names: list[str], strategy: str = "compatible"
    ) -> UpdateOutcome: ...

    def update_non_breaking(
        self, workspace: Path, packages: list[OutdatedPackage]
    ) -> UpdateOutcome: ...

    def install_version(self, workspace: Path, name: str, version: str) -> CommandResult: ...

    def clean_install_command(self) -> str | None: ...

    def test_command(self, workspace: Path) -> str | None: ...

    def lint_command(self, workspace: Path) -> str | None: ...

    def files_to_commit(self) -> list[str]: ...

    def audit(self, workspace: Path) -> list[Vulnerability]: ...


ADAPTERS: dict[str, EcosystemAdapter] = {}

_BUILTIN_MODULES = (
    "dep_orchestrator.ecosystems.node",
    "dep_orchestrator.ecosystems.python",
    "dep_orchestrator.ecosystems.ruby",
    "dep_orchestrator.ecosystems.elixir",
)

# Files whose presence marks an ecosystem, in detection order.
DETECTION_FILES = (
    ("package.json", "node"),
    ("requirements.txt", "python"),
    ("Pipfile", "python"),
    ("pyproject.toml", "python"),
    ("Gemfile", "ruby"),
    ("mix.exs", "elixir"),
)


def register_adapter(adapter: EcosystemAdapter) -> None:
    """Register an adapter instance under its ecosystem name."""
    ADAPTERS[adapter.name] = adapter


_builtin_loaded = False


def _load_builtin() -> None:
    global _builtin_loaded
    if _builtin_loaded:
        return
    _builtin_loaded = True
    for module in _BUILTIN_MODULES:
        importlib.import_module(module)


def get_adapter(ecosystem: str) -> EcosystemAdapter:
    """Look up the adapter for an ecosystem tag. Raises ValueError if unknown."""
    _load_builtin()
    try:
        return ADAPTERS[ecosystem]
    except KeyError:
        raise ValueError(f"Unsupported ecosystem: {ecosystem}") from None


def detect_ecosystems(repo_path: str | Path) -> list[str]:
    """Return the ecosystems whose marker files exist at the repo root."""
    root = Path(repo_path)
    found: list[str] = []
    for filename, ecosystem in DETECTION_FILES:
        if (root / filename).exists() and ecosystem not in found:
            found.append(ecosystem)
    return found


def has_manifest(adapter: EcosystemAdapter, repo_path: str | Path) -> bool:
    root = Path(repo_path)
    return any((root / name).exists() for name in adapter.manifest_files)
