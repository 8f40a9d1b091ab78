"""Data models for dep orchestrator."""

from dataclasses import asdict, dataclass, field
from datetime import datetime

FREQUENCIES = ("hourly", "daily", "weekly", "monthly")


@dataclass
class Repository:
    path: str
    name: str
    ecosystems: list[str] = field(default_factory=list)
    has_git: bool = False
    exists: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class UpdateTarget:
    name: str
    ecosystem: str


@dataclass
class OutdatedPackage:
    name: str
    current: str
    wanted: str
    latest: str
    ecosystem: str
    dependency_type: str = "direct"
    update_type: str = "unknown"

    @property
    def is_non_breaking(self) -> bool:
        return self.update_type in ("patch", "minor")


@dataclass
class UpdateOutcome:
    updated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass
class Vulnerability:
    name: str
    severity: str
    fix_version: str | None = None
    is_major_fix: bool = False


@dataclass
class PipelineResult:
    success: bool
    updated_packages: list[str] = field(default_factory=list)
    failed_packages: list[str] = field(default_factory=list)
    branch_name: str | None = None
    pr_url: str | None = None
    error: str | None = None
    tests_passed: bool | None = None
    test_output: str = ""
    warnings: list[str] = field(default_factory=list)


@dataclass
class ScheduledJob:
    id: str
    repo_path: str
    repo_name: str
    frequency: str = "weekly"
    enabled: bool = True
    last_run: datetime | None = None
    next_run: datetime | None = None
    ecosystem: str | None = None
    create_pr: bool = False
    run_tests: bool = True
    created_at: datetime | None = None


@dataclass(frozen=True)
class JobResult:
    job_id: str
    success: bool
    timestamp: datetime
    updated_packages: tuple[str, ...] = ()
    pr_url: str | None = None
    error: str | None = None
    tests_passed: bool | None = None


@dataclass
class SmartScanSchedule:
    id: str
    repo_path: str
    repo_name: str
    quiet_hour: int = 6
    enabled: bool = True
    last_run: datetime | None = None
    next_run: datetime | None = None
    created_at: datetime | None = None


def to_dict(record) -> dict:
    """Dataclass record as a JSON-ready dict (datetimes as ISO strings, tuples as lists)."""
    out = {}
    for key, value in asdict(record).items():
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, tuple):
            value = list(value)
        out[key] = value
    return out
