"""Default executors the host binds to the schedulers."""

import logging
from datetime import datetime
from pathlib import Path

from dep_orchestrator.config import Config
from dep_orchestrator.core.pipeline import PipelineEngine, PipelineOptions
from dep_orchestrator.db.models import OutdatedPackage, PipelineResult, ScheduledJob, SmartScanSchedule
from dep_orchestrator.ecosystems.registry import detect_ecosystems, get_adapter

logger = logging.getLogger(__name__)


def scheduled_branch_name(job: ScheduledJob, now: datetime | None = None) -> str:
    """``dpo/<frequency>-<repo>-YYYYmmdd-HHMM``; the workspace layer sanitizes it."""
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M")
    return f"dpo/{job.frequency}-{job.repo_name}-{stamp}"


class PipelineJobExecutor:
    """Runs the non-breaking pipeline for a scheduled job."""

    def __init__(self, engine: PipelineEngine):
        self.engine = engine

    def __call__(self, job: ScheduledJob) -> PipelineResult:
        options = PipelineOptions(
            repo_path=job.repo_path,
            branch_name=scheduled_branch_name(job),
            create_pr=job.create_pr,
            run_tests=job.run_tests,
            ecosystem=job.ecosystem,
        )
        return self.engine.run_non_breaking(options)


def scan_outdated(repo_path: str | Path) -> list[OutdatedPackage]:
    """Outdated packages across every ecosystem detected in a repository."""
    packages = []
    for eco in detect_ecosystems(repo_path):
        packages.extend(get_adapter(eco).list_outdated(Path(repo_path)))
    return packages


def outdated_scan_executor(schedule: SmartScanSchedule) -> list[OutdatedPackage]:
    packages = scan_outdated(schedule.repo_path)
    non_breaking = sum(1 for p in packages if p.is_non_breaking)
    logger.info(
        "Smart scan of %s: %d outdated (%d non-breaking)",
        schedule.repo_name, len(packages), non_breaking,
    )
    return packages


def build_job_executor(config: Config) -> PipelineJobExecutor:
    return PipelineJobExecutor(PipelineEngine(config))
