"""MCP server exposing dependency orchestrator tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from mcp.server.fastmcp import Context, FastMCP

from dep_orchestrator.config import Config, get_config
from dep_orchestrator.core import repositories as repositories_mod
from dep_orchestrator.core.executors import build_job_executor, outdated_scan_executor, scan_outdated
from dep_orchestrator.core.pipeline import PipelineEngine, PipelineOptions
from dep_orchestrator.core.scheduler import Scheduler
from dep_orchestrator.core.smart_scheduler import SmartScheduler
from dep_orchestrator.db.engine import get_db
from dep_orchestrator.db.models import UpdateTarget, to_dict
from dep_orchestrator.ecosystems.registry import detect_ecosystems, get_adapter
from dep_orchestrator.integrations import git
from dep_orchestrator.integrations.slack import SlackJobNotifier


@dataclass
class AppContext:
    config: Config
    engine: PipelineEngine
    scheduler: Scheduler
    smart_scheduler: SmartScheduler


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Start the schedulers on startup, stop their timers on shutdown."""
    config = get_config()
    engine = PipelineEngine(config)
    scheduler = Scheduler(
        config.db_path,
        build_job_executor(config),
        config=config,
        observers=[SlackJobNotifier(config.slack_bot_token, config.slack_channel)],
    )
    smart = SmartScheduler(config.db_path, outdated_scan_executor, config=config)
    scheduler.initialize()
    smart.initialize()

    try:
        yield AppContext(config=config, engine=engine, scheduler=scheduler, smart_scheduler=smart)
    finally:
        scheduler.cleanup()
        smart.cleanup()


mcp = FastMCP("dep-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Repository Tools ──────────────────────────────────────────────────────────


@mcp.tool()
def list_repositories(ctx: Context) -> list[dict]:
    """List tracked repositories with their detected ecosystems."""
    with get_db(_ctx(ctx).config.db_path) as db:
        return [to_dict(r) for r in repositories_mod.list_repositories(db)]


@mcp.tool()
def add_repository(ctx: Context, path: str, name: str | None = None) -> dict:
    """Track a local repository."""
    try:
        with get_db(_ctx(ctx).config.db_path) as db:
            return to_dict(repositories_mod.add_repository(db, path, name))
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def list_outdated(repo_path: str, ecosystem: str | None = None) -> list[dict] | dict:
    """List outdated packages with their update type (patch, minor, major)."""
    try:
        if ecosystem:
            packages = get_adapter(ecosystem).list_outdated(Path(repo_path))
        else:
            packages = scan_outdated(repo_path)
    except ValueError as e:
        return {"error": str(e)}
    return [to_dict(p) for p in packages]


@mcp.tool()
def predict_conflicts(ctx: Context, repo_path: str, threshold: int | None = None) -> dict:
    """Predict which dependency files may conflict with the default branch."""
    try:
        report = git.predict_merge_conflicts(
            repo_path, threshold=threshold or _ctx(ctx).config.conflict_threshold
        )
    except git.GitError as e:
        return {"error": str(e)}
    return to_dict(report)


# ── Update Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def run_update(
    ctx: Context,
    repo_path: str,
    packages: list[str],
    ecosystem: str | None = None,
    branch_name: str = "",
    create_pr: bool = False,
    run_tests: bool = True,
    strategy: str = "compatible",
) -> dict:
    """Update the named packages in an isolated worktree, test, commit, and optionally open a PR."""
    eco = ecosystem or next(iter(detect_ecosystems(repo_path)), None)
    if eco is None:
        return {"error": "No supported package manifest found."}
    options = PipelineOptions(
        repo_path=repo_path,
        branch_name=branch_name,
        targets=[UpdateTarget(name=p, ecosystem=eco) for p in packages],
        create_pr=create_pr,
        run_tests=run_tests,
        update_strategy=strategy,
    )
    return to_dict(_ctx(ctx).engine.run_update(options))


@mcp.tool()
def run_non_breaking_update(
    ctx: Context,
    repo_path: str,
    ecosystem: str | None = None,
    branch_name: str = "",
    create_pr: bool = False,
    run_tests: bool = True,
) -> dict:
    """Apply every patch and minor update the package manager allows."""
    options = PipelineOptions(
        repo_path=repo_path,
        branch_name=branch_name,
        create_pr=create_pr,
        run_tests=run_tests,
        ecosystem=ecosystem,
    )
    return to_dict(_ctx(ctx).engine.run_non_breaking(options))


@mcp.tool()
def run_security_patch(
    ctx: Context,
    repo_path: str,
    branch_name: str = "",
    create_pr: bool = False,
    run_tests: bool = True,
) -> dict:
    """Install fixes for high and critical vulnerabilities, one package per commit."""
    options = PipelineOptions(
        repo_path=repo_path,
        branch_name=branch_name,
        create_pr=create_pr,
        run_tests=run_tests,
        ecosystem="node",
    )
    return to_dict(_ctx(ctx).engine.run_security_patch(options))


# ── Scheduling Tools ──────────────────────────────────────────────────────────


@mcp.tool()
def list_jobs(ctx: Context) -> list[dict]:
    """List scheduled update jobs."""
    return [to_dict(j) for j in _ctx(ctx).scheduler.list_jobs()]


@mcp.tool()
def add_job(
    ctx: Context,
    repo_path: str,
    frequency: str = "weekly",
    create_pr: bool = False,
    run_tests: bool = True,
    ecosystem: str | None = None,
) -> dict:
    """Schedule recurring non-breaking updates. Frequency: hourly, daily, weekly, monthly."""
    try:
        job = _ctx(ctx).scheduler.add_job(
            repo_path,
            frequency=frequency,
            create_pr=create_pr,
            run_tests=run_tests,
            ecosystem=ecosystem,
        )
    except ValueError as e:
        return {"error": str(e)}
    return to_dict(job)


@mcp.tool()
def update_job(
    ctx: Context,
    job_id: str,
    frequency: str | None = None,
    enabled: bool | None = None,
    create_pr: bool | None = None,
    run_tests: bool | None = None,
) -> dict:
    """Edit a scheduled job."""
    try:
        job = _ctx(ctx).scheduler.update_job(
            job_id, frequency=frequency, enabled=enabled, create_pr=create_pr, run_tests=run_tests
        )
    except ValueError as e:
        return {"error": str(e)}
    if not job:
        return {"error": f"Job not found: {job_id}"}
    return to_dict(job)


@mcp.tool()
def delete_job(ctx: Context, job_id: str) -> dict:
    """Delete a scheduled job and its result history."""
    if not _ctx(ctx).scheduler.delete_job(job_id):
        return {"error": f"Job not found: {job_id}"}
    return {"deleted": job_id}


@mcp.tool()
def run_job(ctx: Context, job_id: str) -> dict:
    """Run a scheduled job immediately."""
    result = _ctx(ctx).scheduler.run_job(job_id)
    if result is None:
        return {"error": f"Job not found or disabled: {job_id}"}
    return to_dict(result)


@mcp.tool()
def job_results(ctx: Context, job_id: str | None = None, limit: int = 20) -> list[dict]:
    """Recent job outcomes, newest first."""
    return [to_dict(r) for r in _ctx(ctx).scheduler.get_job_results(job_id, limit=limit)]


@mcp.tool()
def list_smart_schedules(ctx: Context) -> list[dict]:
    """List smart scan schedules and their quiet hours."""
    return [to_dict(s) for s in _ctx(ctx).smart_scheduler.list_schedules()]


@mcp.tool()
def add_smart_schedule(ctx: Context, repo_path: str, quiet_hour: int | None = None) -> dict:
    """Schedule a daily scan at the repository's quietest commit hour."""
    try:
        schedule = _ctx(ctx).smart_scheduler.add_schedule(repo_path, quiet_hour=quiet_hour)
    except ValueError as e:
        return {"error": str(e)}
    return to_dict(schedule)
