"""CLI entry point for the dependency orchestrator."""

import json
import logging
import sys
from pathlib import Path

import click

from dep_orchestrator.config import get_config
from dep_orchestrator.core import repositories as repositories_mod
from dep_orchestrator.core.executors import build_job_executor, outdated_scan_executor, scan_outdated
from dep_orchestrator.core.pipeline import CallbackObserver, PipelineEngine, PipelineOptions
from dep_orchestrator.core.scheduler import Scheduler
from dep_orchestrator.core.smart_scheduler import SmartScheduler, analyze_commit_patterns
from dep_orchestrator.db.engine import get_db
from dep_orchestrator.db.models import UpdateTarget, to_dict
from dep_orchestrator.ecosystems.base import UPDATE_STRATEGIES
from dep_orchestrator.ecosystems.registry import detect_ecosystems, get_adapter
from dep_orchestrator.integrations import git
from dep_orchestrator.integrations.slack import SlackJobNotifier


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _scheduler(config=None) -> Scheduler:
    config = config or get_config()
    return Scheduler(
        config.db_path,
        build_job_executor(config),
        config=config,
        observers=[SlackJobNotifier(config.slack_bot_token, config.slack_channel)],
    )


def _smart_scheduler(config=None) -> SmartScheduler:
    config = config or get_config()
    return SmartScheduler(config.db_path, outdated_scan_executor, config=config)


def _fail(message: str):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """dpo - Dependency Orchestrator CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Repository Commands ──────────────────────────────────────────────────────


@main.group("repo")
def repo_group():
    """Manage tracked repositories."""
    pass


@repo_group.command("add")
@click.argument("path", default=".")
@click.option("--name", default=None, help="Display name (defaults to the directory name)")
def repo_add(path, name):
    """Track a local repository."""
    with _get_db() as db:
        try:
            repo = repositories_mod.add_repository(db, path, name)
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Tracking {repo.name}: {repo.path}")
        click.echo(f"  Ecosystems: {', '.join(repo.ecosystems) or 'none detected'}")
        if not repo.has_git:
            click.echo("  Warning: not a git repository")


@repo_group.command("list")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def repo_list(json_output):
    """List tracked repositories."""
    with _get_db() as db:
        repos = repositories_mod.list_repositories(db)

    if json_output:
        click.echo(json.dumps([to_dict(r) for r in repos], indent=2))
        return

    if not repos:
        click.echo("No repositories tracked.")
        return

    for repo in repos:
        icon = "✓" if repo.exists else "✗"
        ecosystems = ", ".join(repo.ecosystems) or "-"
        click.echo(f"  {icon} {repo.name} ({ecosystems}) {repo.path}")


@repo_group.command("remove")
@click.argument("path")
def repo_remove(path):
    """Stop tracking a repository."""
    with _get_db() as db:
        if not repositories_mod.remove_repository(db, path):
            _fail(f"Repository not tracked: {path}")
    click.echo(f"Removed {path}")


@repo_group.command("clean")
def repo_clean():
    """Forget repositories whose directories no longer exist."""
    with _get_db() as db:
        removed = repositories_mod.cleanup_missing_repositories(db)
    if not removed:
        click.echo("Nothing to clean up.")
        return
    for path in removed:
        click.echo(f"Removed {path}")


# ── Inspection Commands ──────────────────────────────────────────────────────


@main.command("info")
@click.argument("path", default=".")
def info(path):
    """Show branch, remote and ecosystem information for a repository."""
    try:
        repo_info = git.get_repo_info(path)
    except git.GitError as e:
        _fail(str(e))

    click.echo(f"Repository: {Path(path).resolve()}")
    click.echo(f"  Branch: {repo_info.branch}{' (protected)' if repo_info.is_protected_branch else ''}")
    click.echo(f"  Default branch: {repo_info.default_branch}")
    click.echo(f"  Remote: {repo_info.remote or 'none'}")
    click.echo(f"  Ahead/behind: {repo_info.ahead}/{repo_info.behind}")
    click.echo(f"  Uncommitted changes: {'yes' if repo_info.has_changes else 'no'}")
    click.echo(f"  Ecosystems: {', '.join(detect_ecosystems(path)) or 'none detected'}")


@main.command("outdated")
@click.argument("path", default=".")
@click.option("--ecosystem", "-e", default=None, help="node, python, ruby or elixir")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def outdated(path, ecosystem, json_output):
    """List outdated packages with their update type."""
    try:
        if ecosystem:
            packages = get_adapter(ecosystem).list_outdated(Path(path))
        else:
            packages = scan_outdated(path)
    except ValueError as e:
        _fail(str(e))

    if json_output:
        click.echo(json.dumps([to_dict(p) for p in packages], indent=2))
        return

    if not packages:
        click.echo("All packages are up to date.")
        return

    icons = {"patch": "○", "minor": "◐", "major": "●"}
    for pkg in packages:
        icon = icons.get(pkg.update_type, "?")
        dev = " [dev]" if pkg.dependency_type == "dev" else ""
        click.echo(
            f"  {icon} {pkg.name} {pkg.current} -> {pkg.wanted} (latest {pkg.latest}) "
            f"{pkg.update_type} [{pkg.ecosystem}]{dev}"
        )


@main.command("conflicts")
@click.argument("path", default=".")
@click.option("--threshold", type=int, default=None, help="Commits behind before checking files")
@click.option("--base", default=None, help="Base ref to compare against")
def conflicts(path, threshold, base):
    """Predict merge conflicts in dependency files."""
    config = get_config()
    try:
        report = git.predict_merge_conflicts(
            path, threshold=threshold or config.conflict_threshold, base_ref=base
        )
    except git.GitError as e:
        _fail(str(e))

    click.echo(f"{report.commits_behind} commits behind {report.base_ref}")
    if not report.warnings:
        click.echo("No likely conflicts.")
        return
    for w in report.warnings:
        click.echo(f"  ! {w.path} ({w.severity})")


# ── Update Commands ──────────────────────────────────────────────────────────


def _engine(verbose: bool) -> PipelineEngine:
    observer = CallbackObserver(
        progress=lambda message, step, total: click.echo(f"[{step}/{total}] {message}"),
        log=(lambda line: click.echo(f"    {line}")) if verbose else None,
        warning=lambda message, output: click.echo(f"  ! {message}", err=True),
    )
    return PipelineEngine(get_config(), observer=observer)


def _report(result):
    if result.success:
        click.echo(f"✓ Updated {len(result.updated_packages)} package(s)")
    else:
        click.echo(f"✗ {result.error}", err=True)

    if result.updated_packages:
        click.echo(f"  Updated: {', '.join(result.updated_packages)}")
    if result.failed_packages:
        click.echo(f"  Failed: {', '.join(result.failed_packages)}")
    if result.branch_name and (result.success or result.updated_packages):
        click.echo(f"  Branch: {result.branch_name}")
    if result.pr_url:
        click.echo(f"  PR: {result.pr_url}")
    if not result.success:
        sys.exit(1)


def _update_options(f):
    f = click.option("--repo", "repo_path", default=".", help="Path to the repository")(f)
    f = click.option("--branch", default="", help="Branch name for the update")(f)
    f = click.option("--pr", "create_pr", is_flag=True, help="Push and open a pull request")(f)
    f = click.option("--no-tests", is_flag=True, help="Skip the test suite")(f)
    f = click.option("--test-command", default=None, help="Override the test command")(f)
    f = click.option("--show-log", is_flag=True, help="Stream command output")(f)
    return f


@main.command("update")
@click.argument("packages", nargs=-1, required=True)
@click.option("--ecosystem", "-e", default=None, help="Ecosystem of the packages")
@click.option("--strategy", type=click.Choice(UPDATE_STRATEGIES), default="compatible")
@_update_options
def update(packages, ecosystem, strategy, repo_path, branch, create_pr, no_tests, test_command, show_log):
    """Update the named packages in an isolated workspace."""
    eco = ecosystem or next(iter(detect_ecosystems(repo_path)), None)
    if eco is None:
        _fail("No supported package manifest found.")

    options = PipelineOptions(
        repo_path=repo_path,
        branch_name=branch or f"dpo/update-{'-'.join(packages[:3])}",
        targets=[UpdateTarget(name=p, ecosystem=eco) for p in packages],
        create_pr=create_pr,
        run_tests=not no_tests,
        update_strategy=strategy,
        test_command=test_command,
    )
    _report(_engine(show_log).run_update(options))


@main.command("update-non-breaking")
@click.option("--ecosystem", "-e", default=None, help="Ecosystem to update")
@_update_options
def update_non_breaking(ecosystem, repo_path, branch, create_pr, no_tests, test_command, show_log):
    """Apply every patch and minor update."""
    options = PipelineOptions(
        repo_path=repo_path,
        branch_name=branch or "dpo/non-breaking",
        create_pr=create_pr,
        run_tests=not no_tests,
        test_command=test_command,
        ecosystem=ecosystem,
    )
    _report(_engine(show_log).run_non_breaking(options))


@main.command("security-patch")
@_update_options
def security_patch(repo_path, branch, create_pr, no_tests, test_command, show_log):
    """Install fixes for high and critical vulnerabilities."""
    options = PipelineOptions(
        repo_path=repo_path,
        branch_name=branch or "dpo/security-patch",
        create_pr=create_pr,
        run_tests=not no_tests,
        test_command=test_command,
        ecosystem="node",
    )
    _report(_engine(show_log).run_security_patch(options))


# ── Job Commands ─────────────────────────────────────────────────────────────


@main.group("job")
def job_group():
    """Manage scheduled update jobs."""
    pass


@job_group.command("add")
@click.argument("repo_path", default=".")
@click.option("--frequency", "-f", default="weekly", help="hourly, daily, weekly or monthly")
@click.option("--pr", "create_pr", is_flag=True, help="Open a pull request on success")
@click.option("--no-tests", is_flag=True, help="Skip the test suite")
@click.option("--ecosystem", "-e", default=None)
@click.option("--name", default=None, help="Display name")
def job_add(repo_path, frequency, create_pr, no_tests, ecosystem, name):
    """Schedule recurring non-breaking updates."""
    repo = str(Path(repo_path).resolve())
    try:
        job = _scheduler().add_job(
            repo,
            repo_name=name,
            frequency=frequency,
            create_pr=create_pr,
            run_tests=not no_tests,
            ecosystem=ecosystem,
        )
    except ValueError as e:
        _fail(str(e))
    click.echo(f"Created job: {job.id}")
    click.echo(f"  Repo: {job.repo_path}")
    click.echo(f"  Frequency: {job.frequency}")
    click.echo(f"  Next run: {job.next_run:%Y-%m-%d %H:%M}")


@job_group.command("list")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def job_list(json_output):
    """List scheduled jobs."""
    jobs = _scheduler().list_jobs()
    if json_output:
        click.echo(json.dumps([to_dict(j) for j in jobs], indent=2))
        return
    if not jobs:
        click.echo("No scheduled jobs.")
        return
    for job in jobs:
        icon = "●" if job.enabled else "○"
        last = f"{job.last_run:%Y-%m-%d %H:%M}" if job.last_run else "never"
        click.echo(
            f"  {icon} {job.id}: {job.repo_name} {job.frequency} "
            f"(next {job.next_run:%Y-%m-%d %H:%M}, last {last})"
        )


@job_group.command("update")
@click.argument("job_id")
@click.option("--frequency", "-f", default=None)
@click.option("--enable/--disable", "enabled", default=None)
@click.option("--pr/--no-pr", "create_pr", default=None)
@click.option("--tests/--no-tests", "run_tests", default=None)
def job_update(job_id, frequency, enabled, create_pr, run_tests):
    """Edit a scheduled job."""
    try:
        job = _scheduler().update_job(
            job_id, frequency=frequency, enabled=enabled, create_pr=create_pr, run_tests=run_tests
        )
    except ValueError as e:
        _fail(str(e))
    if not job:
        _fail(f"Job not found: {job_id}")
    state = "enabled" if job.enabled else "disabled"
    click.echo(f"Job {job.id}: {job.frequency}, {state}, next run {job.next_run:%Y-%m-%d %H:%M}")


@job_group.command("delete")
@click.argument("job_id")
def job_delete(job_id):
    """Delete a scheduled job."""
    if not _scheduler().delete_job(job_id):
        _fail(f"Job not found: {job_id}")
    click.echo(f"Deleted job {job_id}")


@job_group.command("run")
@click.argument("job_id")
def job_run(job_id):
    """Run a scheduled job now."""
    result = _scheduler().run_job(job_id)
    if result is None:
        _fail(f"Job not found or disabled: {job_id}")
    if result.success:
        click.echo(f"✓ Job {job_id} succeeded")
    else:
        click.echo(f"✗ Job {job_id} failed: {result.error}", err=True)
    if result.updated_packages:
        click.echo(f"  Updated: {', '.join(result.updated_packages)}")
    if result.pr_url:
        click.echo(f"  PR: {result.pr_url}")
    if not result.success:
        sys.exit(1)


@job_group.command("results")
@click.argument("job_id", required=False)
@click.option("--limit", default=20, type=int)
def job_results(job_id, limit):
    """Show recent job outcomes."""
    results = _scheduler().get_job_results(job_id, limit=limit)
    if not results:
        click.echo("No results recorded.")
        return
    for r in results:
        icon = "✓" if r.success else "✗"
        detail = ", ".join(r.updated_packages) if r.success else (r.error or "")
        click.echo(f"  {icon} {r.timestamp:%Y-%m-%d %H:%M} {r.job_id} {detail}")


# ── Smart Scan Commands ──────────────────────────────────────────────────────


@main.group("smart")
def smart_group():
    """Manage quiet-hour scans."""
    pass


@smart_group.command("add")
@click.argument("repo_path", default=".")
@click.option("--hour", type=int, default=None, help="Quiet hour (0-23); analyzed from history if omitted")
@click.option("--name", default=None, help="Display name")
def smart_add(repo_path, hour, name):
    """Schedule a daily scan at the repository's quietest hour."""
    repo = str(Path(repo_path).resolve())
    try:
        schedule = _smart_scheduler().add_schedule(repo, repo_name=name, quiet_hour=hour)
    except ValueError as e:
        _fail(str(e))
    click.echo(f"Created smart scan: {schedule.id}")
    click.echo(f"  Quiet hour: {schedule.quiet_hour:02d}:00")
    click.echo(f"  Next run: {schedule.next_run:%Y-%m-%d %H:%M}")


@smart_group.command("list")
def smart_list():
    """List smart scan schedules."""
    schedules = _smart_scheduler().list_schedules()
    if not schedules:
        click.echo("No smart scans scheduled.")
        return
    for s in schedules:
        icon = "●" if s.enabled else "○"
        click.echo(f"  {icon} {s.id}: {s.repo_name} at {s.quiet_hour:02d}:00 (next {s.next_run:%Y-%m-%d %H:%M})")


@smart_group.command("update")
@click.argument("schedule_id")
@click.option("--hour", type=int, default=None)
@click.option("--enable/--disable", "enabled", default=None)
@click.option("--reanalyze", is_flag=True, help="Recompute the quiet hour from commit history")
def smart_update(schedule_id, hour, enabled, reanalyze):
    """Edit a smart scan schedule."""
    try:
        schedule = _smart_scheduler().update_schedule(
            schedule_id, quiet_hour=hour, enabled=enabled, reanalyze=reanalyze
        )
    except ValueError as e:
        _fail(str(e))
    if not schedule:
        _fail(f"Smart scan not found: {schedule_id}")
    click.echo(f"Smart scan {schedule.id}: {schedule.quiet_hour:02d}:00, next run {schedule.next_run:%Y-%m-%d %H:%M}")


@smart_group.command("delete")
@click.argument("schedule_id")
def smart_delete(schedule_id):
    """Delete a smart scan schedule."""
    if not _smart_scheduler().delete_schedule(schedule_id):
        _fail(f"Smart scan not found: {schedule_id}")
    click.echo(f"Deleted smart scan {schedule_id}")


@smart_group.command("analyze")
@click.argument("repo_path", default=".")
@click.option("--days", default=30, type=int, help="History window in days")
def smart_analyze(repo_path, days):
    """Print the quietest commit hour of a repository."""
    hour = analyze_commit_patterns(repo_path, days=days)
    click.echo(f"Quiet hour: {hour:02d}:00")


# ── Server Commands ──────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve(host, port):
    """Run the schedulers and the JSON API."""
    from dep_orchestrator.web.app import run_server

    config = get_config()
    scheduler = _scheduler(config)
    smart = _smart_scheduler(config)
    scheduler.initialize()
    smart.initialize()

    click.echo(f"Serving API at http://{host}:{port}")
    try:
        run_server(host=host, port=port, config=config, scheduler=scheduler, smart_scheduler=smart)
    finally:
        scheduler.cleanup()
        smart.cleanup()


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from dep_orchestrator.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
