"""JSON API for the dependency orchestrator."""

import logging

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from dep_orchestrator.config import Config, get_config
from dep_orchestrator.core import repositories as repositories_mod
from dep_orchestrator.core.executors import build_job_executor, outdated_scan_executor
from dep_orchestrator.core.scheduler import Scheduler
from dep_orchestrator.core.smart_scheduler import SmartScheduler
from dep_orchestrator.db.engine import init_db
from dep_orchestrator.db.models import to_dict

logger = logging.getLogger(__name__)


def _get_db(request: Request):
    return init_db(request.app.state.config.db_path)


def _scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler


def _smart(request: Request) -> SmartScheduler:
    return request.app.state.smart_scheduler


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_repositories(request: Request):
    db = _get_db(request)
    try:
        repos = repositories_mod.list_repositories(db)
        return JSONResponse([to_dict(r) for r in repos])
    finally:
        db.close()


async def api_list_jobs(request: Request):
    jobs = _scheduler(request).list_jobs()
    return JSONResponse([to_dict(j) for j in jobs])


async def api_get_job(request: Request):
    job_id = request.path_params["job_id"]
    job = _scheduler(request).get_job(job_id)
    if not job:
        return JSONResponse({"error": "Job not found"}, status_code=404)
    return JSONResponse(to_dict(job))


async def api_job_results(request: Request):
    job_id = request.path_params["job_id"]
    scheduler = _scheduler(request)
    if not scheduler.get_job(job_id):
        return JSONResponse({"error": "Job not found"}, status_code=404)
    results = scheduler.get_job_results(job_id)
    return JSONResponse([to_dict(r) for r in results])


async def api_list_results(request: Request):
    try:
        limit = int(request.query_params.get("limit", 50))
    except ValueError:
        return JSONResponse({"error": "limit must be an integer"}, status_code=400)
    results = _scheduler(request).get_job_results(limit=limit)
    return JSONResponse([to_dict(r) for r in results])


async def api_run_job(request: Request):
    job_id = request.path_params["job_id"]
    scheduler = _scheduler(request)
    job = scheduler.get_job(job_id)
    if not job:
        return JSONResponse({"error": "Job not found"}, status_code=404)
    if not job.enabled:
        return JSONResponse({"error": "Job is disabled"}, status_code=409)
    result = await run_in_threadpool(scheduler.run_job, job_id)
    return JSONResponse(to_dict(result))


async def api_list_smart_schedules(request: Request):
    schedules = _smart(request).list_schedules()
    return JSONResponse([to_dict(s) for s in schedules])


async def api_next_job(request: Request):
    job = _scheduler(request).next_scheduled_job()
    return JSONResponse(to_dict(job) if job else None)


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(
    config: Config | None = None,
    scheduler: Scheduler | None = None,
    smart_scheduler: SmartScheduler | None = None,
) -> Starlette:
    config = config or get_config()
    routes = [
        Route("/api/repositories", api_list_repositories),
        Route("/api/jobs", api_list_jobs),
        Route("/api/jobs/next", api_next_job),
        Route("/api/jobs/{job_id}", api_get_job),
        Route("/api/jobs/{job_id}/results", api_job_results),
        Route("/api/jobs/{job_id}/run", api_run_job, methods=["POST"]),
        Route("/api/results", api_list_results),
        Route("/api/smart-schedules", api_list_smart_schedules),
    ]
    app = Starlette(routes=routes)
    app.state.config = config
    app.state.scheduler = scheduler or Scheduler(
        config.db_path, build_job_executor(config), config=config
    )
    app.state.smart_scheduler = smart_scheduler or SmartScheduler(
        config.db_path, outdated_scan_executor, config=config
    )
    return app


def run_server(
    host: str = "127.0.0.1",
    port: int = 8787,
    config: Config | None = None,
    scheduler: Scheduler | None = None,
    smart_scheduler: SmartScheduler | None = None,
):
    app = create_app(config, scheduler=scheduler, smart_scheduler=smart_scheduler)
    uvicorn.run(app, host=host, port=port)
