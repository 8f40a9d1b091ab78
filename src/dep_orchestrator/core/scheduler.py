"""Recurring update jobs: persistence, next-run computation, and in-process timers."""

import functools
import heapq
import itertools
import json
import logging
import math
import secrets
import sqlite3
import string
import threading
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

from dep_orchestrator.config import Config, get_config
from dep_orchestrator.db.engine import format_dt, get_db, parse_dt, transaction
from dep_orchestrator.db.models import FREQUENCIES, JobResult, PipelineResult, ScheduledJob

logger = logging.getLogger(__name__)

# Timers further out than this are left unarmed; the periodic rescan picks
# them up once they come within range.
ARMING_HORIZON = timedelta(hours=24)
RESCAN_INTERVAL = 3600.0
PINNED_HOUR = 3

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_id(prefix: str) -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def compute_next_run(frequency: str, now: datetime | None = None) -> datetime:
    """Next firing time for a cadence.

    hourly fires at the next top of the hour; daily and weekly advance 24h or
    7d and pin to 03:00; monthly fires at 03:00 on the first of next month.
    """
    now = now or datetime.now()
    if frequency == "hourly":
        return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    if frequency == "daily":
        return (now + timedelta(days=1)).replace(
            hour=PINNED_HOUR, minute=0, second=0, microsecond=0
        )
    if frequency == "weekly":
        return (now + timedelta(days=7)).replace(
            hour=PINNED_HOUR, minute=0, second=0, microsecond=0
        )
    if frequency == "monthly":
        year, month = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
        return now.replace(
            year=year, month=month, day=1, hour=PINNED_HOUR, minute=0, second=0, microsecond=0
        )
    raise ValueError(f"Unknown frequency '{frequency}'. Choose from: {', '.join(FREQUENCIES)}")


# ── Wake-up loop ─────────────────────────────────────────────────────────────


class WakeupLoop:
    """One background thread firing keyed callbacks from a priority queue.

    Each key has at most one live entry. Re-arming or cancelling a key leaves
    the old heap entry in place; it is skipped when popped. Callbacks run on
    their own worker thread so a slow job never delays other timers.
    """

    def __init__(
        self,
        name: str = "dpo-scheduler",
        rescan: Callable[[], None] | None = None,
        rescan_interval: float = RESCAN_INTERVAL,
    ):
        self.name = name
        self.rescan = rescan
        self.rescan_interval = rescan_interval
        self._cond = threading.Condition()
        self._heap: list[tuple[float, int, str]] = []
        self._live: dict[str, tuple[int, Callable[[], None]]] = {}
        self._seq = itertools.count()
        self._stopped = False
        self._next_rescan = math.inf
        self._thread: threading.Thread | None = None

    def start(self):
        with self._cond:
            if self._thread and self._thread.is_alive():
                return
            self._stopped = False
            if self.rescan:
                self._next_rescan = time.monotonic() + self.rescan_interval
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()
        logger.debug("Wake-up loop %s started", self.name)

    def arm(self, key: str, delay: float, callback: Callable[[], None]):
        """Fire ``callback`` after ``delay`` seconds, replacing any earlier arming of ``key``."""
        with self._cond:
            seq = next(self._seq)
            self._live[key] = (seq, callback)
            heapq.heappush(self._heap, (time.monotonic() + max(0.0, delay), seq, key))
            self._cond.notify()
            stopped = self._stopped
        # a stopped loop stays stopped until start() is called explicitly
        if not stopped:
            self.start()

    def cancel(self, key: str) -> bool:
        with self._cond:
            found = self._live.pop(key, None) is not None
            self._cond.notify()
        return found

    def armed(self, key: str) -> bool:
        with self._cond:
            return key in self._live

    def stop(self):
        with self._cond:
            self._stopped = True
            self._live.clear()
            self._heap.clear()
            self._cond.notify()
            thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout=5)
        logger.debug("Wake-up loop %s stopped", self.name)

    def _run(self):
        while True:
            due: list[tuple[str, Callable[[], None]]] = []
            with self._cond:
                while not self._stopped:
                    now = time.monotonic()
                    if self._heap and self._heap[0][0] <= now:
                        break
                    if now >= self._next_rescan:
                        break
                    wake = min(self._heap[0][0] if self._heap else math.inf, self._next_rescan)
                    self._cond.wait(None if wake == math.inf else wake - now)
                if self._stopped:
                    return

                now = time.monotonic()
                while self._heap and self._heap[0][0] <= now:
                    _, seq, key = heapq.heappop(self._heap)
                    live = self._live.get(key)
                    if live and live[0] == seq:
                        del self._live[key]
                        due.append((key, live[1]))
                rescan_due = now >= self._next_rescan
                if rescan_due:
                    self._next_rescan = now + self.rescan_interval

            for key, callback in due:
                threading.Thread(
                    target=self._invoke, args=(key, callback), name=f"{self.name}:{key}", daemon=True
                ).start()
            if rescan_due and self.rescan:
                try:
                    self.rescan()
                except Exception:
                    logger.exception("Scheduler rescan failed")

    def _invoke(self, key: str, callback: Callable[[], None]):
        try:
            callback()
        except Exception:
            logger.exception("Scheduled callback %s failed", key)


# ── Shared timer discipline ──────────────────────────────────────────────────


class TimedScheduler:
    """Arming rules shared by the job and smart-scan schedulers.

    Subclasses provide ``_enabled_entries`` (id and next run of every enabled
    record) and ``_fire`` (what to do when a record is due).
    """

    loop_name = "dpo-scheduler"

    def __init__(
        self,
        db_path: str | Path,
        config: Config | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.db_path = Path(db_path)
        self.config = config or get_config()
        self.clock = clock
        self._loop = WakeupLoop(name=self.loop_name, rescan=self._rescan)
        self._running: set[str] = set()
        self._running_lock = threading.Lock()

    def _enabled_entries(self) -> list[tuple[str, datetime]]:
        raise NotImplementedError

    def _fire(self, key: str):
        raise NotImplementedError

    def _dispatch(self, key: str):
        """Timer callback: run ``_fire`` unless the same record is already running."""
        with self._running_lock:
            if key in self._running:
                logger.info("%s is still running; skipping duplicate firing", key)
                return
            self._running.add(key)
        try:
            self._fire(key)
        finally:
            with self._running_lock:
                self._running.discard(key)

    def is_running(self, key: str) -> bool:
        with self._running_lock:
            return key in self._running

    def _arm(self, key: str, next_run: datetime | None) -> bool:
        """Arm a timer unless it is further out than the arming horizon."""
        if next_run is None:
            return False
        delay = (next_run - self.clock()).total_seconds()
        if delay > ARMING_HORIZON.total_seconds():
            self._loop.cancel(key)
            logger.debug("Not arming %s: next run %s is beyond the horizon", key, next_run)
            return False
        self._loop.arm(key, delay, functools.partial(self._dispatch, key))
        return True

    def _arm_missed(self, key: str):
        if self.is_running(key):
            return
        self._loop.arm(key, self.config.missed_job_grace, functools.partial(self._dispatch, key))

    def initialize(self):
        """Re-arm persisted records after a process start.

        Records whose next run already passed are fired after a short grace
        delay rather than immediately.
        """
        now = self.clock()
        missed = armed = 0
        for key, next_run in self._enabled_entries():
            if next_run <= now:
                logger.info("%s missed its run at %s; firing shortly", key, next_run)
                self._arm_missed(key)
                missed += 1
            elif self._arm(key, next_run):
                armed += 1
        self._loop.start()
        logger.info("%s initialized: %d armed, %d missed", self.loop_name, armed, missed)

    def _rescan(self):
        now = self.clock()
        for key, next_run in self._enabled_entries():
            # a running record re-arms itself once it finishes
            if self._loop.armed(key) or self.is_running(key):
                continue
            if next_run <= now:
                self._arm_missed(key)
            else:
                self._arm(key, next_run)

    def is_armed(self, key: str) -> bool:
        return self._loop.armed(key)

    def cleanup(self):
        """Cancel every timer. Persisted records are left alone."""
        self._loop.stop()


# ── Job scheduler ────────────────────────────────────────────────────────────


class SchedulerObserver(Protocol):
    def job_started(self, job: ScheduledJob) -> None: ...

    def job_finished(self, job: ScheduledJob, result: JobResult) -> None: ...


JobExecutor = Callable[[ScheduledJob], "JobResult | PipelineResult | None"]

_JOB_FIELDS = {"repo_path", "repo_name", "frequency", "enabled", "create_pr", "run_tests", "ecosystem"}


def _row_to_job(row: sqlite3.Row) -> ScheduledJob:
    return ScheduledJob(
        id=row["id"],
        repo_path=row["repo_path"],
        repo_name=row["repo_name"],
        frequency=row["frequency"],
        enabled=bool(row["enabled"]),
        last_run=parse_dt(row["last_run"]),
        next_run=parse_dt(row["next_run"]),
        ecosystem=row["ecosystem"],
        create_pr=bool(row["create_pr"]),
        run_tests=bool(row["run_tests"]),
        created_at=parse_dt(row["created_at"]),
    )


def _row_to_result(row: sqlite3.Row) -> JobResult:
    return JobResult(
        job_id=row["job_id"],
        success=bool(row["success"]),
        timestamp=parse_dt(row["timestamp"]),
        updated_packages=tuple(json.loads(row["updated_packages"] or "[]")),
        pr_url=row["pr_url"],
        error=row["error"],
        tests_passed=None if row["tests_passed"] is None else bool(row["tests_passed"]),
    )


def as_job_result(job_id: str, outcome, timestamp: datetime) -> JobResult:
    """Normalize whatever an executor returned into a JobResult."""
    if isinstance(outcome, JobResult):
        return outcome
    if isinstance(outcome, PipelineResult):
        return JobResult(
            job_id=job_id,
            success=outcome.success,
            timestamp=timestamp,
            updated_packages=tuple(outcome.updated_packages),
            pr_url=outcome.pr_url,
            error=outcome.error,
            tests_passed=outcome.tests_passed,
        )
    return JobResult(
        job_id=job_id, success=False, timestamp=timestamp, error="Executor returned no result"
    )


class Scheduler(TimedScheduler):
    """Persisted recurring update jobs fired through an executor."""

    loop_name = "dpo-jobs"

    def __init__(
        self,
        db_path: str | Path,
        executor: JobExecutor,
        config: Config | None = None,
        clock: Callable[[], datetime] = datetime.now,
        observers: Iterable[SchedulerObserver] = (),
    ):
        super().__init__(db_path, config=config, clock=clock)
        self.executor = executor
        self.observers = list(observers)

    # ── persistence ──

    def add_job(
        self,
        repo_path: str,
        repo_name: str | None = None,
        frequency: str = "weekly",
        create_pr: bool = False,
        run_tests: bool = True,
        ecosystem: str | None = None,
        enabled: bool = True,
    ) -> ScheduledJob:
        """Create a job and arm its timer."""
        now = self.clock()
        next_run = compute_next_run(frequency, now)
        job_id = new_id("job")
        with get_db(self.db_path) as db, transaction(db):
            db.execute(
                """INSERT INTO scheduled_jobs
                   (id, repo_path, repo_name, frequency, enabled, next_run,
                    ecosystem, create_pr, run_tests, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    job_id,
                    str(repo_path),
                    repo_name or Path(repo_path).name,
                    frequency,
                    int(enabled),
                    format_dt(next_run),
                    ecosystem,
                    int(create_pr),
                    int(run_tests),
                    format_dt(now),
                ),
            )
        job = self.get_job(job_id)
        if job.enabled:
            self._arm(job.id, job.next_run)
        logger.info("Added %s job %s for %s", frequency, job_id, repo_path)
        return job

    def update_job(self, job_id: str, **updates) -> ScheduledJob | None:
        """Edit a job. A frequency change recomputes its next run."""
        changes = {k: v for k, v in updates.items() if k in _JOB_FIELDS and v is not None}
        if "frequency" in changes and changes["frequency"] not in FREQUENCIES:
            raise ValueError(
                f"Unknown frequency '{changes['frequency']}'. Choose from: {', '.join(FREQUENCIES)}"
            )

        with get_db(self.db_path) as db, transaction(db):
            row = db.execute("SELECT * FROM scheduled_jobs WHERE id = ?", (job_id,)).fetchone()
            if not row:
                return None
            current = _row_to_job(row)
            if "frequency" in changes and changes["frequency"] != current.frequency:
                changes["next_run"] = format_dt(compute_next_run(changes["frequency"], self.clock()))
            for key in ("enabled", "create_pr", "run_tests"):
                if key in changes:
                    changes[key] = int(bool(changes[key]))
            if changes:
                set_clause = ", ".join(f"{k} = ?" for k in changes)
                db.execute(
                    f"UPDATE scheduled_jobs SET {set_clause} WHERE id = ?",
                    list(changes.values()) + [job_id],
                )

        job = self.get_job(job_id)
        if job.enabled:
            if not self.is_running(job.id):
                self._arm(job.id, job.next_run)
        else:
            self._loop.cancel(job.id)
        return job

    def delete_job(self, job_id: str) -> bool:
        """Delete a job and its result history."""
        self._loop.cancel(job_id)
        with get_db(self.db_path) as db, transaction(db):
            cur = db.execute("DELETE FROM scheduled_jobs WHERE id = ?", (job_id,))
            db.execute("DELETE FROM job_results WHERE job_id = ?", (job_id,))
        return cur.rowcount > 0

    def get_job(self, job_id: str) -> ScheduledJob | None:
        with get_db(self.db_path) as db:
            row = db.execute("SELECT * FROM scheduled_jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def list_jobs(self, enabled_only: bool = False) -> list[ScheduledJob]:
        query = "SELECT * FROM scheduled_jobs"
        if enabled_only:
            query += " WHERE enabled = 1"
        with get_db(self.db_path) as db:
            rows = db.execute(query + " ORDER BY created_at, id").fetchall()
        return [_row_to_job(r) for r in rows]

    def get_job_results(self, job_id: str | None = None, limit: int | None = None) -> list[JobResult]:
        """Recorded outcomes, newest first."""
        query = "SELECT * FROM job_results"
        params: list = []
        if job_id:
            query += " WHERE job_id = ?"
            params.append(job_id)
        query += " ORDER BY id DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        with get_db(self.db_path) as db:
            rows = db.execute(query, params).fetchall()
        return [_row_to_result(r) for r in rows]

    def due_jobs(self, now: datetime | None = None) -> list[ScheduledJob]:
        cutoff = format_dt(now or self.clock())
        with get_db(self.db_path) as db:
            rows = db.execute(
                "SELECT * FROM scheduled_jobs WHERE enabled = 1 AND next_run <= ? ORDER BY next_run",
                (cutoff,),
            ).fetchall()
        return [_row_to_job(r) for r in rows]

    def next_scheduled_job(self) -> ScheduledJob | None:
        with get_db(self.db_path) as db:
            row = db.execute(
                "SELECT * FROM scheduled_jobs WHERE enabled = 1 ORDER BY next_run LIMIT 1"
            ).fetchone()
        return _row_to_job(row) if row else None

    # ── execution ──

    def _enabled_entries(self) -> list[tuple[str, datetime]]:
        return [(j.id, j.next_run) for j in self.list_jobs(enabled_only=True)]

    def _fire(self, key: str):
        self.run_job(key)

    def _notify(self, method: str, *args):
        for observer in self.observers:
            try:
                getattr(observer, method)(*args)
            except Exception:
                logger.exception("Scheduler observer %s failed", method)

    def run_job(self, job_id: str) -> JobResult | None:
        """Execute a job now, record the outcome, and schedule the next run.

        Returns None when the job does not exist or is disabled.
        """
        job = self.get_job(job_id)
        if job is None:
            logger.info("Job %s no longer exists; skipping", job_id)
            return None
        if not job.enabled:
            logger.info("Job %s is disabled; skipping", job_id)
            return None

        logger.info("Running job %s for %s", job.id, job.repo_path)
        self._notify("job_started", job)

        started = self.clock()
        try:
            result = as_job_result(job.id, self.executor(job), started)
        except Exception as e:
            logger.exception("Executor failed for job %s", job.id)
            result = JobResult(job_id=job.id, success=False, timestamp=started, error=str(e))

        self._record(job, result)

        updated = self.get_job(job.id)
        if updated and updated.enabled:
            self._arm(updated.id, updated.next_run)

        self._notify("job_finished", updated or job, result)
        return result

    def _record(self, job: ScheduledJob, result: JobResult):
        now = self.clock()
        with get_db(self.db_path) as db, transaction(db):
            db.execute(
                """INSERT INTO job_results
                   (job_id, success, timestamp, updated_packages, pr_url, error, tests_passed)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    result.job_id,
                    int(result.success),
                    format_dt(result.timestamp),
                    json.dumps(list(result.updated_packages)),
                    result.pr_url,
                    result.error,
                    None if result.tests_passed is None else int(result.tests_passed),
                ),
            )
            db.execute(
                """DELETE FROM job_results WHERE id NOT IN
                   (SELECT id FROM job_results ORDER BY id DESC LIMIT ?)""",
                (self.config.results_retention,),
            )
            # frequency may have been edited while the executor ran
            row = db.execute(
                "SELECT frequency FROM scheduled_jobs WHERE id = ?", (job.id,)
            ).fetchone()
            if row:
                db.execute(
                    "UPDATE scheduled_jobs SET last_run = ?, next_run = ? WHERE id = ?",
                    (
                        format_dt(now),
                        format_dt(compute_next_run(row["frequency"], now)),
                        job.id,
                    ),
                )
