"""Smart scans: run a repository scan during its quietest commit hour."""

import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from dep_orchestrator.config import Config
from dep_orchestrator.core.scheduler import TimedScheduler, new_id
from dep_orchestrator.db.engine import format_dt, get_db, parse_dt, transaction
from dep_orchestrator.db.models import SmartScanSchedule
from dep_orchestrator.integrations.git import GitError, commit_timestamps

logger = logging.getLogger(__name__)

DEFAULT_QUIET_HOUR = 6
HISTORY_DAYS = 30


def quiet_hour_from_timestamps(timestamps: list[datetime]) -> int:
    """Hour of day with the fewest commits; the lowest hour wins ties."""
    if not timestamps:
        return DEFAULT_QUIET_HOUR
    buckets = [0] * 24
    for ts in timestamps:
        buckets[ts.hour] += 1
    return buckets.index(min(buckets))


def analyze_commit_patterns(repo_path: str | Path, days: int = HISTORY_DAYS) -> int:
    try:
        stamps = commit_timestamps(repo_path, since_days=days)
    except GitError as e:
        logger.info("No commit history for %s (%s); using hour %d", repo_path, e, DEFAULT_QUIET_HOUR)
        return DEFAULT_QUIET_HOUR
    return quiet_hour_from_timestamps(stamps)


def next_quiet_run(quiet_hour: int, now: datetime) -> datetime:
    """Today at ``quiet_hour:00``, or tomorrow if that time has passed."""
    candidate = now.replace(hour=quiet_hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def _validate_hour(hour: int) -> int:
    if not isinstance(hour, int) or isinstance(hour, bool) or not 0 <= hour <= 23:
        raise ValueError(f"Quiet hour must be between 0 and 23, got {hour!r}")
    return hour


def _row_to_schedule(row: sqlite3.Row) -> SmartScanSchedule:
    return SmartScanSchedule(
        id=row["id"],
        repo_path=row["repo_path"],
        repo_name=row["repo_name"],
        quiet_hour=row["quiet_hour"],
        enabled=bool(row["enabled"]),
        last_run=parse_dt(row["last_run"]),
        next_run=parse_dt(row["next_run"]),
        created_at=parse_dt(row["created_at"]),
    )


class SmartScheduler(TimedScheduler):
    """Daily scans pinned to each repository's quiet hour."""

    loop_name = "dpo-smart-scans"

    def __init__(
        self,
        db_path: str | Path,
        scan_executor: Callable[[SmartScanSchedule], object],
        config: Config | None = None,
        clock: Callable[[], datetime] = datetime.now,
        analyzer: Callable[[str], int] = analyze_commit_patterns,
    ):
        super().__init__(db_path, config=config, clock=clock)
        self.scan_executor = scan_executor
        self.analyzer = analyzer

    def add_schedule(
        self,
        repo_path: str,
        repo_name: str | None = None,
        quiet_hour: int | None = None,
        enabled: bool = True,
    ) -> SmartScanSchedule:
        """Store a schedule at the repository's quiet hour and arm it."""
        hour = self.analyzer(repo_path) if quiet_hour is None else _validate_hour(quiet_hour)
        now = self.clock()
        schedule_id = new_id("smart")
        with get_db(self.db_path) as db, transaction(db):
            db.execute(
                """INSERT INTO smart_scan_schedules
                   (id, repo_path, repo_name, quiet_hour, enabled, next_run, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    schedule_id,
                    str(repo_path),
                    repo_name or Path(repo_path).name,
                    hour,
                    int(enabled),
                    format_dt(next_quiet_run(hour, now)),
                    format_dt(now),
                ),
            )
        schedule = self.get_schedule(schedule_id)
        if schedule.enabled:
            self._arm(schedule.id, schedule.next_run)
        logger.info("Smart scan %s for %s at %02d:00", schedule_id, repo_path, hour)
        return schedule

    def update_schedule(
        self,
        schedule_id: str,
        quiet_hour: int | None = None,
        enabled: bool | None = None,
        repo_name: str | None = None,
        reanalyze: bool = False,
    ) -> SmartScanSchedule | None:
        if quiet_hour is not None:
            _validate_hour(quiet_hour)
        if reanalyze:
            existing = self.get_schedule(schedule_id)
            if existing is None:
                return None
            # git log runs outside the write transaction
            quiet_hour = self.analyzer(existing.repo_path)

        with get_db(self.db_path) as db, transaction(db):
            row = db.execute(
                "SELECT * FROM smart_scan_schedules WHERE id = ?", (schedule_id,)
            ).fetchone()
            if not row:
                return None
            current = _row_to_schedule(row)

            changes: dict = {}
            if quiet_hour is not None and quiet_hour != current.quiet_hour:
                changes["quiet_hour"] = quiet_hour
                changes["next_run"] = format_dt(next_quiet_run(quiet_hour, self.clock()))
            if enabled is not None:
                changes["enabled"] = int(enabled)
            if repo_name:
                changes["repo_name"] = repo_name
            if changes:
                set_clause = ", ".join(f"{k} = ?" for k in changes)
                db.execute(
                    f"UPDATE smart_scan_schedules SET {set_clause} WHERE id = ?",
                    list(changes.values()) + [schedule_id],
                )

        schedule = self.get_schedule(schedule_id)
        if schedule.enabled:
            if not self.is_running(schedule.id):
                self._arm(schedule.id, schedule.next_run)
        else:
            self._loop.cancel(schedule.id)
        return schedule

    def delete_schedule(self, schedule_id: str) -> bool:
        self._loop.cancel(schedule_id)
        with get_db(self.db_path) as db, transaction(db):
            cur = db.execute("DELETE FROM smart_scan_schedules WHERE id = ?", (schedule_id,))
        return cur.rowcount > 0

    def get_schedule(self, schedule_id: str) -> SmartScanSchedule | None:
        with get_db(self.db_path) as db:
            row = db.execute(
                "SELECT * FROM smart_scan_schedules WHERE id = ?", (schedule_id,)
            ).fetchone()
        return _row_to_schedule(row) if row else None

    def list_schedules(self, enabled_only: bool = False) -> list[SmartScanSchedule]:
        query = "SELECT * FROM smart_scan_schedules"
        if enabled_only:
            query += " WHERE enabled = 1"
        with get_db(self.db_path) as db:
            rows = db.execute(query + " ORDER BY created_at, id").fetchall()
        return [_row_to_schedule(r) for r in rows]

    def _enabled_entries(self) -> list[tuple[str, datetime]]:
        return [(s.id, s.next_run) for s in self.list_schedules(enabled_only=True)]

    def _fire(self, key: str):
        self.run_schedule(key)

    def run_schedule(self, schedule_id: str) -> bool | None:
        """Run the scan now and move the schedule to the next quiet hour.

        Returns whether the scan executor completed, or None when the
        schedule is missing or disabled.
        """
        schedule = self.get_schedule(schedule_id)
        if schedule is None or not schedule.enabled:
            logger.info("Smart scan %s missing or disabled; skipping", schedule_id)
            return None

        logger.info("Running smart scan %s for %s", schedule.id, schedule.repo_path)
        completed = True
        try:
            self.scan_executor(schedule)
        except Exception:
            logger.exception("Smart scan %s failed", schedule.id)
            completed = False

        now = self.clock()
        with get_db(self.db_path) as db, transaction(db):
            row = db.execute(
                "SELECT quiet_hour FROM smart_scan_schedules WHERE id = ?", (schedule.id,)
            ).fetchone()
            if row:
                db.execute(
                    "UPDATE smart_scan_schedules SET last_run = ?, next_run = ? WHERE id = ?",
                    (format_dt(now), format_dt(next_quiet_run(row["quiet_hour"], now)), schedule.id),
                )

        updated = self.get_schedule(schedule.id)
        if updated and updated.enabled:
            self._arm(updated.id, updated.next_run)
        return completed
