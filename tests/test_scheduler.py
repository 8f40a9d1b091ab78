"""Tests for scheduled jobs and the wake-up loop."""

import re
import threading
import time
from datetime import datetime, timedelta

import pytest

from dep_orchestrator.config import Config
from dep_orchestrator.core.scheduler import (
    Scheduler,
    WakeupLoop,
    as_job_result,
    compute_next_run,
    new_id,
)
from dep_orchestrator.db.models import JobResult, PipelineResult

T0 = datetime(2024, 5, 15, 14, 35, 12)


class Clock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class Recorder:
    def __init__(self):
        self.events = []

    def job_started(self, job):
        self.events.append(("started", job.id))

    def job_finished(self, job, result):
        self.events.append(("finished", job.id, result.success))


class Exploding:
    def job_started(self, job):
        raise RuntimeError("observer broke")

    def job_finished(self, job, result):
        raise RuntimeError("observer broke")


def ok_executor(job):
    return PipelineResult(success=True, updated_packages=["lodash"], tests_passed=True)


@pytest.fixture
def config(tmp_path):
    return Config(db_path=tmp_path / "dpo.db", results_retention=100)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_scheduler(config, clock):
    created = []

    def factory(executor=ok_executor, **kwargs):
        kwargs.setdefault("clock", clock)
        scheduler = Scheduler(config.db_path, executor, config=config, **kwargs)
        created.append(scheduler)
        return scheduler

    yield factory
    for scheduler in created:
        scheduler.cleanup()


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class TestComputeNextRun:
    def test_hourly_is_next_top_of_hour(self):
        assert compute_next_run("hourly", T0) == datetime(2024, 5, 15, 15, 0)

    def test_daily_pins_to_three(self):
        assert compute_next_run("daily", T0) == datetime(2024, 5, 16, 3, 0)

    def test_weekly_pins_to_three(self):
        assert compute_next_run("weekly", T0) == datetime(2024, 5, 22, 3, 0)

    def test_monthly_is_first_of_next_month(self):
        assert compute_next_run("monthly", T0) == datetime(2024, 6, 1, 3, 0)
        assert compute_next_run("monthly", datetime(2024, 12, 31, 23, 59)) == datetime(2025, 1, 1, 3, 0)

    def test_hourly_crosses_midnight(self):
        assert compute_next_run("hourly", datetime(2024, 5, 15, 23, 10)) == datetime(2024, 5, 16, 0, 0)

    def test_unknown_frequency(self):
        with pytest.raises(ValueError, match="Unknown frequency 'fortnightly'"):
            compute_next_run("fortnightly", T0)


def test_new_id_format():
    job_id = new_id("job")
    assert re.fullmatch(r"job-\d{13}-[a-z0-9]{9}", job_id)
    assert new_id("job") != job_id


class TestAsJobResult:
    def test_pipeline_result(self):
        result = as_job_result(
            "job-1", PipelineResult(success=False, error="boom", tests_passed=False), T0
        )
        assert result == JobResult(
            job_id="job-1", success=False, timestamp=T0, error="boom", tests_passed=False
        )

    def test_none_is_failure(self):
        result = as_job_result("job-1", None, T0)
        assert not result.success
        assert result.error == "Executor returned no result"


class TestJobPersistence:
    def test_add_job(self, make_scheduler, tmp_path):
        scheduler = make_scheduler()
        job = scheduler.add_job(str(tmp_path / "web-app"), frequency="daily", create_pr=True)

        assert job.repo_name == "web-app"
        assert job.frequency == "daily"
        assert job.enabled and job.create_pr and job.run_tests
        assert job.next_run == datetime(2024, 5, 16, 3, 0)
        assert job.last_run is None
        assert job.created_at == T0
        assert scheduler.list_jobs() == [job]

    def test_add_job_rejects_unknown_frequency(self, make_scheduler):
        scheduler = make_scheduler()
        with pytest.raises(ValueError):
            scheduler.add_job("/tmp/app", frequency="yearly")
        assert scheduler.list_jobs() == []

    def test_timer_armed_only_within_horizon(self, make_scheduler):
        scheduler = make_scheduler()
        hourly = scheduler.add_job("/tmp/a", frequency="hourly")
        weekly = scheduler.add_job("/tmp/b", frequency="weekly")
        disabled = scheduler.add_job("/tmp/c", frequency="hourly", enabled=False)

        assert scheduler.is_armed(hourly.id)
        assert not scheduler.is_armed(weekly.id)
        assert not scheduler.is_armed(disabled.id)

    def test_update_frequency_recomputes_next_run(self, make_scheduler, clock):
        scheduler = make_scheduler()
        job = scheduler.add_job("/tmp/a", frequency="weekly")
        clock.advance(hours=1)

        updated = scheduler.update_job(job.id, frequency="hourly")
        assert updated.frequency == "hourly"
        assert updated.next_run == datetime(2024, 5, 15, 16, 0)
        assert scheduler.is_armed(job.id)

    def test_update_without_frequency_keeps_next_run(self, make_scheduler):
        scheduler = make_scheduler()
        job = scheduler.add_job("/tmp/a", frequency="weekly")
        updated = scheduler.update_job(job.id, create_pr=True, run_tests=False)
        assert updated.next_run == job.next_run
        assert updated.create_pr and not updated.run_tests

    def test_disable_cancels_timer(self, make_scheduler):
        scheduler = make_scheduler()
        job = scheduler.add_job("/tmp/a", frequency="hourly")
        scheduler.update_job(job.id, enabled=False)
        assert not scheduler.is_armed(job.id)
        assert not scheduler.get_job(job.id).enabled

        scheduler.update_job(job.id, enabled=True)
        assert scheduler.is_armed(job.id)

    def test_update_missing_and_invalid(self, make_scheduler):
        scheduler = make_scheduler()
        assert scheduler.update_job("job-missing", enabled=False) is None
        job = scheduler.add_job("/tmp/a")
        with pytest.raises(ValueError):
            scheduler.update_job(job.id, frequency="sometimes")

    def test_delete_job_removes_results(self, make_scheduler):
        scheduler = make_scheduler()
        job = scheduler.add_job("/tmp/a", frequency="hourly")
        scheduler.run_job(job.id)
        assert scheduler.get_job_results(job.id)

        assert scheduler.delete_job(job.id)
        assert scheduler.get_job(job.id) is None
        assert scheduler.get_job_results(job.id) == []
        assert not scheduler.is_armed(job.id)
        assert not scheduler.delete_job(job.id)

    def test_due_and_next_jobs(self, make_scheduler, clock):
        scheduler = make_scheduler()
        hourly = scheduler.add_job("/tmp/a", frequency="hourly")
        scheduler.add_job("/tmp/b", frequency="weekly")
        scheduler.add_job("/tmp/c", frequency="hourly", enabled=False)

        assert scheduler.next_scheduled_job().id == hourly.id
        assert scheduler.due_jobs() == []
        clock.advance(hours=2)
        assert [j.id for j in scheduler.due_jobs()] == [hourly.id]


class TestRunJob:
    def test_records_result_and_reschedules(self, make_scheduler, clock):
        scheduler = make_scheduler()
        job = scheduler.add_job("/tmp/a", frequency="daily")
        clock.advance(days=1)

        result = scheduler.run_job(job.id)
        assert result.success
        assert result.updated_packages == ("lodash",)
        assert result.tests_passed is True

        stored = scheduler.get_job(job.id)
        assert stored.last_run == clock.now
        assert stored.next_run == datetime(2024, 5, 17, 3, 0)
        assert scheduler.get_job_results(job.id) == [result]

    def test_executor_exception_becomes_failure(self, make_scheduler):
        def broken(job):
            raise RuntimeError("npm exploded")

        scheduler = make_scheduler(broken)
        job = scheduler.add_job("/tmp/a")
        result = scheduler.run_job(job.id)

        assert not result.success
        assert result.error == "npm exploded"
        assert scheduler.get_job(job.id).last_run is not None

    def test_executor_returning_nothing(self, make_scheduler):
        scheduler = make_scheduler(lambda job: None)
        job = scheduler.add_job("/tmp/a")
        result = scheduler.run_job(job.id)
        assert not result.success
        assert result.error == "Executor returned no result"

    def test_missing_or_disabled_job(self, make_scheduler):
        calls = []
        scheduler = make_scheduler(lambda job: calls.append(job))
        job = scheduler.add_job("/tmp/a", enabled=False)

        assert scheduler.run_job(job.id) is None
        assert scheduler.run_job("job-missing") is None
        assert calls == []
        assert scheduler.get_job_results() == []

    def test_observers_notified(self, make_scheduler):
        recorder = Recorder()
        scheduler = make_scheduler(observers=[Exploding(), recorder])
        job = scheduler.add_job("/tmp/a")
        scheduler.run_job(job.id)
        assert recorder.events == [("started", job.id), ("finished", job.id, True)]

    def test_results_newest_first_with_limit(self, make_scheduler, clock):
        outcomes = iter([True, False, False])
        scheduler = make_scheduler(
            lambda job: PipelineResult(success=next(outcomes))
        )
        job = scheduler.add_job("/tmp/a")
        for _ in range(3):
            clock.advance(minutes=1)
            scheduler.run_job(job.id)

        results = scheduler.get_job_results(job.id)
        assert [r.success for r in results] == [False, False, True]
        assert results[0].timestamp > results[-1].timestamp
        assert len(scheduler.get_job_results(limit=2)) == 2

    def test_retention_is_global(self, config, make_scheduler, clock):
        config.results_retention = 3
        scheduler = make_scheduler()
        first = scheduler.add_job("/tmp/a")
        second = scheduler.add_job("/tmp/b")
        for job in (first, first, first, second, second):
            clock.advance(minutes=1)
            scheduler.run_job(job.id)

        results = scheduler.get_job_results()
        assert len(results) == 3
        assert [r.job_id for r in results] == [second.id, second.id, first.id]


class TestTimers:
    def test_missed_job_fires_once_after_grace(self, config, clock, make_scheduler):
        config.missed_job_grace = 0.5
        first = make_scheduler()
        job = first.add_job("/tmp/a", frequency="hourly")
        first.cleanup()

        fired = threading.Event()
        calls = []

        def executor(j):
            calls.append(j.id)
            fired.set()
            return PipelineResult(success=True)

        clock.advance(days=1)
        restarted = make_scheduler(executor)
        restarted.initialize()

        assert not fired.is_set()
        assert restarted.is_armed(job.id)
        assert fired.wait(5)
        assert _wait_for(lambda: restarted.get_job_results(job.id))
        assert _wait_for(lambda: restarted.get_job(job.id).next_run == datetime(2024, 5, 16, 15, 0))
        time.sleep(0.3)
        assert calls == [job.id]
        assert len(restarted.get_job_results(job.id)) == 1

    def test_rescan_does_not_refire_running_job(self, config, clock, make_scheduler):
        config.missed_job_grace = 0.05
        first = make_scheduler()
        job = first.add_job("/tmp/a", frequency="hourly")
        first.cleanup()

        started = threading.Event()
        release = threading.Event()
        calls = []

        def executor(j):
            calls.append(j.id)
            started.set()
            release.wait(5)
            return PipelineResult(success=True)

        clock.advance(days=1)
        scheduler = make_scheduler(executor)
        scheduler.initialize()
        assert started.wait(5)

        # next_run is still in the past while the executor blocks
        assert scheduler.is_running(job.id)
        scheduler._rescan()
        time.sleep(0.3)
        assert calls == [job.id]

        release.set()
        assert _wait_for(lambda: scheduler.get_job_results(job.id))
        assert _wait_for(lambda: not scheduler.is_running(job.id))
        time.sleep(0.2)
        assert calls == [job.id]
        assert len(scheduler.get_job_results(job.id)) == 1
        assert scheduler.get_job(job.id).next_run == datetime(2024, 5, 16, 15, 0)
        assert scheduler.is_armed(job.id)

    def test_initialize_arms_upcoming_jobs(self, make_scheduler):
        first = make_scheduler()
        hourly = first.add_job("/tmp/a", frequency="hourly")
        weekly = first.add_job("/tmp/b", frequency="weekly")
        first.cleanup()

        restarted = make_scheduler()
        restarted.initialize()
        assert restarted.is_armed(hourly.id)
        assert not restarted.is_armed(weekly.id)

    def test_rescan_arms_jobs_entering_horizon(self, make_scheduler, clock):
        scheduler = make_scheduler()
        job = scheduler.add_job("/tmp/a", frequency="weekly")
        assert not scheduler.is_armed(job.id)

        clock.advance(days=6)
        scheduler._rescan()
        assert scheduler.is_armed(job.id)

    def test_cleanup_keeps_persisted_jobs(self, make_scheduler):
        scheduler = make_scheduler()
        job = scheduler.add_job("/tmp/a", frequency="hourly")
        scheduler.cleanup()

        assert not scheduler.is_armed(job.id)
        assert scheduler.get_job(job.id) == job


class TestWakeupLoop:
    @pytest.fixture
    def loop(self):
        loop = WakeupLoop(name="test-loop")
        yield loop
        loop.stop()

    def test_fires_in_deadline_order(self, loop):
        fired = []
        done = threading.Event()

        def record(key):
            def callback():
                fired.append(key)
                if len(fired) == 2:
                    done.set()
            return callback

        loop.arm("late", 0.2, record("late"))
        loop.arm("early", 0.05, record("early"))
        assert done.wait(5)
        assert fired == ["early", "late"]
        assert not loop.armed("early")

    def test_rearm_replaces_earlier_entry(self, loop):
        stale = threading.Event()
        fresh = threading.Event()
        loop.arm("job", 0.05, stale.set)
        loop.arm("job", 0.15, fresh.set)

        assert fresh.wait(5)
        assert not stale.is_set()

    def test_cancel(self, loop):
        fired = threading.Event()
        loop.arm("job", 0.05, fired.set)
        assert loop.cancel("job")
        assert not loop.armed("job")
        assert not fired.wait(0.3)
        assert not loop.cancel("job")

    def test_failing_callback_does_not_stop_loop(self, loop):
        def broken():
            raise RuntimeError("boom")

        fired = threading.Event()
        loop.arm("broken", 0.01, broken)
        loop.arm("ok", 0.1, fired.set)
        assert fired.wait(5)

    def test_stopped_loop_stays_stopped(self, loop):
        loop.start()
        loop.stop()
        fired = threading.Event()
        loop.arm("job", 0.01, fired.set)
        assert not fired.wait(0.3)

    def test_rescan_runs_periodically(self):
        scanned = threading.Event()
        loop = WakeupLoop(name="rescan-loop", rescan=scanned.set, rescan_interval=0.05)
        try:
            loop.start()
            assert scanned.wait(5)
        finally:
            loop.stop()
