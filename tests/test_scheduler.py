import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.config import Settings
from backend.app.db import connect
from backend.app.scheduler import (
    JobScheduler,
    JobStatus,
    ScheduledJob,
    register_recommendation_jobs,
)
from backend.recommender.models import CFParams


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 1, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


class TestScheduledJob:
    def test_cron_next_run(self, clock):
        job = ScheduledJob("nightly", lambda d: None, schedule="0 2 * * *", clock=clock)
        assert job.next_run == datetime(2026, 1, 1, 2, 0, tzinfo=timezone.utc)
        assert not job.should_run()
        clock.now = datetime(2026, 1, 1, 2, 0, tzinfo=timezone.utc)
        assert job.should_run()

    def test_interval_next_run(self, clock):
        job = ScheduledJob("sweep", lambda d: None, interval=600, clock=clock)
        assert job.next_run == clock.now + timedelta(seconds=600)

    def test_disabled_job_never_runs(self, clock):
        job = ScheduledJob("sweep", lambda d: None, interval=1, enabled=False, clock=clock)
        clock.now += timedelta(hours=1)
        assert not job.should_run()

    def test_requires_a_trigger(self):
        with pytest.raises(ValueError):
            ScheduledJob("nothing", lambda d: None)

    def test_rejects_bad_cron(self):
        with pytest.raises(ValueError):
            ScheduledJob("broken", lambda d: None, schedule="every day at 2")


class TestJobScheduler:
    def test_run_job_now(self, clock):
        scheduler = JobScheduler(clock=clock)
        scheduler.schedule("answer", lambda d: 42, interval=60)

        execution = asyncio.run(scheduler.run_job_now("answer"))

        assert execution.status is JobStatus.COMPLETED
        assert execution.result == 42
        status = scheduler.get_job_status("answer")
        assert status["last_run"] == clock.now.isoformat()
        assert status["total_executions"] == 1
        assert status["recent_executions"][0]["status"] == "completed"

    def test_unknown_job(self):
        with pytest.raises(KeyError):
            asyncio.run(JobScheduler().run_job_now("nope"))

    def test_failure_is_contained(self, clock):
        ran = []

        def broken(deadline):
            raise RuntimeError("disk full")

        scheduler = JobScheduler(clock=clock)
        scheduler.schedule("broken", broken, interval=60)
        scheduler.schedule("healthy", lambda d: ran.append(1), interval=60)
        clock.now += timedelta(minutes=5)

        async def tick():
            await asyncio.gather(*scheduler.run_due_jobs())

        asyncio.run(tick())

        assert ran == [1]
        broken_status = scheduler.get_job_status("broken")
        assert broken_status["recent_executions"][0]["status"] == "failed"
        assert broken_status["recent_executions"][0]["error"] == "disk full"
        # a failed job is still rescheduled
        assert scheduler.jobs["broken"].next_run == clock.now + timedelta(seconds=60)

    def test_stop_cancels_running_deadline(self):
        started = threading.Event()

        def slow(deadline):
            started.set()
            give_up = time.monotonic() + 5
            while not deadline.expired() and time.monotonic() < give_up:
                time.sleep(0.01)
            return "cancelled" if deadline.cancelled else "timed out"

        scheduler = JobScheduler(tick_seconds=0.01)
        scheduler.schedule("slow", slow, interval=3600)

        async def scenario():
            await scheduler.start()
            assert scheduler.running
            task = asyncio.create_task(scheduler.run_job_now("slow"))
            while not started.is_set():
                await asyncio.sleep(0.01)
            await scheduler.stop()
            return await task

        execution = asyncio.run(scenario())
        assert execution.result == "cancelled"
        assert not scheduler.running

    def test_unschedule_and_toggle(self, clock):
        scheduler = JobScheduler(clock=clock)
        scheduler.schedule("a", lambda d: None, interval=1)
        scheduler.disable_job("a")
        assert scheduler.get_job_status("a")["enabled"] is False
        scheduler.enable_job("a")
        assert scheduler.get_job_status("a")["enabled"] is True
        scheduler.unschedule("a")
        assert scheduler.get_all_jobs() == []


def test_register_recommendation_jobs(conn, db_path):
    scheduler = JobScheduler()
    register_recommendation_jobs(scheduler, Settings(), lambda: connect(db_path), CFParams)

    assert set(scheduler.jobs) == {
        "product_similarities",
        "user_similarities",
        "product_similarities_cooccurrence",
        "cache_cleanup",
        "retention_cleanup",
    }
    assert scheduler.jobs["user_similarities"].schedule == "0 3 * * *"
    assert scheduler.jobs["cache_cleanup"].interval == 6 * 60 * 60

    # jobs open their own connection against the configured database
    assert asyncio.run(scheduler.run_job_now("cache_cleanup")).result == 0
    execution = asyncio.run(scheduler.run_job_now("product_similarities"))
    assert execution.status is JobStatus.COMPLETED
    assert execution.result["completed"] is True
