"""
Background job scheduler for the recommendation maintenance jobs.

A ticker loop checks a registry of jobs (cron expression or fixed interval)
once a second and runs due jobs in a worker thread. Every execution gets its
own failure boundary and its own Deadline, so one broken or slow job never
takes the others down; stopping the scheduler cancels running deadlines.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set
import logging
import sqlite3

import croniter

from backend.app.config import Settings
from backend.recommender.batch import Deadline
from backend.recommender.models import CFParams
from backend.recommender import recompute

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobExecution:
    """Record of one job run."""

    def __init__(self, job_name: str, clock: Callable[[], datetime] = _utcnow):
        self.job_name = job_name
        self.clock = clock
        self.started_at = clock()
        self.completed_at: Optional[datetime] = None
        self.status = JobStatus.RUNNING
        self.error: Optional[str] = None
        self.result: Any = None

    def complete(self, result: Any = None):
        self.completed_at = self.clock()
        self.status = JobStatus.COMPLETED
        self.result = result

    def fail(self, error: str, status: JobStatus = JobStatus.FAILED):
        self.completed_at = self.clock()
        self.status = status
        self.error = error

    def duration(self) -> float:
        """Duration in seconds (so far, if still running)."""
        end = self.completed_at or self.clock()
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "status": self.status.value,
            "duration": self.duration(),
            "error": self.error,
        }


class ScheduledJob:
    """A job definition: what to run, when, and with which time budget."""

    def __init__(
        self,
        name: str,
        func: Callable[[Deadline], Any],
        schedule: Optional[str] = None,
        interval: Optional[int] = None,
        timeout: Optional[float] = None,
        enabled: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            name: Job name
            func: Callable taking the execution's Deadline
            schedule: Cron expression
            interval: Interval in seconds
            timeout: Time budget per execution in seconds (None = unbounded)
            enabled: Whether job is enabled
        """
        if not schedule and not interval:
            raise ValueError("Either schedule or interval must be provided")
        if schedule and not croniter.croniter.is_valid(schedule):
            raise ValueError(f"Invalid cron expression for {name}: {schedule!r}")

        self.name = name
        self.func = func
        self.schedule = schedule
        self.interval = interval
        self.timeout = timeout
        self.enabled = enabled
        self.clock = clock
        self.last_run: Optional[datetime] = None
        self.next_run: Optional[datetime] = None
        self.executions: List[JobExecution] = []
        self.max_history = 100
        self.update_next_run()

    def should_run(self, now: Optional[datetime] = None) -> bool:
        if not self.enabled or not self.next_run:
            return False
        return (now or self.clock()) >= self.next_run

    def update_next_run(self):
        now = self.clock()
        if self.schedule:
            self.next_run = croniter.croniter(self.schedule, now).get_next(datetime)
        else:
            self.next_run = now + timedelta(seconds=self.interval)

    def add_execution(self, execution: JobExecution):
        self.executions.append(execution)
        if len(self.executions) > self.max_history:
            self.executions = self.executions[-self.max_history:]

    def status(self) -> dict:
        recent = self.executions[-10:]
        return {
            "name": self.name,
            "enabled": self.enabled,
            "schedule": self.schedule,
            "interval": self.interval,
            "timeout": self.timeout,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "total_executions": len(self.executions),
            "recent_executions": [e.to_dict() for e in recent],
        }


class JobScheduler:
    """Ticker + job registry."""

    def __init__(self, tick_seconds: float = 1.0, clock: Callable[[], datetime] = _utcnow):
        self.jobs: Dict[str, ScheduledJob] = {}
        self.tick_seconds = tick_seconds
        self.clock = clock
        self._running = False
        self._scheduler_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._active_deadlines: Set[Deadline] = set()

    @property
    def running(self) -> bool:
        return self._running

    def schedule(
        self,
        name: str,
        func: Callable[[Deadline], Any],
        schedule: Optional[str] = None,
        interval: Optional[int] = None,
        timeout: Optional[float] = None,
        enabled: bool = True,
    ) -> ScheduledJob:
        job = ScheduledJob(
            name=name,
            func=func,
            schedule=schedule,
            interval=interval,
            timeout=timeout,
            enabled=enabled,
            clock=self.clock,
        )
        self.jobs[name] = job
        logger.info(
            "Scheduled job: %s (%s)",
            name, f"cron: {schedule}" if schedule else f"interval: {interval}s",
        )
        return job

    def unschedule(self, name: str):
        if self.jobs.pop(name, None) is not None:
            logger.info("Unscheduled job: %s", name)

    def enable_job(self, name: str):
        if name in self.jobs:
            self.jobs[name].enabled = True

    def disable_job(self, name: str):
        if name in self.jobs:
            self.jobs[name].enabled = False

    async def run_job_now(self, name: str) -> JobExecution:
        if name not in self.jobs:
            raise KeyError(f"Job not found: {name}")
        return await self._execute_job(self.jobs[name])

    async def _execute_job(self, job: ScheduledJob) -> JobExecution:
        execution = JobExecution(job.name, clock=self.clock)
        job.add_execution(execution)
        deadline = Deadline(job.timeout)
        self._active_deadlines.add(deadline)

        logger.info("Executing job: %s", job.name)
        try:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, job.func, deadline)
            execution.complete(result)
            job.last_run = self.clock()
            logger.info("Job completed: %s (duration: %.2fs)", job.name, execution.duration())
        except Exception as e:
            # failure boundary: log and keep the scheduler alive
            status = JobStatus.CANCELLED if deadline.expired() else JobStatus.FAILED
            execution.fail(str(e), status)
            logger.exception("Job %s: %s", status.value, job.name)
        finally:
            self._active_deadlines.discard(deadline)
            job.update_next_run()
        return execution

    def run_due_jobs(self) -> List[asyncio.Task]:
        now = self.clock()
        started = []
        for job in list(self.jobs.values()):
            if job.should_run(now):
                # push next_run forward now so the next tick doesn't start it twice
                job.next_run = None
                task = asyncio.create_task(self._execute_job(job))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
                started.append(task)
        return started

    async def _scheduler_loop(self):
        while self._running:
            try:
                self.run_due_jobs()
            except Exception:
                logger.exception("Scheduler tick failed")
            await asyncio.sleep(self.tick_seconds)

    async def start(self):
        if self._running:
            logger.warning("Scheduler already running")
            return
        self._running = True
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())
        logger.info("Job scheduler started with %d jobs", len(self.jobs))

    async def stop(self):
        if not self._running:
            return
        self._running = False

        for deadline in list(self._active_deadlines):
            deadline.cancel()

        if self._scheduler_task:
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("Job scheduler stopped")

    def get_job_status(self, name: str) -> Optional[dict]:
        job = self.jobs.get(name)
        return job.status() if job else None

    def get_all_jobs(self) -> List[dict]:
        return [job.status() for job in self.jobs.values()]


def register_recommendation_jobs(
    scheduler: JobScheduler,
    cfg: Settings,
    connect: Callable[[], sqlite3.Connection],
    params: Callable[[], CFParams],
) -> None:
    """
    Register the periodic maintenance jobs. Each one opens its own
    connection and reads the current CF parameters when it starts.
    """

    def with_conn(func: Callable[[sqlite3.Connection, Deadline], Any]) -> Callable[[Deadline], Any]:
        def run(deadline: Deadline) -> Any:
            conn = connect()
            try:
                return func(conn, deadline)
            finally:
                conn.close()
        return run

    def item_similarities(mode: str):
        return with_conn(lambda conn, d: recompute.compute_item_similarities(conn, mode, params(), d).to_dict())

    timeout = cfg.recompute_timeout_seconds

    scheduler.schedule(
        "product_similarities",
        item_similarities(cfg.item_similarity_mode),
        schedule=cfg.item_similarity_cron,
        timeout=timeout,
    )
    scheduler.schedule(
        "user_similarities",
        with_conn(lambda conn, d: recompute.compute_user_similarities(conn, params(), d).to_dict()),
        schedule=cfg.user_similarity_cron,
        timeout=timeout,
    )
    if cfg.item_similarity_mode != "cooccurrence":
        scheduler.schedule(
            "product_similarities_cooccurrence",
            item_similarities("cooccurrence"),
            schedule=cfg.cooccurrence_cron,
            timeout=timeout,
        )
    scheduler.schedule(
        "cache_cleanup",
        with_conn(lambda conn, d: recompute.cleanup_expired_cache(conn)),
        interval=cfg.cache_cleanup_interval_seconds,
    )
    scheduler.schedule(
        "retention_cleanup",
        with_conn(
            lambda conn, d: recompute.cleanup_retention(
                conn, cfg.interaction_retention_days, cfg.similarity_retention_days
            )
        ),
        schedule=cfg.retention_cron,
    )
