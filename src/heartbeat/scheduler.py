"""Cron-style background job scheduler.

Runs the daily stale-data sweep and the hourly ranking sync inside the API
process with plain asyncio tasks.  Each job sleeps until its next wall-clock
slot (UTC), runs, records the outcome and loops.  A failing job is logged and
retried at its next slot; it never takes the loop down.

Usage::

    scheduler = JobScheduler()
    scheduler.register("reaper", reaper.sweep, DailyAt(hour=18, minute=0))
    scheduler.register("ranking_sync", ranking.bulk_sync, HourlyAt(minute=59))
    await scheduler.start()
    ...
    await scheduler.stop()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Coroutine

from src.heartbeat.models import utc_now

logger = logging.getLogger("pulsecast.heartbeat.scheduler")


@dataclass(frozen=True)
class DailyAt:
    """Fire once a day at ``hour:minute`` UTC."""

    hour: int
    minute: int = 0

    def next_run(self, after: datetime) -> datetime:
        candidate = after.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= after:
            candidate += timedelta(days=1)
        return candidate


@dataclass(frozen=True)
class HourlyAt:
    """Fire once an hour at ``minute`` past the hour."""

    minute: int = 0

    def next_run(self, after: datetime) -> datetime:
        candidate = after.replace(minute=self.minute, second=0, microsecond=0)
        if candidate <= after:
            candidate += timedelta(hours=1)
        return candidate


@dataclass
class ScheduledJob:
    """A registered job and its run history.

    Attributes:
        name:                 Unique job name.
        func:                 Coroutine function to run.
        schedule:             ``DailyAt`` or ``HourlyAt``.
        enabled:              Disabled jobs are registered but never looped.
        next_run:             Next planned slot (UTC).
        last_run:             Completion time of the last run.
        run_count:            Successful runs.
        error_count:          Failed runs.
        consecutive_failures: Failures since the last success.
        last_error:           Message of the most recent failure.
        last_result:          Return value of the most recent successful run.
    """

    name: str
    func: Callable[[], Coroutine[Any, Any, Any]]
    schedule: DailyAt | HourlyAt
    enabled: bool = True
    next_run: datetime | None = None
    last_run: datetime | None = None
    run_count: int = 0
    error_count: int = 0
    consecutive_failures: int = 0
    last_error: str | None = None
    last_result: Any = field(default=None, repr=False)


class JobScheduler:
    """Lightweight asyncio scheduler for wall-clock jobs."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._jobs: dict[str, ScheduledJob] = {}
        self._running: dict[str, asyncio.Task] = {}
        self._shutdown = asyncio.Event()
        self._clock = clock
        self.is_running = False

    @property
    def jobs(self) -> dict[str, ScheduledJob]:
        return dict(self._jobs)

    def register(
        self,
        name: str,
        func: Callable[[], Coroutine[Any, Any, Any]],
        schedule: DailyAt | HourlyAt,
        enabled: bool = True,
    ) -> ScheduledJob:
        if name in self._jobs:
            raise ValueError(f"job already registered: {name}")
        job = ScheduledJob(name=name, func=func, schedule=schedule, enabled=enabled)
        self._jobs[name] = job
        logger.info("Registered job %s (%s)", name, schedule)
        return job

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Scheduler already running")
            return
        self.is_running = True
        self._shutdown.clear()
        for name, job in self._jobs.items():
            if job.enabled:
                self._running[name] = asyncio.create_task(self._loop(job), name=f"job_{name}")
        logger.info("Scheduler started with %d job(s)", len(self._running))

    async def stop(self) -> None:
        if not self.is_running:
            return
        self._shutdown.set()
        for task in self._running.values():
            task.cancel()
        await asyncio.gather(*self._running.values(), return_exceptions=True)
        self._running.clear()
        self.is_running = False
        logger.info("Scheduler stopped")

    async def run_job_now(self, name: str) -> Any:
        """Run a job immediately, outside its schedule. Errors propagate."""
        job = self._jobs.get(name)
        if job is None:
            raise KeyError(name)
        return await self._execute(job, reraise=True)

    async def _loop(self, job: ScheduledJob) -> None:
        while not self._shutdown.is_set():
            now = self._clock()
            job.next_run = job.schedule.next_run(now)
            delay = (job.next_run - now).total_seconds()
            logger.debug("Job %s sleeping %.0fs until %s", job.name, delay, job.next_run.isoformat())
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
                return
            except asyncio.TimeoutError:
                pass
            await self._execute(job, reraise=False)

    async def _execute(self, job: ScheduledJob, reraise: bool) -> Any:
        logger.info("Running job %s", job.name)
        try:
            result = await job.func()
        except Exception as exc:
            job.error_count += 1
            job.consecutive_failures += 1
            job.last_error = str(exc)
            logger.error(
                "Job %s failed (%d consecutive): %s",
                job.name,
                job.consecutive_failures,
                exc,
                exc_info=exc,
            )
            if reraise:
                raise
            return None
        job.last_run = self._clock()
        job.run_count += 1
        job.consecutive_failures = 0
        job.last_result = result
        return result

    def get_stats(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "jobs": {
                name: {
                    "enabled": job.enabled,
                    "next_run": job.next_run.isoformat() if job.next_run else None,
                    "last_run": job.last_run.isoformat() if job.last_run else None,
                    "run_count": job.run_count,
                    "error_count": job.error_count,
                    "consecutive_failures": job.consecutive_failures,
                    "last_error": job.last_error,
                }
                for name, job in self._jobs.items()
            },
        }
