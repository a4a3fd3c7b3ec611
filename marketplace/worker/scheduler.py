"""
In-process registry of periodic jobs.

Nothing runs on import: jobs are registered explicitly and the loop only runs
between start() and stop(). tick(now) and run_job(name) drive jobs directly,
which is how tests exercise them. The same registry feeds the arq worker's cron
table through arq_cron_jobs().
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from arq.cron import CronJob, cron

from marketplace.core.logging import get_logger, job_context

log = get_logger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


@dataclass
class ScheduledJob:
    name: str
    func: JobFunc
    interval: timedelta
    next_run: datetime | None = None
    last_run: datetime | None = None
    last_error: str | None = None
    runs: int = 0
    failures: int = 0
    running: bool = False


class JobScheduler:
    def __init__(self, poll_seconds: float = 30.0):
        self.poll_seconds = poll_seconds
        self._jobs: dict[str, ScheduledJob] = {}
        self._task: asyncio.Task | None = None

    def register(
        self,
        name: str,
        func: JobFunc,
        interval: timedelta,
        run_immediately: bool = False,
        now: datetime | None = None,
    ) -> ScheduledJob:
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        if interval <= timedelta(0):
            raise ValueError("Job interval must be positive")
        now = now or datetime.utcnow()
        job = ScheduledJob(name=name, func=func, interval=interval, next_run=now if run_immediately else now + interval)
        self._jobs[name] = job
        return job

    @property
    def jobs(self) -> list[str]:
        return list(self._jobs)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_job(self, name: str, now: datetime | None = None) -> Any:
        """Run one job now, whatever its schedule. Errors are recorded and re-raised."""
        job = self._jobs.get(name)
        if job is None:
            raise KeyError(name)
        now = now or datetime.utcnow()
        job.running = True
        with job_context(name, uuid.uuid4().hex[:12]):
            log.info("job_start")
            try:
                result = await job.func()
            except Exception as e:
                job.failures += 1
                job.last_error = str(e)[:500]
                log.exception("job_error", reason=str(e))
                raise
            else:
                job.last_error = None
                log.info("job_done")
                return result
            finally:
                job.running = False
                job.runs += 1
                job.last_run = now
                job.next_run = now + job.interval

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Run every job that is due at `now`; returns the names that ran. One failing job never stops the others."""
        now = now or datetime.utcnow()
        ran = []
        for job in list(self._jobs.values()):
            if job.running or job.next_run is None or job.next_run > now:
                continue
            ran.append(job.name)
            try:
                await self.run_job(job.name, now=now)
            except Exception:
                # already logged and recorded by run_job
                continue
        return ran

    async def _loop(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(self.poll_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="job-scheduler")
        log.info("scheduler_started", jobs=self.jobs)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("scheduler_stopped")

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "jobs": {
                job.name: {
                    "interval_seconds": int(job.interval.total_seconds()),
                    "next_run": job.next_run.isoformat() if job.next_run else None,
                    "last_run": job.last_run.isoformat() if job.last_run else None,
                    "last_error": job.last_error,
                    "runs": job.runs,
                    "failures": job.failures,
                    "running": job.running,
                }
                for job in self._jobs.values()
            },
        }

    def arq_cron_jobs(self) -> list[CronJob]:
        """One arq cron entry per registered job, firing on the job's interval."""
        return [cron(self._arq_entry(job.name), name=job.name, **cron_fields(job.interval)) for job in self._jobs.values()]

    def _arq_entry(self, name: str) -> Callable[[dict[str, Any]], Awaitable[Any]]:
        async def run(ctx: dict[str, Any]) -> Any:
            return await self.run_job(name)

        run.__qualname__ = f"cron_{name}"
        return run


def cron_fields(interval: timedelta) -> dict[str, Any]:
    """arq minute/hour sets for an interval. Sub-hour intervals should divide 60, multi-hour ones 24."""
    minutes = int(interval.total_seconds() // 60)
    if minutes >= 24 * 60:
        return {"hour": {3}, "minute": {0}}
    if minutes >= 60:
        hours = minutes // 60
        return {"hour": set(range(0, 24, hours)), "minute": {0}}
    return {"minute": set(range(0, 60, max(1, minutes)))}
