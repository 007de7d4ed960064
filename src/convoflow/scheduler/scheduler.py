"""Background poll loop for the timer scheduler.

Durable waits live in the database; this module only provides the clock
tick that drives them. It wraps APScheduler so the runtime can run its
maintenance jobs (timer sweep, reconciliation, reply timeouts) on a small
thread pool.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..core.config import SchedulerConfig
from ..core.logger import get_logger

logger = get_logger("scheduler")


@dataclass
class JobStats:
    """Execution counters for one poll job."""

    runs: int = 0
    errors: int = 0
    last_run: datetime | None = None
    last_error: str | None = None


class TaskScheduler:
    """Interval job runner built on APScheduler's ``BackgroundScheduler``.

    A job never overlaps with itself (``max_instances=1``) and missed ticks
    are coalesced, so a slow sweep pushes the next one back instead of
    queueing several.

    Example:
        ```python
        scheduler = TaskScheduler(config.scheduler)
        scheduler.add_job(timers.poll, job_id="timer-poll", seconds=5)
        scheduler.start()
        ```
    """

    def __init__(self, config: SchedulerConfig):
        self.config = config
        self._stats: dict[str, JobStats] = {}
        self._scheduler = BackgroundScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": ThreadPoolExecutor(max_workers=config.max_workers)},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": config.misfire_grace_time,
            },
            timezone=config.timezone,
        )
        self._scheduler.add_listener(self._on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)
        logger.debug("Poll scheduler created (timezone=%s)", config.timezone)

    def _on_job_event(self, event: JobExecutionEvent) -> None:
        stats = self._stats.setdefault(event.job_id, JobStats())
        stats.runs += 1
        stats.last_run = event.scheduled_run_time
        if event.exception is None:
            logger.debug("Job %s finished", event.job_id)
            return

        stats.errors += 1
        stats.last_error = str(event.exception)
        logger.error(
            f"Job {event.job_id} raised: {event.exception}",
            exc_info=event.exception,
        )

    def start(self) -> None:
        """Start ticking.

        Raises:
            RuntimeError: If the scheduler is disabled in configuration
        """
        if not self.config.enabled:
            raise RuntimeError("Scheduler is disabled in configuration")

        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Poll scheduler started")

    def shutdown(self, wait: bool = True) -> None:
        """Stop ticking; ``wait`` blocks until a running job returns."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Poll scheduler stopped")

    def add_job(
        self,
        func: Callable[[], Any],
        job_id: str | None = None,
        replace_existing: bool = True,
        **interval: Any,
    ) -> str:
        """Run ``func`` every interval.

        Args:
            func: Zero-argument callable
            job_id: Job id, generated from the function name when omitted
            replace_existing: Replace a job registered under the same id
            **interval: ``IntervalTrigger`` arguments such as ``seconds=5``

        Returns:
            The job id
        """
        if job_id is None:
            job_id = f"{getattr(func, '__name__', 'job')}-{uuid.uuid4().hex[:8]}"

        self._scheduler.add_job(
            func,
            IntervalTrigger(**interval),
            id=job_id,
            replace_existing=replace_existing,
        )
        logger.info("Job %s scheduled every %s", job_id, interval)
        return job_id

    def get_jobs(self) -> list[Any]:
        return self._scheduler.get_jobs()

    def get_job(self, job_id: str) -> Any | None:
        return self._scheduler.get_job(job_id)

    @property
    def is_running(self) -> bool:
        return bool(self._scheduler.running)

    def get_scheduler_status(self) -> dict[str, Any]:
        """Summary of the poll loop and its jobs."""
        jobs = []
        for job in self.get_jobs():
            stats = self._stats.get(job.id, JobStats())
            # pending jobs have no next_run_time until the scheduler starts
            next_run = getattr(job, "next_run_time", None)
            jobs.append(
                {
                    "id": job.id,
                    "next_run_time": next_run.isoformat() if next_run else None,
                    "runs": stats.runs,
                    "errors": stats.errors,
                    "last_error": stats.last_error,
                }
            )
        return {
            "status": "running" if self.is_running else "stopped",
            "running": self.is_running,
            "timezone": str(self.config.timezone),
            "total_jobs": len(jobs),
            "jobs": jobs,
        }
