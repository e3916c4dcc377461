"""APScheduler-based job scheduler for periodic tasks.

Runs the gateway's two background jobs:
- Expired session cleanup
- Backend health polling

Interval jobs first fire one full interval after registration. Shutting
the scheduler down stops both jobs.
"""

import logging
from collections.abc import Callable

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from noknok.config import Settings

logger = logging.getLogger(__name__)

SESSION_CLEANUP_JOB_ID = "session_cleanup"
HEALTH_POLL_JOB_ID = "health_poll"


class JobScheduler:
    """APScheduler-based job scheduler for periodic tasks.

    Example:
        scheduler = JobScheduler(settings)
        scheduler.add_session_cleanup_job(sessions.cleanup_expired)
        scheduler.add_health_poll_job(poller.poll_once)
        await scheduler.start()

        # Shutdown
        await scheduler.shutdown()
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,  # Combine missed runs
                "max_instances": 1,  # One instance at a time
                "misfire_grace_time": 300,
            },
        )

        self.scheduler.add_listener(
            self._on_job_executed,
            EVENT_JOB_EXECUTED | EVENT_JOB_ERROR,
        )

        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start the scheduler.

        Raises:
            RuntimeError: If scheduler already started
        """
        if self._started:
            raise RuntimeError("Scheduler already started")

        self.scheduler.start()
        self._started = True

        logger.info(
            "Job scheduler started",
            extra={"job_count": len(self.scheduler.get_jobs())},
        )

    async def shutdown(self, wait: bool = False) -> None:
        """Shutdown the scheduler.

        Args:
            wait: Whether to wait for running jobs to complete
        """
        if not self._started:
            return

        self.scheduler.shutdown(wait=wait)
        self._started = False

        logger.info("Job scheduler stopped")

    def _add_interval_job(
        self, job_id: str, name: str, job_func: Callable, interval_seconds: int
    ) -> str:
        job = self.scheduler.add_job(
            job_func,
            trigger=IntervalTrigger(seconds=interval_seconds),
            id=job_id,
            name=name,
            replace_existing=True,
        )
        logger.info(
            f"Added {name} job (interval: {interval_seconds}s)",
            extra={"job_id": job.id, "interval_seconds": interval_seconds},
        )
        return job.id

    def add_session_cleanup_job(
        self, job_func: Callable, interval_seconds: int | None = None
    ) -> str:
        """Add the expired-session sweep.

        Args:
            job_func: Async function to execute
            interval_seconds: Sweep interval (default: from settings)

        Returns:
            Job ID
        """
        interval = interval_seconds or self.settings.session_cleanup_interval_seconds
        return self._add_interval_job(
            SESSION_CLEANUP_JOB_ID, "Expired Session Cleanup", job_func, interval
        )

    def add_health_poll_job(self, job_func: Callable, interval_seconds: int | None = None) -> str:
        """Add the backend health poll.

        Args:
            job_func: Async function to execute
            interval_seconds: Poll interval (default: from settings)

        Returns:
            Job ID
        """
        interval = interval_seconds or self.settings.health_check_interval_seconds
        return self._add_interval_job(HEALTH_POLL_JOB_ID, "Service Health Poll", job_func, interval)

    def _on_job_executed(self, event) -> None:
        if event.exception:
            logger.error(
                f"Job {event.job_id} failed",
                extra={
                    "job_id": event.job_id,
                    "exception": str(event.exception),
                },
                exc_info=event.exception,
            )
        else:
            logger.debug(
                f"Job {event.job_id} executed successfully",
                extra={"job_id": event.job_id},
            )


__all__ = ["JobScheduler", "SESSION_CLEANUP_JOB_ID", "HEALTH_POLL_JOB_ID"]
