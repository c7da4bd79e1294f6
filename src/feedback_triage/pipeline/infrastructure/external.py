"""
Pipeline External Services
==========================

APScheduler wrapper that drives the worker poll loop.

max_instances=1 keeps cycles of one process from overlapping; other
processes run their own scheduler and coordinate through the claim
statement only.
"""

from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from feedback_triage.config import settings
from feedback_triage.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class PipelineScheduler:
    """
    Wrapper for APScheduler for the pipeline poll loop.

    Manages the lifecycle of the scheduler and the poll job.
    """

    JOB_ID = "pipeline_poll"

    def __init__(self, interval_seconds: Optional[int] = None):
        self.interval_seconds = interval_seconds or settings.pipeline_poll_interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[object]]) -> None:
        """Start polling with the given coroutine function."""
        if self._running:
            logger.warning("Pipeline scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id=self.JOB_ID,
            name="Pipeline Poll Job",
            misfire_grace_time=self.interval_seconds,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info(
            "Pipeline scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler; a cycle in progress is left to finish."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Pipeline scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
