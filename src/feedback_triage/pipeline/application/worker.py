"""
Pipeline Worker
===============

One poll cycle of a worker process:

1. sweep processing jobs whose lease expired
2. claim pending jobs in one statement, no more than can start right away
   (min of batch_size and concurrency)
3. run them through the orchestrator concurrently

Workers share nothing in memory; the claim statement is what keeps two of
them off the same job.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, List, Optional

from feedback_triage.config import AuditEntityType, settings
from feedback_triage.core import utcnow
from feedback_triage.pipeline.application.orchestrator import PipelineOrchestrator, PipelineOutcome
from feedback_triage.pipeline.application.services import IUnitOfWork, ReclaimedJob
from feedback_triage.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class PipelineWorker:
    """Claims and processes jobs; run_once is what the scheduler calls."""

    def __init__(
        self,
        uow_factory: Callable[[], IUnitOfWork],
        orchestrator: PipelineOrchestrator,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        lease_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._uow_factory = uow_factory
        self._orchestrator = orchestrator
        self.batch_size = batch_size or settings.pipeline_claim_batch_size
        self.concurrency = concurrency or settings.pipeline_worker_concurrency
        self.lease_seconds = lease_seconds or settings.pipeline_job_lease_seconds
        self._clock = clock
        self._cycle_lock = asyncio.Lock()
        self._stopping = False

    async def run_once(self) -> List[PipelineOutcome]:
        """Run a single poll cycle. Errors are logged, never raised."""
        if self._stopping:
            return []

        async with self._cycle_lock:
            try:
                await self.reclaim_expired()
                jobs = await self.claim()
            except Exception:
                logger.exception("Poll cycle failed")
                return []

            if not jobs:
                return []

            logger.info("Claimed pipeline jobs", extra={"count": len(jobs), "job_ids": [j.id for j in jobs]})
            return await self._process_all(jobs)

    async def reclaim_expired(self) -> List[ReclaimedJob]:
        async with self._uow_factory() as uow:
            reclaimed = await uow.jobs.reclaim_expired(self.lease_seconds, now=self._clock())
            if not reclaimed:
                return []
            await uow.threads.clear_ai_processing(sorted({job.thread_id for job in reclaimed}))
            for job in reclaimed:
                await uow.audit_logs.record(
                    AuditEntityType.PIPELINE_JOB,
                    job.id,
                    "lease_expired",
                    {"status": job.status, "leaseSeconds": self.lease_seconds},
                )
            await uow.commit()

        logger.warning(
            "Reclaimed jobs with expired leases",
            extra={"count": len(reclaimed), "job_public_ids": [job.public_id for job in reclaimed]}
        )
        return reclaimed

    @property
    def claim_limit(self) -> int:
        """Jobs claimed per cycle; each one starts right away and renews its own lease."""
        return min(self.batch_size, self.concurrency)

    async def claim(self) -> List[Any]:
        async with self._uow_factory() as uow:
            jobs = await uow.jobs.claim_next(self.claim_limit, now=self._clock())
            await uow.commit()
        return jobs

    async def _process_all(self, jobs: List[Any]) -> List[PipelineOutcome]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(job: Any) -> Optional[PipelineOutcome]:
            async with semaphore:
                try:
                    return await self._orchestrator.process(job)
                except Exception:
                    logger.exception("Unhandled error processing job", extra={"job_id": job.id})
                    return None

        results = await asyncio.gather(*(run(job) for job in jobs))
        return [outcome for outcome in results if outcome is not None]

    def stop(self) -> None:
        """Stop claiming new jobs; in-flight jobs finish."""
        self._stopping = True

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait for the current cycle, if any, to finish."""
        await asyncio.wait_for(self._cycle_lock.acquire(), timeout=timeout)
        self._cycle_lock.release()
