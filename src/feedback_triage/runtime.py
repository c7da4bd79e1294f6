"""
Pipeline Runtime
================

Wires the pipeline components together for the API process and the
standalone worker.

The circuit breaker is created once here and shared by reference with the
LLM client and the admin endpoint.
"""

import asyncio
from functools import partial
from typing import Optional

from feedback_triage.config import settings
from feedback_triage.infrastructure.database import get_session_maker
from feedback_triage.infrastructure.llm import CircuitBreaker, ILLMClient, build_llm_client
from feedback_triage.pipeline.application import PipelineOrchestrator, PipelineWorker
from feedback_triage.pipeline.infrastructure import PipelineScheduler, SQLAlchemyUnitOfWork
from feedback_triage.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class PipelineRuntime:
    """Breaker, LLM client, worker and scheduler for one process."""

    def __init__(
        self,
        circuit_breaker: Optional[CircuitBreaker] = None,
        llm_client: Optional[ILLMClient] = None,
    ):
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            recovery_timeout=settings.circuit_breaker_recovery_seconds,
        )
        self.llm_client = llm_client or build_llm_client(self.circuit_breaker)

        uow_factory = partial(SQLAlchemyUnitOfWork, get_session_maker())
        self.orchestrator = PipelineOrchestrator(uow_factory, self.llm_client)
        self.worker = PipelineWorker(uow_factory, self.orchestrator)
        self.scheduler = PipelineScheduler()

    async def start(self) -> None:
        await self.scheduler.start(self.worker.run_once)

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop polling, let the current cycle finish, close the LLM client."""
        self.worker.stop()
        await self.scheduler.stop()
        try:
            await self.worker.wait_idle(timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Pipeline cycle still running at shutdown", extra={"timeout": timeout})
        await self.llm_client.close()
