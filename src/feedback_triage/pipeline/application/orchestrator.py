"""
Pipeline Orchestrator
=====================

Runs one claimed job end to end:

    load thread -> Stage A (thread state) -> Stage B (gatekeeper)
    -> Stage C (work item, when asked for) -> persist outcome

No database transaction spans an LLM call. Every read and write happens in
its own short unit of work. A background task renews the job lease for as
long as the job is being processed, and the lease is checked again between
stages. Every claim-holder update carries the attempt number of the claim,
so a worker whose lease was taken over writes nothing.

The thread's ai_processing_since flag is cleared on every exit path, unless
the claim was lost: the flag then belongs to the worker holding the job now.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from feedback_triage.config import (
    AuditEntityType,
    JobStatus,
    MessageSource,
    RecommendationAction,
    SenderType,
    Visibility,
    settings,
)
from feedback_triage.core import LLMUnavailableException, ResourceNotFoundException, utcnow
from feedback_triage.infrastructure.llm import ILLMClient
from feedback_triage.pipeline.application.services import (
    IUnitOfWork,
    ThreadStateExtractor,
    WorkItemGenerator,
)
from feedback_triage.pipeline.domain import (
    ConversationMessage,
    GatekeeperContext,
    GatekeeperResult,
    ThreadState,
    WorkItemDraft,
    run_gatekeeper,
)
from feedback_triage.shared.infrastructure.logging import (
    bind_correlation_id,
    get_logger,
    log_latency,
)

logger = get_logger(__name__)

CLAIM_LOST = "claim lost"


class ClaimLostError(Exception):
    """The job's lease expired and the job was claimed again."""


@dataclass
class PipelineOutcome:
    """What happened to a job, for logs and tests."""
    job_id: int
    job_public_id: str
    status: Optional[str]
    gatekeeper_action: Optional[str] = None
    work_item_public_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def claim_lost(self) -> bool:
        return self.error == CLAIM_LOST


@dataclass
class _ThreadSnapshot:
    thread_id: int
    status: str
    state: ThreadState
    messages: list


class PipelineOrchestrator:
    """
    Drives a claimed job through the three stages.

    Failure handling:
    - LLM unavailable: job released for retry, thread untouched
    - LLM output invalid after retries: job failed, raw output audited
    - thread missing: job failed, no retry
    - claim lost to another worker: nothing written
    - anything else: logged, audited, job failed
    """

    def __init__(
        self,
        uow_factory: Callable[[], IUnitOfWork],
        llm_client: ILLMClient,
        clock: Callable[[], datetime] = utcnow,
        ai_sender_name: Optional[str] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        self._uow_factory = uow_factory
        self._extractor = ThreadStateExtractor(llm_client)
        self._generator = WorkItemGenerator(llm_client)
        self._clock = clock
        self._ai_sender_name = ai_sender_name or settings.ai_sender_name
        self._heartbeat_interval = heartbeat_interval or settings.pipeline_heartbeat_interval_seconds

    async def process(self, job: Any) -> PipelineOutcome:
        """
        Process one job claimed by this worker.

        Pipeline errors end up on the job row; only a database outage while
        recording the failure propagates.
        """
        with bind_correlation_id(job.public_id):
            logger.info(
                "Pipeline job started",
                extra={"job_id": job.id, "thread_id": job.thread_id, "attempt": job.attempts}
            )
            keep_alive = asyncio.create_task(self._keep_alive(job))
            outcome: Optional[PipelineOutcome] = None
            try:
                await self._set_ai_processing(job.thread_id)
                outcome = await self._run(job)
            except ClaimLostError:
                outcome = self._claim_lost(job)
            except ResourceNotFoundException as e:
                outcome = await self._fail(job, e.message, "pipeline_failed")
            except Exception as e:
                logger.exception(
                    "Pipeline job crashed",
                    extra={"job_id": job.id, "thread_id": job.thread_id}
                )
                outcome = await self._fail(
                    job,
                    f"Pipeline error: {e}",
                    "pipeline_failed",
                    {"errorType": type(e).__name__},
                )
            finally:
                await self._stop_keep_alive(keep_alive)
                if outcome is None or not outcome.claim_lost:
                    await self._clear_ai_processing(job.thread_id)

            logger.info(
                "Pipeline job finished",
                extra={
                    "job_id": job.id,
                    "status": outcome.status,
                    "gatekeeper_action": outcome.gatekeeper_action,
                    "work_item_public_id": outcome.work_item_public_id,
                }
            )
            return outcome

    # ========== Stages ==========

    async def _run(self, job: Any) -> PipelineOutcome:
        snapshot = await self._load_thread(job.thread_id)

        # Stage A
        try:
            with log_latency(logger, "stage_a_thread_state", job_id=job.id):
                extracted = await self._extractor.extract(snapshot.state, snapshot.messages)
        except LLMUnavailableException as e:
            return await self._release(job, e.message, "threadstate_update_failed")
        if not extracted.ok:
            return await self._fail(
                job,
                f"Thread state extraction failed: {extracted.error}",
                "threadstate_update_failed",
                {"error": extracted.error, "rawContent": extracted.raw_content},
            )
        state: ThreadState = extracted.data
        await self._heartbeat(job)

        # Stage B
        context = GatekeeperContext.for_thread_status(snapshot.status)
        decision = run_gatekeeper(state, context)
        logger.info(
            "Gatekeeper decision",
            extra={
                "job_id": job.id,
                "gatekeeper_action": decision.gatekeeper_action,
                "should_create_work_item": decision.should_create_work_item,
                "is_follow_up": context.is_follow_up,
                "reason": decision.reason,
            }
        )

        # Stage C
        draft: Optional[WorkItemDraft] = None
        if decision.should_create_work_item:
            try:
                with log_latency(logger, "stage_c_work_item", job_id=job.id):
                    generated = await self._generator.generate(state, decision.work_item_type)
            except LLMUnavailableException as e:
                return await self._release(job, e.message, "workitem_generation_failed")
            if not generated.ok:
                # The extracted state is dropped too; the thread stays as it was
                return await self._fail(
                    job,
                    f"Work item generation failed: {generated.error}",
                    "workitem_generation_failed",
                    {"error": generated.error, "rawContent": generated.raw_content},
                )
            draft = generated.data
            await self._heartbeat(job)

        return await self._persist(job, snapshot, state, decision, draft)

    async def _load_thread(self, thread_id: int) -> _ThreadSnapshot:
        async with self._uow_factory() as uow:
            thread = await uow.threads.get_by_id(thread_id)
            if thread is None:
                raise ResourceNotFoundException("Thread", str(thread_id))
            messages = await uow.messages.list_for_thread(thread_id)
            return _ThreadSnapshot(
                thread_id=thread.id,
                status=thread.status,
                state=ThreadState.from_stored(thread.thread_state),
                messages=[
                    ConversationMessage(
                        sender_type=m.sender_type,
                        raw_text=m.raw_text,
                        sender_name=m.sender_name,
                        created_at=m.created_at,
                    )
                    for m in messages
                ],
            )

    async def _persist(
        self,
        job: Any,
        snapshot: _ThreadSnapshot,
        state: ThreadState,
        decision: GatekeeperResult,
        draft: Optional[WorkItemDraft],
    ) -> PipelineOutcome:
        """Write every effect of the decision in one transaction."""
        now = self._clock()
        async with self._uow_factory() as uow:
            work_item = None
            if draft is not None:
                work_item = await uow.work_items.create_from_draft(
                    snapshot.thread_id, draft, decision.confidence, now=now
                )

            result_json = {
                "gatekeeperAction": decision.gatekeeper_action,
                "reason": decision.reason,
                "threadStatus": decision.thread_status,
                "aiResponseText": decision.ai_response_text,
                "workItemId": work_item.id if work_item else None,
                "workItemPublicId": work_item.public_id if work_item else None,
            }
            if decision.awaits_user:
                status = JobStatus.WAITING_FOR_INPUT
                marked = await uow.jobs.mark_waiting_for_input(
                    job.id, decision.gatekeeper_action, result_json, now=now, attempt=job.attempts
                )
            else:
                status = JobStatus.COMPLETED
                marked = await uow.jobs.mark_completed(
                    job.id, decision.gatekeeper_action, result_json, now=now, attempt=job.attempts
                )
            if not marked:
                # Leaving without commit discards the work item and messages
                return self._claim_lost(job, decision.gatekeeper_action)

            job_metadata = {"pipelineJobId": job.id, "pipelineJobPublicId": job.public_id}

            if decision.gatekeeper_action == RecommendationAction.ASK_QUESTIONS and decision.ai_response_text:
                message = await uow.messages.create(
                    snapshot.thread_id,
                    sender_type=SenderType.INTERNAL,
                    sender_name=self._ai_sender_name,
                    raw_text=decision.ai_response_text,
                    visibility=Visibility.PUBLIC,
                    source=MessageSource.API,
                    metadata={"type": "ai_questions", **job_metadata},
                    now=now,
                )
                await uow.audit_logs.record(
                    AuditEntityType.MESSAGE,
                    message.id,
                    "ai_asked_questions",
                    {"threadId": snapshot.thread_id, **job_metadata},
                )

            if work_item is not None:
                await uow.messages.create(
                    snapshot.thread_id,
                    sender_type=SenderType.INTERNAL,
                    sender_name=self._ai_sender_name,
                    raw_text=f"{work_item.type} work item created: {work_item.title} ({work_item.public_id})",
                    visibility=Visibility.INTERNAL,
                    source=MessageSource.API,
                    metadata={
                        "type": "system_workitem_created",
                        "workItemId": work_item.id,
                        "workItemPublicId": work_item.public_id,
                        **job_metadata,
                    },
                    now=now,
                )
                await uow.audit_logs.record(
                    AuditEntityType.WORK_ITEM,
                    work_item.id,
                    "created",
                    {
                        "threadId": snapshot.thread_id,
                        "type": work_item.type,
                        "confidenceScore": work_item.confidence_score,
                        **job_metadata,
                    },
                )
                if decision.ai_response_text:
                    await uow.messages.create(
                        snapshot.thread_id,
                        sender_type=SenderType.INTERNAL,
                        sender_name=self._ai_sender_name,
                        raw_text=decision.ai_response_text,
                        visibility=Visibility.PUBLIC,
                        source=MessageSource.API,
                        metadata={"type": "ai_note", **job_metadata},
                        now=now,
                    )

            await uow.threads.save_analysis(
                snapshot.thread_id, state.to_dict(), decision.thread_status, now=now
            )
            await uow.audit_logs.record(
                AuditEntityType.THREAD,
                snapshot.thread_id,
                "threadstate_updated",
                {
                    "previousStatus": snapshot.status,
                    "newStatus": decision.thread_status,
                    "recommendation": state.recommendation.to_dict(),
                    **job_metadata,
                },
            )
            await uow.audit_logs.record(
                AuditEntityType.PIPELINE_JOB,
                job.id,
                "pipeline_completed",
                {"status": status, "gatekeeperAction": decision.gatekeeper_action, "reason": decision.reason},
            )
            await uow.commit()

        return PipelineOutcome(
            job_id=job.id,
            job_public_id=job.public_id,
            status=status,
            gatekeeper_action=decision.gatekeeper_action,
            work_item_public_id=work_item.public_id if work_item else None,
        )

    # ========== Failure paths ==========

    def _claim_lost(self, job: Any, gatekeeper_action: Optional[str] = None) -> PipelineOutcome:
        logger.warning(
            "Job no longer claimed, discarding results",
            extra={"job_id": job.id, "attempt": job.attempts}
        )
        return PipelineOutcome(
            job_id=job.id,
            job_public_id=job.public_id,
            status=None,
            gatekeeper_action=gatekeeper_action,
            error=CLAIM_LOST,
        )

    async def _release(self, job: Any, error: str, audit_action: str) -> PipelineOutcome:
        """Give the job back after the LLM was unreachable."""
        async with self._uow_factory() as uow:
            status = await uow.jobs.release_for_retry(job.id, error, now=self._clock(), attempt=job.attempts)
            if status is None:
                return self._claim_lost(job)
            await uow.audit_logs.record(
                AuditEntityType.THREAD,
                job.thread_id,
                audit_action,
                {"error": error, "retryable": True, "jobStatus": status, "pipelineJobId": job.id},
            )
            await uow.commit()

        logger.warning(
            "LLM unavailable, job released",
            extra={"job_id": job.id, "status": status, "error": error}
        )
        return PipelineOutcome(job_id=job.id, job_public_id=job.public_id, status=status, error=error)

    async def _fail(
        self,
        job: Any,
        error: str,
        audit_action: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> PipelineOutcome:
        async with self._uow_factory() as uow:
            marked = await uow.jobs.mark_failed(job.id, error, now=self._clock(), attempt=job.attempts)
            if not marked:
                return self._claim_lost(job)
            await uow.audit_logs.record(
                AuditEntityType.THREAD,
                job.thread_id,
                audit_action,
                {"error": error, "pipelineJobId": job.id, **(details or {})},
            )
            await uow.commit()

        logger.error("Pipeline job failed", extra={"job_id": job.id, "error": error})
        return PipelineOutcome(
            job_id=job.id,
            job_public_id=job.public_id,
            status=JobStatus.FAILED,
            error=error,
        )

    # ========== Liveness ==========

    async def _renew_lease(self, job: Any) -> bool:
        async with self._uow_factory() as uow:
            renewed = await uow.jobs.heartbeat(job.id, now=self._clock(), attempt=job.attempts)
            await uow.commit()
        return renewed

    async def _heartbeat(self, job: Any) -> None:
        """Renew the lease between stages; stop early if the claim is gone."""
        if not await self._renew_lease(job):
            raise ClaimLostError(job.public_id)

    async def _keep_alive(self, job: Any) -> None:
        """Renew the lease every heartbeat interval, LLM calls included."""
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                renewed = await self._renew_lease(job)
            except Exception:
                logger.exception("Lease renewal failed", extra={"job_id": job.id})
                continue
            if not renewed:
                logger.warning("Lease lost, renewals stopped", extra={"job_id": job.id})
                return

    @staticmethod
    async def _stop_keep_alive(task: "asyncio.Task[None]") -> None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _set_ai_processing(self, thread_id: int) -> None:
        async with self._uow_factory() as uow:
            await uow.threads.set_ai_processing(thread_id, now=self._clock())
            await uow.commit()

    async def _clear_ai_processing(self, thread_id: int) -> None:
        try:
            async with self._uow_factory() as uow:
                await uow.threads.clear_ai_processing([thread_id])
                await uow.commit()
        except Exception:
            # The lease sweep clears it later
            logger.exception("Failed to clear ai_processing_since", extra={"thread_id": thread_id})
