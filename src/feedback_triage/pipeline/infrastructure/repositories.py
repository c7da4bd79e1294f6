"""
Pipeline Infrastructure Repositories
=====================================

SQLAlchemy implementations of the pipeline repositories and the unit of
work that groups them into one short transaction.

The job repository is the durable queue. claim_next is the only
cross-process coordination point: one UPDATE over a
SELECT ... FOR UPDATE SKIP LOCKED subquery, so concurrent workers never
receive the same row and never wait on each other's locks.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import case, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from feedback_triage.config import (
    JobStatus,
    MessageSource,
    ThreadStatus,
    Visibility,
    VALID_JOB_STATUSES,
    settings,
)
from feedback_triage.core import utcnow
from feedback_triage.pipeline.application.services import (
    IPipelineJobRepository,
    IUnitOfWork,
    ReclaimedJob,
)
from feedback_triage.pipeline.domain import WorkItemDraft
from feedback_triage.pipeline.infrastructure.models import (
    AuditLogModel,
    MessageModel,
    PipelineJobModel,
    ThreadModel,
    WorkItemModel,
    generate_public_id,
)


def _retry_status():
    """
    Status for a processing job that has to give up its claim.

    Superseded by a newer job of the same thread: canceled.
    Attempts left: pending again. Otherwise: failed.
    """
    newer = aliased(PipelineJobModel)
    newer_job_exists = (
        exists()
        .where(
            newer.thread_id == PipelineJobModel.thread_id,
            newer.id > PipelineJobModel.id,
            newer.status != JobStatus.CANCELED,
        )
        .correlate(PipelineJobModel)
    )
    return case(
        (newer_job_exists, JobStatus.CANCELED),
        (PipelineJobModel.attempts < PipelineJobModel.max_attempts, JobStatus.PENDING),
        else_=JobStatus.FAILED,
    )


def _claim_guard(from_statuses: Sequence[str], attempt: Optional[int]) -> list:
    """
    WHERE clauses for an update made by the holder of a claim.

    claim_next bumps attempts on every claim, so the attempt number a worker
    was handed identifies its claim. After a lease reclaim and a fresh claim
    by another worker the row is processing again, but with a higher
    attempt, and the stale holder's update matches nothing.
    """
    clauses = [PipelineJobModel.status.in_(from_statuses)]
    if attempt is not None:
        clauses.append(PipelineJobModel.attempts == attempt)
    return clauses


class SQLAlchemyPipelineJobRepository(IPipelineJobRepository):
    """SQLAlchemy implementation of the job ledger."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(
        self,
        thread_id: int,
        trigger_message_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> PipelineJobModel:
        """Insert a pending job."""
        now = now or utcnow()
        job = PipelineJobModel(
            public_id=generate_public_id(),
            thread_id=thread_id,
            trigger_message_id=trigger_message_id,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=settings.pipeline_max_attempts,
            created_at=now,
            updated_at=now,
        )
        self._session.add(job)
        await self._session.flush()
        return job

    async def claim_next(self, limit: int = 1, now: Optional[datetime] = None) -> List[PipelineJobModel]:
        """
        Atomically move up to `limit` pending jobs to processing.

        Oldest first. Rows locked by another claimer are skipped, not
        waited on. Each claimed row has attempts incremented exactly once.
        """
        now = now or utcnow()
        eligible = (
            select(PipelineJobModel.id)
            .where(
                PipelineJobModel.status == JobStatus.PENDING,
                PipelineJobModel.attempts < PipelineJobModel.max_attempts,
            )
            .order_by(PipelineJobModel.created_at, PipelineJobModel.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(PipelineJobModel)
            .where(PipelineJobModel.id.in_(eligible))
            .values(
                status=JobStatus.PROCESSING,
                attempts=PipelineJobModel.attempts + 1,
                claimed_at=now,
                heartbeat_at=now,
                updated_at=now,
            )
            .returning(PipelineJobModel)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result = await self._session.execute(stmt)
        jobs = list(result.scalars().all())
        jobs.sort(key=lambda job: job.id)
        return jobs

    async def _transition(
        self,
        job_id: int,
        from_statuses: Sequence[str],
        attempt: Optional[int] = None,
        **values: Any,
    ) -> bool:
        stmt = (
            update(PipelineJobModel)
            .where(PipelineJobModel.id == job_id, *_claim_guard(from_statuses, attempt))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def mark_completed(
        self,
        job_id: int,
        gatekeeper_action: str,
        result_json: Dict[str, Any],
        now: Optional[datetime] = None,
        attempt: Optional[int] = None,
    ) -> bool:
        now = now or utcnow()
        return await self._transition(
            job_id,
            [JobStatus.PROCESSING],
            attempt,
            status=JobStatus.COMPLETED,
            gatekeeper_action=gatekeeper_action,
            result_json=result_json,
            error_message=None,
            completed_at=now,
            updated_at=now,
        )

    async def mark_waiting_for_input(
        self,
        job_id: int,
        gatekeeper_action: str,
        result_json: Dict[str, Any],
        now: Optional[datetime] = None,
        attempt: Optional[int] = None,
    ) -> bool:
        now = now or utcnow()
        return await self._transition(
            job_id,
            [JobStatus.PROCESSING],
            attempt,
            status=JobStatus.WAITING_FOR_INPUT,
            gatekeeper_action=gatekeeper_action,
            result_json=result_json,
            error_message=None,
            updated_at=now,
        )

    async def mark_failed(
        self,
        job_id: int,
        error_message: str,
        now: Optional[datetime] = None,
        attempt: Optional[int] = None,
    ) -> bool:
        return await self._transition(
            job_id,
            [JobStatus.PROCESSING],
            attempt,
            status=JobStatus.FAILED,
            error_message=error_message,
            updated_at=now or utcnow(),
        )

    async def mark_canceled(self, job_id: int, now: Optional[datetime] = None) -> bool:
        return await self._transition(
            job_id,
            [JobStatus.PENDING, JobStatus.PROCESSING],
            status=JobStatus.CANCELED,
            updated_at=now or utcnow(),
        )

    async def release_for_retry(
        self,
        job_id: int,
        error_message: str,
        now: Optional[datetime] = None,
        attempt: Optional[int] = None,
    ) -> Optional[str]:
        """Give up the claim after a retryable failure. Returns the new status."""
        stmt = (
            update(PipelineJobModel)
            .where(PipelineJobModel.id == job_id, *_claim_guard([JobStatus.PROCESSING], attempt))
            .values(
                status=_retry_status(),
                error_message=error_message,
                heartbeat_at=None,
                updated_at=now or utcnow(),
            )
            .returning(PipelineJobModel.status)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def cancel_stale_for_thread(
        self,
        thread_id: int,
        newer_than_job_id: int,
        now: Optional[datetime] = None,
    ) -> int:
        """Cancel pending jobs of the thread older than the given job. Returns the count."""
        stmt = (
            update(PipelineJobModel)
            .where(
                PipelineJobModel.thread_id == thread_id,
                PipelineJobModel.id < newer_than_job_id,
                PipelineJobModel.status == JobStatus.PENDING,
            )
            .values(
                status=JobStatus.CANCELED,
                error_message=f"Superseded by newer job {newer_than_job_id}",
                updated_at=now or utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def heartbeat(
        self,
        job_id: int,
        now: Optional[datetime] = None,
        attempt: Optional[int] = None,
    ) -> bool:
        now = now or utcnow()
        return await self._transition(job_id, [JobStatus.PROCESSING], attempt, heartbeat_at=now)

    async def reclaim_expired(self, lease_seconds: int, now: Optional[datetime] = None) -> List[ReclaimedJob]:
        """Take back processing jobs whose worker stopped sending heartbeats."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=lease_seconds)
        stmt = (
            update(PipelineJobModel)
            .where(
                PipelineJobModel.status == JobStatus.PROCESSING,
                PipelineJobModel.heartbeat_at < cutoff,
            )
            .values(
                status=_retry_status(),
                error_message=f"Lease expired: no heartbeat for {lease_seconds}s",
                heartbeat_at=None,
                updated_at=now,
            )
            .returning(
                PipelineJobModel.id,
                PipelineJobModel.public_id,
                PipelineJobModel.thread_id,
                PipelineJobModel.status,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return [
            ReclaimedJob(id=row.id, public_id=row.public_id, thread_id=row.thread_id, status=row.status)
            for row in result.all()
        ]

    async def get_by_id(self, job_id: int) -> Optional[PipelineJobModel]:
        return await self._session.get(PipelineJobModel, job_id, populate_existing=True)

    async def get_by_public_id(self, public_id: str) -> Optional[PipelineJobModel]:
        stmt = (
            select(PipelineJobModel)
            .where(PipelineJobModel.public_id == public_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_thread_id(self, thread_id: int, limit: int = 20) -> List[PipelineJobModel]:
        stmt = (
            select(PipelineJobModel)
            .where(PipelineJobModel.thread_id == thread_id)
            .order_by(PipelineJobModel.id.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def stats(self) -> Dict[str, Dict[str, Any]]:
        """Job counts per status with the oldest/newest creation time."""
        stmt = (
            select(
                PipelineJobModel.status,
                func.count(PipelineJobModel.id),
                func.min(PipelineJobModel.created_at),
                func.max(PipelineJobModel.created_at),
            )
            .group_by(PipelineJobModel.status)
        )
        result = await self._session.execute(stmt)

        stats: Dict[str, Dict[str, Any]] = {
            status: {"count": 0, "oldest": None, "newest": None} for status in VALID_JOB_STATUSES
        }
        for status, count, oldest, newest in result.all():
            stats[status] = {"count": count, "oldest": oldest, "newest": newest}
        return stats


class SQLAlchemyThreadRepository:
    """SQLAlchemy implementation for feedback threads."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, thread_id: int) -> Optional[ThreadModel]:
        return await self._session.get(ThreadModel, thread_id, populate_existing=True)

    async def create(
        self,
        title: Optional[str] = None,
        customer_id: Optional[str] = None,
        status: str = ThreadStatus.OPEN,
        thread_state: Optional[dict] = None,
    ) -> ThreadModel:
        now = utcnow()
        thread = ThreadModel(
            public_id=generate_public_id(),
            title=title,
            customer_id=customer_id,
            status=status,
            thread_state=thread_state,
            last_activity_at=now,
            created_at=now,
            updated_at=now,
        )
        self._session.add(thread)
        await self._session.flush()
        return thread

    async def set_ai_processing(self, thread_id: int, now: Optional[datetime] = None) -> None:
        stmt = (
            update(ThreadModel)
            .where(ThreadModel.id == thread_id)
            .values(ai_processing_since=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def clear_ai_processing(self, thread_ids: Sequence[int]) -> None:
        if not thread_ids:
            return
        stmt = (
            update(ThreadModel)
            .where(ThreadModel.id.in_(list(thread_ids)))
            .values(ai_processing_since=None)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def save_analysis(
        self,
        thread_id: int,
        thread_state: Dict[str, Any],
        status: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Persist a new ThreadState and status in one statement."""
        now = now or utcnow()
        stmt = (
            update(ThreadModel)
            .where(ThreadModel.id == thread_id)
            .values(thread_state=thread_state, status=status, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)


class SQLAlchemyMessageRepository:
    """SQLAlchemy implementation for thread messages."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def list_for_thread(self, thread_id: int) -> List[MessageModel]:
        stmt = (
            select(MessageModel)
            .where(MessageModel.thread_id == thread_id)
            .order_by(MessageModel.created_at, MessageModel.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def create(
        self,
        thread_id: int,
        sender_type: str,
        raw_text: str,
        sender_name: Optional[str] = None,
        visibility: str = Visibility.PUBLIC,
        source: str = MessageSource.API,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> MessageModel:
        message = MessageModel(
            public_id=generate_public_id(),
            thread_id=thread_id,
            source=source,
            sender_type=sender_type,
            sender_name=sender_name,
            visibility=visibility,
            raw_text=raw_text,
            metadata_json=metadata,
            created_at=now or utcnow(),
        )
        self._session.add(message)
        await self._session.flush()
        return message


class SQLAlchemyWorkItemRepository:
    """SQLAlchemy implementation for generated work items."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create_from_draft(
        self,
        thread_id: int,
        draft: WorkItemDraft,
        confidence_score: float,
        now: Optional[datetime] = None,
    ) -> WorkItemModel:
        now = now or utcnow()
        item = WorkItemModel(
            public_id=generate_public_id(),
            thread_id=thread_id,
            type=draft.type,
            title=draft.title,
            structured_description=draft.structured_description,
            acceptance_criteria=list(draft.acceptance_criteria),
            priority=draft.priority,
            severity=draft.severity,
            confidence_score=confidence_score,
            risk_level=draft.risk_level,
            labels=list(draft.labels),
            estimated_effort=draft.estimated_effort.to_dict(),
            prompt_bundle=draft.prompt_bundle.to_dict(),
            created_at=now,
            updated_at=now,
        )
        self._session.add(item)
        await self._session.flush()
        return item

    async def list_for_thread(self, thread_id: int) -> List[WorkItemModel]:
        stmt = select(WorkItemModel).where(WorkItemModel.thread_id == thread_id).order_by(WorkItemModel.id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class SQLAlchemyAuditLogRepository:
    """Append-only audit log."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def record(
        self,
        entity_type: str,
        entity_id: int,
        action: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLogModel:
        entry = AuditLogModel(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            details=details,
            created_at=utcnow(),
        )
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def list_for_entity(self, entity_type: str, entity_id: int) -> List[AuditLogModel]:
        stmt = (
            select(AuditLogModel)
            .where(AuditLogModel.entity_type == entity_type, AuditLogModel.entity_id == entity_id)
            .order_by(AuditLogModel.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class SQLAlchemyUnitOfWork(IUnitOfWork):
    """
    One session, one short transaction.

    Usage:
        async with SQLAlchemyUnitOfWork(session_maker) as uow:
            await uow.jobs.heartbeat(job_id)
            await uow.commit()

    Leaving the block without commit() rolls back.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        self._session = self._session_factory()
        self.jobs = SQLAlchemyPipelineJobRepository(self._session)
        self.threads = SQLAlchemyThreadRepository(self._session)
        self.messages = SQLAlchemyMessageRepository(self._session)
        self.work_items = SQLAlchemyWorkItemRepository(self._session)
        self.audit_logs = SQLAlchemyAuditLogRepository(self._session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await self._session.rollback()
        finally:
            await self._session.close()
            self._session = None

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()
