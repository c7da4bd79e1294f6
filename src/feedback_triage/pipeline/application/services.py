"""
Pipeline Application Services
=============================

Application services for the triage pipeline.

- ThreadStateExtractor (Stage A): conversation -> ThreadState, via the LLM
- WorkItemGenerator (Stage C): ThreadState -> WorkItemDraft, via the LLM
- PipelineJobService: enqueue and inspect pipeline jobs

Stage B, the gatekeeper, is pure domain logic and lives in
feedback_triage.pipeline.domain.gatekeeper.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from feedback_triage.core import ResourceNotFoundException
from feedback_triage.infrastructure.llm import ILLMClient
from feedback_triage.infrastructure.llm.structured import LLMJsonResult, llm_json_completion
from feedback_triage.pipeline.domain import (
    ConversationMessage,
    ThreadState,
    ThreadStatePromptBuilder,
    WorkItemDraft,
    WorkItemPromptBuilder,
)
from feedback_triage.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Repository Interfaces ==========

@dataclass
class ReclaimedJob:
    """A job taken back from a worker whose lease expired."""
    id: int
    public_id: str
    thread_id: int
    status: str


class IPipelineJobRepository(ABC):
    """
    Interface for the durable job ledger.

    Updates made by a claim holder take the attempt number claim_next
    handed out; they match no row once that claim has been superseded.
    """

    @abstractmethod
    async def create(self, thread_id: int, trigger_message_id: Optional[int] = None,
                     now: Optional[datetime] = None) -> Any:
        """Insert a pending job."""

    @abstractmethod
    async def claim_next(self, limit: int = 1, now: Optional[datetime] = None) -> List[Any]:
        """Atomically claim up to `limit` pending jobs."""

    @abstractmethod
    async def mark_completed(self, job_id: int, gatekeeper_action: str,
                             result_json: Dict[str, Any], now: Optional[datetime] = None,
                             attempt: Optional[int] = None) -> bool:
        """processing -> completed."""

    @abstractmethod
    async def mark_waiting_for_input(self, job_id: int, gatekeeper_action: str,
                                     result_json: Dict[str, Any], now: Optional[datetime] = None,
                                     attempt: Optional[int] = None) -> bool:
        """processing -> waiting_for_input."""

    @abstractmethod
    async def mark_failed(self, job_id: int, error_message: str, now: Optional[datetime] = None,
                          attempt: Optional[int] = None) -> bool:
        """processing -> failed."""

    @abstractmethod
    async def mark_canceled(self, job_id: int, now: Optional[datetime] = None) -> bool:
        """pending/processing -> canceled."""

    @abstractmethod
    async def release_for_retry(self, job_id: int, error_message: str,
                                now: Optional[datetime] = None,
                                attempt: Optional[int] = None) -> Optional[str]:
        """processing -> pending, canceled or failed."""

    @abstractmethod
    async def cancel_stale_for_thread(self, thread_id: int, newer_than_job_id: int,
                                      now: Optional[datetime] = None) -> int:
        """Supersede older pending jobs of a thread."""

    @abstractmethod
    async def heartbeat(self, job_id: int, now: Optional[datetime] = None,
                        attempt: Optional[int] = None) -> bool:
        """Renew the lease of a processing job."""

    @abstractmethod
    async def reclaim_expired(self, lease_seconds: int, now: Optional[datetime] = None) -> List[ReclaimedJob]:
        """Recover processing jobs whose lease expired."""

    @abstractmethod
    async def get_by_public_id(self, public_id: str) -> Optional[Any]:
        """Look a job up by its public id."""

    @abstractmethod
    async def list_by_thread_id(self, thread_id: int, limit: int = 20) -> List[Any]:
        """Most recent jobs of a thread."""

    @abstractmethod
    async def stats(self) -> Dict[str, Dict[str, Any]]:
        """Counts per status."""


class IUnitOfWork(ABC):
    """
    Repositories sharing one short transaction.

    Attributes available inside the `async with` block:
    jobs, threads, messages, work_items, audit_logs.
    """

    jobs: IPipelineJobRepository

    @abstractmethod
    async def __aenter__(self) -> "IUnitOfWork":
        """Open the session."""

    @abstractmethod
    async def __aexit__(self, exc_type, exc, tb) -> None:
        """Roll back anything not committed and close."""

    @abstractmethod
    async def commit(self) -> None:
        """Commit the transaction."""

    @abstractmethod
    async def rollback(self) -> None:
        """Discard pending changes."""


# ========== LLM Stages ==========

class ThreadStateExtractor:
    """
    Stage A: rebuild the ThreadState from the whole conversation.

    Returns LLMJsonSuccess[ThreadState] or LLMJsonFailure;
    raises LLMUnavailableException when the provider is unreachable.
    """

    TEMPERATURE = 0.1
    MAX_TOKENS = 4096
    MAX_RETRIES = 1

    def __init__(self, llm_client: ILLMClient):
        self._llm = llm_client

    async def extract(
        self,
        current_state: ThreadState,
        messages: List[ConversationMessage],
    ) -> LLMJsonResult:
        return await llm_json_completion(
            self._llm,
            system_prompt=ThreadStatePromptBuilder.get_system_prompt(),
            user_prompt=ThreadStatePromptBuilder.build_prompt(current_state, messages),
            validate=ThreadState.from_dict,
            temperature=self.TEMPERATURE,
            max_tokens=self.MAX_TOKENS,
            max_retries=self.MAX_RETRIES,
            operation="thread_state",
        )


class WorkItemGenerator:
    """Stage C: turn a ThreadState into a structured work item draft."""

    TEMPERATURE = 0.3
    MAX_TOKENS = 4096
    MAX_RETRIES = 2

    def __init__(self, llm_client: ILLMClient):
        self._llm = llm_client

    async def generate(self, state: ThreadState, work_item_type: str) -> LLMJsonResult:
        return await llm_json_completion(
            self._llm,
            system_prompt=WorkItemPromptBuilder.get_system_prompt(),
            user_prompt=WorkItemPromptBuilder.build_prompt(state, work_item_type),
            validate=WorkItemDraft.from_dict,
            temperature=self.TEMPERATURE,
            max_tokens=self.MAX_TOKENS,
            max_retries=self.MAX_RETRIES,
            operation="work_item",
        )


# ========== Job Service ==========

@dataclass
class EnqueueResult:
    job: Any
    superseded_jobs: int


class PipelineJobService:
    """
    Enqueue and inspect pipeline jobs.

    Callers own the transaction; with FastAPI that is get_session.
    """

    def __init__(self, job_repository: IPipelineJobRepository, thread_repository: Any):
        self._jobs = job_repository
        self._threads = thread_repository

    async def enqueue(self, thread_id: int, trigger_message_id: Optional[int] = None) -> EnqueueResult:
        """
        Create a pending job for the thread and supersede older pending ones.

        Raises:
            ResourceNotFoundException: thread does not exist
        """
        thread = await self._threads.get_by_id(thread_id)
        if thread is None:
            raise ResourceNotFoundException("Thread", str(thread_id))

        job = await self._jobs.create(thread_id, trigger_message_id)
        superseded = await self._jobs.cancel_stale_for_thread(thread_id, job.id)

        logger.info(
            "Pipeline job enqueued",
            extra={
                "job_public_id": job.public_id,
                "thread_id": thread_id,
                "trigger_message_id": trigger_message_id,
                "superseded_jobs": superseded,
            }
        )
        return EnqueueResult(job=job, superseded_jobs=superseded)

    async def get_job(self, public_id: str) -> Any:
        job = await self._jobs.get_by_public_id(public_id)
        if job is None:
            raise ResourceNotFoundException("PipelineJob", public_id)
        return job

    async def list_thread_jobs(self, thread_id: int, limit: int = 20) -> List[Any]:
        return await self._jobs.list_by_thread_id(thread_id, limit=limit)

    async def stats(self) -> Dict[str, Dict[str, Any]]:
        return await self._jobs.stats()
