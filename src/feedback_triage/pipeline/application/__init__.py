"""
Pipeline Application Layer
==========================

Application layer for the triage pipeline.

Contains:
- Services: LLM stages, job enqueueing, repository interfaces
- Orchestrator: runs one claimed job through all stages
- Worker: poll cycle (reclaim, claim, process)
- DTOs: Data transfer objects for API serialization
"""

from feedback_triage.pipeline.application.dto import (
    CircuitBreakerResponse,
    EnqueueJobRequest,
    EnqueueJobResponse,
    JobResponse,
    JobStatsResponse,
    StatusStats,
    ThreadJobsResponse,
)
from feedback_triage.pipeline.application.services import (
    EnqueueResult,
    IPipelineJobRepository,
    IUnitOfWork,
    PipelineJobService,
    ReclaimedJob,
    ThreadStateExtractor,
    WorkItemGenerator,
)
from feedback_triage.pipeline.application.orchestrator import PipelineOrchestrator, PipelineOutcome
from feedback_triage.pipeline.application.worker import PipelineWorker

__all__ = [
    # DTOs
    "CircuitBreakerResponse",
    "EnqueueJobRequest",
    "EnqueueJobResponse",
    "JobResponse",
    "JobStatsResponse",
    "StatusStats",
    "ThreadJobsResponse",
    # Services
    "EnqueueResult",
    "PipelineJobService",
    "ThreadStateExtractor",
    "WorkItemGenerator",
    "PipelineOrchestrator",
    "PipelineOutcome",
    "PipelineWorker",
    # Repository Interfaces
    "IPipelineJobRepository",
    "IUnitOfWork",
    "ReclaimedJob",
]
