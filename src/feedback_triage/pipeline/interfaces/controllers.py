"""
Pipeline Controllers (API Routes)
=================================

FastAPI routes for enqueueing and inspecting pipeline jobs, plus the
circuit breaker admin endpoint.

Every route here requires the X-API-Secret header.
"""

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from feedback_triage.config import settings
from feedback_triage.infrastructure.database import get_session
from feedback_triage.pipeline.application import (
    CircuitBreakerResponse,
    EnqueueJobRequest,
    EnqueueJobResponse,
    JobResponse,
    JobStatsResponse,
    PipelineJobService,
    StatusStats,
    ThreadJobsResponse,
)
from feedback_triage.pipeline.infrastructure import (
    SQLAlchemyPipelineJobRepository,
    SQLAlchemyThreadRepository,
)
from feedback_triage.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Dependencies ==========

async def require_api_secret(
    x_api_secret: Optional[str] = Header(None, alias="X-API-Secret"),
) -> None:
    """
    Check the shared secret in constant time.

    401 when the header is missing, 403 when it is wrong, 503 when the
    service has no secret configured.
    """
    expected = settings.api_secret
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="API secret not configured"
        )
    if not x_api_secret:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-API-Secret header"
        )
    if not hmac.compare_digest(x_api_secret.encode(), expected.encode()):
        logger.warning("Rejected request with invalid API secret")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API secret"
        )


def get_job_service(db: AsyncSession = Depends(get_session)) -> PipelineJobService:
    return PipelineJobService(
        SQLAlchemyPipelineJobRepository(db),
        SQLAlchemyThreadRepository(db),
    )


pipeline_router = APIRouter(
    prefix="/pipeline",
    tags=["Pipeline"],
    dependencies=[Depends(require_api_secret)],
)
admin_router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(require_api_secret)],
)


# ========== Route Handlers ==========

@pipeline_router.post(
    "/jobs",
    response_model=EnqueueJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Enqueue a thread for analysis",
    description="""
    Create a pending pipeline job for a thread. Older pending jobs of the same
    thread are canceled, so a burst of messages collapses into one analysis.

    **Example Request**:
    ```json
    {"threadId": 42, "triggerMessageId": 1337}
    ```
    """,
    responses={404: {"description": "Thread not found"}},
)
async def enqueue_job(
    payload: EnqueueJobRequest,
    service: PipelineJobService = Depends(get_job_service),
):
    result = await service.enqueue(payload.thread_id, payload.trigger_message_id)
    return EnqueueJobResponse(
        job=JobResponse.model_validate(result.job),
        superseded_jobs=result.superseded_jobs,
    )


# Declared before /jobs/{public_id} so "stats" is not taken for an id
@pipeline_router.get(
    "/jobs/stats",
    response_model=JobStatsResponse,
    summary="Job counts by status",
)
async def job_stats(service: PipelineJobService = Depends(get_job_service)):
    stats = await service.stats()
    return JobStatsResponse(
        statuses={name: StatusStats(**values) for name, values in stats.items()},
        total=sum(values["count"] for values in stats.values()),
    )


@pipeline_router.get(
    "/jobs/{public_id}",
    response_model=JobResponse,
    summary="Get a pipeline job",
    responses={404: {"description": "Job not found"}},
)
async def get_job(public_id: str, service: PipelineJobService = Depends(get_job_service)):
    job = await service.get_job(public_id)
    return JobResponse.model_validate(job)


@pipeline_router.get(
    "/threads/{thread_id}/jobs",
    response_model=ThreadJobsResponse,
    summary="Recent jobs of a thread",
)
async def list_thread_jobs(
    thread_id: int,
    limit: int = Query(20, ge=1, le=100),
    service: PipelineJobService = Depends(get_job_service),
):
    jobs = await service.list_thread_jobs(thread_id, limit=limit)
    return ThreadJobsResponse(
        thread_id=thread_id,
        jobs=[JobResponse.model_validate(job) for job in jobs],
    )


@admin_router.post(
    "/reset-circuit-breaker",
    response_model=CircuitBreakerResponse,
    summary="Close the LLM circuit breaker",
)
async def reset_circuit_breaker(request: Request):
    breaker = getattr(request.app.state, "circuit_breaker", None)
    if breaker is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Circuit breaker not initialized"
        )

    previous_state = breaker.state
    breaker.reset()
    snapshot = breaker.snapshot()

    logger.info("Circuit breaker reset via admin endpoint", extra={"previous_state": previous_state})
    return CircuitBreakerResponse(
        state=snapshot.state,
        consecutive_failures=snapshot.consecutive_failures,
        failure_threshold=snapshot.failure_threshold,
        recovery_timeout_seconds=snapshot.recovery_timeout,
        seconds_until_probe=snapshot.seconds_until_probe,
        previous_state=previous_state,
    )
