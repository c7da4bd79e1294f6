"""
Pipeline Application DTOs
=========================

Pydantic models for the pipeline API. Field names are camelCase on the
wire and snake_case in Python.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ========== Request DTOs ==========

class EnqueueJobRequest(_CamelModel):
    """Request to analyze a thread."""
    thread_id: int = Field(..., ge=1, description="Thread to analyze")
    trigger_message_id: Optional[int] = Field(None, ge=1, description="Message that triggered the run")


# ========== Response DTOs ==========

class JobResponse(_CamelModel):
    """A pipeline job as exposed over the API."""
    public_id: str
    thread_id: int
    status: str
    gatekeeper_action: Optional[str] = None
    result_json: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    attempts: int
    max_attempts: int
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime


class EnqueueJobResponse(_CamelModel):
    job: JobResponse
    superseded_jobs: int = Field(0, description="Older pending jobs canceled by this one")


class StatusStats(_CamelModel):
    count: int = 0
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None


class JobStatsResponse(_CamelModel):
    """Job counts grouped by status."""
    statuses: Dict[str, StatusStats]
    total: int


class ThreadJobsResponse(_CamelModel):
    thread_id: int
    jobs: List[JobResponse]


class CircuitBreakerResponse(_CamelModel):
    state: str
    consecutive_failures: int
    failure_threshold: int
    recovery_timeout_seconds: float
    seconds_until_probe: Optional[float] = None
    previous_state: Optional[str] = None
