"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="feedback-triage", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/feedback",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Security ==========
    api_secret: Optional[str] = Field(
        default=None,
        description="Shared secret expected in the X-API-Secret header for service calls"
    )

    # ========== LLM (OpenAI-compatible endpoint) ==========
    llm_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL of an OpenAI-compatible chat completions API"
    )
    llm_api_key: Optional[str] = Field(default=None, description="API key for the LLM endpoint")
    llm_model: str = Field(default="gpt-4o-mini", description="Model used for all pipeline stages")
    llm_request_timeout_seconds: float = Field(
        default=120.0,
        description="Timeout for a single LLM HTTP request",
        ge=1.0
    )
    llm_max_http_retries: int = Field(
        default=3,
        description="Attempts per LLM call on timeouts, connection errors and 429/502/503/504",
        ge=1,
        le=10
    )
    llm_initial_backoff_seconds: float = Field(
        default=1.0,
        description="First backoff delay between LLM HTTP retries (doubles each attempt)",
        ge=0.0
    )
    mock_llm: bool = Field(
        default=False,
        description="Use mock LLM responses for local development (no API calls)"
    )

    # ========== Circuit Breaker ==========
    circuit_breaker_failure_threshold: int = Field(
        default=5,
        description="Consecutive LLM failures before the circuit opens",
        ge=1
    )
    circuit_breaker_recovery_seconds: float = Field(
        default=30.0,
        description="Cool-down before a half-open probe is allowed",
        ge=0.0
    )

    # ========== Pipeline ==========
    pipeline_poll_interval_seconds: int = Field(
        default=5,
        description="Seconds between claim cycles",
        ge=1
    )
    pipeline_claim_batch_size: int = Field(
        default=5,
        description="Maximum jobs claimed per cycle",
        ge=1,
        le=100
    )
    pipeline_worker_concurrency: int = Field(
        default=2,
        description="Jobs processed in parallel within one worker process",
        ge=1,
        le=32
    )
    pipeline_max_attempts: int = Field(
        default=3,
        description="Claim attempts before a job is abandoned",
        ge=1
    )
    pipeline_job_lease_seconds: int = Field(
        default=600,
        description="A processing job without a heartbeat for this long is reclaimed",
        ge=30
    )
    pipeline_heartbeat_interval_seconds: float = Field(
        default=30.0,
        description="Lease renewal period while a job is being processed",
        gt=0.0
    )
    run_pipeline_worker: bool = Field(
        default=True,
        description="Run the poll loop inside the API process"
    )
    ai_sender_name: str = Field(default="AI", description="Sender name on AI-authored messages")

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("api_secret")
    @classmethod
    def validate_api_secret(cls, v: Optional[str]) -> Optional[str]:
        """Reject short shared secrets."""
        if v is not None and len(v) < 16:
            raise ValueError("api_secret must be at least 16 characters")
        return v

    @model_validator(mode="after")
    def validate_lease(self) -> "Settings":
        """Leave room for two missed heartbeats before a live job is reclaimed."""
        if self.pipeline_job_lease_seconds < 3 * self.pipeline_heartbeat_interval_seconds:
            raise ValueError(
                "pipeline_job_lease_seconds must be at least 3x pipeline_heartbeat_interval_seconds"
            )
        return self


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class ThreadStatus(str):
    """Feedback thread lifecycle statuses."""
    OPEN = "Open"
    WAITING_ON_USER = "WaitingOnUser"
    RESOLVED = "Resolved"
    CLOSED = "Closed"


class SenderType(str):
    """Who authored a message."""
    USER = "user"
    INTERNAL = "internal"


class Visibility(str):
    """Message visibility."""
    PUBLIC = "public"
    INTERNAL = "internal"


class MessageSource(str):
    """Channel a message arrived on."""
    WIDGET = "widget"
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    SLACK = "slack"
    API = "api"


class JobStatus(str):
    """Pipeline job statuses."""
    PENDING = "pending"
    PROCESSING = "processing"
    WAITING_FOR_INPUT = "waiting_for_input"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


class RecommendationAction(str):
    """Next step recommended by thread-state extraction."""
    NO_TICKET = "NoTicket"
    ASK_QUESTIONS = "AskQuestions"
    CREATE_BUG = "CreateBugWorkItem"
    CREATE_FEATURE = "CreateFeatureWorkItem"
    SPLIT_INTO_TWO = "SplitIntoTwo"


class Intent(str):
    """Classified intent of a conversation."""
    BUG = "Bug"
    FEATURE = "Feature"
    PERFORMANCE = "Performance"
    BILLING = "Billing"
    OTHER = "Other"


class WorkItemType(str):
    """Work item types."""
    BUG = "Bug"
    FEATURE = "Feature"
    CHORE = "Chore"
    DOCS = "Docs"


class WorkItemPriority(str):
    """Work item priorities, P0 most urgent."""
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"


class RiskLevel(str):
    """Risk of implementing a work item."""
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class WorkItemStatus(str):
    """Work item statuses owned by this service."""
    PENDING_APPROVAL = "PendingApproval"


class AuditEntityType(str):
    """Entity types recorded in the audit log."""
    THREAD = "Thread"
    MESSAGE = "Message"
    WORK_ITEM = "WorkItem"
    PIPELINE_JOB = "PipelineJob"


# ========== Lists for validation ==========

VALID_THREAD_STATUSES = [
    ThreadStatus.OPEN, ThreadStatus.WAITING_ON_USER,
    ThreadStatus.RESOLVED, ThreadStatus.CLOSED
]
VALID_JOB_STATUSES = [
    JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.WAITING_FOR_INPUT,
    JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED
]
TERMINAL_JOB_STATUSES = [
    JobStatus.WAITING_FOR_INPUT, JobStatus.COMPLETED,
    JobStatus.FAILED, JobStatus.CANCELED
]
VALID_RECOMMENDATION_ACTIONS = [
    RecommendationAction.NO_TICKET, RecommendationAction.ASK_QUESTIONS,
    RecommendationAction.CREATE_BUG, RecommendationAction.CREATE_FEATURE,
    RecommendationAction.SPLIT_INTO_TWO
]
VALID_INTENTS = [
    Intent.BUG, Intent.FEATURE, Intent.PERFORMANCE, Intent.BILLING, Intent.OTHER
]
VALID_WORK_ITEM_TYPES = [
    WorkItemType.BUG, WorkItemType.FEATURE, WorkItemType.CHORE, WorkItemType.DOCS
]
VALID_PRIORITIES = [
    WorkItemPriority.P0, WorkItemPriority.P1,
    WorkItemPriority.P2, WorkItemPriority.P3
]
VALID_RISK_LEVELS = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH]
VALID_TSHIRT_SIZES = ["XS", "S", "M", "L", "XL"]
