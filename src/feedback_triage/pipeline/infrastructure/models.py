"""
Pipeline Infrastructure Models
===============================

SQLAlchemy ORM models for feedback threads, messages, pipeline jobs,
work items and the audit log.

Integer primary keys are monotonic, so "older job" means "smaller id".
Rows exposed outside the service also carry a short public_id.
"""

import secrets
import string
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from feedback_triage.config import (
    JobStatus,
    MessageSource,
    RiskLevel,
    ThreadStatus,
    Visibility,
    WorkItemPriority,
    WorkItemStatus,
    settings,
)
from feedback_triage.core import utcnow
from feedback_triage.infrastructure.database import Base, BigIntPK, JSONType

PUBLIC_ID_LENGTH = 12
_PUBLIC_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_public_id() -> str:
    """Random 12-character identifier safe to show to users."""
    return "".join(secrets.choice(_PUBLIC_ID_ALPHABET) for _ in range(PUBLIC_ID_LENGTH))


def default_links() -> dict:
    return {"githubRepo": "", "githubIssueUrl": None, "githubPrUrl": None, "branch": None}


def default_execution() -> dict:
    return {
        "agentMode": "none",
        "agentJobId": None,
        "lastRunAt": None,
        "runLogsUrl": None,
        "artifactsJson": None,
    }


class ThreadModel(Base):
    """
    Database model for a feedback thread.

    Maps to the 'feedback_threads' table.
    """
    __tablename__ = "feedback_threads"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(
        String(PUBLIC_ID_LENGTH), unique=True, nullable=False, default=generate_public_id
    )

    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=ThreadStatus.OPEN)

    # Cumulative ThreadState document, camelCase keys
    thread_state: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    # Set while a pipeline job works on the thread, cleared on every exit path
    ai_processing_since: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class MessageModel(Base):
    """
    Database model for a thread message.

    raw_text is never modified after insert.
    """
    __tablename__ = "feedback_messages"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(
        String(PUBLIC_ID_LENGTH), unique=True, nullable=False, default=generate_public_id
    )
    thread_id: Mapped[int] = mapped_column(
        BigIntPK,
        ForeignKey("feedback_threads.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    source: Mapped[str] = mapped_column(String(50), nullable=False, default=MessageSource.API)
    sender_type: Mapped[str] = mapped_column(String(50), nullable=False)
    sender_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    visibility: Mapped[str] = mapped_column(String(50), nullable=False, default=Visibility.PUBLIC)
    raw_text: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class PipelineJobModel(Base):
    """
    Database model for a pipeline job: "analyze this thread now".

    The table is the queue. Workers claim rows with a single
    UPDATE ... RETURNING statement.
    """
    __tablename__ = "pipeline_jobs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(
        String(PUBLIC_ID_LENGTH), unique=True, nullable=False, default=generate_public_id
    )
    thread_id: Mapped[int] = mapped_column(
        BigIntPK,
        ForeignKey("feedback_threads.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    trigger_message_id: Mapped[Optional[int]] = mapped_column(
        BigIntPK,
        ForeignKey("feedback_messages.id", ondelete="SET NULL"),
        nullable=True
    )

    status: Mapped[str] = mapped_column(String(50), nullable=False, default=JobStatus.PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=lambda: settings.pipeline_max_attempts
    )

    gatekeeper_action: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    result_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    heartbeat_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_pipeline_jobs_status_created", "status", "created_at"),
        Index("ix_pipeline_jobs_thread_status", "thread_id", "status"),
    )


class WorkItemModel(Base):
    """
    Database model for a generated work item.

    Created in PendingApproval; approval happens elsewhere.
    """
    __tablename__ = "work_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(
        String(PUBLIC_ID_LENGTH), unique=True, nullable=False, default=generate_public_id
    )
    thread_id: Mapped[int] = mapped_column(
        BigIntPK,
        ForeignKey("feedback_threads.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    structured_description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    acceptance_criteria: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default=WorkItemPriority.P2)
    severity: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    risk_level: Mapped[str] = mapped_column(String(20), nullable=False, default=RiskLevel.MEDIUM)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=WorkItemStatus.PENDING_APPROVAL)

    labels: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    estimated_effort: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    prompt_bundle: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    links: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=default_links)
    execution: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=default_execution)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AuditLogModel(Base):
    """Append-only audit trail of pipeline decisions and failures."""
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[int] = mapped_column(BigIntPK, nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
    )
