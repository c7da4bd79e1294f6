"""
Pipeline Infrastructure Layer
=============================

Infrastructure implementations for the triage pipeline.

Contains:
- Models: SQLAlchemy ORM models
- Repositories: Data access implementations and the unit of work
- External: APScheduler poll loop
"""

from feedback_triage.pipeline.infrastructure.models import (
    AuditLogModel,
    MessageModel,
    PipelineJobModel,
    ThreadModel,
    WorkItemModel,
)
from feedback_triage.pipeline.infrastructure.repositories import (
    SQLAlchemyAuditLogRepository,
    SQLAlchemyMessageRepository,
    SQLAlchemyPipelineJobRepository,
    SQLAlchemyThreadRepository,
    SQLAlchemyUnitOfWork,
    SQLAlchemyWorkItemRepository,
)
from feedback_triage.pipeline.infrastructure.external import PipelineScheduler

__all__ = [
    "AuditLogModel",
    "MessageModel",
    "PipelineJobModel",
    "ThreadModel",
    "WorkItemModel",
    "SQLAlchemyAuditLogRepository",
    "SQLAlchemyMessageRepository",
    "SQLAlchemyPipelineJobRepository",
    "SQLAlchemyThreadRepository",
    "SQLAlchemyUnitOfWork",
    "SQLAlchemyWorkItemRepository",
    "PipelineScheduler",
]
