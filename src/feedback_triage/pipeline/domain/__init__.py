"""
Pipeline Domain Layer
=====================

Pure business objects and rules; no I/O.
"""

from feedback_triage.pipeline.domain.entities import (
    ConversationMessage,
    DuplicateHint,
    EstimatedEffort,
    PromptBundle,
    Recommendation,
    ThreadState,
    WorkItemCandidate,
    WorkItemDraft,
)
from feedback_triage.pipeline.domain.gatekeeper import (
    CONFIDENCE_THRESHOLD,
    FOLLOW_UP_CONFIDENCE_THRESHOLD,
    GatekeeperContext,
    GatekeeperResult,
    format_questions_message,
    run_gatekeeper,
)
from feedback_triage.pipeline.domain.prompts import (
    ThreadStatePromptBuilder,
    WorkItemPromptBuilder,
)

__all__ = [
    "ConversationMessage",
    "DuplicateHint",
    "EstimatedEffort",
    "PromptBundle",
    "Recommendation",
    "ThreadState",
    "WorkItemCandidate",
    "WorkItemDraft",
    "CONFIDENCE_THRESHOLD",
    "FOLLOW_UP_CONFIDENCE_THRESHOLD",
    "GatekeeperContext",
    "GatekeeperResult",
    "format_questions_message",
    "run_gatekeeper",
    "ThreadStatePromptBuilder",
    "WorkItemPromptBuilder",
]
