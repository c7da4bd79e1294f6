"""
Pipeline Domain Entities
========================

Pure Python objects for thread analysis and work item generation.

ThreadState and WorkItemDraft are parsed from untrusted LLM output, so their
from_dict constructors coerce malformed fields to safe defaults instead of
rejecting the whole document. to_dict emits the camelCase field names that
are stored in JSON columns and read by other services.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from feedback_triage.config import (
    Intent,
    RecommendationAction,
    RiskLevel,
    WorkItemPriority,
    WorkItemType,
    VALID_INTENTS,
    VALID_PRIORITIES,
    VALID_RECOMMENDATION_ACTIONS,
    VALID_RISK_LEVELS,
    VALID_TSHIRT_SIZES,
    VALID_WORK_ITEM_TYPES,
)
from feedback_triage.core import ValidationException


# ========== Coercion helpers ==========

def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _number(value: Any, default: float) -> float:
    return float(value) if _is_number(value) else default


def _confidence(value: Any) -> float:
    return min(1.0, max(0.0, _number(value, 0.0)))


def _text(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _optional_text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _text_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _mapping(value: Any) -> Dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _choice(value: Any, allowed: List[str], default: str) -> str:
    return value if value in allowed else default


# ========== Thread state ==========

@dataclass
class Recommendation:
    """What the extractor thinks should happen next."""
    action: str = RecommendationAction.NO_TICKET
    reason: str = "Insufficient information"
    confidence: float = 0.0

    @classmethod
    def from_dict(cls, data: Any) -> "Recommendation":
        if not isinstance(data, dict):
            return cls()
        return cls(
            action=_choice(data.get("action"), VALID_RECOMMENDATION_ACTIONS, RecommendationAction.NO_TICKET),
            reason=_text(data.get("reason")),
            confidence=_confidence(data.get("confidence")),
        )

    def to_dict(self) -> dict:
        return {"action": self.action, "reason": self.reason, "confidence": self.confidence}


@dataclass
class WorkItemCandidate:
    """A ticket the conversation could turn into."""
    type: str
    short_title: str = ""
    reason: str = ""
    confidence: float = 0.0

    @classmethod
    def from_dict(cls, data: Any) -> Optional["WorkItemCandidate"]:
        if not isinstance(data, dict):
            return None
        return cls(
            type=_text(data.get("type"), WorkItemType.BUG),
            short_title=_text(data.get("shortTitle")),
            reason=_text(data.get("reason")),
            confidence=_confidence(data.get("confidence")),
        )

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "shortTitle": self.short_title,
            "reason": self.reason,
            "confidence": self.confidence,
        }


@dataclass
class DuplicateHint:
    possible_duplicate: bool = False
    matched_work_item_id: Optional[int] = None
    matched_ticket_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "DuplicateHint":
        if not isinstance(data, dict):
            return cls()
        matched_id = data.get("matchedWorkItemId")
        return cls(
            possible_duplicate=data.get("possibleDuplicate") is True,
            matched_work_item_id=int(matched_id) if _is_number(matched_id) else None,
            matched_ticket_url=_optional_text(data.get("matchedTicketUrl")),
        )

    def to_dict(self) -> dict:
        return {
            "possibleDuplicate": self.possible_duplicate,
            "matchedWorkItemId": self.matched_work_item_id,
            "matchedTicketUrl": self.matched_ticket_url,
        }


@dataclass
class ThreadState:
    """
    Cumulative understanding of a feedback thread.

    Rebuilt from the full conversation on every pipeline run and stored as
    JSON on the thread.
    """
    summary: str = ""
    user_goal: Optional[str] = None
    intent: str = Intent.OTHER
    known_environment: Dict[str, Any] = field(default_factory=dict)
    repro_steps: List[str] = field(default_factory=list)
    expected_behavior: Optional[str] = None
    actual_behavior: Optional[str] = None
    open_questions: List[str] = field(default_factory=list)
    resolved_questions: List[str] = field(default_factory=list)
    signals: Dict[str, Any] = field(default_factory=dict)
    work_item_candidates: List[WorkItemCandidate] = field(default_factory=list)
    recommendation: Recommendation = field(default_factory=Recommendation)
    duplicate_hint: DuplicateHint = field(default_factory=DuplicateHint)

    @classmethod
    def empty(cls) -> "ThreadState":
        return cls()

    @classmethod
    def from_dict(cls, data: Any) -> "ThreadState":
        """
        Build from parsed LLM output.

        Raises:
            ValidationException: not an object, or summary is not a string
        """
        if not isinstance(data, dict):
            raise ValidationException("ThreadState must be a JSON object")
        if not isinstance(data.get("summary"), str):
            raise ValidationException("ThreadState.summary must be a string")

        raw_candidates = data.get("workItemCandidates")
        if not isinstance(raw_candidates, list):
            raw_candidates = []
        candidates = [WorkItemCandidate.from_dict(item) for item in raw_candidates]

        return cls(
            summary=data["summary"],
            user_goal=_optional_text(data.get("userGoal")),
            intent=_choice(data.get("intent"), VALID_INTENTS, Intent.OTHER),
            known_environment=_mapping(data.get("knownEnvironment")),
            repro_steps=_text_list(data.get("reproSteps")),
            expected_behavior=_optional_text(data.get("expectedBehavior")),
            actual_behavior=_optional_text(data.get("actualBehavior")),
            open_questions=_text_list(data.get("openQuestions")),
            resolved_questions=_text_list(data.get("resolvedQuestions")),
            signals=_mapping(data.get("signals")),
            work_item_candidates=[c for c in candidates if c is not None],
            recommendation=Recommendation.from_dict(data.get("recommendation")),
            duplicate_hint=DuplicateHint.from_dict(data.get("duplicateHint")),
        )

    @classmethod
    def from_stored(cls, data: Any) -> "ThreadState":
        """Load the state persisted on a thread; anything unusable means empty."""
        if data is None:
            return cls.empty()
        try:
            return cls.from_dict(data)
        except ValidationException:
            return cls.empty()

    def to_dict(self) -> dict:
        return {
            "summary": self.summary,
            "userGoal": self.user_goal,
            "intent": self.intent,
            "knownEnvironment": dict(self.known_environment),
            "reproSteps": list(self.repro_steps),
            "expectedBehavior": self.expected_behavior,
            "actualBehavior": self.actual_behavior,
            "openQuestions": list(self.open_questions),
            "resolvedQuestions": list(self.resolved_questions),
            "signals": dict(self.signals),
            "workItemCandidates": [c.to_dict() for c in self.work_item_candidates],
            "recommendation": self.recommendation.to_dict(),
            "duplicateHint": self.duplicate_hint.to_dict(),
        }


# ========== Work item draft ==========

@dataclass
class EstimatedEffort:
    t_shirt: str = "M"
    hours_min: float = 2
    hours_max: float = 8
    confidence: float = 0.5

    @classmethod
    def from_dict(cls, data: Any) -> "EstimatedEffort":
        if not isinstance(data, dict):
            return cls()
        defaults = cls()
        return cls(
            t_shirt=_choice(data.get("tShirt"), VALID_TSHIRT_SIZES, defaults.t_shirt),
            hours_min=_number(data.get("hoursMin"), defaults.hours_min),
            hours_max=_number(data.get("hoursMax"), defaults.hours_max),
            confidence=min(1.0, max(0.0, _number(data.get("confidence"), defaults.confidence))),
        )

    def to_dict(self) -> dict:
        return {
            "tShirt": self.t_shirt,
            "hoursMin": self.hours_min,
            "hoursMax": self.hours_max,
            "confidence": self.confidence,
        }


@dataclass
class PromptBundle:
    """Prompts handed to coding agents that pick up the work item."""
    cursor_prompt: str = ""
    agent_system_prompt: str = ""
    agent_task_prompt: str = ""
    suspected_files: List[str] = field(default_factory=list)
    tests_to_run: List[str] = field(default_factory=list)
    commands: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "PromptBundle":
        if not isinstance(data, dict):
            return cls()
        return cls(
            cursor_prompt=_text(data.get("cursorPrompt")),
            agent_system_prompt=_text(data.get("agentSystemPrompt")),
            agent_task_prompt=_text(data.get("agentTaskPrompt")),
            suspected_files=_text_list(data.get("suspectedFiles")),
            tests_to_run=_text_list(data.get("testsToRun")),
            commands=_text_list(data.get("commands")),
        )

    def to_dict(self) -> dict:
        return {
            "cursorPrompt": self.cursor_prompt,
            "agentSystemPrompt": self.agent_system_prompt,
            "agentTaskPrompt": self.agent_task_prompt,
            "suspectedFiles": list(self.suspected_files),
            "testsToRun": list(self.tests_to_run),
            "commands": list(self.commands),
        }


@dataclass
class WorkItemDraft:
    """Validated ticket produced by work item generation, not yet persisted."""
    title: str
    type: str = WorkItemType.BUG
    structured_description: str = ""
    acceptance_criteria: List[str] = field(default_factory=list)
    priority: str = WorkItemPriority.P2
    severity: int = 3
    risk_level: str = RiskLevel.MEDIUM
    estimated_effort: EstimatedEffort = field(default_factory=EstimatedEffort)
    prompt_bundle: PromptBundle = field(default_factory=PromptBundle)
    labels: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "WorkItemDraft":
        """
        Build from parsed LLM output.

        Raises:
            ValidationException: not an object, or title missing/empty
        """
        if not isinstance(data, dict):
            raise ValidationException("Work item must be a JSON object")
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ValidationException("Work item title must be a non-empty string")

        severity = data.get("severity")
        return cls(
            title=title.strip(),
            type=_choice(data.get("type"), VALID_WORK_ITEM_TYPES, WorkItemType.BUG),
            structured_description=_text(data.get("structuredDescription")),
            acceptance_criteria=_text_list(data.get("acceptanceCriteria")),
            priority=_choice(data.get("priority"), VALID_PRIORITIES, WorkItemPriority.P2),
            severity=int(severity) if _is_number(severity) and 1 <= severity <= 5 else 3,
            risk_level=_choice(data.get("riskLevel"), VALID_RISK_LEVELS, RiskLevel.MEDIUM),
            estimated_effort=EstimatedEffort.from_dict(data.get("estimatedEffort")),
            prompt_bundle=PromptBundle.from_dict(data.get("promptBundle")),
            labels=_text_list(data.get("labels")),
        )


# ========== Conversation ==========

@dataclass
class ConversationMessage:
    """One message of a thread as seen by the extractor."""
    sender_type: str
    raw_text: str
    sender_name: Optional[str] = None
    created_at: Optional[datetime] = None
