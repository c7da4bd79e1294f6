"""
Ticket Gatekeeper
=================

Decides what a thread analysis leads to: nothing, clarifying questions, or a
work item. Pure and deterministic: no LLM call, no database access, no clock.
"""

from dataclasses import dataclass
from typing import List, Optional

from feedback_triage.config import (
    RecommendationAction,
    ThreadStatus,
    WorkItemType,
    VALID_WORK_ITEM_TYPES,
)
from feedback_triage.pipeline.domain.entities import ThreadState

CONFIDENCE_THRESHOLD = 0.70
# Lower bar once the user has answered our questions
FOLLOW_UP_CONFIDENCE_THRESHOLD = 0.50

GENERIC_QUESTIONS_MESSAGE = (
    "Thanks for reaching out! Could you share a bit more detail about what you "
    "were trying to do and what happened instead? That will help us log this accurately."
)


@dataclass(frozen=True)
class GatekeeperContext:
    """Thread facts the decision depends on, captured before the job ran."""
    current_thread_status: str = ThreadStatus.OPEN
    is_follow_up: bool = False

    @classmethod
    def for_thread_status(cls, status: str) -> "GatekeeperContext":
        return cls(
            current_thread_status=status,
            is_follow_up=status == ThreadStatus.WAITING_ON_USER,
        )


@dataclass(frozen=True)
class GatekeeperResult:
    should_create_work_item: bool
    thread_status: str
    reason: str
    gatekeeper_action: str
    work_item_type: Optional[str] = None
    ai_response_text: Optional[str] = None
    confidence: float = 0.0

    @property
    def awaits_user(self) -> bool:
        """True when the thread is parked until the user answers."""
        return not self.should_create_work_item and self.thread_status == ThreadStatus.WAITING_ON_USER


def confidence_threshold(context: GatekeeperContext) -> float:
    return FOLLOW_UP_CONFIDENCE_THRESHOLD if context.is_follow_up else CONFIDENCE_THRESHOLD


def format_questions_message(questions: List[str]) -> str:
    """Numbered list of open questions, or a generic request for detail."""
    questions = [q.strip() for q in questions if q and q.strip()]
    if not questions:
        return GENERIC_QUESTIONS_MESSAGE
    numbered = "\n".join(f"{index}. {question}" for index, question in enumerate(questions, start=1))
    return (
        "Thanks for the details! To make sure we get this right, could you help "
        f"with a few questions?\n\n{numbered}"
    )


def _create(
    work_item_type: str,
    reason: str,
    confidence: float,
    ai_response_text: Optional[str] = None,
) -> GatekeeperResult:
    return GatekeeperResult(
        should_create_work_item=True,
        thread_status=ThreadStatus.OPEN,
        reason=reason,
        gatekeeper_action=f"Create{work_item_type}WorkItem",
        work_item_type=work_item_type,
        ai_response_text=ai_response_text,
        confidence=confidence,
    )


def _ask_questions(state: ThreadState, reason: str) -> GatekeeperResult:
    return GatekeeperResult(
        should_create_work_item=False,
        thread_status=ThreadStatus.WAITING_ON_USER,
        reason=reason,
        gatekeeper_action=RecommendationAction.ASK_QUESTIONS,
        ai_response_text=format_questions_message(state.open_questions),
    )


def _low_confidence(state: ThreadState, confidence: float, threshold: float) -> GatekeeperResult:
    intro = (
        "I want to make sure this gets logged accurately, but I don't have enough "
        f"information yet (confidence {confidence:.0%}, {threshold:.0%} needed)."
    )
    if state.open_questions:
        body = format_questions_message(state.open_questions)
    else:
        body = GENERIC_QUESTIONS_MESSAGE
    return GatekeeperResult(
        should_create_work_item=False,
        thread_status=ThreadStatus.WAITING_ON_USER,
        reason=f"Recommendation confidence ({confidence}) below threshold ({threshold})",
        gatekeeper_action=RecommendationAction.ASK_QUESTIONS,
        ai_response_text=f"{intro}\n\n{body}",
    )


def _split_note(short_title: str, work_item_type: str, remaining: int) -> str:
    note = f'I\'ve logged the first topic ("{short_title}") as a {work_item_type.lower()} ticket.'
    if remaining == 1:
        note += " There is 1 more topic in this conversation that we'll follow up on separately."
    elif remaining > 1:
        note += f" There are {remaining} more topics in this conversation that we'll follow up on separately."
    return note


def run_gatekeeper(state: ThreadState, context: Optional[GatekeeperContext] = None) -> GatekeeperResult:
    """
    Map a thread state to the next action.

    Rules, first match wins:
    1. no recommendation / NoTicket -> nothing, thread Open
    2. AskQuestions -> numbered questions, thread WaitingOnUser
    3. CreateBug/CreateFeature -> create at or above the threshold,
       otherwise ask for more detail explaining the confidence gap
    4. SplitIntoTwo -> create the top candidate at or above the threshold,
       otherwise ask questions
    5. anything else -> nothing, thread Open
    """
    context = context or GatekeeperContext()
    threshold = confidence_threshold(context)
    rec = state.recommendation

    if rec is None or rec.action == RecommendationAction.NO_TICKET:
        return GatekeeperResult(
            should_create_work_item=False,
            thread_status=ThreadStatus.OPEN,
            reason=(rec.reason if rec and rec.reason else "No ticket needed"),
            gatekeeper_action=RecommendationAction.NO_TICKET,
        )

    if rec.action == RecommendationAction.ASK_QUESTIONS:
        return _ask_questions(state, rec.reason or "More information needed")

    if rec.action in (RecommendationAction.CREATE_BUG, RecommendationAction.CREATE_FEATURE):
        if rec.confidence >= threshold:
            work_item_type = WorkItemType.BUG if rec.action == RecommendationAction.CREATE_BUG else WorkItemType.FEATURE
            return _create(work_item_type, rec.reason, rec.confidence)
        return _low_confidence(state, rec.confidence, threshold)

    if rec.action == RecommendationAction.SPLIT_INTO_TWO:
        top = state.work_item_candidates[0] if state.work_item_candidates else None
        if top is not None and top.confidence >= threshold:
            work_item_type = top.type if top.type in VALID_WORK_ITEM_TYPES else WorkItemType.BUG
            remaining = len(state.work_item_candidates) - 1
            return _create(
                work_item_type,
                reason=f"Split recommended: creating first item: {top.short_title}",
                confidence=top.confidence,
                ai_response_text=_split_note(top.short_title, work_item_type, remaining),
            )
        return _ask_questions(state, "Split recommended but confidence too low for automatic creation")

    return GatekeeperResult(
        should_create_work_item=False,
        thread_status=ThreadStatus.OPEN,
        reason=f"Recommendation confidence ({rec.confidence}) below threshold ({threshold})",
        gatekeeper_action=RecommendationAction.NO_TICKET,
    )
