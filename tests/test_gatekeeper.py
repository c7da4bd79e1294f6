"""Tests for the gatekeeper decision rules."""

import pytest

from feedback_triage.config import RecommendationAction, ThreadStatus, WorkItemType
from feedback_triage.pipeline.domain import (
    GatekeeperContext,
    Recommendation,
    ThreadState,
    WorkItemCandidate,
    format_questions_message,
    run_gatekeeper,
)
from feedback_triage.pipeline.domain.gatekeeper import GENERIC_QUESTIONS_MESSAGE

FOLLOW_UP = GatekeeperContext.for_thread_status(ThreadStatus.WAITING_ON_USER)
FIRST_PASS = GatekeeperContext.for_thread_status(ThreadStatus.OPEN)


def state_with(action, confidence=0.9, open_questions=None, candidates=None):
    return ThreadState(
        summary="summary",
        open_questions=open_questions or [],
        work_item_candidates=candidates or [],
        recommendation=Recommendation(action=action, reason="because", confidence=confidence),
    )


class TestThresholds:

    @pytest.mark.parametrize("action,expected_type", [
        (RecommendationAction.CREATE_BUG, WorkItemType.BUG),
        (RecommendationAction.CREATE_FEATURE, WorkItemType.FEATURE),
    ])
    def test_creates_at_threshold(self, action, expected_type):
        result = run_gatekeeper(state_with(action, 0.70), FIRST_PASS)

        assert result.should_create_work_item is True
        assert result.work_item_type == expected_type
        assert result.thread_status == ThreadStatus.OPEN
        assert result.gatekeeper_action == f"Create{expected_type}WorkItem"
        assert result.confidence == 0.70

    def test_just_below_threshold_asks_for_detail(self):
        result = run_gatekeeper(state_with(RecommendationAction.CREATE_BUG, 0.69), FIRST_PASS)

        assert result.should_create_work_item is False
        assert result.thread_status == ThreadStatus.WAITING_ON_USER
        assert result.gatekeeper_action == RecommendationAction.ASK_QUESTIONS
        assert "69%" in result.ai_response_text
        assert "70%" in result.ai_response_text

    def test_follow_up_lowers_threshold(self):
        state = state_with(RecommendationAction.CREATE_FEATURE, 0.50)

        assert run_gatekeeper(state, FOLLOW_UP).should_create_work_item is True
        assert run_gatekeeper(state, FIRST_PASS).should_create_work_item is False

    def test_follow_up_just_below_threshold(self):
        result = run_gatekeeper(state_with(RecommendationAction.CREATE_BUG, 0.49), FOLLOW_UP)

        assert result.should_create_work_item is False
        assert result.awaits_user is True

    def test_context_from_thread_status(self):
        assert FOLLOW_UP.is_follow_up is True
        assert FIRST_PASS.is_follow_up is False
        assert GatekeeperContext.for_thread_status(ThreadStatus.CLOSED).is_follow_up is False


def test_decision_is_deterministic():
    state = state_with(RecommendationAction.CREATE_BUG, 0.8, open_questions=["Which browser?"])

    results = {run_gatekeeper(state, FIRST_PASS) for _ in range(5)}

    assert len(results) == 1


def test_no_ticket_keeps_thread_open():
    result = run_gatekeeper(state_with(RecommendationAction.NO_TICKET), FIRST_PASS)

    assert result.should_create_work_item is False
    assert result.thread_status == ThreadStatus.OPEN
    assert result.gatekeeper_action == RecommendationAction.NO_TICKET
    assert result.ai_response_text is None


def test_missing_recommendation_is_no_ticket():
    state = ThreadState(summary="hi")
    state.recommendation = None

    result = run_gatekeeper(state)

    assert result.gatekeeper_action == RecommendationAction.NO_TICKET
    assert result.reason == "No ticket needed"


class TestAskQuestions:

    def test_numbers_open_questions(self):
        state = state_with(
            RecommendationAction.ASK_QUESTIONS,
            open_questions=["Which browser?", "What is your OS?"],
        )

        result = run_gatekeeper(state, FIRST_PASS)

        assert result.thread_status == ThreadStatus.WAITING_ON_USER
        assert "1. Which browser?" in result.ai_response_text
        assert "2. What is your OS?" in result.ai_response_text

    def test_empty_questions_use_generic_text(self):
        result = run_gatekeeper(state_with(RecommendationAction.ASK_QUESTIONS), FIRST_PASS)

        assert result.ai_response_text == GENERIC_QUESTIONS_MESSAGE

    def test_format_skips_blank_questions(self):
        assert format_questions_message(["  ", ""]) == GENERIC_QUESTIONS_MESSAGE
        assert "1. Why?" in format_questions_message(["", "Why?"])


class TestSplit:

    def test_creates_top_candidate(self):
        candidates = [
            WorkItemCandidate(type=WorkItemType.FEATURE, short_title="Dark mode", confidence=0.8),
            WorkItemCandidate(type=WorkItemType.BUG, short_title="Crash on save", confidence=0.9),
        ]
        result = run_gatekeeper(state_with(RecommendationAction.SPLIT_INTO_TWO, candidates=candidates), FIRST_PASS)

        assert result.should_create_work_item is True
        assert result.work_item_type == WorkItemType.FEATURE
        assert result.confidence == 0.8
        assert "Dark mode" in result.ai_response_text
        assert "1 more topic" in result.ai_response_text

    def test_unknown_candidate_type_becomes_bug(self):
        candidates = [WorkItemCandidate(type="Epic", short_title="Big thing", confidence=0.95)]
        result = run_gatekeeper(state_with(RecommendationAction.SPLIT_INTO_TWO, candidates=candidates), FIRST_PASS)

        assert result.work_item_type == WorkItemType.BUG

    def test_low_confidence_candidate_asks_questions(self):
        candidates = [WorkItemCandidate(type=WorkItemType.BUG, short_title="Vague", confidence=0.4)]
        state = state_with(
            RecommendationAction.SPLIT_INTO_TWO,
            candidates=candidates,
            open_questions=["Which page?"],
        )

        result = run_gatekeeper(state, FIRST_PASS)

        assert result.should_create_work_item is False
        assert result.gatekeeper_action == RecommendationAction.ASK_QUESTIONS
        assert "1. Which page?" in result.ai_response_text

    def test_no_candidates_asks_questions(self):
        result = run_gatekeeper(state_with(RecommendationAction.SPLIT_INTO_TWO), FIRST_PASS)

        assert result.awaits_user is True
