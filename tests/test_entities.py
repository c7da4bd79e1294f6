"""Tests for parsing LLM output into ThreadState and WorkItemDraft."""

import pytest

from feedback_triage.config import Intent, RecommendationAction, RiskLevel, WorkItemPriority, WorkItemType
from feedback_triage.core import ValidationException
from feedback_triage.pipeline.domain import ThreadState, WorkItemDraft


class TestThreadState:

    def test_summary_is_required(self):
        with pytest.raises(ValidationException):
            ThreadState.from_dict({"intent": "Bug"})

    def test_must_be_object(self):
        with pytest.raises(ValidationException):
            ThreadState.from_dict(["summary"])

    def test_minimal_document_gets_defaults(self):
        state = ThreadState.from_dict({"summary": "hello"})

        assert state.intent == Intent.OTHER
        assert state.repro_steps == []
        assert state.known_environment == {}
        assert state.recommendation.action == RecommendationAction.NO_TICKET
        assert state.recommendation.reason == "Insufficient information"
        assert state.recommendation.confidence == 0.0
        assert state.duplicate_hint.to_dict() == {
            "possibleDuplicate": False,
            "matchedWorkItemId": None,
            "matchedTicketUrl": None,
        }

    def test_coerces_malformed_fields(self):
        state = ThreadState.from_dict({
            "summary": "s",
            "intent": "Complaint",
            "reproSteps": "click it",
            "openQuestions": ["Which browser?", 42, None],
            "signals": [],
            "workItemCandidates": [{"shortTitle": "x", "confidence": 3}, "junk"],
            "recommendation": {"action": "Escalate", "confidence": -1},
        })

        assert state.intent == Intent.OTHER
        assert state.repro_steps == []
        assert state.open_questions == ["Which browser?"]
        assert state.signals == {}
        assert len(state.work_item_candidates) == 1
        assert state.work_item_candidates[0].type == WorkItemType.BUG
        assert state.work_item_candidates[0].confidence == 1.0
        assert state.recommendation.action == RecommendationAction.NO_TICKET
        assert state.recommendation.confidence == 0.0

    def test_boolean_confidence_is_not_a_number(self):
        state = ThreadState.from_dict({"summary": "s", "recommendation": {"action": "CreateBugWorkItem", "confidence": True}})

        assert state.recommendation.confidence == 0.0

    def test_to_dict_uses_camel_case(self):
        data = ThreadState.from_dict({"summary": "s", "userGoal": "goal"}).to_dict()

        assert data["userGoal"] == "goal"
        assert "workItemCandidates" in data
        assert ThreadState.from_dict(data).user_goal == "goal"

    def test_from_stored_tolerates_garbage(self):
        assert ThreadState.from_stored(None).summary == ""
        assert ThreadState.from_stored({"summary": 5}).summary == ""
        assert ThreadState.from_stored({"summary": "kept"}).summary == "kept"


class TestWorkItemDraft:

    def test_coerces_enums_and_lists(self):
        draft = WorkItemDraft.from_dict({
            "title": "Fix it",
            "priority": "URGENT",
            "severity": 99,
            "labels": "x",
        })

        assert draft.priority == WorkItemPriority.P2
        assert draft.severity == 3
        assert draft.labels == []
        assert draft.type == WorkItemType.BUG
        assert draft.risk_level == RiskLevel.MEDIUM

    def test_title_required(self):
        with pytest.raises(ValidationException):
            WorkItemDraft.from_dict({"title": "   "})
        with pytest.raises(ValidationException):
            WorkItemDraft.from_dict({"priority": "P1"})

    def test_effort_and_bundle_defaults(self):
        draft = WorkItemDraft.from_dict({"title": "t", "estimatedEffort": {"tShirt": "XXL"}})

        assert draft.estimated_effort.to_dict() == {"tShirt": "M", "hoursMin": 2, "hoursMax": 8, "confidence": 0.5}
        assert draft.prompt_bundle.to_dict() == {
            "cursorPrompt": "",
            "agentSystemPrompt": "",
            "agentTaskPrompt": "",
            "suspectedFiles": [],
            "testsToRun": [],
            "commands": [],
        }

    def test_partial_bundle_fills_missing_arrays(self):
        draft = WorkItemDraft.from_dict({
            "title": "t",
            "promptBundle": {"cursorPrompt": "do it", "suspectedFiles": ["a.py", 3]},
        })

        assert draft.prompt_bundle.cursor_prompt == "do it"
        assert draft.prompt_bundle.suspected_files == ["a.py"]
        assert draft.prompt_bundle.commands == []

    def test_valid_values_kept(self):
        draft = WorkItemDraft.from_dict({
            "title": " Add dark mode ",
            "type": "Feature",
            "priority": "P0",
            "severity": 1,
            "riskLevel": "High",
        })

        assert draft.title == "Add dark mode"
        assert draft.type == WorkItemType.FEATURE
        assert draft.priority == WorkItemPriority.P0
        assert draft.severity == 1
        assert draft.risk_level == RiskLevel.HIGH
