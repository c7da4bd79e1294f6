"""Tests for validated JSON completions with corrective retries."""

import pytest

from feedback_triage.core import LLMException, LLMUnavailableException
from feedback_triage.infrastructure.llm.structured import llm_json_completion
from feedback_triage.pipeline.application import ThreadStateExtractor, WorkItemGenerator
from feedback_triage.pipeline.domain import ConversationMessage, ThreadState, WorkItemDraft

from stubs import WORK_ITEM_JSON, ScriptedLLMClient, thread_state_json


async def complete(llm, max_retries=1):
    return await llm_json_completion(
        llm,
        system_prompt="json only",
        user_prompt="go",
        validate=WorkItemDraft.from_dict,
        max_retries=max_retries,
        operation="work_item",
    )


@pytest.mark.asyncio
async def test_valid_answer_succeeds_first_time():
    llm = ScriptedLLMClient({"work_item": [WORK_ITEM_JSON]})

    result = await complete(llm)

    assert result.ok
    assert result.data.title == "Fix inert export button"
    assert result.raw_content == WORK_ITEM_JSON
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_retries_with_correction_turn():
    llm = ScriptedLLMClient({"work_item": ["not json at all", '{"title": ""}', WORK_ITEM_JSON]})

    result = await complete(llm, max_retries=2)

    assert result.ok
    assert len(llm.calls) == 3
    last_messages = llm.calls[-1]["messages"]
    assert last_messages[2] == {"role": "assistant", "content": "not json at all"}
    assert "corrected JSON" in last_messages[3]["content"]
    assert last_messages[4] == {"role": "assistant", "content": '{"title": ""}'}


@pytest.mark.asyncio
async def test_failure_keeps_raw_content():
    llm = ScriptedLLMClient({"work_item": ["nope", '{"title": 5}']})

    result = await complete(llm, max_retries=1)

    assert not result.ok
    assert result.raw_content == '{"title": 5}'
    assert result.error.startswith("Invalid JSON after 2 attempt(s)")


@pytest.mark.asyncio
async def test_unavailable_propagates():
    llm = ScriptedLLMClient({"work_item": [LLMUnavailableException("down")]})

    with pytest.raises(LLMUnavailableException):
        await complete(llm)


@pytest.mark.asyncio
async def test_rejected_request_is_a_failure_result():
    llm = ScriptedLLMClient({"work_item": [LLMException("LLM request failed (400)")]})

    result = await complete(llm)

    assert not result.ok
    assert "400" in result.error


@pytest.mark.asyncio
async def test_extractor_sends_full_conversation():
    llm = ScriptedLLMClient({"thread_state": [thread_state_json()]})
    messages = [
        ConversationMessage(sender_type="user", raw_text="Export is broken", sender_name="Dana"),
        ConversationMessage(sender_type="internal", raw_text="Which browser?"),
        ConversationMessage(sender_type="user", raw_text="Firefox"),
    ]

    result = await ThreadStateExtractor(llm).extract(ThreadState.empty(), messages)

    assert result.ok
    call = llm.calls[0]
    assert call["temperature"] == ThreadStateExtractor.TEMPERATURE
    prompt = call["messages"][1]["content"]
    assert '"messageCount": 3' in prompt
    assert "Firefox" in prompt
    assert "Dana" in prompt


@pytest.mark.asyncio
async def test_generator_gets_two_correction_turns():
    llm = ScriptedLLMClient({"work_item": ["bad", "bad", "bad"]})

    result = await WorkItemGenerator(llm).generate(ThreadState(summary="s"), "Bug")

    assert not result.ok
    assert len(llm.calls) == 3
