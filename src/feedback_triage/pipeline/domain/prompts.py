"""
Pipeline Prompt Builders
========================

All prompt text for thread-state extraction and work item generation.
"""

import json
from typing import List

from feedback_triage.config import SenderType
from feedback_triage.pipeline.domain.entities import ConversationMessage, ThreadState


class ThreadStatePromptBuilder:
    """
    Builds prompts for thread-state extraction.

    The user prompt is itself a JSON document: current state, whole
    conversation and the expected output schema.
    """

    SYSTEM_PROMPT = """You are a developer-first support intelligence engine for a software product.
You analyze conversation messages from end-users and maintain a cumulative ThreadState that reflects the ENTIRE conversation.

Your PRIMARY GOAL is to convert user feedback into actionable work items (bug reports or feature requests).

CLASSIFICATION RULES:
- If the user describes something broken, not working, or unexpected: intent = "Bug", recommend CreateBugWorkItem
- If the user asks for new functionality or suggests an improvement: intent = "Feature", recommend CreateFeatureWorkItem
- If the message is clearly actionable, set confidence to 0.8-0.9 even if brief.
- Only use AskQuestions when the intent is genuinely ambiguous or critical details are missing.
- Use NoTicket ONLY for greetings, thank-you messages, off-topic chatter, or messages that are clearly not feedback.
- If the user introduces a completely unrelated second topic, set recommendation.action to "SplitIntoTwo".

CONFIDENCE GUIDELINES:
- 0.9 = Clear, specific request with enough detail to act on
- 0.8 = Clear intent but light on specifics
- 0.7 = Reasonable intent but needs some clarification
- 0.5-0.6 = Ambiguous, ask questions
- Below 0.5 = Very unclear, ask questions or NoTicket

CUMULATIVE STATE RULES:
- Keep ALL previous facts, repro steps and environment info. Never lose data.
- Move answered questions from openQuestions to resolvedQuestions.
- When you set action to AskQuestions, populate openQuestions with specific, clear questions.
- If you previously asked questions and the user responded, decide whether the answers justify a higher confidence.
- Populate workItemCandidates with at least one entry whenever intent is Bug or Feature.

OUTPUT FORMAT (STRICT):
- Respond with ONLY a valid JSON object. Nothing else.
- All property names and string values MUST be double-quoted.
- Do NOT wrap in markdown code fences.
- Do NOT include any text before or after the JSON."""

    OUTPUT_SCHEMA = {
        "summary": "string: overall conversation summary",
        "userGoal": "string|null",
        "intent": "Bug|Feature|Performance|Billing|Other",
        "knownEnvironment": "{ device?, os?, browser?, appVersion?, hardware?, network? }",
        "reproSteps": "string[]",
        "expectedBehavior": "string|null",
        "actualBehavior": "string|null",
        "openQuestions": "string[]: questions that still need answers",
        "resolvedQuestions": "string[]: questions that have been answered",
        "signals": "{ sentiment?, urgency?, impactGuess? }",
        "workItemCandidates": "array of { type, shortTitle, reason, confidence }",
        "recommendation": (
            "{ action: NoTicket|AskQuestions|CreateBugWorkItem|CreateFeatureWorkItem|SplitIntoTwo, "
            "reason: string, confidence: 0-1 }"
        ),
        "duplicateHint": "{ possibleDuplicate: boolean, matchedWorkItemId: number|null, matchedTicketUrl: string|null }",
    }

    @classmethod
    def get_system_prompt(cls) -> str:
        return cls.SYSTEM_PROMPT

    @classmethod
    def build_prompt(cls, current_state: ThreadState, messages: List[ConversationMessage]) -> str:
        history = [
            {
                "index": index,
                "from": message.sender_name or ("User" if message.sender_type == SenderType.USER else "Team"),
                "role": message.sender_type,
                "text": message.raw_text,
            }
            for index, message in enumerate(messages, start=1)
        ]
        return json.dumps({
            "instruction": (
                "Analyze the FULL conversation history below and produce an updated ThreadState. "
                "Consider ALL messages cumulatively. If questions were asked and the user has "
                "responded, evaluate whether the information is now sufficient. Return the full "
                "updated ThreadState as JSON."
            ),
            "currentThreadState": current_state.to_dict(),
            "conversationHistory": history,
            "messageCount": len(messages),
            "outputSchema": cls.OUTPUT_SCHEMA,
        })


class WorkItemPromptBuilder:
    """Builds prompts for work item generation."""

    SYSTEM_PROMPT = """You generate work items as JSON. Respond with ONLY a JSON object. No markdown, no explanation, no code fences.

EXAMPLE OUTPUT:
{"title":"Fix login timeout","type":"Bug","structuredDescription":"Users report...","acceptanceCriteria":["Login completes in <3s","Error message shown on timeout"],"priority":"P1","severity":3,"riskLevel":"Medium","estimatedEffort":{"tShirt":"S","hoursMin":2,"hoursMax":6,"confidence":0.7},"promptBundle":{"cursorPrompt":"Fix the login timeout issue...","agentSystemPrompt":"Do not modify auth keys...","agentTaskPrompt":"Investigate the login handler...","suspectedFiles":["src/auth/login.py"],"testsToRun":["pytest tests/test_auth.py"],"commands":["make dev"]},"labels":["auth","bug"]}

Rules: All keys double-quoted. All strings double-quoted. No comments. No trailing commas. Just valid JSON."""

    @classmethod
    def get_system_prompt(cls) -> str:
        return cls.SYSTEM_PROMPT

    @classmethod
    def build_prompt(cls, state: ThreadState, work_item_type: str) -> str:
        lines = [
            f'Create a "{work_item_type}" work item from this conversation:',
            "",
            f"Summary: {state.summary or 'No summary available'}",
        ]
        if state.user_goal:
            lines.append(f"User goal: {state.user_goal}")
        lines.append(f"Intent: {state.intent or work_item_type}")
        if state.repro_steps:
            lines.append(f"Repro steps: {'; '.join(state.repro_steps)}")
        if state.expected_behavior:
            lines.append(f"Expected: {state.expected_behavior}")
        if state.actual_behavior:
            lines.append(f"Actual: {state.actual_behavior}")
        if state.known_environment:
            lines.append(f"Environment: {json.dumps(state.known_environment)}")
        lines.extend([
            "",
            "Return a JSON object with these exact keys: title, type, structuredDescription, "
            "acceptanceCriteria (string array), priority (P0-P3), severity (1-5), "
            "riskLevel (Low/Medium/High), estimatedEffort ({tShirt, hoursMin, hoursMax, confidence}), "
            "promptBundle ({cursorPrompt, agentSystemPrompt, agentTaskPrompt, suspectedFiles, "
            "testsToRun, commands}), labels (string array).",
        ])
        return "\n".join(lines)
