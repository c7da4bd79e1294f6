"""Test doubles and canned LLM answers shared across test modules."""

import json
from typing import Any, Dict, List, Optional, Union

from feedback_triage.infrastructure.llm import ChatCompletionResult, ILLMClient


class ScriptedLLMClient(ILLMClient):
    """
    Replays canned answers per operation, in order.

    An Exception in the script is raised instead of answering. The last
    entry of a script is reused once the script runs out.
    """

    def __init__(self, scripts: Dict[str, List[Union[str, Exception]]]):
        self.scripts = {op: list(items) for op, items in scripts.items()}
        self.calls: List[Dict[str, Any]] = []

    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 1000,
        operation: str = "chat_completion"
    ) -> ChatCompletionResult:
        self.calls.append({"operation": operation, "messages": messages, "temperature": temperature})
        script = self.scripts.get(operation)
        if not script:
            raise AssertionError(f"unexpected LLM call for {operation}")
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return ChatCompletionResult(
            content=item, model="stub", prompt_tokens=10, completion_tokens=10, latency_ms=1
        )

    async def check_health(self) -> str:
        return "stub"

    def calls_for(self, operation: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["operation"] == operation]


def thread_state_json(
    action: str = "CreateBugWorkItem",
    confidence: float = 0.85,
    open_questions: Optional[List[str]] = None,
    candidates: Optional[List[dict]] = None,
) -> str:
    return json.dumps({
        "summary": "User reports the export button does nothing.",
        "userGoal": "Export a board",
        "intent": "Bug",
        "knownEnvironment": {"browser": "Firefox"},
        "reproSteps": ["Open board", "Click Export"],
        "expectedBehavior": "CSV downloads",
        "actualBehavior": "Nothing happens",
        "openQuestions": open_questions or [],
        "resolvedQuestions": [],
        "signals": {"sentiment": "negative"},
        "workItemCandidates": candidates if candidates is not None else [
            {"type": "Bug", "shortTitle": "Export inert", "reason": "Broken button", "confidence": confidence}
        ],
        "recommendation": {"action": action, "reason": "Clear report", "confidence": confidence},
    })


WORK_ITEM_JSON = json.dumps({
    "title": "Fix inert export button",
    "type": "Bug",
    "structuredDescription": "Clicking Export does nothing.",
    "acceptanceCriteria": ["Export downloads a CSV"],
    "priority": "P1",
    "severity": 2,
    "riskLevel": "Low",
    "labels": ["export"],
})

