"""
LLM Client Infrastructure
==========================

Wrapper for OpenAI-compatible chat completion endpoints.

This module abstracts the LLM client implementation following the
Dependency Inversion Principle - the pipeline depends on ILLMClient,
not on a concrete provider.
"""

import asyncio
import json
import random
import time
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from openai import APIConnectionError, APIStatusError, AsyncOpenAI

from feedback_triage.config import settings
from feedback_triage.core import (
    ConfigurationException,
    LLMException,
    LLMUnavailableException,
)
from feedback_triage.infrastructure.llm.circuit_breaker import (
    CircuitBreaker,
    CircuitSnapshot,
    CircuitState,
)
from feedback_triage.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})


class ChatCompletionResult:
    """Result of a chat completion."""

    def __init__(
        self,
        content: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        latency_ms: int
    ):
        self.content = content
        self.model = model
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.total_tokens = prompt_tokens + completion_tokens
        self.latency_ms = latency_ms


class ILLMClient(ABC):
    """
    Interface for LLM client operations.

    Following Interface Segregation Principle - only methods
    actually needed by the application are defined.
    """

    @abstractmethod
    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 1000,
        operation: str = "chat_completion"
    ) -> ChatCompletionResult:
        """
        Generate chat completion.

        Raises:
            LLMUnavailableException: provider unreachable or circuit open
            LLMException: provider rejected the request
        """

    @abstractmethod
    async def check_health(self) -> str:
        """Probe the provider; raises when it is unreachable."""

    async def close(self) -> None:
        """Release network resources."""


class OpenAILLMClient(ILLMClient):
    """
    Client for any OpenAI-compatible endpoint.

    Retries timeouts, connection errors and 429/502/503/504 with exponential
    backoff plus jitter. Every failed attempt is reported to the shared
    circuit breaker, and no attempt is made while it is open.
    """

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        initial_backoff: Optional[float] = None,
        client: Optional[Any] = None,
    ):
        self._breaker = circuit_breaker
        self._model = model or settings.llm_model
        self._max_attempts = max_attempts or settings.llm_max_http_retries
        self._initial_backoff = (
            settings.llm_initial_backoff_seconds if initial_backoff is None else initial_backoff
        )

        if client is None:
            api_key = api_key or settings.llm_api_key
            if not api_key:
                raise ConfigurationException("LLM API key not configured")
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url or settings.llm_base_url,
                timeout=timeout or settings.llm_request_timeout_seconds,
                max_retries=0,
            )
        self._client = client

    def _backoff_delay(self, attempt: int) -> float:
        base = self._initial_backoff * (2 ** (attempt - 1))
        return base + random.uniform(0, base * 0.25)

    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 1000,
        operation: str = "chat_completion"
    ) -> ChatCompletionResult:
        """
        Generate chat completion.

        Args:
            messages: List of message dicts with 'role' and 'content'
            temperature: Sampling temperature (0-1)
            max_tokens: Maximum tokens to generate
            operation: Operation name for logs (thread_state, work_item)

        Returns:
            ChatCompletionResult with generated text
        """
        last_error = "no attempt made"

        for attempt in range(1, self._max_attempts + 1):
            if not self._breaker.allow_request():
                raise LLMUnavailableException(
                    "Circuit breaker is open, LLM call skipped",
                    details={"operation": operation, "circuit_state": self._breaker.state},
                )

            start_time = time.perf_counter()
            try:
                response = await self._client.chat.completions.create(
                    model=self._model,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens
                )
            except APIConnectionError as e:
                # also covers APITimeoutError
                self._breaker.record_failure()
                last_error = f"{type(e).__name__}: {e}"
            except APIStatusError as e:
                self._breaker.record_failure()
                if e.status_code not in RETRYABLE_STATUS_CODES:
                    raise LLMException(
                        f"LLM request failed ({e.status_code})",
                        details={"operation": operation, "status_code": e.status_code},
                    ) from e
                last_error = f"HTTP {e.status_code}"
            except Exception:
                # e.g. APIResponseValidationError: the breaker still needs a verdict
                self._breaker.record_failure()
                raise
            except BaseException:
                # cancelled mid-request: no verdict on the provider
                self._breaker.release_probe()
                raise
            else:
                self._breaker.record_success()
                latency_ms = int((time.perf_counter() - start_time) * 1000)
                usage = getattr(response, "usage", None)
                content = response.choices[0].message.content or ""
                return ChatCompletionResult(
                    content=content,
                    model=getattr(response, "model", None) or self._model,
                    prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                    completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
                    latency_ms=latency_ms
                )

            logger.warning(
                "LLM request failed",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": self._max_attempts,
                    "error": last_error,
                }
            )
            if attempt < self._max_attempts:
                await asyncio.sleep(self._backoff_delay(attempt))

        raise LLMUnavailableException(
            f"LLM request failed after {self._max_attempts} attempts: {last_error}",
            details={"operation": operation},
        )

    async def check_health(self) -> str:
        await self._client.models.list()
        return "reachable"

    async def close(self) -> None:
        await self._client.close()


class MockLLMClient(ILLMClient):
    """
    Mock LLM client for local development.

    Returns predictable responses without calling external APIs.
    """

    THREAD_STATE_RESPONSE = {
        "summary": "Mock: user reports that the export button does nothing.",
        "userGoal": "Export the board as CSV",
        "intent": "Bug",
        "knownEnvironment": {"browser": "Chrome"},
        "reproSteps": ["Open a board", "Click Export"],
        "expectedBehavior": "A CSV file downloads",
        "actualBehavior": "Nothing happens",
        "openQuestions": [],
        "resolvedQuestions": [],
        "signals": {"sentiment": "negative", "urgency": "medium"},
        "workItemCandidates": [
            {"type": "Bug", "shortTitle": "Export button inert", "reason": "Broken action", "confidence": 0.85}
        ],
        "recommendation": {"action": "CreateBugWorkItem", "reason": "Clear bug report", "confidence": 0.85},
        "duplicateHint": {"possibleDuplicate": False, "matchedWorkItemId": None, "matchedTicketUrl": None},
    }

    WORK_ITEM_RESPONSE = {
        "title": "Fix inert export button",
        "type": "Bug",
        "structuredDescription": "Mock: clicking Export on a board does not start a download.",
        "acceptanceCriteria": ["Clicking Export downloads a CSV"],
        "priority": "P2",
        "severity": 3,
        "riskLevel": "Low",
        "estimatedEffort": {"tShirt": "S", "hoursMin": 1, "hoursMax": 4, "confidence": 0.7},
        "promptBundle": {
            "cursorPrompt": "Fix the export button handler.",
            "agentSystemPrompt": "",
            "agentTaskPrompt": "",
            "suspectedFiles": [],
            "testsToRun": [],
            "commands": []
        },
        "labels": ["export", "bug"],
    }

    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 1000,
        operation: str = "chat_completion"
    ) -> ChatCompletionResult:
        """Return mock response based on operation type."""
        if operation == "thread_state":
            content = json.dumps(self.THREAD_STATE_RESPONSE)
        elif operation == "work_item":
            content = f"```json\n{json.dumps(self.WORK_ITEM_RESPONSE, indent=2)}\n```"
        else:
            content = "{}"

        return ChatCompletionResult(
            content=content,
            model="mock-model",
            prompt_tokens=100,
            completion_tokens=len(content.split()),
            latency_ms=1
        )

    async def check_health(self) -> str:
        return "mock"


def build_llm_client(circuit_breaker: CircuitBreaker) -> ILLMClient:
    """Create the configured client: mock for local runs, OpenAI-compatible otherwise."""
    if settings.mock_llm:
        logger.info("Using mock LLM client")
        return MockLLMClient()
    return OpenAILLMClient(circuit_breaker)


__all__ = [
    "ChatCompletionResult",
    "ILLMClient",
    "OpenAILLMClient",
    "MockLLMClient",
    "build_llm_client",
    "CircuitBreaker",
    "CircuitSnapshot",
    "CircuitState",
    "RETRYABLE_STATUS_CODES",
]
