"""
Validated JSON Completions
==========================

Calls the LLM for a JSON document, repairs and validates it, and asks the
model to correct itself a bounded number of times.

Outcomes are returned, not raised: LLMJsonSuccess or LLMJsonFailure (which
keeps the raw model output for the audit log). An unreachable provider is a
different kind of problem and propagates as LLMUnavailableException.
"""

import json
from dataclasses import dataclass
from typing import Any, Callable, Generic, List, Optional, TypeVar, Union

from feedback_triage.core import LLMException, LLMUnavailableException, ValidationException
from feedback_triage.infrastructure.llm import ILLMClient
from feedback_triage.infrastructure.llm.json_repair import repair_json
from feedback_triage.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

CORRECTION_PROMPT = (
    "Your previous response was not valid JSON or did not match the required "
    "schema ({error}). Respond again with ONLY the corrected JSON object. "
    "No markdown, no explanation, no code fences."
)


@dataclass
class LLMJsonSuccess(Generic[T]):
    data: T
    raw_content: str

    @property
    def ok(self) -> bool:
        return True


@dataclass
class LLMJsonFailure:
    error: str
    raw_content: Optional[str] = None

    @property
    def ok(self) -> bool:
        return False


LLMJsonResult = Union[LLMJsonSuccess[T], LLMJsonFailure]


def parse_llm_json(raw: str) -> Any:
    """json.loads, falling back to a repaired copy of the text."""
    try:
        return json.loads(raw)
    except ValueError:
        return json.loads(repair_json(raw))


async def llm_json_completion(
    llm: ILLMClient,
    *,
    system_prompt: str,
    user_prompt: str,
    validate: Callable[[Any], T],
    temperature: float = 0.2,
    max_tokens: int = 4096,
    max_retries: int = 1,
    operation: str = "json_completion",
) -> LLMJsonResult:
    """
    Request a JSON document and validate it.

    Args:
        llm: Client used for every attempt
        system_prompt: Instructions demanding raw JSON only
        user_prompt: Context for this call
        validate: Coerces the parsed value or raises ValidationException
        max_retries: Corrective follow-up turns after the first answer

    Raises:
        LLMUnavailableException: the provider could not be reached
    """
    messages: List[dict] = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]
    raw_content: Optional[str] = None
    error = "no attempt made"

    for attempt in range(max_retries + 1):
        try:
            response = await llm.chat_completion(
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                operation=operation,
            )
        except LLMUnavailableException:
            raise
        except LLMException as e:
            return LLMJsonFailure(error=e.message, raw_content=raw_content)

        raw_content = response.content
        try:
            data = validate(parse_llm_json(raw_content))
        except (ValueError, ValidationException) as e:
            error = str(e)
        else:
            return LLMJsonSuccess(data=data, raw_content=raw_content)

        logger.warning(
            "LLM returned unusable JSON",
            extra={
                "operation": operation,
                "attempt": attempt + 1,
                "max_attempts": max_retries + 1,
                "error": error,
            }
        )
        messages = [
            *messages,
            {"role": "assistant", "content": raw_content},
            {"role": "user", "content": CORRECTION_PROMPT.format(error=error)},
        ]

    return LLMJsonFailure(
        error=f"Invalid JSON after {max_retries + 1} attempt(s): {error}",
        raw_content=raw_content,
    )
