"""
JSON Repair
===========

Best-effort cleanup of almost-valid JSON produced by LLMs: markdown fences,
comments, prose around the payload, trailing commas, bare keys, single-quoted
values, raw newlines inside strings and output truncated at the token limit.
"""

import json
import re

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")
_LINE_COMMENT = re.compile(r'(?<!["\w:])//[^\n]*')
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_TRAILING_COMMA = re.compile(r",\s*([\]}])")
_BARE_KEY = re.compile(r"([{,]\s*)([A-Za-z_$][\w$]*)\s*:")
_SINGLE_QUOTED_VALUE = re.compile(r":\s*'([^']*)'")
_STRING_LITERAL = re.compile(r'"((?:[^"\\]|\\.)*)"', re.DOTALL)
_PARTIAL_TAIL = re.compile(r',\s*"[^"]*"?\s*:?\s*"?[^"]*$')


def _find_balanced_end(text: str) -> int:
    """Index of the bracket closing text[0], or -1 when the input is truncated."""
    open_char = text[0]
    close_char = "}" if open_char == "{" else "]"
    depth = 0
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == open_char:
            depth += 1
        elif char == close_char:
            depth -= 1
            if depth == 0:
                return index
    return -1


def _close_truncated(text: str) -> str:
    """Drop a dangling key/value and append the missing closers in nesting order."""
    stack = []
    in_string = False
    escaped = False
    for char in text:
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]" and stack:
            stack.pop()

    if in_string:
        text = _PARTIAL_TAIL.sub("", text)
        if text.count('"') % 2:
            text += '"'
    text = re.sub(r",\s*$", "", text.rstrip())
    text = re.sub(r":\s*$", ": null", text)
    return text + "".join(reversed(stack))


def _parses(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def _escape_control_chars(match: re.Match) -> str:
    content = match.group(1)
    content = content.replace("\n", "\\n").replace("\r", "\\r").replace("\t", "\\t")
    return f'"{content}"'


def repair_json(raw: str) -> str:
    """
    Return a best-effort valid JSON string extracted from raw LLM output.

    The result is not guaranteed to parse; callers still run json.loads
    and treat a second failure as a validation failure.
    """
    text = raw.strip()
    text = _FENCE_OPEN.sub("", text)
    text = _FENCE_CLOSE.sub("", text).strip()

    text = _BLOCK_COMMENT.sub("", text)
    text = _LINE_COMMENT.sub("", text)

    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return text
    text = text[min(starts):]

    end = _find_balanced_end(text)
    if end != -1:
        text = text[: end + 1]
    else:
        text = _close_truncated(text)

    text = _TRAILING_COMMA.sub(r"\1", text)
    if _parses(text):
        return text

    text = _BARE_KEY.sub(r'\1"\2":', text)
    text = _SINGLE_QUOTED_VALUE.sub(r': "\1"', text)
    text = _STRING_LITERAL.sub(_escape_control_chars, text)
    return text
