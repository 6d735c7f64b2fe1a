from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from draftsman.models import ToolCall

FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
TOOL_NAME_ALIASES = {
    "askQuestion": "ask_question",
    "taskComplete": "task_complete",
    "readFile": "read_file",
    "writeFile": "write_file",
    "listFiles": "list_files",
}


class DirectiveParseError(ValueError):
    """Raised when model output looks like a directive but cannot be decoded."""

    def __init__(self, message: str, raw: str) -> None:
        super().__init__(message)
        self.raw = raw


class EmptyResponseError(ValueError):
    """Raised when the model returns no text at all."""


@dataclass(slots=True)
class Directive:
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    raw: str = ""


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    """Return every top-level JSON object embedded in ``raw_text``, in order."""
    payloads: list[dict[str, Any]] = []
    decoder = json.JSONDecoder()
    index = 0
    while True:
        start = raw_text.find("{", index)
        if start < 0:
            break
        try:
            parsed, end = decoder.raw_decode(raw_text, start)
        except json.JSONDecodeError:
            index = start + 1
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
        index = end
    return payloads


def _candidate_payloads(raw_text: str) -> list[dict[str, Any]]:
    stripped = raw_text.strip()
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return [parsed]
    payloads: list[dict[str, Any]] = []
    for block in FENCE_PATTERN.findall(raw_text):
        payloads.extend(extract_json_objects(block))
    if payloads:
        return payloads
    return extract_json_objects(raw_text)


def _normalize_tool_call(entry: Any, position: int, raw: str) -> ToolCall:
    if not isinstance(entry, dict):
        raise DirectiveParseError(f"Tool call #{position} is not an object.", raw)
    name = entry.get("name") or entry.get("tool")
    if not isinstance(name, str) or not name.strip():
        raise DirectiveParseError(f"Tool call #{position} has no name.", raw)
    arguments = entry.get("args", entry.get("arguments", {}))
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError as exc:
            raise DirectiveParseError(
                f"Tool call '{name}' carries undecodable arguments.", raw
            ) from exc
    if not isinstance(arguments, dict):
        raise DirectiveParseError(f"Tool call '{name}' arguments must be an object.", raw)
    call_id = entry.get("id") or entry.get("call_id") or f"call-{position}"
    normalized = TOOL_NAME_ALIASES.get(name.strip(), name.strip())
    return ToolCall(name=normalized, arguments=arguments, call_id=str(call_id))


def parse_directive(raw_text: str) -> Directive:
    if not raw_text or not raw_text.strip():
        raise EmptyResponseError("Model returned an empty response.")

    for payload in _candidate_payloads(raw_text):
        if "tool_calls" not in payload and "content" not in payload:
            continue
        entries = payload.get("tool_calls") or []
        if not isinstance(entries, list):
            raise DirectiveParseError("'tool_calls' must be a list.", raw_text)
        calls = [
            _normalize_tool_call(entry, position, raw_text)
            for position, entry in enumerate(entries, start=1)
        ]
        content = payload.get("content")
        return Directive(
            content=content if isinstance(content, str) else "",
            tool_calls=calls,
            raw=raw_text,
        )

    if '"tool_calls"' in raw_text:
        raise DirectiveParseError("Response mentions tool_calls but no valid JSON.", raw_text)
    return Directive(content=raw_text.strip(), tool_calls=[], raw=raw_text)
