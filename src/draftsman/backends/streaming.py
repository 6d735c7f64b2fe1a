from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from typing import Any


def render_user_prompt(
    user_prompt: str,
    context: dict[str, Any],
    tools: list[str] | None,
) -> str:
    parts = [user_prompt]
    visible_context = {key: value for key, value in context.items() if not key.startswith("_")}
    if visible_context:
        parts.append("Context JSON:")
        parts.append(json.dumps(visible_context, ensure_ascii=False, indent=2))
    if tools:
        parts.append("Available tools:")
        parts.append(json.dumps(tools, ensure_ascii=False))
    return "\n\n".join(parts)


def extract_content(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    delta = event.get("delta")
    if isinstance(delta, str):
        return delta
    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return extract_content(message)
    return ""


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


async def iter_json_stream(
    lines: AsyncIterator[bytes],
    *,
    passthrough_text: bool,
    on_event: Callable[[dict[str, Any]], None] | None = None,
) -> AsyncIterator[str]:
    """Decode a line-delimited JSON event stream into text chunks.

    Lines that only parse once joined with the following lines are buffered.
    Non-JSON lines are yielded verbatim when ``passthrough_text`` is set.
    """
    parse_buffer = ""
    async for raw_line in lines:
        line = raw_line.decode("utf-8", errors="replace").strip()
        if not line:
            continue
        candidate = f"{parse_buffer}{line}" if parse_buffer else line
        try:
            event = json.loads(candidate)
            parse_buffer = ""
        except json.JSONDecodeError:
            if appears_partial_json(candidate):
                parse_buffer = candidate
                continue
            parse_buffer = ""
            if passthrough_text:
                yield line
            continue

        if not isinstance(event, dict):
            continue
        content = extract_content(event)
        if on_event is not None:
            on_event({"type": str(event.get("type", "")), "has_content": bool(content)})
        if content:
            yield content

    if parse_buffer and passthrough_text:
        yield parse_buffer
