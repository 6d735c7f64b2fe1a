"""Repeated tool-call detection over a specialist's execution history."""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from draftsman.protocol import LoopEvent

TOOL_CALL = "tool_call"
REPEAT_THRESHOLD = 3


def call_signature(name: str, arguments: dict[str, Any]) -> str:
    try:
        encoded = json.dumps(arguments, sort_keys=True, default=str)
    except (TypeError, ValueError):
        encoded = repr(sorted(arguments.items(), key=lambda item: item[0]))
    return f"{name}:{encoded}"


def _tool_calls(history: Sequence[LoopEvent]) -> list[LoopEvent]:
    return [event for event in history if event.kind == TOOL_CALL and event.signature]


def detect_loop(history: Sequence[LoopEvent]) -> str | None:
    """Return a description of the repetition at the end of history, if any."""
    calls = _tool_calls(history)
    recent = [event.signature for event in calls[-REPEAT_THRESHOLD:]]
    if len(recent) == REPEAT_THRESHOLD and len(set(recent)) == 1:
        return (
            f"{calls[-1].tool} was called {REPEAT_THRESHOLD} times in a row "
            "with the same arguments"
        )
    pattern = calls[-4:]
    if len(pattern) == 4:
        first, second, third, fourth = (event.signature for event in pattern)
        if first == third and second == fourth and first != second:
            return f"{pattern[0].tool} and {pattern[1].tool} keep alternating"
    return None


def recent_success(history: Sequence[LoopEvent], signature: str) -> LoopEvent | None:
    """Find the identical call in the trailing run of repeats, if it succeeded."""
    for event in reversed(_tool_calls(history)):
        if event.signature != signature:
            return None
        if event.success:
            return event
    return None
