from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from draftsman.models import ToolCall, ToolResult

ASK_QUESTION = "ask_question"
TASK_COMPLETE = "task_complete"
CONTROL_TOOLS = frozenset({ASK_QUESTION, TASK_COMPLETE})

logger = logging.getLogger(__name__)


class ToolError(RuntimeError):
    """Raised by tool handlers for failures reported back to the model."""


@dataclass(slots=True)
class ToolContext:
    base_dir: Path
    specialist_id: str
    session: dict[str, Any] = field(default_factory=dict)

    def resolve(self, relative: str) -> Path:
        root = self.base_dir.resolve()
        target = (root / relative).resolve()
        if target != root and root not in target.parents:
            raise ToolError(f"Path escapes the project directory: {relative}")
        return target


ToolHandler = Callable[[dict[str, Any], ToolContext], Any | Awaitable[Any]]


@dataclass(slots=True)
class ToolSpec:
    name: str
    handler: ToolHandler
    description: str = ""


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(self, name: str, handler: ToolHandler, description: str = "") -> None:
        if name in CONTROL_TOOLS:
            raise ValueError(f"'{name}' is handled by the specialist runner.")
        self._tools[name] = ToolSpec(name=name, handler=handler, description=description)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def describe(self, allowed: list[str] | None = None) -> list[str]:
        names = [ASK_QUESTION, TASK_COMPLETE]
        for name in self.names():
            if allowed is None or name in allowed:
                names.append(name)
        return names

    async def execute(
        self,
        call: ToolCall,
        context: ToolContext,
        *,
        allowed: list[str] | None = None,
    ) -> ToolResult:
        spec = self._tools.get(call.name)
        if spec is None:
            return ToolResult(name=call.name, success=False, error=f"Unknown tool: {call.name}")
        if allowed is not None and call.name not in allowed:
            logger.info("Tool %s rejected for specialist %s", call.name, context.specialist_id)
            return ToolResult(
                name=call.name,
                success=False,
                error=f"Tool '{call.name}' is not allowed for {context.specialist_id}.",
            )
        try:
            output = spec.handler(call.arguments, context)
            if inspect.isawaitable(output):
                output = await output
        except (ToolError, OSError, KeyError, ValueError) as exc:
            return ToolResult(name=call.name, success=False, error=str(exc))
        return ToolResult(name=call.name, success=True, output=output)


def _read_file(arguments: dict[str, Any], context: ToolContext) -> str:
    path = context.resolve(str(arguments["path"]))
    if not path.is_file():
        raise ToolError(f"File not found: {arguments['path']}")
    return path.read_text(encoding="utf-8")


def _write_file(arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    path = context.resolve(str(arguments["path"]))
    content = str(arguments.get("content", ""))
    path.parent.mkdir(parents=True, exist_ok=True)
    if arguments.get("append"):
        with path.open("a", encoding="utf-8") as handle:
            handle.write(content)
    else:
        path.write_text(content, encoding="utf-8")
    return {"path": str(path.relative_to(context.base_dir.resolve())), "bytes": len(content)}


def _list_files(arguments: dict[str, Any], context: ToolContext) -> list[str]:
    root = context.resolve(str(arguments.get("path", ".")))
    if not root.is_dir():
        raise ToolError(f"Not a directory: {arguments.get('path', '.')}")
    base = context.base_dir.resolve()
    files: list[str] = []
    for item in root.rglob("*"):
        relative = item.relative_to(base)
        if item.is_file() and not any(part.startswith(".") for part in relative.parts):
            files.append(str(relative))
    return sorted(files)


def default_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register("read_file", _read_file, "Read a UTF-8 file from the project.")
    registry.register("write_file", _write_file, "Write or append a UTF-8 file in the project.")
    registry.register("list_files", _list_files, "List project files below a directory.")
    return registry
