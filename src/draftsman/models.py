from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

Stage = Literal["idle", "planning", "executing", "awaiting_user", "completed", "error"]
InteractionKind = Literal["input", "choice", "confirmation"]

STAGES: frozenset[str] = frozenset(
    {"idle", "planning", "executing", "awaiting_user", "completed", "error"}
)
ACTIVE_STAGES: frozenset[str] = frozenset({"planning", "executing", "awaiting_user"})


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class PendingInteraction:
    message: str
    options: list[str] = field(default_factory=list)
    kind: InteractionKind = "input"
    specialist_id: str | None = None

    @classmethod
    def for_question(
        cls,
        message: str,
        options: list[str] | None = None,
        specialist_id: str | None = None,
    ) -> PendingInteraction:
        choices = [str(option) for option in options or []]
        kind: InteractionKind = "choice" if choices else "input"
        if sorted(choice.lower() for choice in choices) == ["no", "yes"]:
            kind = "confirmation"
        return cls(message=message, options=choices, kind=kind, specialist_id=specialist_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "options": list(self.options),
            "kind": self.kind,
            "specialist_id": self.specialist_id,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PendingInteraction:
        kind = payload.get("kind", "input")
        return cls(
            message=str(payload.get("message", "")),
            options=[str(item) for item in payload.get("options") or []],
            kind=kind if kind in {"input", "choice", "confirmation"} else "input",
            specialist_id=payload.get("specialist_id"),
        )


@dataclass(slots=True, frozen=True)
class Step:
    number: int
    specialist: str
    description: str
    inputs: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[int, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "specialist": self.specialist,
            "description": self.description,
            "inputs": dict(self.inputs),
            "depends_on": list(self.depends_on),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Step:
        return cls(
            number=int(payload["number"]),
            specialist=str(payload["specialist"]),
            description=str(payload.get("description", "")),
            inputs=dict(payload.get("inputs") or {}),
            depends_on=tuple(int(item) for item in payload.get("depends_on") or []),
        )


@dataclass(slots=True, frozen=True)
class Plan:
    plan_id: str
    description: str
    steps: tuple[Step, ...]

    @classmethod
    def create(cls, description: str, steps: list[Step]) -> Plan:
        return cls(
            plan_id=f"plan-{uuid4().hex[:12]}",
            description=description,
            steps=tuple(steps),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "description": self.description,
            "steps": [step.to_dict() for step in self.steps],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Plan:
        return cls(
            plan_id=str(payload["plan_id"]),
            description=str(payload.get("description", "")),
            steps=tuple(Step.from_dict(item) for item in payload.get("steps") or []),
        )


@dataclass(slots=True, frozen=True)
class StepResult:
    step_number: int
    specialist: str
    success: bool
    content: str = ""
    structured_data: dict[str, Any] = field(default_factory=dict)
    iterations: int = 0
    completed_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_number": self.step_number,
            "specialist": self.specialist,
            "success": self.success,
            "content": self.content,
            "structured_data": dict(self.structured_data),
            "iterations": self.iterations,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> StepResult:
        return cls(
            step_number=int(payload["step_number"]),
            specialist=str(payload["specialist"]),
            success=bool(payload.get("success", False)),
            content=str(payload.get("content", "")),
            structured_data=dict(payload.get("structured_data") or {}),
            iterations=int(payload.get("iterations", 0)),
            completed_at=str(payload.get("completed_at") or utcnow_iso()),
        )


@dataclass(slots=True, frozen=True)
class ToolCall:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    call_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "arguments": dict(self.arguments), "call_id": self.call_id}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ToolCall:
        return cls(
            name=str(payload.get("name", "")),
            arguments=dict(payload.get("arguments") or {}),
            call_id=str(payload.get("call_id", "")),
        )


@dataclass(slots=True, frozen=True)
class ToolResult:
    name: str
    success: bool
    output: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"tool": self.name, "success": self.success}
        if self.output is not None:
            payload["output"] = self.output
        if self.error:
            payload["error"] = self.error
        return payload
