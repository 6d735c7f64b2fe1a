"""Continuation payloads exchanged between the runner, the plan executor and the engine.

A suspended task is described by a :class:`ResumeContext`. The envelope has a
fixed part owned by the plan executor (``plan_executor_state``), the most
recent question (``ask_question_context``) and a free-form payload tagged with
the specialist that produced it. Merges always keep the plan executor's part.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from draftsman.models import Plan, StepResult, ToolCall, utcnow_iso

OutcomeKind = Literal["specialist_continued", "user_interaction_required", "specialist_failed"]
ErrorCategory = Literal["transient", "resource", "protocol", "cancelled", "internal"]

DEFAULT_QUESTION = "The assistant needs more information to continue. Please reply."

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LoopEvent:
    iteration: int
    kind: str
    summary: str
    success: bool = True
    timestamp: str = field(default_factory=utcnow_iso)
    tool: str = ""
    signature: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "kind": self.kind,
            "summary": self.summary,
            "success": self.success,
            "timestamp": self.timestamp,
            "tool": self.tool,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> LoopEvent:
        return cls(
            iteration=int(payload.get("iteration", 0)),
            kind=str(payload.get("kind", "")),
            summary=str(payload.get("summary", "")),
            success=bool(payload.get("success", True)),
            timestamp=str(payload.get("timestamp") or utcnow_iso()),
            tool=str(payload.get("tool", "")),
            signature=str(payload.get("signature", "")),
        )


@dataclass(slots=True)
class SpecialistLoopState:
    specialist_id: str
    current_iteration: int = 0
    max_iterations: int = 20
    execution_history: list[LoopEvent] = field(default_factory=list)
    is_looping: bool = False
    start_time: str = field(default_factory=utcnow_iso)
    last_continue_reason: str | None = None

    def record(self, event: LoopEvent, limit: int) -> None:
        self.execution_history.append(event)
        if limit > 0 and len(self.execution_history) > limit:
            del self.execution_history[: len(self.execution_history) - limit]

    def to_dict(self) -> dict[str, Any]:
        return {
            "specialist_id": self.specialist_id,
            "current_iteration": self.current_iteration,
            "max_iterations": self.max_iterations,
            "execution_history": [event.to_dict() for event in self.execution_history],
            "is_looping": self.is_looping,
            "start_time": self.start_time,
            "last_continue_reason": self.last_continue_reason,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SpecialistLoopState:
        return cls(
            specialist_id=str(payload.get("specialist_id", "")),
            current_iteration=int(payload.get("current_iteration", 0)),
            max_iterations=int(payload.get("max_iterations", 20)),
            execution_history=[
                LoopEvent.from_dict(item) for item in payload.get("execution_history") or []
            ],
            is_looping=bool(payload.get("is_looping", False)),
            start_time=str(payload.get("start_time") or utcnow_iso()),
            last_continue_reason=payload.get("last_continue_reason"),
        )


@dataclass(slots=True)
class PlanExecutorState:
    plan: Plan
    current_step_index: int
    step_results: dict[int, StepResult] = field(default_factory=dict)
    user_input: str = ""
    session_snapshot: dict[str, Any] = field(default_factory=dict)
    loop_state: SpecialistLoopState | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan": self.plan.to_dict(),
            "current_step_index": self.current_step_index,
            "step_results": {
                str(number): result.to_dict() for number, result in self.step_results.items()
            },
            "user_input": self.user_input,
            "session_snapshot": dict(self.session_snapshot),
            "loop_state": self.loop_state.to_dict() if self.loop_state else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PlanExecutorState:
        loop_state = payload.get("loop_state")
        return cls(
            plan=Plan.from_dict(payload["plan"]),
            current_step_index=int(payload.get("current_step_index", 0)),
            step_results={
                int(number): StepResult.from_dict(result)
                for number, result in (payload.get("step_results") or {}).items()
            },
            user_input=str(payload.get("user_input", "")),
            session_snapshot=dict(payload.get("session_snapshot") or {}),
            loop_state=SpecialistLoopState.from_dict(loop_state) if loop_state else None,
        )

    def copy(self) -> PlanExecutorState:
        return PlanExecutorState.from_dict(self.to_dict())


@dataclass(slots=True)
class AskQuestionContext:
    tool_call: ToolCall
    question: str
    options: list[str] = field(default_factory=list)
    raw_directive: str = ""
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_call": self.tool_call.to_dict(),
            "question": self.question,
            "options": list(self.options),
            "raw_directive": self.raw_directive,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AskQuestionContext:
        return cls(
            tool_call=ToolCall.from_dict(payload.get("tool_call") or {}),
            question=str(payload.get("question", "")),
            options=[str(item) for item in payload.get("options") or []],
            raw_directive=str(payload.get("raw_directive", "")),
            timestamp=str(payload.get("timestamp") or utcnow_iso()),
        )


@dataclass(slots=True)
class SpecialistPayload:
    specialist_id: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"specialist_id": self.specialist_id, "data": dict(self.data)}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SpecialistPayload:
        return cls(
            specialist_id=str(payload.get("specialist_id", "")),
            data=dict(payload.get("data") or {}),
        )


@dataclass(slots=True)
class ResumeContext:
    plan_executor_state: PlanExecutorState | None = None
    ask_question_context: AskQuestionContext | None = None
    specialist_payload: SpecialistPayload | None = None
    cycles: int = 0

    @property
    def question(self) -> str | None:
        if self.ask_question_context is None:
            return None
        return self.ask_question_context.question

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_executor_state": (
                self.plan_executor_state.to_dict() if self.plan_executor_state else None
            ),
            "ask_question_context": (
                self.ask_question_context.to_dict() if self.ask_question_context else None
            ),
            "specialist_payload": (
                self.specialist_payload.to_dict() if self.specialist_payload else None
            ),
            "cycles": self.cycles,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ResumeContext:
        plan_state = payload.get("plan_executor_state")
        question = payload.get("ask_question_context")
        specialist = payload.get("specialist_payload")
        return cls(
            plan_executor_state=PlanExecutorState.from_dict(plan_state) if plan_state else None,
            ask_question_context=AskQuestionContext.from_dict(question) if question else None,
            specialist_payload=SpecialistPayload.from_dict(specialist) if specialist else None,
            cycles=int(payload.get("cycles", 0)),
        )

    def copy(self) -> ResumeContext:
        return ResumeContext.from_dict(self.to_dict())


@dataclass(slots=True)
class SpecialistOutcome:
    kind: OutcomeKind
    specialist_id: str
    content: str = ""
    structured_data: dict[str, Any] = field(default_factory=dict)
    question: str | None = None
    options: list[str] = field(default_factory=list)
    error: str | None = None
    error_category: ErrorCategory | None = None
    cancelled: bool = False
    continuation: ResumeContext | None = None
    loop_state: SpecialistLoopState | None = None
    iterations: int = 0

    @classmethod
    def failed(
        cls,
        specialist_id: str,
        error: str,
        *,
        category: ErrorCategory,
        loop_state: SpecialistLoopState | None = None,
        iterations: int = 0,
    ) -> SpecialistOutcome:
        return cls(
            kind="specialist_failed",
            specialist_id=specialist_id,
            error=error,
            error_category=category,
            cancelled=category == "cancelled",
            loop_state=loop_state,
            iterations=iterations,
        )


def merge_resume_context(previous: ResumeContext, update: ResumeContext) -> ResumeContext:
    """Fold a specialist's fresh continuation into the context it was resumed from."""
    if (
        update.plan_executor_state is not None
        and previous.plan_executor_state is not None
        and update.plan_executor_state.to_dict() != previous.plan_executor_state.to_dict()
    ):
        logger.warning(
            "Discarding specialist-supplied plan executor state for plan %s",
            previous.plan_executor_state.plan.plan_id,
        )

    payload = previous.specialist_payload
    fresh = update.specialist_payload
    if fresh is not None:
        if payload is not None and payload.specialist_id == fresh.specialist_id:
            payload = SpecialistPayload(fresh.specialist_id, {**payload.data, **fresh.data})
        else:
            payload = SpecialistPayload(fresh.specialist_id, dict(fresh.data))
    elif payload is not None:
        payload = SpecialistPayload(payload.specialist_id, dict(payload.data))

    question = update.ask_question_context or previous.ask_question_context
    return ResumeContext(
        plan_executor_state=(
            previous.plan_executor_state.copy() if previous.plan_executor_state else None
        ),
        ask_question_context=AskQuestionContext.from_dict(question.to_dict()) if question else None,
        specialist_payload=payload,
        cycles=previous.cycles + 1,
    )


def build_resume_input(context: ResumeContext, answer: str) -> SpecialistPayload:
    """Return the specialist payload to resume with, carrying the user's answer."""
    if context.specialist_payload is not None:
        payload = SpecialistPayload.from_dict(context.specialist_payload.to_dict())
    else:
        specialist_id = ""
        if context.plan_executor_state and context.plan_executor_state.loop_state:
            specialist_id = context.plan_executor_state.loop_state.specialist_id
        payload = SpecialistPayload(specialist_id)

    answers = list(payload.data.get("answers") or [])
    question_context = context.ask_question_context
    answers.append(
        {
            "question": question_context.question if question_context else "",
            "answer": answer,
            "call_id": question_context.tool_call.call_id if question_context else "",
            "answered_at": utcnow_iso(),
        }
    )
    payload.data["answers"] = answers
    payload.data["pending_answer"] = answer
    return payload
