import json

import pytest

from draftsman.models import Plan, Step, StepResult, ToolCall
from draftsman.protocol import (
    AskQuestionContext,
    PlanExecutorState,
    ResumeContext,
    SpecialistPayload,
    build_resume_input,
    merge_resume_context,
)


def _plan() -> Plan:
    return Plan(
        plan_id="plan-abc123",
        description="Draft the handbook",
        steps=(
            Step(1, "fr_writer", "functional requirements"),
            Step(2, "overall_description_writer", "draft intro section"),
            Step(3, "summary_writer", "summary"),
        ),
    )


def _question(text: str, call_id: str = "call-1") -> AskQuestionContext:
    return AskQuestionContext(
        tool_call=ToolCall("ask_question", {"question": text}, call_id), question=text
    )


def _context() -> ResumeContext:
    return ResumeContext(
        plan_executor_state=PlanExecutorState(
            plan=_plan(),
            current_step_index=1,
            step_results={1: StepResult(1, "fr_writer", True, "FR-1 .. FR-4")},
            user_input="draft the handbook",
        ),
        ask_question_context=_question("confirm tone: formal or casual?"),
        specialist_payload=SpecialistPayload(
            "overall_description_writer", {"iteration": 1, "answers": []}
        ),
    )


def _plan_state_json(context: ResumeContext) -> str:
    assert context.plan_executor_state is not None
    return json.dumps(context.plan_executor_state.to_dict(), sort_keys=True)


@pytest.mark.parametrize("cycles", [1, 2, 3, 5])
def test_plan_state_survives_repeated_merges(cycles: int) -> None:
    original = _context()
    expected = _plan_state_json(original)
    context = original

    for cycle in range(cycles):
        bogus = PlanExecutorState(plan=_plan(), current_step_index=0)
        update = ResumeContext(
            plan_executor_state=bogus,
            ask_question_context=_question(f"question {cycle}", f"call-{cycle}"),
            specialist_payload=SpecialistPayload(
                "overall_description_writer", {"iteration": cycle + 2}
            ),
        )
        context = merge_resume_context(context, update)

    assert _plan_state_json(context) == expected
    assert context.cycles == cycles
    assert context.question == f"question {cycles - 1}"
    assert context.specialist_payload is not None
    assert context.specialist_payload.data["iteration"] == cycles + 1
    assert context.specialist_payload.data["answers"] == []


def test_merge_does_not_alias_previous_plan_state() -> None:
    previous = _context()
    merged = merge_resume_context(previous, ResumeContext())

    assert merged.plan_executor_state is not previous.plan_executor_state
    merged.plan_executor_state.current_step_index = 2  # type: ignore[union-attr]
    assert previous.plan_executor_state.current_step_index == 1  # type: ignore[union-attr]


def test_merge_keeps_previous_question_when_update_has_none() -> None:
    merged = merge_resume_context(_context(), ResumeContext())

    assert merged.question == "confirm tone: formal or casual?"
    assert merged.specialist_payload is not None
    assert merged.specialist_payload.specialist_id == "overall_description_writer"


def test_merge_replaces_payload_from_different_specialist() -> None:
    update = ResumeContext(specialist_payload=SpecialistPayload("summary_writer", {"draft": "x"}))

    merged = merge_resume_context(_context(), update)

    assert merged.specialist_payload is not None
    assert merged.specialist_payload.specialist_id == "summary_writer"
    assert merged.specialist_payload.data == {"draft": "x"}


def test_build_resume_input_appends_answer() -> None:
    context = _context()

    payload = build_resume_input(context, "formal")

    assert payload.specialist_id == "overall_description_writer"
    assert payload.data["pending_answer"] == "formal"
    assert payload.data["answers"][-1]["question"] == "confirm tone: formal or casual?"
    assert payload.data["answers"][-1]["answer"] == "formal"
    assert payload.data["answers"][-1]["call_id"] == "call-1"
    assert context.specialist_payload is not None
    assert context.specialist_payload.data["answers"] == []


def test_resume_context_roundtrip_restores_integer_step_keys() -> None:
    restored = ResumeContext.from_dict(json.loads(json.dumps(_context().to_dict())))

    assert restored.plan_executor_state is not None
    assert list(restored.plan_executor_state.step_results) == [1]
    assert restored.plan_executor_state.plan == _plan()
