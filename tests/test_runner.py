import asyncio
import json
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from draftsman.backends import RetryPolicy
from draftsman.backends.base import (
    AgentBackend,
    BackendExecutionError,
    ContextLengthExceededError,
)
from draftsman.config import SpecialistsConfig
from draftsman.models import Step
from draftsman.protocol import SpecialistOutcome, build_resume_input
from draftsman.runner import SpecialistRunner
from draftsman.specialists import (
    FunctionalRequirementsWriterAgent,
    OverallDescriptionWriterAgent,
    PlannerAgent,
)
from draftsman.specialists.base import ContextBundle
from draftsman.tools import default_registry


def _directive(*calls: dict[str, Any], content: str = "") -> str:
    return json.dumps({"content": content, "tool_calls": list(calls)})


def _ask(question: str, options: list[str] | None = None) -> dict[str, Any]:
    return {"name": "ask_question", "args": {"question": question, "options": options or []}}


def _complete(summary: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"name": "task_complete", "args": {"summary": summary, "data": data or {}}}


class ScriptedBackend(AgentBackend):
    def __init__(self, respond: Callable[[str, dict[str, Any]], Any]) -> None:
        self.respond = respond
        self.prompts: list[str] = []
        self.tools: list[list[str] | None] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt
        self.prompts.append(user_prompt)
        self.tools.append(tools)
        reply = self.respond(user_prompt, context)
        if isinstance(reply, Exception):
            raise reply
        yield reply


async def _no_sleep(delay: float) -> None:
    _ = delay


def _runner(backend: AgentBackend, tmp_path: Path, **kwargs: Any) -> SpecialistRunner:
    return SpecialistRunner(
        backend,
        default_registry(),
        retry_policy=RetryPolicy(max_retries=2, backoff_seconds=0.0),
        base_dir=tmp_path,
        sleep=_no_sleep,
        **kwargs,
    )


def _bundle(description: str = "draft intro section") -> ContextBundle:
    return ContextBundle(
        user_input=description,
        step=Step(number=1, specialist="overall_description_writer", description=description),
    )


def _run(runner: SpecialistRunner) -> SpecialistOutcome:
    return asyncio.run(runner.run(OverallDescriptionWriterAgent(), _bundle()))


def test_runner_executes_tools_until_task_complete(tmp_path: Path) -> None:
    replies = iter(
        [
            _directive({"name": "write_file", "args": {"path": "intro.md", "content": "Hi"}}),
            _directive(_complete("Intro written.", {"files": ["intro.md"]})),
        ]
    )
    events: list[dict[str, Any]] = []
    backend = ScriptedBackend(lambda prompt, context: next(replies))
    runner = _runner(backend, tmp_path, event_hook=events.append)

    outcome = asyncio.run(runner.run(OverallDescriptionWriterAgent(), _bundle()))

    assert outcome.kind == "specialist_continued"
    assert outcome.content == "Intro written."
    assert outcome.structured_data == {"files": ["intro.md"]}
    assert outcome.iterations == 2
    assert outcome.loop_state is not None
    assert outcome.loop_state.is_looping is False
    assert (tmp_path / "intro.md").read_text(encoding="utf-8") == "Hi"
    assert '"tool": "write_file"' in backend.prompts[1]
    assert backend.tools[0] == [
        "ask_question",
        "task_complete",
        "list_files",
        "read_file",
        "write_file",
    ]
    assert [event["event"] for event in events].count("specialist_iteration") == 2


def test_runner_suspends_on_ask_question(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        lambda prompt, context: _directive(
            _ask("confirm tone: formal or casual?", ["formal", "casual"]),
            content="Need the tone first.",
        )
    )

    outcome = _run(_runner(backend, tmp_path))

    assert outcome.kind == "user_interaction_required"
    assert outcome.question == "confirm tone: formal or casual?"
    assert outcome.options == ["formal", "casual"]
    assert outcome.continuation is not None
    assert outcome.continuation.plan_executor_state is None
    payload = outcome.continuation.specialist_payload
    assert payload is not None
    assert payload.specialist_id == "overall_description_writer"
    assert payload.data["iteration"] == 1
    assert outcome.continuation.ask_question_context is not None
    assert outcome.continuation.ask_question_context.tool_call.call_id == "call-1"


def test_runner_resumes_with_answer_and_does_not_reask(tmp_path: Path) -> None:
    def respond(prompt: str, context: dict[str, Any]) -> str:
        _ = context
        if "Already answered by the user: formal" in prompt:
            return _directive(_complete("Intro drafted in a formal tone."))
        return _directive(_ask("Confirm tone: formal or casual?"))

    backend = ScriptedBackend(respond)
    runner = _runner(backend, tmp_path)
    agent = OverallDescriptionWriterAgent()
    first = asyncio.run(runner.run(agent, _bundle()))
    assert first.continuation is not None

    resume = build_resume_input(first.continuation, "formal")
    second = asyncio.run(runner.run(agent, _bundle(), resume=resume, loop_state=first.loop_state))

    assert second.kind == "specialist_continued"
    assert second.content == "Intro drafted in a formal tone."
    assert second.iterations == 3
    assert "A: formal" in backend.prompts[1]
    assert '"answer": "formal"' in backend.prompts[1]


def test_runner_ignores_payload_from_other_specialist(tmp_path: Path) -> None:
    backend = ScriptedBackend(lambda prompt, context: _directive(_complete("done")))
    agent = OverallDescriptionWriterAgent()
    first = asyncio.run(
        _runner(ScriptedBackend(lambda p, c: _directive(_ask("Audience?"))), tmp_path).run(
            FunctionalRequirementsWriterAgent(), _bundle()
        )
    )
    assert first.continuation is not None

    outcome = asyncio.run(
        _runner(backend, tmp_path).run(
            agent, _bundle(), resume=build_resume_input(first.continuation, "engineers")
        )
    )

    assert outcome.kind == "specialist_continued"
    assert outcome.iterations == 1
    assert "Answered questions" not in backend.prompts[0]


def test_plain_text_reply_gets_format_correction(tmp_path: Path) -> None:
    replies = iter(["Sure, I will write it.", _directive(_complete("ok"))])
    backend = ScriptedBackend(lambda prompt, context: next(replies))

    outcome = _run(_runner(backend, tmp_path))

    assert outcome.kind == "specialist_continued"
    assert "contained no tool calls" in backend.prompts[1]


def test_empty_response_is_protocol_failure(tmp_path: Path) -> None:
    backend = ScriptedBackend(lambda prompt, context: "")

    outcome = _run(_runner(backend, tmp_path))

    assert outcome.kind == "specialist_failed"
    assert outcome.error_category == "protocol"
    assert outcome.cancelled is False
    assert len(backend.prompts) == 1


def test_context_length_failure_is_not_retried(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        lambda prompt, context: ContextLengthExceededError("prompt is too long", backend="fake")
    )

    outcome = _run(_runner(backend, tmp_path))

    assert outcome.kind == "specialist_failed"
    assert outcome.error_category == "resource"
    assert len(backend.prompts) == 1


def test_transient_failure_is_retried_with_backoff(tmp_path: Path) -> None:
    failures = {"remaining": 2}
    sleeps: list[float] = []
    events: list[dict[str, Any]] = []

    def respond(prompt: str, context: dict[str, Any]) -> Any:
        _ = prompt, context
        if failures["remaining"]:
            failures["remaining"] -= 1
            return BackendExecutionError("connection reset", retriable=True)
        return _directive(_complete("done"))

    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    runner = SpecialistRunner(
        ScriptedBackend(respond),
        default_registry(),
        retry_policy=RetryPolicy(max_retries=2, backoff_seconds=1.0),
        base_dir=tmp_path,
        event_hook=events.append,
        sleep=record_sleep,
    )

    outcome = asyncio.run(runner.run(OverallDescriptionWriterAgent(), _bundle()))

    assert outcome.kind == "specialist_continued"
    assert sleeps == [1.0, 2.0]
    assert [event["attempt"] for event in events if event["event"] == "backend_retry"] == [1, 2]


def test_transient_failure_exhausting_retries_is_transient_category(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        lambda prompt, context: BackendExecutionError("connection reset", retriable=True)
    )

    outcome = _run(_runner(backend, tmp_path))

    assert outcome.error_category == "transient"
    assert len(backend.prompts) == 3


def test_cancel_check_stops_before_next_iteration(tmp_path: Path) -> None:
    cancelled = {"flag": False}

    def respond(prompt: str, context: dict[str, Any]) -> str:
        _ = prompt, context
        cancelled["flag"] = True
        return _directive({"name": "list_files", "args": {}})

    backend = ScriptedBackend(respond)
    outcome = asyncio.run(
        _runner(backend, tmp_path).run(
            OverallDescriptionWriterAgent(), _bundle(), cancel_check=lambda: cancelled["flag"]
        )
    )

    assert outcome.kind == "specialist_failed"
    assert outcome.cancelled is True
    assert outcome.error_category == "cancelled"
    assert len(backend.prompts) == 1


def test_iteration_limit_comes_from_specialist_config(tmp_path: Path) -> None:
    backend = ScriptedBackend(lambda prompt, context: _directive({"name": "list_files"}))
    runner = _runner(
        backend,
        tmp_path,
        iteration_limits=SpecialistsConfig(overrides={"overall_description_writer": 3}),
    )

    outcome = asyncio.run(runner.run(OverallDescriptionWriterAgent(), _bundle()))

    assert outcome.kind == "specialist_failed"
    assert outcome.error_category == "protocol"
    assert "3 iterations" in (outcome.error or "")
    assert len(backend.prompts) == 3


def test_disallowed_tool_is_reported_back_to_model(tmp_path: Path) -> None:
    replies = iter(
        [
            _directive({"name": "write_file", "args": {"path": "plan.md", "content": "x"}}),
            _directive(_complete("done")),
        ]
    )
    backend = ScriptedBackend(lambda prompt, context: next(replies))

    outcome = asyncio.run(_runner(backend, tmp_path).run(PlannerAgent(), _bundle()))

    assert outcome.kind == "specialist_continued"
    assert "not allowed" in backend.prompts[1]
    assert not (tmp_path / "plan.md").exists()


def test_answer_to_question_on_last_iteration_is_still_processed(tmp_path: Path) -> None:
    def respond(prompt: str, context: dict[str, Any]) -> str:
        _ = context
        if "A: formal" in prompt:
            return _directive(_complete("Intro drafted in a formal tone."))
        return _directive(_ask("Confirm tone: formal or casual?"))

    backend = ScriptedBackend(respond)
    runner = _runner(
        backend,
        tmp_path,
        iteration_limits=SpecialistsConfig(overrides={"overall_description_writer": 1}),
    )
    agent = OverallDescriptionWriterAgent()
    first = asyncio.run(runner.run(agent, _bundle()))
    assert first.kind == "user_interaction_required"
    assert first.iterations == 1
    assert first.continuation is not None

    second = asyncio.run(
        runner.run(
            agent,
            _bundle(),
            resume=build_resume_input(first.continuation, "formal"),
            loop_state=first.loop_state,
        )
    )

    assert second.kind == "specialist_continued"
    assert second.content == "Intro drafted in a formal tone."
    assert second.iterations == 2
    assert len(backend.prompts) == 2


def test_repeated_identical_tool_call_is_corrected_then_failed(tmp_path: Path) -> None:
    (tmp_path / "intro.md").write_text("Hello", encoding="utf-8")
    reads = {"count": 0}
    events: list[dict[str, Any]] = []

    def respond(prompt: str, context: dict[str, Any]) -> str:
        _ = prompt, context
        reads["count"] += 1
        return _directive({"name": "read_file", "args": {"path": "intro.md"}})

    backend = ScriptedBackend(respond)

    outcome = _run(_runner(backend, tmp_path, event_hook=events.append))

    assert outcome.kind == "specialist_failed"
    assert outcome.error_category == "protocol"
    assert "stuck in a loop" in (outcome.error or "")
    assert "3 times in a row" in (outcome.error or "")
    assert len(backend.prompts) == 4
    assert "Already executed with the same arguments in iteration 1" in backend.prompts[2]
    assert "Loop detected" in backend.prompts[3]
    assert [event["event"] for event in events].count("loop_detected") == 1
    assert [
        event["tool"] for event in events if event["event"] == "tool_executed"
    ] == ["read_file"]


def test_alternating_tool_calls_get_a_loop_correction(tmp_path: Path) -> None:
    (tmp_path / "a.md").write_text("A", encoding="utf-8")
    (tmp_path / "b.md").write_text("B", encoding="utf-8")
    replies = iter(
        [
            _directive({"name": "read_file", "args": {"path": "a.md"}}),
            _directive({"name": "read_file", "args": {"path": "b.md"}}),
            _directive({"name": "read_file", "args": {"path": "a.md"}}),
            _directive({"name": "read_file", "args": {"path": "b.md"}}),
            _directive(_complete("Compared both files.")),
        ]
    )
    backend = ScriptedBackend(lambda prompt, context: next(replies))

    outcome = _run(_runner(backend, tmp_path))

    assert outcome.kind == "specialist_continued"
    assert outcome.iterations == 5
    assert "keep alternating" in backend.prompts[4]
    assert "Loop detected" not in backend.prompts[3]
    assert outcome.loop_state is not None
    assert "loop_detected" in [event.kind for event in outcome.loop_state.execution_history]
