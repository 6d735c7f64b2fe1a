import asyncio
import json
import re
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from draftsman.backends import RetryPolicy
from draftsman.backends.base import AgentBackend
from draftsman.engine import INTERRUPTED_MESSAGE, Engine, EngineDisposedError
from draftsman.models import Plan, Step
from draftsman.planner import PlanGenerator
from draftsman.runner import SpecialistRunner
from draftsman.session import SessionStore
from draftsman.specialists import PlannerAgent, build_specialists
from draftsman.tools import default_registry

TONE_QUESTION = "confirm tone: formal or casual?"


def _directive(*calls: dict[str, Any]) -> str:
    return json.dumps({"content": "", "tool_calls": list(calls)})


def _ask(question: str) -> str:
    return _directive(
        {"name": "ask_question", "args": {"question": question, "options": ["formal", "casual"]}}
    )


def _complete(summary: str) -> str:
    return _directive({"name": "task_complete", "args": {"summary": summary}})


def _answer(prompt: str) -> str | None:
    match = re.search(r"^  A: (.*)$", prompt, re.MULTILINE)
    return match.group(1) if match else None


class ToneBackend(AgentBackend):
    """Plans one intro step whose writer asks for the tone before drafting."""

    def __init__(self, after_answer: Callable[[str, str], str] | None = None) -> None:
        self.after_answer = after_answer or (
            lambda prompt, answer: _complete(f"Intro drafted in a {answer} tone.")
        )
        self.calls: list[str] = []
        self.questions_asked = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, tools
        specialist = context["specialist"]
        self.calls.append(specialist)
        if specialist == "planner":
            yield json.dumps(
                {
                    "plan": {
                        "description": "Draft the introduction",
                        "steps": [
                            {
                                "specialist": "overall_description_writer",
                                "description": "draft intro section",
                            }
                        ],
                    }
                }
            )
            return
        answer = _answer(user_prompt)
        if answer is None:
            self.questions_asked += 1
            yield _ask(TONE_QUESTION)
            return
        yield self.after_answer(user_prompt, answer)


async def _no_sleep(delay: float) -> None:
    _ = delay


def _engine(backend: AgentBackend, tmp_path: Path, **kwargs: Any) -> Engine:
    runner = SpecialistRunner(
        backend,
        default_registry(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0),
        base_dir=tmp_path,
        sleep=_no_sleep,
    )
    specialists = build_specialists()
    return Engine(
        runner,
        specialists,
        PlanGenerator(runner, PlannerAgent(), specialists),
        session_store=SessionStore(tmp_path),
        cancellation_poll_interval=0.01,
        cancellation_timeout=2.0,
        **kwargs,
    )


def test_question_answer_scenario_completes_without_reasking(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    backend = ToneBackend()
    engine = _engine(backend, tmp_path, event_hook=events.append)

    first = asyncio.run(engine.handle_message("draft intro section"))

    assert first.stage == "awaiting_user"
    assert first.pending_interaction is not None
    assert first.pending_interaction.message == TONE_QUESTION
    assert first.pending_interaction.kind == "choice"
    assert engine.is_awaiting_user() is True
    assert engine.is_executing() is True

    second = asyncio.run(engine.handle_message("formal"))

    assert second.stage == "completed"
    assert second.last_result == "Intro drafted in a formal tone."
    assert second.pending_interaction is None
    assert second.resume_context is None
    assert backend.questions_asked == 1
    assert backend.calls == ["planner", "overall_description_writer", "overall_description_writer"]
    names = [event["event"] for event in events]
    assert names.index("question") < names.index("user_response") < names.index("task_completed")
    assert [entry.kind for entry in second.history] == [
        "task",
        "question",
        "user_response",
        "result",
    ]


@pytest.mark.parametrize(
    ("after_answer", "stage", "keeps_context"),
    [
        (lambda prompt, answer: _complete("done"), "completed", False),
        (lambda prompt, answer: _ask("Which audience?"), "awaiting_user", True),
        (lambda prompt, answer: "", "error", True),
    ],
    ids=["continued", "interaction", "failed"],
)
def test_every_outcome_maps_to_a_stage(
    tmp_path: Path,
    after_answer: Callable[[str, str], str],
    stage: str,
    keeps_context: bool,
) -> None:
    engine = _engine(ToneBackend(after_answer), tmp_path)
    asyncio.run(engine.handle_message("draft intro section"))

    state = asyncio.run(engine.handle_message("formal"))

    assert state.stage == stage
    assert (state.resume_context is not None) is keeps_context
    assert state.cancelled is False
    if stage == "awaiting_user":
        assert state.pending_interaction is not None
        assert state.pending_interaction.message == "Which audience?"
        assert state.resume_context is not None and state.resume_context.cycles == 1
    if stage == "error":
        assert state.resume_context is not None
        assert state.resume_context.question == TONE_QUESTION
        assert "unusable response" in (state.last_result or "")


def test_planner_direct_response_completes_immediately(tmp_path: Path) -> None:
    class ChattyBackend(AgentBackend):
        async def execute(
            self,
            system_prompt: str,
            user_prompt: str,
            context: dict[str, Any],
            tools: list[str] | None = None,
        ) -> AsyncIterator[str]:
            _ = system_prompt, user_prompt, context, tools
            yield json.dumps({"direct_response": "Use the new-project command to start."})

    events: list[dict[str, Any]] = []
    engine = _engine(ChattyBackend(), tmp_path, event_hook=events.append)

    state = asyncio.run(engine.handle_message("how do I start?"))

    assert state.stage == "completed"
    assert state.last_result == "Use the new-project command to start."
    assert "direct_response" in [event["event"] for event in events]


def test_awaiting_without_pending_question_proceeds_with_execution(tmp_path: Path) -> None:
    engine = _engine(ToneBackend(), tmp_path)
    asyncio.run(engine.handle_message("draft intro section"))
    engine.state.pending_interaction = None

    assert engine.is_awaiting_user() is False
    assert engine.state.stage == "executing"

    state = asyncio.run(engine.handle_message("casual"))

    assert state.stage == "completed"
    assert state.last_result == "Intro drafted in a casual tone."


def test_snapshot_restore_resumes_in_new_engine(tmp_path: Path) -> None:
    backend = ToneBackend()
    first_engine = _engine(backend, tmp_path)
    asyncio.run(first_engine.handle_message("draft intro section"))
    snapshot = json.loads(json.dumps(first_engine.snapshot()))
    first_engine.dispose()

    second_engine = _engine(backend, tmp_path)
    second_engine.restore(snapshot)
    assert second_engine.is_awaiting_user() is True

    state = asyncio.run(second_engine.handle_message("formal"))

    assert state.stage == "completed"
    assert state.last_result == "Intro drafted in a formal tone."
    assert backend.questions_asked == 1


def test_restoring_mid_run_snapshot_marks_interrupted(tmp_path: Path) -> None:
    engine = _engine(ToneBackend(), tmp_path)

    engine.restore({"version": 1, "state": {"stage": "executing", "current_task": "x"}})

    assert engine.get_state().stage == "error"
    assert engine.get_state().last_result == INTERRUPTED_MESSAGE
    assert engine.is_executing() is False


def test_cancel_while_awaiting_user(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    engine = _engine(ToneBackend(), tmp_path, event_hook=events.append)
    asyncio.run(engine.handle_message("draft intro section"))

    engine.cancel_current_execution()

    state = engine.get_state()
    assert state.stage == "error"
    assert state.cancelled is True
    assert state.pending_interaction is None
    assert engine.is_executing() is False
    assert "execution_cancelled" in [event["event"] for event in events]


def test_cancel_when_idle_is_noop(tmp_path: Path) -> None:
    engine = _engine(ToneBackend(), tmp_path)

    engine.cancel_current_execution()

    assert engine.get_state().stage == "idle"
    assert engine.get_state().cancelled is False


def test_new_message_preempts_running_task(tmp_path: Path) -> None:
    class SlowBackend(AgentBackend):
        reads = 0

        async def execute(
            self,
            system_prompt: str,
            user_prompt: str,
            context: dict[str, Any],
            tools: list[str] | None = None,
        ) -> AsyncIterator[str]:
            _ = system_prompt, user_prompt, tools
            await asyncio.sleep(0.005)
            if context["user_input"] == "first":
                self.reads += 1
                yield _directive({"name": "read_file", "args": {"path": f"notes-{self.reads}.md"}})
            else:
                yield _complete("second done")

    engine = _engine(SlowBackend(), tmp_path)
    plan = Plan.create("p", [Step(1, "summary_writer", "summarize")])

    async def _run() -> tuple:
        first = asyncio.create_task(engine.execute_task("first", plan=plan))
        await asyncio.sleep(0.02)
        second = await engine.execute_task("second", plan=plan)
        return await first, second

    first_state, second_state = asyncio.run(_run())

    assert first_state.stage == "error"
    assert first_state.cancelled is True
    assert second_state.stage == "completed"
    assert second_state.last_result == "second done"
    assert second_state.cancelled is False


def test_switch_project_archives_and_resets(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    engine = _engine(ToneBackend(), tmp_path, event_hook=events.append)
    asyncio.run(engine.handle_message("draft intro section"))
    store = engine.session_store
    assert store is not None
    previous = store.get_current_session()

    result = asyncio.run(engine.switch_project("handbook"))

    assert previous is not None
    assert result.archived is not None
    assert result.archived.session_id == previous.session_id
    assert result.current.project_name == "handbook"
    assert engine.get_state().stage == "idle"
    assert engine.get_state().resume_context is None
    assert "project_switched" in [event["event"] for event in events]


def test_session_cleared_while_awaiting_resets_engine(tmp_path: Path) -> None:
    engine = _engine(ToneBackend(), tmp_path)
    asyncio.run(engine.handle_message("draft intro section"))
    assert engine.session_store is not None

    engine.session_store.auto_archive_expired(now=datetime.now(UTC) + timedelta(days=30))

    assert engine.get_state().stage == "idle"
    assert engine.is_awaiting_user() is False


def test_disposed_engine_rejects_messages(tmp_path: Path) -> None:
    engine = _engine(ToneBackend(), tmp_path)
    engine.dispose()

    with pytest.raises(EngineDisposedError):
        asyncio.run(engine.handle_message("draft intro section"))
