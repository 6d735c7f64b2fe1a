from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from draftsman.backends.base import (
    AgentBackend,
    BackendAuthError,
    BackendExecutionError,
    BackendProcessError,
    ContextLengthExceededError,
)
from draftsman.backends.resilient import RetryPolicy
from draftsman.config import SpecialistsConfig
from draftsman.directives import Directive, DirectiveParseError, EmptyResponseError, parse_directive
from draftsman.loop_detection import TOOL_CALL, call_signature, detect_loop, recent_success
from draftsman.models import ToolCall
from draftsman.protocol import (
    AskQuestionContext,
    LoopEvent,
    ResumeContext,
    SpecialistLoopState,
    SpecialistOutcome,
    SpecialistPayload,
)
from draftsman.specialists.base import ContextBundle, SpecialistAgent
from draftsman.tools import ASK_QUESTION, TASK_COMPLETE, ToolContext, ToolRegistry

EventHook = Callable[[dict[str, Any]], None]
CancelCheck = Callable[[], bool]
RESOURCE_ERRORS = (ContextLengthExceededError, BackendAuthError, BackendProcessError)

FORMAT_CORRECTION = (
    "The previous reply contained no tool calls. Reply with a JSON directive and call "
    "task_complete when the step is finished."
)
LOOP_CORRECTION = (
    "Loop detected: {loop}. Do not repeat the same tool calls. Use the results you already "
    "have, try a different approach, or call task_complete."
)

logger = logging.getLogger(__name__)


def _normalize_question(text: str) -> str:
    return " ".join(text.casefold().split())


def _previous_answer(answers: list[dict[str, Any]], question: str) -> str | None:
    wanted = _normalize_question(question)
    for item in reversed(answers):
        if _normalize_question(str(item.get("question", ""))) == wanted:
            return str(item.get("answer", ""))
    return None


class SpecialistRunner:
    """Drives one specialist through its prompt, model call and tool loop."""

    def __init__(
        self,
        backend: AgentBackend,
        tools: ToolRegistry,
        *,
        retry_policy: RetryPolicy | None = None,
        max_iterations: int = 20,
        iteration_limits: SpecialistsConfig | None = None,
        loop_history_limit: int = 20,
        base_dir: Path | None = None,
        event_hook: EventHook | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.backend = backend
        self.tools = tools
        self.retry_policy = retry_policy or RetryPolicy(max_retries=2, backoff_seconds=1.0)
        self.max_iterations = max_iterations
        self.iteration_limits = iteration_limits
        self.loop_history_limit = loop_history_limit
        self.base_dir = base_dir or Path.cwd()
        self.event_hook = event_hook
        self._sleep = sleep

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def max_iterations_for(self, agent: SpecialistAgent) -> int:
        if self.iteration_limits is None:
            return self.max_iterations
        return self.iteration_limits.max_iterations_for(agent.role, agent.category)

    async def request(
        self,
        agent: SpecialistAgent,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> str:
        """Send one prompt to the model, retrying transient backend faults."""
        attempts = self.retry_policy.max_retries + 1
        for attempt in range(attempts):
            if attempt > 0:
                delay = self.retry_policy.delay_for(attempt)
                self._emit(
                    {
                        "event": "backend_retry",
                        "specialist": agent.role,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await self._sleep(delay)
            try:
                chunks: list[str] = []
                async for chunk in self.backend.execute(
                    system_prompt=agent.system_prompt,
                    user_prompt=user_prompt,
                    context=context,
                    tools=tools,
                ):
                    chunks.append(chunk)
                return "".join(chunks).strip()
            except BackendExecutionError as exc:
                if not exc.retriable or attempt == attempts - 1:
                    raise
                logger.warning(
                    "Transient model failure for %s (attempt %d/%d): %s",
                    agent.role,
                    attempt + 1,
                    attempts,
                    exc,
                )
        raise BackendExecutionError("Model request was never attempted.", retriable=False)

    def _tool_context(self, agent: SpecialistAgent, bundle: ContextBundle) -> ToolContext:
        base_dir = bundle.session.get("base_dir")
        return ToolContext(
            base_dir=Path(base_dir) if base_dir else self.base_dir,
            specialist_id=agent.role,
            session=bundle.session,
        )

    async def run(
        self,
        agent: SpecialistAgent,
        bundle: ContextBundle,
        *,
        resume: SpecialistPayload | None = None,
        loop_state: SpecialistLoopState | None = None,
        cancel_check: CancelCheck | None = None,
    ) -> SpecialistOutcome:
        max_iterations = self.max_iterations_for(agent)
        data: dict[str, Any] = {}
        if resume is not None:
            if resume.specialist_id and resume.specialist_id != agent.role:
                logger.warning(
                    "Ignoring continuation from %s while resuming %s",
                    resume.specialist_id,
                    agent.role,
                )
            else:
                data = dict(resume.data)

        if loop_state is not None and loop_state.specialist_id == agent.role:
            state = SpecialistLoopState.from_dict(loop_state.to_dict())
        else:
            state = SpecialistLoopState(specialist_id=agent.role)
        state.max_iterations = max_iterations
        state.current_iteration = int(data.get("iteration", state.current_iteration))
        state.is_looping = True

        history: list[dict[str, Any]] = list(data.get("history") or [])
        answers: list[dict[str, Any]] = list(data.get("answers") or [])
        pending_answer = data.get("pending_answer")
        if pending_answer is not None:
            history.append(
                {
                    "iteration": state.current_iteration,
                    "tool": ASK_QUESTION,
                    "question": answers[-1]["question"] if answers else "",
                    "answer": pending_answer,
                }
            )
            state.last_continue_reason = "user_answer"
            if state.current_iteration >= state.max_iterations:
                logger.info(
                    "Granting %s one iteration past its limit to read the answer", agent.role
                )
                state.max_iterations = state.current_iteration + 1

        try:
            return await self._loop(agent, bundle, state, history, answers, cancel_check)
        except BackendExecutionError as exc:
            category = "resource" if isinstance(exc, RESOURCE_ERRORS) else "transient"
            logger.error("Specialist %s model failure (%s): %s", agent.role, category, exc)
            return SpecialistOutcome.failed(
                agent.role,
                f"{agent.role} could not reach the language model: {exc}",
                category=category,
                loop_state=state,
                iterations=state.current_iteration,
            )
        except (EmptyResponseError, DirectiveParseError) as exc:
            raw = getattr(exc, "raw", "")
            logger.error(
                "Specialist %s protocol fault at iteration %d: %s | raw=%r",
                agent.role,
                state.current_iteration,
                exc,
                raw[:500],
            )
            return SpecialistOutcome.failed(
                agent.role,
                f"{agent.role} produced an unusable response: {exc}",
                category="protocol",
                loop_state=state,
                iterations=state.current_iteration,
            )
        except Exception as exc:
            logger.exception("Specialist %s crashed", agent.role)
            return SpecialistOutcome.failed(
                agent.role,
                f"{agent.role} failed unexpectedly: {exc}",
                category="internal",
                loop_state=state,
                iterations=state.current_iteration,
            )
        finally:
            state.is_looping = False

    async def _loop(
        self,
        agent: SpecialistAgent,
        bundle: ContextBundle,
        state: SpecialistLoopState,
        history: list[dict[str, Any]],
        answers: list[dict[str, Any]],
        cancel_check: CancelCheck | None,
    ) -> SpecialistOutcome:
        tool_names = self.tools.describe(list(agent.allowed_tools))
        tool_context = self._tool_context(agent, bundle)
        while state.current_iteration < state.max_iterations:
            if cancel_check is not None and cancel_check():
                logger.info("Specialist %s cancelled before iteration", agent.role)
                return SpecialistOutcome.failed(
                    agent.role,
                    f"{agent.role} stopped: execution was cancelled by the user.",
                    category="cancelled",
                    loop_state=state,
                    iterations=state.current_iteration,
                )

            state.current_iteration += 1
            iteration = state.current_iteration
            self._emit(
                {
                    "event": "specialist_iteration",
                    "specialist": agent.role,
                    "iteration": iteration,
                    "max_iterations": state.max_iterations,
                }
            )
            prompt = agent.build_user_prompt(
                bundle, history[-self.loop_history_limit :], answers
            )
            raw = await self.request(agent, prompt, agent.request_context(bundle), tool_names)
            directive = parse_directive(raw)

            if not directive.tool_calls:
                history.append(
                    {
                        "iteration": iteration,
                        "content": directive.content[:2000],
                        "note": FORMAT_CORRECTION,
                    }
                )
                state.record(
                    LoopEvent(iteration, "format_correction", directive.content[:200], False),
                    self.loop_history_limit,
                )
                state.last_continue_reason = "format_correction"
                continue

            results: list[dict[str, Any]] = []
            for call in directive.tool_calls:
                if call.name == ASK_QUESTION:
                    question = str(call.arguments.get("question", "")).strip()
                    if not question:
                        results.append(
                            {
                                "tool": ASK_QUESTION,
                                "success": False,
                                "error": "question is required",
                            }
                        )
                        continue
                    answered = _previous_answer(answers, question)
                    if answered is not None:
                        results.append(
                            {
                                "tool": ASK_QUESTION,
                                "success": True,
                                "output": f"Already answered by the user: {answered}",
                            }
                        )
                        self._record_call(state, iteration, call, True)
                        continue
                    history.append({"iteration": iteration, "tool_results": results})
                    return self._suspend(
                        agent, state, directive, call, question, history, answers
                    )
                if call.name == TASK_COMPLETE:
                    return self._complete(agent, state, directive, call)
                earlier = recent_success(
                    state.execution_history, call_signature(call.name, call.arguments)
                )
                if earlier is not None:
                    results.append(
                        {
                            "tool": call.name,
                            "success": True,
                            "output": (
                                f"Already executed with the same arguments in iteration "
                                f"{earlier.iteration}; reuse that result."
                            ),
                        }
                    )
                    self._record_call(state, iteration, call, True)
                    continue
                result = await self.tools.execute(
                    call, tool_context, allowed=list(agent.allowed_tools)
                )
                results.append(result.to_dict())
                self._record_call(state, iteration, call, result.success)
                self._emit(
                    {
                        "event": "tool_executed",
                        "specialist": agent.role,
                        "tool": call.name,
                        "success": result.success,
                    }
                )

            history.append(
                {
                    "iteration": iteration,
                    "content": directive.content[:2000],
                    "tool_results": results,
                }
            )
            loop = detect_loop(state.execution_history)
            if loop is None:
                state.last_continue_reason = "tool_results"
                continue
            if state.last_continue_reason == "loop_correction":
                logger.error(
                    "Specialist %s kept repeating after a correction: %s", agent.role, loop
                )
                return SpecialistOutcome.failed(
                    agent.role,
                    f"{agent.role} is stuck in a loop: {loop}.",
                    category="protocol",
                    loop_state=state,
                    iterations=state.current_iteration,
                )
            logger.warning("Specialist %s is repeating tool calls: %s", agent.role, loop)
            history.append({"iteration": iteration, "note": LOOP_CORRECTION.format(loop=loop)})
            state.record(
                LoopEvent(iteration, "loop_detected", loop, False), self.loop_history_limit
            )
            state.last_continue_reason = "loop_correction"
            self._emit({"event": "loop_detected", "specialist": agent.role, "pattern": loop})

        logger.error(
            "Specialist %s reached its iteration limit (%d)", agent.role, state.max_iterations
        )
        return SpecialistOutcome.failed(
            agent.role,
            f"{agent.role} did not finish within {state.max_iterations} iterations.",
            category="protocol",
            loop_state=state,
            iterations=state.current_iteration,
        )

    def _record_call(
        self, state: SpecialistLoopState, iteration: int, call: ToolCall, success: bool
    ) -> None:
        state.record(
            LoopEvent(
                iteration,
                TOOL_CALL,
                call.name,
                success,
                tool=call.name,
                signature=call_signature(call.name, call.arguments),
            ),
            self.loop_history_limit,
        )

    def _suspend(
        self,
        agent: SpecialistAgent,
        state: SpecialistLoopState,
        directive: Directive,
        call: ToolCall,
        question: str,
        history: list[dict[str, Any]],
        answers: list[dict[str, Any]],
    ) -> SpecialistOutcome:
        options = [str(item) for item in call.arguments.get("options") or []]
        state.record(
            LoopEvent(state.current_iteration, ASK_QUESTION, question), self.loop_history_limit
        )
        state.last_continue_reason = "awaiting_user"
        continuation = ResumeContext(
            ask_question_context=AskQuestionContext(
                tool_call=call,
                question=question,
                options=options,
                raw_directive=directive.raw,
            ),
            specialist_payload=SpecialistPayload(
                agent.role,
                {
                    "iteration": state.current_iteration,
                    "history": history[-self.loop_history_limit :],
                    "answers": answers,
                    "pending_answer": None,
                },
            ),
        )
        self._emit(
            {
                "event": "specialist_suspended",
                "specialist": agent.role,
                "iteration": state.current_iteration,
                "question": question,
            }
        )
        return SpecialistOutcome(
            kind="user_interaction_required",
            specialist_id=agent.role,
            content=directive.content,
            question=question,
            options=options,
            continuation=continuation,
            loop_state=state,
            iterations=state.current_iteration,
        )

    def _complete(
        self,
        agent: SpecialistAgent,
        state: SpecialistLoopState,
        directive: Directive,
        call: ToolCall,
    ) -> SpecialistOutcome:
        summary = call.arguments.get("summary")
        content = summary if isinstance(summary, str) else directive.content
        structured = call.arguments.get("data")
        state.record(
            LoopEvent(state.current_iteration, TASK_COMPLETE, content[:200]),
            self.loop_history_limit,
        )
        state.last_continue_reason = "completed"
        self._emit(
            {
                "event": "specialist_completed",
                "specialist": agent.role,
                "iterations": state.current_iteration,
            }
        )
        return SpecialistOutcome(
            kind="specialist_continued",
            specialist_id=agent.role,
            content=content,
            structured_data=structured if isinstance(structured, dict) else {},
            loop_state=state,
            iterations=state.current_iteration,
        )
