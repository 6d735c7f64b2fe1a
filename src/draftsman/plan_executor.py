from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from draftsman.models import Plan, StepResult
from draftsman.protocol import (
    PlanExecutorState,
    ResumeContext,
    SpecialistLoopState,
    SpecialistOutcome,
    SpecialistPayload,
    build_resume_input,
    merge_resume_context,
)
from draftsman.runner import CancelCheck, SpecialistRunner
from draftsman.session.store import SessionStore, SessionUpdate
from draftsman.specialists.base import ContextBundle, SpecialistAgent

PlanOutcomeKind = Literal[
    "plan_completed", "user_interaction_required", "plan_failed", "plan_cancelled"
]
ExecutorStatus = Literal["not_started", "running_step", "awaiting_user", "completed", "error"]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PlanOutcome:
    kind: PlanOutcomeKind
    plan: Plan
    summary: str = ""
    step_results: dict[int, StepResult] = field(default_factory=dict)
    question: str | None = None
    options: list[str] = field(default_factory=list)
    specialist_id: str | None = None
    resume_context: ResumeContext | None = None
    error: str | None = None
    failed_step: int | None = None


@dataclass(slots=True)
class _ResumePoint:
    context: ResumeContext
    payload: SpecialistPayload
    loop_state: SpecialistLoopState | None


class PlanExecutor:
    def __init__(
        self,
        runner: SpecialistRunner,
        specialists: dict[str, SpecialistAgent],
        *,
        session_store: SessionStore | None = None,
        step_max_attempts: int = 2,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.runner = runner
        self.specialists = specialists
        self.session_store = session_store
        self.step_max_attempts = max(1, step_max_attempts)
        self.event_hook = event_hook
        self.status: ExecutorStatus = "not_started"
        self.current_index: int | None = None

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def execute(
        self,
        plan: Plan,
        user_input: str,
        session_snapshot: dict[str, Any],
        *,
        cancel_check: CancelCheck | None = None,
    ) -> PlanOutcome:
        self.status = "not_started"
        self.current_index = None
        self._emit({"event": "plan_started", "plan_id": plan.plan_id, "steps": len(plan.steps)})
        return await self._run_from(
            plan, 0, {}, user_input, dict(session_snapshot), cancel_check, None
        )

    async def resume(
        self,
        context: ResumeContext,
        answer: str,
        *,
        cancel_check: CancelCheck | None = None,
    ) -> PlanOutcome:
        plan_state = context.plan_executor_state
        if plan_state is None:
            self.status = "error"
            raise ValueError("Resume context carries no plan position.")
        plan_state = plan_state.copy()
        self._emit(
            {
                "event": "plan_resumed",
                "plan_id": plan_state.plan.plan_id,
                "step_index": plan_state.current_step_index,
                "cycle": context.cycles + 1,
            }
        )
        resume_point = _ResumePoint(
            context=context,
            payload=build_resume_input(context, answer),
            loop_state=plan_state.loop_state,
        )
        return await self._run_from(
            plan_state.plan,
            plan_state.current_step_index,
            dict(plan_state.step_results),
            plan_state.user_input,
            dict(plan_state.session_snapshot),
            cancel_check,
            resume_point,
        )

    async def _run_step(
        self,
        agent: SpecialistAgent,
        bundle: ContextBundle,
        resume_point: _ResumePoint | None,
        cancel_check: CancelCheck | None,
    ) -> SpecialistOutcome:
        payload = resume_point.payload if resume_point else None
        loop_state = resume_point.loop_state if resume_point else None
        attempt = 1
        while True:
            outcome = await self.runner.run(
                agent, bundle, resume=payload, loop_state=loop_state, cancel_check=cancel_check
            )
            if (
                outcome.kind != "specialist_failed"
                or outcome.error_category != "protocol"
                or attempt >= self.step_max_attempts
            ):
                return outcome
            logger.warning(
                "Retrying step %s (%s) after protocol fault: %s",
                bundle.step.number if bundle.step else "?",
                agent.role,
                outcome.error,
            )
            self._emit(
                {
                    "event": "step_retry",
                    "specialist": agent.role,
                    "attempt": attempt + 1,
                    "reason": outcome.error,
                }
            )
            bundle = replace(bundle, failure_reason=outcome.error)
            if payload is not None:
                payload = SpecialistPayload(
                    agent.role, {"answers": list(payload.data.get("answers") or [])}
                )
            loop_state = None
            attempt += 1

    def _suspension_context(
        self,
        plan: Plan,
        index: int,
        results: dict[int, StepResult],
        user_input: str,
        snapshot: dict[str, Any],
        outcome: SpecialistOutcome,
        resume_point: _ResumePoint | None,
    ) -> ResumeContext:
        continuation = outcome.continuation or ResumeContext()
        if resume_point is not None:
            context = merge_resume_context(resume_point.context, continuation)
        else:
            context = ResumeContext(
                plan_executor_state=PlanExecutorState(
                    plan=plan,
                    current_step_index=index,
                    step_results=dict(results),
                    user_input=user_input,
                    session_snapshot=dict(snapshot),
                ),
                ask_question_context=continuation.ask_question_context,
                specialist_payload=continuation.specialist_payload,
            )
        plan_state = context.plan_executor_state
        if plan_state is not None and outcome.loop_state is not None:
            progress = outcome.loop_state
            if plan_state.loop_state is None:
                plan_state.loop_state = SpecialistLoopState.from_dict(progress.to_dict())
            else:
                plan_state.loop_state.current_iteration = progress.current_iteration
                plan_state.loop_state.max_iterations = progress.max_iterations
                plan_state.loop_state.execution_history = list(progress.execution_history)
                plan_state.loop_state.last_continue_reason = progress.last_continue_reason
            plan_state.loop_state.is_looping = False
        return context

    async def _log_step(
        self, agent: SpecialistAgent, result: StepResult, snapshot: dict[str, Any]
    ) -> dict[str, Any]:
        if self.session_store is None:
            return snapshot
        data = result.structured_data
        files = data.get("files")
        project_name = data.get("project_name") if agent.changes_session else None
        session = await asyncio.to_thread(
            self.session_store.update_session_with_log,
            SessionUpdate(
                operation=f"step:{result.specialist}",
                summary=result.content[:500],
                project_name=project_name if isinstance(project_name, str) else None,
                active_files=[str(item) for item in files] if isinstance(files, list) else [],
                details={"step": result.step_number, "iterations": result.iterations},
            ),
        )
        return session.to_dict()

    async def _run_from(
        self,
        plan: Plan,
        start: int,
        results: dict[int, StepResult],
        user_input: str,
        snapshot: dict[str, Any],
        cancel_check: CancelCheck | None,
        resume_point: _ResumePoint | None,
    ) -> PlanOutcome:
        last_good = resume_point.context if resume_point else None
        for index in range(start, len(plan.steps)):
            step = plan.steps[index]
            self.current_index = index
            if cancel_check is not None and cancel_check():
                self.status = "error"
                logger.info("Plan %s cancelled before step %d", plan.plan_id, step.number)
                return PlanOutcome(
                    kind="plan_cancelled",
                    plan=plan,
                    step_results=results,
                    resume_context=last_good,
                    error="Execution was cancelled by the user.",
                    failed_step=step.number,
                )
            agent = self.specialists.get(step.specialist)
            if agent is None:
                self.status = "error"
                return PlanOutcome(
                    kind="plan_failed",
                    plan=plan,
                    step_results=results,
                    resume_context=last_good,
                    error=f"No specialist registered for '{step.specialist}'.",
                    failed_step=step.number,
                )

            self.status = "running_step"
            self._emit(
                {
                    "event": "step_started",
                    "step": step.number,
                    "specialist": step.specialist,
                    "resumed": resume_point is not None,
                }
            )
            bundle = ContextBundle(
                user_input=user_input,
                step=step,
                session=snapshot,
                prior_results=[results[number] for number in sorted(results)],
            )
            outcome = await self._run_step(agent, bundle, resume_point, cancel_check)

            if outcome.kind == "user_interaction_required":
                self.status = "awaiting_user"
                context = self._suspension_context(
                    plan, index, results, user_input, snapshot, outcome, resume_point
                )
                self._emit(
                    {
                        "event": "plan_suspended",
                        "step": step.number,
                        "specialist": step.specialist,
                        "question": outcome.question,
                    }
                )
                return PlanOutcome(
                    kind="user_interaction_required",
                    plan=plan,
                    step_results=results,
                    question=outcome.question,
                    options=list(outcome.options),
                    specialist_id=outcome.specialist_id,
                    resume_context=context,
                )

            if outcome.kind == "specialist_failed":
                self.status = "error"
                return PlanOutcome(
                    kind="plan_cancelled" if outcome.cancelled else "plan_failed",
                    plan=plan,
                    step_results=results,
                    resume_context=last_good,
                    error=outcome.error,
                    failed_step=step.number,
                )

            result = StepResult(
                step_number=step.number,
                specialist=step.specialist,
                success=True,
                content=outcome.content,
                structured_data=dict(outcome.structured_data),
                iterations=outcome.iterations,
            )
            results[step.number] = result
            snapshot = await self._log_step(agent, result, snapshot)
            if last_good is not None:
                last_good = ResumeContext(
                    plan_executor_state=PlanExecutorState(
                        plan=plan,
                        current_step_index=index + 1,
                        step_results=dict(results),
                        user_input=user_input,
                        session_snapshot=dict(snapshot),
                    ),
                    cycles=last_good.cycles,
                )
            self._emit(
                {
                    "event": "step_completed",
                    "step": step.number,
                    "specialist": step.specialist,
                    "content": result.content,
                }
            )
            resume_point = None

        self.status = "completed"
        summary = "\n\n".join(
            results[number].content for number in sorted(results) if results[number].content
        )
        self._emit({"event": "plan_completed", "plan_id": plan.plan_id, "steps": len(results)})
        return PlanOutcome(kind="plan_completed", plan=plan, summary=summary, step_results=results)
