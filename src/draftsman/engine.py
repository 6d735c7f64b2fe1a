"""Long-lived coordinator that routes chat messages into plan runs and resumes."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from draftsman.cancellation import CancellationSupervisor, HaltResult
from draftsman.models import PendingInteraction, Plan
from draftsman.plan_executor import PlanExecutor, PlanOutcome
from draftsman.planner import PlanGenerator
from draftsman.protocol import DEFAULT_QUESTION
from draftsman.runner import CancelCheck, SpecialistRunner
from draftsman.session.store import ArchiveResult, Session, SessionStore
from draftsman.specialists.base import SpecialistAgent
from draftsman.state import ExecutionState

SNAPSHOT_VERSION = 1
CANCELLED_MESSAGE = "Execution was cancelled by the user."
INTERRUPTED_MESSAGE = "The previous run was interrupted before it finished."

logger = logging.getLogger(__name__)


class EngineDisposedError(RuntimeError):
    """Raised when a disposed engine receives a message."""


class Engine:
    def __init__(
        self,
        runner: SpecialistRunner,
        specialists: dict[str, SpecialistAgent],
        planner: PlanGenerator,
        *,
        session_store: SessionStore | None = None,
        step_max_attempts: int = 2,
        cancellation_poll_interval: float = 0.1,
        cancellation_timeout: float = 30.0,
        history_limit: int = 100,
        history_keep: int = 50,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.runner = runner
        self.specialists = specialists
        self.planner = planner
        self.session_store = session_store
        self.step_max_attempts = step_max_attempts
        self.event_hook = event_hook
        self.state = ExecutionState(history_limit=history_limit, history_keep=history_keep)
        self.cancellation = CancellationSupervisor(
            self.is_executing,
            poll_interval=cancellation_poll_interval,
            timeout=cancellation_timeout,
            sleep=sleep,
            clock=clock,
        )
        self.executor: PlanExecutor | None = None
        self._generation = 0
        self._running = False
        self._disposed = False
        self._unsubscribe: Callable[[], None] | None = None
        if session_store is not None:
            self._unsubscribe = session_store.subscribe(self.on_session_changed)

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _check_disposed(self) -> None:
        if self._disposed:
            raise EngineDisposedError("Engine has been disposed.")

    def is_awaiting_user(self) -> bool:
        self.state.ensure_consistent()
        return self.state.stage == "awaiting_user"

    def is_executing(self) -> bool:
        return self.state.is_active

    def get_state(self) -> ExecutionState:
        return self.state.copy()

    def _session_snapshot(self) -> dict[str, Any]:
        if self.session_store is None:
            return {}
        session = self.session_store.get_current_session()
        if session is None:
            session = self.session_store.create_new_session()
        return session.to_dict()

    def _new_executor(self) -> PlanExecutor:
        self.executor = PlanExecutor(
            self.runner,
            self.specialists,
            session_store=self.session_store,
            step_max_attempts=self.step_max_attempts,
            event_hook=self.event_hook,
        )
        return self.executor

    def _cancel_check(self, generation: int) -> CancelCheck:
        return lambda: self.cancellation.cancelled or generation != self._generation

    def _begin_run(self) -> int:
        self._generation += 1
        self._running = True
        self.cancellation.reset()
        self.state.cancelled = False
        return self._generation

    def _end_run(self, generation: int) -> None:
        if generation == self._generation:
            self._running = False

    async def _preempt_running(self) -> None:
        if not self._running:
            return
        logger.info("New message while a run is in flight; cancelling the current run")
        await self.cancel_and_wait()

    def _has_orphaned_context(self) -> bool:
        return (
            self.state.stage == "executing"
            and self.state.resume_context is not None
            and not self._running
        )

    async def handle_message(self, text: str) -> ExecutionState:
        if self.is_awaiting_user() or self._has_orphaned_context():
            return await self.handle_user_response(text)
        return await self.execute_task(text)

    async def execute_task(self, prompt: str, *, plan: Plan | None = None) -> ExecutionState:
        self._check_disposed()
        self.state.ensure_consistent()
        if self.state.stage == "awaiting_user":
            logger.info("Routing new task text as an answer to the pending question")
            return await self.handle_user_response(prompt)
        await self._preempt_running()

        generation = self._begin_run()
        self.state.reset()
        self.state.current_task = prompt
        self.state.record("task", prompt)
        self.state.transition("planning")
        self._emit({"event": "task_started", "task": prompt})
        try:
            snapshot = await asyncio.to_thread(self._session_snapshot)
            if plan is None:
                planning = await self.planner.generate(prompt, snapshot)
                if generation != self._generation:
                    return self.get_state()
                if planning.plan is None:
                    self._complete(planning.direct_response or "")
                    self._emit({"event": "direct_response", "content": self.state.last_result})
                    return self.get_state()
                plan = planning.plan
            if self._cancel_check(generation)():
                self._fail(CANCELLED_MESSAGE, cancelled=True)
                return self.get_state()
            self.state.transition("executing")
            self._emit(
                {
                    "event": "plan_ready",
                    "plan_id": plan.plan_id,
                    "steps": [step.to_dict() for step in plan.steps],
                }
            )
            outcome = await self._new_executor().execute(
                plan, prompt, snapshot, cancel_check=self._cancel_check(generation)
            )
            if generation == self._generation:
                self._apply_outcome(outcome)
        except Exception as exc:
            if generation == self._generation:
                logger.exception("Task %r failed", prompt[:80])
                self._fail(str(exc))
        finally:
            self._end_run(generation)
        return self.get_state()

    async def handle_user_response(self, answer: str) -> ExecutionState:
        self._check_disposed()
        self.state.ensure_consistent()
        if self.state.stage != "awaiting_user":
            if self._has_orphaned_context():
                logger.warning("Resuming from a context without a pending question")
            else:
                return await self.execute_task(answer)

        context = self.state.resume_context
        if context is None:
            logger.warning("Awaiting user without a resume context; starting a new task")
            self.state.transition("executing")
            return await self.execute_task(answer)

        generation = self._begin_run()
        self.state.record("user_response", answer)
        self.state.transition("executing")
        self._emit({"event": "user_response", "answer": answer})
        try:
            outcome = await self._new_executor().resume(
                context, answer, cancel_check=self._cancel_check(generation)
            )
            if generation == self._generation:
                self._apply_outcome(outcome)
        except Exception as exc:
            if generation == self._generation:
                logger.exception("Resume failed")
                self._fail(str(exc))
        finally:
            self._end_run(generation)
        return self.get_state()

    def _apply_outcome(self, outcome: PlanOutcome) -> None:
        if outcome.kind == "plan_completed":
            self.state.resume_context = None
            self._complete(outcome.summary)
            return
        if outcome.kind == "user_interaction_required":
            self.state.resume_context = outcome.resume_context
            pending = PendingInteraction.for_question(
                outcome.question or DEFAULT_QUESTION,
                outcome.options,
                outcome.specialist_id,
            )
            self.state.transition("awaiting_user", pending=pending)
            self.state.record("question", pending.message)
            self._emit(
                {
                    "event": "question",
                    "question": pending.message,
                    "options": list(pending.options),
                    "specialist": pending.specialist_id,
                }
            )
            return
        if outcome.resume_context is not None:
            self.state.resume_context = outcome.resume_context
        self._fail(
            outcome.error or "Task failed.",
            cancelled=outcome.kind == "plan_cancelled",
        )

    def _complete(self, summary: str) -> None:
        self.state.last_result = summary
        self.state.record("result", summary)
        self.state.transition("completed")
        self._emit({"event": "task_completed", "content": summary})

    def _fail(self, message: str, *, cancelled: bool = False) -> None:
        self.state.last_result = message
        self.state.cancelled = cancelled or self.state.cancelled
        self.state.record("cancelled" if cancelled else "error", message, success=False)
        self.state.transition("error")
        if cancelled:
            self._emit({"event": "execution_cancelled", "message": message})
        else:
            self._emit({"event": "execution_failed", "error": message})

    def cancel_current_execution(self) -> None:
        self.cancellation.request_cancellation()
        if not self.is_executing():
            return
        self.state.cancelled = True
        if self.state.stage == "awaiting_user" or not self._running:
            self._fail(CANCELLED_MESSAGE, cancelled=True)

    async def cancel_and_wait(
        self,
        timeout: float | None = None,
    ) -> HaltResult:
        self.cancel_current_execution()
        return await self.cancellation.wait_for_halt(timeout=timeout)

    async def switch_project(self, name: str | None = None) -> ArchiveResult:
        self._check_disposed()
        if self.session_store is None:
            raise RuntimeError("Switching projects requires a session store.")
        if self.is_executing():
            halt = await self.cancel_and_wait()
            if not halt.confirmed:
                logger.warning("Switching project while the previous run is still stopping")
        result = await asyncio.to_thread(self.session_store.archive_current_and_start_new, name)
        self.state.reset()
        self._emit(
            {
                "event": "project_switched",
                "project": result.current.project_name,
                "session_id": result.current.session_id,
            }
        )
        return result

    def on_session_changed(self, session: Session | None) -> None:
        if session is None and self.state.stage == "awaiting_user":
            logger.info("Session cleared while awaiting an answer; resetting engine")
            self.state.reset()
            return
        if session is not None:
            logger.debug("Active session is now %s", session.session_id)

    def snapshot(self) -> dict[str, Any]:
        return {"version": SNAPSHOT_VERSION, "state": self.state.to_dict()}

    def restore(self, payload: dict[str, Any] | None) -> None:
        """Load a snapshot written by an earlier process."""
        self._check_disposed()
        if not payload or payload.get("version") != SNAPSHOT_VERSION:
            return
        state = ExecutionState.from_dict(payload.get("state") or {})
        if state.stage in {"planning", "executing"}:
            logger.warning("Restored a run that was still %s; marking it failed", state.stage)
            state.last_result = INTERRUPTED_MESSAGE
            state.record("error", INTERRUPTED_MESSAGE, success=False)
            state.transition("error")
        self.state = state

    def dispose(self) -> None:
        if self._disposed:
            return
        if self._running:
            self.cancellation.request_cancellation()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._generation += 1
        self._running = False
        self.state.reset()
        self._disposed = True
