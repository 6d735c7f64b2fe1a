from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from draftsman.directives import EmptyResponseError, extract_json_objects
from draftsman.models import Plan, Step
from draftsman.runner import SpecialistRunner
from draftsman.specialists.base import ContextBundle, SpecialistAgent

logger = logging.getLogger(__name__)


class PlanValidationError(ValueError):
    """Raised when planner output names unknown specialists or has no steps."""


@dataclass(slots=True)
class PlanningResult:
    plan: Plan | None = None
    direct_response: str | None = None


def _parse_steps(raw_steps: Any, known: set[str]) -> list[Step]:
    if not isinstance(raw_steps, list) or not raw_steps:
        raise PlanValidationError("Plan has no steps.")
    steps: list[Step] = []
    for number, entry in enumerate(raw_steps, start=1):
        if not isinstance(entry, dict):
            raise PlanValidationError(f"Step {number} is not an object.")
        specialist = str(entry.get("specialist", "")).strip()
        if specialist not in known:
            raise PlanValidationError(f"Step {number} names unknown specialist '{specialist}'.")
        inputs = entry.get("inputs")
        steps.append(
            Step(
                number=number,
                specialist=specialist,
                description=str(entry.get("description", "")).strip(),
                inputs=inputs if isinstance(inputs, dict) else {},
                depends_on=tuple(
                    int(item) for item in entry.get("depends_on") or [] if str(item).isdigit()
                ),
            )
        )
    return steps


def parse_plan(raw_text: str, known_specialists: Iterable[str]) -> PlanningResult:
    known = set(known_specialists)
    payloads = extract_json_objects(raw_text)
    for payload in payloads:
        direct = payload.get("direct_response")
        if isinstance(direct, str):
            return PlanningResult(direct_response=direct.strip())
        plan = payload.get("plan")
        if isinstance(plan, dict):
            steps = _parse_steps(plan.get("steps"), known)
            return PlanningResult(
                plan=Plan.create(str(plan.get("description", "")).strip(), steps)
            )
    if payloads:
        raise PlanValidationError("Planner response has neither a plan nor a direct response.")
    return PlanningResult(direct_response=raw_text.strip())


class PlanGenerator:
    def __init__(
        self,
        runner: SpecialistRunner,
        planner: SpecialistAgent,
        specialists: Iterable[str],
    ) -> None:
        self.runner = runner
        self.planner = planner
        self.specialists = sorted(specialists)

    async def generate(self, task: str, session_snapshot: dict[str, Any]) -> PlanningResult:
        bundle = ContextBundle(user_input=task, session=session_snapshot)
        prompt = (
            f"Request: {task}\n\n"
            f"Available specialists: {json.dumps(self.specialists)}\n"
            f"Project initialized: {bool(session_snapshot.get('project_name'))}"
        )
        raw = await self.runner.request(
            self.planner, prompt, self.planner.request_context(bundle)
        )
        if not raw:
            raise EmptyResponseError("Planner returned an empty response.")
        result = parse_plan(raw, self.specialists)
        if result.plan is not None:
            logger.info(
                "Planned %d steps for %r: %s",
                len(result.plan.steps),
                task[:80],
                ", ".join(step.specialist for step in result.plan.steps),
            )
        return result
