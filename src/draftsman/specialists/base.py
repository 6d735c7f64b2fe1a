from __future__ import annotations

import json
from dataclasses import dataclass, field
from importlib import resources
from typing import Any

from draftsman.config import SpecialistCategory
from draftsman.models import Step, StepResult

DIRECTIVE_INSTRUCTIONS = """
Reply with a single JSON object: {"content": "<notes>", "tool_calls": [...]}.
Each tool call is {"name": "<tool>", "args": {...}}.
Call "ask_question" with {"question": "...", "options": [...]} when you need the user.
Call "task_complete" with {"summary": "...", "data": {...}} when the step is done.
Never ask a question that already appears under "Answered questions".
""".strip()


@dataclass(slots=True)
class ContextBundle:
    user_input: str
    step: Step | None = None
    session: dict[str, Any] = field(default_factory=dict)
    prior_results: list[StepResult] = field(default_factory=list)
    failure_reason: str | None = None

    def to_context(self) -> dict[str, Any]:
        context: dict[str, Any] = {"user_input": self.user_input}
        if self.step is not None:
            context["step"] = self.step.to_dict()
        if self.session:
            context["session"] = {
                "project_name": self.session.get("project_name"),
                "base_dir": self.session.get("base_dir"),
                "active_files": self.session.get("active_files", []),
            }
        if self.prior_results:
            context["prior_results"] = [
                {
                    "step": result.step_number,
                    "specialist": result.specialist,
                    "summary": result.content[:2000],
                }
                for result in self.prior_results
            ]
        if self.failure_reason:
            context["previous_attempt_failure"] = self.failure_reason
        return context


class SpecialistAgent:
    role: str = "specialist"
    prompt_file: str | None = None
    fallback_prompt: str = "You are a document authoring specialist."
    category: SpecialistCategory = "content"
    allowed_tools: tuple[str, ...] = ("read_file", "write_file", "list_files")
    changes_session: bool = False
    uses_directives: bool = True

    def __init__(self, *, model: str | None = None) -> None:
        self.model = model
        self.system_prompt = self._load_system_prompt()
        if self.uses_directives:
            self.system_prompt = f"{self.system_prompt}\n\n{DIRECTIVE_INSTRUCTIONS}"

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("draftsman.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    def instruction(self, bundle: ContextBundle) -> str:
        if bundle.step is not None:
            return bundle.step.description or bundle.user_input
        return bundle.user_input

    def build_user_prompt(
        self,
        bundle: ContextBundle,
        history: list[dict[str, Any]],
        answers: list[dict[str, Any]],
    ) -> str:
        parts = [f"Task: {self.instruction(bundle)}"]
        if bundle.step is not None and bundle.step.inputs:
            parts.append("Step inputs:\n" + json.dumps(bundle.step.inputs, ensure_ascii=False))
        if answers:
            lines = [f"- Q: {item['question']}\n  A: {item['answer']}" for item in answers]
            parts.append("Answered questions:\n" + "\n".join(lines))
        if history:
            parts.append(
                "Previous iterations:\n" + json.dumps(history, ensure_ascii=False, indent=2)
            )
        return "\n\n".join(parts)

    def request_context(self, bundle: ContextBundle) -> dict[str, Any]:
        context = bundle.to_context()
        context["specialist"] = self.role
        if self.model:
            context["_model"] = self.model
        return context
