from __future__ import annotations

from draftsman.specialists.base import SpecialistAgent


class PlannerAgent(SpecialistAgent):
    role = "planner"
    prompt_file = "planner.md"
    fallback_prompt = """
You are the planning specialist of a requirements-document assistant.
Split the user's request into ordered steps, each delegated to one specialist.
Answer directly when no document work is needed.
""".strip()
    category = "process"
    allowed_tools = ()
    uses_directives = False
