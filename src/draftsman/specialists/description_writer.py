from __future__ import annotations

from draftsman.specialists.base import SpecialistAgent


class OverallDescriptionWriterAgent(SpecialistAgent):
    role = "overall_description_writer"
    fallback_prompt = """
You are the Overall Description Writer specialist.
Draft product perspective, goals, users and constraints sections.
Confirm tone and audience with the user when they are not stated.
""".strip()
