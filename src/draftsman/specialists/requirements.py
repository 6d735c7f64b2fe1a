from __future__ import annotations

from draftsman.specialists.base import SpecialistAgent


class FunctionalRequirementsWriterAgent(SpecialistAgent):
    role = "fr_writer"
    prompt_file = "fr_writer.md"
    fallback_prompt = """
You are the Functional Requirements Writer specialist.
Write numbered, testable functional requirements with acceptance criteria.
""".strip()


class NonFunctionalRequirementsWriterAgent(SpecialistAgent):
    role = "nfr_writer"
    fallback_prompt = """
You are the Non-Functional Requirements Writer specialist.
Write measurable quality requirements: performance, security, availability, usability.
""".strip()
