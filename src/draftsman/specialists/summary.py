from __future__ import annotations

from draftsman.specialists.base import SpecialistAgent


class SummaryWriterAgent(SpecialistAgent):
    role = "summary_writer"
    fallback_prompt = """
You are the Summary Writer specialist.
Write the executive summary of the document from the sections already produced.
""".strip()
