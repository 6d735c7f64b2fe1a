from __future__ import annotations

from draftsman.specialists.base import SpecialistAgent


class DocumentFormatterAgent(SpecialistAgent):
    role = "document_formatter"
    fallback_prompt = """
You are the Document Formatter specialist.
Normalize headings, numbering and the table of contents without changing meaning.
""".strip()
    category = "process"
