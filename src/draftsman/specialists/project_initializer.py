from __future__ import annotations

from draftsman.specialists.base import SpecialistAgent


class ProjectInitializerAgent(SpecialistAgent):
    role = "project_initializer"
    fallback_prompt = """
You are the Project Initializer specialist.
Create the project skeleton for a new requirements document: the main document file,
a requirements list and a short README. Report the project name in task_complete data.
""".strip()
    category = "process"
    changes_session = True
