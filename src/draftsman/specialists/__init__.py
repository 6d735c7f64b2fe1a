from draftsman.specialists.base import ContextBundle, SpecialistAgent
from draftsman.specialists.description_writer import OverallDescriptionWriterAgent
from draftsman.specialists.formatter import DocumentFormatterAgent
from draftsman.specialists.planner import PlannerAgent
from draftsman.specialists.project_initializer import ProjectInitializerAgent
from draftsman.specialists.requirements import (
    FunctionalRequirementsWriterAgent,
    NonFunctionalRequirementsWriterAgent,
)
from draftsman.specialists.summary import SummaryWriterAgent
from draftsman.specialists.user_journey import UserJourneyWriterAgent

STEP_SPECIALISTS: tuple[type[SpecialistAgent], ...] = (
    ProjectInitializerAgent,
    OverallDescriptionWriterAgent,
    FunctionalRequirementsWriterAgent,
    NonFunctionalRequirementsWriterAgent,
    UserJourneyWriterAgent,
    SummaryWriterAgent,
    DocumentFormatterAgent,
)


def build_specialists(model: str | None = None) -> dict[str, SpecialistAgent]:
    return {agent_type.role: agent_type(model=model) for agent_type in STEP_SPECIALISTS}


__all__ = [
    "STEP_SPECIALISTS",
    "ContextBundle",
    "DocumentFormatterAgent",
    "FunctionalRequirementsWriterAgent",
    "NonFunctionalRequirementsWriterAgent",
    "OverallDescriptionWriterAgent",
    "PlannerAgent",
    "ProjectInitializerAgent",
    "SpecialistAgent",
    "SummaryWriterAgent",
    "UserJourneyWriterAgent",
    "build_specialists",
]
