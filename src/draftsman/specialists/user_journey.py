from __future__ import annotations

from draftsman.specialists.base import SpecialistAgent


class UserJourneyWriterAgent(SpecialistAgent):
    role = "user_journey_writer"
    fallback_prompt = """
You are the User Journey Writer specialist.
Describe personas and the end-to-end journeys they follow through the product.
""".strip()
