"""
pipelines/agents/researcher.py

Stage 3a: relevant literature, regional disease patterns and current
outbreaks for the symptoms and location.  Runs in parallel with the risk
assessor.
"""

from __future__ import annotations

from typing import Optional

from pipelines.agents.base import StageAgent, StageOutcome, json_instruction
from pipelines.schemas import ResearchFindings, ResearchStudy
from storage.models import Stage

SYSTEM_PROMPT = """You are an expert medical researcher with access to current literature and epidemiological surveillance.

- Cite recent, relevant studies with an evidence level from 1 (systematic review / RCT) to 5 (expert opinion).
- Describe regional disease patterns and seasonal variation for the patient's location.
- List current outbreaks relevant to the symptoms, if any."""

JSON_SCHEMA = {
    "relevantStudies": [
        {"title": "study title", "summary": "key finding", "evidenceLevel": "1-5", "source": "journal or body"}
    ],
    "regionalPatterns": "regional and seasonal notes",
    "currentOutbreaks": ["relevant outbreaks"],
}

NO_REGIONAL_DATA = "No specific regional patterns identified."

_MONSOON_CITIES = ("delhi", "mumbai")


def fallback_research(symptoms: str, location: Optional[str] = None) -> ResearchFindings:
    lowered = symptoms.lower()
    place = (location or "").lower()
    studies: list[ResearchStudy] = []
    patterns = NO_REGIONAL_DATA
    outbreaks: list[str] = []

    if "fever" in lowered:
        studies.append(
            ResearchStudy(
                title="Fever Management in Tropical Climates: Updated Guidelines 2024",
                summary="Recent evidence supports early diagnostic workup for vector-borne diseases in endemic areas",
                evidence_level=2,
                source="Tropical Medicine International",
            )
        )
        if any(city in place for city in _MONSOON_CITIES):
            patterns = "Increased dengue and chikungunya cases during monsoon season (June-October)"
            outbreaks = ["Dengue fever", "Chikungunya"]

    if "chest" in lowered:
        studies.append(
            ResearchStudy(
                title="Acute Coronary Syndrome in South Asian Populations: 2024 Update",
                summary="Higher prevalence of premature CAD in the Indian subcontinent requires modified risk stratification",
                evidence_level=1,
                source="Indian Heart Journal",
            )
        )

    return ResearchFindings(relevant_studies=studies, regional_patterns=patterns, current_outbreaks=outbreaks)


class ResearcherAgent(StageAgent):
    stage = Stage.researcher

    def run(self, symptoms: str, location: Optional[str] = None) -> StageOutcome[ResearchFindings]:
        messages = [
            {"role": "system", "content": f"{SYSTEM_PROMPT}\n\n{json_instruction(JSON_SCHEMA)}"},
            {
                "role": "user",
                "content": f'SYMPTOMS: "{symptoms}"\nLOCATION: {location or "Not specified"}',
            },
        ]
        return self._attempt(messages, self._parser(ResearchFindings), lambda: fallback_research(symptoms, location))
