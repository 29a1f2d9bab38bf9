"""
pipelines/agents/symptom_analyzer.py

Stage 2: structure the translated symptoms (severity, onset, body system),
raise red flags and score urgency on a 1-10 scale.
"""

from __future__ import annotations

from typing import NamedTuple, Optional

from pipelines.agents.base import StageAgent, StageOutcome, json_instruction
from pipelines.agents.keywords import EMERGENCY_TERMS, matches_category
from pipelines.schemas import PatientInput, StructuredSymptom, SymptomAnalysis
from storage.models import Stage

SYSTEM_PROMPT = """You are an expert clinical symptom analyser.

SEVERITY (1-10): 1-3 mild, 4-6 moderate, 7-8 severe, 9-10 critical.
URGENCY (1-10): 1-2 routine, 3-4 within 48h, 5-6 within hours, 7-8 within 1-2h, 9-10 emergency.
RED FLAGS: chest pain with radiation, respiratory distress, altered consciousness,
severe abdominal pain, stroke signs, anaphylaxis, uncontrolled bleeding,
high fever with altered mental status.
Classify each symptom by body system (Cardiovascular, Respiratory, Gastrointestinal,
Neurological, Musculoskeletal, Genitourinary, Dermatological, Endocrine,
Hematological, Psychiatric, ENT, General)."""

JSON_SCHEMA = {
    "structuredSymptoms": [
        {"symptom": "name", "severity": "1-10", "duration": "onset or duration", "bodySystem": "system"}
    ],
    "redFlags": ["findings requiring immediate attention"],
    "urgencyScore": "1-10",
}

BASE_URGENCY = 3


class _Rule(NamedTuple):
    terms: tuple[str, ...]
    symptom: str
    severity: int
    duration: str
    body_system: str
    urgency: int
    red_flag: Optional[str] = None


# Order is the order symptoms appear in the fallback result.
FALLBACK_RULES: tuple[_Rule, ...] = (
    _Rule(EMERGENCY_TERMS["chest_pain"], "Chest Pain", 8, "Acute onset", "Cardiovascular", 9,
          "Chest pain - possible cardiac event"),
    _Rule(EMERGENCY_TERMS["breathing_difficulty"] + ("dyspnea", "shortness of breath"),
          "Breathing Difficulty", 8, "Acute onset", "Respiratory", 8,
          "Breathing difficulty - possible respiratory distress"),
    _Rule(EMERGENCY_TERMS["unconscious"] + ("fainted", "passed out"),
          "Loss of Consciousness", 9, "Acute onset", "Neurological", 10,
          "Altered consciousness - immediate evaluation required"),
    _Rule(("fever", "बुखार", "காய்ச்சல்", "జ్వరం", "জ্বর"), "Fever", 6, "Recent onset", "General", 5),
    _Rule(("headache", "सिर दर्द", "தலைவலி", "తలనొప్పి", "মাথাব্যথা"), "Headache", 5, "Variable", "Neurological", BASE_URGENCY),
    _Rule(("abdominal pain", "stomach pain", "पेट दर्द"), "Abdominal Pain", 6, "Variable", "Gastrointestinal", 5),
    _Rule(("cough", "खांसी"), "Cough", 4, "Variable", "Respiratory", BASE_URGENCY),
    _Rule(("vomiting", "उल्टी"), "Vomiting", 5, "Recent onset", "Gastrointestinal", 4),
)

SEVERE_URGENCY_FLOOR = 6


def fallback_analysis(symptoms: str) -> SymptomAnalysis:
    lowered = symptoms.lower()
    structured: list[StructuredSymptom] = []
    red_flags: list[str] = []
    urgency = BASE_URGENCY

    for rule in FALLBACK_RULES:
        if not any(term in lowered for term in rule.terms):
            continue
        structured.append(
            StructuredSymptom(
                symptom=rule.symptom,
                severity=rule.severity,
                duration=rule.duration,
                body_system=rule.body_system,
            )
        )
        urgency = max(urgency, rule.urgency)
        if rule.red_flag:
            red_flags.append(rule.red_flag)

    if matches_category(symptoms, "severe"):
        urgency = max(urgency, SEVERE_URGENCY_FLOOR)

    if not structured:
        structured.append(
            StructuredSymptom(symptom="Reported symptoms", severity=3, duration="Unknown duration", body_system="General")
        )

    return SymptomAnalysis(structured_symptoms=structured, red_flags=red_flags, urgency_score=urgency)


class SymptomAnalyzerAgent(StageAgent):
    stage = Stage.symptom_analyzer

    def run(self, symptoms: str, patient: PatientInput) -> StageOutcome[SymptomAnalysis]:
        context = (
            "PATIENT CONTEXT:\n"
            f"- Age: {patient.age if patient.age is not None else 'Not specified'}\n"
            f"- Gender: {patient.gender or 'Not specified'}\n"
            f"- Location: {patient.location or 'Not specified'}\n"
            f"- Medical History: {', '.join(patient.medical_history) or 'None provided'}"
        )
        messages = [
            {"role": "system", "content": f"{SYSTEM_PROMPT}\n\n{context}\n\n{json_instruction(JSON_SCHEMA)}"},
            {"role": "user", "content": f'Analyse these symptoms with clinical precision:\n\nSYMPTOMS: "{symptoms}"'},
        ]
        return self._attempt(messages, self._parser(SymptomAnalysis), lambda: fallback_analysis(symptoms))
