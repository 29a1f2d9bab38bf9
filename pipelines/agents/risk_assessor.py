"""
pipelines/agents/risk_assessor.py

Stage 3b: patient risk factors, overall risk and recommendations.  Runs in
parallel with the researcher.
"""

from __future__ import annotations

from pipelines.agents.base import StageAgent, StageOutcome, json_instruction
from pipelines.agents.keywords import matches_category
from pipelines.schemas import PatientInput, RiskAssessment, RiskFactor
from storage.models import Stage

SYSTEM_PROMPT = """You are an expert clinical risk assessment specialist.

- Identify risk factors from age, sex, location, medical history and presenting symptoms.
- Rate each factor's impact as low, medium or high.
- Rate overall risk as low, medium, high or critical.
- Give concrete, safety-first recommendations."""

JSON_SCHEMA = {
    "riskFactors": [{"factor": "name", "impact": "low|medium|high", "description": "why it matters"}],
    "overallRisk": "low|medium|high|critical",
    "recommendations": ["actionable recommendations"],
}

_POLLUTED_CITIES = ("delhi", "mumbai", "kolkata")

DEFAULT_RECOMMENDATIONS = (
    "Regular vital signs monitoring",
    "Follow-up within 24-48 hours if symptoms worsen",
    "Maintain adequate hydration and rest",
)


def fallback_risk(patient: PatientInput, symptoms: str) -> RiskAssessment:
    factors: list[RiskFactor] = []
    recommendations: list[str] = []
    overall = "low"

    age = patient.age
    if age is not None:
        if age > 65:
            factors.append(RiskFactor(
                factor="Advanced Age",
                impact="high",
                description="Increased risk for multiple comorbidities and medication interactions",
            ))
            overall = "high"
        elif age > 45:
            factors.append(RiskFactor(
                factor="Middle Age",
                impact="medium",
                description="Increased risk for cardiovascular and metabolic conditions",
            ))
            overall = "medium"

    if (patient.gender or "").lower() == "male" and age is not None and age > 40:
        factors.append(RiskFactor(
            factor="Male Gender with Age",
            impact="medium",
            description="Higher cardiovascular risk in middle-aged males",
        ))

    place = (patient.location or "").lower()
    if any(city in place for city in _POLLUTED_CITIES):
        factors.append(RiskFactor(
            factor="High Air Pollution Exposure",
            impact="medium",
            description="Living in a high air pollution area increases respiratory and cardiovascular risks",
        ))

    if patient.medical_history:
        factors.append(RiskFactor(
            factor="Existing Medical Conditions",
            impact="medium",
            description=f"Known history: {', '.join(patient.medical_history)}",
        ))
        if overall == "low":
            overall = "medium"

    lowered = symptoms.lower()
    if "chest" in lowered or matches_category(symptoms, "chest_pain"):
        overall = "critical"
        recommendations.append("Immediate cardiac evaluation with ECG and cardiac enzymes")
        recommendations.append("Consider emergency department evaluation")

    if matches_category(symptoms, "breathing_difficulty") or "dyspnea" in lowered:
        overall = "high" if overall == "low" else "critical"
        recommendations.append("Oxygen saturation monitoring")
        recommendations.append("Chest imaging if respiratory symptoms persist")

    if matches_category(symptoms, "unconscious"):
        overall = "critical"
        recommendations.append("Emergency evaluation for altered consciousness")

    if not recommendations:
        recommendations.extend(DEFAULT_RECOMMENDATIONS)

    return RiskAssessment(risk_factors=factors, overall_risk=overall, recommendations=recommendations)


class RiskAssessorAgent(StageAgent):
    stage = Stage.risk_assessor

    def run(self, patient: PatientInput, symptoms: str) -> StageOutcome[RiskAssessment]:
        profile = (
            f"- Age: {patient.age if patient.age is not None else 'Not specified'}\n"
            f"- Gender: {patient.gender or 'Not specified'}\n"
            f"- Location: {patient.location or 'Not specified'}\n"
            f"- Medical History: {', '.join(patient.medical_history) or 'None provided'}"
        )
        messages = [
            {"role": "system", "content": f"{SYSTEM_PROMPT}\n\n{json_instruction(JSON_SCHEMA)}"},
            {"role": "user", "content": f'PATIENT PROFILE:\n{profile}\n\nSYMPTOMS: "{symptoms}"'},
        ]
        return self._attempt(messages, self._parser(RiskAssessment), lambda: fallback_risk(patient, symptoms))
