"""
pipelines/agents/aggregator.py

Stage 4: synthesise the four upstream results into the final DiagnosisResult.

Urgency is never lower than urgency_floor(): red flags or critical risk
force "critical", and the symptom urgency score / overall risk set the
minimum otherwise.  The live model may raise urgency but never lower it.
"""

from __future__ import annotations

import json

from pipelines.agents.base import StageAgent, StageOutcome, json_instruction
from pipelines.extraction import parse_stage_payload
from pipelines.schemas import (
    AgentInsights,
    DiagnosisResult,
    DifferentialDiagnosis,
    PatientInput,
    PrimaryDiagnosis,
    ResearchFindings,
    RiskAssessment,
    SymptomAnalysis,
    TranslationResult,
    max_urgency,
)
from storage.models import Stage

SYSTEM_PROMPT = """You are a senior diagnostic physician synthesising findings from a translator,
a symptom analyser, a medical researcher and a risk assessor.

- Give the most likely diagnosis with a percentage confidence and an ICD-10 code where applicable.
- List differential diagnoses with percentage confidence.
- Set urgency to low, medium, high or critical; prioritise patient safety.
- Recommend specific diagnostic tests and summarise the clinical reasoning."""

JSON_SCHEMA = {
    "primaryDiagnosis": {"condition": "most likely diagnosis", "confidence": "85%", "icd10Code": "code"},
    "differentialDiagnosis": [{"condition": "alternative diagnosis", "confidence": "10%"}],
    "urgencyLevel": "low|medium|high|critical",
    "recommendedTests": ["specific tests"],
    "clinicalNotes": "assessment and management recommendations",
}

ASSESSMENT_REQUIRED = "Clinical Assessment Required"


def urgency_floor(analysis: SymptomAnalysis, risk: RiskAssessment) -> str:
    """Minimum urgency implied by red flags, the urgency score and overall risk."""
    if analysis.red_flags or risk.overall_risk == "critical":
        return "critical"
    if analysis.urgency_score >= 7 or risk.overall_risk == "high":
        return "high"
    if analysis.urgency_score >= 4 or risk.overall_risk == "medium":
        return "medium"
    return "low"


def agent_insights(
    patient: PatientInput,
    analysis: SymptomAnalysis,
    research: ResearchFindings,
    risk: RiskAssessment,
) -> AgentInsights:
    return AgentInsights(
        translator=f"Symptoms processed from {patient.language}",
        symptom_analyzer=(
            f"{len(analysis.structured_symptoms)} symptoms analyzed, urgency {analysis.urgency_score}/10"
        ),
        researcher=f"{len(research.relevant_studies)} studies reviewed",
        risk_assessment=f"{len(risk.risk_factors)} risk factors, overall risk: {risk.overall_risk}",
    )


def fallback_diagnosis(
    patient: PatientInput,
    analysis: SymptomAnalysis,
    research: ResearchFindings,
    risk: RiskAssessment,
) -> DiagnosisResult:
    notes = "Patient requires comprehensive clinical evaluation. "
    if analysis.red_flags:
        notes += f"RED FLAGS IDENTIFIED: {', '.join(analysis.red_flags)}. "
    notes += "Recommend medical attention based on symptom severity and risk factors."

    return DiagnosisResult(
        primary_diagnosis=PrimaryDiagnosis(condition=ASSESSMENT_REQUIRED, confidence="0%"),
        differential_diagnosis=[
            DifferentialDiagnosis(condition="Multiple differential diagnoses possible", confidence="0%")
        ],
        urgency_level=urgency_floor(analysis, risk),
        recommended_tests=["Complete clinical evaluation", "Basic diagnostic workup"],
        clinical_notes=notes,
        agent_insights=agent_insights(patient, analysis, research, risk),
    )


class AggregatorAgent(StageAgent):
    stage = Stage.aggregator

    def run(
        self,
        patient: PatientInput,
        translation: TranslationResult,
        analysis: SymptomAnalysis,
        research: ResearchFindings,
        risk: RiskAssessment,
    ) -> StageOutcome[DiagnosisResult]:
        clinical_data = (
            "PATIENT INFORMATION:\n"
            f"- Age: {patient.age if patient.age is not None else 'Not specified'}\n"
            f"- Gender: {patient.gender or 'Not specified'}\n"
            f"- Location: {patient.location or 'Not specified'}\n"
            f"- Medical History: {', '.join(patient.medical_history) or 'None provided'}\n"
            f"- Language: {patient.language}\n\n"
            f'TRANSLATED SYMPTOMS: "{translation.translated_symptoms}"\n'
            f"EMERGENCY KEYWORDS: {', '.join(translation.emergency_keywords) or 'None'}\n\n"
            "SYMPTOM ANALYSIS:\n"
            f"{json.dumps(analysis.to_payload()['structuredSymptoms'], indent=2, ensure_ascii=False)}\n"
            f"- Red Flags: {', '.join(analysis.red_flags) or 'None identified'}\n"
            f"- Urgency Score: {analysis.urgency_score}/10\n\n"
            "RESEARCH FINDINGS:\n"
            f"- Relevant Studies: {len(research.relevant_studies)} found\n"
            f"- Regional Patterns: {research.regional_patterns or 'None specified'}\n"
            f"- Current Outbreaks: {', '.join(research.current_outbreaks) or 'None reported'}\n\n"
            "RISK ASSESSMENT:\n"
            f"- Risk Factors: {len(risk.risk_factors)} identified\n"
            f"- Overall Risk: {risk.overall_risk}\n"
            f"- Key Recommendations: {'; '.join(risk.recommendations[:3])}"
        )
        messages = [
            {"role": "system", "content": f"{SYSTEM_PROMPT}\n\n{json_instruction(JSON_SCHEMA)}"},
            {"role": "user", "content": clinical_data},
        ]
        floor = urgency_floor(analysis, risk)
        insights = agent_insights(patient, analysis, research, risk)

        def parse(text: str) -> DiagnosisResult:
            result = parse_stage_payload(text, DiagnosisResult)
            urgency = max_urgency(result.urgency_level, floor)
            notes = result.clinical_notes
            if urgency != result.urgency_level:
                notes = (
                    f"{notes} Urgency escalated from {result.urgency_level} to {urgency} "
                    "based on red flags and risk assessment."
                )
            return result.model_copy(
                update={"urgency_level": urgency, "clinical_notes": notes, "agent_insights": insights}
            )

        return self._attempt(messages, parse, lambda: fallback_diagnosis(patient, analysis, research, risk))
