"""Clamping and normalisation rules on the stage schemas."""

import json

import pytest
from pydantic import ValidationError

from pipelines.schemas import (
    DiagnosisResult,
    PatientInput,
    PrimaryDiagnosis,
    ResearchStudy,
    RiskAssessment,
    StructuredSymptom,
    SymptomAnalysis,
    confidence_to_percent,
    format_confidence,
    max_urgency,
)


@pytest.mark.parametrize("raw, expected", [(15, 10), (0, 1), (-3, 1), ("7", 7), ("severity 9/10", 9), (None, 5), ("high", 5), (6.6, 7)])
def test_severity_is_clamped_to_one_through_ten(raw, expected):
    assert StructuredSymptom(symptom="x", severity=raw).severity == expected


def test_urgency_score_clamped_and_defaulted():
    assert SymptomAnalysis(structured_symptoms=[], red_flags=[], urgency_score=42).urgency_score == 10
    assert SymptomAnalysis(structured_symptoms=[], red_flags=[], urgency_score="urgent").urgency_score == 5


def test_evidence_level_clamped_to_one_through_five():
    assert ResearchStudy(evidence_level=9).evidence_level == 5
    assert ResearchStudy(evidence_level=0).evidence_level == 1
    assert ResearchStudy(evidence_level="level II").evidence_level == 3


def test_invalid_impact_and_overall_risk_coerced_to_medium():
    risk = RiskAssessment.model_validate(
        {
            "riskFactors": [{"factor": "Smoking", "impact": "extreme", "description": "20 pack-years"}],
            "overallRisk": "very bad",
            "recommendations": [],
        }
    )
    assert risk.risk_factors[0].impact == "medium"
    assert risk.overall_risk == "medium"


def test_levels_are_lowercased():
    risk = RiskAssessment(risk_factors=[], overall_risk="CRITICAL", recommendations=[])
    assert risk.overall_risk == "critical"


def test_required_fields_are_enforced():
    with pytest.raises(ValidationError):
        SymptomAnalysis.model_validate({"urgencyScore": 3})


@pytest.mark.parametrize(
    "raw, expected",
    [("85%", "85%"), ("85", "85%"), (85, "85%"), (0.85, "85%"), ("0.85", "85%"),
     ("about 70 percent", "70%"), ("150%", "100%"), ("Pending evaluation", "0%"), (None, "0%")],
)
def test_confidence_normalised_to_integer_percent(raw, expected):
    assert PrimaryDiagnosis(condition="x", confidence=raw).confidence == expected


NON_FINITE = [float("inf"), float("-inf"), float("nan"), 10**400, "9" * 400]


@pytest.mark.parametrize("raw", NON_FINITE, ids=["inf", "-inf", "nan", "huge-int", "huge-digit-string"])
def test_non_finite_numbers_fall_back_to_defaults(raw):
    assert StructuredSymptom(symptom="x", severity=raw).severity == 5
    assert SymptomAnalysis(structured_symptoms=[], red_flags=[], urgency_score=raw).urgency_score == 5
    assert ResearchStudy(evidence_level=raw).evidence_level == 3
    assert PrimaryDiagnosis(condition="x", confidence=raw).confidence == "0%"


def test_non_finite_json_literals_validate():
    data = json.loads('{"structuredSymptoms": [{"severity": 1e999}], "redFlags": [], "urgencyScore": Infinity}')
    analysis = SymptomAnalysis.model_validate(data)
    assert analysis.structured_symptoms[0].severity == 5
    assert analysis.urgency_score == 5
    assert confidence_to_percent(json.loads("NaN")) is None


def test_confidence_helpers():
    assert confidence_to_percent("n/a") is None
    assert format_confidence("n/a", default=50) == "50%"


def test_diagnosis_result_serialises_with_camel_case_keys():
    result = DiagnosisResult(primary_diagnosis=PrimaryDiagnosis(condition="Flu", confidence="60%"), urgency_level="HIGH")
    payload = result.to_payload()
    assert payload["primaryDiagnosis"]["condition"] == "Flu"
    assert payload["urgencyLevel"] == "high"
    assert "recommendedTests" in payload


def test_unknown_urgency_level_becomes_medium():
    result = DiagnosisResult.model_validate({"primaryDiagnosis": {"condition": "x"}, "urgencyLevel": "asap"})
    assert result.urgency_level == "medium"


def test_max_urgency_ordering():
    assert max_urgency("low", "critical", "medium") == "critical"
    assert max_urgency("medium", "high") == "high"
    assert max_urgency("low") == "low"


def test_patient_input_normalises_and_validates():
    patient = PatientInput(symptoms="  cough  ", language="Hindi")
    assert patient.symptoms == "cough"
    assert patient.language == "hindi"
    assert PatientInput.model_validate({"symptoms": "x", "medicalHistory": ["asthma"]}).medical_history == ["asthma"]
    with pytest.raises(ValidationError):
        PatientInput(symptoms="   ")


def test_patient_input_is_immutable():
    patient = PatientInput(symptoms="cough")
    with pytest.raises(ValidationError):
        patient.symptoms = "fever"
