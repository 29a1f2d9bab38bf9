"""
pipelines/schemas.py

Pydantic models for everything that flows through the diagnosis pipeline:
- PatientInput (immutable request)
- the four intermediate stage results
- DiagnosisResult (the caller-facing artifact)

JSON form uses camelCase keys to match the existing consumers
(``primaryDiagnosis``, ``urgencyLevel`` ...); attributes are snake_case.

Range/enum clamping lives in the validators below, so a value built from
model output, from a fallback rule or from the database can never carry an
out-of-range severity, evidence level, impact or urgency.
"""

from __future__ import annotations

import math
import re
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Urgency = Literal["low", "medium", "high", "critical"]
Impact = Literal["low", "medium", "high"]
ApiStatus = Literal["active", "fallback", "error"]

URGENCY_ORDER: tuple[str, ...] = ("low", "medium", "high", "critical")
IMPACT_LEVELS: tuple[str, ...] = ("low", "medium", "high")

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def _first_number(value: Any) -> Optional[float]:
    """First finite number in *value*; NaN, infinities and overflowing ints give None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        match = _NUMBER_RE.search(value)
        if not match:
            return None
        number = float(match.group(0))
    else:
        return None
    return number if math.isfinite(number) else None


def clamp_int(value: Any, low: int, high: int, default: int) -> int:
    """Coerce *value* to an int within [low, high]; unparseable -> *default*."""
    number = _first_number(value)
    if number is None:
        return default
    return int(min(max(round(number), low), high))


def coerce_level(value: Any, allowed: tuple[str, ...], default: str = "medium") -> str:
    """Lower-case *value* if it is one of *allowed*, otherwise *default*."""
    if isinstance(value, str):
        level = value.strip().lower()
        if level in allowed:
            return level
    return default


def max_urgency(*levels: str) -> str:
    """Most severe of *levels* under low < medium < high < critical."""
    return max(levels, key=URGENCY_ORDER.index)


def confidence_to_percent(value: Any) -> Optional[int]:
    """
    Canonical numeric confidence (0-100) or None if *value* carries no number.

    Fractions written with a decimal point and no percent sign (``0.85``,
    ``"0.85"``) are read as ratios.
    """
    number = _first_number(value)
    if number is None:
        return None
    raw = value if isinstance(value, str) else repr(value)
    if "%" not in raw and "." in raw and 0 <= number <= 1:
        number *= 100
    return int(min(max(round(number), 0), 100))


def format_confidence(value: Any, default: int = 0) -> str:
    pct = confidence_to_percent(value)
    return f"{default if pct is None else pct}%"


def _text_or(value: Any, default: str) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    return value


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class PatientInput(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    symptoms: str = Field(min_length=1)
    language: str = "english"
    age: Optional[int] = Field(default=None, ge=0, le=130)
    gender: Optional[str] = None
    location: Optional[str] = None
    medical_history: list[str] = Field(default_factory=list)
    user_id: Optional[str] = None
    patient_id: Optional[str] = None

    @field_validator("symptoms")
    @classmethod
    def _strip_symptoms(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("symptoms must not be blank")
        return v

    @field_validator("language", mode="before")
    @classmethod
    def _normalise_language(cls, v: Any) -> str:
        if not isinstance(v, str) or not v.strip():
            return "english"
        return v.strip().lower()


# ---------------------------------------------------------------------------
# Stage results
# ---------------------------------------------------------------------------


class TranslationResult(CamelModel):
    translated_symptoms: str = Field(min_length=1)
    emergency_keywords: list[str]
    cultural_context: str = ""

    @field_validator("cultural_context", mode="before")
    @classmethod
    def _context_text(cls, v: Any) -> Any:
        return _text_or(v, "")


class StructuredSymptom(CamelModel):
    symptom: str = "Unknown symptom"
    severity: int = 5
    duration: str = "Unknown duration"
    body_system: str = "General"

    @field_validator("severity", mode="before")
    @classmethod
    def _clamp_severity(cls, v: Any) -> int:
        return clamp_int(v, 1, 10, default=5)

    @field_validator("symptom", mode="before")
    @classmethod
    def _symptom_text(cls, v: Any) -> Any:
        return _text_or(v, "Unknown symptom")

    @field_validator("duration", mode="before")
    @classmethod
    def _duration_text(cls, v: Any) -> Any:
        return _text_or(v, "Unknown duration")

    @field_validator("body_system", mode="before")
    @classmethod
    def _system_text(cls, v: Any) -> Any:
        return _text_or(v, "General")


class SymptomAnalysis(CamelModel):
    structured_symptoms: list[StructuredSymptom]
    red_flags: list[str]
    urgency_score: int = 5

    @field_validator("urgency_score", mode="before")
    @classmethod
    def _clamp_urgency(cls, v: Any) -> int:
        return clamp_int(v, 1, 10, default=5)


class ResearchStudy(CamelModel):
    title: str = "Research finding"
    summary: str = "No summary available"
    evidence_level: int = 3
    source: str = "Medical literature"

    @field_validator("evidence_level", mode="before")
    @classmethod
    def _clamp_evidence(cls, v: Any) -> int:
        return clamp_int(v, 1, 5, default=3)

    @field_validator("title", mode="before")
    @classmethod
    def _title_text(cls, v: Any) -> Any:
        return _text_or(v, "Research finding")

    @field_validator("summary", mode="before")
    @classmethod
    def _summary_text(cls, v: Any) -> Any:
        return _text_or(v, "No summary available")

    @field_validator("source", mode="before")
    @classmethod
    def _source_text(cls, v: Any) -> Any:
        return _text_or(v, "Medical literature")


class ResearchFindings(CamelModel):
    relevant_studies: list[ResearchStudy]
    regional_patterns: str = ""
    current_outbreaks: list[str] = Field(default_factory=list)

    @field_validator("regional_patterns", mode="before")
    @classmethod
    def _patterns_text(cls, v: Any) -> Any:
        return _text_or(v, "")

    @field_validator("current_outbreaks", mode="before")
    @classmethod
    def _outbreak_list(cls, v: Any) -> Any:
        return v if isinstance(v, list) else []


class RiskFactor(CamelModel):
    factor: str = "Unknown risk factor"
    impact: Impact = "medium"
    description: str = "No description available"

    @field_validator("impact", mode="before")
    @classmethod
    def _coerce_impact(cls, v: Any) -> str:
        return coerce_level(v, IMPACT_LEVELS)

    @field_validator("factor", mode="before")
    @classmethod
    def _factor_text(cls, v: Any) -> Any:
        return _text_or(v, "Unknown risk factor")

    @field_validator("description", mode="before")
    @classmethod
    def _description_text(cls, v: Any) -> Any:
        return _text_or(v, "No description available")


class RiskAssessment(CamelModel):
    risk_factors: list[RiskFactor]
    overall_risk: Urgency = "medium"
    recommendations: list[str]

    @field_validator("overall_risk", mode="before")
    @classmethod
    def _coerce_overall(cls, v: Any) -> str:
        return coerce_level(v, URGENCY_ORDER)


# ---------------------------------------------------------------------------
# Final diagnosis
# ---------------------------------------------------------------------------


class PrimaryDiagnosis(CamelModel):
    condition: str = "Undetermined"
    confidence: str = "0%"
    icd10_code: Optional[str] = None

    @field_validator("condition", mode="before")
    @classmethod
    def _condition_text(cls, v: Any) -> Any:
        return _text_or(v, "Undetermined")

    @field_validator("confidence", mode="before")
    @classmethod
    def _normalise_confidence(cls, v: Any) -> str:
        return format_confidence(v)


class DifferentialDiagnosis(CamelModel):
    condition: str
    confidence: str = "0%"

    @field_validator("confidence", mode="before")
    @classmethod
    def _normalise_confidence(cls, v: Any) -> str:
        return format_confidence(v)


class AgentInsights(CamelModel):
    translator: Optional[str] = None
    symptom_analyzer: Optional[str] = None
    researcher: Optional[str] = None
    risk_assessment: Optional[str] = None


class ProcessingMetadata(CamelModel):
    processing_time: str
    elapsed_ms: int
    agents_used: list[str] = Field(default_factory=list)
    timestamp: str
    api_status: ApiStatus
    session_id: str


class DiagnosisResult(CamelModel):
    primary_diagnosis: PrimaryDiagnosis
    differential_diagnosis: list[DifferentialDiagnosis] = Field(default_factory=list)
    urgency_level: Urgency = "medium"
    recommended_tests: list[str] = Field(default_factory=list)
    clinical_notes: str = "Clinical assessment completed."
    agent_insights: AgentInsights = Field(default_factory=AgentInsights)
    processing_metadata: Optional[ProcessingMetadata] = None

    @field_validator("urgency_level", mode="before")
    @classmethod
    def _coerce_urgency(cls, v: Any) -> str:
        return coerce_level(v, URGENCY_ORDER)

    @field_validator("clinical_notes", mode="before")
    @classmethod
    def _notes_text(cls, v: Any) -> Any:
        return _text_or(v, "Clinical assessment completed.")

    @field_validator("differential_diagnosis", "recommended_tests", mode="before")
    @classmethod
    def _list_or_empty(cls, v: Any) -> Any:
        return v if isinstance(v, list) else []
