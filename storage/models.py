"""
storage/models.py

Pydantic v2 records for the persistence layer.

These describe the shape of data flowing between the stores
(session_manager.py) and the pipeline.  They are NOT ORM models;
persistence is handled entirely by db.py.
"""

from __future__ import annotations

from enum import Enum
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from pipelines.schemas import (
    CamelModel,
    DiagnosisResult,
    PatientInput,
    ResearchFindings,
    RiskAssessment,
    SymptomAnalysis,
    TranslationResult,
)

ResultT = TypeVar("ResultT")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Stage(str, Enum):
    """The five pipeline stages; values double as agent names in metrics."""
    translator = "translator"
    symptom_analyzer = "symptom_analyzer"
    researcher = "researcher"
    risk_assessor = "risk_assessor"
    aggregator = "aggregator"


class StageStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    error = "error"


class SessionStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    error = "error"


class PipelineState(str, Enum):
    """Coarse position of a session in the stage state machine."""
    created = "created"
    translating = "translating"
    analyzing = "analyzing"
    researching_and_assessing = "researching_and_assessing"
    aggregating = "aggregating"
    completed = "completed"
    error = "error"


STAGE_RESULT_TYPES: dict[Stage, type[BaseModel]] = {
    Stage.translator: TranslationResult,
    Stage.symptom_analyzer: SymptomAnalysis,
    Stage.researcher: ResearchFindings,
    Stage.risk_assessor: RiskAssessment,
    Stage.aggregator: DiagnosisResult,
}


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class StageRecord(BaseModel, Generic[ResultT]):
    """Progress of one stage inside one session."""
    status: StageStatus = StageStatus.pending
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    result: Optional[ResultT] = None
    error: Optional[str] = None


class DiagnosisSession(BaseModel):
    """
    One end-to-end diagnosis request and its per-stage progress.

    Each stage has its own statically typed field; ``stage()`` gives
    uniform read access by Stage for code that iterates the pipeline.
    """
    session_id: str
    user_id: str
    patient_id: Optional[str] = None
    input: PatientInput
    status: SessionStatus = SessionStatus.processing
    translator: StageRecord[TranslationResult] = Field(default_factory=StageRecord[TranslationResult])
    symptom_analyzer: StageRecord[SymptomAnalysis] = Field(default_factory=StageRecord[SymptomAnalysis])
    researcher: StageRecord[ResearchFindings] = Field(default_factory=StageRecord[ResearchFindings])
    risk_assessor: StageRecord[RiskAssessment] = Field(default_factory=StageRecord[RiskAssessment])
    aggregator: StageRecord[DiagnosisResult] = Field(default_factory=StageRecord[DiagnosisResult])
    final_diagnosis: Optional[DiagnosisResult] = None
    created_at: str
    updated_at: str

    def stage(self, stage: Stage) -> StageRecord:
        return getattr(self, stage.value)

    @property
    def pipeline_state(self) -> PipelineState:
        """Derive the state-machine position from the persisted stage records."""
        if self.status == SessionStatus.error:
            return PipelineState.error
        if self.status == SessionStatus.completed:
            return PipelineState.completed

        def _started(s: Stage) -> bool:
            return self.stage(s).status != StageStatus.pending

        if _started(Stage.aggregator):
            return PipelineState.aggregating
        if _started(Stage.researcher) or _started(Stage.risk_assessor):
            return PipelineState.researching_and_assessing
        if _started(Stage.symptom_analyzer):
            return PipelineState.analyzing
        if _started(Stage.translator):
            return PipelineState.translating
        return PipelineState.created


class HistoryEntry(CamelModel):
    """One row of a user's diagnosis history, newest first."""
    session_id: str
    status: SessionStatus
    final_diagnosis: Optional[DiagnosisResult] = None
    created_at: str


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class AgentMetricRecord(BaseModel):
    """One immutable row per stage execution."""
    model_config = ConfigDict(frozen=True)

    agent_name: Stage
    session_id: str
    user_id: str
    start_time: str
    end_time: str
    elapsed_ms: int = Field(ge=0)
    success: bool
    fallback_used: bool = False
    error_message: Optional[str] = None
    model: Optional[str] = None
    response_time_ms: Optional[int] = None
    created_at: Optional[str] = None


class AgentMetricSummary(CamelModel):
    agent_name: str
    total_calls: int
    avg_elapsed_ms: float
    success_rate: float
    fallback_rate: float
    avg_response_time_ms: Optional[float] = None


# ---------------------------------------------------------------------------
# Patients
# ---------------------------------------------------------------------------


class PatientRecord(BaseModel):
    """
    Longitudinal demographics keyed by user id.

    The whole record is PHI and is stored only as an encrypted blob.
    """
    user_id: str
    age: Optional[int] = None
    gender: Optional[str] = None
    location: Optional[str] = None
    conditions: list[str] = Field(default_factory=list)
    medications: list[str] = Field(default_factory=list)
    allergies: list[str] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def history_context(self) -> dict:
        """Context handed to the translator; empty fields are omitted."""
        return {
            k: v
            for k, v in self.model_dump(
                include={"age", "gender", "location", "conditions", "medications", "allergies"}
            ).items()
            if v not in (None, [], "")
        }
