"""
pipelines/coordinator.py

Drives one diagnosis request through the stage graph:

    translator -> symptom_analyzer -> {researcher || risk_assessor} -> aggregator

Every stage runs through the AgentOrchestrator.  Agent-level failures are
absorbed by fallbacks; anything that still escapes (persistence faults)
marks the session "error" and yields a best-effort DiagnosisResult.
process_diagnosis() never raises for a valid PatientInput.
"""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from models.reasoning_client import ReasoningClient
from pipelines.agents.aggregator import AggregatorAgent
from pipelines.agents.base import StageOutcome
from pipelines.agents.researcher import ResearcherAgent
from pipelines.agents.risk_assessor import RiskAssessorAgent
from pipelines.agents.symptom_analyzer import SymptomAnalyzerAgent
from pipelines.agents.translator import TranslatorAgent
from pipelines.errors import DiagnosisError
from pipelines.orchestrator import AgentOrchestrator
from pipelines.schemas import (
    AgentInsights,
    DiagnosisResult,
    PatientInput,
    PrimaryDiagnosis,
    ProcessingMetadata,
)
from pipelines.settings import Settings
from pipelines.topology import DIAGNOSIS_DAG, StageNode, run_dag
from storage.db import Database
from storage.models import HistoryEntry, SessionStatus, Stage
from storage.session_manager import MetricsStore, PatientStore, SessionStore, Window

logger = logging.getLogger(__name__)

SYSTEM_ERROR_CONDITION = "System Error - Unable to Process"
ANONYMOUS_USER = "anonymous"
PARALLEL_STAGES = 2


class DiagnosisCoordinator:
    def __init__(
        self,
        orchestrator: AgentOrchestrator,
        sessions: SessionStore,
        metrics: MetricsStore,
        patients: PatientStore,
        translator: TranslatorAgent,
        symptom_analyzer: SymptomAnalyzerAgent,
        researcher: ResearcherAgent,
        risk_assessor: RiskAssessorAgent,
        aggregator: AggregatorAgent,
        client: Optional[ReasoningClient] = None,
        dag: tuple[StageNode, ...] = DIAGNOSIS_DAG,
    ) -> None:
        self.orchestrator = orchestrator
        self.sessions = sessions
        self.metrics = metrics
        self.patients = patients
        self.agents = {
            Stage.translator: translator,
            Stage.symptom_analyzer: symptom_analyzer,
            Stage.researcher: researcher,
            Stage.risk_assessor: risk_assessor,
            Stage.aggregator: aggregator,
        }
        self.client = client
        self.dag = dag

    # -----------------------------------------------------------------------
    # Pipeline
    # -----------------------------------------------------------------------

    def process_diagnosis(self, patient_input: PatientInput) -> DiagnosisResult:
        session_id = str(uuid.uuid4())
        user_id = patient_input.user_id or ANONYMOUS_USER
        started_at = datetime.now(tz=timezone.utc).isoformat()
        start = time.perf_counter()
        agents_used: list[str] = []

        try:
            self.sessions.create_session(session_id, user_id, patient_input, patient_input.patient_id)
            history = self._load_patient_context(user_id, patient_input)

            tasks = self._stage_tasks(session_id, user_id, patient_input, history)
            with ThreadPoolExecutor(max_workers=PARALLEL_STAGES, thread_name_prefix=f"dx-{session_id[:8]}") as pool:
                outcomes: Mapping[Stage, StageOutcome] = run_dag(
                    self.dag,
                    tasks,
                    pool,
                    on_start=lambda stage: agents_used.append(stage.value),
                )

            degraded = [s.value for s, o in outcomes.items() if o.is_degraded]
            api_status = "fallback" if degraded else "active"
            result: DiagnosisResult = outcomes[Stage.aggregator].value
            result = result.model_copy(
                update={
                    "processing_metadata": self._metadata(start, started_at, agents_used, api_status, session_id)
                }
            )

            self.sessions.set_final_result(session_id, result)
            self.sessions.set_status(session_id, SessionStatus.completed)
            logger.info(
                "Diagnosis %s completed in %s: urgency=%s api_status=%s",
                session_id, result.processing_metadata.processing_time, result.urgency_level, api_status,
            )
            if degraded:
                logger.warning("Session %s used fallbacks for: %s", session_id, ", ".join(degraded))
            return result

        except Exception as exc:  # noqa: BLE001
            logger.exception("Diagnosis %s aborted", session_id)
            try:
                self.sessions.set_status(session_id, SessionStatus.error)
            except DiagnosisError:
                logger.exception("Could not mark session %s as error", session_id)
            return self._error_result(exc, start, started_at, agents_used, session_id)

    def _load_patient_context(self, user_id: str, patient_input: PatientInput) -> Optional[dict]:
        fields: dict[str, Any] = {
            "age": patient_input.age,
            "gender": patient_input.gender,
            "location": patient_input.location,
            "conditions": patient_input.medical_history,
        }
        if any(v not in (None, "", []) for v in fields.values()):
            record = self.patients.upsert_demographics(user_id, fields)
        else:
            record = self.patients.find_by_user_id(user_id)
        return record.history_context() if record else None

    def _stage_tasks(
        self,
        session_id: str,
        user_id: str,
        patient: PatientInput,
        history: Optional[dict],
    ) -> dict:
        translator = self.agents[Stage.translator]
        analyzer = self.agents[Stage.symptom_analyzer]
        researcher = self.agents[Stage.researcher]
        risk = self.agents[Stage.risk_assessor]
        aggregator = self.agents[Stage.aggregator]

        def wrap(stage: Stage, call):
            agent = self.agents[stage]

            def task(done: Mapping[Stage, StageOutcome]) -> StageOutcome:
                return self.orchestrator.execute(
                    stage, session_id, user_id, lambda: call(done), model=agent.model
                )

            return task

        def text(done: Mapping[Stage, StageOutcome]) -> str:
            return done[Stage.translator].value.translated_symptoms

        return {
            Stage.translator: wrap(
                Stage.translator, lambda done: translator.run(patient.symptoms, patient.language, history)
            ),
            Stage.symptom_analyzer: wrap(
                Stage.symptom_analyzer, lambda done: analyzer.run(text(done), patient)
            ),
            Stage.researcher: wrap(
                Stage.researcher, lambda done: researcher.run(text(done), patient.location)
            ),
            Stage.risk_assessor: wrap(
                Stage.risk_assessor, lambda done: risk.run(patient, text(done))
            ),
            Stage.aggregator: wrap(
                Stage.aggregator,
                lambda done: aggregator.run(
                    patient,
                    done[Stage.translator].value,
                    done[Stage.symptom_analyzer].value,
                    done[Stage.researcher].value,
                    done[Stage.risk_assessor].value,
                ),
            ),
        }

    @staticmethod
    def _metadata(
        start: float,
        started_at: str,
        agents_used: list[str],
        api_status: str,
        session_id: str,
    ) -> ProcessingMetadata:
        elapsed = time.perf_counter() - start
        return ProcessingMetadata(
            processing_time=f"{elapsed:.2f}s",
            elapsed_ms=int(elapsed * 1000),
            agents_used=list(agents_used),
            timestamp=started_at,
            api_status=api_status,
            session_id=session_id,
        )

    def _error_result(
        self,
        exc: Exception,
        start: float,
        started_at: str,
        agents_used: list[str],
        session_id: str,
    ) -> DiagnosisResult:
        message = str(exc) or type(exc).__name__
        return DiagnosisResult(
            primary_diagnosis=PrimaryDiagnosis(condition=SYSTEM_ERROR_CONDITION, confidence="0%"),
            differential_diagnosis=[],
            urgency_level="medium",
            recommended_tests=["Manual clinical evaluation required"],
            clinical_notes=(
                f"System error: {message}. Automated analysis could not be completed. "
                "Please consult a physician for professional evaluation."
            ),
            agent_insights=AgentInsights(),
            processing_metadata=self._metadata(start, started_at, agents_used, "error", session_id),
        )

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    def get_patient_history(self, user_id: str, limit: int = 10) -> list[HistoryEntry]:
        """Newest first; ``to_payload()`` gives {sessionId, finalDiagnosis, createdAt, status}."""
        return self.sessions.find_history(user_id, limit)

    def get_system_analytics(self, window: Window = "day") -> dict:
        session_stats = self.sessions.session_stats(window)
        agent_metrics = self.metrics.aggregate_metrics(window)
        total = sum(session_stats.values())
        completed = session_stats.get(SessionStatus.completed.value, 0)
        return {
            "sessionStats": session_stats,
            "agentMetrics": {
                m.agent_name: m.model_dump(mode="json", by_alias=True, exclude={"agent_name"})
                for m in agent_metrics
            },
            "overview": {
                "totalSessions": total,
                "completedSessions": completed,
                "successRate": round(completed / total, 4) if total else 0.0,
            },
            "timeframe": window if isinstance(window, str) else f"{int(window.total_seconds())}s",
            "generatedAt": datetime.now(tz=timezone.utc).isoformat(),
        }

    def get_agent_status(self) -> dict[str, bool]:
        """Whether each stage is executing for any session right now."""
        return {stage.value: self.orchestrator.is_active(stage) for stage in Stage}

    def health_check(self) -> dict:
        configured = bool(self.client and self.client.is_configured)
        return {
            "status": "healthy" if configured else "degraded",
            "agents": {stage.value: "ready" for stage in Stage},
            "activeAgents": self.orchestrator.get_active_agents(),
            "apiConnection": "configured" if configured else "not_configured",
            "timestamp": datetime.now(tz=timezone.utc).isoformat(),
        }


def build_coordinator(settings: Optional[Settings] = None) -> DiagnosisCoordinator:
    """Wire database, stores, client, agents and orchestrator once per process."""
    settings = settings or Settings.from_env()

    db = Database(settings.db_path)
    db.init_db()
    sessions = SessionStore(db)
    metrics = MetricsStore(db)
    patients = PatientStore(db)

    client = ReasoningClient.from_settings(settings)
    if not client.is_configured:
        logger.warning("Reasoning API key not configured; every stage will use its fallback")

    def model(stage: Stage) -> str:
        return settings.model_for(stage.value)

    return DiagnosisCoordinator(
        orchestrator=AgentOrchestrator(sessions, metrics),
        sessions=sessions,
        metrics=metrics,
        patients=patients,
        translator=TranslatorAgent(client, model(Stage.translator)),
        symptom_analyzer=SymptomAnalyzerAgent(client, model(Stage.symptom_analyzer)),
        researcher=ResearcherAgent(client, model(Stage.researcher)),
        risk_assessor=RiskAssessorAgent(client, model(Stage.risk_assessor)),
        aggregator=AggregatorAgent(client, model(Stage.aggregator)),
        client=client,
    )
