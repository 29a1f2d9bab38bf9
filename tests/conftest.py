"""
Pytest configuration and shared fixtures.

Nothing here touches the network: agents get a ScriptedClient keyed by
model id, and every agent is built with its stage name as model id so a
script can answer (or fail) per stage.
"""

import json
import threading
import time

import pytest

from models.reasoning_client import ReasoningClient, ReasoningResponse
from pipelines.agents.aggregator import AggregatorAgent
from pipelines.agents.researcher import ResearcherAgent
from pipelines.agents.risk_assessor import RiskAssessorAgent
from pipelines.agents.symptom_analyzer import SymptomAnalyzerAgent
from pipelines.agents.translator import TranslatorAgent
from pipelines.coordinator import DiagnosisCoordinator
from pipelines.errors import UpstreamError
from pipelines.orchestrator import AgentOrchestrator
from pipelines.schemas import PatientInput
from storage.db import Database
from storage.models import Stage
from storage.session_manager import MetricsStore, PatientStore, SessionStore


class ScriptedClient:
    """Stands in for ReasoningClient; answers by model id."""

    def __init__(self, responses=None, delays=None, configured=True):
        self.responses = dict(responses or {})
        self.delays = dict(delays or {})
        self.configured = configured
        self.calls = []
        self._lock = threading.Lock()

    @property
    def is_configured(self):
        return self.configured

    def call(self, messages, model):
        with self._lock:
            self.calls.append((model, list(messages)))
        delay = self.delays.get(model)
        if delay:
            time.sleep(delay)
        response = self.responses.get(model)
        if isinstance(response, Exception):
            raise response
        if response is None:
            raise UpstreamError(500, f"no scripted response for {model}")
        return ReasoningResponse(text=response, elapsed_ms=int((delay or 0) * 1000), model=model)

    def models_called(self):
        return [m for m, _ in self.calls]


LIVE_RESPONSES = {
    Stage.translator.value: json.dumps({
        "translatedSymptoms": "Headache and mild fever for two days",
        "emergencyKeywords": [],
        "culturalContext": "Patient communicated in english",
    }),
    Stage.symptom_analyzer.value: "Here is the analysis:\n```json\n" + json.dumps({
        "structuredSymptoms": [
            {"symptom": "Headache", "severity": 4, "duration": "2 days", "bodySystem": "Neurological"},
            {"symptom": "Fever", "severity": 5, "duration": "2 days", "bodySystem": "General"},
        ],
        "redFlags": [],
        "urgencyScore": 4,
    }) + "\n```",
    Stage.researcher.value: json.dumps({
        "relevantStudies": [
            {"title": "Viral fever in adults", "summary": "Mostly self-limiting", "evidenceLevel": 2, "source": "BMJ"}
        ],
        "regionalPatterns": "Seasonal viral illness common",
        "currentOutbreaks": [],
    }),
    Stage.risk_assessor.value: json.dumps({
        "riskFactors": [{"factor": "None significant", "impact": "low", "description": "Healthy adult"}],
        "overallRisk": "low",
        "recommendations": ["Rest and fluids"],
    }),
    Stage.aggregator.value: json.dumps({
        "primaryDiagnosis": {"condition": "Viral fever", "confidence": "80%", "icd10Code": "B34.9"},
        "differentialDiagnosis": [{"condition": "Dengue fever", "confidence": "10%"}],
        "urgencyLevel": "medium",
        "recommendedTests": ["Complete blood count"],
        "clinicalNotes": "Likely self-limiting viral illness.",
    }),
}


@pytest.fixture(autouse=True)
def _no_api_key(monkeypatch):
    monkeypatch.delenv("PERPLEXITY_API_KEY", raising=False)


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "diagnosis.db")
    database.init_db()
    return database


@pytest.fixture
def session_store(db):
    return SessionStore(db)


@pytest.fixture
def metrics_store(db):
    return MetricsStore(db)


@pytest.fixture
def patient_store(db):
    return PatientStore(db)


@pytest.fixture
def live_responses():
    return dict(LIVE_RESPONSES)


@pytest.fixture
def patient():
    return PatientInput(
        symptoms="Headache and mild fever for two days",
        language="english",
        age=30,
        gender="female",
        location="Pune",
        user_id="user-1",
    )


@pytest.fixture
def unconfigured_client():
    return ReasoningClient(api_key=None)


@pytest.fixture
def make_coordinator(session_store, metrics_store, patient_store):
    """Build a coordinator around *client*; agents use their stage name as model id."""

    def _make(client, sessions=None):
        sessions = sessions or session_store
        return DiagnosisCoordinator(
            orchestrator=AgentOrchestrator(sessions, metrics_store),
            sessions=sessions,
            metrics=metrics_store,
            patients=patient_store,
            translator=TranslatorAgent(client, Stage.translator.value),
            symptom_analyzer=SymptomAnalyzerAgent(client, Stage.symptom_analyzer.value),
            researcher=ResearcherAgent(client, Stage.researcher.value),
            risk_assessor=RiskAssessorAgent(client, Stage.risk_assessor.value),
            aggregator=AggregatorAgent(client, Stage.aggregator.value),
            client=client,
        )

    return _make


@pytest.fixture
def scripted_client():
    """Factory for ScriptedClient instances."""
    return ScriptedClient
