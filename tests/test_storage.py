"""SQLite stores: sessions, idempotent stage writes, history, metrics, patients."""

import sqlite3
import threading
import time
from datetime import timedelta

import pytest

from pipelines.errors import InfrastructureError
from pipelines.schemas import DiagnosisResult, PatientInput, PrimaryDiagnosis, TranslationResult
from storage.db import Database
from storage.models import AgentMetricRecord, PipelineState, SessionStatus, Stage, StageStatus
from storage.session_manager import resolve_window


def _metric(agent, session_id="s", success=True, elapsed=100, fallback=False):
    return AgentMetricRecord(
        agent_name=agent,
        session_id=session_id,
        user_id="u",
        start_time="2026-01-01T00:00:00+00:00",
        end_time="2026-01-01T00:00:01+00:00",
        elapsed_ms=elapsed,
        success=success,
        fallback_used=fallback,
        error_message=None if success else "boom",
    )


def test_create_and_read_session(session_store):
    patient = PatientInput(symptoms="cough", language="hindi", age=40, user_id="u1")
    session_store.create_session("s1", "u1", patient, patient_id="p1")

    session = session_store.get_session("s1")
    assert session.input == patient
    assert session.patient_id == "p1"
    assert session.status == SessionStatus.processing
    assert session.pipeline_state == PipelineState.created
    assert all(session.stage(s).status == StageStatus.pending for s in Stage)


def test_unknown_session_is_none(session_store):
    assert session_store.get_session("nope") is None


def test_update_stage_overwrites_instead_of_appending(session_store, db):
    session_store.create_session("s1", "u1", PatientInput(symptoms="cough"))
    session_store.update_stage("s1", Stage.translator, StageStatus.processing, start_time="t0")
    result = TranslationResult(translated_symptoms="cough", emergency_keywords=[])
    session_store.update_stage("s1", Stage.translator, StageStatus.completed, result=result, end_time="t1")

    assert db.stage_row_count("s1", "translator") == 1
    record = session_store.get_session("s1").translator
    assert record.status == StageStatus.completed
    assert record.result == result
    assert record.start_time == "t0"
    assert record.end_time == "t1"


def test_pipeline_state_follows_stage_records(session_store):
    session_store.create_session("s1", "u1", PatientInput(symptoms="cough"))
    session_store.update_stage("s1", Stage.translator, StageStatus.completed)
    session_store.update_stage("s1", Stage.symptom_analyzer, StageStatus.completed)
    session_store.update_stage("s1", Stage.researcher, StageStatus.processing)
    assert session_store.get_session("s1").pipeline_state == PipelineState.researching_and_assessing

    session_store.set_status("s1", SessionStatus.error)
    assert session_store.get_session("s1").pipeline_state == PipelineState.error


def test_final_result_and_history_newest_first(session_store):
    for i in range(3):
        session_store.create_session(f"s{i}", "u1", PatientInput(symptoms=f"symptom {i}"))
        time.sleep(0.01)
    session_store.create_session("other", "u2", PatientInput(symptoms="x"))

    final = DiagnosisResult(primary_diagnosis=PrimaryDiagnosis(condition="Flu", confidence="70%"), urgency_level="low")
    session_store.set_final_result("s2", final)
    session_store.set_status("s2", SessionStatus.completed)

    history = session_store.find_history("u1", limit=2)
    assert [h.session_id for h in history] == ["s2", "s1"]
    assert history[0].final_diagnosis == final
    assert history[0].status == SessionStatus.completed
    assert history[1].final_diagnosis is None
    assert session_store.find_history("u1", limit=0) == []


def test_phi_is_not_stored_in_clear(session_store, db):
    session_store.create_session("s1", "u1", PatientInput(symptoms="very private rash"))
    raw = sqlite3.connect(db.path).execute("SELECT input_blob FROM diagnosis_sessions").fetchone()[0]
    assert "private rash" not in raw


def test_session_stats_by_status(session_store):
    session_store.create_session("a", "u", PatientInput(symptoms="x"))
    session_store.create_session("b", "u", PatientInput(symptoms="x"))
    session_store.set_status("b", SessionStatus.completed)
    assert session_store.session_stats("day") == {"processing": 1, "completed": 1}


def test_aggregate_metrics_success_and_fallback_rate(metrics_store):
    for _ in range(3):
        metrics_store.append(_metric(Stage.researcher, elapsed=200, fallback=True))
    metrics_store.append(_metric(Stage.researcher, success=False, elapsed=600))
    metrics_store.append(_metric(Stage.translator, elapsed=50))

    summaries = {m.agent_name: m for m in metrics_store.aggregate_metrics("week")}
    researcher = summaries["researcher"]
    assert researcher.total_calls == 4
    assert researcher.success_rate == pytest.approx(0.75)
    assert researcher.fallback_rate == pytest.approx(0.75)
    assert researcher.avg_elapsed_ms == pytest.approx(300.0)
    assert summaries["translator"].success_rate == 1.0


def test_metrics_are_append_only(metrics_store):
    metrics_store.append(_metric(Stage.aggregator, session_id="s9"))
    metrics_store.append(_metric(Stage.aggregator, session_id="s9"))
    assert len(metrics_store.list_for_session("s9")) == 2


def test_window_resolution():
    with pytest.raises(ValueError):
        resolve_window("year")
    assert resolve_window(timedelta(hours=1)) > resolve_window("day")


def test_patient_upsert_merges_fields(patient_store):
    assert patient_store.find_by_user_id("u1") is None
    patient_store.upsert_demographics("u1", {"age": 40, "gender": "female", "location": None, "conditions": []})
    record = patient_store.upsert_demographics("u1", {"location": "Chennai", "conditions": ["asthma"]})

    assert record.age == 40
    assert record.gender == "female"
    assert record.location == "Chennai"
    assert record.conditions == ["asthma"]
    assert record.history_context() == {"age": 40, "gender": "female", "location": "Chennai", "conditions": ["asthma"]}

    with pytest.raises(ValueError):
        patient_store.upsert_demographics("u1", {"password": "x"})


def test_concurrent_backfills_for_one_user_are_all_kept(patient_store):
    fields = [{"age": 40}, {"gender": "female"}, {"location": "Chennai"}, {"conditions": ["asthma"]}]
    start = threading.Barrier(len(fields))

    def backfill(update):
        start.wait()
        patient_store.upsert_demographics("u1", update)

    threads = [threading.Thread(target=backfill, args=(f,)) for f in fields]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    record = patient_store.find_by_user_id("u1")
    assert record.history_context() == {"age": 40, "gender": "female", "location": "Chennai", "conditions": ["asthma"]}


def test_sqlite_failure_becomes_infrastructure_error(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    with pytest.raises(InfrastructureError):
        Database(blocker / "db.sqlite").init_db()
