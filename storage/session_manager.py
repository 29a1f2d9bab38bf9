"""
storage/session_manager.py

Typed stores over storage.db for the pipeline.

SessionStore   diagnosis sessions and their per-stage records
MetricsStore   append-only agent execution metrics and aggregates
PatientStore   longitudinal patient demographics

Ownership: the orchestrator is the only caller of update_stage(); the
coordinator is the only caller of set_final_result() / set_status().
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel

from pipelines.schemas import DiagnosisResult, PatientInput
from storage.db import Database, now_iso
from storage.models import (
    AgentMetricRecord,
    AgentMetricSummary,
    DiagnosisSession,
    HistoryEntry,
    PatientRecord,
    SessionStatus,
    Stage,
    StageStatus,
)

logger = logging.getLogger(__name__)

WINDOWS: dict[str, timedelta] = {
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}

Window = Union[str, timedelta]


def resolve_window(window: Window) -> str:
    """
    ISO-8601 UTC lower bound for *window* ("day", "week", "month" or a timedelta).

    Raises:
        ValueError: unknown window name.
    """
    if isinstance(window, timedelta):
        span = window
    else:
        try:
            span = WINDOWS[window]
        except KeyError:
            raise ValueError(f"Unknown window '{window}'. Must be one of {sorted(WINDOWS)}") from None
    return (datetime.now(tz=timezone.utc) - span).isoformat()


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def create_session(
        self,
        session_id: str,
        user_id: str,
        patient_input: PatientInput,
        patient_id: Optional[str] = None,
    ) -> DiagnosisSession:
        created_at = self.db.insert_session(
            session_id,
            user_id,
            patient_id,
            patient_input.model_dump(mode="json"),
            SessionStatus.processing.value,
        )
        logger.info("Diagnosis session created: %s", session_id)
        return DiagnosisSession(
            session_id=session_id,
            user_id=user_id,
            patient_id=patient_id,
            input=patient_input,
            status=SessionStatus.processing,
            created_at=created_at,
            updated_at=created_at,
        )

    def update_stage(
        self,
        session_id: str,
        stage: Stage,
        status: StageStatus,
        *,
        result: Optional[BaseModel] = None,
        error: Optional[str] = None,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
    ) -> None:
        """Overwrite the record for (session_id, stage); never appends."""
        self.db.upsert_stage(
            session_id,
            stage.value,
            status.value,
            start_time,
            end_time,
            result.model_dump(mode="json") if result is not None else None,
            error,
        )

    def set_final_result(self, session_id: str, result: DiagnosisResult) -> None:
        self.db.update_session(
            session_id,
            final=result.model_dump(mode="json"),
            urgency_level=result.urgency_level,
        )

    def set_status(self, session_id: str, status: SessionStatus) -> None:
        if not self.db.update_session(session_id, status=status.value):
            logger.warning("set_status: session %s not found", session_id)

    def get_session(self, session_id: str) -> Optional[DiagnosisSession]:
        row = self.db.get_session_row(session_id)
        if row is None:
            return None
        stages: dict[str, Any] = row.pop("stages")
        row["final_diagnosis"] = row.pop("final")
        return DiagnosisSession.model_validate({**row, **stages})

    def find_history(self, user_id: str, limit: int = 10) -> list[HistoryEntry]:
        """Newest first, at most *limit* entries."""
        if limit <= 0:
            return []
        return [
            HistoryEntry(
                session_id=r["session_id"],
                status=r["status"],
                final_diagnosis=r["final"],
                created_at=r["created_at"],
            )
            for r in self.db.list_sessions_for_user(user_id, limit)
        ]

    def session_stats(self, window: Window = "day") -> dict[str, int]:
        """Session counts grouped by status within *window*."""
        return self.db.count_sessions_by_status(resolve_window(window))


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class MetricsStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def append(self, record: AgentMetricRecord) -> int:
        row = record.model_dump(mode="json")
        row["created_at"] = row.get("created_at") or now_iso()
        return self.db.insert_metric(row)

    def list_for_session(self, session_id: str) -> list[AgentMetricRecord]:
        return [
            AgentMetricRecord.model_validate({k: v for k, v in r.items() if k != "id"})
            for r in self.db.list_metrics(session_id)
        ]

    def aggregate_metrics(self, window: Window = "day") -> list[AgentMetricSummary]:
        return [
            AgentMetricSummary(
                agent_name=r["agent_name"],
                total_calls=r["total_calls"],
                avg_elapsed_ms=round(r["avg_elapsed_ms"] or 0.0, 1),
                success_rate=round(r["success_rate"] or 0.0, 4),
                fallback_rate=round(r["fallback_rate"] or 0.0, 4),
                avg_response_time_ms=(
                    round(r["avg_response_time_ms"], 1) if r["avg_response_time_ms"] is not None else None
                ),
            )
            for r in self.db.aggregate_metrics(resolve_window(window))
        ]


# ---------------------------------------------------------------------------
# Patients
# ---------------------------------------------------------------------------

_DEMOGRAPHIC_FIELDS = ("age", "gender", "location", "conditions")


class PatientStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def find_by_user_id(self, user_id: str) -> Optional[PatientRecord]:
        row = self.db.get_patient(user_id)
        return PatientRecord.model_validate(row) if row else None

    def upsert_demographics(self, user_id: str, fields: dict[str, Any]) -> PatientRecord:
        """
        Merge the non-empty demographic *fields* into the user's profile,
        creating it if needed.

        Raises:
            ValueError: a key outside age/gender/location/conditions.
        """
        unknown = set(fields) - set(_DEMOGRAPHIC_FIELDS)
        if unknown:
            raise ValueError(f"Not demographic fields: {sorted(unknown)}")

        updates = {k: v for k, v in fields.items() if v not in (None, "", [])}
        # Read-merge-write is atomic per database.
        with self.db.serialised():
            existing = self.find_by_user_id(user_id) or PatientRecord(user_id=user_id)
            record = existing.model_copy(update=updates)
            self.db.upsert_patient(
                user_id, record.model_dump(mode="json", exclude={"user_id", "created_at", "updated_at"})
            )
        logger.info("Patient profile updated for user %s", user_id)
        return self.find_by_user_id(user_id) or record
