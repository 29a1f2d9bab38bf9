"""
storage/export.py

Handoff export: a pretty-printed JSON bundle for one diagnosis session.

Only the user who owns the session may export it; anyone else (or an
unknown session id) gets ``None``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from storage.models import DiagnosisSession, Stage
from storage.session_manager import SessionStore

logger = logging.getLogger(__name__)

DISCLAIMER = (
    "This document is AI-generated decision support. It is NOT a medical "
    "diagnosis and must NOT be used as a substitute for professional "
    "medical advice."
)


def _stage_summary(session: DiagnosisSession, stage: Stage) -> dict[str, Any]:
    record = session.stage(stage)
    return {
        "status": record.status.value,
        "start_time": record.start_time,
        "end_time": record.end_time,
        "error": record.error,
    }


def _build_export_bundle(session: DiagnosisSession) -> dict[str, Any]:
    return {
        "export_generated_at": datetime.now(tz=timezone.utc).isoformat(),
        "session": {
            "session_id": session.session_id,
            "user_id": session.user_id,
            "patient_id": session.patient_id,
            "status": session.status.value,
            "pipeline_state": session.pipeline_state.value,
            "created_at": session.created_at,
            "updated_at": session.updated_at,
        },
        "input": session.input.to_payload(),
        "stages": {stage.value: _stage_summary(session, stage) for stage in Stage},
        "final_diagnosis": session.final_diagnosis.to_payload() if session.final_diagnosis else None,
        "disclaimer": DISCLAIMER,
    }


def export_session_json(store: SessionStore, session_id: str, requester_user_id: str) -> str | None:
    """
    Produce a JSON string for the session handoff.

    Returns:
        JSON string, or ``None`` if access is denied / session not found.
    """
    session = store.get_session(session_id)
    if session is None:
        return None
    if session.user_id != requester_user_id:
        logger.warning("Export denied: user %s requested session %s", requester_user_id, session_id)
        return None
    return json.dumps(_build_export_bundle(session), indent=2, ensure_ascii=False, default=str)
