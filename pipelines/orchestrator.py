"""
pipelines/orchestrator.py

Wraps every stage execution with session bookkeeping and metrics.

execute() marks the stage processing, runs the agent, then records the
outcome on the session and appends one AgentMetricRecord.  If anything
raises (agents absorb reasoning failures, so in practice this means a
persistence fault) the failure is recorded best-effort and re-raised.

One orchestrator is constructed per process and shared by every session;
the only mutable state is the active-execution registry used for
introspection.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from pipelines.agents.base import StageOutcome
from pipelines.errors import DiagnosisError
from storage.db import now_iso
from storage.models import AgentMetricRecord, Stage, StageStatus
from storage.session_manager import MetricsStore, SessionStore

logger = logging.getLogger(__name__)


class AgentOrchestrator:
    def __init__(self, session_store: SessionStore, metrics_store: MetricsStore) -> None:
        self.sessions = session_store
        self.metrics = metrics_store
        self._active: dict[tuple[Stage, str], float] = {}
        self._lock = threading.Lock()

    def execute(
        self,
        stage: Stage,
        session_id: str,
        user_id: str,
        task: Callable[[], StageOutcome],
        model: Optional[str] = None,
    ) -> StageOutcome:
        start_iso = now_iso()
        start = time.perf_counter()
        with self._lock:
            self._active[(stage, session_id)] = time.monotonic()

        try:
            self.sessions.update_stage(session_id, stage, StageStatus.processing, start_time=start_iso)
            logger.info("Stage %s started (session %s)", stage.value, session_id)

            outcome = task()

            end_iso = now_iso()
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            self.sessions.update_stage(
                session_id,
                stage,
                StageStatus.completed,
                result=outcome.value,
                start_time=start_iso,
                end_time=end_iso,
            )
            self.metrics.append(
                AgentMetricRecord(
                    agent_name=stage,
                    session_id=session_id,
                    user_id=user_id,
                    start_time=start_iso,
                    end_time=end_iso,
                    elapsed_ms=elapsed_ms,
                    success=True,
                    fallback_used=outcome.is_degraded,
                    model=outcome.model or model,
                    response_time_ms=outcome.response_ms,
                )
            )
            logger.info(
                "Stage %s completed in %d ms (session %s, %s)",
                stage.value, elapsed_ms, session_id, outcome.kind,
            )
            return outcome

        except Exception as exc:
            self._record_failure(stage, session_id, user_id, model, start_iso, start, exc)
            raise

        finally:
            with self._lock:
                self._active.pop((stage, session_id), None)

    def _record_failure(
        self,
        stage: Stage,
        session_id: str,
        user_id: str,
        model: Optional[str],
        start_iso: str,
        start: float,
        exc: Exception,
    ) -> None:
        end_iso = now_iso()
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        message = str(exc) or type(exc).__name__
        logger.error("Stage %s failed after %d ms (session %s): %s", stage.value, elapsed_ms, session_id, message)

        # The store may be the thing that failed; the original error wins.
        try:
            self.sessions.update_stage(
                session_id, stage, StageStatus.error, error=message, start_time=start_iso, end_time=end_iso
            )
        except DiagnosisError:
            logger.exception("Could not record error state for stage %s", stage.value)
        try:
            self.metrics.append(
                AgentMetricRecord(
                    agent_name=stage,
                    session_id=session_id,
                    user_id=user_id,
                    start_time=start_iso,
                    end_time=end_iso,
                    elapsed_ms=elapsed_ms,
                    success=False,
                    error_message=message,
                    model=model,
                )
            )
        except DiagnosisError:
            logger.exception("Could not record failure metric for stage %s", stage.value)

    def get_active_agents(self) -> list[dict]:
        """Stages currently executing, across all sessions."""
        now = time.monotonic()
        with self._lock:
            snapshot = list(self._active.items())
        return [
            {"name": stage.value, "sessionId": session_id, "durationMs": int((now - started) * 1000)}
            for (stage, session_id), started in snapshot
        ]

    def is_active(self, stage: Stage) -> bool:
        with self._lock:
            return any(s == stage for s, _ in self._active)
