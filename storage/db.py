"""
storage/db.py

SQLite backend for diagnosis sessions, agent metrics and patient profiles.

Schema
------
diagnosis_sessions — one row per diagnosis request (non-PHI columns in the clear)
session_stages     — one row per (session, stage); later writes overwrite
agent_metrics      — append-only stage execution log
patients           — encrypted patient profile per user id

All PHI (patient input, stage results, final diagnoses, profiles) is
stored only inside *_blob columns, encrypted by storage.crypto.

Usage
-----
    db = Database(Path("data/diagnosis.db"))
    db.init_db()               # call once at startup
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from pipelines.errors import InfrastructureError
from storage.crypto import decrypt_json, encrypt_json

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_DDL = """
CREATE TABLE IF NOT EXISTS diagnosis_sessions (
    session_id     TEXT PRIMARY KEY,
    user_id        TEXT NOT NULL,
    patient_id     TEXT,
    status         TEXT NOT NULL DEFAULT 'processing'
                       CHECK(status IN ('pending', 'processing', 'completed', 'error')),
    urgency_level  TEXT,
    input_blob     TEXT NOT NULL,              -- Fernet token
    final_blob     TEXT,                       -- Fernet token
    created_at     TEXT NOT NULL,              -- ISO-8601 UTC
    updated_at     TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_user ON diagnosis_sessions(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_sessions_created ON diagnosis_sessions(created_at);

CREATE TABLE IF NOT EXISTS session_stages (
    session_id   TEXT NOT NULL REFERENCES diagnosis_sessions(session_id) ON DELETE CASCADE,
    stage        TEXT NOT NULL,
    status       TEXT NOT NULL
                     CHECK(status IN ('pending', 'processing', 'completed', 'error')),
    start_time   TEXT,
    end_time     TEXT,
    result_blob  TEXT,                         -- Fernet token
    error        TEXT,
    PRIMARY KEY (session_id, stage)
);

CREATE TABLE IF NOT EXISTS agent_metrics (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_name        TEXT    NOT NULL
                          CHECK(agent_name IN ('translator', 'symptom_analyzer', 'researcher',
                                               'risk_assessor', 'aggregator')),
    session_id        TEXT    NOT NULL,
    user_id           TEXT    NOT NULL,
    start_time        TEXT    NOT NULL,
    end_time          TEXT    NOT NULL,
    elapsed_ms        INTEGER NOT NULL,
    success           INTEGER NOT NULL,
    fallback_used     INTEGER NOT NULL DEFAULT 0,
    error_message     TEXT,
    model             TEXT,
    response_time_ms  INTEGER,
    created_at        TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_metrics_created ON agent_metrics(created_at);

CREATE TABLE IF NOT EXISTS patients (
    user_id       TEXT PRIMARY KEY,
    profile_blob  TEXT NOT NULL,               -- Fernet token
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);
"""


def now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(tz=timezone.utc).isoformat()


class Database:
    """
    Thin wrapper over one SQLite file.

    A fresh connection is opened per operation, so the object is safe to
    share across threads; writes are serialised through ``_write_lock``.
    Every sqlite3/filesystem failure surfaces as InfrastructureError.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._write_lock = threading.RLock()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn: Optional[sqlite3.Connection] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.path), timeout=30, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON;")
            yield conn
            conn.commit()
        except (sqlite3.Error, OSError) as exc:
            if conn is not None:
                conn.rollback()
            raise InfrastructureError(f"Database operation failed: {exc}") from exc
        finally:
            if conn is not None:
                conn.close()

    @contextmanager
    def serialised(self) -> Iterator[None]:
        """Hold the write lock across several reads and writes."""
        with self._write_lock:
            yield

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialised write connection."""
        with self._write_lock, self.connect() as conn:
            yield conn

    def init_db(self) -> None:
        """
        Create all tables if they do not already exist.

        Safe to call multiple times (idempotent).
        """
        with self.transaction() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.executescript(_DDL)
        logger.info("Database initialised at %s", self.path)

    # -----------------------------------------------------------------------
    # Sessions
    # -----------------------------------------------------------------------

    def insert_session(
        self,
        session_id: str,
        user_id: str,
        patient_id: str | None,
        input_payload: dict,
        status: str,
    ) -> str:
        now = now_iso()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO diagnosis_sessions
                    (session_id, user_id, patient_id, status, input_blob, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (session_id, user_id, patient_id, status, encrypt_json(input_payload), now, now),
            )
        return now

    def upsert_stage(
        self,
        session_id: str,
        stage: str,
        status: str,
        start_time: str | None,
        end_time: str | None,
        result: dict | None,
        error: str | None,
    ) -> None:
        """
        Write the stage row, replacing any previous row for (session, stage).

        ``start_time`` is kept from the earlier write when the new one
        leaves it unset.
        """
        blob = encrypt_json(result) if result is not None else None
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO session_stages
                    (session_id, stage, status, start_time, end_time, result_blob, error)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id, stage) DO UPDATE SET
                    status      = excluded.status,
                    start_time  = COALESCE(excluded.start_time, session_stages.start_time),
                    end_time    = excluded.end_time,
                    result_blob = excluded.result_blob,
                    error       = excluded.error
                """,
                (session_id, stage, status, start_time, end_time, blob, error),
            )
            conn.execute(
                "UPDATE diagnosis_sessions SET updated_at = ? WHERE session_id = ?",
                (now_iso(), session_id),
            )

    def update_session(self, session_id: str, **fields: Any) -> bool:
        """
        Update session columns.  ``final`` is encrypted into final_blob.

        Returns False when the session does not exist.
        """
        columns: dict[str, Any] = {}
        for key, value in fields.items():
            if key == "final":
                columns["final_blob"] = encrypt_json(value)
            elif key in ("status", "urgency_level"):
                columns[key] = value
            else:
                raise ValueError(f"Unknown session column '{key}'")
        columns["updated_at"] = now_iso()

        assignments = ", ".join(f"{col} = ?" for col in columns)
        with self.transaction() as conn:
            cur = conn.execute(
                f"UPDATE diagnosis_sessions SET {assignments} WHERE session_id = ?",
                (*columns.values(), session_id),
            )
        return cur.rowcount > 0

    def get_session_row(self, session_id: str) -> dict[str, Any] | None:
        """Session row with blobs decrypted into ``input`` / ``final`` plus its ``stages``."""
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM diagnosis_sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
            if row is None:
                return None
            stage_rows = conn.execute(
                "SELECT * FROM session_stages WHERE session_id = ?", (session_id,)
            ).fetchall()

        session = self._decode_session(row)
        session["stages"] = {
            r["stage"]: {
                "status": r["status"],
                "start_time": r["start_time"],
                "end_time": r["end_time"],
                "result": decrypt_json(r["result_blob"]) if r["result_blob"] else None,
                "error": r["error"],
            }
            for r in stage_rows
        }
        return session

    def stage_row_count(self, session_id: str, stage: str) -> int:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM session_stages WHERE session_id = ? AND stage = ?",
                (session_id, stage),
            ).fetchone()
        return int(row["n"])

    def list_sessions_for_user(self, user_id: str, limit: int) -> list[dict[str, Any]]:
        """Newest first, bounded by *limit*."""
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM diagnosis_sessions
                WHERE user_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [self._decode_session(r) for r in rows]

    def count_sessions_by_status(self, since: str) -> dict[str, int]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT status, COUNT(*) AS n FROM diagnosis_sessions
                WHERE created_at >= ?
                GROUP BY status
                """,
                (since,),
            ).fetchall()
        return {r["status"]: int(r["n"]) for r in rows}

    @staticmethod
    def _decode_session(row: sqlite3.Row) -> dict[str, Any]:
        data = dict(row)
        data["input"] = decrypt_json(data.pop("input_blob"))
        final_blob = data.pop("final_blob")
        data["final"] = decrypt_json(final_blob) if final_blob else None
        return data

    # -----------------------------------------------------------------------
    # Metrics
    # -----------------------------------------------------------------------

    def insert_metric(self, row: dict[str, Any]) -> int:
        with self.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO agent_metrics
                    (agent_name, session_id, user_id, start_time, end_time, elapsed_ms,
                     success, fallback_used, error_message, model, response_time_ms, created_at)
                VALUES (:agent_name, :session_id, :user_id, :start_time, :end_time, :elapsed_ms,
                        :success, :fallback_used, :error_message, :model, :response_time_ms,
                        :created_at)
                """,
                {**row, "success": int(row["success"]), "fallback_used": int(row["fallback_used"])},
            )
        return int(cur.lastrowid)

    def list_metrics(self, session_id: str) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM agent_metrics WHERE session_id = ? ORDER BY id", (session_id,)
            ).fetchall()
        return [dict(r) for r in rows]

    def aggregate_metrics(self, since: str) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT agent_name,
                       COUNT(*)               AS total_calls,
                       AVG(elapsed_ms)        AS avg_elapsed_ms,
                       AVG(success)           AS success_rate,
                       AVG(fallback_used)     AS fallback_rate,
                       AVG(response_time_ms)  AS avg_response_time_ms
                FROM agent_metrics
                WHERE created_at >= ?
                GROUP BY agent_name
                ORDER BY agent_name
                """,
                (since,),
            ).fetchall()
        return [dict(r) for r in rows]

    # -----------------------------------------------------------------------
    # Patients
    # -----------------------------------------------------------------------

    def get_patient(self, user_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM patients WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        profile = decrypt_json(row["profile_blob"])
        profile.update(user_id=row["user_id"], created_at=row["created_at"], updated_at=row["updated_at"])
        return profile

    def upsert_patient(self, user_id: str, profile: dict) -> None:
        now = now_iso()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO patients (user_id, profile_blob, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    profile_blob = excluded.profile_blob,
                    updated_at   = excluded.updated_at
                """,
                (user_id, encrypt_json(profile), now, now),
            )
