"""Import session lifecycle and staged record storage backed by SQLite."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from smartimport_schemas import (
    ImportSession,
    SessionCounters,
    SessionState,
    SourceKind,
    StagedRecord,
)

from .db import transaction, utc_now
from .errors import (
    InvalidTransition,
    RecordNotFound,
    SessionNotFound,
    SessionTerminated,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS import_sessions (
    id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    source_kind TEXT NOT NULL,
    file_name TEXT,
    file_format TEXT NOT NULL,
    state TEXT NOT NULL,
    total_rows INTEGER NOT NULL DEFAULT 0,
    processed_rows INTEGER NOT NULL DEFAULT 0,
    successful_rows INTEGER NOT NULL DEFAULT 0,
    error_rows INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    processing_time_ms INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sessions_owner ON import_sessions (owner);

CREATE TABLE IF NOT EXISTS staged_records (
    session_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    record_json TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (session_id, sequence),
    FOREIGN KEY (session_id) REFERENCES import_sessions(id) ON DELETE CASCADE
);
"""

_ORDER: tuple[SessionState, ...] = (
    SessionState.UPLOADING,
    SessionState.PARSING,
    SessionState.PROCESSING,
    SessionState.ENRICHING,
    SessionState.COMPLETED,
    SessionState.FINALIZED,
)

TERMINAL_STATES = frozenset({SessionState.FINALIZED, SessionState.ERROR})


class TransitionTable:
    """Closed set of legal session transitions, checked when built.

    Transitions only move forward through ``_ORDER``. Every non-terminal
    state except Completed may fall into Error, and Completed may only
    become Finalized.
    """

    def __init__(self, edges: Mapping[SessionState, Iterable[SessionState]]) -> None:
        self._edges = {state: frozenset(targets) for state, targets in edges.items()}
        self._validate()

    def _validate(self) -> None:
        missing = set(SessionState) - set(self._edges)
        if missing:
            raise ValueError(f"Transition table lacks states: {sorted(s.value for s in missing)}")
        for state, targets in self._edges.items():
            if state in TERMINAL_STATES and targets:
                raise ValueError(f"Terminal state {state.value} cannot have successors")
            for target in targets:
                if target == SessionState.ERROR:
                    continue
                if _ORDER.index(target) <= _ORDER.index(state):
                    raise ValueError(f"{state.value} -> {target.value} moves backwards")
        if self._edges[SessionState.COMPLETED] != {SessionState.FINALIZED}:
            raise ValueError("Completed must lead only to Finalized")
        for state in _ORDER[:4]:
            if SessionState.ERROR not in self._edges[state]:
                raise ValueError(f"{state.value} must be able to fail into error")

    def allows(self, current: SessionState, target: SessionState) -> bool:
        return target in self._edges[current]

    def check(self, current: SessionState, target: SessionState) -> None:
        if self.allows(current, target):
            return
        if current in TERMINAL_STATES:
            raise SessionTerminated(
                f"Session is {current.value}; cannot move to {target.value}"
            )
        raise InvalidTransition(f"Cannot move session from {current.value} to {target.value}")


TRANSITIONS = TransitionTable(
    {
        SessionState.UPLOADING: {SessionState.PARSING, SessionState.ERROR},
        SessionState.PARSING: {SessionState.PROCESSING, SessionState.ERROR},
        SessionState.PROCESSING: {SessionState.ENRICHING, SessionState.ERROR},
        SessionState.ENRICHING: {SessionState.COMPLETED, SessionState.ERROR},
        SessionState.COMPLETED: {SessionState.FINALIZED},
        SessionState.FINALIZED: set(),
        SessionState.ERROR: set(),
    }
)


def _check_counters(
    current: ImportSession, target: SessionState, counters: SessionCounters
) -> None:
    previous = current.counters
    for name in SessionCounters.model_fields:
        if getattr(counters, name) < getattr(previous, name):
            raise InvalidTransition(f"Counter {name} cannot decrease")
    if counters.successful_rows + counters.error_rows > counters.processed_rows:
        raise InvalidTransition("successful_rows + error_rows exceeds processed_rows")
    if counters.processed_rows > counters.total_rows:
        raise InvalidTransition("processed_rows exceeds total_rows")
    if target == SessionState.COMPLETED:
        if counters.processed_rows != counters.total_rows:
            raise InvalidTransition("Completed sessions must have processed every row")
        if counters.processed_rows != counters.successful_rows + counters.error_rows:
            raise InvalidTransition(
                "Completed sessions need processed_rows == successful_rows + error_rows"
            )


class SessionStore:
    """Persist sessions and their staged records.

    Every state change is a compare-and-set on the current state, written in
    the same transaction as the counters and staged records it reports.
    """

    def __init__(self, db_path: Path, timeout: float = 5.0) -> None:
        self.db_path = db_path
        self._timeout = timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with transaction(self.db_path, self._timeout) as conn:
            conn.executescript(_SCHEMA)

    def create_session(
        self,
        owner: str,
        source_kind: SourceKind,
        file_format: str,
        file_name: str | None = None,
    ) -> ImportSession:
        session_id = str(uuid.uuid4())
        now = utc_now().isoformat()
        with transaction(self.db_path, self._timeout) as conn:
            conn.execute(
                """
                INSERT INTO import_sessions (
                    id, owner, source_kind, file_name, file_format, state,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    owner,
                    source_kind,
                    file_name,
                    file_format,
                    SessionState.UPLOADING.value,
                    now,
                    now,
                ),
            )
        logger.info("Created %s session %s for %s", source_kind, session_id, owner)
        return self.get_session(session_id)

    def get_session(self, session_id: str) -> ImportSession:
        with transaction(self.db_path, self._timeout) as conn:
            row = conn.execute(
                "SELECT * FROM import_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        if row is None:
            raise SessionNotFound(f"Session {session_id} not found")
        return self._row_to_session(row)

    def ensure_active(self, session_id: str) -> ImportSession:
        """Raise ``SessionTerminated`` if the session has reached a terminal state."""
        session = self.get_session(session_id)
        if session.state in TERMINAL_STATES:
            raise SessionTerminated(f"Session {session_id} is {session.state.value}")
        return session

    def advance(
        self,
        session_id: str,
        target: SessionState,
        counters: SessionCounters | None = None,
        staged: Sequence[StagedRecord] = (),
        clear_staged: bool = False,
        error_message: str | None = None,
        processing_time_ms: int | None = None,
    ) -> ImportSession:
        """Move a session to ``target`` together with its counters and records."""
        now = utc_now().isoformat()
        with transaction(self.db_path, self._timeout) as conn:
            row = conn.execute(
                "SELECT * FROM import_sessions WHERE id = ?", (session_id,)
            ).fetchone()
            if row is None:
                raise SessionNotFound(f"Session {session_id} not found")
            current = self._row_to_session(row)
            TRANSITIONS.check(current.state, target)
            if (
                current.state == SessionState.PARSING
                and target != SessionState.ERROR
                and counters is None
            ):
                raise InvalidTransition("total_rows must be reported before leaving parsing")
            effective = counters or current.counters
            _check_counters(current, target, effective)
            cursor = conn.execute(
                """
                UPDATE import_sessions
                SET state = ?,
                    total_rows = ?,
                    processed_rows = ?,
                    successful_rows = ?,
                    error_rows = ?,
                    error_message = COALESCE(?, error_message),
                    processing_time_ms = COALESCE(?, processing_time_ms),
                    updated_at = ?
                WHERE id = ? AND state = ?
                """,
                (
                    target.value,
                    effective.total_rows,
                    effective.processed_rows,
                    effective.successful_rows,
                    effective.error_rows,
                    error_message,
                    processing_time_ms,
                    now,
                    session_id,
                    current.state.value,
                ),
            )
            if cursor.rowcount == 0:
                raise SessionTerminated(
                    f"Session {session_id} changed state concurrently"
                )
            if clear_staged:
                conn.execute(
                    "DELETE FROM staged_records WHERE session_id = ?", (session_id,)
                )
            self._write_records(conn, staged, now)
        logger.info(
            "Session %s: %s -> %s", session_id, current.state.value, target.value
        )
        return self.get_session(session_id)

    def fail(self, session_id: str, message: str) -> ImportSession | None:
        """Move a session to Error, keeping its counters.

        Returns ``None`` when the session is gone or can no longer fail.
        """
        try:
            return self.advance(session_id, SessionState.ERROR, error_message=message)
        except (SessionNotFound, InvalidTransition) as exc:
            logger.info("Session %s not marked as error: %s", session_id, exc)
            return None

    def save_record(self, record: StagedRecord) -> StagedRecord:
        now = utc_now().isoformat()
        with transaction(self.db_path, self._timeout) as conn:
            cursor = conn.execute(
                """
                UPDATE staged_records SET record_json = ?, updated_at = ?
                WHERE session_id = ? AND sequence = ?
                """,
                (record.model_dump_json(), now, record.session_id, record.sequence),
            )
            if cursor.rowcount == 0:
                raise RecordNotFound(
                    f"Record {record.sequence} not found in session {record.session_id}"
                )
        return record

    def list_records(self, session_id: str) -> list[StagedRecord]:
        self.get_session(session_id)
        with transaction(self.db_path, self._timeout) as conn:
            rows = conn.execute(
                "SELECT record_json FROM staged_records WHERE session_id = ? ORDER BY sequence ASC",
                (session_id,),
            ).fetchall()
        return [StagedRecord.model_validate_json(row["record_json"]) for row in rows]

    def get_record(self, session_id: str, sequence: int) -> StagedRecord:
        with transaction(self.db_path, self._timeout) as conn:
            row = conn.execute(
                "SELECT record_json FROM staged_records WHERE session_id = ? AND sequence = ?",
                (session_id, sequence),
            ).fetchone()
        if row is None:
            raise RecordNotFound(f"Record {sequence} not found in session {session_id}")
        return StagedRecord.model_validate_json(row["record_json"])

    def delete_session(self, session_id: str) -> bool:
        """Remove a session and its staged records; ``False`` if it was already gone."""
        with transaction(self.db_path, self._timeout) as conn:
            conn.execute("DELETE FROM staged_records WHERE session_id = ?", (session_id,))
            cursor = conn.execute(
                "DELETE FROM import_sessions WHERE id = ?", (session_id,)
            )
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted session %s", session_id)
        return deleted

    @staticmethod
    def _write_records(
        conn: sqlite3.Connection, records: Sequence[StagedRecord], now: str
    ) -> None:
        conn.executemany(
            """
            INSERT OR REPLACE INTO staged_records (session_id, sequence, record_json, updated_at)
            VALUES (?, ?, ?, ?)
            """,
            [
                (record.session_id, record.sequence, record.model_dump_json(), now)
                for record in records
            ],
        )

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> ImportSession:
        return ImportSession(
            id=row["id"],
            owner=row["owner"],
            source_kind=row["source_kind"],
            file_name=row["file_name"],
            file_format=row["file_format"],
            state=SessionState(row["state"]),
            total_rows=row["total_rows"],
            processed_rows=row["processed_rows"],
            successful_rows=row["successful_rows"],
            error_rows=row["error_rows"],
            error_message=row["error_message"],
            processing_time_ms=row["processing_time_ms"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


__all__ = ["SessionStore", "TERMINAL_STATES", "TRANSITIONS", "TransitionTable"]
