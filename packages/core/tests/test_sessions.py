"""Tests for the session state machine and staged record storage."""

from __future__ import annotations

from pathlib import Path

import pytest
from smartimport_core import (
    TRANSITIONS,
    InvalidTransition,
    RecordNotFound,
    SessionNotFound,
    SessionStore,
    SessionTerminated,
)
from smartimport_core.sessions import TransitionTable
from smartimport_schemas import SessionCounters, SessionState, StagedRecord


@pytest.fixture()
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(tmp_path / "sessions.db")


def _to_enriching(store: SessionStore, session_id: str, total: int) -> None:
    store.advance(session_id, SessionState.PARSING)
    store.advance(session_id, SessionState.PROCESSING, counters=SessionCounters(total_rows=total))
    store.advance(
        session_id,
        SessionState.ENRICHING,
        counters=SessionCounters(
            total_rows=total, processed_rows=total, successful_rows=total, error_rows=0
        ),
        staged=[StagedRecord(session_id=session_id, sequence=n) for n in range(1, total + 1)],
    )


def test_transition_table_only_moves_forward() -> None:
    assert TRANSITIONS.allows(SessionState.UPLOADING, SessionState.PARSING)
    assert TRANSITIONS.allows(SessionState.ENRICHING, SessionState.ERROR)
    assert not TRANSITIONS.allows(SessionState.COMPLETED, SessionState.ERROR)
    assert not TRANSITIONS.allows(SessionState.PROCESSING, SessionState.PARSING)
    assert not TRANSITIONS.allows(SessionState.FINALIZED, SessionState.ERROR)


def test_transition_table_rejects_backward_edges_at_construction() -> None:
    edges = {
        SessionState.UPLOADING: {SessionState.PARSING, SessionState.ERROR},
        SessionState.PARSING: {SessionState.UPLOADING, SessionState.ERROR},
        SessionState.PROCESSING: {SessionState.ENRICHING, SessionState.ERROR},
        SessionState.ENRICHING: {SessionState.COMPLETED, SessionState.ERROR},
        SessionState.COMPLETED: {SessionState.FINALIZED},
        SessionState.FINALIZED: set(),
        SessionState.ERROR: set(),
    }
    with pytest.raises(ValueError):
        TransitionTable(edges)
    with pytest.raises(ValueError):
        TransitionTable({SessionState.UPLOADING: {SessionState.PARSING}})


def test_new_sessions_start_uploading(store: SessionStore) -> None:
    session = store.create_session("ana", "paste", "paste")

    assert session.state == SessionState.UPLOADING
    assert session.counters == SessionCounters()
    assert store.get_session(session.id) == session


def test_full_lifecycle_keeps_counters_consistent(store: SessionStore) -> None:
    session = store.create_session("ana", "file", "csv", file_name="march.csv")
    _to_enriching(store, session.id, 3)

    completed = store.advance(session.id, SessionState.COMPLETED, processing_time_ms=12)

    assert completed.state == SessionState.COMPLETED
    assert completed.processed_rows == completed.successful_rows + completed.error_rows
    assert completed.total_rows == 3
    assert completed.processing_time_ms == 12
    assert [record.sequence for record in store.list_records(session.id)] == [1, 2, 3]


def test_total_rows_must_be_reported_before_leaving_parsing(store: SessionStore) -> None:
    session = store.create_session("ana", "paste", "paste")
    store.advance(session.id, SessionState.PARSING)

    with pytest.raises(InvalidTransition):
        store.advance(session.id, SessionState.PROCESSING)
    assert store.get_session(session.id).state == SessionState.PARSING


def test_counters_never_decrease(store: SessionStore) -> None:
    session = store.create_session("ana", "paste", "paste")
    _to_enriching(store, session.id, 2)

    with pytest.raises(InvalidTransition):
        store.advance(
            session.id, SessionState.COMPLETED, counters=SessionCounters(total_rows=1)
        )


def test_completed_requires_every_row_processed(store: SessionStore) -> None:
    session = store.create_session("ana", "paste", "paste")
    store.advance(session.id, SessionState.PARSING)
    store.advance(session.id, SessionState.PROCESSING, counters=SessionCounters(total_rows=2))
    store.advance(
        session.id,
        SessionState.ENRICHING,
        counters=SessionCounters(total_rows=2, processed_rows=1, successful_rows=1),
    )

    with pytest.raises(InvalidTransition):
        store.advance(session.id, SessionState.COMPLETED)


def test_empty_input_may_complete_with_zero_rows(store: SessionStore) -> None:
    session = store.create_session("ana", "paste", "paste")
    store.advance(session.id, SessionState.PARSING)
    store.advance(session.id, SessionState.PROCESSING, counters=SessionCounters())
    store.advance(session.id, SessionState.ENRICHING, counters=SessionCounters())

    completed = store.advance(session.id, SessionState.COMPLETED)

    assert completed.state == SessionState.COMPLETED
    assert completed.total_rows == 0


def test_failure_preserves_counters_and_is_terminal(store: SessionStore) -> None:
    session = store.create_session("ana", "paste", "paste")
    store.advance(session.id, SessionState.PARSING)
    store.advance(session.id, SessionState.PROCESSING, counters=SessionCounters(total_rows=4))

    failed = store.fail(session.id, "boom")

    assert failed is not None
    assert failed.state == SessionState.ERROR
    assert failed.error_message == "boom"
    assert failed.total_rows == 4
    with pytest.raises(SessionTerminated):
        store.advance(session.id, SessionState.ENRICHING, counters=SessionCounters(total_rows=4))
    with pytest.raises(SessionTerminated):
        store.ensure_active(session.id)
    assert store.fail(session.id, "again") is None


def test_completed_sessions_cannot_fail(store: SessionStore) -> None:
    session = store.create_session("ana", "paste", "paste")
    _to_enriching(store, session.id, 1)
    store.advance(session.id, SessionState.COMPLETED)

    assert store.fail(session.id, "late") is None
    assert store.get_session(session.id).state == SessionState.COMPLETED


def test_delete_removes_session_and_records(store: SessionStore) -> None:
    session = store.create_session("ana", "paste", "paste")
    _to_enriching(store, session.id, 2)

    assert store.delete_session(session.id) is True
    assert store.delete_session(session.id) is False
    with pytest.raises(SessionNotFound):
        store.get_session(session.id)
    with pytest.raises(SessionNotFound):
        store.list_records(session.id)
    with pytest.raises(SessionNotFound):
        store.advance(session.id, SessionState.COMPLETED)


def test_save_record_requires_an_existing_record(store: SessionStore) -> None:
    session = store.create_session("ana", "paste", "paste")

    with pytest.raises(RecordNotFound):
        store.save_record(StagedRecord(session_id=session.id, sequence=7))
    with pytest.raises(RecordNotFound):
        store.get_record(session.id, 7)
