"""Commit approved staged records to the ledger."""

from __future__ import annotations

import logging
import uuid
from typing import Sequence

from smartimport_schemas import (
    ApprovedRecord,
    BalanceAdjustment,
    FinalizeResult,
    LedgerEntry,
    RecordRejection,
    SessionState,
    StagedRecord,
)

from .errors import RecordValidationError
from .ledger import LedgerStore
from .sessions import TRANSITIONS, SessionStore

logger = logging.getLogger(__name__)


def ledger_entry_id(session_id: str, sequence: int) -> str:
    """Stable id so a retried batch cannot commit the same record twice."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"smartimport:{session_id}:{sequence}"))


def balance_delta(direction: str, magnitude: float) -> float:
    return magnitude if direction == "income" else -magnitude


class Finalizer:
    """Validate approved records and write them to the ledger as one batch."""

    def __init__(self, sessions: SessionStore, ledger: LedgerStore) -> None:
        self.sessions = sessions
        self.ledger = ledger

    def finalize(
        self, session_id: str, approved: Sequence[ApprovedRecord]
    ) -> FinalizeResult:
        session = self.sessions.get_session(session_id)
        TRANSITIONS.check(session.state, SessionState.FINALIZED)
        staged = {record.sequence: record for record in self.sessions.list_records(session_id)}

        entries: list[LedgerEntry] = []
        committed: list[int] = []
        rejected: list[RecordRejection] = []
        seen: set[int] = set()
        for item in approved:
            if item.sequence in seen:
                rejected.append(
                    RecordRejection(sequence=item.sequence, reason="Record approved more than once")
                )
                continue
            seen.add(item.sequence)
            record = staged.get(item.sequence)
            if record is None:
                rejected.append(
                    RecordRejection(sequence=item.sequence, reason="Record not found in session")
                )
                continue
            try:
                entry = self._build_entry(session.owner, session_id, item, record)
            except RecordValidationError as exc:
                logger.info("Record %s#%d rejected: %s", session_id, item.sequence, exc)
                rejected.append(RecordRejection(sequence=item.sequence, reason=str(exc)))
                continue
            entries.append(entry)
            committed.append(item.sequence)

        if approved and not entries:
            logger.warning("Every approved record in %s was rejected", session_id)
            return FinalizeResult(session=session, rejected=rejected)

        # Raises StorageFailure with the batch rolled back; the session stays Completed.
        entry_ids = self.ledger.commit_batch(session.owner, entries) if entries else []
        finalized = self.sessions.advance(
            session_id, SessionState.FINALIZED, clear_staged=True
        )
        logger.info(
            "Finalized %s: %d committed, %d rejected", session_id, len(committed), len(rejected)
        )
        return FinalizeResult(
            session=finalized,
            committed=committed,
            ledger_entry_ids=entry_ids,
            rejected=rejected,
        )

    def _build_entry(
        self,
        owner: str,
        session_id: str,
        item: ApprovedRecord,
        record: StagedRecord,
    ) -> LedgerEntry:
        normalized = record.normalized
        suggestion = record.suggestion

        entry_date = item.date or (normalized.date if normalized else None)
        if entry_date is None:
            raise RecordValidationError(record.error_message or "Missing date")
        magnitude = (
            item.magnitude
            if item.magnitude is not None
            else (normalized.magnitude if normalized else None)
        )
        if magnitude is None:
            raise RecordValidationError(record.error_message or "Missing amount")
        description = (
            item.description
            or (normalized.description if normalized else None)
            or record.raw.get("description", "")
        )
        direction = (
            item.direction
            or (suggestion.direction if suggestion else None)
            or (normalized.direction if normalized else None)
            or "expense"
        )

        if "category" in item.model_fields_set:
            category = item.category
        elif record.reviewed_at is not None:
            category = record.user_category
        else:
            category = suggestion.category if suggestion else None
        if "account" in item.model_fields_set:
            account = item.account
        elif record.reviewed_at is not None:
            account = record.user_account
        else:
            account = suggestion.account if suggestion else None

        if category is not None and not self.ledger.has_category(owner, category):
            raise RecordValidationError(f"Unknown category: {category}")
        if account is not None and not self.ledger.has_account(owner, account):
            raise RecordValidationError(f"Unknown account: {account}")

        return LedgerEntry(
            id=ledger_entry_id(session_id, record.sequence),
            owner=owner,
            date=entry_date,
            description=description,
            magnitude=round(magnitude, 2),
            direction=direction,
            category=category,
            account=account,
            session_id=session_id,
            adjustment=BalanceAdjustment(
                account=account, delta=balance_delta(direction, round(magnitude, 2))
            ),
        )


__all__ = ["Finalizer", "balance_delta", "ledger_entry_id"]
