"""Turn reviewer feedback into rule statistics and new user rules."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Literal

from smartimport_schemas import (
    FeedbackChoice,
    FeedbackEvent,
    FeedbackResponse,
    ProcessingStatus,
    ReviewStatus,
    RuleAction,
    RuleConditions,
    RuleCreateRequest,
    RuleKind,
    SessionState,
    StagedRecord,
)

from .db import transaction, utc_now
from .errors import InvalidTransition, RuleNotFound, SessionTerminated
from .parsers import extract_keywords
from .rules import RuleStore
from .sessions import TERMINAL_STATES, SessionStore
from .settings import LearningSettings

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS feedback_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    owner TEXT NOT NULL,
    rule_id INTEGER,
    accepted INTEGER NOT NULL,
    category TEXT,
    account TEXT,
    create_rule INTEGER NOT NULL DEFAULT 0,
    created_rule_id INTEGER,
    fingerprint TEXT NOT NULL,
    applied_seq INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    UNIQUE (session_id, sequence, fingerprint)
);
CREATE INDEX IF NOT EXISTS idx_feedback_session ON feedback_events (session_id, sequence);
"""

_Outcome = Literal["new", "reapplied", "repeated"]


def _fingerprint(choice: FeedbackChoice, create_rule: bool) -> str:
    return "|".join(
        [
            "1" if choice.accepted else "0",
            choice.category or "",
            choice.account or "",
            "1" if create_rule else "0",
        ]
    )


def rule_name(keywords: list[str], category: str) -> str:
    return f"user:{'+'.join(keywords)}->{category}"


class FeedbackLearner:
    """Record feedback events and fold them into the rule store.

    Rule statistics and rule creation happen once per distinct choice for a
    record. Submitting the choice that is already in effect is a no-op;
    returning to an earlier choice re-applies it to the record only.
    """

    def __init__(
        self,
        db_path: Path,
        sessions: SessionStore,
        rules: RuleStore,
        settings: LearningSettings | None = None,
        timeout: float = 5.0,
    ) -> None:
        self.db_path = db_path
        self.sessions = sessions
        self.rules = rules
        self.settings = settings or LearningSettings()
        self._timeout = timeout
        with transaction(self.db_path, self._timeout) as conn:
            conn.executescript(_SCHEMA)

    def submit(
        self,
        session_id: str,
        sequence: int,
        choice: FeedbackChoice,
        create_rule: bool = False,
    ) -> FeedbackResponse:
        session = self.sessions.get_session(session_id)
        if session.state != SessionState.COMPLETED:
            if session.state in TERMINAL_STATES:
                raise SessionTerminated(f"Session {session_id} is {session.state.value}")
            raise InvalidTransition(
                f"Feedback needs a completed session; {session_id} is {session.state.value}"
            )
        record = self.sessions.get_record(session_id, sequence)
        if record.status != ProcessingStatus.PROCESSED or record.normalized is None:
            raise InvalidTransition(f"Record {sequence} failed processing and cannot be reviewed")

        suggestion = record.suggestion
        matched_rule_id = (
            suggestion.rule_id if suggestion is not None and suggestion.source == "rule" else None
        )
        if choice.accepted and suggestion is not None:
            category = choice.category or suggestion.category
            account = choice.account or suggestion.account
        else:
            category = choice.category
            account = choice.account

        event, outcome = self._record_event(
            session_id, sequence, session.owner, matched_rule_id, choice, create_rule
        )
        if outcome == "repeated":
            logger.info("Repeated feedback for %s#%d ignored", session_id, sequence)
            return FeedbackResponse(record=record, event=event, repeated=True)

        if outcome == "new":
            event = self._learn(
                event, session.owner, record, matched_rule_id, category, account, create_rule
            )
        else:
            logger.info("Feedback for %s#%d restores event %d", session_id, sequence, event.id)

        reviewed = record.model_copy(
            update={
                "review_status": (
                    ReviewStatus.ACCEPTED if choice.accepted else ReviewStatus.OVERRIDDEN
                ),
                "user_category": category,
                "user_account": account,
                "reviewed_at": utc_now(),
            }
        )
        self.sessions.save_record(reviewed)
        return FeedbackResponse(record=reviewed, event=event, repeated=False)

    def list_events(self, session_id: str) -> list[FeedbackEvent]:
        with transaction(self.db_path, self._timeout) as conn:
            rows = conn.execute(
                "SELECT * FROM feedback_events WHERE session_id = ? ORDER BY id ASC",
                (session_id,),
            ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def _learn(
        self,
        event: FeedbackEvent,
        owner: str,
        record: StagedRecord,
        matched_rule_id: int | None,
        category: str | None,
        account: str | None,
        create_rule: bool,
    ) -> FeedbackEvent:
        if matched_rule_id is not None:
            try:
                self.rules.record_outcome(
                    matched_rule_id, success=event.accepted, alpha=self.settings.alpha
                )
            except RuleNotFound:
                logger.warning("Rule %d vanished before feedback was applied", matched_rule_id)
        if category and (create_rule or matched_rule_id is None):
            created_id = self._synthesize_rule(owner, record, category, account)
            if created_id is not None:
                event = self._attach_rule(event, created_id)
        return event

    def _record_event(
        self,
        session_id: str,
        sequence: int,
        owner: str,
        rule_id: int | None,
        choice: FeedbackChoice,
        create_rule: bool,
    ) -> tuple[FeedbackEvent, _Outcome]:
        """Store the choice as the record's latest one.

        ``repeated`` means the choice is already the latest; ``reapplied``
        means it was made before and is now the latest again.
        """
        fingerprint = _fingerprint(choice, create_rule)
        with transaction(self.db_path, self._timeout) as conn:
            conn.execute("BEGIN IMMEDIATE")
            latest = conn.execute(
                """
                SELECT * FROM feedback_events
                WHERE session_id = ? AND sequence = ?
                ORDER BY applied_seq DESC, id DESC
                LIMIT 1
                """,
                (session_id, sequence),
            ).fetchone()
            if latest is not None and latest["fingerprint"] == fingerprint:
                return self._row_to_event(latest), "repeated"
            applied_seq = (latest["applied_seq"] if latest is not None else 0) + 1

            earlier = conn.execute(
                """
                SELECT id FROM feedback_events
                WHERE session_id = ? AND sequence = ? AND fingerprint = ?
                """,
                (session_id, sequence, fingerprint),
            ).fetchone()
            if earlier is not None:
                conn.execute(
                    "UPDATE feedback_events SET applied_seq = ? WHERE id = ?",
                    (applied_seq, earlier["id"]),
                )
                event_id = earlier["id"]
                outcome: _Outcome = "reapplied"
            else:
                cursor = conn.execute(
                    """
                    INSERT INTO feedback_events (
                        session_id, sequence, owner, rule_id, accepted, category,
                        account, create_rule, fingerprint, applied_seq, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session_id,
                        sequence,
                        owner,
                        rule_id,
                        int(choice.accepted),
                        choice.category,
                        choice.account,
                        int(create_rule),
                        fingerprint,
                        applied_seq,
                        utc_now().isoformat(),
                    ),
                )
                event_id = cursor.lastrowid
                outcome = "new"
        return self._get_event(int(event_id)), outcome

    def _synthesize_rule(
        self,
        owner: str,
        record: StagedRecord,
        category: str,
        account: str | None,
    ) -> int | None:
        normalized = record.normalized
        if normalized is None:
            return None
        keywords = extract_keywords(normalized.description_clean, self.settings.max_keywords)
        if not keywords:
            logger.info("No usable keywords in %r; no rule learned", normalized.description)
            return None
        suggested_direction = record.suggestion.direction if record.suggestion else None
        request = RuleCreateRequest(
            owner=owner,
            name=rule_name(keywords, category),
            kind=RuleKind.CLASSIFICATION,
            description=f"Learned from feedback on '{normalized.description}'",
            conditions=RuleConditions(keywords=keywords),
            action=RuleAction(
                category=category,
                account=account,
                direction=suggested_direction or normalized.direction,
                confidence=self.settings.user_rule_confidence,
            ),
            priority=self.settings.user_rule_priority,
        )
        rule, created = self.rules.insert_rule(request)
        return rule.id if created else None

    def _attach_rule(self, event: FeedbackEvent, rule_id: int) -> FeedbackEvent:
        with transaction(self.db_path, self._timeout) as conn:
            conn.execute(
                "UPDATE feedback_events SET created_rule_id = ? WHERE id = ?",
                (rule_id, event.id),
            )
        return event.model_copy(update={"created_rule_id": rule_id})

    def _get_event(self, event_id: int) -> FeedbackEvent:
        with transaction(self.db_path, self._timeout) as conn:
            row = conn.execute(
                "SELECT * FROM feedback_events WHERE id = ?", (event_id,)
            ).fetchone()
        return self._row_to_event(row)

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> FeedbackEvent:
        return FeedbackEvent(
            id=row["id"],
            session_id=row["session_id"],
            sequence=row["sequence"],
            owner=row["owner"],
            rule_id=row["rule_id"],
            accepted=bool(row["accepted"]),
            category=row["category"],
            account=row["account"],
            create_rule=bool(row["create_rule"]),
            created_rule_id=row["created_rule_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )


__all__ = ["FeedbackLearner", "rule_name"]
