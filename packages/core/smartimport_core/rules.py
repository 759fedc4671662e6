"""Rule storage backed by SQLite."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml
from smartimport_schemas import (
    Rule,
    RuleAction,
    RuleConditions,
    RuleCreateRequest,
    RuleKind,
    RuleUpdateRequest,
)

from .db import transaction, utc_now
from .errors import RuleImmutable, RuleNotFound
from .workspace import system_rules_path

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    owner TEXT,
    kind TEXT NOT NULL,
    description TEXT,
    conditions_json TEXT NOT NULL,
    action_json TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 100,
    is_active INTEGER NOT NULL DEFAULT 1,
    is_system INTEGER NOT NULL DEFAULT 0,
    usage_count INTEGER NOT NULL DEFAULT 0,
    success_rate REAL NOT NULL DEFAULT 0.0,
    feedback_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_rules_owner_name ON rules (ifnull(owner, ''), name);
CREATE INDEX IF NOT EXISTS idx_rules_lookup ON rules (owner, kind, is_active, priority);
"""


def load_seed_rules(path: Path | None = None) -> list[RuleCreateRequest]:
    """Read system rule definitions from YAML."""
    source = path or system_rules_path()
    raw = yaml.safe_load(source.read_text(encoding="utf-8"))
    if not raw:
        return []
    return [RuleCreateRequest.model_validate({"owner": "", **item}) for item in raw]


class RuleStore:
    """Ordered, prioritised rules shared by every import session.

    Mutations are narrow single-statement operations: counters are bumped
    in place and inserts lean on the ``(owner, name)`` unique index instead
    of a lock.
    """

    def __init__(
        self,
        db_path: Path,
        timeout: float = 5.0,
        counter_timeout: float = 0.25,
    ) -> None:
        self.db_path = db_path
        self._timeout = timeout
        self._counter_timeout = counter_timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with transaction(self.db_path, self._timeout) as conn:
            conn.executescript(_SCHEMA)

    def seed_system_rules(self, seeds: list[RuleCreateRequest] | None = None) -> int:
        """Insert global system rules; already-present rules are left untouched."""
        definitions = seeds if seeds is not None else load_seed_rules()
        now = utc_now().isoformat()
        inserted = 0
        with transaction(self.db_path, self._timeout) as conn:
            for definition in definitions:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO rules (
                        name, owner, kind, description, conditions_json, action_json,
                        priority, is_active, is_system, created_at, updated_at
                    ) VALUES (?, NULL, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                    """,
                    (
                        definition.name,
                        definition.kind.value,
                        definition.description,
                        definition.conditions.model_dump_json(),
                        definition.action.model_dump_json(),
                        definition.priority,
                        int(definition.is_active),
                        now,
                        now,
                    ),
                )
                inserted += cursor.rowcount
        if inserted:
            logger.info("Seeded %d system rules", inserted)
        return inserted

    def list_rules(
        self,
        owner: str | None = None,
        kind: RuleKind | None = None,
        active_only: bool = False,
    ) -> list[Rule]:
        """Rules visible to ``owner`` (its own plus global), ordered by priority."""
        clauses = ["(owner IS NULL OR owner = ?)"] if owner else ["owner IS NULL"]
        params: list[Any] = [owner] if owner else []
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind.value)
        if active_only:
            clauses.append("is_active = 1")
        query = (
            "SELECT * FROM rules WHERE "
            + " AND ".join(clauses)
            + " ORDER BY priority ASC, id ASC"
        )
        with transaction(self.db_path, self._timeout) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_rule(row) for row in rows]

    def get_rule(self, rule_id: int) -> Rule:
        with transaction(self.db_path, self._timeout) as conn:
            row = conn.execute("SELECT * FROM rules WHERE id = ?", (rule_id,)).fetchone()
        if row is None:
            raise RuleNotFound(f"Rule {rule_id} not found")
        return self._row_to_rule(row)

    def find_rule(self, owner: str | None, name: str) -> Rule | None:
        with transaction(self.db_path, self._timeout) as conn:
            row = conn.execute(
                "SELECT * FROM rules WHERE ifnull(owner, '') = ? AND name = ?",
                (owner or "", name),
            ).fetchone()
        return self._row_to_rule(row) if row is not None else None

    def insert_rule(self, request: RuleCreateRequest) -> tuple[Rule, bool]:
        """Insert a user rule; returns the existing rule on a name collision.

        The boolean is ``True`` when this call created the rule.
        """
        now = utc_now().isoformat()
        try:
            with transaction(self.db_path, self._timeout) as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO rules (
                        name, owner, kind, description, conditions_json, action_json,
                        priority, is_active, is_system, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                    """,
                    (
                        request.name,
                        request.owner,
                        request.kind.value,
                        request.description,
                        request.conditions.model_dump_json(),
                        request.action.model_dump_json(),
                        request.priority,
                        int(request.is_active),
                        now,
                        now,
                    ),
                )
                rule_id = cursor.lastrowid
        except sqlite3.IntegrityError:
            existing = self.find_rule(request.owner, request.name)
            if existing is None:
                raise
            logger.debug("Rule %r already exists for %s", request.name, request.owner)
            return existing, False
        logger.info("Created rule %d (%s) for %s", rule_id, request.name, request.owner)
        return self.get_rule(int(rule_id)), True

    def update_rule(self, rule_id: int, request: RuleUpdateRequest) -> Rule:
        current = self.get_rule(rule_id)
        if current.is_system:
            raise RuleImmutable(f"Rule {rule_id} is a system rule")
        updates = request.model_dump(exclude_unset=True)
        if not updates:
            return current
        columns: list[str] = []
        params: list[Any] = []
        for field, value in updates.items():
            if field == "conditions":
                columns.append("conditions_json = ?")
                params.append(RuleConditions.model_validate(value).model_dump_json())
            elif field == "action":
                columns.append("action_json = ?")
                params.append(RuleAction.model_validate(value).model_dump_json())
            elif field == "is_active":
                columns.append("is_active = ?")
                params.append(int(value))
            else:
                columns.append(f"{field} = ?")
                params.append(value)
        columns.append("updated_at = ?")
        params.extend([utc_now().isoformat(), rule_id])
        with transaction(self.db_path, self._timeout) as conn:
            conn.execute(
                f"UPDATE rules SET {', '.join(columns)} WHERE id = ? AND is_system = 0",
                params,
            )
        return self.get_rule(rule_id)

    def delete_rule(self, rule_id: int) -> None:
        rule = self.get_rule(rule_id)
        if rule.is_system:
            raise RuleImmutable(f"Rule {rule_id} is a system rule")
        with transaction(self.db_path, self._timeout) as conn:
            conn.execute("DELETE FROM rules WHERE id = ? AND is_system = 0", (rule_id,))

    def increment_usage(self, rule_id: int) -> None:
        """Bump ``usage_count``; contention drops the increment instead of waiting."""
        try:
            with transaction(self.db_path, self._counter_timeout) as conn:
                conn.execute(
                    "UPDATE rules SET usage_count = usage_count + 1 WHERE id = ?",
                    (rule_id,),
                )
        except sqlite3.OperationalError as exc:
            logger.debug("Dropped usage increment for rule %d: %s", rule_id, exc)

    def record_outcome(self, rule_id: int, success: bool, alpha: float) -> Rule:
        """Fold one feedback outcome into the rule's running success rate.

        ``rate = rate + alpha * (outcome - rate)``; the first outcome seeds the
        rate directly.
        """
        outcome = 1.0 if success else 0.0
        with transaction(self.db_path, self._timeout) as conn:
            cursor = conn.execute(
                """
                UPDATE rules
                SET success_rate = CASE
                        WHEN feedback_count = 0 THEN ?
                        ELSE success_rate + ? * (? - success_rate)
                    END,
                    feedback_count = feedback_count + 1
                WHERE id = ?
                """,
                (outcome, alpha, outcome, rule_id),
            )
            if cursor.rowcount == 0:
                raise RuleNotFound(f"Rule {rule_id} not found")
        return self.get_rule(rule_id)

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> Rule:
        return Rule(
            id=row["id"],
            name=row["name"],
            owner=row["owner"],
            kind=RuleKind(row["kind"]),
            description=row["description"],
            conditions=RuleConditions.model_validate(json.loads(row["conditions_json"])),
            action=RuleAction.model_validate(json.loads(row["action_json"])),
            priority=row["priority"],
            is_active=bool(row["is_active"]),
            is_system=bool(row["is_system"]),
            usage_count=row["usage_count"],
            success_rate=row["success_rate"],
            feedback_count=row["feedback_count"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


__all__ = ["RuleStore", "load_seed_rules"]
