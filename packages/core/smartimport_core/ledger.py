"""Permanent ledger store interface and a SQLite implementation."""

from __future__ import annotations

import logging
import sqlite3
from datetime import date
from pathlib import Path
from typing import Protocol, Sequence

from smartimport_schemas import BalanceAdjustment, LedgerEntry

from .db import transaction, utc_now
from .errors import StorageFailure
from .parsers import fold_accents

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS categories (
    id INTEGER PRIMARY KEY,
    owner TEXT,
    name TEXT NOT NULL,
    category_type TEXT NOT NULL,
    is_active INTEGER DEFAULT 1
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_categories_owner_name ON categories (ifnull(owner, ''), name);

CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY,
    owner TEXT NOT NULL,
    name TEXT NOT NULL,
    balance REAL NOT NULL DEFAULT 0.0,
    UNIQUE (owner, name)
);

CREATE TABLE IF NOT EXISTS ledger_entries (
    id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    date TEXT NOT NULL,
    description TEXT NOT NULL,
    magnitude REAL NOT NULL CHECK (magnitude >= 0),
    direction TEXT NOT NULL CHECK (direction IN ('income', 'expense', 'transfer')),
    category TEXT,
    account TEXT,
    session_id TEXT,
    source TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_ledger_owner_date ON ledger_entries (owner, date);

CREATE TABLE IF NOT EXISTS balance_adjustments (
    id INTEGER PRIMARY KEY,
    entry_id TEXT NOT NULL UNIQUE,
    owner TEXT NOT NULL,
    account TEXT,
    delta REAL NOT NULL,
    applied INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    FOREIGN KEY (entry_id) REFERENCES ledger_entries(id)
);
"""

DEFAULT_CATEGORIES = [
    # (name, category_type)
    ("Alimentação", "expense"),
    ("Transporte", "expense"),
    ("Saúde", "expense"),
    ("Habitação", "expense"),
    ("Utilidades", "expense"),
    ("Entretenimento", "expense"),
    ("Educação", "expense"),
    ("Outros", "expense"),
    ("Salário", "income"),
    ("Outras Receitas", "income"),
    ("Transferências", "transfer"),
]


def _category_key(name: str) -> str:
    return fold_accents(name).strip().lower()


class LedgerStore(Protocol):
    """The permanent, balance-tracking transaction store."""

    def find_entries(self, owner: str, start: date, end: date) -> list[LedgerEntry]:
        ...

    def list_categories(self, owner: str) -> list[str]:
        ...

    def has_category(self, owner: str, name: str) -> bool:
        ...

    def has_account(self, owner: str, name: str) -> bool:
        ...

    def commit_batch(self, owner: str, entries: Sequence[LedgerEntry]) -> list[str]:
        """Write every entry or none; raise ``StorageFailure`` on failure."""
        ...


class SqliteLedgerStore:
    """Ledger store with balance adjustments written alongside each entry."""

    def __init__(self, db_path: Path, timeout: float = 5.0) -> None:
        self.db_path = db_path
        self._timeout = timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with transaction(self.db_path, self._timeout) as conn:
            conn.executescript(_SCHEMA)
            count = conn.execute("SELECT count(*) FROM categories").fetchone()[0]
            if count == 0:
                conn.executemany(
                    "INSERT INTO categories (owner, name, category_type) VALUES (NULL, ?, ?)",
                    DEFAULT_CATEGORIES,
                )

    def add_category(self, owner: str, name: str, category_type: str = "expense") -> None:
        with transaction(self.db_path, self._timeout) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO categories (owner, name, category_type) VALUES (?, ?, ?)",
                (owner, name, category_type),
            )

    def add_account(self, owner: str, name: str, balance: float = 0.0) -> None:
        with transaction(self.db_path, self._timeout) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO accounts (owner, name, balance) VALUES (?, ?, ?)",
                (owner, name, balance),
            )

    def list_categories(self, owner: str) -> list[str]:
        with transaction(self.db_path, self._timeout) as conn:
            rows = conn.execute(
                """
                SELECT name FROM categories
                WHERE (owner IS NULL OR owner = ?) AND is_active = 1
                ORDER BY id ASC
                """,
                (owner,),
            ).fetchall()
        return [row["name"] for row in rows]

    def has_category(self, owner: str, name: str) -> bool:
        wanted = _category_key(name)
        return any(_category_key(category) == wanted for category in self.list_categories(owner))

    def has_account(self, owner: str, name: str) -> bool:
        with transaction(self.db_path, self._timeout) as conn:
            row = conn.execute(
                "SELECT 1 FROM accounts WHERE owner = ? AND name = ?", (owner, name)
            ).fetchone()
        return row is not None

    def account_balance(self, owner: str, name: str) -> float:
        with transaction(self.db_path, self._timeout) as conn:
            row = conn.execute(
                "SELECT balance FROM accounts WHERE owner = ? AND name = ?", (owner, name)
            ).fetchone()
        return float(row["balance"]) if row is not None else 0.0

    def find_entries(self, owner: str, start: date, end: date) -> list[LedgerEntry]:
        with transaction(self.db_path, self._timeout) as conn:
            rows = conn.execute(
                """
                SELECT * FROM ledger_entries
                WHERE owner = ? AND date BETWEEN ? AND ?
                ORDER BY date ASC, id ASC
                """,
                (owner, start.isoformat(), end.isoformat()),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def commit_batch(self, owner: str, entries: Sequence[LedgerEntry]) -> list[str]:
        """Insert entries and their balance adjustments in a single transaction.

        An entry id that is already present is skipped together with its
        adjustment, so a retried batch never adjusts a balance twice.
        """
        now = utc_now().isoformat()
        committed: list[str] = []
        try:
            with transaction(self.db_path, self._timeout) as conn:
                for entry in entries:
                    if entry.owner != owner:
                        raise StorageFailure(
                            f"Entry {entry.id} belongs to {entry.owner}, not {owner}"
                        )
                    cursor = conn.execute(
                        """
                        INSERT OR IGNORE INTO ledger_entries (
                            id, owner, date, description, magnitude, direction,
                            category, account, session_id, source, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            entry.id,
                            entry.owner,
                            entry.date.isoformat(),
                            entry.description,
                            entry.magnitude,
                            entry.direction,
                            entry.category,
                            entry.account,
                            entry.session_id,
                            entry.source,
                            now,
                        ),
                    )
                    committed.append(entry.id)
                    if cursor.rowcount == 0:
                        continue
                    adjustment = entry.adjustment or BalanceAdjustment(
                        account=entry.account, delta=0.0
                    )
                    conn.execute(
                        """
                        INSERT INTO balance_adjustments (entry_id, owner, account, delta, created_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (entry.id, owner, adjustment.account, adjustment.delta, now),
                    )
                    if adjustment.account is not None:
                        conn.execute(
                            "UPDATE accounts SET balance = balance + ? WHERE owner = ? AND name = ?",
                            (adjustment.delta, owner, adjustment.account),
                        )
                        conn.execute(
                            "UPDATE balance_adjustments SET applied = 1 WHERE entry_id = ?",
                            (entry.id,),
                        )
        except sqlite3.Error as exc:
            logger.error("Ledger batch of %d entries rolled back: %s", len(entries), exc)
            raise StorageFailure(f"Ledger write failed: {exc}") from exc
        logger.info("Committed %d ledger entries for %s", len(committed), owner)
        return committed

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> LedgerEntry:
        return LedgerEntry(
            id=row["id"],
            owner=row["owner"],
            date=date.fromisoformat(row["date"]),
            description=row["description"],
            magnitude=row["magnitude"],
            direction=row["direction"],
            category=row["category"],
            account=row["account"],
            session_id=row["session_id"],
            source=row["source"],
        )


__all__ = ["DEFAULT_CATEGORIES", "LedgerStore", "SqliteLedgerStore"]
