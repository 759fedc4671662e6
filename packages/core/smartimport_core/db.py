"""SQLite connection helpers shared by the stores."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def connect(db_path: Path, timeout: float = 5.0) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode and foreign keys enabled."""
    conn = sqlite3.connect(str(db_path), timeout=timeout)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction(db_path: Path, timeout: float = 5.0) -> Iterator[sqlite3.Connection]:
    """Yield a connection whose work commits on success and rolls back on error."""
    conn = connect(db_path, timeout=timeout)
    try:
        with conn:
            yield conn
    finally:
        conn.close()
