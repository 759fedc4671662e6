"""Schemas exchanged with the ledger store and the classification oracle."""

from __future__ import annotations

from datetime import date
from typing import Optional

from pydantic import Field

from .base import Direction, FrozenModel

_Date = date


class BalanceAdjustment(FrozenModel):
    """Signed balance change the ledger must apply for one entry."""

    account: Optional[str] = None
    delta: float


class LedgerEntry(FrozenModel):
    """A permanently committed transaction."""

    id: str
    owner: str
    date: _Date
    description: str
    magnitude: float = Field(ge=0.0)
    direction: Direction
    category: Optional[str] = None
    account: Optional[str] = None
    session_id: Optional[str] = None
    source: str = "smart_import"
    adjustment: Optional[BalanceAdjustment] = None


class OracleRequest(FrozenModel):
    """Payload sent to the optional text classification service."""

    description: str
    magnitude: float
    direction: Direction
    candidate_categories: list[str] = Field(default_factory=list)


__all__ = ["BalanceAdjustment", "LedgerEntry", "OracleRequest"]
