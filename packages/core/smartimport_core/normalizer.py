"""Raw record to canonical transaction tuple."""

from __future__ import annotations

import math

from smartimport_schemas import Direction, NormalizedRecord, RawRecord

from .errors import DecodeError, RecordValidationError
from .parsers import clean_description, fold_accents, parse_amount, parse_date

_TYPE_ALIASES: dict[str, Direction] = {
    "income": "income",
    "receita": "income",
    "rendimento": "income",
    "credit": "income",
    "credito": "income",
    "c": "income",
    "expense": "expense",
    "despesa": "expense",
    "debit": "expense",
    "debito": "expense",
    "d": "expense",
    "transfer": "transfer",
    "transferencia": "transfer",
    "t": "transfer",
}


def resolve_direction(type_raw: str | None, signed_amount: float) -> Direction:
    """Explicit type wins; otherwise the sign decides."""
    if type_raw:
        key = fold_accents(type_raw).strip().lower()
        direction = _TYPE_ALIASES.get(key)
        if direction is not None:
            return direction
    return "expense" if signed_amount < 0 else "income"


def normalize(raw: RawRecord) -> NormalizedRecord:
    """Convert one decoded row into a canonical record.

    Raises ``DecodeError`` for rows the decoder already marked unreadable and
    ``RecordValidationError`` when the date or amount cannot be parsed.
    """
    if raw.error:
        raise DecodeError(raw.error)

    date_raw = raw.fields.get("date", "").strip()
    if not date_raw:
        raise RecordValidationError("Missing date")
    try:
        parsed_date = parse_date(date_raw)
    except ValueError as exc:
        raise RecordValidationError(f"Unparseable date: {date_raw!r}") from exc

    amount_raw = raw.fields.get("amount", "").strip()
    if not amount_raw:
        raise RecordValidationError("Missing amount")
    try:
        signed_amount = parse_amount(amount_raw)
    except ValueError as exc:
        raise RecordValidationError(f"Unparseable amount: {amount_raw!r}") from exc
    if not math.isfinite(signed_amount):
        raise RecordValidationError(f"Unparseable amount: {amount_raw!r}")

    description = " ".join(raw.fields.get("description", "").split())
    return NormalizedRecord(
        date=parsed_date,
        description=description,
        description_clean=clean_description(description),
        magnitude=round(abs(signed_amount), 2),
        direction=resolve_direction(raw.fields.get("type"), signed_amount),
    )


__all__ = ["normalize", "resolve_direction"]
