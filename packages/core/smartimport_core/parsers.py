"""Decoders and text normalisation helpers."""

from __future__ import annotations

import csv
import io
import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime
from typing import ClassVar, Mapping, Protocol, Sequence

from smartimport_schemas import RawRecord

from .errors import DecodeError

_DATE_FORMATS: Sequence[str] = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d/%m/%y",
    "%Y/%m/%d",
)

_NON_ALPHA_RE = re.compile(r"[^a-z\s]")
_MULTI_SPACE_RE = re.compile(r"\s+")
_DATE_TOKEN_RE = re.compile(r"\b\d{1,4}[/.-]\d{1,2}[/.-]\d{2,4}\b")
_NUMERIC_TOKEN_RE = re.compile(r"\b\d+\b")
_AMOUNT_TOKEN_RE = re.compile(r"^[+-]?\(?[€$£]?\s?[+-]?\d[\d.,\s]*[€$£]?\)?$")
_PASTE_SPLIT_RE = re.compile(r"[\t;]+|\s+")

_STOP_WORDS = frozenset(
    {
        "de", "da", "do", "das", "dos", "em", "na", "no", "nas", "nos",
        "para", "por", "com", "sem", "sob", "sobre", "entre", "ate",
        "um", "uma", "uns", "umas", "que", "the", "and", "for", "from",
    }
)


def fold_accents(value: str) -> str:
    """Strip combining marks so ``Alimentação`` compares equal to ``alimentacao``."""
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(char for char in decomposed if not unicodedata.combining(char))


def clean_description(raw: str) -> str:
    """Normalise descriptions for matching by stripping noise."""
    lowered = fold_accents(raw).lower()
    without_dates = _DATE_TOKEN_RE.sub(" ", lowered)
    without_numbers = _NUMERIC_TOKEN_RE.sub(" ", without_dates)
    alpha_only = _NON_ALPHA_RE.sub(" ", without_numbers)
    squashed = _MULTI_SPACE_RE.sub(" ", alpha_only)
    return squashed.strip()


def tokenize(raw: str) -> list[str]:
    return [token for token in clean_description(raw).split() if token]


def extract_keywords(description: str, limit: int) -> list[str]:
    """Pick the leading informative tokens of a description."""
    keywords: list[str] = []
    for token in tokenize(description):
        if len(token) <= 2 or token in _STOP_WORDS or token in keywords:
            continue
        keywords.append(token)
        if len(keywords) == limit:
            break
    return keywords


def parse_date(value: str) -> date:
    candidate = value.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(candidate, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(candidate).date()
    except ValueError as exc:
        raise ValueError(f"Unsupported date format: {value}") from exc


def parse_amount(value: str) -> float:
    """Parse signed amounts in either ``1,234.56`` or ``1.234,56`` notation."""
    cleaned = value.strip().replace(" ", "").replace("\u00a0", "")
    for symbol in ("€", "$", "£", "EUR"):
        cleaned = cleaned.replace(symbol, "")
    if cleaned == "":
        raise ValueError("Amount column cannot be empty")
    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1]
    if cleaned.endswith("-"):
        negative = True
        cleaned = cleaned[:-1]
    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        head, _, tail = cleaned.rpartition(",")
        if len(tail) == 3 and head.lstrip("+-").isdigit():
            cleaned = head + tail
        else:
            cleaned = head.replace(",", "") + "." + tail
    amount = float(cleaned)
    return -abs(amount) if negative else amount


def _header_key(value: str) -> str:
    return fold_accents(value).strip().lower()


def _resolve_field(row: Mapping[str, str], candidates: Sequence[str]) -> str | None:
    for candidate in candidates:
        if candidate in row and row[candidate] not in (None, ""):
            return row[candidate]
    return None


class FileDecoder(Protocol):
    """Turns raw content into an ordered sequence of raw records."""

    def decode(self, content: str, *, received_on: date) -> list[RawRecord]:
        ...


@dataclass(slots=True)
class CsvDecoder:
    """Decode delimited bank exports with English or Portuguese headers."""

    date_headers: ClassVar[tuple[str, ...]] = (
        "date",
        "transaction date",
        "data",
        "data movimento",
        "data mov.",
        "data valor",
    )
    description_headers: ClassVar[tuple[str, ...]] = (
        "description",
        "details",
        "narrative",
        "descricao",
        "movimento",
        "designacao",
    )
    amount_headers: ClassVar[tuple[str, ...]] = (
        "amount",
        "value",
        "net amount",
        "valor",
        "montante",
        "importancia",
    )
    debit_headers: ClassVar[tuple[str, ...]] = ("debit", "debito")
    credit_headers: ClassVar[tuple[str, ...]] = ("credit", "credito")
    type_headers: ClassVar[tuple[str, ...]] = ("type", "tipo")

    def decode(self, content: str, *, received_on: date) -> list[RawRecord]:
        if not content.strip():
            return []
        try:
            dialect = csv.Sniffer().sniff(content[:4096], delimiters=",;\t")
        except csv.Error:
            dialect = csv.excel
        reader = csv.DictReader(io.StringIO(content), dialect=dialect)
        if not reader.fieldnames:
            raise DecodeError("CSV content has no header row")
        headers = [_header_key(name) for name in reader.fieldnames]
        if _resolve_header(headers, self.date_headers) is None:
            raise DecodeError(f"No date column among headers {reader.fieldnames}")

        records: list[RawRecord] = []
        for row in reader:
            line = reader.line_num
            original = {
                key.strip(): (value or "").strip()
                for key, value in row.items()
                if isinstance(key, str) and isinstance(value, str)
            }
            if None in row:
                records.append(
                    RawRecord(
                        line=line,
                        original=original,
                        error=f"Row has more fields than the {len(headers)} headers",
                    )
                )
                continue
            normalised_row = {_header_key(key): value for key, value in original.items()}
            if not any(normalised_row.values()):
                continue
            records.append(
                RawRecord(
                    line=line,
                    fields=self._canonical_fields(normalised_row),
                    original=original,
                )
            )
        return records

    def _canonical_fields(self, row: Mapping[str, str]) -> dict[str, str]:
        fields: dict[str, str] = {}
        date_raw = _resolve_field(row, self.date_headers)
        if date_raw is not None:
            fields["date"] = date_raw
        fields["description"] = _resolve_field(row, self.description_headers) or ""
        amount_raw = _resolve_field(row, self.amount_headers)
        if amount_raw is None:
            amount_raw = _debit_credit_amount(
                _resolve_field(row, self.debit_headers),
                _resolve_field(row, self.credit_headers),
            )
        if amount_raw is not None:
            fields["amount"] = amount_raw
        type_raw = _resolve_field(row, self.type_headers)
        if type_raw is not None:
            fields["type"] = type_raw
        return fields


def _resolve_header(headers: Sequence[str], candidates: Sequence[str]) -> str | None:
    for candidate in candidates:
        if candidate in headers:
            return candidate
    return None


def _debit_credit_amount(debit: str | None, credit: str | None) -> str | None:
    if debit is None and credit is None:
        return None
    try:
        total = (parse_amount(credit) if credit else 0.0) - abs(
            parse_amount(debit) if debit else 0.0
        )
    except ValueError:
        return debit or credit
    return f"{total:.2f}"


@dataclass(slots=True)
class PastedTextDecoder:
    """Decode free text, one transaction per non-blank line.

    A line reads ``[date] description amount``. Lines without a date take the
    day the text was received. Unsigned amounts are treated as spending; a
    leading ``+`` marks income.
    """

    def decode(self, content: str, *, received_on: date) -> list[RawRecord]:
        records: list[RawRecord] = []
        for line_no, line in enumerate(content.splitlines(), start=1):
            text = line.strip()
            if not text:
                continue
            tokens = [token for token in _PASTE_SPLIT_RE.split(text) if token]
            original = {"line": text}
            date_raw = received_on.isoformat()
            if tokens and _looks_like_date(tokens[0]):
                date_raw = tokens.pop(0)
            if len(tokens) < 2 or not _AMOUNT_TOKEN_RE.match(tokens[-1]):
                records.append(
                    RawRecord(
                        line=line_no,
                        original=original,
                        error="Line does not end with an amount",
                    )
                )
                continue
            amount_raw = tokens.pop()
            fields = {
                "date": date_raw,
                "description": " ".join(tokens),
                "amount": amount_raw,
            }
            if not amount_raw.startswith(("+", "-", "(")):
                fields["type"] = "expense"
            elif amount_raw.startswith("+"):
                fields["type"] = "income"
            records.append(RawRecord(line=line_no, fields=fields, original=original))
        return records


def _looks_like_date(token: str) -> bool:
    if not _DATE_TOKEN_RE.fullmatch(token):
        return False
    try:
        parse_date(token)
    except ValueError:
        return False
    return True


_DECODERS: dict[str, FileDecoder] = {
    "csv": CsvDecoder(),
    "tsv": CsvDecoder(),
    "txt": PastedTextDecoder(),
    "paste": PastedTextDecoder(),
}


def decoder_for(file_format: str, registry: Mapping[str, FileDecoder] | None = None) -> FileDecoder:
    """Return the decoder registered for a declared format."""
    decoders = registry if registry is not None else _DECODERS
    key = file_format.strip().lower().lstrip(".")
    decoder = decoders.get(key)
    if decoder is None:
        raise DecodeError(f"Unsupported file format: {file_format}")
    return decoder


__all__ = [
    "CsvDecoder",
    "FileDecoder",
    "PastedTextDecoder",
    "clean_description",
    "decoder_for",
    "extract_keywords",
    "fold_accents",
    "parse_amount",
    "parse_date",
    "tokenize",
]
