"""Similarity-based duplicate detection."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable, Sequence

from rapidfuzz import fuzz
from smartimport_schemas import (
    DuplicateMatch,
    LedgerEntry,
    NormalizedRecord,
    Rule,
    RuleKind,
    StagedRecord,
)

from .parsers import clean_description
from .settings import DuplicateSettings

# Float noise in magnitudes must not push 45.67 vs 45.68 past a 0.01 tolerance.
_AMOUNT_EPSILON = 1e-9


def description_similarity(left: str, right: str) -> float:
    """Token-set similarity in [0, 1]; symmetric in its arguments."""
    a = clean_description(left)
    b = clean_description(right)
    if not a or not b:
        return 0.0
    return round(fuzz.token_set_ratio(a, b) / 100, 4)


@dataclass(frozen=True, slots=True)
class DuplicatePolicy:
    """Thresholds for flagging a candidate as a potential duplicate."""

    window_days: int = 5
    amount_tolerance: float = 0.01
    similarity_threshold: float = 0.8
    confidence: float = 0.8

    @classmethod
    def from_settings(cls, settings: DuplicateSettings) -> "DuplicatePolicy":
        return cls(
            window_days=settings.window_days,
            amount_tolerance=settings.amount_tolerance,
            similarity_threshold=settings.similarity_threshold,
            confidence=settings.confidence,
        )

    @classmethod
    def resolve(cls, rules: Iterable[Rule], defaults: "DuplicatePolicy") -> "DuplicatePolicy":
        """Use the highest-priority active duplicate rule, falling back to defaults."""
        candidates = sorted(
            (
                rule
                for rule in rules
                if rule.is_active
                and rule.kind == RuleKind.DUPLICATE_DETECTION
                and rule.action.flag_as_duplicate
            ),
            key=lambda rule: (rule.priority, -rule.id),
        )
        if not candidates:
            return defaults
        conditions = candidates[0].conditions
        return cls(
            window_days=(
                conditions.time_window_days
                if conditions.time_window_days is not None
                else defaults.window_days
            ),
            amount_tolerance=(
                conditions.amount_tolerance
                if conditions.amount_tolerance is not None
                else defaults.amount_tolerance
            ),
            similarity_threshold=(
                conditions.description_similarity
                if conditions.description_similarity is not None
                else defaults.similarity_threshold
            ),
            confidence=candidates[0].action.confidence or defaults.confidence,
        )

    def date_bounds(self, dates: Sequence[date]) -> tuple[date, date] | None:
        if not dates:
            return None
        window = timedelta(days=self.window_days)
        return min(dates) - window, max(dates) + window


@dataclass(slots=True)
class DuplicateVerdict:
    """Outcome of checking one candidate."""

    matches: list[DuplicateMatch] = field(default_factory=list)
    confidence: float = 0.0

    @property
    def is_duplicate(self) -> bool:
        return bool(self.matches)

    @property
    def canonical(self) -> DuplicateMatch | None:
        # Ledger entries win over same-session records.
        if not self.matches:
            return None
        return self.matches[0]


class DuplicateDetector:
    """Compare candidates against ledger entries and earlier staged records.

    Confidence across several matches is the maximum of the per-match
    confidences, whether they came from the ledger or from the session.
    """

    def __init__(self, policy: DuplicatePolicy) -> None:
        self.policy = policy

    def _compare(
        self,
        candidate: NormalizedRecord,
        other_date: date,
        other_magnitude: float,
        other_description: str,
    ) -> float | None:
        if abs((candidate.date - other_date).days) > self.policy.window_days:
            return None
        delta = abs(candidate.magnitude - other_magnitude)
        if delta > self.policy.amount_tolerance + _AMOUNT_EPSILON:
            return None
        similarity = description_similarity(candidate.description, other_description)
        if similarity <= self.policy.similarity_threshold:
            return None
        return similarity

    def inspect(
        self,
        owner: str,
        candidate: NormalizedRecord,
        ledger_entries: Iterable[LedgerEntry] = (),
        staged: Iterable[StagedRecord] = (),
    ) -> DuplicateVerdict:
        """Check ``candidate`` against the ledger and other staged records.

        ``staged`` should hold only records that precede the candidate in the
        session, so the earlier record stays canonical.
        """
        ledger_matches: list[DuplicateMatch] = []
        for entry in ledger_entries:
            if entry.owner != owner:
                continue
            similarity = self._compare(
                candidate, entry.date, entry.magnitude, entry.description
            )
            if similarity is None:
                continue
            ledger_matches.append(
                DuplicateMatch(
                    kind="ledger",
                    reference=entry.id,
                    date=entry.date,
                    magnitude=entry.magnitude,
                    description=entry.description,
                    similarity=similarity,
                )
            )

        staged_matches: list[DuplicateMatch] = []
        for other in staged:
            if other.normalized is None:
                continue
            similarity = self._compare(
                candidate,
                other.normalized.date,
                other.normalized.magnitude,
                other.normalized.description,
            )
            if similarity is None:
                continue
            staged_matches.append(
                DuplicateMatch(
                    kind="staged",
                    reference=str(other.sequence),
                    date=other.normalized.date,
                    magnitude=other.normalized.magnitude,
                    description=other.normalized.description,
                    similarity=similarity,
                )
            )

        def strongest_first(match: DuplicateMatch) -> tuple[float, str]:
            return (-match.similarity, match.reference)

        matches = sorted(ledger_matches, key=strongest_first) + sorted(
            staged_matches, key=strongest_first
        )
        confidence = max(
            (round(self.policy.confidence * match.similarity, 2) for match in matches),
            default=0.0,
        )
        return DuplicateVerdict(matches=matches, confidence=confidence)


__all__ = [
    "DuplicateDetector",
    "DuplicatePolicy",
    "DuplicateVerdict",
    "description_similarity",
]
