"""Suggestions drawn from how similar past ledger entries were filed."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Sequence

from smartimport_schemas import LedgerEntry, NormalizedRecord, Suggestion

from .duplicates import description_similarity
from .settings import HistorySettings


@dataclass(slots=True)
class _Group:
    category: str | None
    account: str | None
    example: str
    count: int = 0
    amount_diff: float = 0.0

    @property
    def mean_diff(self) -> float:
        return self.amount_diff / self.count if self.count else 0.0


class HistoryMatcher:
    """Suggest the category/account most often used for similar past entries.

    A past entry counts when it has the same owner and direction, its
    description similarity exceeds the threshold and its magnitude lies within
    ``amount_ratio`` of the candidate's. Groups of (category, account) are
    ranked by how many entries support them, then by mean amount difference.
    """

    def __init__(self, settings: HistorySettings | None = None) -> None:
        self.settings = settings or HistorySettings()

    def date_bounds(self, dates: Sequence[date]) -> tuple[date, date] | None:
        if not dates:
            return None
        return min(dates) - timedelta(days=self.settings.lookback_days), max(dates)

    def suggest(
        self,
        owner: str,
        candidate: NormalizedRecord,
        entries: Iterable[LedgerEntry],
    ) -> Suggestion | None:
        limit = candidate.magnitude * self.settings.amount_ratio
        groups: dict[tuple[str | None, str | None], _Group] = {}
        for entry in entries:
            if entry.owner != owner or entry.direction != candidate.direction:
                continue
            if entry.category is None and entry.account is None:
                continue
            diff = abs(entry.magnitude - candidate.magnitude)
            if diff >= limit:
                continue
            similarity = description_similarity(candidate.description, entry.description)
            if similarity <= self.settings.similarity_threshold:
                continue
            key = (entry.category, entry.account)
            group = groups.get(key)
            if group is None:
                group = groups[key] = _Group(entry.category, entry.account, entry.description)
            group.count += 1
            group.amount_diff += diff

        if not groups:
            return None
        best = min(
            groups.values(),
            key=lambda group: (
                -group.count,
                group.mean_diff,
                group.category or "",
                group.account or "",
            ),
        )
        settings = self.settings
        confidence = min(
            settings.max_confidence,
            settings.base_confidence + settings.confidence_per_match * best.count,
        )
        noun = "entry" if best.count == 1 else "entries"
        return Suggestion(
            category=best.category,
            account=best.account,
            direction=candidate.direction,
            confidence=round(confidence, 2),
            source="history",
            explanations=[f"Similar to '{best.example}' ({best.count} past {noun})"],
        )


__all__ = ["HistoryMatcher"]
