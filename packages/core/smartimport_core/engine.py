"""Rule evaluation for staged records."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from smartimport_schemas import NormalizedRecord, Rule, RuleKind, Suggestion

from .parsers import clean_description, tokenize
from .rules import RuleStore

logger = logging.getLogger(__name__)


def _contains_phrase(tokens: Sequence[str], phrase: Sequence[str]) -> bool:
    width = len(phrase)
    if width == 0 or width > len(tokens):
        return False
    return any(
        tuple(tokens[start : start + width]) == tuple(phrase)
        for start in range(len(tokens) - width + 1)
    )


def matched_keywords(rule: Rule, tokens: Sequence[str]) -> tuple[str, ...]:
    """Keywords of ``rule`` present in the tokenised description.

    Multi-word keywords such as ``pingo doce`` must appear as a phrase.
    """
    hits: list[str] = []
    for keyword in rule.conditions.keywords:
        phrase = tokenize(keyword)
        if _contains_phrase(tokens, phrase):
            hits.append(" ".join(phrase))
    return tuple(dict.fromkeys(hits))


@dataclass(frozen=True, slots=True)
class RuleMatch:
    """A classification rule that matched a record."""

    rule: Rule
    keywords: tuple[str, ...]

    @property
    def specificity(self) -> int:
        return len(self.keywords)

    def sort_key(self) -> tuple[int, float, int, float, int]:
        # priority asc, confidence desc, specificity desc, most recently updated, id desc
        return (
            self.rule.priority,
            -self.rule.action.confidence,
            -self.specificity,
            -self.rule.updated_at.timestamp(),
            -self.rule.id,
        )


class RuleEngine:
    """Evaluate classification, normalisation and validation rules."""

    def __init__(self, store: RuleStore | None = None) -> None:
        self._store = store

    def matches(
        self, record: NormalizedRecord, rules: Iterable[Rule]
    ) -> list[RuleMatch]:
        tokens = record.description_clean.split()
        found: list[RuleMatch] = []
        for rule in rules:
            if not rule.is_active or rule.kind != RuleKind.CLASSIFICATION:
                continue
            keywords = matched_keywords(rule, tokens)
            if not keywords:
                continue
            amount_range = rule.conditions.amount_range
            if amount_range is not None and not amount_range.contains(record.magnitude):
                continue
            found.append(RuleMatch(rule=rule, keywords=keywords))
        return sorted(found, key=RuleMatch.sort_key)

    def classify(self, record: NormalizedRecord, rules: Iterable[Rule]) -> Suggestion:
        """Return the top-ranked rule's action, or an unclassified suggestion."""
        ranked = self.matches(record, rules)
        if not ranked:
            return Suggestion(
                direction=record.direction,
                confidence=0.0,
                source="none",
                explanations=["No matching rule"],
            )
        best = ranked[0]
        if self._store is not None:
            self._store.increment_usage(best.rule.id)
        explanations = [
            f"Rule '{best.rule.name}' matched keywords {', '.join(best.keywords)} "
            f"(priority {best.rule.priority})"
        ]
        if len(ranked) > 1:
            explanations.append(
                f"{len(ranked) - 1} lower-ranked rule(s) also matched"
            )
        action = best.rule.action
        return Suggestion(
            category=action.category,
            account=action.account,
            direction=action.direction or record.direction,
            confidence=action.confidence,
            source="rule",
            rule_id=best.rule.id,
            explanations=explanations,
        )

    @staticmethod
    def normalize_description(
        record: NormalizedRecord, rules: Iterable[Rule]
    ) -> NormalizedRecord:
        """Apply description-normalisation rules to ``description_clean``."""
        cleaned = record.description_clean
        for rule in sorted(rules, key=lambda item: (item.priority, item.id)):
            if not rule.is_active or rule.kind != RuleKind.DESCRIPTION_NORMALIZATION:
                continue
            if not rule.action.strip:
                continue
            for pattern in rule.conditions.patterns:
                try:
                    stripped = re.sub(pattern, " ", cleaned, flags=re.IGNORECASE)
                except re.error as exc:
                    logger.warning("Rule %d has invalid pattern %r: %s", rule.id, pattern, exc)
                    continue
                stripped = clean_description(stripped)
                # Never strip a description down to nothing.
                if stripped:
                    cleaned = stripped
        if cleaned == record.description_clean:
            return record
        return record.model_copy(update={"description_clean": cleaned})

    @staticmethod
    def validate_amount(record: NormalizedRecord, rules: Iterable[Rule]) -> list[str]:
        """Warnings from amount-validation rules whose range the record falls outside."""
        tokens = record.description_clean.split()
        warnings: list[str] = []
        for rule in rules:
            if not rule.is_active or rule.kind != RuleKind.AMOUNT_VALIDATION:
                continue
            if rule.conditions.keywords and not matched_keywords(rule, tokens):
                continue
            amount_range = rule.conditions.amount_range
            if amount_range is None or amount_range.contains(record.magnitude):
                continue
            warnings.append(
                f"Amount {record.magnitude:.2f} outside expected range "
                f"[{amount_range.min}, {amount_range.max}] ({rule.name})"
            )
        return warnings


__all__ = ["RuleEngine", "RuleMatch", "matched_keywords"]
