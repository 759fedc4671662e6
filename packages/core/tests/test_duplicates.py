"""Tests for duplicate detection."""

from __future__ import annotations

from datetime import date, datetime, timezone

from smartimport_core import DuplicateDetector, DuplicatePolicy, description_similarity
from smartimport_core.parsers import clean_description
from smartimport_schemas import (
    LedgerEntry,
    NormalizedRecord,
    ProcessingStatus,
    Rule,
    RuleAction,
    RuleConditions,
    RuleKind,
    StagedRecord,
)

DAY = date(2024, 3, 1)


def make_record(description: str, magnitude: float, when: date = DAY) -> NormalizedRecord:
    return NormalizedRecord(
        date=when,
        description=description,
        description_clean=clean_description(description),
        magnitude=magnitude,
        direction="expense",
    )


def make_entry(entry_id: str, description: str, magnitude: float, owner: str = "ana") -> LedgerEntry:
    return LedgerEntry(
        id=entry_id,
        owner=owner,
        date=DAY,
        description=description,
        magnitude=magnitude,
        direction="expense",
    )


def make_staged(sequence: int, record: NormalizedRecord) -> StagedRecord:
    return StagedRecord(
        session_id="s-1",
        sequence=sequence,
        normalized=record,
        status=ProcessingStatus.PROCESSED,
    )


def test_near_identical_amounts_and_descriptions_are_flagged() -> None:
    detector = DuplicateDetector(DuplicatePolicy())
    existing = make_entry("L1", "SUPERMARKET X", 45.67)

    verdict = detector.inspect("ana", make_record("SUPERMARKET X LISBOA", 45.68), [existing])

    assert verdict.is_duplicate
    assert verdict.canonical is not None
    assert verdict.canonical.reference == "L1"
    assert 0 < verdict.confidence <= 1


def test_different_amount_is_not_flagged() -> None:
    detector = DuplicateDetector(DuplicatePolicy())
    existing = make_entry("L1", "SUPERMARKET X", 45.67)

    verdict = detector.inspect("ana", make_record("SUPERMARKET X", 200.00), [existing])

    assert not verdict.is_duplicate
    assert verdict.confidence == 0.0


def test_other_owners_and_distant_dates_are_ignored() -> None:
    detector = DuplicateDetector(DuplicatePolicy())
    foreign = make_entry("L1", "SUPERMARKET X", 45.67, owner="rui")
    late = make_record("SUPERMARKET X", 45.67, when=date(2024, 3, 10))

    assert not detector.inspect("ana", make_record("SUPERMARKET X", 45.67), [foreign]).is_duplicate
    assert not detector.inspect("ana", late, [make_entry("L2", "SUPERMARKET X", 45.67)]).is_duplicate


def test_similarity_is_symmetric() -> None:
    pairs = [
        ("SUPERMARKET X", "SUPERMARKET X LISBOA"),
        ("Galp Energia Porto", "galp"),
        ("Farmácia Central", "FARMACIA"),
    ]
    for left, right in pairs:
        assert description_similarity(left, right) == description_similarity(right, left)
    assert description_similarity("", "galp") == 0.0


def test_ledger_entries_are_canonical_over_staged_records() -> None:
    detector = DuplicateDetector(DuplicatePolicy())
    candidate = make_record("SUPERMARKET X", 45.67)
    earlier = make_staged(1, make_record("SUPERMARKET X", 45.67))

    verdict = detector.inspect(
        "ana", candidate, [make_entry("L1", "SUPERMARKET X LISBOA", 45.67)], [earlier]
    )

    assert [match.kind for match in verdict.matches] == ["ledger", "staged"]
    assert verdict.canonical is not None
    assert verdict.canonical.kind == "ledger"


def test_similarity_must_exceed_the_threshold() -> None:
    existing = make_entry("L1", "SUPERMARKET X", 45.67)
    candidate = make_record("SUPERMARKET X", 45.67)

    at_threshold = DuplicateDetector(DuplicatePolicy(similarity_threshold=1.0))
    below_threshold = DuplicateDetector(DuplicatePolicy(similarity_threshold=0.99))

    assert not at_threshold.inspect("ana", candidate, [existing]).is_duplicate
    assert below_threshold.inspect("ana", candidate, [existing]).is_duplicate


def test_confidence_is_the_strongest_single_match() -> None:
    policy = DuplicatePolicy(confidence=0.8)
    detector = DuplicateDetector(policy)
    candidate = make_record("SUPERMARKET X", 45.67)
    exact = make_staged(1, make_record("SUPERMARKET X", 45.67))
    partial = make_entry("L1", "SUPERMARKET XPTO", 45.67)

    verdict = detector.inspect("ana", candidate, [partial], [exact])

    assert verdict.confidence == 0.8


def test_policy_resolves_from_the_highest_priority_duplicate_rule() -> None:
    stamp = datetime(2024, 1, 1, tzinfo=timezone.utc)
    rule = Rule(
        id=9,
        name="tight",
        kind=RuleKind.DUPLICATE_DETECTION,
        conditions=RuleConditions(time_window_days=1, amount_tolerance=0.0),
        action=RuleAction(flag_as_duplicate=True, confidence=0.6),
        priority=1,
        created_at=stamp,
        updated_at=stamp,
    )

    policy = DuplicatePolicy.resolve([rule], DuplicatePolicy())

    assert policy.window_days == 1
    assert policy.amount_tolerance == 0.0
    assert policy.similarity_threshold == 0.8
    assert policy.confidence == 0.6
    assert DuplicatePolicy.resolve([], DuplicatePolicy(window_days=3)).window_days == 3
