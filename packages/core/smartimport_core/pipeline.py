"""Background execution of the import stages for each session."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Mapping, Sequence

from smartimport_schemas import (
    ImportSession,
    LedgerEntry,
    NormalizedRecord,
    OracleRequest,
    ProcessingStatus,
    Rule,
    SessionCounters,
    SessionState,
    StagedRecord,
    Suggestion,
)

from .duplicates import DuplicateDetector, DuplicatePolicy
from .engine import RuleEngine
from .errors import DecodeError, RecordValidationError, SessionNotFound, SessionTerminated
from .history import HistoryMatcher
from .ledger import LedgerStore
from .normalizer import normalize
from .oracle import BestEffortOracle
from .parsers import FileDecoder, decoder_for
from .rules import RuleStore
from .sessions import SessionStore
from .settings import Settings

logger = logging.getLogger(__name__)


class ImportPipeline:
    """Run Parsing, Processing and Enriching for sessions on a worker pool.

    Each session is a single unit of work; stages within it run in order.
    A stage that finds its session terminal or deleted stops without writing.
    """

    def __init__(
        self,
        sessions: SessionStore,
        rules: RuleStore,
        engine: RuleEngine,
        ledger: LedgerStore,
        settings: Settings,
        oracle: BestEffortOracle | None = None,
        decoders: Mapping[str, FileDecoder] | None = None,
    ) -> None:
        self.sessions = sessions
        self.rules = rules
        self.engine = engine
        self.ledger = ledger
        self.settings = settings
        self.oracle = oracle
        self._decoders = decoders
        self.history = HistoryMatcher(settings.history)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.pipeline.max_workers, thread_name_prefix="import"
        )
        self._futures: dict[str, Future[None]] = {}
        self._lock = threading.Lock()

    def submit(self, session: ImportSession, content: str) -> None:
        with self._lock:
            future = self._executor.submit(self._run, session.id, content)
            self._futures[session.id] = future
        future.add_done_callback(lambda _: self._forget(session.id, future))

    def wait(self, session_id: str, timeout: float | None = None) -> bool:
        """Block until the session's run ends; ``False`` if it is still running."""
        with self._lock:
            future = self._futures.get(session_id)
        if future is None:
            return True
        try:
            future.result(timeout=timeout)
        except FutureTimeout:
            return False
        return True

    def cancel(self, session_id: str) -> bool:
        """Cancel a run that has not started yet."""
        with self._lock:
            future = self._futures.get(session_id)
        if future is None or not future.cancel():
            return False
        self.sessions.fail(session_id, "Import cancelled before processing started")
        return True

    def close(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)

    def _forget(self, session_id: str, future: Future[None]) -> None:
        with self._lock:
            if self._futures.get(session_id) is future:
                del self._futures[session_id]

    def _run(self, session_id: str, content: str) -> None:
        started = time.perf_counter()
        try:
            session = self.sessions.advance(session_id, SessionState.PARSING)
            staged, counters = self._parse_and_process(session, content)
            enriched = self._enrich_all(session, staged)
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            self.sessions.advance(
                session_id,
                SessionState.COMPLETED,
                counters=counters,
                staged=enriched,
                processing_time_ms=elapsed_ms,
            )
        except (SessionTerminated, SessionNotFound) as exc:
            logger.info("Import %s stopped: %s", session_id, exc)
        except DecodeError as exc:
            logger.warning("Import %s could not be decoded: %s", session_id, exc)
            self.sessions.fail(session_id, str(exc))
        except Exception as exc:
            logger.exception("Import %s failed", session_id)
            self.sessions.fail(session_id, f"Unexpected error: {exc}")

    def _parse_and_process(
        self, session: ImportSession, content: str
    ) -> tuple[list[StagedRecord], SessionCounters]:
        decoder = decoder_for(session.file_format, self._decoders)
        rows = decoder.decode(content, received_on=session.created_at.date())
        total = len(rows)
        self.sessions.advance(
            session.id, SessionState.PROCESSING, counters=SessionCounters(total_rows=total)
        )

        staged: list[StagedRecord] = []
        successful = 0
        for sequence, row in enumerate(rows, start=1):
            raw_payload = dict(row.original or row.fields)
            try:
                normalized = normalize(row)
            except (DecodeError, RecordValidationError) as exc:
                logger.debug("Session %s row %d rejected: %s", session.id, row.line, exc)
                staged.append(
                    StagedRecord(
                        session_id=session.id,
                        sequence=sequence,
                        raw=raw_payload,
                        status=ProcessingStatus.ERROR,
                        error_message=str(exc),
                    )
                )
                continue
            successful += 1
            staged.append(
                StagedRecord(
                    session_id=session.id,
                    sequence=sequence,
                    raw=raw_payload,
                    normalized=normalized,
                    status=ProcessingStatus.PROCESSED,
                )
            )

        counters = SessionCounters(
            total_rows=total,
            processed_rows=len(staged),
            successful_rows=successful,
            error_rows=len(staged) - successful,
        )
        self.sessions.advance(
            session.id, SessionState.ENRICHING, counters=counters, staged=staged
        )
        return staged, counters

    def _enrich_all(
        self, session: ImportSession, staged: Sequence[StagedRecord]
    ) -> list[StagedRecord]:
        rules = self.rules.list_rules(session.owner, active_only=True)
        policy = DuplicatePolicy.resolve(
            rules, DuplicatePolicy.from_settings(self.settings.duplicates)
        )
        detector = DuplicateDetector(policy)
        dates = [record.normalized.date for record in staged if record.normalized is not None]
        ledger_entries: list[LedgerEntry] = []
        duplicate_bounds = policy.date_bounds(dates)
        history_bounds = self.history.date_bounds(dates)
        if duplicate_bounds and history_bounds:
            ledger_entries = self.ledger.find_entries(
                session.owner,
                min(duplicate_bounds[0], history_bounds[0]),
                max(duplicate_bounds[1], history_bounds[1]),
            )
        categories = self.ledger.list_categories(session.owner) if self.oracle else []

        enriched: list[StagedRecord] = []
        for record in staged:
            self.sessions.ensure_active(session.id)
            if record.normalized is None:
                enriched.append(record)
                continue
            enriched.append(
                self._enrich(
                    session.owner,
                    record,
                    record.normalized,
                    rules,
                    detector,
                    ledger_entries,
                    enriched,
                    categories,
                )
            )
        return enriched

    def _enrich(
        self,
        owner: str,
        record: StagedRecord,
        normalized: NormalizedRecord,
        rules: Sequence[Rule],
        detector: DuplicateDetector,
        ledger_entries: Sequence[LedgerEntry],
        preceding: Sequence[StagedRecord],
        categories: list[str],
    ) -> StagedRecord:
        normalized = self.engine.normalize_description(normalized, rules)
        suggestion = self.engine.classify(normalized, rules)
        suggestion = _prefer(
            suggestion, self.history.suggest(owner, normalized, ledger_entries)
        )
        suggestion = self._consult_oracle(owner, normalized, suggestion, categories)
        verdict = detector.inspect(owner, normalized, ledger_entries, preceding)
        canonical = verdict.canonical
        return record.model_copy(
            update={
                "normalized": normalized,
                "suggestion": suggestion,
                "is_duplicate": verdict.is_duplicate,
                "duplicate_confidence": verdict.confidence,
                "duplicate_of": canonical.reference if canonical else None,
                "duplicate_matches": verdict.matches,
                "warnings": self.engine.validate_amount(normalized, rules),
            }
        )

    def _consult_oracle(
        self,
        owner: str,
        normalized: NormalizedRecord,
        suggestion: Suggestion,
        categories: list[str],
    ) -> Suggestion:
        if self.oracle is None or suggestion.confidence >= self.settings.oracle.consult_below:
            return suggestion
        opinion = self.oracle.suggest(
            OracleRequest(
                description=normalized.description,
                magnitude=normalized.magnitude,
                direction=normalized.direction,
                candidate_categories=categories,
            )
        )
        if opinion is None:
            return suggestion
        if opinion.category is None or not self.ledger.has_category(owner, opinion.category):
            logger.info("Ignoring oracle category %r unknown to %s", opinion.category, owner)
            return suggestion
        if opinion.account is not None and not self.ledger.has_account(owner, opinion.account):
            opinion = opinion.model_copy(update={"account": None})
        return _prefer(suggestion, opinion)


def _prefer(current: Suggestion, challenger: Suggestion | None) -> Suggestion:
    """Keep ``current`` unless ``challenger`` is strictly more confident."""
    if challenger is None or challenger.confidence <= current.confidence:
        return current
    return challenger.model_copy(
        update={"explanations": [*challenger.explanations, *current.explanations]}
    )


__all__ = ["ImportPipeline"]
