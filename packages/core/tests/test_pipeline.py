"""End-to-end tests for the background import pipeline."""

from __future__ import annotations

import threading
import time
from datetime import date
from typing import Callable

from smartimport_core import OracleUnavailable, SmartImportService
from smartimport_core.settings import OracleSettings, Settings
from smartimport_schemas import (
    ApprovedRecord,
    CreatePasteSessionRequest,
    CreateUploadSessionRequest,
    FinalizeRequest,
    ImportSession,
    OracleRequest,
    ProcessingStatus,
    RawRecord,
    SessionState,
    Suggestion,
)

Paste = Callable[..., ImportSession]
Upload = Callable[..., ImportSession]


class FixedClassifier:
    def __init__(self, category: str, confidence: float) -> None:
        self.category = category
        self.confidence = confidence
        self.calls: list[OracleRequest] = []

    def classify(self, request: OracleRequest) -> Suggestion:
        self.calls.append(request)
        return Suggestion(
            category=self.category,
            direction=request.direction,
            confidence=self.confidence,
            source="oracle",
        )


class SlowClassifier:
    def classify(self, request: OracleRequest) -> Suggestion:
        time.sleep(1.0)
        return Suggestion(category="Outros", confidence=1.0, source="oracle")


class BrokenClassifier:
    def classify(self, request: OracleRequest) -> Suggestion:
        raise OracleUnavailable("service down")


class GatedDecoder:
    """Decoder that blocks until the test releases it."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()

    def decode(self, content: str, *, received_on: date) -> list[RawRecord]:
        self.started.set()
        self.release.wait(timeout=10)
        return [
            RawRecord(
                line=1,
                fields={"date": "2024-03-01", "description": "Galp", "amount": "-50"},
            )
        ]


def _oracle_service(settings: Settings, classifier: object) -> SmartImportService:
    tuned = settings.model_copy(
        update={"oracle": OracleSettings(timeout_seconds=0.2, consult_below=0.9)}
    )
    return SmartImportService(tuned, classifier=classifier)


def _paste_with(service: SmartImportService, text: str) -> ImportSession:
    session = service.create_paste_session(CreatePasteSessionRequest(owner="ana", text=text))
    assert service.wait(session.id, timeout=10)
    return service.get_session(session.id)


def test_pasted_text_is_classified_by_seeded_rules(
    service: SmartImportService, paste: Paste
) -> None:
    session = paste("Supermercado Continente 45.67\nSalario 2500")

    assert session.state == SessionState.COMPLETED
    assert session.source_kind == "paste"
    assert session.total_rows == session.processed_rows == session.successful_rows == 2
    assert session.processing_time_ms is not None
    groceries, salary = service.list_records(session.id)
    assert groceries.suggestion is not None and salary.suggestion is not None
    assert groceries.suggestion.category == "Alimentação"
    assert groceries.suggestion.direction == "expense"
    assert groceries.suggestion.confidence >= 0.9
    assert salary.suggestion.category == "Salário"
    assert salary.suggestion.direction == "income"
    assert not groceries.is_duplicate and not salary.is_duplicate


def test_create_returns_before_processing(service: SmartImportService) -> None:
    session = service.create_paste_session(
        CreatePasteSessionRequest(owner="ana", text="Galp 50")
    )

    assert session.state == SessionState.UPLOADING
    assert service.wait(session.id, timeout=10)


def test_bad_rows_are_counted_not_dropped(service: SmartImportService, paste: Paste) -> None:
    session = paste("Galp 50\nsem valor\nCafe 2,10")

    assert session.state == SessionState.COMPLETED
    assert (session.total_rows, session.processed_rows) == (3, 3)
    assert (session.successful_rows, session.error_rows) == (2, 1)
    broken = service.list_records(session.id)[1]
    assert broken.status == ProcessingStatus.ERROR
    assert broken.error_message == "Line does not end with an amount"


def test_non_finite_amounts_become_error_rows(
    service: SmartImportService, upload: Upload
) -> None:
    session = upload(
        "date,description,amount\n"
        "2024-01-05,Galp,-40\n"
        "2024-01-06,Weird row,nan\n"
        "2024-01-07,Other row,inf\n"
    )

    assert session.state == SessionState.COMPLETED
    assert (session.successful_rows, session.error_rows) == (1, 2)
    records = service.list_records(session.id)
    assert [record.status for record in records] == [
        ProcessingStatus.PROCESSED,
        ProcessingStatus.ERROR,
        ProcessingStatus.ERROR,
    ]
    assert records[1].error_message == "Unparseable amount: 'nan'"


def test_empty_paste_completes_with_no_rows(paste: Paste) -> None:
    session = paste("   \n")

    assert session.state == SessionState.COMPLETED
    assert session.total_rows == 0


def test_unsupported_format_moves_session_to_error(upload: Upload) -> None:
    session = upload("binary", file_format="xlsx")

    assert session.state == SessionState.ERROR
    assert session.error_message is not None
    assert "xlsx" in session.error_message


def test_amount_warnings_are_attached(service: SmartImportService, paste: Paste) -> None:
    session = paste("Carro novo 150000")

    record = service.list_records(session.id)[0]
    assert record.status == ProcessingStatus.PROCESSED
    assert record.warnings and "outside expected range" in record.warnings[0]


def test_same_session_repeats_are_flagged_against_the_earlier_row(
    service: SmartImportService, paste: Paste
) -> None:
    session = paste("SUPERMARKET X 45.67\nSUPERMARKET X LISBOA 45.68\nSUPERMARKET X 200.00")

    first, second, third = service.list_records(session.id)
    assert not first.is_duplicate
    assert second.is_duplicate
    assert second.duplicate_of == "1"
    assert second.duplicate_confidence > 0
    assert not third.is_duplicate


def test_finalized_entries_flag_later_imports(service: SmartImportService, paste: Paste) -> None:
    first = paste("2024-03-01 Supermercado Continente 45.67")
    result = service.finalize(first.id, FinalizeRequest(records=[ApprovedRecord(sequence=1)]))

    second = paste("2024-03-03 Supermercado Continente Lisboa 45.68")

    record = service.list_records(second.id)[0]
    assert record.is_duplicate
    assert record.duplicate_of == result.ledger_entry_ids[0]
    assert record.duplicate_matches[0].kind == "ledger"


def test_past_entries_suggest_a_category_when_no_rule_matches(
    service: SmartImportService, paste: Paste
) -> None:
    history = paste("2024-01-10 Oficina Pereira 80\n2024-02-12 Oficina Pereira 95")
    service.finalize(
        history.id,
        FinalizeRequest(
            records=[
                ApprovedRecord(sequence=1, category="Transporte"),
                ApprovedRecord(sequence=2, category="Transporte"),
            ]
        ),
    )

    session = paste("2024-03-15 Oficina Pereira 90\n2024-03-15 Supermercado Continente 90")

    workshop, groceries = service.list_records(session.id)
    assert workshop.suggestion is not None and groceries.suggestion is not None
    assert workshop.suggestion.source == "history"
    assert workshop.suggestion.category == "Transporte"
    assert workshop.suggestion.confidence == 0.5
    assert not workshop.is_duplicate
    assert groceries.suggestion.source == "rule"


def test_rule_verdict_beats_weaker_history(service: SmartImportService, paste: Paste) -> None:
    history = paste("2024-01-10 Supermercado Continente 40\n2024-02-12 Supermercado Continente 42")
    service.finalize(
        history.id,
        FinalizeRequest(
            records=[
                ApprovedRecord(sequence=1, category="Outros"),
                ApprovedRecord(sequence=2, category="Outros"),
            ]
        ),
    )

    session = paste("2024-03-15 Supermercado Continente 41")

    suggestion = service.list_records(session.id)[0].suggestion
    assert suggestion is not None
    assert suggestion.source == "rule"
    assert suggestion.category == "Alimentação"


def test_oracle_fills_in_unclassified_records(settings: Settings) -> None:
    classifier = FixedClassifier("Entretenimento", 0.7)
    service = _oracle_service(settings, classifier)
    try:
        session = _paste_with(service, "Cinema NOS 7.50\nSupermercado Continente 45.67")
        cinema, groceries = service.list_records(session.id)
    finally:
        service.close()

    assert cinema.suggestion is not None and groceries.suggestion is not None
    assert cinema.suggestion.source == "oracle"
    assert cinema.suggestion.category == "Entretenimento"
    assert groceries.suggestion.source == "rule"
    assert [call.description for call in classifier.calls] == ["Cinema NOS"]
    assert "Alimentação" in classifier.calls[0].candidate_categories


def test_oracle_categories_unknown_to_the_ledger_are_ignored(settings: Settings) -> None:
    service = _oracle_service(settings, FixedClassifier("Astrologia", 0.7))
    try:
        session = _paste_with(service, "Cinema NOS 7.50")
        record = service.list_records(session.id)[0]
    finally:
        service.close()

    assert session.state == SessionState.COMPLETED
    assert record.suggestion is not None
    assert record.suggestion.source == "none"
    assert record.suggestion.category is None


def test_oracle_timeout_degrades_to_rule_verdict(settings: Settings) -> None:
    service = _oracle_service(settings, SlowClassifier())
    try:
        session = _paste_with(service, "Cinema NOS 7.50")
        record = service.list_records(session.id)[0]
    finally:
        service.close()

    assert session.state == SessionState.COMPLETED
    assert record.suggestion is not None
    assert record.suggestion.source == "none"
    assert record.suggestion.confidence == 0.0


def test_unavailable_oracle_never_fails_the_session(settings: Settings) -> None:
    service = _oracle_service(settings, BrokenClassifier())
    try:
        session = _paste_with(service, "Cinema NOS 7.50\nGalp 50")
    finally:
        service.close()

    assert session.state == SessionState.COMPLETED
    assert session.successful_rows == 2


def test_deleting_a_running_session_stops_its_stages(settings: Settings) -> None:
    decoder = GatedDecoder()
    service = SmartImportService(settings, decoders={"gated": decoder})
    try:
        session = service.create_upload_session(
            CreateUploadSessionRequest(
                owner="ana", file_name="slow.gated", file_format="gated", content="..."
            )
        )
        assert decoder.started.wait(timeout=10)

        deleted = service.delete_session(session.id)
        decoder.release.set()

        assert deleted.deleted is True
        assert service.wait(session.id, timeout=10)
        assert service.sessions.delete_session(session.id) is False
    finally:
        service.close()


def test_session_marked_terminal_mid_run_is_not_overwritten(settings: Settings) -> None:
    decoder = GatedDecoder()
    service = SmartImportService(settings, decoders={"gated": decoder})
    try:
        session = service.create_upload_session(
            CreateUploadSessionRequest(
                owner="ana", file_name="slow.gated", file_format="gated", content="..."
            )
        )
        assert decoder.started.wait(timeout=10)

        service.sessions.fail(session.id, "cancelled by user")
        decoder.release.set()
        assert service.wait(session.id, timeout=10)

        final = service.get_session(session.id)
        assert final.state == SessionState.ERROR
        assert final.error_message == "cancelled by user"
        assert final.total_rows == 0
        assert service.list_records(session.id) == []
    finally:
        service.close()
