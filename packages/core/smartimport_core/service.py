"""Entry points used by the API layer."""

from __future__ import annotations

import logging
from typing import Mapping

from smartimport_schemas import (
    CreatePasteSessionRequest,
    CreateUploadSessionRequest,
    DeleteSessionResponse,
    FeedbackRequest,
    FeedbackResponse,
    FinalizeRequest,
    FinalizeResult,
    ImportSession,
    Rule,
    RuleCreateRequest,
    RuleKind,
    RuleUpdateRequest,
    StagedRecord,
)

from .engine import RuleEngine
from .finalizer import Finalizer
from .learner import FeedbackLearner
from .ledger import LedgerStore, SqliteLedgerStore
from .oracle import BestEffortOracle, HttpTextClassifier, TextClassifier
from .parsers import FileDecoder
from .pipeline import ImportPipeline
from .rules import RuleStore
from .sessions import SessionStore
from .settings import Settings
from .workspace import database_path, ledger_path

logger = logging.getLogger(__name__)


class SmartImportService:
    """Wire the stores and stages together behind the public operations.

    ``create_upload_session``, ``create_paste_session``, ``submit_feedback``
    and ``finalize`` mutate state; the remaining session calls only read.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        ledger: LedgerStore | None = None,
        classifier: TextClassifier | None = None,
        decoders: Mapping[str, FileDecoder] | None = None,
    ) -> None:
        self.settings = settings or Settings()
        storage = self.settings.storage
        db_path = database_path(storage)
        self.sessions = SessionStore(db_path, timeout=storage.busy_timeout_seconds)
        self.rules = RuleStore(
            db_path,
            timeout=storage.busy_timeout_seconds,
            counter_timeout=storage.counter_timeout_seconds,
        )
        self.rules.seed_system_rules()
        self.ledger = ledger or SqliteLedgerStore(
            ledger_path(storage), timeout=storage.busy_timeout_seconds
        )
        self.oracle = self._build_oracle(classifier)
        self.engine = RuleEngine(self.rules)
        self.learner = FeedbackLearner(
            db_path,
            self.sessions,
            self.rules,
            settings=self.settings.learning,
            timeout=storage.busy_timeout_seconds,
        )
        self.finalizer = Finalizer(self.sessions, self.ledger)
        self.pipeline = ImportPipeline(
            self.sessions,
            self.rules,
            self.engine,
            self.ledger,
            self.settings,
            oracle=self.oracle,
            decoders=decoders,
        )

    def _build_oracle(self, classifier: TextClassifier | None) -> BestEffortOracle | None:
        oracle_settings = self.settings.oracle
        if classifier is None and oracle_settings.url:
            classifier = HttpTextClassifier(
                oracle_settings.url,
                timeout_seconds=oracle_settings.timeout_seconds,
                max_concurrent=oracle_settings.max_concurrent,
            )
        if classifier is None:
            logger.info("No text classifier configured; rules only")
            return None
        return BestEffortOracle(
            classifier,
            timeout_seconds=oracle_settings.timeout_seconds,
            max_workers=oracle_settings.max_concurrent,
        )

    # Sessions

    def create_upload_session(self, request: CreateUploadSessionRequest) -> ImportSession:
        session = self.sessions.create_session(
            request.owner, "file", request.file_format, file_name=request.file_name
        )
        self.pipeline.submit(session, request.content)
        return session

    def create_paste_session(self, request: CreatePasteSessionRequest) -> ImportSession:
        session = self.sessions.create_session(request.owner, "paste", "paste")
        self.pipeline.submit(session, request.text)
        return session

    def get_session(self, session_id: str) -> ImportSession:
        return self.sessions.get_session(session_id)

    def list_records(self, session_id: str) -> list[StagedRecord]:
        return self.sessions.list_records(session_id)

    def submit_feedback(
        self, session_id: str, sequence: int, request: FeedbackRequest
    ) -> FeedbackResponse:
        return self.learner.submit(
            session_id, sequence, request.choice, create_rule=request.create_rule
        )

    def finalize(self, session_id: str, request: FinalizeRequest) -> FinalizeResult:
        return self.finalizer.finalize(session_id, request.records)

    def delete_session(self, session_id: str) -> DeleteSessionResponse:
        self.pipeline.cancel(session_id)
        deleted = self.sessions.delete_session(session_id)
        return DeleteSessionResponse(session_id=session_id, deleted=deleted)

    def wait(self, session_id: str, timeout: float | None = None) -> bool:
        return self.pipeline.wait(session_id, timeout)

    # Rules

    def list_rules(self, owner: str | None = None, kind: RuleKind | None = None) -> list[Rule]:
        return self.rules.list_rules(owner, kind=kind)

    def create_rule(self, request: RuleCreateRequest) -> Rule:
        rule, _ = self.rules.insert_rule(request)
        return rule

    def update_rule(self, rule_id: int, request: RuleUpdateRequest) -> Rule:
        return self.rules.update_rule(rule_id, request)

    def delete_rule(self, rule_id: int) -> None:
        self.rules.delete_rule(rule_id)

    def close(self) -> None:
        self.pipeline.close()
        if self.oracle is not None:
            self.oracle.close()


__all__ = ["SmartImportService"]
