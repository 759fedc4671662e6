"""Typed schemas for import sessions, staged records and review feedback."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import Field

from .base import Direction, FrozenModel, SourceKind

_Date = date


class SessionState(str, Enum):
    """Lifecycle state for an import session."""

    UPLOADING = "uploading"
    PARSING = "parsing"
    PROCESSING = "processing"
    ENRICHING = "enriching"
    COMPLETED = "completed"
    FINALIZED = "finalized"
    ERROR = "error"


class ProcessingStatus(str, Enum):
    """Per-record outcome of normalisation."""

    PENDING = "pending"
    PROCESSED = "processed"
    ERROR = "error"


class ReviewStatus(str, Enum):
    """Review state of a staged record."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    OVERRIDDEN = "overridden"


class SessionCounters(FrozenModel):
    """Row counters reported by a pipeline stage."""

    total_rows: int = Field(default=0, ge=0)
    processed_rows: int = Field(default=0, ge=0)
    successful_rows: int = Field(default=0, ge=0)
    error_rows: int = Field(default=0, ge=0)


class ImportSession(FrozenModel):
    """One upload or paste and its progress through the pipeline."""

    id: str
    owner: str
    source_kind: SourceKind
    file_name: Optional[str] = None
    file_format: str
    state: SessionState
    total_rows: int = 0
    processed_rows: int = 0
    successful_rows: int = 0
    error_rows: int = 0
    error_message: Optional[str] = None
    processing_time_ms: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    @property
    def counters(self) -> SessionCounters:
        return SessionCounters(
            total_rows=self.total_rows,
            processed_rows=self.processed_rows,
            successful_rows=self.successful_rows,
            error_rows=self.error_rows,
        )


class RawRecord(FrozenModel):
    """A decoded row before normalisation.

    ``fields`` uses the canonical keys ``date``, ``description``, ``amount``
    and ``type``; ``original`` keeps the row as it appeared in the source.
    ``error`` is set when the decoder could not read the row at all.
    """

    line: int
    fields: dict[str, str] = Field(default_factory=dict)
    original: dict[str, str] = Field(default_factory=dict)
    error: Optional[str] = None


class NormalizedRecord(FrozenModel):
    """Canonical transaction tuple produced by the normaliser."""

    date: _Date
    description: str
    description_clean: str
    magnitude: float = Field(ge=0.0)
    direction: Direction


class Suggestion(FrozenModel):
    """Suggested category/account for a staged record."""

    category: Optional[str] = None
    account: Optional[str] = None
    direction: Optional[Direction] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    source: Literal["rule", "history", "oracle", "none"] = "none"
    rule_id: Optional[int] = None
    explanations: list[str] = Field(default_factory=list)


class DuplicateMatch(FrozenModel):
    """A single existing record a candidate resembles."""

    kind: Literal["ledger", "staged"]
    reference: str
    date: _Date
    magnitude: float
    description: str
    similarity: float = Field(ge=0.0, le=1.0)


class StagedRecord(FrozenModel):
    """A candidate transaction held for review before commit."""

    session_id: str
    sequence: int
    raw: dict[str, str] = Field(default_factory=dict)
    normalized: Optional[NormalizedRecord] = None
    status: ProcessingStatus = ProcessingStatus.PENDING
    error_message: Optional[str] = None
    suggestion: Optional[Suggestion] = None
    is_duplicate: bool = False
    duplicate_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    duplicate_of: Optional[str] = None
    duplicate_matches: list[DuplicateMatch] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    review_status: ReviewStatus = ReviewStatus.PENDING
    user_category: Optional[str] = None
    user_account: Optional[str] = None
    reviewed_at: Optional[datetime] = None


class CreateUploadSessionRequest(FrozenModel):
    """Request body for submitting file content."""

    owner: str
    file_name: str
    file_format: str
    content: str


class CreatePasteSessionRequest(FrozenModel):
    """Request body for submitting pasted text."""

    owner: str
    text: str


class StagedRecordsResponse(FrozenModel):
    """Collection response for staged record listing."""

    session_id: str
    records: list[StagedRecord]


class FeedbackChoice(FrozenModel):
    """What the reviewer decided for one staged record."""

    accepted: bool
    category: Optional[str] = None
    account: Optional[str] = None


class FeedbackRequest(FrozenModel):
    """Body for submitting feedback on a staged record."""

    choice: FeedbackChoice
    create_rule: bool = False


class FeedbackEvent(FrozenModel):
    """A recorded review decision."""

    id: int
    session_id: str
    sequence: int
    owner: str
    rule_id: Optional[int] = None
    accepted: bool
    category: Optional[str] = None
    account: Optional[str] = None
    create_rule: bool = False
    created_rule_id: Optional[int] = None
    created_at: datetime


class FeedbackResponse(FrozenModel):
    """Result of a feedback submission."""

    record: StagedRecord
    event: FeedbackEvent
    repeated: bool = False


class ApprovedRecord(FrozenModel):
    """A staged record approved for commit, with optional field overrides.

    Fields left unset fall back to the staged record. ``category`` and
    ``account`` may be set explicitly to ``None``.
    """

    sequence: int
    date: Optional[_Date] = None
    description: Optional[str] = None
    magnitude: Optional[float] = Field(default=None, ge=0.0)
    direction: Optional[Direction] = None
    category: Optional[str] = None
    account: Optional[str] = None


class FinalizeRequest(FrozenModel):
    """Body for finalising a completed session."""

    records: list[ApprovedRecord]


class RecordRejection(FrozenModel):
    """An approved record that failed validation."""

    sequence: int
    reason: str


class FinalizeResult(FrozenModel):
    """Summary returned after a finalise call."""

    session: ImportSession
    committed: list[int] = Field(default_factory=list)
    ledger_entry_ids: list[str] = Field(default_factory=list)
    rejected: list[RecordRejection] = Field(default_factory=list)


class DeleteSessionResponse(FrozenModel):
    """Response for session deletion."""

    session_id: str
    deleted: bool


__all__ = [
    "ApprovedRecord",
    "CreatePasteSessionRequest",
    "CreateUploadSessionRequest",
    "DeleteSessionResponse",
    "DuplicateMatch",
    "FeedbackChoice",
    "FeedbackEvent",
    "FeedbackRequest",
    "FeedbackResponse",
    "FinalizeRequest",
    "FinalizeResult",
    "ImportSession",
    "NormalizedRecord",
    "ProcessingStatus",
    "RawRecord",
    "RecordRejection",
    "ReviewStatus",
    "SessionCounters",
    "SessionState",
    "StagedRecord",
    "StagedRecordsResponse",
    "Suggestion",
]
