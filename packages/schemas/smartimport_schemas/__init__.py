"""Shared Pydantic schemas for Smart Import."""

from .base import Direction, FrozenModel, SourceKind
from .imports import (
    ApprovedRecord,
    CreatePasteSessionRequest,
    CreateUploadSessionRequest,
    DeleteSessionResponse,
    DuplicateMatch,
    FeedbackChoice,
    FeedbackEvent,
    FeedbackRequest,
    FeedbackResponse,
    FinalizeRequest,
    FinalizeResult,
    ImportSession,
    NormalizedRecord,
    ProcessingStatus,
    RawRecord,
    RecordRejection,
    ReviewStatus,
    SessionCounters,
    SessionState,
    StagedRecord,
    StagedRecordsResponse,
    Suggestion,
)
from .ledger import BalanceAdjustment, LedgerEntry, OracleRequest
from .rules import (
    AmountRange,
    Rule,
    RuleAction,
    RuleConditions,
    RuleCreateRequest,
    RuleKind,
    RuleListResponse,
    RuleUpdateRequest,
)

__all__ = [
    "AmountRange",
    "ApprovedRecord",
    "BalanceAdjustment",
    "CreatePasteSessionRequest",
    "CreateUploadSessionRequest",
    "DeleteSessionResponse",
    "Direction",
    "DuplicateMatch",
    "FeedbackChoice",
    "FeedbackEvent",
    "FeedbackRequest",
    "FeedbackResponse",
    "FinalizeRequest",
    "FinalizeResult",
    "FrozenModel",
    "ImportSession",
    "LedgerEntry",
    "NormalizedRecord",
    "OracleRequest",
    "ProcessingStatus",
    "RawRecord",
    "RecordRejection",
    "ReviewStatus",
    "Rule",
    "RuleAction",
    "RuleConditions",
    "RuleCreateRequest",
    "RuleKind",
    "RuleListResponse",
    "RuleUpdateRequest",
    "SessionCounters",
    "SessionState",
    "SourceKind",
    "StagedRecord",
    "StagedRecordsResponse",
    "Suggestion",
]
