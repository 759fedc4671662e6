"""Core pipeline for Smart Import."""

from .duplicates import DuplicateDetector, DuplicatePolicy, description_similarity
from .engine import RuleEngine, RuleMatch
from .errors import (
    DecodeError,
    InvalidTransition,
    OracleUnavailable,
    RecordNotFound,
    RecordValidationError,
    RuleImmutable,
    RuleNotFound,
    SessionNotFound,
    SessionTerminated,
    SmartImportError,
    StorageFailure,
)
from .finalizer import Finalizer
from .history import HistoryMatcher
from .learner import FeedbackLearner
from .ledger import LedgerStore, SqliteLedgerStore
from .normalizer import normalize
from .oracle import BestEffortOracle, HttpTextClassifier, TextClassifier
from .parsers import CsvDecoder, FileDecoder, PastedTextDecoder, clean_description, decoder_for
from .pipeline import ImportPipeline
from .rules import RuleStore, load_seed_rules
from .service import SmartImportService
from .sessions import TRANSITIONS, SessionStore
from .settings import Settings, load_settings
from .workspace import data_root, database_path, ledger_path

__all__ = [
    "BestEffortOracle",
    "CsvDecoder",
    "DecodeError",
    "DuplicateDetector",
    "DuplicatePolicy",
    "FeedbackLearner",
    "FileDecoder",
    "Finalizer",
    "HistoryMatcher",
    "HttpTextClassifier",
    "ImportPipeline",
    "InvalidTransition",
    "LedgerStore",
    "OracleUnavailable",
    "PastedTextDecoder",
    "RecordNotFound",
    "RecordValidationError",
    "RuleEngine",
    "RuleImmutable",
    "RuleMatch",
    "RuleNotFound",
    "RuleStore",
    "SessionNotFound",
    "SessionStore",
    "SessionTerminated",
    "Settings",
    "SmartImportError",
    "SmartImportService",
    "SqliteLedgerStore",
    "StorageFailure",
    "TRANSITIONS",
    "TextClassifier",
    "clean_description",
    "data_root",
    "database_path",
    "decoder_for",
    "description_similarity",
    "ledger_path",
    "load_seed_rules",
    "load_settings",
    "normalize",
]
