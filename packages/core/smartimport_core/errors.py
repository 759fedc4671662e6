"""Error taxonomy for the import pipeline."""

from __future__ import annotations


class SmartImportError(Exception):
    """Base class for all pipeline errors."""


class DecodeError(SmartImportError):
    """A row, or a whole source, could not be decoded."""


class RecordValidationError(SmartImportError):
    """A record lacks a field required for normalisation or commit."""


class OracleUnavailable(SmartImportError):
    """The optional text classification service failed or timed out."""


class StorageFailure(SmartImportError):
    """The ledger store rejected a batch write."""


class SessionNotFound(SmartImportError):
    """No session exists with the given id."""


class RecordNotFound(SmartImportError):
    """No staged record exists with the given sequence."""


class InvalidTransition(SmartImportError):
    """The requested state change is not allowed from the current state."""


class SessionTerminated(InvalidTransition):
    """The session reached a terminal state while a stage was in flight."""


class RuleNotFound(SmartImportError):
    """No rule exists with the given id."""


class RuleImmutable(SmartImportError):
    """System rules cannot be edited or deleted."""


__all__ = [
    "DecodeError",
    "InvalidTransition",
    "OracleUnavailable",
    "RecordNotFound",
    "RecordValidationError",
    "RuleImmutable",
    "RuleNotFound",
    "SessionNotFound",
    "SessionTerminated",
    "SmartImportError",
    "StorageFailure",
]
