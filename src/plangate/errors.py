"""Exception types raised by plangate.

Plan defects are never raised; they are collected into validation results.
The exceptions below cover storage failures and session state conflicts.
"""

from __future__ import annotations


class PlangateError(RuntimeError):
    """Base class for all plangate failures."""


class StorageError(PlangateError):
    """Raised when a document or record cannot be read or written."""


class CorruptDocumentError(StorageError):
    """Raised when a stored JSON document cannot be parsed."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Corrupt document at {path}: {reason}")
        self.path = path
        self.reason = reason


class SessionError(PlangateError):
    """Base class for session lifecycle failures."""


class SessionNotFoundError(SessionError):
    """Raised when a session record does not exist."""

    def __init__(self, project_id: str, feature_id: str) -> None:
        super().__init__(f"Session not found: {project_id}/{feature_id}")
        self.project_id = project_id
        self.feature_id = feature_id


class SessionExistsError(SessionError):
    """Raised when creating a session whose key is already taken."""


class InvalidTransitionError(SessionError):
    """Raised when a stage, backout or resume request is not allowed."""


class VersionConflictError(SessionError):
    """Raised when the caller's view of a session is stale.

    Callers should re-read the session and retry with the fresh
    ``data_version``.
    """

    def __init__(self, session_key: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Version conflict for {session_key}: expected {expected}, found {actual}"
        )
        self.session_key = session_key
        self.expected = expected
        self.actual = actual


class ConfigError(PlangateError):
    """Raised when the configuration file is missing or malformed."""
