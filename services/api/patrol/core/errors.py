"""Error taxonomy shared by the patrol services and the HTTP layer.

Every deterministic failure carries a machine-readable ``code`` so devices can
decide between correcting input, resuming an existing session, or giving up.
"""

from __future__ import annotations

from typing import Any


class PatrolError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.details}


class ValidationError(PatrolError):
    """Malformed or missing coordinates / identifiers. Rejected before any state change."""

    status_code = 400
    code = "VALIDATION_ERROR"


class ConflictError(PatrolError):
    """The guard already has a session in progress; the device should resume it."""

    status_code = 409
    code = "SESSION_ALREADY_ACTIVE"


class StateError(PatrolError):
    """The session is not in the state the operation requires. Not retryable."""

    status_code = 409
    code = "SESSION_NOT_ACTIVE"


class SequenceConflictError(PatrolError):
    """Two checkpoints raced for the same sequence number. Safe to retry as is."""

    status_code = 409
    code = "CHECKPOINT_SEQUENCE_CONFLICT"


class NotFoundError(PatrolError):
    status_code = 404
    code = "NOT_FOUND"


class PersistenceError(PatrolError):
    """Storage unavailable. The message stays generic; context goes to the log."""

    status_code = 503
    code = "PERSISTENCE_ERROR"

    def __init__(self, message: str = "Storage unavailable") -> None:
        super().__init__(message)
