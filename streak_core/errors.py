"""Error taxonomy shared by the pure core and the network boundary.

The pure core never raises for rule violations: it returns an ``EngineError``
describing what was rejected. The boundary wraps the same value in
``CompetitionServiceError`` so callers can branch on ``kind`` either way.
"""
from __future__ import annotations

from dataclasses import dataclass

INVALID_TRANSITION = "invalid_transition"
PERMISSION_DENIED = "permission_denied"
INSUFFICIENT_PARTICIPANTS = "insufficient_participants"
ALREADY_PERFORMED_TODAY = "already_performed_today"
GOAL_NOT_MET = "goal_not_met"
TARGET_ALREADY_DONE = "target_already_done"
NOT_FOUND = "not_found"
UNAUTHORIZED = "unauthorized"
DECODE_FAILURE = "decode_failure"
ALREADY_INVITED = "already_invited"
NOT_PENDING = "not_pending"
STALE_VERSION = "stale_version"
INVALID_REQUEST = "invalid_request"

_STATUS_CODES = {
    INVALID_TRANSITION: 409,
    PERMISSION_DENIED: 403,
    INSUFFICIENT_PARTICIPANTS: 409,
    ALREADY_PERFORMED_TODAY: 429,
    GOAL_NOT_MET: 409,
    TARGET_ALREADY_DONE: 409,
    NOT_FOUND: 404,
    UNAUTHORIZED: 401,
    DECODE_FAILURE: 422,
    ALREADY_INVITED: 409,
    NOT_PENDING: 409,
    STALE_VERSION: 409,
    INVALID_REQUEST: 400,
}


@dataclass(frozen=True)
class EngineError:
    """Represents a rejected operation (pure core, no transport)."""

    kind: str
    message: str | None = None
    status_code: int | None = None

    @classmethod
    def of(cls, kind: str, message: str | None = None) -> "EngineError":
        return cls(kind=kind, message=message, status_code=_STATUS_CODES.get(kind))


class CompetitionServiceError(Exception):
    """Raised at the boundary when a backend call or local precheck fails."""

    def __init__(self, error: EngineError):
        super().__init__(error.message or error.kind)
        self.error = error

    @property
    def kind(self) -> str:
        return self.error.kind

    @classmethod
    def of(cls, kind: str, message: str | None = None) -> "CompetitionServiceError":
        return cls(EngineError.of(kind, message))


class TransientBackendError(Exception):
    """Network-level failure that is safe to retry with the same request id."""


class DecodeFailure(ValueError):
    """Fetched or persisted competition state could not be decoded."""

    kind = DECODE_FAILURE
