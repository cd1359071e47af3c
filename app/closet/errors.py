"""
Typed failures raised by the core. Store-level exceptions never leave a store
unwrapped; the HTTP layer maps each class to a status code.
"""
from __future__ import annotations


class ClosetError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str = "", **details: object) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_dict(self) -> dict:
        out: dict = {"error": self.message, "code": self.code}
        if self.details:
            out["details"] = {k: v for k, v in self.details.items() if v is not None}
        return out


class InvalidStateTransition(ClosetError):
    """Decision on a listing that is not PENDING_MODERATION."""

    status_code = 409
    code = "invalid_state_transition"


class Forbidden(ClosetError):
    status_code = 403
    code = "forbidden"


class InvalidOperation(ClosetError):
    """Self-follow, duplicate follow, unfollowing a stranger, bad input."""

    status_code = 400
    code = "invalid_operation"


class NotFound(ClosetError):
    status_code = 404
    code = "not_found"


class PersistenceError(ClosetError):
    status_code = 503
    code = "persistence_error"


class FanOutPartialFailure(ClosetError):
    """
    Some audience members were not notified after every attempt.
    Never surfaced to the user whose action triggered the fan-out.
    """

    status_code = 500
    code = "fanout_partial_failure"

    def __init__(self, message: str, *, undelivered: list[int] | None = None, **details: object) -> None:
        super().__init__(message, **details)
        self.undelivered = list(undelivered or [])
