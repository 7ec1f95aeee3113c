from __future__ import annotations

from typing import Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .rate_limit import RateLimitDecision


class EventGateError(Exception):
    """Base for errors that map onto a client-visible status code."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, *, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(EventGateError):
    status_code = 400
    code = "validation_error"


class NotFoundError(EventGateError):
    status_code = 404
    code = "not_found"


class RateLimitExceeded(EventGateError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, decision: "RateLimitDecision") -> None:
        super().__init__(message)
        self.decision = decision


class InternalError(EventGateError):
    status_code = 500
    code = "internal_error"
