"""
Domain Exceptions

Every failure the order, ledger, call and payment services can raise.
Each error carries the HTTP status the API layer answers with, so routes
never translate errors by hand.
"""

from typing import Optional


class BiteClubError(Exception):
    """Base class for all domain errors."""

    status_code: int = 400
    error: str = "error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.__class__.__doc__ or self.error
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.error,
            "detail": self.message,
        }


class InvalidAmount(BiteClubError):
    """Amount must be greater than zero."""
    error = "invalid_amount"


class InvalidRequest(BiteClubError):
    """Request failed validation."""
    error = "invalid_request"


class Forbidden(BiteClubError):
    """Not allowed for this account."""
    status_code = 403
    error = "forbidden"


class InsufficientBalance(BiteClubError):
    """Insufficient credit balance."""
    error = "insufficient_balance"


class NotFound(BiteClubError):
    """Resource not found."""
    status_code = 404
    error = "not_found"


class Conflict(BiteClubError):
    """Operation not allowed in the current state."""
    status_code = 409
    error = "conflict"


class RetryLimitExceeded(BiteClubError):
    """Maximum retry attempts exceeded."""
    status_code = 429
    error = "retry_limit_exceeded"


class CallingDisabled(BiteClubError):
    """Calling disabled for this restaurant."""
    status_code = 409
    error = "calling_disabled"


class NoPhoneNumber(BiteClubError):
    """No phone number configured for restaurant."""
    status_code = 409
    error = "no_phone_number"


class PaymentDeclined(BiteClubError):
    """Payment was not successful."""
    status_code = 402
    error = "payment_declined"


class ExternalServiceUnavailable(BiteClubError):
    """External service unavailable."""
    status_code = 503
    error = "external_service_unavailable"


__all__ = [
    "BiteClubError",
    "InvalidAmount",
    "InvalidRequest",
    "Forbidden",
    "InsufficientBalance",
    "NotFound",
    "Conflict",
    "RetryLimitExceeded",
    "CallingDisabled",
    "NoPhoneNumber",
    "PaymentDeclined",
    "ExternalServiceUnavailable",
]
