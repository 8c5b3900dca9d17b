"""
Error taxonomy for billing event processing.

Every error carries an ErrorKind so the router can decide between
acknowledging, asking for redelivery, or giving up without inspecting
exception types one by one.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """How an error should be surfaced to the event scheduler."""

    VALIDATION = "validation"  # retryable on money-moving events, swallowed otherwise
    NON_FATAL = "non_fatal"  # acknowledge, log for manual reconciliation
    RETRYABLE = "retryable"  # redeliver later
    TERMINAL = "terminal"  # alert, do not redeliver


class BillingError(Exception):
    """Base class for billing errors."""

    kind = ErrorKind.TERMINAL

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.RETRYABLE

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message, "kind": self.kind.value}
        if self.details:
            body["details"] = self.details
        return body


class UnknownPriceIdError(BillingError):
    """Raised when a price id is not in the configured catalog."""

    kind = ErrorKind.VALIDATION

    def __init__(self, price_id: Optional[str], reason: str = "not in catalog"):
        super().__init__(
            code="unknown_price_id",
            message=f"Unknown price id {price_id!r}: {reason}",
            details={"price_id": price_id, "reason": reason},
        )
        self.price_id = price_id


class NoResolvablePriceError(BillingError):
    """Raised when no invoice line carries a price identifier."""

    kind = ErrorKind.VALIDATION

    def __init__(self, line_count: int):
        super().__init__(
            code="no_resolvable_price",
            message=f"No line among {line_count} carries a price id",
            details={"line_count": line_count},
        )


class InsufficientCorrelationError(BillingError):
    """Raised when a refund cannot be traced to any credit grant."""

    kind = ErrorKind.NON_FATAL

    def __init__(self, candidates: list[str]):
        super().__init__(
            code="insufficient_correlation",
            message=f"No credit grant found for refund candidates {candidates}",
            details={"candidates": candidates},
        )
        self.candidates = candidates


class ProfileNotFoundError(BillingError):
    """Raised when a customer or user id has no account row."""

    kind = ErrorKind.RETRYABLE

    def __init__(self, lookup: str, value: Optional[str]):
        super().__init__(
            code="profile_not_found",
            message=f"No account for {lookup}={value}",
            details={lookup: value},
        )


class TransientStoreError(BillingError):
    """Raised on throttling, lost claims or exhausted write conflicts."""

    kind = ErrorKind.RETRYABLE

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(code="transient_store_error", message=message, details=details)


class InvalidEventError(BillingError):
    """Raised when a payload is missing fields its event type requires."""

    kind = ErrorKind.TERMINAL

    def __init__(self, event_type: str, message: str):
        super().__init__(
            code="invalid_event",
            message=f"{event_type}: {message}",
            details={"event_type": event_type},
        )
