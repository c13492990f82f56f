"""
Domain exceptions for the order lifecycle.

Services raise these; the API layer maps them to HTTP responses using
``status_code``. Every error carries a human readable ``message`` and a
``details`` dict naming what failed (never another party's private data).
"""

from typing import Dict, Optional


class OrderFlowError(Exception):
    """Base exception for order lifecycle errors."""
    status_code: int = 400

    def __init__(self, message: str, details: Optional[Dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(OrderFlowError):
    """Malformed input or a totals mismatch. Rejected before any write."""
    status_code = 400


class PermissionDeniedError(OrderFlowError):
    """The caller's role may not perform this operation."""
    status_code = 403


class NotFoundError(OrderFlowError):
    """Unknown order number, or an order the caller may not see."""
    status_code = 404


class ConflictError(OrderFlowError):
    """The order changed between read and write. Retry with fresh state."""
    status_code = 409


class PreconditionError(OrderFlowError):
    """The transition is not allowed from the current state. State unchanged."""
    status_code = 422


class PaymentNotVerifiedError(PreconditionError):
    """Fulfillment attempted before the payment was completed."""


class PayoutFailedError(OrderFlowError):
    """The seller payout dependency is missing or failed. Flagged for retry."""
    status_code = 424
