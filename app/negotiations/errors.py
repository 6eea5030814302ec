"""Errors raised by the negotiation engine.

Every error carries the negotiation's last known consistent record (when one
exists) so the caller can decide whether to retry or hand off to a human.
The router maps each kind to an HTTP status in app.main.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from app.negotiations.models import Negotiation


class NegotiationError(Exception):
    """Base class. `code` is the machine-readable kind returned to clients."""

    code = "negotiation_error"

    def __init__(self, message: str, negotiation: Optional["Negotiation"] = None):
        super().__init__(message)
        self.message = message
        self.negotiation = negotiation


class InvalidTransition(NegotiationError):
    """Event not valid for the current status. The record was not changed."""

    code = "invalid_transition"


class ConcurrencyConflict(NegotiationError):
    """Stored version no longer matches. Re-read, then retry the same event."""

    code = "concurrency_conflict"


class ValidationError(NegotiationError):
    """Malformed amount or missing field. Rejected before any side effect."""

    code = "validation_error"


class NotFound(NegotiationError):
    code = "not_found"


class AdvisorUnavailable(NegotiationError):
    """Strategy advisor transport/model failure, or an unusable completion."""

    code = "advisor_unavailable"


class DeliveryFailed(NegotiationError):
    """Notifier could not confirm the message reached the broker channel."""

    code = "delivery_failed"


class BookingFailed(NegotiationError):
    code = "booking_failed"


# External dependency failures: safe for the caller to retry with backoff.
RETRYABLE_ERRORS = (AdvisorUnavailable, DeliveryFailed, BookingFailed)
