"""
Domain-specific exception hierarchy for the scheduling engine.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import TimeInterval


class SchedulingError(Exception):
    """Base class for all application-level errors."""


class ValidationError(SchedulingError, ValueError):
    """Raised for malformed intervals, missing fields or invalid requests."""


class NotFoundError(SchedulingError, LookupError):
    """Raised when a referenced booking, listing or connection does not exist."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class SlotUnavailableError(SchedulingError):
    """Raised when a requested interval is no longer free at commit time."""

    def __init__(self, reason: str, interval: Optional["TimeInterval"] = None):
        message = reason if interval is None else f"{interval}: {reason}"
        super().__init__(message)
        self.reason = reason
        self.interval = interval


class TransitionError(SchedulingError):
    """Raised when a booking status transition is not allowed."""

    def __init__(self, booking_id: str, current: str, target: str, detail: str = ""):
        message = f"Booking {booking_id} cannot move from {current} to {target}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.booking_id = booking_id
        self.current = current
        self.target = target


class ConflictError(SchedulingError):
    """Raised by storage when an insert would overlap a live booking."""

    def __init__(self, provider_id: str, conflicting_booking_id: str):
        super().__init__(
            f"Provider {provider_id} already has live booking {conflicting_booking_id} "
            "in the requested interval"
        )
        self.provider_id = provider_id
        self.conflicting_booking_id = conflicting_booking_id


class SyncError(SchedulingError):
    """Raised when one external calendar connection fails to refresh or fetch."""

    def __init__(self, connection_id: str, reason: str, is_primary: bool = False):
        super().__init__(f"Calendar connection {connection_id} failed: {reason}")
        self.connection_id = connection_id
        self.reason = reason
        self.is_primary = is_primary


class CalendarAPIError(SchedulingError):
    """Raised when calendar data cannot be fetched or parsed."""


class AuthenticationError(SchedulingError):
    """Raised when authentication or token handling fails."""
