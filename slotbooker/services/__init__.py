"""
Service layer that orchestrates storage, calendar adapters and domain logic.
"""

from .availability import AvailabilityResolver, BusySnapshot, IntervalCheck, SyncFailurePolicy
from .bookings import BookingService
from .conflicts import ConflictDetector

__all__ = [
    "AvailabilityResolver",
    "BookingService",
    "BusySnapshot",
    "ConflictDetector",
    "IntervalCheck",
    "SyncFailurePolicy",
]
