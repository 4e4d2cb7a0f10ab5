"""
Domain layer - Pure scheduling logic without external dependencies.
"""

from .exceptions import (
    AuthenticationError,
    CalendarAPIError,
    ConflictError,
    NotFoundError,
    SchedulingError,
    SlotUnavailableError,
    SyncError,
    TransitionError,
    ValidationError,
)
from .intervals import filter_free, merge_intervals, overlaps_any
from .lifecycle import BookingLifecycleManager, Transition
from .models import (
    Actor,
    AvailabilityResult,
    BlockedTime,
    BlockType,
    Booking,
    BookingAction,
    BookingRequest,
    BookingStatus,
    BreakTime,
    BusyInterval,
    BusySource,
    CalendarConnection,
    CalendarProvider,
    DaySchedule,
    FailedOccurrence,
    Listing,
    RecurrencePattern,
    RecurringBookingRequest,
    RecurringBookingResult,
    TimeInterval,
    WorkingHours,
)
from .recurrence import RecurrenceExpander
from .slot_generator import SlotGenerator

__all__ = [
    "Actor",
    "AuthenticationError",
    "AvailabilityResult",
    "BlockedTime",
    "BlockType",
    "Booking",
    "BookingAction",
    "BookingLifecycleManager",
    "BookingRequest",
    "BookingStatus",
    "BreakTime",
    "BusyInterval",
    "BusySource",
    "CalendarAPIError",
    "CalendarConnection",
    "CalendarProvider",
    "ConflictError",
    "DaySchedule",
    "FailedOccurrence",
    "Listing",
    "NotFoundError",
    "RecurrenceExpander",
    "RecurrencePattern",
    "RecurringBookingRequest",
    "RecurringBookingResult",
    "SchedulingError",
    "SlotGenerator",
    "SlotUnavailableError",
    "SyncError",
    "TimeInterval",
    "Transition",
    "TransitionError",
    "ValidationError",
    "WorkingHours",
    "filter_free",
    "merge_intervals",
    "overlaps_any",
]
