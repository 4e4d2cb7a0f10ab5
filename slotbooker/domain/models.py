"""
Domain models for intervals, listings, blocked time and bookings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import time
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import pendulum
from pendulum import Date, DateTime

from .exceptions import ValidationError

WEEKDAY_NAMES = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

CUSTOMER_NOTES_MAX_LENGTH = 500


@dataclass(frozen=True)
class TimeInterval:
    """
    Half-open time range ``[start, end)`` presented in ``timezone``.

    Invariant: start must be before end. Both endpoints must be timezone-aware
    so that comparisons between intervals from different zones are exact.
    """
    start: DateTime
    end: DateTime
    timezone: str = "UTC"

    def __post_init__(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValidationError("Interval endpoints must be timezone-aware")
        if self.start >= self.end:
            raise ValidationError(f"Start time {self.start} must be before end time {self.end}")

    @classmethod
    def from_duration(cls, start: DateTime, minutes: int, timezone: str | None = None) -> "TimeInterval":
        """Build an interval of ``minutes`` starting at ``start``."""
        if minutes <= 0:
            raise ValidationError(f"Duration must be positive, got {minutes}")
        if timezone is None:
            return cls(start=start, end=start.add(minutes=minutes), timezone=start.timezone_name or "UTC")
        local_start = start.in_timezone(timezone)
        return cls(start=local_start, end=local_start.add(minutes=minutes), timezone=timezone)

    def duration_minutes(self) -> int:
        """Return the duration in minutes."""
        return int((self.end - self.start).total_seconds() // 60)

    def overlaps(self, other: "TimeInterval") -> bool:
        """Strict overlap test; touching intervals do not overlap."""
        return self.start < other.end and other.start < self.end

    def contains(self, other: "TimeInterval") -> bool:
        """Check whether ``other`` lies completely inside this interval."""
        return self.start <= other.start and other.end <= self.end

    def intersect(self, other: "TimeInterval") -> "TimeInterval | None":
        """
        Calculate the intersection of two intervals.
        Returns None if there is no overlap.
        """
        if not self.overlaps(other):
            return None
        return TimeInterval(
            start=max(self.start, other.start),
            end=min(self.end, other.end),
            timezone=self.timezone,
        )

    def in_timezone(self, timezone: str) -> "TimeInterval":
        """Return the same instants presented in another timezone."""
        return TimeInterval(
            start=self.start.in_timezone(timezone),
            end=self.end.in_timezone(timezone),
            timezone=timezone,
        )

    def normalized(self) -> "TimeInterval":
        """Return the interval expressed in UTC."""
        return self.in_timezone("UTC")

    def __str__(self) -> str:
        return f"{self.start.format('YYYY-MM-DD HH:mm')} - {self.end.format('YYYY-MM-DD HH:mm')} ({self.timezone})"


@dataclass(frozen=True)
class DaySchedule:
    """Working window for one weekday. An end at or before the start runs into the next day."""
    enabled: bool = True
    start: time = time(0, 0)
    end: time = time(0, 0)


@dataclass
class WorkingHours:
    """
    Weekly working hours for a listing, keyed by weekday (0=Monday, 6=Sunday).
    """
    days: Dict[int, DaySchedule] = field(default_factory=dict)

    @classmethod
    def full_day(cls) -> "WorkingHours":
        """Every day bookable from midnight to midnight."""
        return cls(days={weekday: DaySchedule() for weekday in range(7)})

    @classmethod
    def from_mapping(cls, data: Mapping[str, Mapping[str, Any]]) -> "WorkingHours":
        """
        Build working hours from a ``{"monday": {"enabled": ..., "start": "09:00", "end": "17:00"}}`` mapping.

        Days missing from the mapping are not bookable.
        """
        days: Dict[int, DaySchedule] = {}
        for name, settings in data.items():
            key = name.lower()
            if key not in WEEKDAY_NAMES:
                raise ValidationError(f"Unknown weekday: {name}")
            days[WEEKDAY_NAMES.index(key)] = DaySchedule(
                enabled=bool(settings.get("enabled", True)),
                start=parse_clock(settings.get("start", "00:00")),
                end=parse_clock(settings.get("end", "00:00")),
            )
        return cls(days=days)

    def is_working_day(self, day: Date) -> bool:
        """Check if a given date falls on an enabled working day."""
        schedule = self.days.get(day.weekday())
        return schedule is not None and schedule.enabled

    def get_working_hours_for_day(self, day: Date, timezone: str) -> TimeInterval | None:
        """
        Get the working window for a specific date.
        Returns None if it's not a working day.
        """
        if not self.is_working_day(day):
            return None

        schedule = self.days[day.weekday()]
        start = pendulum.datetime(
            day.year, day.month, day.day,
            schedule.start.hour, schedule.start.minute,
            tz=timezone,
        )
        end = pendulum.datetime(
            day.year, day.month, day.day,
            schedule.end.hour, schedule.end.minute,
            tz=timezone,
        )
        if end <= start:
            end = end.add(days=1)

        return TimeInterval(start=start, end=end, timezone=timezone)


@dataclass(frozen=True)
class BreakTime:
    """A daily break inside the working window (e.g. lunch)."""
    start: time
    end: time
    title: str = "Break"

    def on_day(self, day: Date, timezone: str) -> TimeInterval:
        """Project the break onto a concrete date."""
        start = pendulum.datetime(day.year, day.month, day.day, self.start.hour, self.start.minute, tz=timezone)
        end = pendulum.datetime(day.year, day.month, day.day, self.end.hour, self.end.minute, tz=timezone)
        if end <= start:
            end = end.add(days=1)
        return TimeInterval(start=start, end=end, timezone=timezone)


@dataclass
class Listing:
    """A provider's bookable service and its scheduling settings."""
    id: str
    provider_id: str
    title: str = ""
    timezone: str = "UTC"
    working_hours: WorkingHours = field(default_factory=WorkingHours.full_day)
    break_times: List[BreakTime] = field(default_factory=list)
    buffer_minutes: int = 0
    default_duration_minutes: int = 60
    advance_booking_days: int = 365
    same_day_booking: bool = True
    auto_confirm: bool = False
    booking_enabled: bool = True


class BlockType(str, Enum):
    PERSONAL = "personal"
    HOLIDAY = "holiday"
    BREAK = "break"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class BlockedTime:
    """
    Provider-declared unavailability.

    An empty ``listing_id`` blocks every listing of the provider.
    """
    id: str
    provider_id: str
    interval: TimeInterval
    listing_id: str = ""
    title: str = ""
    is_all_day: bool = False
    block_type: BlockType = BlockType.PERSONAL
    recurring_yearly: bool = False

    def applies_to(self, listing_id: str) -> bool:
        return not self.listing_id or self.listing_id == listing_id

    def effective_interval(self) -> TimeInterval:
        """All-day blocks are widened to whole days in their own timezone."""
        if not self.is_all_day:
            return self.interval
        start = self.interval.start.start_of("day")
        end = self.interval.end
        if end != end.start_of("day"):
            end = end.start_of("day").add(days=1)
        return TimeInterval(start=start, end=end, timezone=self.interval.timezone)


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


LIVE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED})


class BookingAction(str, Enum):
    CONFIRM = "confirm"
    CANCEL = "cancel"
    COMPLETE = "complete"
    NO_SHOW = "no_show"


class Actor(str, Enum):
    PROVIDER = "provider"
    CUSTOMER = "customer"


class RecurrencePattern(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class Booking:
    """A booking record. Status changes go through the lifecycle manager."""
    id: str
    listing_id: str
    provider_id: str
    customer_id: str
    interval: TimeInterval
    created_at: DateTime
    service_name: str = ""
    price: Optional[Decimal] = None
    currency: str = "USD"
    status: BookingStatus = BookingStatus.PENDING
    customer_notes: str = ""
    provider_notes: str = ""
    confirmed_at: Optional[DateTime] = None
    completed_at: Optional[DateTime] = None
    cancelled_at: Optional[DateTime] = None
    parent_booking_id: Optional[str] = None
    recurrence_pattern: Optional[RecurrencePattern] = None
    recurrence_sequence: int = 0

    @property
    def duration_minutes(self) -> int:
        return self.interval.duration_minutes()

    @property
    def is_live(self) -> bool:
        """Pending and confirmed bookings occupy their interval."""
        return self.status in LIVE_STATUSES


@dataclass(frozen=True)
class BookingRequest:
    """Customer-initiated request for one booking."""
    listing_id: str
    customer_id: str
    start: DateTime
    duration_minutes: Optional[int] = None
    service_name: str = ""
    price: Optional[Decimal] = None
    currency: str = "USD"
    customer_notes: str = ""

    def validate(self) -> None:
        """
        Check required fields and value ranges.

        Raises:
            ValidationError: If the request is malformed
        """
        if not self.listing_id:
            raise ValidationError("listing_id is required")
        if not self.customer_id:
            raise ValidationError("customer_id is required")
        if self.start is None or self.start.tzinfo is None:
            raise ValidationError("start must be a timezone-aware datetime")
        if self.duration_minutes is not None and self.duration_minutes <= 0:
            raise ValidationError(f"Duration must be positive, got {self.duration_minutes}")
        if self.price is not None and self.price < 0:
            raise ValidationError("Price must not be negative")
        if len(self.customer_notes) > CUSTOMER_NOTES_MAX_LENGTH:
            raise ValidationError(
                f"Customer notes must be at most {CUSTOMER_NOTES_MAX_LENGTH} characters"
            )


@dataclass(frozen=True)
class RecurringBookingRequest:
    """
    Recurrence settings for a series of bookings.

    At least one bound is required. When both are given ``end_date`` is
    authoritative and ``occurrence_count`` is ignored.
    """
    base_pattern: RecurrencePattern
    end_date: Optional[Date] = None
    occurrence_count: Optional[int] = None

    def __post_init__(self):
        if self.end_date is None and self.occurrence_count is None:
            raise ValidationError("Either end_date or occurrence_count is required")
        if self.end_date is None and self.occurrence_count is not None and self.occurrence_count < 1:
            raise ValidationError(f"occurrence_count must be at least 1, got {self.occurrence_count}")

    @property
    def uses_end_date(self) -> bool:
        return self.end_date is not None


class CalendarProvider(str, Enum):
    INTERNAL = "internal"
    GOOGLE = "google"
    OUTLOOK = "outlook"
    ICLOUD = "icloud"
    APPLE = "apple"
    SAMSUNG = "samsung"
    ANDROID = "android"


@dataclass(frozen=True)
class CalendarConnection:
    """A user's link to an external calendar."""
    id: str
    user_id: str
    provider: CalendarProvider
    calendar_id: str
    is_primary: bool = False
    sync_enabled: bool = True
    credentials: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)


class BusySource(str, Enum):
    BOOKING = "booking"
    BLOCKED = "blocked"
    BREAK = "break"
    EXTERNAL = "external"


@dataclass(frozen=True)
class BusyInterval:
    """An interval that removes slots from availability, tagged with its origin."""
    interval: TimeInterval
    source: BusySource
    title: str = ""

    def describe(self) -> str:
        label = self.title or self.source.value
        return f"{label} ({self.source.value})"


@dataclass
class AvailabilityResult:
    """Free slots for one listing and day, with sync health metadata."""
    slots: List[TimeInterval] = field(default_factory=list)
    degraded: bool = False
    failed_connection_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class FailedOccurrence:
    interval: TimeInterval
    reason: str


@dataclass
class RecurringBookingResult:
    """Outcome of a recurring request: created bookings plus per-occurrence failures."""
    created: List[Booking] = field(default_factory=list)
    failed_occurrences: List[FailedOccurrence] = field(default_factory=list)


def parse_clock(value: Any) -> time:
    """Parse ``HH:MM`` (or pass through a ``time``). ``24:00`` means midnight."""
    if isinstance(value, time):
        return value
    try:
        hours, minutes = (int(part) for part in str(value).split(":")[:2])
        if (hours, minutes) == (24, 0):
            return time(0, 0)
        return time(hours, minutes)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid clock time: {value!r}") from exc
