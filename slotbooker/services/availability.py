"""
Availability resolution: candidate grid minus merged busy time.

The resolver coordinates the three busy sources (live bookings, blocked
time, external calendars) and delegates the interval arithmetic to the pure
functions in ``slotbooker.domain``. Every dependency is passed in, so tests
can substitute the storage and the calendar adapter freely.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

import pendulum
from pendulum import Date, DateTime

from ..adapters.calendar_sync import CalendarSyncAdapter, SyncOutcome, gather_external_busy
from ..adapters.storage import BookingStorage
from ..domain.exceptions import ValidationError
from ..domain.intervals import filter_free, merge_intervals, sort_key
from ..domain.models import (
    LIVE_STATUSES,
    AvailabilityResult,
    BusyInterval,
    BusySource,
    Listing,
    TimeInterval,
)
from ..domain.recurrence import RecurrenceExpander
from ..domain.slot_generator import SlotGenerator

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_CALENDAR_DAYS = 62


class SyncFailurePolicy(str, Enum):
    """What to do when a primary external calendar cannot be read."""
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


@dataclass
class BusySnapshot:
    """All busy intervals for one listing and window, plus external sync health."""
    busy: List[BusyInterval] = field(default_factory=list)
    sync: SyncOutcome = field(default_factory=SyncOutcome)

    def merged(self) -> List[TimeInterval]:
        return merge_intervals(item.interval for item in self.busy)


@dataclass
class IntervalCheck:
    """Result of checking one exact interval against live availability."""
    free: bool
    reason: str = ""
    conflicts: List[BusyInterval] = field(default_factory=list)
    degraded: bool = False
    failed_connection_ids: List[str] = field(default_factory=list)


def as_date(day) -> Date:
    """Accept a pendulum Date, a ``datetime.date`` or a ``YYYY-MM-DD`` string."""
    if isinstance(day, str):
        parsed = pendulum.parse(day)
        return pendulum.date(parsed.year, parsed.month, parsed.day)
    if isinstance(day, date):
        return pendulum.date(day.year, day.month, day.day)
    raise ValidationError(f"Expected a date, got {day!r}")


class AvailabilityResolver:
    """
    Computes free slots for a listing.

    Algorithm:
    1. Collect busy intervals from live bookings, expanded blocked time,
       daily breaks and external calendars (best effort)
    2. Normalize to UTC and sort
    3. Merge overlapping/adjacent busy intervals into a disjoint set
    4. Keep the candidate slots that overlap none of them
    """

    def __init__(
        self,
        storage: BookingStorage,
        calendar_sync: CalendarSyncAdapter,
        *,
        slot_generator: Optional[SlotGenerator] = None,
        expander: Optional[RecurrenceExpander] = None,
        sync_policy: SyncFailurePolicy = SyncFailurePolicy.FAIL_OPEN,
        sync_deadline_seconds: float = 10.0,
        storage_timeout_seconds: float = 5.0,
        clock: Callable[[], DateTime] = pendulum.now,
    ) -> None:
        self._storage = storage
        self._calendar_sync = calendar_sync
        self._slot_generator = slot_generator or SlotGenerator()
        self._expander = expander or RecurrenceExpander()
        self._sync_policy = SyncFailurePolicy(sync_policy)
        self._sync_deadline_seconds = sync_deadline_seconds
        self._storage_timeout_seconds = storage_timeout_seconds
        self._clock = clock

    def now(self) -> DateTime:
        return self._clock()

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self._storage_timeout_seconds)

    async def load_listing(self, listing_id: str) -> Listing:
        return await self._bounded(self._storage.get_listing(listing_id))

    async def get_available_slots(
        self,
        listing_id: str,
        day,
        duration_minutes: Optional[int] = None,
    ) -> AvailabilityResult:
        """
        Free slots for ``listing_id`` on ``day``.

        Args:
            listing_id: Listing to book
            day: Target date in the listing's timezone
            duration_minutes: Service length; defaults to the listing default

        Returns:
            AvailabilityResult with the free slots, the degraded flag and the
            ids of external connections that could not be read
        """
        listing = await self.load_listing(listing_id)
        duration = self._resolve_duration(listing, duration_minutes)
        return await self._slots_for_listing(listing, as_date(day), duration)

    async def get_availability_calendar(
        self,
        listing_id: str,
        start_date,
        end_date,
        duration_minutes: Optional[int] = None,
    ) -> Dict[Date, AvailabilityResult]:
        """Free slots for every date in ``[start_date, end_date]``, keyed by date."""
        listing = await self.load_listing(listing_id)
        duration = self._resolve_duration(listing, duration_minutes)

        first = as_date(start_date)
        last = as_date(end_date)
        if last < first:
            raise ValidationError(f"end_date {last} is before start_date {first}")
        span = last.toordinal() - first.toordinal() + 1
        if span > MAX_CALENDAR_DAYS:
            raise ValidationError(f"Calendar range is limited to {MAX_CALENDAR_DAYS} days, got {span}")

        days = [first.add(days=offset) for offset in range(span)]
        results = await asyncio.gather(
            *(self._slots_for_listing(listing, day, duration) for day in days)
        )
        return dict(zip(days, results))

    async def _slots_for_listing(self, listing: Listing, day: Date, duration: int) -> AvailabilityResult:
        now = self.now()

        closed_reason = self.booking_window_reason(listing, day, now)
        if closed_reason:
            logger.debug("No slots for listing %s on %s: %s", listing.id, day, closed_reason)
            return AvailabilityResult()

        candidates = self._slot_generator.generate_for_day(
            listing.working_hours, day, listing.timezone, duration, now=now
        )
        if not candidates:
            return AvailabilityResult()

        window = TimeInterval(start=candidates[0].start, end=candidates[-1].end, timezone=listing.timezone)
        snapshot = await self.collect_busy(listing, window)
        sync = snapshot.sync

        if self._sync_policy == SyncFailurePolicy.FAIL_CLOSED and sync.primary_failed:
            logger.warning(
                "Primary calendar unreachable for provider %s; withholding slots",
                listing.provider_id,
            )
            return AvailabilityResult(slots=[], degraded=True, failed_connection_ids=sync.failed_connection_ids)

        free = filter_free(candidates, snapshot.merged())

        logger.debug(
            "Listing %s on %s: %d of %d candidate slots free (%d busy intervals)",
            listing.id, day, len(free), len(candidates), len(snapshot.busy),
        )

        return AvailabilityResult(
            slots=free,
            degraded=sync.degraded,
            failed_connection_ids=sync.failed_connection_ids,
        )

    async def collect_busy(self, listing: Listing, window: TimeInterval) -> BusySnapshot:
        """
        Gather busy intervals for ``listing`` that may touch ``window``.

        Storage queries and the external calendar fan-out run concurrently.
        Bookings are widened by the listing's buffer on both sides.
        """
        buffer = listing.buffer_minutes
        query_window = window
        if buffer:
            query_window = TimeInterval(
                start=window.start.subtract(minutes=buffer),
                end=window.end.add(minutes=buffer),
                timezone=window.timezone,
            )

        bookings, blocks, sync = await asyncio.gather(
            self._bounded(self._storage.query_bookings(listing.provider_id, query_window, LIVE_STATUSES)),
            self._bounded(self._storage.query_blocked_times(listing.provider_id, listing.id, window)),
            gather_external_busy(self._calendar_sync, listing.provider_id, window, self._sync_deadline_seconds),
        )

        busy: List[BusyInterval] = []

        for booking in bookings:
            interval = booking.interval
            if buffer:
                interval = TimeInterval(
                    start=interval.start.subtract(minutes=buffer),
                    end=interval.end.add(minutes=buffer),
                    timezone=interval.timezone,
                )
            busy.append(BusyInterval(interval, BusySource.BOOKING, booking.service_name))

        for block in blocks:
            for interval in self._expander.expand_blocked_time(block, window):
                busy.append(BusyInterval(interval, BusySource.BLOCKED, block.title))

        busy.extend(self._break_intervals(listing, window))

        for interval in sync.intervals:
            busy.append(BusyInterval(interval, BusySource.EXTERNAL, "External calendar"))

        busy.sort(key=lambda item: (sort_key(item.interval), item.source.value, item.title))
        return BusySnapshot(busy=busy, sync=sync)

    @staticmethod
    def _break_intervals(listing: Listing, window: TimeInterval) -> List[BusyInterval]:
        if not listing.break_times:
            return []

        local = window.in_timezone(listing.timezone)
        day = local.start.date().subtract(days=1)
        last = local.end.date()

        breaks: List[BusyInterval] = []
        while day <= last:
            if listing.working_hours.is_working_day(day):
                for break_time in listing.break_times:
                    interval = break_time.on_day(day, listing.timezone)
                    if interval.overlaps(window):
                        breaks.append(BusyInterval(interval, BusySource.BREAK, break_time.title))
            day = day.add(days=1)
        return breaks

    async def check_interval(self, listing: Listing, interval: TimeInterval) -> IntervalCheck:
        """
        Re-check one exact interval against live availability.

        The interval must lie in the future, inside the booking window and
        inside the working hours, and must not overlap any busy interval.
        """
        now = self.now()
        local = interval.in_timezone(listing.timezone)

        if local.start < now:
            return IntervalCheck(free=False, reason="requested time is in the past")

        closed_reason = self.booking_window_reason(listing, local.start.date(), now)
        if closed_reason:
            return IntervalCheck(free=False, reason=closed_reason)

        if not self._within_working_hours(listing, local):
            return IntervalCheck(free=False, reason="outside working hours")

        snapshot = await self.collect_busy(listing, local)
        sync = snapshot.sync

        if self._sync_policy == SyncFailurePolicy.FAIL_CLOSED and sync.primary_failed:
            return IntervalCheck(
                free=False,
                reason="primary calendar is unreachable",
                degraded=True,
                failed_connection_ids=sync.failed_connection_ids,
            )

        conflicts = [item for item in snapshot.busy if item.interval.overlaps(local)]
        if conflicts:
            return IntervalCheck(
                free=False,
                reason=f"conflicts with {conflicts[0].describe()}",
                conflicts=conflicts,
                degraded=sync.degraded,
                failed_connection_ids=sync.failed_connection_ids,
            )

        return IntervalCheck(
            free=True,
            degraded=sync.degraded,
            failed_connection_ids=sync.failed_connection_ids,
        )

    @staticmethod
    def booking_window_reason(listing: Listing, day: Date, now: DateTime) -> Optional[str]:
        """
        Why ``day`` cannot be booked at all, or None if it can.
        """
        if not listing.booking_enabled:
            return "booking is disabled for this listing"

        today = now.in_timezone(listing.timezone).date()
        days_ahead = day.toordinal() - today.toordinal()

        if days_ahead < 0:
            return "date is in the past"
        if days_ahead == 0 and not listing.same_day_booking:
            return "same-day booking is not allowed"
        if days_ahead > listing.advance_booking_days:
            return f"date is more than {listing.advance_booking_days} days ahead"
        return None

    @staticmethod
    def _within_working_hours(listing: Listing, interval: TimeInterval) -> bool:
        # A window that runs past midnight belongs to the previous date
        day = interval.start.date()
        for candidate in (day.subtract(days=1), day):
            window = listing.working_hours.get_working_hours_for_day(candidate, listing.timezone)
            if window is not None and window.contains(interval):
                return True
        return False

    @staticmethod
    def _resolve_duration(listing: Listing, duration_minutes: Optional[int]) -> int:
        if duration_minutes is None:
            return listing.default_duration_minutes
        if duration_minutes <= 0:
            raise ValidationError(f"Duration must be positive, got {duration_minutes}")
        return duration_minutes
