"""
Tests for booking creation, recurring series and status transitions.
"""

import asyncio
import itertools
import time as time_module
from datetime import time
from decimal import Decimal
from typing import List

import pendulum
import pytest

from slotbooker.adapters.calendar_sync import NullCalendarSyncAdapter
from slotbooker.adapters.storage import InMemoryStorage
from slotbooker.config import AppConfig
from slotbooker.domain.exceptions import (
    NotFoundError,
    SlotUnavailableError,
    SyncError,
    TransitionError,
    ValidationError,
)
from slotbooker.domain.models import (
    Actor,
    Booking,
    BookingAction,
    BookingRequest,
    BookingStatus,
    CalendarConnection,
    CalendarProvider,
    DaySchedule,
    Listing,
    RecurrencePattern,
    RecurringBookingRequest,
    WorkingHours,
)
from slotbooker.engine import SchedulingEngine, build_engine

TZ = "Europe/Berlin"
NOW = pendulum.datetime(2025, 1, 1, 8, 0, tz=TZ)


class RecordingCalendarSync:
    """Calendar sync stub with one primary connection that records write-backs."""

    def __init__(self, fail_push: bool = False, lookup: str = "ok"):
        self.fail_push = fail_push
        self.lookup = lookup
        self.pushed: List[str] = []
        self.connection = CalendarConnection(
            id="main",
            user_id="p1",
            provider=CalendarProvider.GOOGLE,
            calendar_id="anna@example.com",
            is_primary=True,
        )

    async def list_connections(self, user_id):
        if self.lookup == "slow":
            await asyncio.sleep(5)
        if self.lookup == "fail":
            raise SyncError("connection-lookup", "directory unavailable")
        return [self.connection]

    async def fetch_busy_intervals(self, connection, window):
        return []

    async def push_booking(self, connection, booking):
        if self.fail_push:
            raise SyncError(connection.id, "HTTP 503", connection.is_primary)
        self.pushed.append(booking.id)
        return f"evt-{booking.id}"


class SlowInsertStorage(InMemoryStorage):
    """In-memory storage whose n-th insert hangs."""

    def __init__(self, slow_call: int):
        super().__init__()
        self.slow_call = slow_call
        self.calls = 0

    async def create_booking(self, booking):
        self.calls += 1
        if self.calls == self.slow_call:
            await asyncio.sleep(1)
        return await super().create_booking(booking)


def _listing(**overrides) -> Listing:
    values = dict(
        id="l1",
        provider_id="p1",
        title="Massage",
        timezone=TZ,
        working_hours=WorkingHours(days={
            weekday: DaySchedule(start=time(9, 0), end=time(17, 0)) for weekday in range(5)
        }),
        default_duration_minutes=60,
    )
    values.update(overrides)
    return Listing(**values)


def _engine(
    listing: Listing = None,
    calendar_sync=None,
    storage: InMemoryStorage = None,
    config: AppConfig = None,
) -> SchedulingEngine:
    storage = storage or InMemoryStorage()
    storage.add_listing(listing or _listing())
    engine = build_engine(
        config or AppConfig(timezone=TZ),
        storage,
        calendar_sync=calendar_sync or NullCalendarSyncAdapter(),
        clock=lambda: NOW,
    )
    counter = itertools.count(1)
    engine.bookings._id_factory = lambda: f"b{next(counter)}"
    return engine


def _request(start: str = "2025-01-06 09:00", **overrides) -> BookingRequest:
    values = dict(
        listing_id="l1",
        customer_id="c1",
        start=pendulum.parse(start, tz=TZ),
        service_name="Deep tissue",
        price=Decimal("80.00"),
    )
    values.update(overrides)
    return BookingRequest(**values)


class TestCreateBooking:
    """Tests for BookingService.create_booking."""

    def test_creates_pending_booking(self):
        engine = _engine()

        booking = asyncio.run(engine.create_booking(_request()))

        assert booking.id == "b1"
        assert booking.status == BookingStatus.PENDING
        assert booking.provider_id == "p1"
        assert booking.duration_minutes == 60
        assert booking.created_at == NOW
        assert booking.interval.timezone == TZ

    def test_request_duration_overrides_default(self):
        booking = asyncio.run(_engine().create_booking(_request(duration_minutes=90)))

        assert booking.duration_minutes == 90

    def test_auto_confirm(self):
        engine = _engine(_listing(auto_confirm=True))

        booking = asyncio.run(engine.create_booking(_request()))

        assert booking.status == BookingStatus.CONFIRMED
        assert booking.confirmed_at == NOW

    def test_overlapping_request_is_rejected(self):
        engine = _engine()

        async def scenario():
            await engine.create_booking(_request("2025-01-06 09:00"))
            await engine.create_booking(_request("2025-01-06 09:30"))

        with pytest.raises(SlotUnavailableError, match="conflicts with Deep tissue"):
            asyncio.run(scenario())

    def test_concurrent_identical_requests(self):
        engine = _engine()

        async def scenario():
            return await asyncio.gather(
                *(engine.create_booking(_request()) for _ in range(5)),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        created = [result for result in results if isinstance(result, Booking)]
        rejected = [result for result in results if isinstance(result, SlotUnavailableError)]
        assert len(created) == 1
        assert len(rejected) == 4

    def test_outside_working_hours(self):
        with pytest.raises(SlotUnavailableError, match="outside working hours"):
            asyncio.run(_engine().create_booking(_request("2025-01-06 16:30")))

    def test_weekend_is_outside_working_hours(self):
        with pytest.raises(SlotUnavailableError):
            asyncio.run(_engine().create_booking(_request("2025-01-11 10:00")))

    def test_past_start(self):
        with pytest.raises(SlotUnavailableError, match="past"):
            asyncio.run(_engine().create_booking(_request("2024-12-30 10:00")))

    def test_invalid_request_has_no_side_effects(self):
        storage = InMemoryStorage()
        engine = _engine(storage=storage)

        with pytest.raises(ValidationError):
            asyncio.run(engine.create_booking(_request(customer_notes="x" * 501)))

        assert storage._bookings == {}

    def test_unknown_listing(self):
        with pytest.raises(NotFoundError):
            asyncio.run(_engine().create_booking(_request(listing_id="ghost")))

    def test_booking_is_written_to_primary_calendar(self):
        calendar_sync = RecordingCalendarSync()
        engine = _engine(calendar_sync=calendar_sync)

        booking = asyncio.run(engine.create_booking(_request()))

        assert calendar_sync.pushed == [booking.id]

    def test_failed_write_back_keeps_booking(self):
        storage = InMemoryStorage()
        engine = _engine(calendar_sync=RecordingCalendarSync(fail_push=True), storage=storage)

        booking = asyncio.run(engine.create_booking(_request()))

        assert storage._bookings[booking.id].status == BookingStatus.PENDING

    def test_failed_connection_lookup_skips_write_back(self):
        calendar_sync = RecordingCalendarSync(lookup="fail")
        storage = InMemoryStorage()
        engine = _engine(calendar_sync=calendar_sync, storage=storage)

        booking = asyncio.run(engine.create_booking(_request()))

        assert booking.id in storage._bookings
        assert calendar_sync.pushed == []

    def test_slow_connection_lookup_is_bounded(self):
        calendar_sync = RecordingCalendarSync(lookup="slow")
        config = AppConfig(timezone=TZ, sync={"attempt_timeout_seconds": 0.05, "deadline_seconds": 0.1})
        engine = _engine(calendar_sync=calendar_sync, config=config)

        started = time_module.monotonic()
        booking = asyncio.run(engine.create_booking(_request()))

        assert time_module.monotonic() - started < 2.0
        assert booking.status == BookingStatus.PENDING
        assert calendar_sync.pushed == []

    def test_unknown_action_is_rejected_before_storage(self):
        engine = _engine()

        async def scenario():
            booking = await engine.create_booking(_request())
            await engine.transition_booking(booking.id, "reschedule")

        with pytest.raises(ValidationError, match="Unknown booking action"):
            asyncio.run(scenario())


class TestRecurringBookings:
    """Tests for BookingService.create_recurring_bookings."""

    def test_weekly_series(self):
        engine = _engine()
        pattern = RecurringBookingRequest(base_pattern=RecurrencePattern.WEEKLY, occurrence_count=4)

        result = asyncio.run(engine.create_recurring_bookings(_request(), pattern))

        assert [booking.interval.start.to_date_string() for booking in result.created] == [
            "2025-01-06", "2025-01-13", "2025-01-20", "2025-01-27",
        ]
        assert result.failed_occurrences == []
        parent = result.created[0]
        assert parent.parent_booking_id is None
        assert all(booking.parent_booking_id == parent.id for booking in result.created[1:])
        assert [booking.recurrence_sequence for booking in result.created] == [0, 1, 2, 3]
        assert all(booking.recurrence_pattern == RecurrencePattern.WEEKLY for booking in result.created)

    def test_partial_success(self):
        engine = _engine()
        asyncio.run(engine.create_booking(_request("2025-01-13 09:00", customer_id="someone-else")))
        pattern = RecurringBookingRequest(base_pattern=RecurrencePattern.WEEKLY, occurrence_count=4)

        result = asyncio.run(engine.create_recurring_bookings(_request(), pattern))

        assert len(result.created) == 3
        assert len(result.failed_occurrences) == 1
        failed = result.failed_occurrences[0]
        assert failed.interval.start == pendulum.parse("2025-01-13 09:00", tz=TZ)
        assert "conflicts with" in failed.reason
        assert [booking.recurrence_sequence for booking in result.created] == [0, 2, 3]

    def test_first_created_occurrence_becomes_parent(self):
        engine = _engine()
        asyncio.run(engine.create_booking(_request("2025-01-06 09:00", customer_id="someone-else")))
        pattern = RecurringBookingRequest(base_pattern=RecurrencePattern.DAILY, occurrence_count=3)

        result = asyncio.run(engine.create_recurring_bookings(_request(), pattern))

        assert [booking.interval.start.day for booking in result.created] == [7, 8]
        assert result.created[0].parent_booking_id is None
        assert result.created[1].parent_booking_id == result.created[0].id

    def test_daily_series_skips_weekend(self):
        engine = _engine()
        pattern = RecurringBookingRequest(base_pattern=RecurrencePattern.DAILY, end_date=pendulum.date(2025, 1, 13))

        result = asyncio.run(engine.create_recurring_bookings(_request("2025-01-09 10:00"), pattern))

        assert [booking.interval.start.day for booking in result.created] == [9, 10, 13]
        assert [failure.interval.start.day for failure in result.failed_occurrences] == [11, 12]

    def test_storage_timeout_fails_only_that_occurrence(self):
        storage = SlowInsertStorage(slow_call=2)
        engine = _engine(storage=storage, config=AppConfig(timezone=TZ, storage_timeout_seconds=0.2))
        pattern = RecurringBookingRequest(base_pattern=RecurrencePattern.WEEKLY, occurrence_count=4)

        result = asyncio.run(engine.create_recurring_bookings(_request(), pattern))

        assert [booking.recurrence_sequence for booking in result.created] == [0, 2, 3]
        assert len(result.failed_occurrences) == 1
        failed = result.failed_occurrences[0]
        assert failed.interval.start == pendulum.parse("2025-01-13 09:00", tz=TZ)
        assert "storage did not answer" in failed.reason


class TestTransitionBooking:
    """Tests for BookingService.transition_booking."""

    def test_confirm_then_complete(self):
        engine = _engine()

        async def scenario():
            booking = await engine.create_booking(_request())
            await engine.transition_booking(booking.id, BookingAction.CONFIRM)
            return await engine.transition_booking(booking.id, BookingAction.COMPLETE, notes="Went well")

        completed = asyncio.run(scenario())

        assert completed.status == BookingStatus.COMPLETED
        assert completed.confirmed_at == NOW
        assert completed.completed_at == NOW
        assert completed.provider_notes == "Went well"

    def test_pending_to_completed_fails_without_side_effects(self):
        storage = InMemoryStorage()
        engine = _engine(storage=storage)

        async def scenario():
            booking = await engine.create_booking(_request())
            await engine.transition_booking(booking.id, BookingAction.COMPLETE)

        with pytest.raises(TransitionError):
            asyncio.run(scenario())

        assert storage._bookings["b1"].status == BookingStatus.PENDING
        assert storage._bookings["b1"].completed_at is None

    def test_no_show_has_no_completion_stamp(self):
        engine = _engine()

        async def scenario():
            booking = await engine.create_booking(_request())
            await engine.transition_booking(booking.id, BookingAction.CONFIRM)
            return await engine.transition_booking(booking.id, BookingAction.NO_SHOW)

        no_show = asyncio.run(scenario())

        assert no_show.status == BookingStatus.NO_SHOW
        assert no_show.completed_at is None

    def test_customer_cancel_frees_the_slot(self):
        engine = _engine()

        async def scenario():
            first = await engine.create_booking(_request())
            await engine.transition_booking(first.id, BookingAction.CANCEL, actor=Actor.CUSTOMER)
            return await engine.create_booking(_request(customer_id="c2"))

        second = asyncio.run(scenario())

        assert second.customer_id == "c2"

    def test_unknown_booking(self):
        with pytest.raises(NotFoundError):
            asyncio.run(_engine().transition_booking("ghost", BookingAction.CONFIRM))

    def test_concurrent_transitions_apply_once(self):
        engine = _engine()

        async def scenario():
            booking = await engine.create_booking(_request())
            return await asyncio.gather(
                engine.transition_booking(booking.id, BookingAction.CONFIRM),
                engine.transition_booking(booking.id, BookingAction.CONFIRM),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        applied = [result for result in results if isinstance(result, Booking)]
        rejected = [result for result in results if isinstance(result, TransitionError)]
        assert len(applied) == 1
        assert len(rejected) == 1


class TestSchedulingEngine:
    """Tests for the engine facade."""

    def test_booked_slot_disappears_from_availability(self):
        engine = _engine()

        async def scenario():
            before = await engine.get_available_slots("l1", "2025-01-06")
            await engine.create_booking(_request("2025-01-06 10:00"))
            after = await engine.get_available_slots("l1", "2025-01-06")
            return before, after

        before, after = asyncio.run(scenario())

        assert len(before.slots) == 15
        starts = [slot.start.format("HH:mm") for slot in after.slots]
        assert "09:00" in starts
        assert "09:30" not in starts
        assert "10:30" not in starts
        assert "11:00" in starts

    def test_build_engine_without_providers_uses_null_adapter(self):
        engine = build_engine(AppConfig(), InMemoryStorage())

        assert isinstance(engine.resolver._calendar_sync, NullCalendarSyncAdapter)
