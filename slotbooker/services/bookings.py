"""
Booking creation and status transitions.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Optional, TypeVar

import pendulum
from pendulum import DateTime

from ..adapters.calendar_sync import CalendarSyncAdapter
from ..adapters.storage import BookingStorage
from ..domain.exceptions import ConflictError, SchedulingError, SlotUnavailableError, SyncError
from ..domain.lifecycle import BookingLifecycleManager, parse_action, parse_actor
from ..domain.models import (
    Actor,
    Booking,
    BookingAction,
    BookingRequest,
    FailedOccurrence,
    Listing,
    RecurrencePattern,
    RecurringBookingRequest,
    RecurringBookingResult,
    TimeInterval,
)
from ..domain.recurrence import RecurrenceExpander
from .conflicts import ConflictDetector

logger = logging.getLogger(__name__)

T = TypeVar("T")


def new_booking_id() -> str:
    return uuid.uuid4().hex


class BookingService:
    """
    Creates bookings and drives them through their lifecycle.

    Every write is preceded by a conflict check; a storage-level conflict on
    insert (a concurrent request won the race) is reported the same way as a
    failed check.
    """

    def __init__(
        self,
        storage: BookingStorage,
        detector: ConflictDetector,
        calendar_sync: CalendarSyncAdapter,
        *,
        lifecycle: Optional[BookingLifecycleManager] = None,
        expander: Optional[RecurrenceExpander] = None,
        clock: Callable[[], DateTime] = pendulum.now,
        id_factory: Callable[[], str] = new_booking_id,
        storage_timeout_seconds: float = 5.0,
        sync_deadline_seconds: float = 10.0,
    ) -> None:
        self._storage = storage
        self._detector = detector
        self._calendar_sync = calendar_sync
        self._lifecycle = lifecycle or BookingLifecycleManager()
        self._expander = expander or RecurrenceExpander()
        self._clock = clock
        self._id_factory = id_factory
        self._storage_timeout_seconds = storage_timeout_seconds
        self._sync_deadline_seconds = sync_deadline_seconds

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self._storage_timeout_seconds)

    async def create_booking(self, request: BookingRequest) -> Booking:
        """
        Create a single pending booking (confirmed at once for auto-confirm listings).

        Raises:
            ValidationError: If the request is malformed
            NotFoundError: If the listing does not exist
            SlotUnavailableError: If the interval is not free
        """
        request.validate()
        listing = await self._bounded(self._storage.get_listing(request.listing_id))
        interval = self._requested_interval(listing, request)
        return await self._book(listing, request, interval)

    async def create_recurring_bookings(
        self,
        request: BookingRequest,
        pattern: RecurringBookingRequest,
    ) -> RecurringBookingResult:
        """
        Create one booking per occurrence of ``pattern``.

        Occurrences are checked and written one at a time. An occurrence
        that fails (not free, storage timeout, rejected auto-confirm) is
        reported in ``failed_occurrences`` and the rest of the series
        continues.
        """
        request.validate()
        listing = await self._bounded(self._storage.get_listing(request.listing_id))
        first = self._requested_interval(listing, request)
        occurrences = self._expander.expand_booking(first, pattern)

        result = RecurringBookingResult()
        parent_id: Optional[str] = None

        for sequence, interval in enumerate(occurrences):
            try:
                booking = await self._book(
                    listing,
                    request,
                    interval,
                    parent_booking_id=parent_id,
                    recurrence_pattern=pattern.base_pattern,
                    recurrence_sequence=sequence,
                )
            except (SchedulingError, asyncio.TimeoutError) as exc:
                reason = self._failure_reason(exc)
                logger.info("Occurrence %d of series at %s failed: %s", sequence, interval, reason)
                result.failed_occurrences.append(FailedOccurrence(interval=interval, reason=reason))
                continue

            if parent_id is None:
                parent_id = booking.id
            result.created.append(booking)

        logger.info(
            "Recurring %s series for listing %s: %d created, %d failed",
            pattern.base_pattern.value, listing.id,
            len(result.created), len(result.failed_occurrences),
        )
        return result

    async def transition_booking(
        self,
        booking_id: str,
        action: BookingAction,
        *,
        actor: Actor = Actor.PROVIDER,
        notes: Optional[str] = None,
    ) -> Booking:
        """
        Apply ``action`` to a stored booking.

        Raises:
            ValidationError: If the action or actor is unknown
            NotFoundError: If the booking does not exist
            TransitionError: If the action is not allowed from the current status
        """
        action = parse_action(action)
        actor = parse_actor(actor)
        booking = await self._bounded(self._storage.get_booking(booking_id))
        return await self._apply(booking, action, actor, notes)

    async def _apply(
        self,
        booking: Booking,
        action: BookingAction,
        actor: Actor,
        notes: Optional[str],
    ) -> Booking:
        transition = self._lifecycle.plan(booking, action, actor=actor, now=self._clock(), notes=notes)
        updated = await self._bounded(
            self._storage.update_booking_status(
                booking.id,
                transition.to_status,
                transition.provider_notes,
                expected_status=transition.from_status,
                stamps=transition.stamps,
            )
        )
        logger.info(
            "Booking %s: %s -> %s by %s",
            booking.id, transition.from_status.value, transition.to_status.value, actor.value,
        )
        return updated

    async def _book(
        self,
        listing: Listing,
        request: BookingRequest,
        interval: TimeInterval,
        *,
        parent_booking_id: Optional[str] = None,
        recurrence_pattern: Optional[RecurrencePattern] = None,
        recurrence_sequence: int = 0,
    ) -> Booking:
        await self._detector.ensure_available(listing, interval)

        booking = self._lifecycle.new_booking(
            booking_id=self._id_factory(),
            request=request,
            listing=listing,
            interval=interval,
            now=self._clock(),
            parent_booking_id=parent_booking_id,
            recurrence_pattern=recurrence_pattern,
            recurrence_sequence=recurrence_sequence,
        )

        # Once started the insert runs to completion even if the caller is cancelled
        try:
            created = await self._bounded(asyncio.shield(self._storage.create_booking(booking)))
        except ConflictError as exc:
            logger.info("Booking for %s lost the race to %s", interval, exc.conflicting_booking_id)
            raise SlotUnavailableError("slot was taken by a concurrent booking", interval) from exc

        logger.info("Created booking %s for listing %s at %s", created.id, listing.id, interval)

        if listing.auto_confirm:
            created = await self._apply(created, BookingAction.CONFIRM, Actor.PROVIDER, None)

        await self._write_back(created)
        return created

    async def _write_back(self, booking: Booking) -> None:
        """Push the booking to the provider's primary calendar, best effort."""
        try:
            connections = await asyncio.wait_for(
                self._calendar_sync.list_connections(booking.provider_id),
                timeout=self._sync_deadline_seconds,
            )
        except (SchedulingError, asyncio.TimeoutError) as exc:
            logger.warning(
                "Skipping calendar write-back of booking %s, connections unavailable: %s",
                booking.id, exc or type(exc).__name__,
            )
            return

        primary = next((connection for connection in connections if connection.is_primary), None)
        if primary is None:
            return

        try:
            event_id = await asyncio.wait_for(
                self._calendar_sync.push_booking(primary, booking),
                timeout=self._sync_deadline_seconds,
            )
        except (SyncError, asyncio.TimeoutError) as exc:
            logger.warning("Could not write booking %s to calendar %s: %s", booking.id, primary.id, exc)
            return

        logger.info("Booking %s written to calendar %s as event %s", booking.id, primary.id, event_id)

    def _failure_reason(self, exc: Exception) -> str:
        if isinstance(exc, asyncio.TimeoutError):
            return f"storage did not answer within {self._storage_timeout_seconds}s"
        return getattr(exc, "reason", None) or str(exc) or type(exc).__name__

    @staticmethod
    def _requested_interval(listing: Listing, request: BookingRequest) -> TimeInterval:
        duration = request.duration_minutes or listing.default_duration_minutes
        return TimeInterval.from_duration(request.start, duration, timezone=listing.timezone)
