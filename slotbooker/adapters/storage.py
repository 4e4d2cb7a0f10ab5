"""
Persistence contract for the scheduling engine and an in-memory implementation.

The engine only talks to storage through ``BookingStorage``. Whatever backs
it must reject an insert that overlaps a live booking of the same provider;
that exclusion check is the real guarantee against double booking.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

import pendulum
import yaml
from pendulum import DateTime

from ..domain.exceptions import ConflictError, NotFoundError, TransitionError, ValidationError
from ..domain.models import (
    BlockedTime,
    BlockType,
    Booking,
    BookingStatus,
    BreakTime,
    CalendarConnection,
    CalendarProvider,
    Listing,
    TimeInterval,
    WorkingHours,
    parse_clock,
)

logger = logging.getLogger(__name__)


class BookingStorage(Protocol):
    """Protocol describing the storage behaviour needed by the engine."""

    async def get_listing(self, listing_id: str) -> Listing:
        """Return the listing or raise NotFoundError."""

    async def create_booking(self, booking: Booking) -> Booking:
        """Insert a booking; raise ConflictError if it overlaps a live booking of the provider."""

    async def get_booking(self, booking_id: str) -> Booking:
        """Return the booking or raise NotFoundError."""

    async def update_booking_status(
        self,
        booking_id: str,
        status: BookingStatus,
        notes: Optional[str] = None,
        *,
        expected_status: Optional[BookingStatus] = None,
        stamps: Optional[Mapping[str, DateTime]] = None,
    ) -> Booking:
        """Set the status atomically; raise TransitionError if the current status differs from expected."""

    async def query_bookings(
        self,
        provider_id: str,
        window: TimeInterval,
        statuses: Iterable[BookingStatus],
    ) -> List[Booking]:
        """Bookings of the provider overlapping ``window`` with one of ``statuses``."""

    async def query_blocked_times(
        self,
        provider_id: str,
        listing_id: str,
        window: TimeInterval,
    ) -> List[BlockedTime]:
        """Blocked times that may affect ``window``; yearly blocks are always included."""

    async def query_calendar_connections(self, user_id: str) -> List[CalendarConnection]:
        """Calendar connections owned by ``user_id``."""


class InMemoryStorage:
    """
    Process-local storage implementing ``BookingStorage``.

    Writes for one provider are serialized by a per-provider lock; the
    overlap check and the insert happen under the same lock.
    """

    def __init__(self) -> None:
        self._listings: Dict[str, Listing] = {}
        self._bookings: Dict[str, Booking] = {}
        self._blocked_times: Dict[str, BlockedTime] = {}
        self._connections: Dict[str, CalendarConnection] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, provider_id: str) -> asyncio.Lock:
        lock = self._locks.get(provider_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[provider_id] = lock
        return lock

    # Provider-side setup

    def add_listing(self, listing: Listing) -> Listing:
        self._listings[listing.id] = listing
        return listing

    def add_blocked_time(self, block: BlockedTime) -> BlockedTime:
        self._blocked_times[block.id] = block
        return block

    def delete_blocked_time(self, block_id: str) -> None:
        if block_id not in self._blocked_times:
            raise NotFoundError("Blocked time", block_id)
        del self._blocked_times[block_id]

    def add_calendar_connection(self, connection: CalendarConnection) -> CalendarConnection:
        """Register a connection; a user may have only one primary connection."""
        if connection.is_primary:
            for existing in self._connections.values():
                if (
                    existing.user_id == connection.user_id
                    and existing.is_primary
                    and existing.id != connection.id
                ):
                    raise ValidationError(
                        f"User {connection.user_id} already has primary calendar {existing.id}"
                    )
        self._connections[connection.id] = connection
        return connection

    # BookingStorage

    async def get_listing(self, listing_id: str) -> Listing:
        try:
            return self._listings[listing_id]
        except KeyError:
            raise NotFoundError("Listing", listing_id) from None

    async def create_booking(self, booking: Booking) -> Booking:
        async with self._lock_for(booking.provider_id):
            if booking.id in self._bookings:
                raise ValidationError(f"Booking {booking.id} already exists")

            for existing in self._bookings.values():
                if (
                    existing.provider_id == booking.provider_id
                    and existing.is_live
                    and existing.interval.overlaps(booking.interval)
                ):
                    logger.info(
                        "Rejected booking %s: overlaps live booking %s",
                        booking.id, existing.id,
                    )
                    raise ConflictError(booking.provider_id, existing.id)

            self._bookings[booking.id] = booking
            return booking

    async def get_booking(self, booking_id: str) -> Booking:
        try:
            return self._bookings[booking_id]
        except KeyError:
            raise NotFoundError("Booking", booking_id) from None

    async def update_booking_status(
        self,
        booking_id: str,
        status: BookingStatus,
        notes: Optional[str] = None,
        *,
        expected_status: Optional[BookingStatus] = None,
        stamps: Optional[Mapping[str, DateTime]] = None,
    ) -> Booking:
        booking = await self.get_booking(booking_id)

        async with self._lock_for(booking.provider_id):
            current = self._bookings[booking_id]
            if expected_status is not None and current.status != expected_status:
                raise TransitionError(
                    booking_id, current.status.value, BookingStatus(status).value,
                    f"status changed concurrently, expected {BookingStatus(expected_status).value}",
                )

            changes: Dict[str, Any] = dict(stamps or {})
            if notes is not None:
                changes["provider_notes"] = notes

            updated = replace(current, status=BookingStatus(status), **changes)
            self._bookings[booking_id] = updated
            return updated

    async def query_bookings(
        self,
        provider_id: str,
        window: TimeInterval,
        statuses: Iterable[BookingStatus],
    ) -> List[Booking]:
        wanted = {BookingStatus(status) for status in statuses}
        matches = [
            booking for booking in self._bookings.values()
            if booking.provider_id == provider_id
            and booking.status in wanted
            and booking.interval.overlaps(window)
        ]
        return sorted(matches, key=lambda booking: (booking.interval.start, booking.id))

    async def query_blocked_times(
        self,
        provider_id: str,
        listing_id: str,
        window: TimeInterval,
    ) -> List[BlockedTime]:
        matches = [
            block for block in self._blocked_times.values()
            if block.provider_id == provider_id
            and block.applies_to(listing_id)
            and (block.recurring_yearly or block.effective_interval().overlaps(window))
        ]
        return sorted(matches, key=lambda block: block.id)

    async def query_calendar_connections(self, user_id: str) -> List[CalendarConnection]:
        return [
            connection for connection in self._connections.values()
            if connection.user_id == user_id
        ]

    # Loading

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InMemoryStorage":
        """
        Build a storage populated from a plain mapping.

        Expected keys: ``listings``, ``blocked_times``, ``bookings`` and
        ``calendar_connections``, each a list of records.
        """
        storage = cls()

        for raw in data.get("listings", []) or []:
            storage.add_listing(_parse_listing(raw))

        listings = storage._listings

        for raw in data.get("blocked_times", []) or []:
            storage.add_blocked_time(_parse_blocked_time(raw))

        for raw in data.get("bookings", []) or []:
            booking = _parse_booking(raw, listings)
            storage._bookings[booking.id] = booking

        for raw in data.get("calendar_connections", []) or []:
            storage.add_calendar_connection(_parse_connection(raw))

        return storage

    @classmethod
    def load_from_yaml(cls, data_path: Path) -> "InMemoryStorage":
        """
        Load listings, bookings, blocked times and connections from a YAML file.

        Raises:
            FileNotFoundError: If the data file doesn't exist
            ValueError: If the file is not valid YAML or has the wrong shape
        """
        if not data_path.exists():
            raise FileNotFoundError(f"Data file not found: {data_path}")

        try:
            with open(data_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {data_path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ValueError("Data file must contain a mapping at the root level.")

        return cls.from_dict(data)


def _parse_datetime(value: Any, timezone: str) -> DateTime:
    parsed = pendulum.parse(str(value), tz=timezone)
    if not isinstance(parsed, DateTime):
        raise ValidationError(f"Expected a date and time, got {value!r}")
    return parsed.in_timezone(timezone)


def _parse_listing(raw: Mapping[str, Any]) -> Listing:
    working_hours = raw.get("working_hours")
    return Listing(
        id=str(raw["id"]),
        provider_id=str(raw["provider_id"]),
        title=raw.get("title", ""),
        timezone=raw.get("timezone", "UTC"),
        working_hours=WorkingHours.from_mapping(working_hours) if working_hours else WorkingHours.full_day(),
        break_times=[
            BreakTime(
                start=parse_clock(item["start"]),
                end=parse_clock(item["end"]),
                title=item.get("title", "Break"),
            )
            for item in raw.get("break_times", []) or []
        ],
        buffer_minutes=int(raw.get("buffer_minutes", 0)),
        default_duration_minutes=int(raw.get("default_duration_minutes", 60)),
        advance_booking_days=int(raw.get("advance_booking_days", 365)),
        same_day_booking=bool(raw.get("same_day_booking", True)),
        auto_confirm=bool(raw.get("auto_confirm", False)),
        booking_enabled=bool(raw.get("booking_enabled", True)),
    )


def _parse_blocked_time(raw: Mapping[str, Any]) -> BlockedTime:
    timezone = raw.get("timezone", "UTC")
    return BlockedTime(
        id=str(raw.get("id") or uuid.uuid4().hex),
        provider_id=str(raw["provider_id"]),
        listing_id=str(raw.get("listing_id") or ""),
        title=raw.get("title", ""),
        interval=TimeInterval(
            start=_parse_datetime(raw["start"], timezone),
            end=_parse_datetime(raw["end"], timezone),
            timezone=timezone,
        ),
        is_all_day=bool(raw.get("is_all_day", False)),
        block_type=BlockType(raw.get("block_type", BlockType.PERSONAL.value)),
        recurring_yearly=bool(raw.get("recurring_yearly", False)),
    )


def _parse_booking(raw: Mapping[str, Any], listings: Mapping[str, Listing]) -> Booking:
    listing_id = str(raw["listing_id"])
    listing = listings.get(listing_id)
    if listing is None:
        raise NotFoundError("Listing", listing_id)

    timezone = raw.get("timezone", listing.timezone)
    start = _parse_datetime(raw["start"], timezone)
    interval = TimeInterval(start=start, end=_parse_datetime(raw["end"], timezone), timezone=timezone)

    return Booking(
        id=str(raw.get("id") or uuid.uuid4().hex),
        listing_id=listing_id,
        provider_id=listing.provider_id,
        customer_id=str(raw.get("customer_id", "")),
        interval=interval,
        created_at=_parse_datetime(raw["created_at"], timezone) if raw.get("created_at") else start,
        service_name=raw.get("service_name", listing.title),
        currency=raw.get("currency", "USD"),
        status=BookingStatus(raw.get("status", BookingStatus.PENDING.value)),
        customer_notes=raw.get("customer_notes", ""),
        provider_notes=raw.get("provider_notes", ""),
    )


def _parse_connection(raw: Mapping[str, Any]) -> CalendarConnection:
    return CalendarConnection(
        id=str(raw["id"]),
        user_id=str(raw["user_id"]),
        provider=CalendarProvider(raw.get("provider", CalendarProvider.INTERNAL.value)),
        calendar_id=str(raw.get("calendar_id", "primary")),
        is_primary=bool(raw.get("is_primary", False)),
        sync_enabled=bool(raw.get("sync_enabled", True)),
        credentials=dict(raw.get("credentials", {}) or {}),
    )
