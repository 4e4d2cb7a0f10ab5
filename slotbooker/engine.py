"""
Public entry point: wires storage, calendar sync and services together.
"""

import logging
from typing import Callable, Dict, Mapping, Optional

import pendulum
from pendulum import Date, DateTime

from .adapters.calendar_sync import (
    CalendarProviderClient,
    CalendarSyncAdapter,
    NullCalendarSyncAdapter,
    ProviderCalendarSyncAdapter,
)
from .adapters.google_calendar import GoogleCalendarClient
from .adapters.outlook_calendar import OutlookCalendarClient
from .adapters.storage import BookingStorage
from .adapters.token_store import TokenStore
from .config import AppConfig
from .domain.models import (
    Actor,
    AvailabilityResult,
    Booking,
    BookingAction,
    BookingRequest,
    CalendarProvider,
    RecurringBookingRequest,
    RecurringBookingResult,
)
from .domain.recurrence import RecurrenceExpander
from .domain.slot_generator import SlotGenerator
from .services.availability import AvailabilityResolver
from .services.bookings import BookingService
from .services.conflicts import ConflictDetector

logger = logging.getLogger(__name__)


class SchedulingEngine:
    """
    Facade over availability and booking services.

    All operations are coroutines and hold no state between calls.
    """

    def __init__(self, resolver: AvailabilityResolver, bookings: BookingService):
        self.resolver = resolver
        self.bookings = bookings

    async def get_available_slots(
        self,
        listing_id: str,
        day,
        duration_minutes: Optional[int] = None,
    ) -> AvailabilityResult:
        return await self.resolver.get_available_slots(listing_id, day, duration_minutes)

    async def get_availability_calendar(
        self,
        listing_id: str,
        start_date,
        end_date,
        duration_minutes: Optional[int] = None,
    ) -> Dict[Date, AvailabilityResult]:
        return await self.resolver.get_availability_calendar(listing_id, start_date, end_date, duration_minutes)

    async def create_booking(self, request: BookingRequest) -> Booking:
        return await self.bookings.create_booking(request)

    async def create_recurring_bookings(
        self,
        request: BookingRequest,
        pattern: RecurringBookingRequest,
    ) -> RecurringBookingResult:
        return await self.bookings.create_recurring_bookings(request, pattern)

    async def transition_booking(
        self,
        booking_id: str,
        action: BookingAction,
        actor: Actor = Actor.PROVIDER,
        notes: Optional[str] = None,
    ) -> Booking:
        return await self.bookings.transition_booking(booking_id, action, actor=actor, notes=notes)


def build_provider_clients(config: AppConfig) -> Dict[CalendarProvider, CalendarProviderClient]:
    """Create API clients for every calendar provider configured in ``config``."""
    token_store = TokenStore(service_name=config.keyring_service)
    clients: Dict[CalendarProvider, CalendarProviderClient] = {}

    if config.google is not None:
        clients[CalendarProvider.GOOGLE] = GoogleCalendarClient(
            client_id=config.google.client_id,
            client_secret=config.google.client_secret,
            token_store=token_store,
        )

    if config.outlook is not None:
        clients[CalendarProvider.OUTLOOK] = OutlookCalendarClient(
            client_id=config.outlook.client_id,
            client_secret=config.outlook.client_secret,
            tenant_id=config.outlook.tenant_id,
            token_store=token_store,
        )

    return clients


def build_engine(
    config: AppConfig,
    storage: BookingStorage,
    calendar_sync: Optional[CalendarSyncAdapter] = None,
    clients: Optional[Mapping[CalendarProvider, CalendarProviderClient]] = None,
    clock: Optional[Callable[[], DateTime]] = None,
) -> SchedulingEngine:
    """
    Assemble a SchedulingEngine from configuration.

    Args:
        config: Application configuration
        storage: Booking storage backend
        calendar_sync: Ready-made sync adapter; takes precedence over ``clients``
        clients: Calendar API clients per provider; built from ``config`` when omitted
        clock: Source of "now"; defaults to pendulum.now in the configured timezone
    """
    clock = clock or (lambda: pendulum.now(config.timezone))

    if calendar_sync is None:
        if clients is None:
            clients = build_provider_clients(config)
        if clients:
            calendar_sync = ProviderCalendarSyncAdapter(
                storage, clients, retry_policy=config.sync.to_retry_policy()
            )
        else:
            logger.debug("No calendar providers configured; external sync disabled")
            calendar_sync = NullCalendarSyncAdapter()

    expander = RecurrenceExpander(max_occurrences=config.defaults.max_recurring_occurrences)

    resolver = AvailabilityResolver(
        storage,
        calendar_sync,
        slot_generator=SlotGenerator(granularity_minutes=config.defaults.slot_granularity_minutes),
        expander=expander,
        sync_policy=config.sync.failure_policy,
        sync_deadline_seconds=config.sync.deadline_seconds,
        storage_timeout_seconds=config.storage_timeout_seconds,
        clock=clock,
    )

    bookings = BookingService(
        storage,
        ConflictDetector(resolver),
        calendar_sync,
        expander=expander,
        clock=clock,
        storage_timeout_seconds=config.storage_timeout_seconds,
        sync_deadline_seconds=config.sync.deadline_seconds,
    )

    return SchedulingEngine(resolver, bookings)
