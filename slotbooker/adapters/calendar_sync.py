"""
External calendar synchronisation boundary.

A ``CalendarSyncAdapter`` lists a user's calendar connections and fetches busy
intervals for one connection. ``gather_external_busy`` fans out over all
connections with a per-connection deadline and turns every failure into a
``SyncError`` record instead of aborting the availability computation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Protocol, Sequence

from ..domain.exceptions import AuthenticationError, CalendarAPIError, SyncError
from ..domain.intervals import sort_key
from ..domain.models import Booking, CalendarConnection, CalendarProvider, TimeInterval
from .storage import BookingStorage

logger = logging.getLogger(__name__)

# Failure id reported when a user's connections could not be listed
CONNECTION_LOOKUP_ID = "connection-lookup"


class CalendarSyncAdapter(Protocol):
    """Protocol describing the calendar capability needed by the resolver."""

    async def list_connections(self, user_id: str) -> List[CalendarConnection]:
        """Return the user's sync-enabled connections."""

    async def fetch_busy_intervals(
        self,
        connection: CalendarConnection,
        window: TimeInterval,
    ) -> List[TimeInterval]:
        """Return busy intervals of one connection overlapping ``window``."""

    async def push_booking(self, connection: CalendarConnection, booking: Booking) -> Optional[str]:
        """Write a created booking to the connection; return the external event id."""


class CalendarProviderClient(Protocol):
    """Protocol for one external calendar API (Google, Outlook, ...)."""

    async def refresh_credentials(self, connection: CalendarConnection) -> CalendarConnection:
        """Return the connection with usable credentials, refreshing them if they expired."""

    async def fetch_events(
        self,
        connection: CalendarConnection,
        window: TimeInterval,
    ) -> List[TimeInterval]:
        """Return busy event intervals in ``window``."""

    async def create_event(self, connection: CalendarConnection, booking: Booking) -> Optional[str]:
        """Create an event for ``booking``; return its id."""


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry settings applied at the calendar boundary.

    Each attempt is bounded by ``attempt_timeout_seconds``; the whole fetch
    for one connection, retries and backoff included, by ``deadline_seconds``.
    """
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    backoff_multiplier: float = 2.0
    attempt_timeout_seconds: float = 5.0
    deadline_seconds: float = 10.0

    def delay_before(self, attempt: int) -> float:
        """Backoff before attempt number ``attempt`` (1-based)."""
        if attempt <= 1:
            return 0.0
        return self.backoff_seconds * (self.backoff_multiplier ** (attempt - 2))


@dataclass
class SyncOutcome:
    """Busy intervals from the connections that succeeded plus the failures."""
    intervals: List[TimeInterval] = field(default_factory=list)
    errors: List[SyncError] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.errors)

    @property
    def failed_connection_ids(self) -> List[str]:
        return sorted(error.connection_id for error in self.errors)

    @property
    def primary_failed(self) -> bool:
        return any(error.is_primary for error in self.errors)


class NullCalendarSyncAdapter:
    """Adapter for platforms without calendar access: no connections, no busy time."""

    async def list_connections(self, user_id: str) -> List[CalendarConnection]:
        return []

    async def fetch_busy_intervals(
        self,
        connection: CalendarConnection,
        window: TimeInterval,
    ) -> List[TimeInterval]:
        return []

    async def push_booking(self, connection: CalendarConnection, booking: Booking) -> Optional[str]:
        return None


class ProviderCalendarSyncAdapter:
    """
    Sync adapter backed by stored connections and per-provider API clients.

    Connections whose provider has no registered client are reported as
    failed rather than silently ignored.
    """

    def __init__(
        self,
        storage: BookingStorage,
        clients: Mapping[CalendarProvider, CalendarProviderClient],
        retry_policy: Optional[RetryPolicy] = None,
        sleep=asyncio.sleep,
    ) -> None:
        self._storage = storage
        self._clients: Dict[CalendarProvider, CalendarProviderClient] = dict(clients)
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def list_connections(self, user_id: str) -> List[CalendarConnection]:
        connections = await self._storage.query_calendar_connections(user_id)
        return [connection for connection in connections if connection.sync_enabled]

    async def fetch_busy_intervals(
        self,
        connection: CalendarConnection,
        window: TimeInterval,
    ) -> List[TimeInterval]:
        """
        Refresh credentials and fetch events, retrying transient failures.

        Raises:
            SyncError: When the connection cannot be read after all attempts
                or within ``deadline_seconds``
        """
        client = self._client_for(connection)
        deadline = self._retry_policy.deadline_seconds
        try:
            return await asyncio.wait_for(self._fetch_with_retries(client, connection, window), timeout=deadline)
        except asyncio.TimeoutError as exc:
            raise SyncError(connection.id, f"gave up after the {deadline}s deadline", connection.is_primary) from exc

    async def _fetch_with_retries(
        self,
        client: CalendarProviderClient,
        connection: CalendarConnection,
        window: TimeInterval,
    ) -> List[TimeInterval]:
        policy = self._retry_policy
        last_error: Optional[Exception] = None

        for attempt in range(1, policy.max_attempts + 1):
            delay = policy.delay_before(attempt)
            if delay:
                await self._sleep(delay)

            try:
                refreshed = await asyncio.wait_for(
                    client.refresh_credentials(connection),
                    timeout=policy.attempt_timeout_seconds,
                )
                return await asyncio.wait_for(
                    client.fetch_events(refreshed, window),
                    timeout=policy.attempt_timeout_seconds,
                )
            except AuthenticationError as exc:
                # A rejected refresh token will not fix itself on retry
                raise SyncError(connection.id, f"credential refresh failed: {exc}", connection.is_primary) from exc
            except (CalendarAPIError, asyncio.TimeoutError) as exc:
                last_error = exc
                logger.warning(
                    "Calendar fetch for connection %s failed (attempt %d/%d): %s",
                    connection.id, attempt, policy.max_attempts, exc or type(exc).__name__,
                )

        reason = str(last_error) or type(last_error).__name__
        raise SyncError(connection.id, reason, connection.is_primary) from last_error

    async def push_booking(self, connection: CalendarConnection, booking: Booking) -> Optional[str]:
        client = self._client_for(connection)
        policy = self._retry_policy
        try:
            refreshed = await asyncio.wait_for(
                client.refresh_credentials(connection),
                timeout=policy.attempt_timeout_seconds,
            )
            return await asyncio.wait_for(
                client.create_event(refreshed, booking),
                timeout=policy.attempt_timeout_seconds,
            )
        except (AuthenticationError, CalendarAPIError, asyncio.TimeoutError) as exc:
            raise SyncError(connection.id, f"event write-back failed: {exc}", connection.is_primary) from exc

    def _client_for(self, connection: CalendarConnection) -> CalendarProviderClient:
        client = self._clients.get(connection.provider)
        if client is None:
            raise SyncError(
                connection.id,
                f"no client configured for {connection.provider.value} calendars",
                connection.is_primary,
            )
        return client


async def gather_external_busy(
    adapter: CalendarSyncAdapter,
    user_id: str,
    window: TimeInterval,
    deadline_seconds: float,
) -> SyncOutcome:
    """
    Fetch busy intervals from every connection of ``user_id`` concurrently.

    The connection lookup and the fetches share ``deadline_seconds``. A
    connection that fails in any way or runs out of time is recorded as
    failed; the others still contribute their intervals. If the lookup
    itself fails, the outcome carries a single failure under
    ``CONNECTION_LOOKUP_ID``, flagged as primary since no connection could
    be vouched for.
    """
    loop = asyncio.get_running_loop()
    started = loop.time()

    try:
        connections: Sequence[CalendarConnection] = await asyncio.wait_for(
            adapter.list_connections(user_id),
            timeout=deadline_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning("Listing calendar connections of %s timed out after %.1fs", user_id, deadline_seconds)
        return SyncOutcome(errors=[
            SyncError(CONNECTION_LOOKUP_ID, f"connection lookup timed out after {deadline_seconds}s", True),
        ])
    except Exception as exc:
        logger.exception("Listing calendar connections of %s failed", user_id)
        return SyncOutcome(errors=[SyncError(CONNECTION_LOOKUP_ID, f"connection lookup failed: {exc}", True)])

    if not connections:
        return SyncOutcome()

    remaining = max(deadline_seconds - (loop.time() - started), 0.0)

    async def fetch_one(connection: CalendarConnection):
        try:
            return await asyncio.wait_for(
                adapter.fetch_busy_intervals(connection, window),
                timeout=remaining,
            )
        except asyncio.TimeoutError:
            logger.warning("Calendar connection %s timed out after %.1fs", connection.id, deadline_seconds)
            return SyncError(connection.id, f"timed out after {deadline_seconds}s", connection.is_primary)
        except SyncError as exc:
            logger.warning("Calendar connection %s failed: %s", connection.id, exc.reason)
            return exc
        except Exception as exc:
            logger.exception("Calendar connection %s failed unexpectedly", connection.id)
            return SyncError(connection.id, f"unexpected {type(exc).__name__}: {exc}", connection.is_primary)

    results = await asyncio.gather(*(fetch_one(connection) for connection in connections))

    outcome = SyncOutcome()
    for result in results:
        if isinstance(result, SyncError):
            outcome.errors.append(result)
        else:
            outcome.intervals.extend(result)

    outcome.intervals.sort(key=sort_key)
    return outcome
