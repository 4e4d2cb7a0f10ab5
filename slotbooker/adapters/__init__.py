"""
Adapters layer - Storage and external calendar integrations.
"""

from .calendar_sync import (
    CalendarProviderClient,
    CalendarSyncAdapter,
    NullCalendarSyncAdapter,
    ProviderCalendarSyncAdapter,
    RetryPolicy,
    SyncOutcome,
    gather_external_busy,
)
from .google_calendar import GoogleCalendarClient
from .mock_calendar_client import MockCalendarClient
from .outlook_calendar import OutlookCalendarClient
from .storage import BookingStorage, InMemoryStorage
from .token_store import TokenStore

__all__ = [
    "BookingStorage",
    "CalendarProviderClient",
    "CalendarSyncAdapter",
    "GoogleCalendarClient",
    "InMemoryStorage",
    "MockCalendarClient",
    "NullCalendarSyncAdapter",
    "OutlookCalendarClient",
    "ProviderCalendarSyncAdapter",
    "RetryPolicy",
    "SyncOutcome",
    "TokenStore",
    "gather_external_busy",
]
