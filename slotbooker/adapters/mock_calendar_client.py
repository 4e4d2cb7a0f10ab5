"""
Mock calendar provider client for running without external accounts.
"""

import json
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import pendulum

from ..domain.models import Booking, CalendarConnection, TimeInterval


class MockCalendarClient:
    """
    Mock client that serves events from a JSON list instead of a real API.

    Each event is ``{"calendarId": ..., "start": ..., "end": ..., "title": ...}``
    with ISO 8601 times. Events written back are kept in ``created_events``.
    """

    def __init__(self, events: Optional[List[Dict[str, Any]]] = None, data_file: Optional[Path] = None):
        """
        Initialize the mock client.

        Args:
            events: Inline event list
            data_file: JSON file to load events from when ``events`` is not given
        """
        self.calendar_events: List[Dict[str, Any]] = list(events or [])
        self.created_events: List[Dict[str, Any]] = []
        if events is None and data_file is not None:
            self._load_calendar_data(data_file)

    def _load_calendar_data(self, data_file: Path) -> None:
        """Load mock calendar data from JSON file."""
        if data_file.exists():
            with open(data_file, "r", encoding="utf-8") as f:
                self.calendar_events = json.load(f)
        else:
            # Fallback to empty if file doesn't exist
            self.calendar_events = []

    async def refresh_credentials(self, connection: CalendarConnection) -> CalendarConnection:
        return connection

    async def fetch_events(self, connection: CalendarConnection, window: TimeInterval) -> List[TimeInterval]:
        busy: List[TimeInterval] = []

        # Filter events for this calendar that overlap with the window
        for event in self.calendar_events:
            if event.get("calendarId") != connection.calendar_id:
                continue

            try:
                start = pendulum.parse(event["start"], tz=window.timezone)
                end = pendulum.parse(event["end"], tz=window.timezone)
                interval = TimeInterval(start=start, end=end, timezone=window.timezone)
            except (KeyError, ValueError):
                # Skip invalid events
                continue

            if interval.overlaps(window):
                busy.append(interval)

        return busy

    async def create_event(self, connection: CalendarConnection, booking: Booking) -> Optional[str]:
        event_id = uuid.uuid4().hex
        self.created_events.append(
            {
                "id": event_id,
                "calendarId": connection.calendar_id,
                "start": booking.interval.start.to_iso8601_string(),
                "end": booking.interval.end.to_iso8601_string(),
                "title": booking.service_name,
                "booking_id": booking.id,
            }
        )
        return event_id
