"""
Google Calendar API client for busy-time fetching and booking write-back.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import pendulum
import requests
from pendulum import DateTime

from ..domain.exceptions import AuthenticationError, CalendarAPIError
from ..domain.models import Booking, CalendarConnection, TimeInterval
from .token_store import TokenStore, token_expired

logger = logging.getLogger(__name__)


class GoogleCalendarClient:
    """
    Client for Google Calendar v3.

    Uses the events list endpoint with ``singleEvents=true`` so recurring
    events arrive already expanded. Blocking ``requests`` calls run in a
    worker thread; callers bound them with their own timeouts.
    """

    CALENDAR_API_ENDPOINT = "https://www.googleapis.com/calendar/v3"
    TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
    PAGE_SIZE = 250

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_store: Optional[TokenStore] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ):
        """
        Initialize the Google Calendar client.

        Args:
            client_id: OAuth client ID
            client_secret: OAuth client secret
            token_store: Optional keyring-backed store for refreshed tokens
            session: Optional requests session (tests inject a stub)
            timeout: Per-request HTTP timeout in seconds
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_store = token_store
        self.session = session or requests.Session()
        self.timeout = timeout

    async def refresh_credentials(self, connection: CalendarConnection) -> CalendarConnection:
        return await asyncio.to_thread(self._refresh_credentials, connection)

    async def fetch_events(self, connection: CalendarConnection, window: TimeInterval) -> List[TimeInterval]:
        return await asyncio.to_thread(self._fetch_events, connection, window)

    async def create_event(self, connection: CalendarConnection, booking: Booking) -> Optional[str]:
        return await asyncio.to_thread(self._create_event, connection, booking)

    def _refresh_credentials(self, connection: CalendarConnection) -> CalendarConnection:
        """
        Return the connection with a valid access token.

        Raises:
            AuthenticationError: If Google rejects the refresh token
            CalendarAPIError: If the token endpoint cannot be reached
        """
        if self.token_store is not None:
            credentials = self.token_store.merged(connection.id, connection.credentials)
        else:
            credentials = dict(connection.credentials)

        if not token_expired(credentials):
            return replace(connection, credentials=credentials)

        refresh_token = credentials.get("refresh_token")
        if not refresh_token:
            raise AuthenticationError(f"Connection {connection.id} has no refresh token")

        try:
            response = self.session.post(
                self.TOKEN_ENDPOINT,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise CalendarAPIError(f"Google token refresh request failed: {e}") from e

        if response.status_code in (400, 401):
            self._forget(connection)
            raise AuthenticationError(f"Google token refresh rejected: {response.text}")
        if not response.ok:
            raise CalendarAPIError(f"Google token refresh failed with HTTP {response.status_code}")

        try:
            data = response.json()
            credentials["access_token"] = data["access_token"]
            expires_in = int(data.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise CalendarAPIError(f"Unexpected Google token response: {response.text}") from e
        credentials["token_expires_at"] = pendulum.now("UTC").add(seconds=expires_in).to_iso8601_string()

        if self.token_store is not None:
            self.token_store.save(connection.id, credentials)

        logger.info("Refreshed Google Calendar token for connection %s", connection.id)
        return replace(connection, credentials=credentials)

    def _forget(self, connection: CalendarConnection) -> None:
        """Evict stored credentials once Google has rejected their refresh token."""
        if self.token_store is not None:
            self.token_store.delete(connection.id)

    def _headers(self, connection: CalendarConnection) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {connection.credentials.get('access_token', '')}",
            "Content-Type": "application/json",
        }

    def _fetch_events(self, connection: CalendarConnection, window: TimeInterval) -> List[TimeInterval]:
        """
        Get busy event intervals for one calendar.

        Raises:
            CalendarAPIError: If the API call fails
        """
        url = f"{self.CALENDAR_API_ENDPOINT}/calendars/{quote(connection.calendar_id, safe='')}/events"
        params: Dict[str, Any] = {
            "timeMin": window.start.in_timezone("UTC").to_iso8601_string(),
            "timeMax": window.end.in_timezone("UTC").to_iso8601_string(),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": self.PAGE_SIZE,
        }

        items: List[Dict[str, Any]] = []
        while True:
            try:
                response = self.session.get(
                    url,
                    headers=self._headers(connection),
                    params=params,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                data = response.json()
            except requests.exceptions.RequestException as e:
                raise CalendarAPIError(f"Failed to fetch events from Google Calendar: {e}") from e

            items.extend(data.get("items", []))

            page_token = data.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token

        return self._parse_events(items, window)

    def _parse_events(self, items: List[Dict[str, Any]], window: TimeInterval) -> List[TimeInterval]:
        """
        Parse event items into busy intervals.

        Cancelled events, transparent ("show as free") events and all-day
        events (``date`` instead of ``dateTime``) do not block time.
        """
        busy: List[TimeInterval] = []

        for item in items:
            if item.get("status") == "cancelled":
                continue
            if item.get("transparency") == "transparent":
                continue

            start_raw = item.get("start", {}).get("dateTime")
            end_raw = item.get("end", {}).get("dateTime")
            if not start_raw or not end_raw:
                continue

            try:
                start = self._parse_datetime(start_raw, window.timezone)
                end = self._parse_datetime(end_raw, window.timezone)
                interval = TimeInterval(start=start, end=end, timezone=window.timezone)
            except ValueError as e:
                logger.warning("Skipping unparseable Google event %s: %s", item.get("id"), e)
                continue

            if interval.overlaps(window):
                busy.append(interval)

        return busy

    @staticmethod
    def _parse_datetime(datetime_str: str, timezone: str) -> DateTime:
        dt = pendulum.parse(datetime_str)
        if isinstance(dt, DateTime):
            return dt.in_timezone(timezone)
        raise ValueError(f"Could not parse datetime: {datetime_str}")

    def _create_event(self, connection: CalendarConnection, booking: Booking) -> Optional[str]:
        url = f"{self.CALENDAR_API_ENDPOINT}/calendars/{quote(connection.calendar_id, safe='')}/events"
        payload = {
            "summary": booking.service_name or "Booking",
            "description": booking.customer_notes,
            "start": {
                "dateTime": booking.interval.start.to_iso8601_string(),
                "timeZone": booking.interval.timezone,
            },
            "end": {
                "dateTime": booking.interval.end.to_iso8601_string(),
                "timeZone": booking.interval.timezone,
            },
            "extendedProperties": {"private": {"booking_id": booking.id}},
        }

        try:
            response = self.session.post(
                url,
                headers=self._headers(connection),
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json().get("id")
        except requests.exceptions.RequestException as e:
            raise CalendarAPIError(f"Failed to create Google Calendar event: {e}") from e
