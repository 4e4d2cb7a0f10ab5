"""
Microsoft Graph (Outlook) calendar client with MSAL token refresh.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional

import msal
import pendulum
import requests
from pendulum import DateTime

from ..domain.exceptions import AuthenticationError, CalendarAPIError
from ..domain.models import Booking, CalendarConnection, TimeInterval
from .token_store import TokenStore, token_expired

logger = logging.getLogger(__name__)


class OutlookCalendarClient:
    """
    Client for Microsoft Graph calendar operations.

    Busy time comes from ``/me/calendars/{id}/calendarView``, which expands
    recurring events inside the requested window.
    """

    GRAPH_API_ENDPOINT = "https://graph.microsoft.com/v1.0"

    # Required scopes for calendar access
    SCOPES = ["Calendars.ReadWrite"]

    # We consider these showAs values as "busy"
    BUSY_STATUSES = {"busy", "tentative", "oof", "workingelsewhere"}

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        tenant_id: str = "common",
        token_store: Optional[TokenStore] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        app: Optional[msal.ClientApplication] = None,
    ):
        """
        Initialize the Outlook client.

        Args:
            client_id: Azure AD application (client) ID
            client_secret: Azure AD client secret
            tenant_id: Azure AD tenant ID, "common" for multi-tenant apps
            token_store: Optional keyring-backed store for refreshed tokens
            session: Optional requests session
            timeout: Per-request HTTP timeout in seconds
            app: Optional pre-built MSAL application
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.authority = f"https://login.microsoftonline.com/{tenant_id}"
        self.token_store = token_store
        self.session = session or requests.Session()
        self.timeout = timeout
        self._app = app

    @property
    def app(self) -> msal.ClientApplication:
        if self._app is None:
            self._app = msal.ConfidentialClientApplication(
                client_id=self.client_id,
                client_credential=self.client_secret,
                authority=self.authority,
            )
        return self._app

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
            AuthenticationError: If the refresh token is rejected
            CalendarAPIError: If the identity platform cannot be reached
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
            result = self.app.acquire_token_by_refresh_token(refresh_token, scopes=self.SCOPES)
        except requests.exceptions.RequestException as exc:
            raise CalendarAPIError(f"Outlook token refresh request failed: {exc}") from exc

        if "access_token" not in result:
            if self.token_store is not None:
                self.token_store.delete(connection.id)
            error = result.get("error_description", "Unknown error")
            raise AuthenticationError(f"Outlook token refresh failed: {error}")

        credentials["access_token"] = result["access_token"]
        credentials["token_expires_at"] = (
            pendulum.now("UTC").add(seconds=int(result.get("expires_in", 3600))).to_iso8601_string()
        )
        if result.get("refresh_token"):
            credentials["refresh_token"] = result["refresh_token"]

        if self.token_store is not None:
            self.token_store.save(connection.id, credentials)

        logger.info("Refreshed Outlook token for connection %s", connection.id)
        return replace(connection, credentials=credentials)

    def _headers(self, connection: CalendarConnection) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {connection.credentials.get('access_token', '')}",
            "Content-Type": "application/json",
            "Prefer": 'outlook.timezone="UTC"',
        }

    def _fetch_events(self, connection: CalendarConnection, window: TimeInterval) -> List[TimeInterval]:
        """
        Get busy intervals from the calendar view, following paging links.

        Raises:
            CalendarAPIError: If the API call fails
        """
        url: Optional[str] = f"{self.GRAPH_API_ENDPOINT}/me/calendars/{connection.calendar_id}/calendarView"
        params: Optional[Dict[str, Any]] = {
            "startDateTime": window.start.in_timezone("UTC").to_iso8601_string(),
            "endDateTime": window.end.in_timezone("UTC").to_iso8601_string(),
            "$orderby": "start/dateTime",
        }

        events: List[Dict[str, Any]] = []
        while url:
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
                raise CalendarAPIError(f"Failed to fetch calendar view from Microsoft Graph: {e}") from e

            events.extend(data.get("value", []))
            url = data.get("@odata.nextLink")
            # nextLink already carries the query string
            params = None

        return self._parse_calendar_view(events, window)

    def _parse_calendar_view(self, events: List[Dict[str, Any]], window: TimeInterval) -> List[TimeInterval]:
        """
        Parse calendarView events into busy intervals.

        Event format (times in UTC because of the Prefer header):
        {
            "showAs": "busy",
            "isCancelled": false,
            "start": {"dateTime": "2025-01-06T09:00:00.0000000", "timeZone": "UTC"},
            "end": {"dateTime": "2025-01-06T10:00:00.0000000", "timeZone": "UTC"}
        }
        """
        busy: List[TimeInterval] = []

        for event in events:
            status = str(event.get("showAs", "")).lower()
            if status not in self.BUSY_STATUSES or event.get("isCancelled"):
                continue

            try:
                start = self._parse_datetime(event["start"], window.timezone)
                end = self._parse_datetime(event["end"], window.timezone)
                interval = TimeInterval(start=start, end=end, timezone=window.timezone)
            except (KeyError, ValueError) as e:
                logger.warning("Could not parse calendar event %s: %s", event.get("id"), e)
                continue

            if interval.overlaps(window):
                busy.append(interval)

        return busy

    @staticmethod
    def _parse_datetime(value: Dict[str, str], timezone: str) -> DateTime:
        """
        Parse a Graph ``dateTimeTimeZone`` object to a pendulum DateTime in ``timezone``.
        """
        dt = pendulum.parse(value["dateTime"], tz=value.get("timeZone") or "UTC")
        if isinstance(dt, DateTime):
            return dt.in_timezone(timezone)
        raise ValueError(f"Could not parse datetime: {value['dateTime']}")

    def _create_event(self, connection: CalendarConnection, booking: Booking) -> Optional[str]:
        url = f"{self.GRAPH_API_ENDPOINT}/me/calendars/{connection.calendar_id}/events"
        utc = booking.interval.normalized()
        payload = {
            "subject": booking.service_name or "Booking",
            "body": {"contentType": "text", "content": booking.customer_notes},
            "start": {"dateTime": utc.start.format("YYYY-MM-DDTHH:mm:ss"), "timeZone": "UTC"},
            "end": {"dateTime": utc.end.format("YYYY-MM-DDTHH:mm:ss"), "timeZone": "UTC"},
            "showAs": "busy",
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
            raise CalendarAPIError(f"Failed to create Outlook event: {e}") from e
