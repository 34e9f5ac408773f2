"""
Google Calendar client.

Fetches raw event resources from the Calendar v3 REST API over httpx. An
expired access token is refreshed once per request when a refresh token and
OAuth client credentials are configured.
"""
from __future__ import annotations

import logging
import typing as t
from datetime import datetime

import httpx

from pipeline.errors import CalendarAuthError, CalendarFetchError

logger = logging.getLogger(__name__)

CALENDAR_API_URL = "https://www.googleapis.com/calendar/v3"
TOKEN_URL = "https://oauth2.googleapis.com/token"

# Timeout for calendar and token requests (in seconds)
STANDARD_TIMEOUT = 15.0
DEFAULT_MAX_RESULTS = 50


class GoogleCalendarClient:
    """Reads events from one Google calendar with OAuth2 bearer credentials."""

    def __init__(
        self,
        access_token: str,
        refresh_token: t.Optional[str] = None,
        client_id: t.Optional[str] = None,
        client_secret: t.Optional[str] = None,
        calendar_id: str = "primary",
        timeout: float = STANDARD_TIMEOUT,
        transport: t.Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.client_id = client_id
        self.client_secret = client_secret
        self.calendar_id = calendar_id
        self.timeout = timeout
        self._transport = transport

    def update_credentials(self, access_token: str, refresh_token: t.Optional[str] = None) -> None:
        """Swap in a new access token (e.g. after an external refresh)."""
        self.access_token = access_token
        if refresh_token:
            self.refresh_token = refresh_token

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token and self.client_id and self.client_secret)

    async def fetch_events(
        self,
        time_min: t.Optional[datetime] = None,
        time_max: t.Optional[datetime] = None,
        limit: t.Optional[int] = None,
    ) -> list[dict[str, t.Any]]:
        """Fetch upcoming events as raw Calendar v3 resources.

        Args:
            time_min: Lower bound on event end time
            time_max: Upper bound on event start time
            limit: Maximum number of events to return

        Returns:
            The ``items`` of the events list response

        Raises:
            CalendarAuthError: If the credentials are rejected and cannot be refreshed
            CalendarFetchError: On any other network or HTTP failure
        """
        params: dict[str, t.Any] = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": limit or DEFAULT_MAX_RESULTS,
        }
        if time_min is not None:
            params["timeMin"] = time_min.isoformat()
        if time_max is not None:
            params["timeMax"] = time_max.isoformat()

        url = f"{CALENDAR_API_URL}/calendars/{self.calendar_id}/events"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, params=params, headers=self._headers())
                if response.status_code == 401 and self.can_refresh:
                    logger.info("Calendar access token rejected, refreshing")
                    await self._refresh(client)
                    response = await client.get(url, params=params, headers=self._headers())
                if response.status_code in (401, 403):
                    raise CalendarAuthError(
                        f"Calendar rejected credentials: {response.status_code} {response.text}"
                    )
                response.raise_for_status()
                payload = response.json()
        except CalendarFetchError:
            raise
        except httpx.TimeoutException:
            raise CalendarFetchError(f"Calendar request timed out after {self.timeout} seconds")
        except httpx.HTTPStatusError as e:
            raise CalendarFetchError(
                f"HTTP error from calendar: {e.response.status_code} {e.response.text}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise CalendarFetchError(f"Error calling calendar: {e}") from e

        items = payload.get("items", [])
        logger.debug("Fetched %d calendar event(s)", len(items))
        return items

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    async def _refresh(self, client: httpx.AsyncClient) -> None:
        response = await client.post(TOKEN_URL, data={
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": self.refresh_token,
            "grant_type": "refresh_token",
        })
        if response.status_code != 200:
            raise CalendarAuthError(
                f"Token refresh failed: {response.status_code} {response.text}"
            )
        self.access_token = response.json()["access_token"]
