"""
Google Calendar connectivity wrapper.

``googleapiclient`` is blocking, so every request runs in a worker thread and
is bounded by the client's request timeout. All failures surface as
``CalendarApiError`` carrying the HTTP status when there is one.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any

import google_auth_httplib2
import httplib2
import requests
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from hebbirthday_sync.models import MANAGED_APP_TAG
from hebbirthday_sync.models import CalendarApiError
from hebbirthday_sync.models import CalendarInfo
from hebbirthday_sync.models import CalendarSyncError

SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "openid",
]

REVOKE_URL = "https://oauth2.googleapis.com/revoke"


def load_credentials(
    token_file: Path,
    client_secrets_file: Path | None = None,
    interactive: bool = False,
) -> Credentials:
    """
    Load stored user credentials, refreshing them when expired.

    With ``interactive`` set and no usable token, runs the installed-app
    consent flow in the browser and stores the new token.

    Raises:
        CalendarSyncError: if no valid credentials can be obtained
    """
    logger = logging.getLogger(__name__)
    creds = None
    if token_file.exists():
        try:
            creds = Credentials.from_authorized_user_file(str(token_file), SCOPES)
        except ValueError as e:
            logger.warning(f"Ignoring unreadable token file {token_file}: {e}")

    if creds and creds.valid:
        return creds

    if creds and creds.expired and creds.refresh_token:
        try:
            creds.refresh(Request())
            token_file.write_text(creds.to_json(), encoding="utf-8")
            return creds
        except RefreshError as e:
            logger.warning(f"Stored Google token could not be refreshed: {e}")
            creds = None

    if not interactive:
        raise CalendarSyncError("Not connected to Google Calendar. Run 'hebbirthday-sync connect'.")

    if not client_secrets_file or not client_secrets_file.exists():
        raise CalendarSyncError(
            "Google OAuth client secrets file not found. "
            "Download it from the Google Cloud Console and set client_secrets_file."
        )

    flow = InstalledAppFlow.from_client_secrets_file(str(client_secrets_file), SCOPES)
    creds = flow.run_local_server(port=0)
    token_file.parent.mkdir(parents=True, exist_ok=True)
    token_file.write_text(creds.to_json(), encoding="utf-8")
    logger.info(f"Stored Google token in {token_file}")
    return creds


class GoogleCalendarClient:
    """Async wrapper for Google Calendar v3 operations."""

    def __init__(self, credentials: Credentials, timeout: float = 300.0):
        self.credentials = credentials
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)
        self._calendar = None
        self._oauth2 = None

    def _http(self) -> google_auth_httplib2.AuthorizedHttp:
        return google_auth_httplib2.AuthorizedHttp(
            self.credentials, http=httplib2.Http(timeout=int(self.timeout))
        )

    @property
    def calendar(self):
        if self._calendar is None:
            self._calendar = build("calendar", "v3", http=self._http(), cache_discovery=False)
        return self._calendar

    @property
    def oauth2(self):
        if self._oauth2 is None:
            self._oauth2 = build("oauth2", "v2", http=self._http(), cache_discovery=False)
        return self._oauth2

    async def _execute(self, request, what: str) -> dict[str, Any]:
        """Run a prepared request off the event loop, mapping failures to CalendarApiError."""
        try:
            result = await asyncio.wait_for(asyncio.to_thread(request.execute), self.timeout)
        except asyncio.TimeoutError as e:
            raise CalendarApiError(f"{what}: timed out after {self.timeout:.0f}s", timed_out=True) from e
        except HttpError as e:
            status = int(e.resp.status) if e.resp is not None else None
            raise CalendarApiError(f"{what}: {e.reason or e}", status=status) from e
        except (httplib2.HttpLib2Error, OSError) as e:
            raise CalendarApiError(f"{what}: network error: {e}") from e
        return result or {}

    # ------------------------------------------------------------------ #
    # Events                                                             #
    # ------------------------------------------------------------------ #

    async def create_event(
        self, calendar_id: str, body: dict[str, Any], event_id: str | None = None
    ) -> str:
        """Insert an event and return its id; ``event_id`` pins a client-chosen id."""
        if event_id:
            body = {**body, "id": event_id}
        request = self.calendar.events().insert(calendarId=calendar_id, body=body)
        created = await self._execute(request, "create event")
        return created.get("id", event_id or "")

    async def update_event(self, calendar_id: str, event_id: str, body: dict[str, Any]) -> str:
        """Patch an existing event, restoring it if it was cancelled."""
        request = self.calendar.events().patch(
            calendarId=calendar_id, eventId=event_id, body={**body, "status": "confirmed"}
        )
        updated = await self._execute(request, f"update event {event_id}")
        return updated.get("id", event_id)

    async def delete_event(self, calendar_id: str, event_id: str):
        request = self.calendar.events().delete(calendarId=calendar_id, eventId=event_id)
        await self._execute(request, f"delete event {event_id}")

    async def list_managed_events(self, calendar_id: str, tenant_id: str) -> list[dict[str, Any]]:
        """Every live event in the calendar tagged as created by this app for ``tenant_id``."""
        events: list[dict[str, Any]] = []
        page_token = None
        while True:
            request = self.calendar.events().list(
                calendarId=calendar_id,
                privateExtendedProperty=[
                    f"createdByApp={MANAGED_APP_TAG}",
                    f"tenantId={tenant_id}",
                ],
                showDeleted=False,
                maxResults=2500,
                pageToken=page_token,
            )
            result = await self._execute(request, "list events")
            events.extend(result.get("items", []))
            page_token = result.get("nextPageToken")
            if not page_token:
                break
        self.logger.debug(f"Found {len(events)} managed event(s) in {calendar_id}")
        return events

    # ------------------------------------------------------------------ #
    # Calendars and account                                              #
    # ------------------------------------------------------------------ #

    async def list_calendars(self) -> list[CalendarInfo]:
        """Calendars the user can write to."""
        calendars: list[CalendarInfo] = []
        page_token = None
        while True:
            request = self.calendar.calendarList().list(
                minAccessRole="writer", pageToken=page_token
            )
            result = await self._execute(request, "list calendars")
            for item in result.get("items", []):
                calendars.append(
                    CalendarInfo(
                        id=item["id"],
                        summary=item.get("summaryOverride") or item.get("summary", ""),
                        description=item.get("description", ""),
                        primary=bool(item.get("primary", False)),
                    )
                )
            page_token = result.get("nextPageToken")
            if not page_token:
                break
        return calendars

    async def create_calendar(self, summary: str, description: str = "") -> CalendarInfo:
        request = self.calendar.calendars().insert(
            body={"summary": summary, "description": description}
        )
        created = await self._execute(request, "create calendar")
        return CalendarInfo(
            id=created["id"], summary=created.get("summary", summary), description=description
        )

    async def delete_calendar(self, calendar_id: str):
        request = self.calendar.calendars().delete(calendarId=calendar_id)
        await self._execute(request, f"delete calendar {calendar_id}")

    async def get_user_info(self) -> dict[str, Any]:
        """Google account profile: email, name, picture."""
        return await self._execute(self.oauth2.userinfo().get(), "get user info")

    async def revoke(self):
        """Revoke the OAuth grant at Google; failures are logged, not raised."""
        token = self.credentials.refresh_token or self.credentials.token
        if not token:
            return
        try:
            response = await asyncio.to_thread(
                requests.post, REVOKE_URL, params={"token": token}, timeout=30
            )
        except requests.RequestException as e:
            self.logger.warning(f"Token revocation failed: {e}")
            return
        if response.status_code != 200:
            self.logger.warning(f"Token revocation returned HTTP {response.status_code}")
