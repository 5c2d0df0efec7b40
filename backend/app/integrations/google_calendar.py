"""
Google Calendar REST client.

Thin wrapper over the OAuth token endpoint and the Calendar v3 events API.
Every call goes through an httpx.AsyncClient with a bounded timeout; tests
inject an httpx.MockTransport.

Token refresh is an explicit call. The sync task refreshes, persists the new
token, and only then talks to the events API.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from app.core.config import Settings, get_settings
from app.core.logging import get_logger

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"

SCOPES = [
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
]


class CalendarAPIError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CalendarEventNotFound(CalendarAPIError):
    """The remote event no longer exists (deleted out-of-band)."""


class CalendarAuthError(CalendarAPIError):
    """Token exchange or refresh was refused."""


@dataclass(frozen=True)
class OAuthTokens:
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]


def _tokens_from_response(payload: dict[str, Any], now: datetime) -> OAuthTokens:
    access_token = payload.get("access_token")
    if not access_token:
        raise CalendarAuthError("No access token in token response")
    expires_in = payload.get("expires_in")
    return OAuthTokens(
        access_token=access_token,
        refresh_token=payload.get("refresh_token"),
        expires_at=now + timedelta(seconds=int(expires_in)) if expires_in else None,
    )


class GoogleCalendarClient:
    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or get_settings()
        self.transport = transport

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.EXTERNAL_HTTP_TIMEOUT),
            transport=self.transport,
        )

    # ----- OAuth -----

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.GOOGLE_CLIENT_ID,
            "redirect_uri": self.settings.google_redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            "prompt": "consent",  # Force refresh token to be returned
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> OAuthTokens:
        now = datetime.now(timezone.utc)
        async with self._http() as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": self.settings.GOOGLE_CLIENT_ID,
                    "client_secret": self.settings.GOOGLE_CLIENT_SECRET,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": self.settings.google_redirect_uri,
                },
            )
        if response.status_code != 200:
            raise CalendarAuthError(f"Code exchange failed: {response.text}", response.status_code)
        tokens = _tokens_from_response(response.json(), now)
        if not tokens.refresh_token:
            raise CalendarAuthError("No refresh token received. Please revoke access and try again.")
        return tokens

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        now = datetime.now(timezone.utc)
        async with self._http() as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": self.settings.GOOGLE_CLIENT_ID,
                    "client_secret": self.settings.GOOGLE_CLIENT_SECRET,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        if response.status_code != 200:
            raise CalendarAuthError(f"Token refresh failed: {response.text}", response.status_code)
        return _tokens_from_response(response.json(), now)

    async def revoke(self, token: str) -> None:
        async with self._http() as client:
            response = await client.post(GOOGLE_REVOKE_URL, data={"token": token})
        if response.status_code not in (200, 400):
            # 400 means the grant was already invalid
            raise CalendarAPIError(f"Revoke failed: {response.text}", response.status_code)

    async def fetch_account_email(self, access_token: str) -> Optional[str]:
        async with self._http() as client:
            response = await client.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        if response.status_code != 200:
            return None
        return response.json().get("email")

    # ----- Events -----

    async def _request(self, method: str, url: str, access_token: str, json: Optional[dict] = None) -> httpx.Response:
        async with self._http() as client:
            response = await client.request(
                method,
                url,
                headers={"Authorization": f"Bearer {access_token}"},
                json=json,
            )
        if response.status_code in (404, 410):
            raise CalendarEventNotFound("Calendar event not found", response.status_code)
        if response.status_code >= 400:
            raise CalendarAPIError(
                f"Calendar API {method} failed ({response.status_code}): {response.text}",
                response.status_code,
            )
        return response

    def _events_url(self, calendar_id: str, event_id: Optional[str] = None) -> str:
        url = f"{GOOGLE_CALENDAR_API}/calendars/{calendar_id}/events"
        return f"{url}/{event_id}" if event_id else url

    async def insert_event(self, access_token: str, calendar_id: str, body: dict) -> str:
        response = await self._request("POST", self._events_url(calendar_id), access_token, json=body)
        event_id = response.json().get("id")
        if not event_id:
            raise CalendarAPIError("Calendar API returned no event id")
        return event_id

    async def update_event(self, access_token: str, calendar_id: str, event_id: str, body: dict) -> None:
        await self._request("PUT", self._events_url(calendar_id, event_id), access_token, json=body)

    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        try:
            await self._request("DELETE", self._events_url(calendar_id, event_id), access_token)
        except CalendarEventNotFound:
            logger.info("calendar_event_already_deleted", event_id=event_id)
