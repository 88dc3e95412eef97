"""
GoogleCalendarConnector: OAuth2 web flow for Google Calendar.

Uses Google's OAuth2 to get per-tenant calendar access.  A sync unit is one
month of events from the connected calendar (``primary`` unless the
connection metadata names another ``calendar_id``).  Board meetings are
written to the same calendar.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List
from urllib.parse import quote, urlencode

import httpx

from connectors.base import CalendarConnector, month_window
from connectors.schemas import AccountInfo, BoardMeeting, ConnectionView, TokenSet

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
_GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"

# Guard against a provider that keeps handing out page tokens.
_MAX_PAGES = 50


def summarize_events(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Keep only the fields the board calendar needs."""
    events = []
    for item in items:
        start = item.get("start") or {}
        end = item.get("end") or {}
        events.append(
            {
                "id": item.get("id"),
                "title": item.get("summary", ""),
                "start": start.get("dateTime") or start.get("date"),
                "end": end.get("dateTime") or end.get("date"),
                "status": item.get("status"),
            }
        )
    return events


def _calendar_id(connection: ConnectionView) -> str:
    return str(connection.metadata.get("calendar_id") or "primary")


class GoogleCalendarConnector(CalendarConnector):
    """OAuth2 connector for Google Calendar."""

    @property
    def provider_name(self) -> str:
        return "google"

    @property
    def display_name(self) -> str:
        return "Google Workspace"

    @property
    def scopes(self) -> List[str]:
        return [
            "openid",
            "email",
            "profile",
            "https://www.googleapis.com/auth/calendar",
            "https://www.googleapis.com/auth/calendar.events",
        ]

    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "access_type": "offline",       # gets refresh_token
            "prompt": "consent",            # force consent to always get refresh_token
            "state": state,
        }
        return f"{_GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        return await self._token_request(
            {
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            url=_GOOGLE_TOKEN_URL,
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        return await self._token_request(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            url=_GOOGLE_TOKEN_URL,
            refresh_token=refresh_token,
        )

    async def fetch_account_info(self, access_token: str) -> AccountInfo:
        user_info = await self._account_get(_GOOGLE_USERINFO_URL, access_token)
        return AccountInfo(
            email=user_info.get("email"),
            name=user_info.get("name"),
        )

    async def fetch_data_unit(
        self, connection: ConnectionView, period: int, unit_key: int
    ) -> Dict[str, Any]:
        time_min, time_max = month_window(period, unit_key)
        calendar_id = _calendar_id(connection)
        url = f"{_GOOGLE_CALENDAR_API}/calendars/{quote(calendar_id, safe='')}/events"
        params = {
            "timeMin": time_min,
            "timeMax": time_max,
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": "2500",
        }

        items: List[Dict[str, Any]] = []
        for _ in range(_MAX_PAGES):
            data = await self._unit_get(url, connection.access_token or "", params=params)
            items.extend(data.get("items") or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                break
            params = {**params, "pageToken": page_token}
        else:
            logger.warning("Stopped paging %s events after %d pages", calendar_id, _MAX_PAGES)

        events = summarize_events(items)
        return {
            "period": f"{period}-{unit_key:02d}",
            "calendar_id": calendar_id,
            "source": self.provider_name,
            "event_count": len(events),
            "events": events,
        }

    # ── Board meetings ──────────────────────────────────────────────────

    def event_from_meeting(self, meeting: BoardMeeting) -> Dict[str, Any]:
        event: Dict[str, Any] = {
            "summary": meeting.title,
            "start": {
                "dateTime": meeting.scheduled_start.isoformat(),
                "timeZone": meeting.timezone,
            },
            "end": {
                "dateTime": meeting.scheduled_end.isoformat(),
                "timeZone": meeting.timezone,
            },
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "popup", "minutes": 60},
                    {"method": "popup", "minutes": 15},
                ],
            },
        }
        if meeting.description:
            event["description"] = meeting.description
        if meeting.location:
            event["location"] = meeting.location
        if meeting.attendees:
            event["attendees"] = [
                {"email": a.email, "displayName": a.name, "responseStatus": "needsAction"}
                for a in meeting.attendees
            ]
        if meeting.video_conference_url:
            event["conferenceData"] = {
                "entryPoints": [
                    {"entryPointType": "video", "uri": meeting.video_conference_url}
                ]
            }
        return event

    def _events_url(self, connection: ConnectionView, event_id: str = "") -> str:
        url = f"{_GOOGLE_CALENDAR_API}/calendars/{quote(_calendar_id(connection), safe='')}/events"
        return f"{url}/{quote(event_id, safe='')}" if event_id else url

    async def create_event(self, connection: ConnectionView, event: Dict[str, Any]) -> str:
        data = await self._event_request(
            "POST", self._events_url(connection), connection.access_token or "", json=event
        )
        return str(data.get("id") or "")

    async def update_event(
        self, connection: ConnectionView, event_id: str, event: Dict[str, Any]
    ) -> None:
        await self._event_request(
            "PATCH", self._events_url(connection, event_id), connection.access_token or "", json=event
        )

    async def delete_event(self, connection: ConnectionView, event_id: str) -> None:
        await self._event_request(
            "DELETE",
            self._events_url(connection, event_id),
            connection.access_token or "",
            missing_ok=(404, 410),
        )

    async def revoke_token(self, access_token: str) -> bool:
        """Revoke the token at Google."""
        try:
            async with self._client() as client:
                resp = await client.post(
                    _GOOGLE_REVOKE_URL,
                    params={"token": access_token},
                )
                return resp.status_code == 200
        except httpx.HTTPError:
            logger.warning("Google token revocation failed", exc_info=True)
            return False
