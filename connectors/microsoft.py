"""
MicrosoftCalendarConnector: OAuth2 for Microsoft 365 calendars via Graph.

A sync unit is one month of ``/me/calendarView``.  Board meetings are
written to the user's default calendar.  Microsoft identity platform has no
token revocation endpoint, so disconnect is local only.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List
from urllib.parse import quote, urlencode

from connectors.base import CalendarConnector, month_window
from connectors.schemas import AccountInfo, BoardMeeting, ConnectionView, TokenSet

logger = logging.getLogger(__name__)

_MS_AUTH_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
_MS_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
_MS_GRAPH = "https://graph.microsoft.com/v1.0"

_MAX_PAGES = 50


def _graph_time(value: datetime) -> Dict[str, str]:
    """Graph wants a zone-less dateTime plus a zone name; send UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return {"dateTime": value.isoformat(), "timeZone": "UTC"}


class MicrosoftCalendarConnector(CalendarConnector):
    """OAuth2 connector for Microsoft 365 Calendar."""

    @property
    def provider_name(self) -> str:
        return "microsoft"

    @property
    def display_name(self) -> str:
        return "Microsoft 365"

    @property
    def scopes(self) -> List[str]:
        return [
            "openid",
            "profile",
            "email",
            "offline_access",
            "Calendars.ReadWrite",
            "User.Read",
        ]

    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
            "response_type": "code",
            "response_mode": "query",
            "prompt": "consent",
        }
        return f"{_MS_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        return await self._token_request(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "scope": " ".join(self.scopes),
            },
            url=_MS_TOKEN_URL,
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        return await self._token_request(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "scope": " ".join(self.scopes),
            },
            url=_MS_TOKEN_URL,
            refresh_token=refresh_token,
        )

    async def fetch_account_info(self, access_token: str) -> AccountInfo:
        data = await self._account_get(f"{_MS_GRAPH}/me", access_token)
        return AccountInfo(
            email=data.get("mail") or data.get("userPrincipalName"),
            name=data.get("displayName"),
        )

    async def fetch_data_unit(
        self, connection: ConnectionView, period: int, unit_key: int
    ) -> Dict[str, Any]:
        start, end = month_window(period, unit_key)
        url = f"{_MS_GRAPH}/me/calendarView"
        params = {
            "startDateTime": start,
            "endDateTime": end,
            "$select": "id,subject,start,end,isCancelled",
            "$top": "1000",
        }

        items: List[Dict[str, Any]] = []
        for _ in range(_MAX_PAGES):
            data = await self._unit_get(url, connection.access_token or "", params=params)
            items.extend(data.get("value") or [])
            # The next link already carries every query parameter.
            url = data.get("@odata.nextLink")
            params = None
            if not url:
                break
        else:
            logger.warning("Stopped paging calendarView after %d pages", _MAX_PAGES)

        events = [
            {
                "id": item.get("id"),
                "title": item.get("subject", ""),
                "start": (item.get("start") or {}).get("dateTime"),
                "end": (item.get("end") or {}).get("dateTime"),
                "status": "cancelled" if item.get("isCancelled") else "confirmed",
            }
            for item in items
        ]
        return {
            "period": f"{period}-{unit_key:02d}",
            "source": self.provider_name,
            "event_count": len(events),
            "events": events,
        }

    # ── Board meetings ──────────────────────────────────────────────────

    def event_from_meeting(self, meeting: BoardMeeting) -> Dict[str, Any]:
        event: Dict[str, Any] = {
            "subject": meeting.title,
            "start": _graph_time(meeting.scheduled_start),
            "end": _graph_time(meeting.scheduled_end),
            "isOnlineMeeting": bool(meeting.video_conference_url),
        }
        if meeting.description:
            event["body"] = {"contentType": "HTML", "content": meeting.description}
        if meeting.location:
            event["location"] = {"displayName": meeting.location}
        if meeting.attendees:
            event["attendees"] = [
                {"emailAddress": {"address": a.email, "name": a.name}, "type": "required"}
                for a in meeting.attendees
            ]
        return event

    def _event_url(self, event_id: str = "") -> str:
        url = f"{_MS_GRAPH}/me/calendar/events"
        return f"{url}/{quote(event_id, safe='')}" if event_id else url

    async def create_event(self, connection: ConnectionView, event: Dict[str, Any]) -> str:
        data = await self._event_request(
            "POST", self._event_url(), connection.access_token or "", json=event
        )
        return str(data.get("id") or "")

    async def update_event(
        self, connection: ConnectionView, event_id: str, event: Dict[str, Any]
    ) -> None:
        await self._event_request(
            "PATCH", self._event_url(event_id), connection.access_token or "", json=event
        )

    async def delete_event(self, connection: ConnectionView, event_id: str) -> None:
        await self._event_request(
            "DELETE", self._event_url(event_id), connection.access_token or "", missing_ok=(404, 410)
        )
