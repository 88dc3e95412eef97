"""
BaseConnector: abstract interface for all provider connectors.

Every provider (Fortnox, Google Calendar, Microsoft 365) subclasses this and
implements the OAuth methods plus ``fetch_data_unit`` used by the sync
engine.  Mock variants live in ``connectors.mock`` and implement the same
interface without any network I/O.
"""

from __future__ import annotations

import calendar
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from connectors.errors import (
    AccountInfoUnavailable,
    CalendarEventFailure,
    SyncUnitFailure,
    TokenExchangeFailure,
)
from connectors.schemas import AccountInfo, BoardMeeting, ConnectionView, TokenSet

logger = logging.getLogger(__name__)


def month_bounds(period: int, unit_key: int) -> Tuple[date, date]:
    """First and last day of ``unit_key`` (1-12) in year ``period``."""
    if isinstance(unit_key, bool) or not isinstance(unit_key, int) or not 1 <= unit_key <= 12:
        raise SyncUnitFailure(f"Invalid month {unit_key}")
    if not 1 <= period <= 9999:
        raise SyncUnitFailure(f"Invalid year {period}")
    last_day = calendar.monthrange(period, unit_key)[1]
    return date(period, unit_key, 1), date(period, unit_key, last_day)


def month_window(period: int, unit_key: int) -> Tuple[str, str]:
    """UTC window for a month: start inclusive, next month's first instant exclusive."""
    first, last = month_bounds(period, unit_key)
    after = last + timedelta(days=1)
    return f"{first.isoformat()}T00:00:00Z", f"{after.isoformat()}T00:00:00Z"


def expires_at_from(expires_in: Any) -> Optional[datetime]:
    """Convert an ``expires_in`` seconds value into an absolute timestamp."""
    if expires_in in (None, ""):
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))


class BaseConnector(ABC):
    """Abstract base for all OAuth2 provider connectors."""

    is_mock: bool = False

    def __init__(
        self,
        client_id: str = "",
        client_secret: str = "",
        *,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self._timeout = timeout
        self._transport = transport

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique slug: 'fortnox', 'google', 'microsoft'."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable: 'Fortnox', 'Google Workspace', 'Microsoft 365'."""
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        """OAuth scopes required by this connector."""
        ...

    @property
    def audit_resource_type(self) -> str:
        return "settings"

    @property
    def audit_action_prefix(self) -> str:
        """Audit actions are ``<prefix>_connected`` / ``_disconnected`` / ``_synced``."""
        return "settings.calendar"

    @property
    def supports_events(self) -> bool:
        """True for calendar connectors that can write board meetings."""
        return False

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        """
        Build the provider's OAuth2 authorization URL.

        Parameters
        ----------
        state : str
            Signed state string issued by ``StateCodec``.
        redirect_uri : str
            Callback URL registered with the provider.
        """
        ...

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        """Exchange an authorization code; raises ``TokenExchangeFailure``."""
        ...

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        """Refresh an expired access token; raises ``TokenExchangeFailure``."""
        ...

    @abstractmethod
    async def fetch_account_info(self, access_token: str) -> AccountInfo:
        """Best-effort display metadata; raises ``AccountInfoUnavailable``."""
        ...

    @abstractmethod
    async def fetch_data_unit(
        self, connection: ConnectionView, period: int, unit_key: int
    ) -> Dict[str, Any]:
        """Fetch one month of data; raises ``SyncUnitFailure``."""
        ...

    async def revoke_token(self, access_token: str) -> bool:
        """
        Revoke the token at the provider (optional).
        Returns True on success, False if unsupported or the call failed.
        """
        return False

    # ── Helpers ─────────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        """True when both client id and secret are present."""
        return bool(self.client_id and self.client_secret)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _token_request(
        self,
        data: Dict[str, str],
        *,
        url: str,
        auth: Optional[Tuple[str, str]] = None,
        refresh_token: Optional[str] = None,
    ) -> TokenSet:
        """POST to a token endpoint and map every failure to ``TokenExchangeFailure``."""
        try:
            async with self._client() as client:
                resp = await client.post(
                    url,
                    data=data,
                    auth=auth,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            raise TokenExchangeFailure(
                f"{self.provider_name} token endpoint unreachable: {exc!r}"
            ) from exc

        if resp.status_code >= 400:
            raise TokenExchangeFailure(
                f"{self.provider_name} token endpoint returned {resp.status_code}: {resp.text[:200]}"
            )

        try:
            body = resp.json()
            access_token = body["access_token"]
            expires_at = expires_at_from(body.get("expires_in"))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise TokenExchangeFailure(
                f"{self.provider_name} token response malformed"
            ) from exc
        if not access_token:
            raise TokenExchangeFailure(f"{self.provider_name} returned an empty access token")

        return TokenSet(
            access_token=access_token,
            # Some providers only rotate refresh tokens occasionally.
            refresh_token=body.get("refresh_token") or refresh_token,
            expires_at=expires_at,
        )

    async def _api_get(
        self, url: str, access_token: str, params: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """Authenticated GET; transport and HTTP errors propagate as ``httpx`` errors."""
        async with self._client() as client:
            resp = await client.get(
                url,
                params=params,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
            )
            resp.raise_for_status()
            return resp.json()

    async def _unit_get(
        self, url: str, access_token: str, params: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """``_api_get`` for sync units: any failure becomes ``SyncUnitFailure``."""
        try:
            return await self._api_get(url, access_token, params)
        except httpx.HTTPStatusError as exc:
            raise SyncUnitFailure(
                f"{self.display_name} API error: {exc.response.status_code}"
            ) from exc
        except httpx.TimeoutException as exc:
            raise SyncUnitFailure(f"{self.display_name} API timed out") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise SyncUnitFailure(f"{self.display_name} API request failed") from exc

    async def _event_request(
        self,
        method: str,
        url: str,
        access_token: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        missing_ok: Tuple[int, ...] = (),
    ) -> Dict[str, Any]:
        """
        Write call against a calendar API.  Any failure becomes
        ``CalendarEventFailure``; statuses in ``missing_ok`` count as success.
        """
        try:
            async with self._client() as client:
                resp = await client.request(
                    method,
                    url,
                    json=json,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                )
        except httpx.TimeoutException as exc:
            raise CalendarEventFailure(f"{self.display_name} API timed out") from exc
        except httpx.HTTPError as exc:
            raise CalendarEventFailure(f"{self.display_name} API request failed") from exc

        if resp.status_code in missing_ok:
            return {}
        if resp.status_code >= 400:
            raise CalendarEventFailure(f"{self.display_name} API error: {resp.status_code}")
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise CalendarEventFailure(f"{self.display_name} API response malformed") from exc

    async def _account_get(self, url: str, access_token: str) -> Dict[str, Any]:
        """``_api_get`` for enrichment: any failure becomes ``AccountInfoUnavailable``."""
        try:
            data = await self._api_get(url, access_token)
        except (httpx.HTTPError, ValueError) as exc:
            raise AccountInfoUnavailable(
                f"{self.display_name} account lookup failed: {exc!r}"
            ) from exc
        if not isinstance(data, dict):
            raise AccountInfoUnavailable(f"{self.display_name} account response malformed")
        return data


class CalendarConnector(BaseConnector):
    """
    A connector that can also write board meetings into the provider's
    calendar.  Every write runs against an already-fresh access token and
    raises ``CalendarEventFailure``.
    """

    @property
    def supports_events(self) -> bool:
        return True

    @abstractmethod
    def event_from_meeting(self, meeting: BoardMeeting) -> Dict[str, Any]:
        """Translate a board meeting into the provider's event body."""
        ...

    @abstractmethod
    async def create_event(
        self, connection: ConnectionView, event: Dict[str, Any]
    ) -> str:
        """Create the event and return its provider id."""
        ...

    @abstractmethod
    async def update_event(
        self, connection: ConnectionView, event_id: str, event: Dict[str, Any]
    ) -> None:
        ...

    @abstractmethod
    async def delete_event(self, connection: ConnectionView, event_id: str) -> None:
        """Delete the event; an event that is already gone counts as deleted."""
        ...
