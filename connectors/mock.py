"""
Mock connectors: deterministic stand-ins selected by the registry when a
provider is forced into mock mode or has no client credentials.

They implement the full ``BaseConnector`` interface and never touch the
network: placeholder tokens, fixed account info, and data units that are a
pure function of (provider, year, month).  Calendar writes hand back
generated event ids and otherwise do nothing.
"""

from __future__ import annotations

import hashlib
import uuid
from typing import Any, Dict, List

from connectors.base import BaseConnector, month_bounds
from connectors.errors import TokenExchangeFailure, UnsupportedOperation
from connectors.fortnox import FortnoxConnector
from connectors.google import GoogleCalendarConnector
from connectors.microsoft import MicrosoftCalendarConnector
from connectors.schemas import AccountInfo, BoardMeeting, ConnectionView, TokenSet

MOCK_ACCOUNTS: Dict[str, AccountInfo] = {
    "fortnox": AccountInfo(
        email=None,
        name="Test Company AB",
        metadata={
            "company_name": "Test Company AB",
            "organization_number": "556123-4567",
            "city": "Stockholm",
            "country": "Sweden",
        },
    ),
    "google": AccountInfo(email="board@example.com", name="Board Admin"),
    "microsoft": AccountInfo(email="board@example.onmicrosoft.com", name="Board Admin"),
}


def _seed(provider: str, period: int, unit_key: int) -> int:
    digest = hashlib.sha256(f"{provider}:{period}:{unit_key}".encode()).hexdigest()
    return int(digest[:8], 16)


class MockConnector(BaseConnector):
    """
    Wraps the identity of a real connector class but replaces every
    network-bound method with a deterministic implementation.
    """

    is_mock = True

    def __init__(self, real: BaseConnector) -> None:
        super().__init__()
        self._real = real

    @property
    def provider_name(self) -> str:
        return self._real.provider_name

    @property
    def display_name(self) -> str:
        return self._real.display_name

    @property
    def scopes(self) -> List[str]:
        return self._real.scopes

    @property
    def audit_resource_type(self) -> str:
        return self._real.audit_resource_type

    @property
    def audit_action_prefix(self) -> str:
        return self._real.audit_action_prefix

    @property
    def supports_events(self) -> bool:
        return self._real.supports_events

    def is_configured(self) -> bool:
        return True

    def placeholder_tokens(self) -> TokenSet:
        return TokenSet(
            access_token=f"mock-{self.provider_name}-access-token",
            refresh_token=f"mock-{self.provider_name}-refresh-token",
            expires_at=None,
        )

    def account_info(self) -> AccountInfo:
        return MOCK_ACCOUNTS[self.provider_name].model_copy(deep=True)

    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        # Unreachable from the connect flow, which stores mock connections directly.
        raise UnsupportedOperation("mock connectors connect without a redirect")

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        if not code:
            raise TokenExchangeFailure("empty authorization code")
        return self.placeholder_tokens()

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        return self.placeholder_tokens()

    async def fetch_account_info(self, access_token: str) -> AccountInfo:
        return self.account_info()

    async def fetch_data_unit(
        self, connection: ConnectionView, period: int, unit_key: int
    ) -> Dict[str, Any]:
        month_bounds(period, unit_key)
        seed = _seed(self.provider_name, period, unit_key)
        base = {"period": f"{period}-{unit_key:02d}", "source": self.provider_name, "is_mock": True}
        if self.provider_name == "fortnox":
            revenue = float(100_000 + seed % 50_000)
            costs = float(60_000 + seed % 30_000)
            assets = float(500_000 + seed % 100_000)
            return {
                **base,
                "period_type": "monthly",
                "fiscal_year": period,
                "revenue": revenue,
                "costs": costs,
                "profit": revenue - costs,
                "assets": assets,
                "liabilities": round(assets * 0.4, 2),
                "equity": round(assets * 0.6, 2),
            }
        return {**base, "event_count": seed % 5, "events": []}

    # Calendar writes: ids are generated, updates and deletes are no-ops.

    def event_from_meeting(self, meeting: BoardMeeting) -> Dict[str, Any]:
        return self._real.event_from_meeting(meeting)

    async def create_event(self, connection: ConnectionView, event: Dict[str, Any]) -> str:
        return f"mock-{self.provider_name}-event-{uuid.uuid4().hex[:12]}"

    async def update_event(
        self, connection: ConnectionView, event_id: str, event: Dict[str, Any]
    ) -> None:
        return None

    async def delete_event(self, connection: ConnectionView, event_id: str) -> None:
        return None


def mock_for(provider: str) -> MockConnector:
    """Build the mock variant for a provider slug."""
    real_classes = {
        "fortnox": FortnoxConnector,
        "google": GoogleCalendarConnector,
        "microsoft": MicrosoftCalendarConnector,
    }
    return MockConnector(real_classes[provider]())
