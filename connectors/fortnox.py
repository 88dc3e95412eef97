"""
FortnoxConnector: OAuth2 for the Fortnox ERP API.

Token requests authenticate the client with HTTP Basic auth.  A sync unit is
one calendar month of account balances, aggregated over the Swedish BAS
chart of accounts into a small income-statement / balance-sheet summary.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List
from urllib.parse import urlencode

from connectors.base import BaseConnector, month_bounds
from connectors.errors import AccountInfoUnavailable, SyncUnitFailure
from connectors.schemas import AccountInfo, ConnectionView, TokenSet

logger = logging.getLogger(__name__)

# Fortnox OAuth2 endpoints
_FORTNOX_AUTH_URL = "https://apps.fortnox.se/oauth-v1/auth"
_FORTNOX_TOKEN_URL = "https://apps.fortnox.se/oauth-v1/token"
_FORTNOX_API = "https://api.fortnox.se/3"


def aggregate_bas_balances(balances: Iterable[Dict[str, Any]]) -> Dict[str, float]:
    """
    Fold BAS account balances into summary figures.

    1xxx assets, 2000-2099 equity, 2100-2999 liabilities,
    3xxx revenue (booked negative), 4000-7999 costs.
    """
    revenue = costs = assets = liabilities = equity = 0.0
    for account in balances:
        number = int(account.get("AccountNumber") or 0)
        balance = float(account.get("Balance") or 0)
        if 3000 <= number < 4000:
            revenue += abs(balance)
        elif 4000 <= number < 8000:
            costs += balance
        elif 1000 <= number < 2000:
            assets += balance
        elif 2000 <= number < 2100:
            equity += abs(balance)
        elif 2100 <= number < 3000:
            liabilities += abs(balance)

    return {
        "revenue": revenue,
        "costs": costs,
        "profit": revenue - costs,
        "assets": assets,
        "liabilities": liabilities,
        "equity": equity,
    }


class FortnoxConnector(BaseConnector):
    """OAuth2 connector for Fortnox."""

    @property
    def provider_name(self) -> str:
        return "fortnox"

    @property
    def display_name(self) -> str:
        return "Fortnox"

    @property
    def scopes(self) -> List[str]:
        return ["companyinformation", "bookkeeping", "invoice"]

    @property
    def audit_resource_type(self) -> str:
        return "financial"

    @property
    def audit_action_prefix(self) -> str:
        return "financial.erp"

    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
            "response_type": "code",
            "access_type": "offline",
        }
        return f"{_FORTNOX_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            url=_FORTNOX_TOKEN_URL,
            auth=(self.client_id, self.client_secret),
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            url=_FORTNOX_TOKEN_URL,
            auth=(self.client_id, self.client_secret),
            refresh_token=refresh_token,
        )

    async def fetch_account_info(self, access_token: str) -> AccountInfo:
        data = await self._account_get(f"{_FORTNOX_API}/companyinformation", access_token)
        info = data.get("CompanyInformation")
        if not isinstance(info, dict):
            raise AccountInfoUnavailable("Fortnox company information missing")
        return AccountInfo(
            email=info.get("Email") or None,
            name=info.get("CompanyName") or None,
            metadata={
                "company_name": info.get("CompanyName"),
                "organization_number": info.get("OrganizationNumber"),
                "city": info.get("City"),
                "country": info.get("Country") or "Sweden",
            },
        )

    async def fetch_data_unit(
        self, connection: ConnectionView, period: int, unit_key: int
    ) -> Dict[str, Any]:
        first, last = month_bounds(period, unit_key)
        data = await self._unit_get(
            f"{_FORTNOX_API}/accounts",
            connection.access_token or "",
            params={"fromdate": first.isoformat(), "todate": last.isoformat()},
        )
        balances = data.get("AccountBalances") if isinstance(data, dict) else None
        if balances is None:
            balances = []
        if not isinstance(balances, list):
            raise SyncUnitFailure("Fortnox returned malformed account balances")
        try:
            figures = aggregate_bas_balances(balances)
        except (TypeError, ValueError, AttributeError) as exc:
            raise SyncUnitFailure("Fortnox returned malformed account balances") from exc
        return {
            "period": f"{period}-{unit_key:02d}",
            "period_type": "monthly",
            "fiscal_year": period,
            "source": self.provider_name,
            **figures,
        }
