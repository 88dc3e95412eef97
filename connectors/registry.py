"""
ConnectorRegistry: resolves each provider slug to its connector once,
choosing the real or mock implementation from the injected settings.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

import httpx

from config.settings import Settings
from connectors.base import BaseConnector
from connectors.errors import UnknownProvider
from connectors.fortnox import FortnoxConnector
from connectors.google import GoogleCalendarConnector
from connectors.microsoft import MicrosoftCalendarConnector
from connectors.mock import mock_for

logger = logging.getLogger(__name__)

# ── All known connectors, add new ones here ─────────────────────────────

_CONNECTOR_CLASSES: Dict[str, Callable[..., BaseConnector]] = {
    "fortnox": FortnoxConnector,
    "google": GoogleCalendarConnector,
    "microsoft": MicrosoftCalendarConnector,
}

PROVIDERS: List[str] = list(_CONNECTOR_CLASSES)


class ConnectorRegistry:
    """Registry of one connector per provider, built from settings."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._connectors: Dict[str, BaseConnector] = {}
        for provider, cls in _CONNECTOR_CLASSES.items():
            if settings.use_mock(provider):
                self._connectors[provider] = mock_for(provider)
                logger.info("Connector registered: %s (mock mode)", provider)
                continue
            creds = settings.provider_credentials(provider)
            self._connectors[provider] = cls(
                creds["client_id"],
                creds["client_secret"],
                timeout=settings.http_timeout_seconds,
                transport=transport,
            )
            logger.info("Connector registered: %s", provider)

    @classmethod
    def from_connectors(cls, connectors: List[BaseConnector]) -> "ConnectorRegistry":
        """Build a registry from explicit instances (tests, custom wiring)."""
        registry = cls.__new__(cls)
        registry._connectors = {c.provider_name: c for c in connectors}
        return registry

    def get(self, provider: str) -> BaseConnector:
        """Get a connector by provider name; raises ``UnknownProvider``."""
        try:
            return self._connectors[provider]
        except KeyError:
            raise UnknownProvider(provider) from None

    def providers(self) -> List[str]:
        return list(self._connectors)

    def list_providers(self) -> List[Dict[str, object]]:
        """Return info about all available connectors."""
        return [
            {
                "provider": c.provider_name,
                "display_name": c.display_name,
                "configured": c.is_configured(),
                "is_mock": c.is_mock,
            }
            for c in self._connectors.values()
        ]
