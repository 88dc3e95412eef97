"""
IntegrationService: the connect / callback / disconnect / sync / status
flows that the API routes and scheduled jobs call into.

States per (tenant, provider)::

    disconnected ──connect──▶ pending authorization ──callback──▶ connected
         ▲                         (mock mode skips it)               │
         └─────────────────────────── disconnect ◀────────────────────┘

A sync runs inside ``connected`` and only changes ``last_sync_*``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Sequence
from urllib.parse import quote, urlencode

from config.settings import Settings
from connectors.base import BaseConnector
from connectors.errors import (
    AccountInfoUnavailable,
    IntegrationError,
    InvalidState,
    MissingParameter,
    ProviderAuthorizationDenied,
    TokenExchangeFailure,
)
from connectors.mock import MockConnector
from connectors.registry import ConnectorRegistry
from connectors.schemas import (
    SYSTEM_ACTOR,
    AccountInfo,
    Actor,
    BoardMeeting,
    CallbackOutcome,
    ConnectionStatus,
    ConnectResult,
    MeetingSyncResult,
    ScheduledSyncReport,
    SyncBatchResult,
)
from connectors.state import StateCodec
from connectors.store import ConnectionStore
from connectors.sync import ALL_MONTHS, SyncEngine

logger = logging.getLogger(__name__)

_FAILED_CONNECTION = "Failed to complete connection"


class IntegrationService:
    def __init__(
        self,
        settings: Settings,
        registry: ConnectorRegistry,
        codec: StateCodec,
        store: ConnectionStore,
        engine: SyncEngine,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._codec = codec
        self._store = store
        self._engine = engine

    # ── Redirect helpers ────────────────────────────────────────────────

    def _success_redirect(self, tenant_id: str, message: str) -> str:
        query = urlencode({"tab": "integrations", "success": message}, quote_via=quote)
        return f"{self._settings.app_url}/dashboard/{quote(tenant_id, safe='')}/settings?{query}"

    def _failure_redirect(self, message: str) -> str:
        return f"{self._settings.app_url}/settings?{urlencode({'error': message}, quote_via=quote)}"

    def _failure(self, message: str, tenant_id: Optional[str] = None) -> CallbackOutcome:
        return CallbackOutcome(
            success=False,
            message=message,
            redirect_url=self._failure_redirect(message),
            tenant_id=tenant_id,
        )

    # ── Connect ─────────────────────────────────────────────────────────

    async def connect(self, provider: str, tenant_id: Optional[str], actor: Actor) -> ConnectResult:
        if not tenant_id:
            raise MissingParameter("tenantId")
        connector = self._registry.get(provider)

        if isinstance(connector, MockConnector):
            await self._store.mark_connected(
                connector,
                tenant_id,
                connector.placeholder_tokens(),
                actor,
                account=connector.account_info(),
            )
            return ConnectResult(
                success=True,
                is_mock=True,
                message=f"Mock {connector.display_name} connection established",
            )

        state = self._codec.encode(tenant_id)
        url = connector.build_authorization_url(state, self._settings.callback_url(provider))
        logger.info("Issued %s authorization URL for tenant %s", provider, tenant_id)
        return ConnectResult(success=True, authorization_url=url)

    # ── Callback ────────────────────────────────────────────────────────

    async def _enrich_account(self, connector: BaseConnector, access_token: str) -> Optional[AccountInfo]:
        """Best-effort account lookup; the outcome is logged, never raised."""
        try:
            account = await connector.fetch_account_info(access_token)
        except AccountInfoUnavailable as exc:
            logger.warning("Account info omitted for %s: %s", connector.provider_name, exc)
            return None
        except Exception:
            logger.warning(
                "Account info omitted for %s: unexpected error",
                connector.provider_name,
                exc_info=True,
            )
            return None
        logger.info("Account info enriched for %s", connector.provider_name)
        return account

    async def complete_callback(
        self,
        provider: str,
        *,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> CallbackOutcome:
        """
        Finish the OAuth round trip.  Never raises: every failure becomes a
        redirect carrying a safe, URL-encoded message.
        """
        if error:
            denied = ProviderAuthorizationDenied(error, error_description)
            logger.info("Provider %s denied authorization: %s", provider, error)
            return self._failure(denied.user_message)

        if not code or not state:
            return self._failure(MissingParameter("code" if not code else "state").user_message)

        tenant_id: Optional[str] = None
        try:
            connector = self._registry.get(provider)
            tenant_id = self._codec.decode(state)
            async with self._store.locked(tenant_id, provider):
                tokens = await connector.exchange_code(code, self._settings.callback_url(provider))
                account = await self._enrich_account(connector, tokens.access_token)
                await self._store.mark_connected(
                    connector, tenant_id, tokens, SYSTEM_ACTOR, account=account
                )
        except InvalidState as exc:
            logger.warning("Rejected %s callback: %s", provider, exc)
            return self._failure(InvalidState.default_message)
        except TokenExchangeFailure as exc:
            logger.error("OAuth callback failed for %s: %s", provider, exc)
            return self._failure(_FAILED_CONNECTION, tenant_id)
        except IntegrationError as exc:
            logger.error("OAuth callback failed for %s: %s", provider, exc)
            return self._failure(exc.user_message, tenant_id)
        except Exception:
            logger.exception("Unexpected error completing %s callback", provider)
            return self._failure(_FAILED_CONNECTION, tenant_id)

        return CallbackOutcome(
            success=True,
            message=f"{connector.display_name} connected successfully",
            redirect_url=self._success_redirect(
                tenant_id, f"{connector.display_name} connected successfully"
            ),
            tenant_id=tenant_id,
        )

    # ── Disconnect ──────────────────────────────────────────────────────

    async def disconnect(self, provider: str, tenant_id: Optional[str], actor: Actor) -> str:
        """Revoke remotely (best effort) and clear locally.  Idempotent."""
        if not tenant_id:
            raise MissingParameter("tenantId")
        connector = self._registry.get(provider)

        async with self._store.locked(tenant_id, provider):
            current = await self._store.get(tenant_id, provider)
            if current and current.access_token and not connector.is_mock:
                try:
                    revoked = await connector.revoke_token(current.access_token)
                except Exception:
                    logger.warning("Remote revocation failed for %s", provider, exc_info=True)
                else:
                    logger.info("Remote revocation for %s: %s", provider, "ok" if revoked else "skipped")
            await self._store.disconnect(connector, tenant_id, actor)

        return f"{connector.display_name} disconnected successfully"

    # ── Sync ────────────────────────────────────────────────────────────

    async def sync(
        self,
        provider: str,
        tenant_id: Optional[str],
        actor: Actor,
        *,
        year: Optional[int] = None,
        months: Optional[Sequence[int]] = None,
    ) -> SyncBatchResult:
        if not tenant_id:
            raise MissingParameter("tenantId")
        period = year or datetime.now(timezone.utc).year
        units = list(months) if months else list(ALL_MONTHS)
        return await self._engine.run(tenant_id, provider, period, units, actor)

    async def sync_meetings(
        self,
        provider: str,
        tenant_id: Optional[str],
        actor: Actor,
        meetings: Sequence[BoardMeeting],
    ) -> MeetingSyncResult:
        """Push board meetings into a connected calendar; per-meeting results."""
        if not tenant_id:
            raise MissingParameter("tenantId")
        return await self._engine.push_meetings(tenant_id, provider, meetings, actor)

    async def sync_due(self) -> ScheduledSyncReport:
        return await self._engine.sync_due()

    # ── Status ──────────────────────────────────────────────────────────

    async def status(self, tenant_id: Optional[str]) -> Dict[str, Optional[ConnectionStatus]]:
        if not tenant_id:
            raise MissingParameter("tenantId")
        statuses: Dict[str, Optional[ConnectionStatus]] = {}
        for provider in self._registry.providers():
            view = await self._store.get(tenant_id, provider)
            statuses[provider] = ConnectionStatus.from_view(view) if view else None
        return statuses

    def list_providers(self):
        return self._registry.list_providers()
