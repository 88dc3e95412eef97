"""
Builds the integration object graph from one ``Settings`` instance.

``build_service`` is the only place that reads settings; every component
below it receives what it needs through its constructor.
"""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import Settings
from connectors.audit import AuditEmitter, SqlAuditEmitter
from connectors.encryption import TokenCipher
from connectors.registry import ConnectorRegistry
from connectors.service import IntegrationService
from connectors.state import StateCodec
from connectors.store import ConnectionStore
from connectors.sync import SqlUnitSink, SyncEngine, UnitSink


def build_service(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    registry: ConnectorRegistry | None = None,
    audit: AuditEmitter | None = None,
    sink: UnitSink | None = None,
) -> IntegrationService:
    registry = registry or ConnectorRegistry(settings)
    audit = audit or SqlAuditEmitter(session_factory)
    store = ConnectionStore(session_factory, TokenCipher(settings.token_encryption_key), audit)
    engine = SyncEngine(
        store,
        registry,
        audit,
        sink or SqlUnitSink(session_factory),
        refresh_skew_seconds=settings.token_refresh_skew_seconds,
    )
    codec = StateCodec(settings.oauth_state_secret, settings.oauth_state_max_age_seconds)
    return IntegrationService(settings, registry, codec, store, engine)


@lru_cache
def get_integration_service() -> IntegrationService:
    """FastAPI dependency: one service per process."""
    from config.settings import config
    from database.session import async_session_factory

    return build_service(config, async_session_factory)
