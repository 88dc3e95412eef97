"""
ConnectionStore: the single owner of ``integration_connections`` rows.

One row per (tenant_id, provider).  All writes for a key run under the
store's ``KeyedLock`` and return a fresh ``ConnectionView`` so callers see
the state they just wrote.  Tokens are encrypted with ``TokenCipher`` on
the way in and decrypted on the way out.

Rows are never deleted: disconnect clears credentials and flips the status
so the audit trail keeps pointing at a live record.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.audit import AuditEmitter, build_record
from connectors.base import BaseConnector
from connectors.encryption import TokenCipher
from connectors.errors import InvalidConnectionState
from connectors.locks import KeyedLock
from connectors.schemas import (
    AccountInfo,
    Actor,
    ConnectionStatusValue,
    ConnectionView,
    TokenSet,
)
from database.models import IntegrationConnection

logger = logging.getLogger(__name__)

_PATCHABLE = frozenset(
    {
        "status",
        "access_token",
        "refresh_token",
        "expires_at",
        "account_email",
        "account_name",
        "last_sync_at",
        "last_sync_status",
        "sync_enabled",
        "sync_frequency",
        "metadata",
        "connected_at",
    }
)
_ENCRYPTED = frozenset({"access_token", "refresh_token"})
_CONNECTED = ConnectionStatusValue.CONNECTED.value


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; everything stored here is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class ConnectionStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: TokenCipher,
        audit: AuditEmitter,
    ) -> None:
        self._session_factory = session_factory
        self._cipher = cipher
        self._audit = audit
        self._locks = KeyedLock()

    # ── Locking ─────────────────────────────────────────────────────────

    @asynccontextmanager
    async def locked(self, tenant_id: str, provider: str) -> AsyncIterator[None]:
        """Hold the (tenant, provider) key across a multi-step transition."""
        async with self._locks.hold((tenant_id, provider)):
            yield

    # ── Reads ───────────────────────────────────────────────────────────

    async def _load(
        self, session: AsyncSession, tenant_id: str, provider: str
    ) -> Optional[IntegrationConnection]:
        result = await session.execute(
            select(IntegrationConnection).where(
                IntegrationConnection.tenant_id == tenant_id,
                IntegrationConnection.provider == provider,
            )
        )
        return result.scalar_one_or_none()

    def _to_view(self, row: IntegrationConnection) -> ConnectionView:
        return ConnectionView(
            tenant_id=row.tenant_id,
            provider=row.provider,
            status=row.status,
            access_token=self._cipher.decrypt(row.access_token),
            refresh_token=self._cipher.decrypt(row.refresh_token),
            expires_at=_aware(row.expires_at),
            account_email=row.account_email,
            account_name=row.account_name,
            last_sync_at=_aware(row.last_sync_at),
            last_sync_status=row.last_sync_status,
            sync_enabled=row.sync_enabled,
            sync_frequency=row.sync_frequency,
            metadata=dict(row.metadata_ or {}),
            connected_at=_aware(row.connected_at),
            updated_at=_aware(row.updated_at),
        )

    async def get(self, tenant_id: str, provider: str) -> Optional[ConnectionView]:
        async with self._session_factory() as session:
            row = await self._load(session, tenant_id, provider)
            return self._to_view(row) if row else None

    async def list_sync_candidates(self, provider: Optional[str] = None) -> List[ConnectionView]:
        """Connected, sync-enabled connections (optionally for one provider)."""
        stmt = select(IntegrationConnection).where(
            IntegrationConnection.status == _CONNECTED,
            IntegrationConnection.sync_enabled.is_(True),
        )
        if provider:
            stmt = stmt.where(IntegrationConnection.provider == provider)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(IntegrationConnection.tenant_id))
            return [self._to_view(row) for row in result.scalars().all()]

    # ── Writes ──────────────────────────────────────────────────────────

    async def upsert(self, tenant_id: str, provider: str, patch: Dict[str, Any]) -> ConnectionView:
        """
        Create or update the connection for (tenant, provider).

        Unknown fields raise ``ValueError``.  Entering ``connected`` without
        an access token in the patch raises ``InvalidConnectionState``.
        """
        if not tenant_id:
            raise ValueError("tenant_id must be non-empty")
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise ValueError(f"Unknown connection fields: {sorted(unknown)}")

        values = {key: _plain(value) for key, value in patch.items()}

        async with self._locks.hold((tenant_id, provider)):
            async with self._session_factory() as session:
                row = await self._load(session, tenant_id, provider)
                previous_status = row.status if row else ConnectionStatusValue.DISCONNECTED.value

                if values.get("status") == _CONNECTED and previous_status != _CONNECTED:
                    if not values.get("access_token"):
                        raise InvalidConnectionState(
                            f"{provider} connection for tenant {tenant_id} cannot become "
                            "connected without an access token"
                        )

                if row is None:
                    row = IntegrationConnection(
                        connection_id=uuid.uuid4(),
                        tenant_id=tenant_id,
                        provider=provider,
                        status=ConnectionStatusValue.DISCONNECTED.value,
                        last_sync_status="never",
                        sync_enabled=True,
                        sync_frequency="daily",
                        metadata_={},
                    )
                    session.add(row)

                for key, value in values.items():
                    if key == "metadata":
                        row.metadata_ = {**(row.metadata_ or {}), **(value or {})}
                    elif key in _ENCRYPTED:
                        setattr(row, key, self._cipher.encrypt(value))
                    else:
                        setattr(row, key, value)

                if row.status == _CONNECTED and not self._cipher.decrypt(row.access_token):
                    raise InvalidConnectionState(
                        f"{provider} connection for tenant {tenant_id} is connected "
                        "but has no access token"
                    )

                row.updated_at = datetime.now(timezone.utc)
                await session.commit()
                return self._to_view(row)

    async def clear(self, tenant_id: str, provider: str) -> bool:
        """
        Logically disconnect.  Idempotent; returns True only when a
        connected (or errored) record actually transitioned.
        """
        async with self._locks.hold((tenant_id, provider)):
            async with self._session_factory() as session:
                row = await self._load(session, tenant_id, provider)
                if row is None or row.status == ConnectionStatusValue.DISCONNECTED.value:
                    return False
                row.status = ConnectionStatusValue.DISCONNECTED.value
                row.access_token = None
                row.refresh_token = None
                row.expires_at = None
                row.sync_enabled = False
                row.updated_at = datetime.now(timezone.utc)
                await session.commit()
                return True

    # ── Audited transitions ─────────────────────────────────────────────

    async def mark_connected(
        self,
        connector: BaseConnector,
        tenant_id: str,
        tokens: TokenSet,
        actor: Actor,
        account: Optional[AccountInfo] = None,
    ) -> ConnectionView:
        """Persist a fresh connection and emit ``<prefix>_connected``."""
        patch: Dict[str, Any] = {
            "status": ConnectionStatusValue.CONNECTED,
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token,
            "expires_at": tokens.expires_at,
            "sync_enabled": True,
            "connected_at": datetime.now(timezone.utc),
            "metadata": {"is_mock": connector.is_mock},
        }
        if account is not None:
            patch["account_email"] = account.email
            patch["account_name"] = account.name
            patch["metadata"] = {**account.metadata, "is_mock": connector.is_mock}

        async with self._locks.hold((tenant_id, connector.provider_name)):
            view = await self.upsert(tenant_id, connector.provider_name, patch)
            audit_meta: Dict[str, Any] = {"provider": connector.provider_name}
            if connector.is_mock:
                audit_meta["is_mock"] = True
            if view.account_email:
                audit_meta["account_email"] = view.account_email
            await self._audit.emit(
                build_record(
                    tenant_id,
                    f"{connector.audit_action_prefix}_connected",
                    connector.audit_resource_type,
                    actor,
                    audit_meta,
                )
            )
        logger.info("Connected %s for tenant %s", connector.provider_name, tenant_id)
        return view

    async def disconnect(self, connector: BaseConnector, tenant_id: str, actor: Actor) -> bool:
        """Clear the connection; emit ``<prefix>_disconnected`` only on a real transition."""
        async with self._locks.hold((tenant_id, connector.provider_name)):
            changed = await self.clear(tenant_id, connector.provider_name)
            if changed:
                await self._audit.emit(
                    build_record(
                        tenant_id,
                        f"{connector.audit_action_prefix}_disconnected",
                        connector.audit_resource_type,
                        actor,
                        {"provider": connector.provider_name},
                    )
                )
        if changed:
            logger.info("Disconnected %s for tenant %s", connector.provider_name, tenant_id)
        return changed
