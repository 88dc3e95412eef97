"""
SyncEngine: pull a batch of data units (months) for one connection.

A failing unit is recorded in the batch result and the batch moves on; the
only wholesale failure is an expired token that cannot be refreshed.  The
batch holds the (tenant, provider) key for its whole run so a concurrent
disconnect cannot interleave with a token refresh.

``push_meetings`` runs the other direction for calendar providers: board
meetings become events, with the same locking, refresh and audit rules.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.audit import AuditEmitter, build_record
from connectors.base import BaseConnector
from connectors.errors import (
    ConnectionExpired,
    ConnectionNotFound,
    IntegrationError,
    MissingParameter,
    UnsupportedOperation,
)
from connectors.registry import ConnectorRegistry
from connectors.schemas import (
    CRON_ACTOR,
    Actor,
    BoardMeeting,
    ConnectionStatusValue,
    ConnectionView,
    MeetingSyncItem,
    MeetingSyncResult,
    ScheduledSyncReport,
    SyncBatchResult,
    SyncFrequency,
    SyncStatus,
    SyncUnitError,
)
from connectors.store import ConnectionStore
from database.models import SyncedUnit

logger = logging.getLogger(__name__)

ALL_MONTHS: List[int] = list(range(1, 13))

# Minimum hours between scheduled syncs; ``None`` means never scheduled.
_FREQUENCY_HOURS: Dict[str, Optional[float]] = {
    SyncFrequency.DAILY.value: 20,
    SyncFrequency.WEEKLY.value: 144,
    SyncFrequency.MONTHLY.value: 648,
    SyncFrequency.MANUAL.value: None,
}


class UnitSink(Protocol):
    """Storage collaborator for transformed unit payloads."""

    async def store(
        self, tenant_id: str, provider: str, period: int, unit_key: int, payload: Dict[str, Any]
    ) -> None: ...


class SqlUnitSink:
    """Upserts one ``synced_units`` row per (tenant, provider, period, unit)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def store(
        self, tenant_id: str, provider: str, period: int, unit_key: int, payload: Dict[str, Any]
    ) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncedUnit).where(
                    SyncedUnit.tenant_id == tenant_id,
                    SyncedUnit.provider == provider,
                    SyncedUnit.period == period,
                    SyncedUnit.unit_key == unit_key,
                )
            )
            row = result.scalar_one_or_none()
            now = datetime.now(timezone.utc)
            if row is None:
                session.add(
                    SyncedUnit(
                        synced_unit_id=uuid.uuid4(),
                        tenant_id=tenant_id,
                        provider=provider,
                        period=period,
                        unit_key=unit_key,
                        payload=payload,
                        synced_at=now,
                    )
                )
            else:
                row.payload = payload
                row.synced_at = now
            await session.commit()


def scheduled_batches(now: datetime) -> List[Tuple[int, List[int]]]:
    """Previous and current month as (year, months) batches; January wraps."""
    if now.month == 1:
        return [(now.year - 1, [12]), (now.year, [1])]
    return [(now.year, [now.month - 1, now.month])]


def is_due(connection: ConnectionView, now: datetime) -> bool:
    hours = _FREQUENCY_HOURS.get(connection.sync_frequency.value, 20)
    if hours is None:
        return False
    if connection.last_sync_at is None:
        return True
    return now - connection.last_sync_at >= timedelta(hours=hours)


def _unit_message(exc: Exception) -> str:
    if isinstance(exc, IntegrationError):
        return exc.user_message
    return "Unexpected error while syncing"


class SyncEngine:
    def __init__(
        self,
        store: ConnectionStore,
        registry: ConnectorRegistry,
        audit: AuditEmitter,
        sink: UnitSink,
        *,
        refresh_skew_seconds: int = 300,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._audit = audit
        self._sink = sink
        self._refresh_skew = timedelta(seconds=refresh_skew_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def _ensure_fresh_token(
        self, connector: BaseConnector, connection: ConnectionView
    ) -> ConnectionView:
        """Refresh once if the token is (about to be) expired."""
        now = self._clock()
        if connection.expires_at is None or connection.expires_at - self._refresh_skew > now:
            return connection

        try:
            if not connection.refresh_token:
                raise ConnectionExpired("token expired and no refresh token available")
            tokens = await connector.refresh_access_token(connection.refresh_token)
        except Exception as exc:
            logger.warning(
                "Token refresh failed for %s/%s: %s",
                connection.provider,
                connection.tenant_id,
                exc,
            )
            await self._store.upsert(
                connection.tenant_id,
                connection.provider,
                {"last_sync_at": now, "last_sync_status": SyncStatus.FAILED},
            )
            if isinstance(exc, ConnectionExpired):
                raise
            raise ConnectionExpired(f"refresh failed: {exc}") from exc

        logger.info("Refreshed %s token for tenant %s", connection.provider, connection.tenant_id)
        return await self._store.upsert(
            connection.tenant_id,
            connection.provider,
            {
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token or connection.refresh_token,
                "expires_at": tokens.expires_at,
            },
        )

    async def run(
        self,
        tenant_id: str,
        provider: str,
        period: int,
        units: Sequence[int],
        actor: Actor,
        *,
        audit_action: Optional[str] = None,
    ) -> SyncBatchResult:
        if not tenant_id:
            raise MissingParameter("tenantId")
        if not units:
            raise MissingParameter("units")
        connector = self._registry.get(provider)

        async with self._store.locked(tenant_id, provider):
            connection = await self._store.get(tenant_id, provider)
            if connection is None or connection.status != ConnectionStatusValue.CONNECTED:
                raise ConnectionNotFound(provider)

            connection = await self._ensure_fresh_token(connector, connection)

            result = SyncBatchResult(requested_units=list(units))
            for unit_key in units:
                try:
                    payload = await connector.fetch_data_unit(connection, period, unit_key)
                    await self._sink.store(tenant_id, provider, period, unit_key, payload)
                except Exception as exc:
                    if not isinstance(exc, IntegrationError):
                        logger.exception(
                            "Unexpected error syncing %s unit %s for tenant %s",
                            provider,
                            unit_key,
                            tenant_id,
                        )
                    result.errors.append(
                        SyncUnitError(unit_key=unit_key, message=_unit_message(exc))
                    )
                    continue
                result.synced_count += 1

            await self._store.upsert(
                tenant_id,
                provider,
                {"last_sync_at": self._clock(), "last_sync_status": result.status},
            )
            await self._audit.emit(
                build_record(
                    tenant_id,
                    audit_action or f"{connector.audit_action_prefix}_synced",
                    connector.audit_resource_type,
                    actor,
                    {
                        "provider": provider,
                        "period": period,
                        "units": list(units),
                        "synced": result.synced_count,
                        "errors": len(result.errors),
                    },
                )
            )

        logger.info(
            "Synced %s for tenant %s: %d/%d units (%s)",
            provider,
            tenant_id,
            result.synced_count,
            len(result.requested_units),
            result.status.value,
        )
        return result

    async def push_meetings(
        self,
        tenant_id: str,
        provider: str,
        meetings: Sequence[BoardMeeting],
        actor: Actor,
    ) -> MeetingSyncResult:
        """
        Mirror board meetings into a connected calendar: create, update, or
        delete (``cancelled``) one event per meeting.  A failing meeting is
        recorded and the batch moves on, as with data units.
        """
        if not tenant_id:
            raise MissingParameter("tenantId")
        if not meetings:
            raise MissingParameter("meetings")
        connector = self._registry.get(provider)
        if not connector.supports_events:
            raise UnsupportedOperation(
                f"{provider} has no calendar",
                user_message=f"{connector.display_name} does not support calendar events",
            )

        async with self._store.locked(tenant_id, provider):
            connection = await self._store.get(tenant_id, provider)
            if connection is None or connection.status != ConnectionStatusValue.CONNECTED:
                raise ConnectionNotFound(provider)

            connection = await self._ensure_fresh_token(connector, connection)

            result = MeetingSyncResult()
            for meeting in meetings:
                item = MeetingSyncItem(meeting_id=meeting.id, event_id=meeting.calendar_event_id)
                try:
                    if meeting.calendar_event_id and meeting.cancelled:
                        await connector.delete_event(connection, meeting.calendar_event_id)
                        item.action = "deleted"
                    elif meeting.calendar_event_id:
                        await connector.update_event(
                            connection,
                            meeting.calendar_event_id,
                            connector.event_from_meeting(meeting),
                        )
                        item.action = "updated"
                    elif meeting.cancelled:
                        item.action = "skipped"
                    else:
                        item.event_id = await connector.create_event(
                            connection, connector.event_from_meeting(meeting)
                        )
                        item.action = "created"
                except Exception as exc:
                    if not isinstance(exc, IntegrationError):
                        logger.exception(
                            "Unexpected error pushing meeting %s to %s for tenant %s",
                            meeting.id,
                            provider,
                            tenant_id,
                        )
                    item.action = None
                    item.error = (
                        exc.user_message if isinstance(exc, IntegrationError) else "Sync failed"
                    )
                result.results.append(item)

            await self._store.upsert(
                tenant_id,
                provider,
                {"last_sync_at": self._clock(), "last_sync_status": result.status},
            )
            await self._audit.emit(
                build_record(
                    tenant_id,
                    f"{connector.audit_action_prefix}_synced",
                    connector.audit_resource_type,
                    actor,
                    {"provider": provider, "synced": result.synced, "failed": result.failed},
                )
            )

        logger.info(
            "Pushed %d/%d meetings to %s for tenant %s",
            result.synced,
            len(result.results),
            provider,
            tenant_id,
        )
        return result

    async def sync_due(
        self,
        providers: Sequence[str] = ("fortnox",),
        now: Optional[datetime] = None,
    ) -> ScheduledSyncReport:
        """
        Scheduled sweep: sync the previous and current month for every
        connected, sync-enabled connection whose frequency window elapsed.
        One failing connection never stops the sweep.
        """
        now = now or self._clock()
        report = ScheduledSyncReport(timestamp=now)
        processed = set()

        for provider in providers:
            for connection in await self._store.list_sync_candidates(provider):
                if not is_due(connection, now):
                    continue
                label = f"{connection.tenant_id}/{provider}"
                for year, months in scheduled_batches(now):
                    try:
                        result = await self.run(
                            connection.tenant_id,
                            provider,
                            year,
                            months,
                            CRON_ACTOR,
                            audit_action="financial.auto_synced",
                        )
                    except ConnectionExpired as exc:
                        # The remaining batches would retry the same refresh.
                        report.errors.append(f"{label}: {exc.user_message}")
                        break
                    except IntegrationError as exc:
                        report.errors.append(f"{label}: {exc.user_message}")
                        continue
                    except Exception:
                        logger.exception("Scheduled sync failed for %s", label)
                        report.errors.append(f"{label}: Sync failed")
                        continue
                    processed.add(label)
                    report.total_synced += result.synced_count
                    report.errors.extend(
                        f"{label}: Month {e.unit_key}: {e.message}" for e in result.errors
                    )

        report.connections_processed = len(processed)
        return report
