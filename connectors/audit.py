"""
Audit trail for connection transitions.

``AuditEmitter`` is the collaborator interface; ``SqlAuditEmitter`` appends
rows to ``audit_logs``.  Emission happens inside the store / sync engine at
the point where a transition has been committed, so every entry point that
triggers a transition gets exactly one record.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.schemas import Actor
from database.models import AuditLog

logger = logging.getLogger(__name__)


class AuditRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    action: str
    resource_type: str
    resource_id: str
    actor_id: str
    actor_name: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def build_record(
    tenant_id: str,
    action: str,
    resource_type: str,
    actor: Actor,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditRecord:
    return AuditRecord(
        tenant_id=tenant_id,
        action=action,
        resource_type=resource_type,
        resource_id=tenant_id,
        actor_id=actor.actor_id,
        actor_name=actor.actor_name,
        metadata=metadata or {},
    )


class AuditEmitter(Protocol):
    async def emit(self, record: AuditRecord) -> None: ...


class SqlAuditEmitter:
    """Append-only writer for ``audit_logs``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def emit(self, record: AuditRecord) -> None:
        async with self._session_factory() as session:
            session.add(
                AuditLog(
                    audit_id=uuid.uuid4(),
                    tenant_id=record.tenant_id,
                    action=record.action,
                    resource_type=record.resource_type,
                    resource_id=record.resource_id,
                    actor_id=record.actor_id,
                    actor_name=record.actor_name,
                    metadata_=record.metadata,
                    timestamp=record.timestamp,
                )
            )
            await session.commit()
        logger.info(
            "Audit: tenant=%s action=%s actor=%s",
            record.tenant_id,
            record.action,
            record.actor_id,
        )
