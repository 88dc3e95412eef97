"""
AuthorizationGate: decides whether an authenticated actor may act on a
tenant's integrations.  The default implementation checks ``tenant_members``.
"""

from __future__ import annotations

import logging
from typing import Protocol

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.schemas import Actor
from database.models import TenantMember

logger = logging.getLogger(__name__)


class AuthorizationGate(Protocol):
    async def require_member(self, actor: Actor, tenant_id: str) -> None: ...


class TenantMembershipGate:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def require_member(self, actor: Actor, tenant_id: str) -> None:
        """Raise ``HTTPException(403)`` unless ``actor`` belongs to ``tenant_id``."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(TenantMember).where(
                    TenantMember.tenant_id == tenant_id,
                    TenantMember.user_id == actor.actor_id,
                )
            )
            member = result.scalar_one_or_none()
        if member is None:
            logger.warning("User %s denied access to tenant %s", actor.actor_id, tenant_id)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not a member of this tenant",
            )
