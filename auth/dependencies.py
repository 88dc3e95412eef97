"""
FastAPI dependencies for authentication.

Provides ``get_current_actor`` (bearer token → ``Actor``) and
``get_gate`` (the tenant membership check) used by the integration routes.
"""

from __future__ import annotations

from functools import lru_cache

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from auth.gate import AuthorizationGate, TenantMembershipGate
from connectors.schemas import Actor

_bearer_scheme = HTTPBearer()


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> Actor:
    """
    Extract and verify the Bearer token, returning the authenticated actor.
    """
    from auth.jwt import verify_token

    return verify_token(credentials.credentials)


@lru_cache
def get_gate() -> AuthorizationGate:
    from database.session import async_session_factory

    return TenantMembershipGate(async_session_factory)
