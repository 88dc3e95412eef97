"""
Integration API routes: connect, OAuth callback, disconnect, sync, status,
and pushing board meetings to calendars.

Route prefix: /api/v1/integrations
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import RedirectResponse

from auth.dependencies import get_current_actor, get_gate
from auth.gate import AuthorizationGate
from config.settings import Settings
from connectors.dependencies import get_integration_service
from connectors.errors import MissingParameter
from connectors.schemas import (
    Actor,
    ConnectResponse,
    MeetingSyncRequest,
    MeetingSyncResponse,
    MessageResponse,
    SyncRequest,
    SyncResponse,
    TenantRequest,
    dump_camel,
)
from connectors.service import IntegrationService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["integrations"])


def get_settings() -> Settings:
    from config.settings import config

    return config


async def _authorize(gate: AuthorizationGate, actor: Actor, tenant_id: Optional[str]) -> str:
    if not tenant_id:
        raise MissingParameter("tenantId")
    await gate.require_member(actor, tenant_id)
    return tenant_id


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/providers")
async def list_providers(
    service: IntegrationService = Depends(get_integration_service),
) -> list[dict]:
    """
    List all providers and whether they run against the real API or mock.
    No auth required; used by the frontend to render the integrations tab.
    """
    return service.list_providers()


@router.get("/status")
async def connection_status(
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    actor: Actor = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_gate),
    service: IntegrationService = Depends(get_integration_service),
) -> Dict[str, Any]:
    """Per-provider connection status for a tenant (null when never connected)."""
    tenant_id = await _authorize(gate, actor, tenant_id)
    statuses = await service.status(tenant_id)
    return {
        provider: dump_camel(value) if value else None
        for provider, value in statuses.items()
    }


@router.get("/cron/sync")
async def scheduled_sync(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
    service: IntegrationService = Depends(get_integration_service),
) -> Dict[str, Any]:
    """
    Scheduled ERP sync: triggered daily by an external scheduler.
    Requires ``Authorization: Bearer <CRON_SECRET>`` when a secret is set.
    """
    if settings.cron_secret and authorization != f"Bearer {settings.cron_secret}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    report = await service.sync_due()
    return {
        "success": True,
        "totalSynced": report.total_synced,
        "connectionsProcessed": report.connections_processed,
        "errors": report.errors,
        "timestamp": report.timestamp.isoformat(),
    }


@router.post("/{provider}/connect")
async def connect(
    provider: str,
    body: TenantRequest,
    actor: Actor = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_gate),
    service: IntegrationService = Depends(get_integration_service),
) -> Dict[str, Any]:
    """
    Start connecting a provider.

    Returns ``authorizationUrl`` for the frontend to redirect to, or
    ``isMock: true`` when the provider runs in mock mode and is already
    connected.
    """
    tenant_id = await _authorize(gate, actor, body.tenant_id)
    result = await service.connect(provider, tenant_id, actor)
    if result.is_mock:
        response = ConnectResponse(success=True, is_mock=True, message=result.message)
    else:
        response = ConnectResponse(success=True, authorization_url=result.authorization_url)
    return dump_camel(response)


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    service: IntegrationService = Depends(get_integration_service),
) -> RedirectResponse:
    """
    OAuth callback: the provider redirects here after consent.

    Always answers with a redirect back to the app carrying a success or
    error message; the tenant is recovered from the signed ``state``.
    """
    outcome = await service.complete_callback(
        provider,
        code=code,
        state=state,
        error=error,
        error_description=error_description,
    )
    return RedirectResponse(outcome.redirect_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.post("/{provider}/disconnect")
async def disconnect(
    provider: str,
    body: TenantRequest,
    actor: Actor = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_gate),
    service: IntegrationService = Depends(get_integration_service),
) -> Dict[str, Any]:
    """Disconnect and revoke a provider connection.  Idempotent."""
    tenant_id = await _authorize(gate, actor, body.tenant_id)
    message = await service.disconnect(provider, tenant_id, actor)
    return MessageResponse(success=True, message=message).model_dump()


@router.post("/{provider}/sync")
async def sync(
    provider: str,
    body: SyncRequest,
    actor: Actor = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_gate),
    service: IntegrationService = Depends(get_integration_service),
) -> Dict[str, Any]:
    """
    Pull ``months`` (default: all twelve) of ``year`` (default: current
    year).  Individual month failures are reported in ``errors``.
    """
    tenant_id = await _authorize(gate, actor, body.tenant_id)
    result = await service.sync(
        provider,
        tenant_id,
        actor,
        year=body.year,
        months=body.months,
    )
    response = SyncResponse(success=True, synced=result.synced_count, errors=result.errors)
    return response.model_dump(mode="json", by_alias=True)


@router.post("/{provider}/meetings/sync")
async def sync_meetings(
    provider: str,
    body: MeetingSyncRequest,
    actor: Actor = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_gate),
    service: IntegrationService = Depends(get_integration_service),
) -> Dict[str, Any]:
    """
    Push board meetings to a calendar provider (Google or Microsoft).
    Each meeting gets its own result; one failing meeting does not stop
    the rest.
    """
    tenant_id = await _authorize(gate, actor, body.tenant_id)
    result = await service.sync_meetings(provider, tenant_id, actor, body.meetings)
    response = MeetingSyncResponse(
        success=True,
        synced=result.synced,
        failed=result.failed,
        results=result.results,
    )
    return response.model_dump(mode="json", by_alias=True, exclude_none=True)
