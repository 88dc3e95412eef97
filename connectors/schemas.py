"""
Pydantic schemas for the integration connectors.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Scalar = Union[str, int, float, bool, None]


class ConnectionStatusValue(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERROR = "error"


class SyncStatus(str, Enum):
    NEVER = "never"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class SyncFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    MANUAL = "manual"


# ═══════════════════════════════════════════════════════════════════════════════
# Provider adapter values
# ═══════════════════════════════════════════════════════════════════════════════


class TokenSet(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None  # None → token does not expire


class AccountInfo(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    metadata: Dict[str, Scalar] = Field(default_factory=dict)


class Actor(BaseModel):
    """Who triggered a transition; recorded on every audit entry."""

    actor_id: str
    actor_name: str


SYSTEM_ACTOR = Actor(actor_id="system", actor_name="System")
CRON_ACTOR = Actor(actor_id="cron-job", actor_name="Scheduled Sync")


# ═══════════════════════════════════════════════════════════════════════════════
# Connection record
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectionView(BaseModel):
    """
    Immutable snapshot of a stored connection, with tokens already decrypted.

    Returned by every ConnectionStore read and write.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    provider: str
    status: ConnectionStatusValue
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    account_email: Optional[str] = None
    account_name: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    last_sync_status: SyncStatus = SyncStatus.NEVER
    sync_enabled: bool = True
    sync_frequency: SyncFrequency = SyncFrequency.DAILY
    metadata: Dict[str, Scalar] = Field(default_factory=dict)
    connected_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ConnectionStatus(BaseModel):
    """Public status of one provider connection (no secrets)."""

    model_config = ConfigDict(populate_by_name=True)

    status: ConnectionStatusValue
    account_email: Optional[str] = Field(None, alias="accountEmail")
    account_name: Optional[str] = Field(None, alias="accountName")
    last_sync_at: Optional[datetime] = Field(None, alias="lastSyncAt")
    last_sync_status: SyncStatus = Field(SyncStatus.NEVER, alias="lastSyncStatus")
    sync_enabled: bool = Field(True, alias="syncEnabled")

    @classmethod
    def from_view(cls, view: ConnectionView) -> "ConnectionStatus":
        return cls(
            status=view.status,
            account_email=view.account_email,
            account_name=view.account_name,
            last_sync_at=view.last_sync_at,
            last_sync_status=view.last_sync_status,
            sync_enabled=view.sync_enabled,
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Sync
# ═══════════════════════════════════════════════════════════════════════════════


class SyncUnitError(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    unit_key: int = Field(..., alias="unitKey")
    message: str


class SyncBatchResult(BaseModel):
    requested_units: List[int]
    synced_count: int = 0
    errors: List[SyncUnitError] = Field(default_factory=list)

    @property
    def status(self) -> SyncStatus:
        if not self.errors:
            return SyncStatus.SUCCESS
        if self.synced_count:
            return SyncStatus.PARTIAL
        return SyncStatus.FAILED


class ScheduledSyncReport(BaseModel):
    total_synced: int = 0
    connections_processed: int = 0
    errors: List[str] = Field(default_factory=list)
    timestamp: datetime


# ═══════════════════════════════════════════════════════════════════════════════
# Board meetings pushed to calendars
# ═══════════════════════════════════════════════════════════════════════════════


class MeetingAttendee(BaseModel):
    email: str
    name: Optional[str] = None


class BoardMeeting(BaseModel):
    """
    A board meeting to mirror into a connected calendar.

    ``calendar_event_id`` set means the event already exists and is updated
    (or deleted when ``cancelled``); otherwise a new event is created.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    description: Optional[str] = None
    scheduled_start: datetime = Field(..., alias="scheduledStart")
    scheduled_end: datetime = Field(..., alias="scheduledEnd")
    timezone: str = "Europe/Stockholm"
    location: Optional[str] = None
    video_conference_url: Optional[str] = Field(None, alias="videoConferenceUrl")
    attendees: List[MeetingAttendee] = Field(default_factory=list)
    calendar_event_id: Optional[str] = Field(None, alias="calendarEventId")
    cancelled: bool = False


class MeetingSyncItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    meeting_id: str = Field(..., alias="meetingId")
    event_id: Optional[str] = Field(None, alias="eventId")
    action: Optional[str] = None  # created | updated | deleted
    error: Optional[str] = None


class MeetingSyncResult(BaseModel):
    results: List[MeetingSyncItem] = Field(default_factory=list)

    @property
    def synced(self) -> int:
        return sum(1 for r in self.results if r.error is None)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.error is not None)

    @property
    def status(self) -> SyncStatus:
        if not self.failed:
            return SyncStatus.SUCCESS
        if self.synced:
            return SyncStatus.PARTIAL
        return SyncStatus.FAILED


# ═══════════════════════════════════════════════════════════════════════════════
# Flow results
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectResult(BaseModel):
    success: bool = True
    is_mock: bool = False
    authorization_url: Optional[str] = None
    message: Optional[str] = None


class CallbackOutcome(BaseModel):
    success: bool
    message: str
    redirect_url: str
    tenant_id: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════════
# API request / response bodies
# ═══════════════════════════════════════════════════════════════════════════════


class TenantRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: Optional[str] = Field(None, alias="tenantId")


class SyncRequest(TenantRequest):
    year: Optional[int] = None
    months: Optional[List[int]] = None


class ConnectResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    is_mock: Optional[bool] = Field(None, alias="isMock")
    authorization_url: Optional[str] = Field(None, alias="authorizationUrl")
    message: Optional[str] = None


class SyncResponse(BaseModel):
    success: bool
    synced: int
    errors: List[SyncUnitError]


class MeetingSyncRequest(TenantRequest):
    meetings: List[BoardMeeting] = Field(default_factory=list)


class MeetingSyncResponse(BaseModel):
    success: bool
    synced: int
    failed: int
    results: List[MeetingSyncItem]


class MessageResponse(BaseModel):
    success: bool
    message: str


def dump_camel(model: BaseModel) -> Dict[str, Any]:
    """Serialise with aliases, dropping unset optionals."""
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)
