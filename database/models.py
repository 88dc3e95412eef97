"""
SQLAlchemy ORM models for integration connections, audit and synced data.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class TenantMember(Base):
    __tablename__ = "tenant_members"

    tenant_id = Column(String(128), primary_key=True)
    user_id = Column(String(128), primary_key=True)
    role = Column(String(32), nullable=False, default="member")
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class IntegrationConnection(Base):
    __tablename__ = "integration_connections"
    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="uq_integration_connections_tenant_provider"),
    )

    connection_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(128), nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default="disconnected")
    access_token = Column(Text)
    refresh_token = Column(Text)
    expires_at = Column(DateTime(timezone=True))
    account_email = Column(String(255))
    account_name = Column(String(255))
    last_sync_at = Column(DateTime(timezone=True))
    last_sync_status = Column(String(16), nullable=False, default="never")
    sync_enabled = Column(Boolean, nullable=False, default=True)
    sync_frequency = Column(String(16), nullable=False, default="daily")
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    connected_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    audit_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(128), nullable=False)
    action = Column(String(64), nullable=False)
    resource_type = Column(String(32), nullable=False)
    resource_id = Column(String(128), nullable=False)
    actor_id = Column(String(128), nullable=False)
    actor_name = Column(String(255), nullable=False)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (Index("ix_audit_logs_tenant_timestamp", "tenant_id", "timestamp"),)


class SyncedUnit(Base):
    __tablename__ = "synced_units"
    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", "period", "unit_key", name="uq_synced_units_key"),
    )

    synced_unit_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(128), nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    period = Column(Integer, nullable=False)
    unit_key = Column(Integer, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    synced_at = Column(DateTime(timezone=True), default=_utcnow)
