"""
Shared fixtures: an in-memory SQLite database, recording collaborators and
a scriptable stand-in for the Fortnox connector.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config.settings import Settings
from connectors.audit import AuditRecord
from connectors.base import month_bounds
from connectors.dependencies import build_service
from connectors.encryption import TokenCipher
from connectors.errors import SyncUnitFailure, TokenExchangeFailure
from connectors.fortnox import FortnoxConnector
from connectors.mock import mock_for
from connectors.registry import ConnectorRegistry
from connectors.schemas import AccountInfo, ConnectionView, TokenSet
from connectors.store import ConnectionStore
from connectors.sync import SyncEngine
from database.models import Base


class RecordingAudit:
    def __init__(self):
        self.records: List[AuditRecord] = []

    async def emit(self, record: AuditRecord) -> None:
        self.records.append(record)

    @property
    def actions(self) -> List[str]:
        return [r.action for r in self.records]


class RecordingSink:
    def __init__(self):
        self.stored: Dict[tuple, Dict[str, Any]] = {}

    async def store(self, tenant_id, provider, period, unit_key, payload) -> None:
        self.stored[(tenant_id, provider, period, unit_key)] = payload


class StubFortnox(FortnoxConnector):
    """Fortnox identity with scripted, network-free behaviour."""

    def __init__(
        self,
        *,
        accepted_code: str = "abc",
        account_error: Optional[Exception] = None,
        refresh_error: Optional[Exception] = None,
        revoke_error: Optional[Exception] = None,
        failing_units: Optional[Dict[int, Exception]] = None,
    ):
        super().__init__("fortnox-client", "fortnox-secret")
        self.accepted_code = accepted_code
        self.account_error = account_error
        self.refresh_error = refresh_error
        self.revoke_error = revoke_error
        self.failing_units = failing_units or {}
        self.exchanged: List[str] = []
        self.refreshed: List[str] = []
        self.revoked: List[str] = []
        self.fetched: List[tuple] = []

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        self.exchanged.append(code)
        if code != self.accepted_code:
            raise TokenExchangeFailure("fortnox token endpoint returned 400: invalid_grant")
        return TokenSet(
            access_token="live-access",
            refresh_token="live-refresh",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        self.refreshed.append(refresh_token)
        if self.refresh_error:
            raise self.refresh_error
        return TokenSet(
            access_token="refreshed-access",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )

    async def fetch_account_info(self, access_token: str) -> AccountInfo:
        if self.account_error:
            raise self.account_error
        return AccountInfo(
            email="cfo@acme.se",
            name="Acme AB",
            metadata={"organization_number": "556000-0000"},
        )

    async def fetch_data_unit(self, connection: ConnectionView, period: int, unit_key: int):
        month_bounds(period, unit_key)
        self.fetched.append((connection.access_token, period, unit_key))
        if unit_key in self.failing_units:
            raise self.failing_units[unit_key]
        return {"period": f"{period}-{unit_key:02d}", "revenue": 1000.0 * unit_key}

    async def revoke_token(self, access_token: str) -> bool:
        self.revoked.append(access_token)
        if self.revoke_error:
            raise self.revoke_error
        return True


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        app_url="https://app.test",
        oauth_redirect_base="https://api.test",
        oauth_state_secret="test-state-secret",
        jwt_secret="test-jwt-secret",
        token_encryption_key=Fernet.generate_key().decode(),
        cron_secret="cron-secret",
        fortnox_client_id="",
        fortnox_client_secret="",
        google_client_id="",
        google_client_secret="",
        microsoft_client_id="",
        microsoft_client_secret="",
    )


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def store(session_factory, settings, audit):
    return ConnectionStore(session_factory, TokenCipher(settings.token_encryption_key), audit)


@pytest.fixture
def stub_fortnox():
    return StubFortnox()


@pytest.fixture
def registry(stub_fortnox):
    return ConnectorRegistry.from_connectors(
        [stub_fortnox, mock_for("google"), mock_for("microsoft")]
    )


@pytest.fixture
def mock_registry(settings):
    """Registry built from settings with no credentials, so every provider is mocked."""
    return ConnectorRegistry(settings)


@pytest.fixture
def service(settings, session_factory, registry, audit, sink):
    return build_service(settings, session_factory, registry=registry, audit=audit, sink=sink)


@pytest.fixture
def mock_service(settings, session_factory, mock_registry, audit, sink):
    return build_service(settings, session_factory, registry=mock_registry, audit=audit, sink=sink)


@pytest.fixture
def make_engine(store, audit, sink):
    """Build a (StubFortnox, SyncEngine) pair with scripted stub behaviour."""

    def _make(**stub_kwargs):
        stub = StubFortnox(**stub_kwargs)
        return stub, SyncEngine(store, ConnectorRegistry.from_connectors([stub]), audit, sink)

    return _make


@pytest.fixture
def make_service(settings, session_factory, audit, sink):
    """Build a (StubFortnox, IntegrationService) pair with scripted stub behaviour."""

    def _make(**stub_kwargs):
        stub = StubFortnox(**stub_kwargs)
        registry = ConnectorRegistry.from_connectors([stub])
        return stub, build_service(settings, session_factory, registry=registry, audit=audit, sink=sink)

    return _make
