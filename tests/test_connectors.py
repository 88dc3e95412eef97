"""
Tests for the provider connectors against scripted HTTP responses.
"""

import base64
import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from connectors.errors import (
    AccountInfoUnavailable,
    CalendarEventFailure,
    SyncUnitFailure,
    TokenExchangeFailure,
    UnsupportedOperation,
)
from connectors.fortnox import FortnoxConnector, aggregate_bas_balances
from connectors.google import GoogleCalendarConnector, summarize_events
from connectors.microsoft import MicrosoftCalendarConnector
from connectors.mock import MockConnector, mock_for
from connectors.registry import PROVIDERS, ConnectorRegistry
from connectors.schemas import BoardMeeting, ConnectionStatusValue, ConnectionView


def _connection(provider: str, **extra) -> ConnectionView:
    return ConnectionView(
        tenant_id="T1",
        provider=provider,
        status=ConnectionStatusValue.CONNECTED,
        access_token="access-123",
        **extra,
    )


class Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, status_code=200, payload=None, exc=None):
        self.status_code = status_code
        self.payload = payload if payload is not None else {}
        self.exc = exc
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.exc:
            raise self.exc
        return httpx.Response(self.status_code, json=self.payload)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


class Pages(Recorder):
    """Replays a fixed sequence of (status, payload) responses, one per request."""

    def __init__(self, *responses):
        super().__init__()
        self.responses = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status_code, payload = self.responses[len(self.requests) - 1]
        return httpx.Response(status_code, json=payload)


def _fortnox(handler) -> FortnoxConnector:
    return FortnoxConnector("client", "secret", transport=httpx.MockTransport(handler))


class TestBasAggregation:
    def test_ranges(self):
        figures = aggregate_bas_balances(
            [
                {"AccountNumber": 1930, "Balance": 250_000},
                {"AccountNumber": 1510, "Balance": 50_000},
                {"AccountNumber": 2081, "Balance": -100_000},
                {"AccountNumber": 2440, "Balance": -40_000},
                {"AccountNumber": 3001, "Balance": -120_000},
                {"AccountNumber": 4010, "Balance": 30_000},
                {"AccountNumber": 7010, "Balance": 45_000},
                {"AccountNumber": 8999, "Balance": 1_000_000},
            ]
        )
        assert figures == {
            "revenue": 120_000.0,
            "costs": 75_000.0,
            "profit": 45_000.0,
            "assets": 300_000.0,
            "liabilities": 40_000.0,
            "equity": 100_000.0,
        }

    def test_empty(self):
        assert aggregate_bas_balances([])["profit"] == 0.0


class TestFortnoxOAuth:
    def test_authorization_url(self):
        url = FortnoxConnector("client", "secret").build_authorization_url(
            "signed.state", "https://api.test/cb"
        )
        assert url.startswith("https://apps.fortnox.se/oauth-v1/auth?")
        assert "state=signed.state" in url
        assert "response_type=code" in url
        assert "companyinformation" in url

    @pytest.mark.asyncio
    async def test_exchange_uses_basic_auth(self):
        handler = Recorder(
            payload={"access_token": "at", "refresh_token": "rt", "expires_in": 3600}
        )
        tokens = await _fortnox(handler).exchange_code("the-code", "https://api.test/cb")

        assert tokens.access_token == "at"
        assert tokens.refresh_token == "rt"
        assert tokens.expires_at > datetime.now(timezone.utc)

        request = handler.last
        assert str(request.url) == "https://apps.fortnox.se/oauth-v1/token"
        expected = base64.b64encode(b"client:secret").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["the-code"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "handler",
        [
            Recorder(status_code=400, payload={"error": "invalid_grant"}),
            Recorder(status_code=500),
            Recorder(payload={"token_type": "bearer"}),
            Recorder(payload={"access_token": ""}),
            Recorder(payload={"access_token": "at", "expires_in": "soon"}),
            Recorder(payload=["not", "an", "object"]),
            Recorder(exc=httpx.ConnectTimeout("timed out")),
            Recorder(exc=httpx.ConnectError("refused")),
        ],
    )
    async def test_exchange_failures_are_mapped(self, handler):
        with pytest.raises(TokenExchangeFailure):
            await _fortnox(handler).exchange_code("code", "https://api.test/cb")

    @pytest.mark.asyncio
    async def test_refresh_keeps_old_refresh_token(self):
        handler = Recorder(payload={"access_token": "new", "expires_in": 3600})
        tokens = await _fortnox(handler).refresh_access_token("old-refresh")
        assert tokens.access_token == "new"
        assert tokens.refresh_token == "old-refresh"
        assert parse_qs(handler.last.content.decode())["grant_type"] == ["refresh_token"]


class TestFortnoxData:
    @pytest.mark.asyncio
    async def test_fetch_month(self):
        handler = Recorder(
            payload={
                "AccountBalances": [
                    {"AccountNumber": 3001, "Balance": -10_000},
                    {"AccountNumber": 5010, "Balance": 4_000},
                ]
            }
        )
        payload = await _fortnox(handler).fetch_data_unit(_connection("fortnox"), 2024, 2)

        assert payload["period"] == "2024-02"
        assert payload["fiscal_year"] == 2024
        assert payload["revenue"] == 10_000.0
        assert payload["profit"] == 6_000.0
        request = handler.last
        assert request.url.path == "/3/accounts"
        assert request.url.params["fromdate"] == "2024-02-01"
        assert request.url.params["todate"] == "2024-02-29"
        assert request.headers["Authorization"] == "Bearer access-123"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("month", [0, 13, -1])
    async def test_invalid_month_never_calls_api(self, month):
        handler = Recorder()
        with pytest.raises(SyncUnitFailure, match=f"Invalid month {month}"):
            await _fortnox(handler).fetch_data_unit(_connection("fortnox"), 2024, month)
        assert handler.requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "handler, message",
        [
            (Recorder(status_code=503), "Fortnox API error: 503"),
            (Recorder(exc=httpx.ReadTimeout("slow")), "Fortnox API timed out"),
            (Recorder(payload={"AccountBalances": "nope"}), "malformed"),
            (Recorder(payload={"AccountBalances": [{"AccountNumber": "x"}]}), "malformed"),
        ],
    )
    async def test_api_failures_fail_the_unit(self, handler, message):
        with pytest.raises(SyncUnitFailure, match=message):
            await _fortnox(handler).fetch_data_unit(_connection("fortnox"), 2024, 1)

    @pytest.mark.asyncio
    async def test_company_information(self):
        handler = Recorder(
            payload={
                "CompanyInformation": {
                    "CompanyName": "Acme AB",
                    "OrganizationNumber": "556000-0000",
                    "Email": "info@acme.se",
                    "City": "Göteborg",
                }
            }
        )
        info = await _fortnox(handler).fetch_account_info("at")
        assert info.name == "Acme AB"
        assert info.email == "info@acme.se"
        assert info.metadata["organization_number"] == "556000-0000"
        assert info.metadata["country"] == "Sweden"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("handler", [Recorder(status_code=403), Recorder(payload={"x": 1})])
    async def test_company_information_unavailable(self, handler):
        with pytest.raises(AccountInfoUnavailable):
            await _fortnox(handler).fetch_account_info("at")


class TestGoogle:
    def _connector(self, handler) -> GoogleCalendarConnector:
        return GoogleCalendarConnector("gid", "gsecret", transport=httpx.MockTransport(handler))

    def test_authorization_url_requests_offline_access(self):
        url = GoogleCalendarConnector("gid", "gsecret").build_authorization_url("s", "https://cb")
        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert "access_type=offline" in url
        assert "prompt=consent" in url

    @pytest.mark.asyncio
    async def test_account_info(self):
        handler = Recorder(payload={"email": "ceo@acme.se", "name": "Ceo"})
        info = await self._connector(handler).fetch_account_info("at")
        assert (info.email, info.name) == ("ceo@acme.se", "Ceo")
        assert str(handler.last.url) == "https://www.googleapis.com/oauth2/v2/userinfo"

    @pytest.mark.asyncio
    async def test_events_for_month_use_calendar_from_metadata(self):
        handler = Recorder(
            payload={
                "items": [
                    {
                        "id": "e1",
                        "summary": "Board meeting",
                        "start": {"dateTime": "2024-04-10T09:00:00Z"},
                        "end": {"dateTime": "2024-04-10T11:00:00Z"},
                        "status": "confirmed",
                    },
                    {"id": "e2", "start": {"date": "2024-04-20"}, "end": {"date": "2024-04-21"}},
                ]
            }
        )
        connection = _connection("google", metadata={"calendar_id": "board@group.calendar"})
        payload = await self._connector(handler).fetch_data_unit(connection, 2024, 4)

        assert payload["event_count"] == 2
        assert payload["events"][1]["start"] == "2024-04-20"
        assert payload["events"][1]["title"] == ""
        request = handler.last
        assert "/calendar/v3/calendars/board%40group.calendar/events" in str(request.url)
        assert request.url.params["timeMin"] == "2024-04-01T00:00:00Z"
        assert request.url.params["timeMax"] == "2024-05-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_revoke(self):
        handler = Recorder()
        assert await self._connector(handler).revoke_token("at") is True
        assert handler.last.url.params["token"] == "at"

    @pytest.mark.asyncio
    async def test_revoke_network_failure_returns_false(self):
        handler = Recorder(exc=httpx.ConnectError("down"))
        assert await self._connector(handler).revoke_token("at") is False

    def test_summarize_events_handles_missing_fields(self):
        assert summarize_events([{}]) == [
            {"id": None, "title": "", "start": None, "end": None, "status": None}
        ]


class TestMicrosoft:
    def _connector(self, handler) -> MicrosoftCalendarConnector:
        return MicrosoftCalendarConnector("mid", "msecret", transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_account_info_falls_back_to_principal_name(self):
        handler = Recorder(payload={"displayName": "Chair", "userPrincipalName": "chair@acme.se"})
        info = await self._connector(handler).fetch_account_info("at")
        assert (info.email, info.name) == ("chair@acme.se", "Chair")

    @pytest.mark.asyncio
    async def test_calendar_view(self):
        handler = Recorder(
            payload={
                "value": [
                    {
                        "id": "m1",
                        "subject": "AGM",
                        "start": {"dateTime": "2024-05-02T10:00:00"},
                        "end": {"dateTime": "2024-05-02T12:00:00"},
                        "isCancelled": True,
                    }
                ]
            }
        )
        payload = await self._connector(handler).fetch_data_unit(_connection("microsoft"), 2024, 5)
        assert payload["events"] == [
            {
                "id": "m1",
                "title": "AGM",
                "start": "2024-05-02T10:00:00",
                "end": "2024-05-02T12:00:00",
                "status": "cancelled",
            }
        ]
        assert handler.last.url.path == "/v1.0/me/calendarView"

    @pytest.mark.asyncio
    async def test_token_request_includes_scopes(self):
        handler = Recorder(payload={"access_token": "at"})
        tokens = await self._connector(handler).exchange_code("code", "https://cb")
        assert tokens.expires_at is None
        form = parse_qs(handler.last.content.decode())
        assert "offline_access" in form["scope"][0]

    @pytest.mark.asyncio
    async def test_no_remote_revocation(self):
        handler = Recorder()
        assert await self._connector(handler).revoke_token("at") is False
        assert handler.requests == []


class TestMockConnectors:
    @pytest.mark.parametrize("provider", PROVIDERS)
    def test_mock_keeps_real_identity(self, provider):
        mock = mock_for(provider)
        assert mock.is_mock is True
        assert mock.provider_name == provider
        assert mock.placeholder_tokens().access_token

    def test_mock_has_no_redirect(self):
        with pytest.raises(UnsupportedOperation):
            mock_for("google").build_authorization_url("s", "https://cb")

    @pytest.mark.asyncio
    async def test_mock_calendar_unit(self):
        payload = await mock_for("google").fetch_data_unit(_connection("google"), 2024, 7)
        assert payload["period"] == "2024-07"
        assert payload["is_mock"] is True


class TestRegistry:
    def test_missing_credentials_select_mock(self, settings):
        registry = ConnectorRegistry(settings)
        assert all(isinstance(registry.get(p), MockConnector) for p in PROVIDERS)

    def test_credentials_select_real_connector(self, settings):
        configured = settings.model_copy(
            update={"google_client_id": "gid", "google_client_secret": "gsecret"}
        )
        registry = ConnectorRegistry(configured)
        assert isinstance(registry.get("google"), GoogleCalendarConnector)
        assert isinstance(registry.get("fortnox"), MockConnector)

    def test_forced_mock_overrides_credentials(self, settings):
        configured = settings.model_copy(
            update={
                "fortnox_client_id": "fid",
                "fortnox_client_secret": "fsecret",
                "fortnox_use_mock": True,
            }
        )
        assert ConnectorRegistry(configured).get("fortnox").is_mock

    def test_list_providers(self, settings):
        listed = ConnectorRegistry(settings).list_providers()
        assert [p["provider"] for p in listed] == ["fortnox", "google", "microsoft"]
        assert json.dumps(listed)


class TestCalendarPaging:
    @pytest.mark.asyncio
    async def test_google_follows_page_tokens(self):
        handler = Pages(
            (200, {"items": [{"id": "e1"}], "nextPageToken": "p2"}),
            (200, {"items": [{"id": "e2"}]}),
        )
        connector = GoogleCalendarConnector("gid", "gsecret", transport=httpx.MockTransport(handler))

        payload = await connector.fetch_data_unit(_connection("google"), 2024, 3)

        assert payload["event_count"] == 2
        assert [e["id"] for e in payload["events"]] == ["e1", "e2"]
        assert len(handler.requests) == 2
        assert "pageToken" not in handler.requests[0].url.params
        second = handler.requests[1].url.params
        assert second["pageToken"] == "p2"
        assert second["timeMin"] == "2024-03-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_google_failing_page_fails_the_unit(self):
        handler = Pages(
            (200, {"items": [{"id": "e1"}], "nextPageToken": "p2"}),
            (500, {}),
        )
        connector = GoogleCalendarConnector("gid", "gsecret", transport=httpx.MockTransport(handler))
        with pytest.raises(SyncUnitFailure, match="Google Workspace API error: 500"):
            await connector.fetch_data_unit(_connection("google"), 2024, 3)

    @pytest.mark.asyncio
    async def test_microsoft_follows_next_link(self):
        next_link = "https://graph.microsoft.com/v1.0/me/calendarView?$skiptoken=abc"
        handler = Pages(
            (200, {"value": [{"id": "m1", "subject": "Board"}], "@odata.nextLink": next_link}),
            (200, {"value": [{"id": "m2", "subject": "AGM"}]}),
        )
        connector = MicrosoftCalendarConnector("mid", "msecret", transport=httpx.MockTransport(handler))

        payload = await connector.fetch_data_unit(_connection("microsoft"), 2024, 12)

        assert payload["event_count"] == 2
        assert [e["title"] for e in payload["events"]] == ["Board", "AGM"]
        first, second = handler.requests
        assert first.url.params["startDateTime"] == "2024-12-01T00:00:00Z"
        assert first.url.params["endDateTime"] == "2025-01-01T00:00:00Z"
        assert second.url.params["$skiptoken"] == "abc"
        assert second.headers["Authorization"] == "Bearer access-123"

    @pytest.mark.asyncio
    async def test_microsoft_failing_next_link_fails_the_unit(self):
        handler = Pages(
            (200, {"value": [], "@odata.nextLink": "https://graph.microsoft.com/v1.0/next"}),
            (429, {}),
        )
        connector = MicrosoftCalendarConnector("mid", "msecret", transport=httpx.MockTransport(handler))
        with pytest.raises(SyncUnitFailure, match="Microsoft 365 API error: 429"):
            await connector.fetch_data_unit(_connection("microsoft"), 2024, 1)


MEETING = BoardMeeting(
    id="meeting-1",
    title="Q2 board meeting",
    description="Quarterly review",
    scheduledStart=datetime(2024, 6, 12, 8, 0, tzinfo=timezone.utc),
    scheduledEnd=datetime(2024, 6, 12, 10, 0, tzinfo=timezone.utc),
    location="Head office",
    videoConferenceUrl="https://meet.example/q2",
    attendees=[{"email": "chair@acme.se", "name": "Chair"}],
)


class TestGoogleEvents:
    def _connector(self, handler) -> GoogleCalendarConnector:
        return GoogleCalendarConnector("gid", "gsecret", transport=httpx.MockTransport(handler))

    def test_event_from_meeting(self):
        event = GoogleCalendarConnector().event_from_meeting(MEETING)
        assert event["summary"] == "Q2 board meeting"
        assert event["start"] == {
            "dateTime": "2024-06-12T08:00:00+00:00",
            "timeZone": "Europe/Stockholm",
        }
        assert event["location"] == "Head office"
        assert event["attendees"][0]["email"] == "chair@acme.se"
        assert event["conferenceData"]["entryPoints"][0]["uri"] == "https://meet.example/q2"
        assert [o["minutes"] for o in event["reminders"]["overrides"]] == [60, 15]

    @pytest.mark.asyncio
    async def test_create_posts_to_calendar(self):
        handler = Recorder(payload={"id": "g-event-1"})
        connection = _connection("google", metadata={"calendar_id": "board@group.calendar"})

        event_id = await self._connector(handler).create_event(connection, {"summary": "x"})

        assert event_id == "g-event-1"
        request = handler.last
        assert request.method == "POST"
        assert "/calendars/board%40group.calendar/events" in str(request.url)
        assert json.loads(request.content) == {"summary": "x"}
        assert request.headers["Authorization"] == "Bearer access-123"

    @pytest.mark.asyncio
    async def test_update_patches_event(self):
        handler = Recorder(payload={"id": "g-event-1"})
        await self._connector(handler).update_event(_connection("google"), "g-event-1", {"summary": "y"})
        assert handler.last.method == "PATCH"
        assert str(handler.last.url).endswith("/calendars/primary/events/g-event-1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [204, 404, 410])
    async def test_delete_treats_missing_event_as_done(self, status_code):
        handler = Recorder(status_code=status_code)
        await self._connector(handler).delete_event(_connection("google"), "gone")
        assert handler.last.method == "DELETE"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "handler, message",
        [
            (Recorder(status_code=500), "Google Workspace API error: 500"),
            (Recorder(status_code=403), "Google Workspace API error: 403"),
            (Recorder(exc=httpx.ReadTimeout("slow")), "Google Workspace API timed out"),
            (Recorder(exc=httpx.ConnectError("down")), "Google Workspace API request failed"),
        ],
    )
    async def test_write_failures_are_mapped(self, handler, message):
        with pytest.raises(CalendarEventFailure, match=message):
            await self._connector(handler).delete_event(_connection("google"), "e1")


class TestMicrosoftEvents:
    def _connector(self, handler) -> MicrosoftCalendarConnector:
        return MicrosoftCalendarConnector("mid", "msecret", transport=httpx.MockTransport(handler))

    def test_event_from_meeting_uses_utc(self):
        start = datetime(2024, 6, 12, 10, 0, tzinfo=timezone(timedelta(hours=2)))
        meeting = MEETING.model_copy(update={"scheduled_start": start})
        event = MicrosoftCalendarConnector().event_from_meeting(meeting)
        assert event["subject"] == "Q2 board meeting"
        assert event["start"] == {"dateTime": "2024-06-12T08:00:00", "timeZone": "UTC"}
        assert event["body"] == {"contentType": "HTML", "content": "Quarterly review"}
        assert event["location"] == {"displayName": "Head office"}
        assert event["attendees"][0]["emailAddress"]["address"] == "chair@acme.se"
        assert event["isOnlineMeeting"] is True

    @pytest.mark.asyncio
    async def test_create_posts_to_default_calendar(self):
        handler = Recorder(status_code=201, payload={"id": "ms-event-1"})
        event_id = await self._connector(handler).create_event(_connection("microsoft"), {"subject": "x"})
        assert event_id == "ms-event-1"
        assert handler.last.url.path == "/v1.0/me/calendar/events"

    @pytest.mark.asyncio
    async def test_delete_missing_event_is_done(self):
        handler = Recorder(status_code=404)
        await self._connector(handler).delete_event(_connection("microsoft"), "gone")
        assert handler.last.url.path == "/v1.0/me/calendar/events/gone"

    @pytest.mark.asyncio
    async def test_update_failure(self):
        handler = Recorder(status_code=400)
        with pytest.raises(CalendarEventFailure, match="Microsoft 365 API error: 400"):
            await self._connector(handler).update_event(_connection("microsoft"), "e1", {})


class TestMockEvents:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("provider", ["google", "microsoft"])
    async def test_mock_calendar_writes(self, provider):
        mock = mock_for(provider)
        assert mock.supports_events is True
        event_id = await mock.create_event(_connection(provider), mock.event_from_meeting(MEETING))
        assert event_id.startswith(f"mock-{provider}-event-")
        assert await mock.update_event(_connection(provider), event_id, {}) is None
        assert await mock.delete_event(_connection(provider), event_id) is None

    def test_fortnox_has_no_calendar(self):
        assert FortnoxConnector().supports_events is False
        assert mock_for("fortnox").supports_events is False
