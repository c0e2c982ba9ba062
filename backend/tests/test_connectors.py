from datetime import datetime, timedelta, timezone

import httpx
import pytest

from backend.app.core.errors import ConnectionNotLinkedError, CredentialRefreshError
from backend.app.models.plan import CalendarQuery, MailQuery
from backend.app.models.search import SourceKind
from backend.app.services.connectors.base import UpstreamTransient, UpstreamUnauthorized
from backend.app.services.connectors.calendar import GoogleCalendarConnector, resolve_window
from backend.app.services.connectors.gmail import GmailConnector
from backend.app.services.credentials import Connection, ConnectionRepository, GoogleCredentialProvider


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_gmail_lists_then_fetches_metadata():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        if request.url.path.endswith("/messages"):
            return httpx.Response(200, json={"messages": [{"id": "m1", "threadId": "t1"}]})
        return httpx.Response(200, json={
            "snippet": "Invoice attached",
            "payload": {"headers": [
                {"name": "From", "value": "Bob <bob@x.com>"},
                {"name": "Subject", "value": "Invoice"},
                {"name": "Date", "value": "Mon, 5 Jan 2026"},
            ]},
        })

    connector = GmailConnector(_client(handler))
    records = await connector.search("tok", MailQuery(query="invoice", max_results=5), "u1")

    assert seen[0].url.params["q"] == "invoice newer_than:180d"
    assert seen[0].headers["Authorization"] == "Bearer tok"
    assert seen[1].url.params["format"] == "metadata"
    [hit] = connector.normalize(records)
    assert hit.id == "m1"
    assert hit.metadata.thread_id == "t1"
    assert hit.metadata.sender == "Bob <bob@x.com>"
    assert hit.metadata.recipients is None


@pytest.mark.asyncio
async def test_gmail_maps_status_codes_to_typed_errors():
    connector = GmailConnector(_client(lambda request: httpx.Response(401)))
    with pytest.raises(UpstreamUnauthorized):
        await connector.search("tok", MailQuery(query="x"), "u1")

    connector = GmailConnector(_client(lambda request: httpx.Response(503)))
    with pytest.raises(UpstreamTransient):
        await connector.search("tok", MailQuery(query="x"), "u1")


@pytest.mark.asyncio
async def test_calendar_maps_events():
    def handler(request: httpx.Request):
        assert request.url.params["singleEvents"] == "true"
        return httpx.Response(200, json={"items": [{
            "id": "e1",
            "summary": "Review",
            "start": {"dateTime": "2026-01-06T10:00:00Z"},
            "end": {"date": "2026-01-06"},
            "attendees": [{"email": "bob@x.com"}, {"displayName": "no email"}],
            "htmlLink": "https://calendar.google.com/event?eid=e1",
        }]})

    connector = GoogleCalendarConnector(_client(handler))
    [event] = await connector.search("tok", CalendarQuery(), "u1")

    assert event.title == "Review"
    assert event.attendees == ["bob@x.com"]
    [hit] = connector.normalize([event])
    assert hit.source == SourceKind.CALENDAR
    assert hit.content == "Review - 2026-01-06T10:00:00Z"


def test_calendar_window_defaults_and_same_day():
    now = datetime(2026, 1, 10, tzinfo=timezone.utc)
    start, end = resolve_window(None, now)
    assert (start, end) == (now - timedelta(days=7), now + timedelta(days=7))

    start, end = resolve_window(CalendarQuery(start="2026-01-12", end="2026-01-12"), now)
    assert end - start == timedelta(days=1)


class MemoryConnections(ConnectionRepository):
    def __init__(self, connection=None):
        self.connection = connection
        self.saved = []

    async def get(self, user_id, provider):
        return self.connection

    async def save_tokens(self, user_id, provider, access_token, expires_at):
        self.saved.append(access_token)


def _connection(expired=False, refresh_token="rt"):
    offset = timedelta(hours=-1 if expired else 1)
    return Connection(
        user_id="u1", provider="google", access_token="old",
        refresh_token=refresh_token, token_expires_at=datetime.now(timezone.utc) + offset,
    )


@pytest.mark.asyncio
async def test_credential_is_refreshed_proactively_when_expired():
    def handler(request: httpx.Request):
        assert b"grant_type=refresh_token" in request.content
        return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})

    connections = MemoryConnections(_connection(expired=True))
    provider = GoogleCredentialProvider(connections, _client(handler))

    assert await provider.get_credential("u1", SourceKind.MAIL) == "fresh"
    assert connections.saved == ["fresh"]


@pytest.mark.asyncio
async def test_credential_errors():
    provider = GoogleCredentialProvider(MemoryConnections(None), _client(lambda r: httpx.Response(200)))
    with pytest.raises(ConnectionNotLinkedError):
        await provider.get_credential("u1", SourceKind.CALENDAR)
    assert await provider.get_credential("u1", SourceKind.MESSAGE_ARCHIVE) is None

    failing = GoogleCredentialProvider(
        MemoryConnections(_connection()), _client(lambda r: httpx.Response(400, json={"error": "invalid_grant"}))
    )
    assert await failing.get_credential("u1", SourceKind.MAIL) == "old"
    with pytest.raises(CredentialRefreshError):
        await failing.refresh_credential("u1", SourceKind.MAIL)
