import asyncio

import httpx
import pytest

from backend.app.models.plan import CalendarQuery, MailQuery, QueryPlan
from backend.app.models.search import SourceKind
from backend.app.services.connectors.base import (
    UpstreamFatal,
    UpstreamTransient,
    UpstreamUnauthorized,
    classify_error,
)
from backend.app.services.connectors.extension import ExtensionBridgeConnector
from backend.app.services.executor import FanOutExecutor, RequestCredentials
from backend.tests.fakes import FakeConnector, FakeCredentialProvider, make_hit

MAIL_AND_CALENDAR = QueryPlan(
    needs_mail=True,
    needs_calendar=True,
    mail=MailQuery(query="invoice newer_than:180d"),
    calendar=CalendarQuery(),
)


@pytest.mark.asyncio
async def test_auth_failure_refreshes_once_and_retries():
    mail_hit = make_hit("m1", SourceKind.MAIL)
    mail = FakeConnector(SourceKind.MAIL, [UpstreamUnauthorized("401"), [mail_hit]], credential_key="google")
    provider = FakeCredentialProvider()
    executor = FanOutExecutor({SourceKind.MAIL: mail})

    result = await executor.execute(MAIL_AND_CALENDAR, RequestCredentials(provider, "u1"), "u1")

    assert result.searched_sources == [SourceKind.MAIL]
    assert result.hits_by_source[SourceKind.MAIL] == [mail_hit]
    assert mail.tokens == ["token-1", "token-2"]
    assert provider.refresh_calls == 1


@pytest.mark.asyncio
async def test_second_auth_failure_is_terminal_for_that_source_only():
    mail = FakeConnector(SourceKind.MAIL, [UpstreamUnauthorized("401"), UpstreamUnauthorized("401")], credential_key="google")
    calendar = FakeConnector(SourceKind.CALENDAR, [[make_hit("e1", SourceKind.CALENDAR, 0.8)]], credential_key="google")
    executor = FanOutExecutor({SourceKind.MAIL: mail, SourceKind.CALENDAR: calendar})

    result = await executor.execute(MAIL_AND_CALENDAR, RequestCredentials(FakeCredentialProvider(), "u1"), "u1")

    assert result.searched_sources == [SourceKind.CALENDAR]
    assert SourceKind.MAIL in result.failed_sources
    assert len(mail.tokens) == 2


@pytest.mark.asyncio
async def test_transient_failure_is_not_retried():
    mail = FakeConnector(SourceKind.MAIL, [UpstreamTransient("503")], credential_key="google")
    provider = FakeCredentialProvider()
    result = await FanOutExecutor({SourceKind.MAIL: mail}).execute(
        MAIL_AND_CALENDAR, RequestCredentials(provider, "u1"), "u1"
    )

    assert result.searched_sources == []
    assert result.failed_sources == {SourceKind.MAIL: "transient"}
    assert provider.refresh_calls == 0


@pytest.mark.asyncio
async def test_refresh_failure_skips_source():
    mail = FakeConnector(SourceKind.MAIL, [UpstreamUnauthorized("401")], credential_key="google")
    result = await FanOutExecutor({SourceKind.MAIL: mail}).execute(
        MAIL_AND_CALENDAR, RequestCredentials(FakeCredentialProvider(fail_refresh=True), "u1"), "u1"
    )
    assert result.failed_sources == {SourceKind.MAIL: "TOKEN_REFRESH_FAILED"}


@pytest.mark.asyncio
async def test_siblings_share_a_single_refresh():
    mail = FakeConnector(SourceKind.MAIL, [UpstreamUnauthorized("401"), []], credential_key="google")
    calendar = FakeConnector(SourceKind.CALENDAR, [UpstreamUnauthorized("401"), []], credential_key="google")
    provider = FakeCredentialProvider()
    executor = FanOutExecutor({SourceKind.MAIL: mail, SourceKind.CALENDAR: calendar})

    result = await executor.execute(MAIL_AND_CALENDAR, RequestCredentials(provider, "u1"), "u1")

    assert result.searched_sources == [SourceKind.MAIL, SourceKind.CALENDAR]
    assert provider.refresh_calls == 1
    assert mail.tokens[-1] == calendar.tokens[-1] == "token-2"


@pytest.mark.asyncio
async def test_refreshed_token_is_reused_by_later_calls():
    provider = FakeCredentialProvider()
    credentials = RequestCredentials(provider, "u1")
    stale = await credentials.get(SourceKind.MAIL, "google")

    first, second = await asyncio.gather(
        credentials.refresh(SourceKind.MAIL, "google", stale),
        credentials.refresh(SourceKind.CALENDAR, "google", stale),
    )

    assert first == second == "token-2"
    assert provider.refresh_calls == 1
    assert await credentials.get(SourceKind.CALENDAR, "google") == "token-2"


def test_split_separates_bridge_sources_and_skips_unconfigured():
    plan = QueryPlan(needs_mail=True, needs_message_archive=True, mail=MailQuery(query="x"))
    executor = FanOutExecutor({
        SourceKind.MAIL: FakeConnector(SourceKind.MAIL),
        SourceKind.MESSAGE_ARCHIVE: ExtensionBridgeConnector(SourceKind.MESSAGE_ARCHIVE),
    })
    assert executor.split(plan) == ([SourceKind.MAIL], [SourceKind.MESSAGE_ARCHIVE])

    assert FanOutExecutor({}).split(plan) == ([], [])


class _SdkError(Exception):
    def __init__(self, message, **attrs):
        super().__init__(message)
        for key, value in attrs.items():
            setattr(self, key, value)


class _Response:
    def __init__(self, data):
        self.data = data


@pytest.mark.parametrize("err", [
    _SdkError("boom", code=401),
    _SdkError("boom", status=401),
    _SdkError("boom", response=_Response({"error": {"code": 401, "message": "Invalid Credentials"}})),
    _SdkError("Request failed with status code 401"),
    httpx.HTTPStatusError(
        "unauthorized",
        request=httpx.Request("GET", "https://example.test"),
        response=httpx.Response(401),
    ),
    UpstreamUnauthorized("expired"),
])
def test_auth_expiry_recognised_across_shapes(err):
    assert classify_error(err).is_auth_expired


@pytest.mark.parametrize("err", [
    _SdkError("slow down", status_code=429),
    _SdkError("oops", status=503),
    httpx.ConnectError("refused"),
    asyncio.TimeoutError(),
    UpstreamTransient("x"),
])
def test_transient_errors(err):
    classification = classify_error(err)
    assert classification.is_transient and not classification.is_auth_expired


@pytest.mark.parametrize("err", [
    _SdkError("not found", code=404),
    ValueError("bad payload"),
    _SdkError("status 401 but code says otherwise", code=403),
    UpstreamFatal("x"),
])
def test_everything_else_is_fatal(err):
    assert classify_error(err).is_fatal
