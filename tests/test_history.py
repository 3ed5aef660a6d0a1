"""Tests for the persisted-history client and the session credential provider."""
import json

import pytest
import requests
from requests.cookies import RequestsCookieJar

from belltower.credentials import SessionCredentialProvider
from belltower.errors import HistoryRequestError, SessionExpiredError
from belltower.history import HistoryClient


class FakeResponse:

    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body
        self.content = b"" if body is None else json.dumps(body).encode()

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body


class FakeSession:
    """Records requests and replays scripted responses (or raises exceptions)."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.cookies = RequestsCookieJar()

    def _next(self):
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def request(self, method, url, headers=None, timeout=None):
        self.calls.append((method, url, dict(headers or {})))
        return self._next()

    def post(self, url, timeout=None):
        self.calls.append(("POST", url, {}))
        return self._next()


class StubCredentials:

    def __init__(self, token="old", fail=False):
        self.token = token
        self.fail = fail
        self.refresh_calls = 0

    def get_access_token(self):
        return self.token

    def refresh(self):
        self.refresh_calls += 1
        if self.fail:
            raise SessionExpiredError("refresh rejected")
        self.token = "new"
        return self.token


def _payload(*ids):
    return {"data": {"notifications": [
        {"id": i, "type": "booking_update", "title": "t", "message": "m",
         "read": False, "createdAt": "2026-01-01T00:00:00Z"} for i in ids]}}


# ── HistoryClient ─────────────────────────────────────────────

def test_fetch_notifications_parses_and_skips_malformed():
    body = _payload("a", "b")
    body["data"]["notifications"].append({"title": "missing id"})
    session = FakeSession([FakeResponse(200, body)])
    client = HistoryClient("http://api.test/api/v1/", StubCredentials(), session=session)

    result = client.fetch_notifications()

    assert [n.id for n in result] == ["a", "b"]
    method, url, headers = session.calls[0]
    assert (method, url) == ("GET", "http://api.test/api/v1/notifications")
    assert headers["Authorization"] == "Bearer old"


def test_mark_all_read_uses_put():
    session = FakeSession([FakeResponse(200, {"data": {"modified": 3}})])
    client = HistoryClient("http://api.test/api/v1", StubCredentials(), session=session)

    assert client.mark_all_read() == {"modified": 3}
    assert session.calls[0][:2] == ("PUT", "http://api.test/api/v1/notifications/mark-as-read")


def test_401_refreshes_once_and_retries_with_new_token():
    creds = StubCredentials()
    session = FakeSession([FakeResponse(401), FakeResponse(200, _payload("a"))])
    client = HistoryClient("http://api.test/api/v1", creds, session=session)

    result = client.fetch_notifications()

    assert [n.id for n in result] == ["a"]
    assert creds.refresh_calls == 1
    assert session.calls[1][2]["Authorization"] == "Bearer new"


def test_second_401_after_refresh_is_session_expired():
    creds = StubCredentials()
    session = FakeSession([FakeResponse(401), FakeResponse(401)])
    client = HistoryClient("http://api.test/api/v1", creds, session=session)

    with pytest.raises(SessionExpiredError):
        client.fetch_notifications()
    assert creds.refresh_calls == 1


def test_failed_refresh_propagates_session_expired():
    creds = StubCredentials(fail=True)
    session = FakeSession([FakeResponse(401)])
    client = HistoryClient("http://api.test/api/v1", creds, session=session)

    with pytest.raises(SessionExpiredError):
        client.mark_all_read()
    assert len(session.calls) == 1


def test_server_error_raises_history_error():
    session = FakeSession([FakeResponse(500, {"message": "boom"})])
    client = HistoryClient("http://api.test/api/v1", StubCredentials(), session=session)

    with pytest.raises(HistoryRequestError) as excinfo:
        client.fetch_notifications()
    assert excinfo.value.status_code == 500


def test_network_error_raises_history_error():
    session = FakeSession([requests.ConnectionError("connection refused")])
    client = HistoryClient("http://api.test/api/v1", StubCredentials(), session=session)

    with pytest.raises(HistoryRequestError):
        client.fetch_notifications()


def test_unexpected_shape_raises_history_error():
    session = FakeSession([FakeResponse(200, {"data": []})])
    client = HistoryClient("http://api.test/api/v1", StubCredentials(), session=session)

    with pytest.raises(HistoryRequestError):
        client.fetch_notifications()


# ── SessionCredentialProvider ─────────────────────────────────

def test_refresh_reads_nested_access_token():
    session = FakeSession([FakeResponse(200, {"data": {"accessToken": "fresh"}})])
    provider = SessionCredentialProvider("http://api.test/api/v1", access_token="stale",
                                         refresh_token="rt", session=session)

    assert provider.refresh() == "fresh"
    assert provider.get_access_token() == "fresh"
    assert session.calls[0][:2] == ("POST", "http://api.test/api/v1/auth/refresh-token")
    assert session.cookies.get("refreshToken") == "rt"


def test_refresh_accepts_top_level_access_token():
    session = FakeSession([FakeResponse(200, {"accessToken": "fresh"})])
    provider = SessionCredentialProvider("http://api.test/api/v1", session=session)

    assert provider.refresh() == "fresh"


@pytest.mark.parametrize("response", [
    FakeResponse(401, {"message": "Refresh token expired"}),
    FakeResponse(200, {"data": {}}),
    requests.ConnectionError("down"),
])
def test_refresh_failure_clears_token(response):
    session = FakeSession([response])
    provider = SessionCredentialProvider("http://api.test/api/v1", access_token="stale",
                                         session=session)

    with pytest.raises(SessionExpiredError):
        provider.refresh()
    assert provider.get_access_token() is None
    assert provider.refresh_count == 1
