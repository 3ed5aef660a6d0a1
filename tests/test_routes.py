"""Tests for the bell API blueprint and entrypoint helpers."""
import pytest
from conftest import make_notification, wire

from belltower import agent, state


@pytest.fixture
def bell(context):
    hub = context.hub()
    hub.subscribe("u1")
    return hub


@pytest.fixture
def client(context, bell):
    app = agent.create_app(context, bell)
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c
    state.context = None
    state.hub = None


def test_list_notifications_returns_bell_view(client, channels, history):
    channels.latest.simulate_connect()
    channels.latest.push("new_notification", wire("n1"))

    data = client.get("/notifications").get_json()

    assert data["connected"] is True
    assert data["error"] is None
    assert data["unread"] == 1
    assert [n["id"] for n in data["notifications"]] == ["n1"]
    assert data["notifications"][0]["createdAt"] == "2026-01-01T00:00:00+00:00"


def test_mark_read_endpoint_is_optimistic(client, channels, history):
    channels.latest.push("new_notification", wire("n1"))

    data = client.post("/notifications/mark-read").get_json()

    assert data["unread"] == 0
    assert history.mark_done.wait(5)
    assert history.mark_calls == 1


def test_refresh_endpoint_merges_history(client, channels, history):
    channels.latest.push("new_notification", wire("B"))
    history.notifications = [make_notification("C"), make_notification("B")]

    data = client.post("/notifications/refresh").get_json()

    assert [n["id"] for n in data["notifications"]] == ["B", "C"]


def test_clear_error_endpoint(client, bell, history, history_error):
    history.fetch_error = history_error
    client.post("/notifications/refresh")
    assert client.get("/notifications").get_json()["error"] == "Failed to fetch notifications"

    assert client.post("/notifications/clear-error").get_json() == {"ok": True}
    assert client.get("/notifications").get_json()["error"] is None


def test_status_endpoint(client, channels):
    channels.latest.simulate_connect()

    data = client.get("/status").get_json()

    assert data["user_id"] == "u1"
    assert data["state"] == "connected"
    assert data["subscribers"] == 1
    assert data["settings"]["reconnect_attempts"] == 5


def test_endpoints_503_without_hub(context):
    app = agent.create_app(context, None)
    with app.test_client() as c:
        assert c.get("/notifications").status_code == 503
    state.context = None


@pytest.mark.parametrize("api_url, expected", [
    ("http://localhost:3000/api/v1", "ws://localhost:3000/ws"),
    ("https://api.example.com/api/v1/", "wss://api.example.com/ws"),
    ("https://api.example.com", "wss://api.example.com/ws"),
])
def test_socket_url_for(api_url, expected):
    assert agent.socket_url_for(api_url) == expected


def test_settings_from_env():
    s = agent.settings_from_env({"BELLTOWER_RECONNECT_ATTEMPTS": "3",
                                 "BELLTOWER_LOG_LEVEL": "debug"})
    assert s.reconnect_attempts == 3
    assert s.log_level == "DEBUG"

    assert agent.settings_from_env({"BELLTOWER_LOG_LEVEL": "loud"}).log_level == "INFO"


def test_build_context_reads_environment():
    ctx = agent.build_context({
        "BELLTOWER_API_URL": "https://api.example.com/api/v1",
        "BELLTOWER_USER_ID": "u9",
        "BELLTOWER_ACCESS_TOKEN": "tok",
    })

    assert state.SOCKET_URL == "wss://api.example.com/ws"
    assert state.USER_ID == "u9"
    assert ctx.credentials.get_access_token() == "tok"
    assert ctx.history.api_url == "https://api.example.com/api/v1"
    assert ctx.manager.has_transport is False
