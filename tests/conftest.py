"""Shared fakes for hub tests: an in-memory channel, credentials and history."""
import threading

import pytest

from belltower.errors import HistoryRequestError, SessionExpiredError
from belltower.hub import HubContext
from belltower.models import HubSettings, Notification


class FakeChannel:
    """Stands in for NotificationChannel; tests drive its lifecycle by hand."""

    def __init__(self, url, token, settings):
        self.url = url
        self.token = token
        self.settings = settings
        self.handlers = {}
        self.emitted = []
        self.started = False
        self.close_calls = 0
        self.connected = False
        self.running = True

    # NotificationChannel surface
    def on(self, event, handler):
        self.handlers[event] = handler

    def off_all(self):
        self.handlers.clear()

    def emit(self, msg_type, payload=None):
        if not self.connected:
            raise RuntimeError("notification channel is not connected")
        self.emitted.append((msg_type, payload or {}))

    def start(self):
        self.started = True

    def close(self):
        self.close_calls += 1
        self.running = False
        self.connected = False

    def is_connected(self):
        return self.connected

    # Test drivers
    def fire(self, event, *args):
        handler = self.handlers.get(event)
        if handler is not None:
            handler(*args)

    def simulate_connect(self):
        self.connected = True
        self.fire("connect")

    def simulate_disconnect(self, reason="transport close"):
        self.connected = False
        self.fire("disconnect", reason)

    def simulate_connect_error(self, reason, fatal=False):
        self.connected = False
        if fatal:
            self.running = False
        self.fire("connect_error", reason)

    def push(self, event, payload):
        self.fire(event, payload)


class ChannelFactory:

    def __init__(self):
        self.channels = []

    def __call__(self, url, token, settings):
        ch = FakeChannel(url, token, settings)
        self.channels.append(ch)
        return ch

    @property
    def latest(self) -> FakeChannel:
        return self.channels[-1]


class FakeCredentials:

    def __init__(self, token="token-1"):
        self.token = token
        self.refresh_calls = 0
        self.fail_refresh = False
        self.on_refresh = None   # side effect run inside refresh()

    def get_access_token(self):
        return self.token

    def refresh(self):
        self.refresh_calls += 1
        if self.on_refresh is not None:
            self.on_refresh()
        if self.fail_refresh:
            raise SessionExpiredError("refresh token rejected")
        self.token = f"token-{self.refresh_calls + 1}"
        return self.token


class FakeHistory:

    def __init__(self, notifications=None):
        self.notifications = list(notifications or [])
        self.fetch_error = None
        self.mark_error = None
        self.mark_calls = 0
        self.mark_done = threading.Event()

    def fetch_notifications(self):
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.notifications)

    def mark_all_read(self):
        self.mark_calls += 1
        try:
            if self.mark_error is not None:
                raise self.mark_error
            return {}
        finally:
            self.mark_done.set()


def make_notification(notif_id, read=False, **kw) -> Notification:
    return Notification(id=notif_id, type=kw.pop("type", "booking_update"),
                        title=kw.pop("title", f"title {notif_id}"),
                        message=kw.pop("message", f"message {notif_id}"),
                        read=read, created_at=kw.pop("created_at", "2026-01-01T00:00:00+00:00"),
                        **kw)


def wire(notif_id, read=False) -> dict:
    return make_notification(notif_id, read=read).to_dict()


@pytest.fixture
def channels():
    return ChannelFactory()


@pytest.fixture
def credentials():
    return FakeCredentials()


@pytest.fixture
def history():
    return FakeHistory()


@pytest.fixture
def context(channels, credentials, history):
    ctx = HubContext(credentials, "ws://api.test/ws", history=history,
                     settings=HubSettings(), channel_factory=channels)
    yield ctx
    ctx.shutdown()


@pytest.fixture
def history_error():
    return HistoryRequestError("GET /notifications returned 500", status_code=500)
