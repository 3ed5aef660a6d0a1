"""
Belltower entrypoint.

Reads configuration from the environment into the shared state module,
builds the hub context (credentials, history client, connection manager),
subscribes the bell consumer and serves its merged view over HTTP for a
local UI.
"""
import logging
import os
from urllib.parse import urlsplit, urlunsplit

from flask import Flask

from belltower import state
from belltower.credentials import SessionCredentialProvider
from belltower.history import HistoryClient
from belltower.hub import HubContext, NotificationHub
from belltower.models import HubSettings
from belltower.routes import notifications as notifications_bp

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
log = logging.getLogger("belltower.agent")

DEFAULT_API_URL = "http://localhost:3000/api/v1"


def socket_url_for(api_url: str) -> str:
    """
    Derive the channel URL from the REST base URL: drop the /api/v1 suffix,
    switch to the ws/wss scheme and point at /ws.
    """
    parts = urlsplit(api_url)
    scheme = {"https": "wss", "http": "ws"}.get(parts.scheme, parts.scheme)
    path = parts.path.rstrip("/")
    if path.endswith("/api/v1"):
        path = path[: -len("/api/v1")]
    return urlunsplit((scheme, parts.netloc, path + "/ws", "", ""))


def settings_from_env(env=None) -> HubSettings:
    env = os.environ if env is None else env
    s = HubSettings()
    if env.get("BELLTOWER_RECONNECT_ATTEMPTS"):
        s.reconnect_attempts = max(0, int(env["BELLTOWER_RECONNECT_ATTEMPTS"]))
    if env.get("BELLTOWER_LOG_LEVEL"):
        level = env["BELLTOWER_LOG_LEVEL"].upper()
        if level in ("DEBUG", "INFO", "WARNING", "ERROR"):
            s.log_level = level
        else:
            log.warning("Ignoring unknown BELLTOWER_LOG_LEVEL=%r", level)
    return s


def build_context(env=None) -> HubContext:
    """Populate state from the environment and build the hub context."""
    env = os.environ if env is None else env
    state.API_URL    = env.get("BELLTOWER_API_URL", DEFAULT_API_URL)
    state.SOCKET_URL = env.get("BELLTOWER_SOCKET_URL") or socket_url_for(state.API_URL)
    state.USER_ID    = env.get("BELLTOWER_USER_ID", "")

    settings = settings_from_env(env)
    credentials = SessionCredentialProvider(
        state.API_URL,
        access_token=env.get("BELLTOWER_ACCESS_TOKEN") or None,
        refresh_token=env.get("BELLTOWER_REFRESH_TOKEN") or None,
        timeout=settings.request_timeout,
    )
    history = HistoryClient(state.API_URL, credentials, timeout=settings.request_timeout)
    return HubContext(credentials, state.SOCKET_URL, history=history, settings=settings)


def create_app(context: HubContext, hub: NotificationHub | None = None) -> Flask:
    state.context = context
    state.hub = hub
    app = Flask(__name__)
    app.register_blueprint(notifications_bp.bp)
    return app


def _log_new_notification(notification):
    log.info("New notification %s [%s]: %s", notification.id, notification.type,
             notification.title or notification.message)


def main():
    context = build_context()
    level = getattr(logging, context.settings.log_level, logging.INFO)
    logging.getLogger().setLevel(level)

    if not state.USER_ID:
        raise SystemExit("BELLTOWER_USER_ID is required")

    log.info("API_URL=%s SOCKET_URL=%s", state.API_URL, state.SOCKET_URL)
    bell = context.hub()
    bell.subscribe(state.USER_ID, on_notification=_log_new_notification)
    bell.load_history()

    app = create_app(context, bell)
    port = int(os.environ.get("BELLTOWER_PORT", "8000"))
    try:
        app.run(host="127.0.0.1", port=port)
    finally:
        bell.unsubscribe()
        context.shutdown()


if __name__ == "__main__":
    main()
