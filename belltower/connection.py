"""
Connection manager: keeps exactly one live notification channel for the
whole process, authenticated as the current user.

The channel is created lazily by the first ensure_connected() and torn down
by release() once the subscriber registry is empty. Channel events are
translated into registry broadcasts (connection/error state) and store
updates (new notifications, remote read).

Credential expiry is recovered at most once per connect chain: the first
"token expired" rejection triggers one refresh and one reconnect with the
new token. A second expiry in the same chain, or a failed refresh, ends
the session with a terminal error and no further retries.

All channel handlers run on the channel's receive thread. Every handler
first checks that its channel is still the current one, so events from a
replaced or released channel never reach the registry or the store.
"""
import logging
import threading

from belltower.channel import NotificationChannel
from belltower.models import ConnectionState, HubSettings, Notification

log = logging.getLogger("belltower.connection")

SESSION_EXPIRED_ERROR = "Session expired. Please sign in again."
UNREACHABLE_ERROR     = "Unable to reach the notification server"

_EXPIRED_MARKERS = ("token expired", "jwt expired", "jwt_expired")


def is_credential_expired(reason: str) -> bool:
    text = (reason or "").lower()
    return any(marker in text for marker in _EXPIRED_MARKERS)


class ConnectionManager:

    def __init__(self, registry, store, credentials, url: str,
                 settings: HubSettings | None = None, channel_factory=NotificationChannel):
        self._registry = registry
        self._store = store
        self._credentials = credentials
        self._url = url
        self._settings = settings or HubSettings()
        self._channel_factory = channel_factory
        self._lock = threading.RLock()
        self._channel = None
        self._user_id: str | None = None
        self._last_user_id: str | None = None
        self._state: ConnectionState = "absent"
        self._refresh_in_flight = False
        self._refreshed = False   # refresh already spent in the current connect chain
        self.open_count  = 0
        self.close_count = 0

    # ── Introspection ─────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def user_id(self) -> str | None:
        with self._lock:
            return self._user_id

    @property
    def has_transport(self) -> bool:
        with self._lock:
            return self._channel is not None

    @property
    def refresh_in_flight(self) -> bool:
        with self._lock:
            return self._refresh_in_flight

    # ── Public API ────────────────────────────────────────────

    def ensure_connected(self, user_id: str, _after_refresh: bool = False):
        """
        Make sure a channel for user_id exists. Idempotent.

        A connected channel for the same user is reused, and so is one that
        is still working through its own connect/retry loop. A dead channel
        (refused, out of retries) or one for another user is replaced.
        """
        if not user_id:
            return
        user_id = str(user_id)
        reuse_connected = False
        with self._lock:
            if self._refresh_in_flight and not _after_refresh:
                log.debug("ensure_connected(%s) ignored: refresh in flight", user_id)
                return
            ch = self._channel
            if ch is not None and self._user_id == user_id and not _after_refresh:
                if ch.is_connected():
                    reuse_connected = True
                elif ch.running:
                    log.debug("ensure_connected(%s): channel already connecting", user_id)
                    return
            if not reuse_connected:
                if ch is not None:
                    self._channel = None
                    self._close_channel(ch, self._user_id)
                self._open_locked(user_id, _after_refresh)

        if reuse_connected:
            self._registry.publish_connection(True)

    def release(self, user_id: str | None = None) -> bool:
        """
        Tear the channel down once nobody is subscribed. Returns True if a
        channel was closed, False if subscribers remain or none was open.
        """
        if self._registry.subscriber_count > 0:
            return False
        with self._lock:
            # A consumer may have subscribed (and reused the channel) since the check above.
            if self._registry.subscriber_count > 0:
                return False
            ch = self._channel
            if ch is None and self._state == "absent":
                return False
            current = self._user_id
            if user_id is not None and str(user_id) != current:
                log.warning("release(%s) while channel belongs to %s", user_id, current)
            self._channel = None
            self._user_id = None
            self._state = "absent"
            self._refreshed = False
            # A refresh still running for the old channel must not block the next subscriber.
            self._refresh_in_flight = False
            if ch is not None:
                self._close_channel(ch, current)
            # Reset the registry's remembered state for the next subscriber.
            self._registry.publish_connection(False)
            self._registry.publish_error(None)
        if ch is None:
            return False
        log.info("Notification channel released")
        return True

    # ── Channel lifecycle ─────────────────────────────────────

    def _open_locked(self, user_id: str, after_refresh: bool):
        if self._last_user_id is not None and self._last_user_id != user_id:
            log.info("User changed (%s -> %s), clearing notifications",
                     self._last_user_id, user_id)
            self._store.reset()
        token = self._credentials.get_access_token()
        ch = self._channel_factory(self._url, token, self._settings)
        ch.on("connect",           lambda: self._on_connect(ch))
        ch.on("disconnect",        lambda reason="": self._on_disconnect(ch, reason))
        ch.on("connect_error",     lambda reason="": self._on_connect_error(ch, reason))
        ch.on("reconnect_failed",  lambda: self._on_reconnect_failed(ch))
        ch.on("new_notification",  lambda payload: self._on_new_notification(ch, payload))
        ch.on("notification_read", lambda payload: self._on_notification_read(ch, payload))
        self._channel = ch
        self._user_id = user_id
        self._last_user_id = user_id
        self._state = "connecting"
        self._refreshed = after_refresh
        self.open_count += 1
        log.info("Opening notification channel for user %s", user_id)
        ch.start()

    def _close_channel(self, ch, user_id: str | None):
        if ch.is_connected() and user_id:
            try:
                ch.emit("leave", {"userId": user_id})
            except RuntimeError as exc:
                log.debug("Could not send leave: %s", exc)
        ch.off_all()
        ch.close()
        self.close_count += 1

    def _is_current(self, ch) -> bool:
        return ch is self._channel

    # ── Channel event handlers ────────────────────────────────

    def _on_connect(self, ch):
        with self._lock:
            if not self._is_current(ch):
                return
            self._state = "connected"
            self._refreshed = False
            user_id = self._user_id
        log.info("Notification channel up for user %s", user_id)
        self._registry.publish_connection(True)
        self._registry.publish_error(None)
        try:
            ch.emit("join", {"userId": user_id})
        except RuntimeError as exc:
            log.warning("Could not join channel for user %s: %s", user_id, exc)

    def _on_disconnect(self, ch, reason: str):
        with self._lock:
            if not self._is_current(ch):
                return
            self._state = "disconnected"
        log.info("Notification channel down: %s", reason)
        self._registry.publish_connection(False)

    def _on_connect_error(self, ch, reason: str):
        expired = is_credential_expired(reason)
        with self._lock:
            if not self._is_current(ch):
                return
            self._state = "disconnected"
            user_id = self._user_id
            terminal = False
            if expired:
                if self._refreshed or self._refresh_in_flight:
                    terminal = True
                else:
                    self._refresh_in_flight = True

        self._registry.publish_connection(False)
        if not expired:
            self._registry.publish_error(f"Connection error: {reason}")
            return
        if terminal:
            log.warning("Credential expired again after refresh, giving up")
            self._fail_closed(ch)
            return

        try:
            self._credentials.refresh()
        except Exception as exc:
            log.warning("Credential refresh failed: %s", exc)
            with self._lock:
                self._refresh_in_flight = False
                self._refreshed = True
            self._fail_closed(ch)
            return

        try:
            with self._lock:
                if not self._is_current(ch):
                    log.debug("Channel released during refresh, not reconnecting")
                    return
            self.ensure_connected(user_id, _after_refresh=True)
        finally:
            with self._lock:
                self._refresh_in_flight = False

    def _fail_closed(self, ch):
        """Stop the expired channel so the session-expired error is final."""
        with self._lock:
            if not self._is_current(ch):
                return
            self._channel = None
            self._state = "disconnected"
            self._close_channel(ch, self._user_id)
        self._registry.publish_error(SESSION_EXPIRED_ERROR)

    def _on_reconnect_failed(self, ch):
        with self._lock:
            if not self._is_current(ch):
                return
            self._state = "disconnected"
        self._registry.publish_connection(False)
        self._registry.publish_error(UNREACHABLE_ERROR)

    def _on_new_notification(self, ch, payload):
        with self._lock:
            if not self._is_current(ch):
                return
        try:
            notification = Notification.from_dict(payload)
        except ValueError as exc:
            log.warning("Dropping malformed notification: %s", exc)
            return
        if self._store.ingest(notification):
            self._registry.publish_notification(notification)

    def _on_notification_read(self, ch, payload):
        with self._lock:
            if not self._is_current(ch):
                return
            user_id = self._user_id
        read_user = payload.get("userId") if isinstance(payload, dict) else None
        if read_user is not None and str(read_user) == user_id:
            self._store.apply_remote_read()
