"""
Hub context and per-consumer facade.

HubContext is built once at application start and handed to every
consumer. It owns the one registry, store and connection manager, so tests
can build a fresh context per case instead of resetting module globals.

NotificationHub is what a consumer (a view, a bell widget, a background
worker) instantiates. subscribe() joins the registry and makes sure the
shared channel is up; unsubscribe() leaves, and the last consumer out
closes the channel. A facade mirrors the shared state into its own fields
and stops receiving callbacks the moment it unsubscribes.
"""
import logging

from belltower.channel import NotificationChannel
from belltower.connection import ConnectionManager
from belltower.errors import BelltowerError
from belltower.models import HubSettings, Notification
from belltower.registry import SubscriberRegistry
from belltower.store import NotificationStore

log = logging.getLogger("belltower.hub")

FETCH_FAILED_ERROR     = "Failed to fetch notifications"
MARK_READ_FAILED_ERROR = "Failed to mark notifications as read"


class HubContext:

    def __init__(self, credentials, socket_url: str, history=None,
                 settings: HubSettings | None = None, channel_factory=NotificationChannel):
        self.settings    = settings or HubSettings()
        self.credentials = credentials
        self.history     = history
        self.registry    = SubscriberRegistry()
        self.store       = NotificationStore(history)
        self.manager     = ConnectionManager(
            self.registry, self.store, credentials, socket_url,
            settings=self.settings, channel_factory=channel_factory,
        )
        self.registry.on_empty = self.manager.release

    def hub(self) -> "NotificationHub":
        return NotificationHub(self)

    def shutdown(self):
        """Drop every subscriber and close the channel."""
        self.registry.connection.clear()
        self.registry.errors.clear()
        self.registry.notifications.clear()
        self.manager.release()


class NotificationHub:

    def __init__(self, context: HubContext):
        self._ctx = context
        self._alive = False
        self._user_id: str | None = None
        self._on_notification = None
        self._on_change = None
        self._connected = False
        self._error: str | None = None
        self._notifications: tuple[Notification, ...] = context.store.snapshot()
        self.history_error: str | None = None

    # ── Derived state ─────────────────────────────────────────

    @property
    def subscribed(self) -> bool:
        return self._alive

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def error(self) -> str | None:
        """Connection error if any, else the last history error."""
        return self._error or self.history_error

    @property
    def notifications(self) -> tuple[Notification, ...]:
        return self._notifications

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self._notifications if not n.read)

    # ── Subscription ──────────────────────────────────────────

    def subscribe(self, user_id: str, on_notification=None, on_change=None):
        """
        Join the hub as user_id.

        on_notification(notification) fires once per new, non-duplicate live
        notification. on_change(hub) fires whenever this facade's mirrored
        state changes.
        """
        user_id = str(user_id)
        if self._alive:
            if user_id == self._user_id:
                return
            self.unsubscribe()

        ctx = self._ctx
        self._user_id = user_id
        self._on_notification = on_notification
        self._on_change = on_change
        self._alive = True

        ctx.store.add_listener(self._handle_snapshot)
        ctx.registry.add_error_listener(self._handle_error)
        ctx.registry.add_notification_listener(self._handle_notification)
        # Added last: this is what counts as a subscriber.
        ctx.registry.add_connection_listener(self._handle_connection)
        # Seeded after registration so a broadcast racing the adds is not lost.
        self._connected = ctx.registry.connected
        self._error = ctx.registry.error
        self._notifications = ctx.store.snapshot()
        ctx.manager.ensure_connected(user_id)

    def unsubscribe(self):
        if not self._alive:
            return
        self._alive = False
        ctx = self._ctx
        ctx.store.remove_listener(self._handle_snapshot)
        ctx.registry.remove_error_listener(self._handle_error)
        ctx.registry.remove_notification_listener(self._handle_notification)
        ctx.registry.remove_connection_listener(self._handle_connection)
        self._connected = False
        self._on_notification = None
        self._on_change = None

    # ── Operations ────────────────────────────────────────────

    def load_history(self) -> tuple[Notification, ...]:
        """Fetch persisted history and merge it into the shared store."""
        history = self._ctx.history
        if history is None:
            return self._notifications
        try:
            persisted = history.fetch_notifications()
        except BelltowerError as exc:
            log.warning("Fetching notification history failed: %s", exc)
            self.history_error = FETCH_FAILED_ERROR
            self._changed()
            return self._notifications
        self.history_error = None
        merged = self._ctx.store.merge_with_persisted(persisted)
        self._notifications = merged
        return merged

    def mark_all_read(self):
        """
        Optimistically mark everything read. No-op when nothing is unread.
        Returns the remote confirmation thread, if one was started.
        """
        if self._ctx.store.unread_count() == 0:
            return None
        return self._ctx.store.mark_all_read(on_error=self._handle_mark_read_failed)

    def clear_error(self):
        self._error = None
        self.history_error = None
        self._changed()

    # ── Callbacks ─────────────────────────────────────────────

    def _handle_connection(self, connected: bool):
        if not self._alive:
            return
        self._connected = connected
        self._changed()

    def _handle_error(self, error: str | None):
        if not self._alive:
            return
        self._error = error
        self._changed()

    def _handle_notification(self, notification: Notification):
        if not self._alive or self._on_notification is None:
            return
        self._on_notification(notification)

    def _handle_snapshot(self, snapshot):
        if not self._alive:
            return
        self._notifications = snapshot
        self._changed()

    def _handle_mark_read_failed(self, exc):
        if not self._alive:
            return
        self.history_error = MARK_READ_FAILED_ERROR
        self._changed()

    def _changed(self):
        cb = self._on_change
        if cb is not None and self._alive:
            cb(self)
