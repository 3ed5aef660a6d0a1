"""
Subscriber registry: the fan-out point between the one connection manager
and the many hub consumers.

Every consumer registers three kinds of callbacks (connection-state,
error-state, new-notification). Each kind lives in a Listeners set. A
broadcast calls every listener in turn; an exception from one callback is
logged and swallowed so the remaining consumers are still notified.

The number of connection listeners is the subscriber count. When the last
one is removed the on_empty hook fires (wired to ConnectionManager.release).
"""
import logging
import threading

log = logging.getLogger("belltower.registry")


class Listeners:
    """Insertion-ordered callback set with per-callback isolation."""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._callbacks: dict = {}   # used as an ordered set

    def add(self, cb) -> bool:
        """Add cb. Returns False if it was already registered."""
        with self._lock:
            if cb in self._callbacks:
                return False
            self._callbacks[cb] = None
            return True

    def remove(self, cb) -> bool:
        with self._lock:
            if cb not in self._callbacks:
                return False
            del self._callbacks[cb]
            return True

    def clear(self):
        with self._lock:
            self._callbacks.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)

    def __contains__(self, cb) -> bool:
        with self._lock:
            return cb in self._callbacks

    def notify(self, *args) -> int:
        """
        Call every registered callback with args. Returns how many raised.

        Iterates over a copy so callbacks may add/remove listeners
        (e.g. unsubscribe from inside a handler) without breaking the loop.
        """
        with self._lock:
            callbacks = list(self._callbacks)
        failures = 0
        for cb in callbacks:
            try:
                cb(*args)
            except Exception:
                failures += 1
                log.exception("%s listener %r raised", self.name, cb)
        return failures


class SubscriberRegistry:

    def __init__(self, on_empty=None):
        self.connection    = Listeners("connection")
        self.errors        = Listeners("error")
        self.notifications = Listeners("notification")
        self.on_empty = on_empty
        self._state_lock = threading.Lock()
        self._connected  = False
        self._error: str | None = None

    # ── Last known state ──────────────────────────────────────

    @property
    def connected(self) -> bool:
        with self._state_lock:
            return self._connected

    @property
    def error(self) -> str | None:
        with self._state_lock:
            return self._error

    @property
    def subscriber_count(self) -> int:
        return len(self.connection)

    # ── Registration ─────────────────────────────────────────

    def add_connection_listener(self, cb):
        self.connection.add(cb)

    def remove_connection_listener(self, cb):
        removed = self.connection.remove(cb)
        if removed and len(self.connection) == 0 and self.on_empty is not None:
            log.debug("Last subscriber left")
            self.on_empty()

    def add_error_listener(self, cb):
        self.errors.add(cb)

    def remove_error_listener(self, cb):
        self.errors.remove(cb)

    def add_notification_listener(self, cb):
        self.notifications.add(cb)

    def remove_notification_listener(self, cb):
        self.notifications.remove(cb)

    # ── Broadcast ────────────────────────────────────────────

    def publish_connection(self, connected: bool):
        with self._state_lock:
            self._connected = connected
        self.connection.notify(connected)

    def publish_error(self, error: str | None):
        with self._state_lock:
            self._error = error
        self.errors.notify(error)

    def publish_notification(self, notification):
        self.notifications.notify(notification)
