"""
Shared notification store: the single source of truth for which
notifications exist and which are read, shared by every hub consumer.

Two lists are kept:
  _live       newest-first, everything pushed over the live channel
  _persisted  the last history fetch, in server order

The merged view is live first, then persisted entries whose id is not
already present. It is rebuilt under the lock after every mutation and
handed out as a tuple; the same tuple object is returned until the content
actually changes, so consumers can compare snapshots by identity.

Read-state is monotonic: every id ever seen read is remembered in
_read_ids and re-applied to anything ingested or merged later.

mark_all_read() is optimistic. The local flip happens immediately and the
remote confirmation runs on a background thread; a remote failure is
logged and reported, the local read-state is NOT rolled back.
"""
import logging
import threading

from belltower.models import Notification
from belltower.registry import Listeners

log = logging.getLogger("belltower.store")


class NotificationStore:

    def __init__(self, history=None):
        self._history = history
        self._lock = threading.RLock()
        self._live: list[Notification] = []
        self._persisted: list[Notification] = []
        self._read_ids: set[str] = set()
        self._ids: set[str] = set()
        self._snapshot: tuple[Notification, ...] = ()
        self._listeners = Listeners("store")

    # ── Listeners ────────────────────────────────────────────

    def add_listener(self, cb):
        """cb(snapshot) is called after every change to the merged view."""
        self._listeners.add(cb)

    def remove_listener(self, cb):
        self._listeners.remove(cb)

    # ── Reads ────────────────────────────────────────────────

    def snapshot(self) -> tuple[Notification, ...]:
        with self._lock:
            return self._snapshot

    def unread_count(self) -> int:
        with self._lock:
            return sum(1 for n in self._snapshot if not n.read)

    def __len__(self) -> int:
        with self._lock:
            return len(self._snapshot)

    def __contains__(self, notif_id: str) -> bool:
        with self._lock:
            return notif_id in self._ids

    # ── Mutations ────────────────────────────────────────────

    def ingest(self, notification: Notification) -> bool:
        """
        Prepend a live notification. Returns False (and changes nothing)
        when its id is already in the merged view.
        """
        with self._lock:
            if notification.id in self._ids:
                log.debug("Dropping duplicate notification %s", notification.id)
                return False
            if notification.read:
                self._read_ids.add(notification.id)
            elif notification.id in self._read_ids:
                notification = notification.mark_read()
            self._live.insert(0, notification)
            snap = self._rebuild()
        self._publish(snap)
        return True

    def merge_with_persisted(self, persisted) -> tuple[Notification, ...]:
        """
        Record a fresh history fetch and return the merged view.

        Live entries keep their position; persisted-only entries follow in
        the order the server returned them. A notification seen both live
        and in history appears once, at its live position.
        """
        with self._lock:
            seen: set[str] = set()
            fetched: list[Notification] = []
            for n in persisted:
                if n.id in seen:
                    continue
                seen.add(n.id)
                if n.read:
                    self._read_ids.add(n.id)
                fetched.append(n)
            self._persisted = [self._apply_read(n) for n in fetched]
            self._live = [self._apply_read(n) for n in self._live]
            snap = self._rebuild()
            current = self._snapshot
        self._publish(snap)
        return current

    def mark_all_read(self, on_error=None) -> threading.Thread | None:
        """
        Optimistically flip every stored notification to read, then confirm
        with the history API in the background.

        Returns the confirmation thread (None when there is no history
        client) so callers that care can join() it.
        """
        self._flip_all_read()
        if self._history is None:
            return None
        t = threading.Thread(target=self._confirm_read, args=(on_error,),
                             daemon=True, name="belltower-mark-read")
        t.start()
        return t

    def apply_remote_read(self):
        """Another client marked everything read; mirror it locally only."""
        self._flip_all_read()

    def reset(self):
        with self._lock:
            self._live = []
            self._persisted = []
            self._read_ids = set()
            snap = self._rebuild()
        self._publish(snap)

    # ── Internals ────────────────────────────────────────────

    def _flip_all_read(self):
        with self._lock:
            self._read_ids.update(self._ids)
            self._live = [n.mark_read() for n in self._live]
            self._persisted = [n.mark_read() for n in self._persisted]
            snap = self._rebuild()
        self._publish(snap)

    def _confirm_read(self, on_error):
        try:
            self._history.mark_all_read()
        except Exception as exc:
            log.warning("Remote mark-as-read failed, keeping local read state: %s", exc)
            if on_error is not None:
                on_error(exc)
            return
        log.debug("Remote mark-as-read confirmed")

    def _apply_read(self, n: Notification) -> Notification:
        return n.mark_read() if n.id in self._read_ids else n

    def _rebuild(self) -> tuple[Notification, ...] | None:
        """Recompute the merged view. Returns the new snapshot, or None if unchanged."""
        live_ids = {n.id for n in self._live}
        merged = tuple(self._live) + tuple(
            n for n in self._persisted if n.id not in live_ids)
        if merged == self._snapshot:
            return None
        self._snapshot = merged
        self._ids = {n.id for n in merged}
        return merged

    def _publish(self, snap):
        if snap is not None:
            self._listeners.notify(snap)
