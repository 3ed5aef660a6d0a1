"""
Persistent WebSocket channel to the notification server.

One NotificationChannel is one transport: a websocket-client connection
plus its receive thread, keepalive pings and its own reconnection policy.
The ConnectionManager owns at most one of these at a time; nothing else
holds a reference to it.

Message framing (JSON):

  {"type": "<event>", "payload": {...}}

Client -> server:
  join              {"userId": "<id>"}   route this user's notifications here
  leave             {"userId": "<id>"}
  ping              {}                   keepalive

Server -> client:
  new_notification  one notification dict (see models.Notification)
  notification_read {"userId": "<id>"}   all read for that user
  connect_error     {"message": "..."}   rejection after the upgrade

Lifecycle events fired to handlers registered with on():
  connect           ()
  disconnect        (reason,)
  connect_error     (reason,)
  reconnect_failed  ()
  <server event>    (payload,)

Authentication: the bearer credential goes in the Authorization header of
the upgrade request. A handshake refused with 401/403 fires connect_error
with the server's reason and is NOT retried here; the manager decides
whether to refresh and reconnect. Any other failure is retried with capped
exponential backoff, up to settings.reconnect_attempts consecutive tries.
"""
import json
import logging
import threading

import websocket  # websocket-client

from belltower.models import HubSettings

log = logging.getLogger("belltower.channel")

_AUTH_STATUSES = (401, 403)


def _rejection_reason(exc: Exception) -> str:
    """Best-effort human reason for a refused handshake."""
    body = getattr(exc, "resp_body", None)
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if body:
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, TypeError):
            return body.strip()
        if isinstance(data, dict):
            for key in ("message", "error", "reason"):
                if data.get(key):
                    return str(data[key])
        return body.strip()
    status_message = getattr(exc, "status_message", None)
    if status_message:
        return str(status_message)
    return str(exc)


class NotificationChannel:
    """
    Manages one persistent WebSocket connection.

    Thread-safety: _ws is guarded by _lock. Handlers run on the receive
    thread; they must not block for long.
    """

    def __init__(self, url: str, token: str | None, settings: HubSettings | None = None):
        self.url      = url
        self.token    = token
        self.settings = settings or HubSettings()
        self._ws: websocket.WebSocket | None = None
        self._lock     = threading.Lock()
        self._running  = True
        self._handlers: dict[str, "callable"] = {}
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()   # wakes backoff sleeps on close()
        self.connected_event = threading.Event()

    # ── Public API ────────────────────────────────────────────

    def on(self, event: str, handler):
        """Register the handler for a lifecycle or server event."""
        self._handlers[event] = handler

    def off_all(self):
        self._handlers.clear()

    def emit(self, msg_type: str, payload: dict | None = None):
        """Send a fire-and-forget frame. Raises RuntimeError if not connected."""
        self._send_raw({"type": msg_type, "payload": payload or {}})

    def start(self) -> threading.Thread:
        """Start connect_and_maintain() in a daemon thread."""
        self._thread = threading.Thread(target=self.connect_and_maintain, daemon=True,
                                        name="belltower-channel")
        self._thread.start()
        return self._thread

    def close(self):
        """Stop reconnecting and drop the socket."""
        self._running = False
        self._stop_event.set()
        with self._lock:
            ws, self._ws = self._ws, None
        self.connected_event.clear()
        if ws is not None:
            try:
                ws.close()
            except Exception as exc:
                log.debug("Error closing socket: %s", exc)

    def is_connected(self) -> bool:
        return self.connected_event.is_set()

    @property
    def running(self) -> bool:
        return self._running

    # ── Connect loop ──────────────────────────────────────────

    def connect_and_maintain(self):
        """
        Blocking loop: connect, pump frames until the socket drops, then
        reconnect with backoff. Returns when closed, when the server refuses
        our credential, or when the retry budget is spent.
        """
        attempt = 0
        while self._running:
            try:
                self._connect()
            except websocket.WebSocketBadStatusException as exc:
                if not self._running:
                    return
                reason = _rejection_reason(exc)
                log.warning("Notification channel refused (%s): %s", exc.status_code, reason)
                self._fire("connect_error", reason)
                if exc.status_code in _AUTH_STATUSES:
                    self._running = False
                    return
                attempt += 1
                if not self._backoff(attempt):
                    return
                continue
            except Exception as exc:
                if not self._running:
                    return
                log.warning("Notification channel connect failed: %s", exc)
                self._fire("connect_error", str(exc) or exc.__class__.__name__)
                attempt += 1
                if not self._backoff(attempt):
                    return
                continue

            attempt = 0
            self._fire("connect")
            reason = self._recv_loop()
            if not self._running:
                return
            log.info("Notification channel dropped (%s)", reason)
            self._fire("disconnect", reason)
            attempt += 1
            if not self._backoff(attempt):
                return

    def _backoff(self, attempt: int) -> bool:
        """Sleep before retry `attempt` (1-based). False once the budget is spent."""
        if attempt > self.settings.reconnect_attempts:
            log.error("Notification channel: giving up after %d attempts",
                      self.settings.reconnect_attempts)
            self._running = False
            self._fire("reconnect_failed")
            return False
        delay = self.settings.backoff(attempt - 1)
        log.info("Notification channel: retry %d/%d in %.1fs",
                 attempt, self.settings.reconnect_attempts, delay)
        self._stop_event.wait(delay)
        return self._running

    def _connect(self):
        header = {}
        if self.token:
            header["Authorization"] = f"Bearer {self.token}"
        ws = websocket.WebSocket()
        ws.connect(self.url, timeout=self.settings.connect_timeout, header=header)
        # Drop the handshake timeout so an idle channel doesn't time out in recv().
        ws.settimeout(None)
        with self._lock:
            if not self._running:
                ws.close()
                raise RuntimeError("channel closed during connect")
            self._ws = ws
        self.connected_event.set()
        log.info("Notification channel connected to %s", self.url)
        threading.Thread(target=self._ping_loop, args=(ws,), daemon=True,
                         name="belltower-ping").start()

    # ── Recv loop ─────────────────────────────────────────────

    def _recv_loop(self) -> str:
        """Pump frames until the socket closes. Returns the close reason."""
        reason = "closed"
        while self._running:
            ws = self._ws
            if ws is None:
                break
            try:
                raw = ws.recv()
            except Exception as exc:
                reason = str(exc) or exc.__class__.__name__
                break

            if raw is None:
                continue
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            if raw == "":
                # websocket-client returns "" on a clean close
                reason = "server closed the connection"
                break
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                log.warning("Notification channel: bad JSON frame dropped")
                continue
            self._dispatch(msg)

        with self._lock:
            ws, self._ws = self._ws, None
        self.connected_event.clear()
        if ws is not None:
            try:
                ws.close()
            except Exception:
                pass
        return reason

    def _dispatch(self, msg):
        if not isinstance(msg, dict):
            log.warning("Notification channel: non-object frame dropped")
            return
        msg_type = msg.get("type", "")
        payload  = msg.get("payload", {})

        if msg_type == "ping":
            return
        if msg_type == "connect_error":
            # Server accepted the upgrade but rejected the session.
            message = payload.get("message", "") if isinstance(payload, dict) else ""
            self._running = False
            self._fire("connect_error", message or "unauthorized")
            with self._lock:
                ws, self._ws = self._ws, None
            if ws is not None:
                try:
                    ws.close()
                except Exception:
                    pass
            return
        self._fire(msg_type, payload)

    def _fire(self, event: str, *args):
        handler = self._handlers.get(event)
        if handler is None:
            return
        try:
            handler(*args)
        except Exception:
            log.exception("Channel handler for %s raised", event)

    def _send_raw(self, msg: dict):
        with self._lock:
            ws = self._ws
        if ws is None:
            raise RuntimeError("notification channel is not connected")
        try:
            ws.send(json.dumps(msg))
        except Exception as exc:
            raise RuntimeError(f"notification channel send failed: {exc}") from exc

    def _ping_loop(self, ws):
        while self._running and self._ws is ws:
            if self._stop_event.wait(self.settings.ping_interval):
                break
            if self._ws is not ws:
                break
            try:
                self.emit("ping")
            except RuntimeError:
                break
