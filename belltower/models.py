import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

ConnectionState = Literal["absent", "connecting", "connected", "disconnected"]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Notification:
    """
    One notification as delivered by the live channel or the history API.

    Frozen so a snapshot handed to a consumer can never change under it;
    read-state changes produce a new instance via mark_read().

    Wire shape (camelCase, as the server sends it):
      {"id": "...", "type": "...", "title": "...", "message": "...",
       "read": false, "createdAt": "<iso-8601>", "metadata": {...}}
    """
    id: str
    type: str = ""
    title: str = ""
    message: str = ""
    read: bool = False
    created_at: str = field(default_factory=_now_iso)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: dict) -> "Notification":
        """Parse a wire dict. Raises ValueError when there is no usable id."""
        if not isinstance(d, dict):
            raise ValueError("notification payload must be an object")
        raw_id = d.get("id")
        if raw_id is None or raw_id == "":
            raise ValueError("notification payload has no id")
        meta = d.get("metadata")
        return cls(
            id=str(raw_id),
            type=str(d.get("type") or ""),
            title=str(d.get("title") or ""),
            message=str(d.get("message") or ""),
            read=d.get("read") is True,
            created_at=str(d.get("createdAt") or d.get("created_at") or _now_iso()),
            metadata=dict(meta) if isinstance(meta, dict) else {},
        )

    def to_dict(self) -> dict:
        out: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "read": self.read,
            "createdAt": self.created_at,
        }
        if self.metadata:
            out["metadata"] = self.metadata
        return out

    def mark_read(self) -> "Notification":
        if self.read:
            return self
        return dataclasses.replace(self, read=True)


@dataclass
class HubSettings:
    """
    Runtime tunables for the hub. Defaults mirror the web client's
    socket options (5 attempts, 1s initial delay, 5s cap).
    """
    reconnect_attempts: int = 5
    reconnect_delay: float = 1.0        # seconds, first backoff step
    reconnect_delay_max: float = 5.0    # seconds, backoff cap
    connect_timeout: float = 5.0        # seconds for the WS handshake
    ping_interval: float = 20.0         # seconds between keepalive pings
    request_timeout: float = 10.0       # seconds for history/refresh HTTP calls
    log_level: str = "INFO"

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based), capped."""
        return min(self.reconnect_delay * (2 ** attempt), self.reconnect_delay_max)

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)
