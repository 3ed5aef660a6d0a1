"""
Process state for the bell API.

Only the Flask layer reads from here. The hub itself never touches this
module; its shared state lives in the HubContext that agent.py builds at
startup and stores below so route handlers can reach it.
"""
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from belltower.hub import HubContext, NotificationHub

# ── Runtime config (set by agent.py at startup) ──────────────
API_URL:    str = ""
SOCKET_URL: str = ""
USER_ID:    str = ""

# ── Hub wiring ────────────────────────────────────────────────
context: "HubContext | None" = None
hub:     "NotificationHub | None" = None   # the bell's own consumer
