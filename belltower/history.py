"""
Persisted notification history over the REST API.

  GET  /notifications               -> {"data": {"notifications": [...]}}
  PUT  /notifications/mark-as-read  -> {"data": {...}}

Requests carry the standard bearer header. A 401 triggers one credential
refresh (shared with any other caller refreshing at the same time) and one
retry of the original request; a second 401 is returned as an error.
"""
import logging

import requests as _req

from belltower.errors import HistoryRequestError, SessionExpiredError
from belltower.models import Notification

log = logging.getLogger("belltower.history")


class HistoryClient:

    def __init__(self, api_url: str, credentials, session: _req.Session | None = None,
                 timeout: float = 10.0):
        self.api_url = api_url.rstrip("/")
        self.credentials = credentials
        self.timeout = timeout
        self.session = session or _req.Session()

    def fetch_notifications(self) -> list[Notification]:
        """Return the user's stored notifications, newest first."""
        body = self._request("GET", "/notifications")
        data = body.get("data") if isinstance(body, dict) else None
        raw = data.get("notifications") if isinstance(data, dict) else None
        if not isinstance(raw, list):
            raise HistoryRequestError("unexpected notifications response shape")
        out = []
        for item in raw:
            try:
                out.append(Notification.from_dict(item))
            except ValueError as exc:
                log.warning("Skipping malformed stored notification: %s", exc)
        return out

    def mark_all_read(self) -> dict:
        body = self._request("PUT", "/notifications/mark-as-read")
        data = body.get("data") if isinstance(body, dict) else None
        return data if isinstance(data, dict) else {}

    # ── Internals ─────────────────────────────────────────────

    def _request(self, method: str, path: str, _retry: bool = True):
        headers = {}
        token = self.credentials.get_access_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        url = f"{self.api_url}{path}"
        try:
            resp = self.session.request(method, url, headers=headers, timeout=self.timeout)
        except _req.RequestException as exc:
            raise HistoryRequestError(f"{method} {path} failed: {exc}") from exc

        if resp.status_code == 401 and _retry:
            log.info("%s %s returned 401, refreshing credential", method, path)
            # Raises SessionExpiredError if the refresh itself fails.
            self.credentials.refresh()
            return self._request(method, path, _retry=False)

        if resp.status_code == 401:
            raise SessionExpiredError(f"{method} {path} still unauthorized after refresh")
        if resp.status_code >= 400:
            raise HistoryRequestError(f"{method} {path} returned {resp.status_code}",
                                      status_code=resp.status_code)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise HistoryRequestError(f"{method} {path} returned invalid JSON") from exc
