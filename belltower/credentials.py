"""
Credential providers.

The hub never stores tokens itself; it asks a provider for the current
bearer credential and asks it to refresh when the server says the
credential has expired. Refreshes are single-flight: if the live channel
and a history request both hit an expired token at the same moment, only
one refresh request goes out and both callers get its result.
"""
import logging
import threading
from typing import Protocol

import requests as _req

from belltower.errors import SessionExpiredError
from belltower.singleflight import SingleFlight

log = logging.getLogger("belltower.credentials")


class CredentialProvider(Protocol):

    def get_access_token(self) -> str | None:
        ...

    def refresh(self) -> str:
        """Return a new access token or raise SessionExpiredError."""
        ...


class SessionCredentialProvider:
    """
    Holds the access token in memory and refreshes it against the REST API.

    The refresh endpoint authenticates with the refresh cookie carried by
    the requests.Session (set from refresh_token at construction, or by an
    earlier login response on the same session).
    """

    REFRESH_PATH = "/auth/refresh-token"

    def __init__(self, api_url: str, access_token: str | None = None,
                 refresh_token: str | None = None, session: _req.Session | None = None,
                 timeout: float = 10.0):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or _req.Session()
        if refresh_token:
            self.session.cookies.set("refreshToken", refresh_token)
        self._token = access_token
        self._lock = threading.Lock()
        self._flight = SingleFlight()
        self.refresh_count = 0

    def get_access_token(self) -> str | None:
        with self._lock:
            return self._token

    def set_access_token(self, token: str | None):
        with self._lock:
            self._token = token

    def refresh(self) -> str:
        return self._flight.do(self._do_refresh)

    def _do_refresh(self) -> str:
        self.refresh_count += 1
        log.info("Refreshing access token")
        try:
            resp = self.session.post(f"{self.api_url}{self.REFRESH_PATH}", timeout=self.timeout)
        except _req.RequestException as exc:
            self.set_access_token(None)
            raise SessionExpiredError(f"token refresh failed: {exc}") from exc

        if resp.status_code != 200:
            self.set_access_token(None)
            raise SessionExpiredError(f"token refresh rejected (status {resp.status_code})")

        try:
            body = resp.json()
        except ValueError as exc:
            self.set_access_token(None)
            raise SessionExpiredError("token refresh returned invalid JSON") from exc

        token = None
        if isinstance(body, dict):
            data = body.get("data")
            if isinstance(data, dict):
                token = data.get("accessToken")
            token = token or body.get("accessToken")
        if not token:
            self.set_access_token(None)
            raise SessionExpiredError("token refresh response has no accessToken")

        self.set_access_token(token)
        log.info("Access token refreshed")
        return token
