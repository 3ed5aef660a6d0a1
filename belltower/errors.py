"""Exceptions raised by the request/response side of the hub."""


class BelltowerError(RuntimeError):
    """Base class for hub errors surfaced to callers."""


class SessionExpiredError(BelltowerError):
    """The credential could not be refreshed; the user must sign in again."""


class HistoryRequestError(BelltowerError):
    """A persisted-history request failed for a reason other than auth."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
