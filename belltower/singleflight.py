"""
Single-flight: concurrent callers of the same operation share one execution.

The first caller (the leader) runs the function; everyone who arrives while
it is running blocks on the same Future and gets the leader's result or
exception. Once the call settles the slot is cleared, so the next caller
starts a fresh execution.
"""
import threading
from concurrent.futures import Future


class SingleFlight:

    def __init__(self):
        self._lock = threading.Lock()
        self._future: Future | None = None

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._future is not None

    def do(self, fn, *args, **kwargs):
        with self._lock:
            fut = self._future
            leader = fut is None
            if leader:
                fut = self._future = Future()

        if not leader:
            return fut.result()

        try:
            result = fn(*args, **kwargs)
        except BaseException as exc:
            self._settle()
            fut.set_exception(exc)
            raise
        self._settle()
        fut.set_result(result)
        return result

    def _settle(self):
        with self._lock:
            self._future = None
