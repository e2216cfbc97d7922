"""
Cooperative cancellation.

A CancellationToken is threaded through the coordinator, source runners and
batch processor. It is polled at dispatch boundaries only: in-flight work runs
to completion (or its own timeout), nothing new starts after cancel().
"""
import threading
from typing import Optional

from .errors import RunCancelledError


class CancellationToken:
    """Thread-safe cancellation flag backed by threading.Event."""

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._parent = parent

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> Optional[str]:
        if self._event.is_set():
            return self._reason
        if self._parent is not None:
            return self._parent.reason
        return None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def child(self) -> "CancellationToken":
        """Token that is cancelled when either it or this token is."""
        return CancellationToken(parent=self)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelledError(f"Run cancelled: {self.reason}")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait until this token (not its parent) is cancelled."""
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled}, reason={self.reason!r})"
