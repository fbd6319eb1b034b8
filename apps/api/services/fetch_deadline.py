"""
Deadline and cancellation for blocking upstream fetches.

A FetchDeadline is created per request and passed down to every blocking
call. Callers check it before issuing a request and use remaining() to
bound the HTTP timeout.
"""

from __future__ import annotations

import threading
import time
from typing import Optional


class FetchCancelledError(RuntimeError):
    """Raised when a fetch is attempted after the deadline or cancellation."""

    def __init__(self, message: str, *, reason: str):
        super().__init__(message)
        self.reason = reason  # "cancelled" | "deadline_exceeded"


class FetchDeadline:
    def __init__(self, timeout_s: Optional[float] = None):
        self._expires_at = time.monotonic() + timeout_s if timeout_s is not None else None
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when there is no deadline."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, operation: str = "fetch") -> None:
        """Raise FetchCancelledError if the caller should stop."""
        if self.cancelled:
            raise FetchCancelledError(f"{operation} cancelled", reason="cancelled")
        if self.expired():
            raise FetchCancelledError(f"{operation} deadline exceeded", reason="deadline_exceeded")

    def timeout(self, default_s: float) -> float:
        """HTTP timeout bounded by the remaining time."""
        remaining = self.remaining()
        if remaining is None:
            return default_s
        return min(default_s, remaining)


def check_deadline(deadline: Optional[FetchDeadline], operation: str = "fetch") -> None:
    if deadline is not None:
        deadline.check(operation)


def bounded_timeout(deadline: Optional[FetchDeadline], default_s: float) -> float:
    if deadline is None:
        return default_s
    return deadline.timeout(default_s)
