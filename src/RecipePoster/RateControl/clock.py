"""Clock sources and cooperative cancellation for rate-control waits.

All elapsed-time arithmetic in :mod:`RecipePoster.RateControl` goes through a
:class:`Clock` so that NTP corrections or DST changes never shorten or stretch
a throttle window, and so tests can substitute a deterministic clock.

Sleeping is also routed through the clock. When a :class:`CancellationToken`
is supplied the sleep is interruptible and raises
:class:`~RecipePoster.RateControl.errors.CallCancelled` as soon as the token
fires.
"""

from __future__ import annotations

import threading
import time
from typing import Optional, Protocol

from RecipePoster.RateControl.errors import CallCancelled

__all__ = ["CancellationToken", "Clock", "SystemClock"]


class CancellationToken:
    """Thread-safe cancellation flag honoured at every suspension point."""

    __slots__ = ("_event", "_reason")

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CallCancelled(self._reason or "cancelled")

    def wait(self, seconds: float) -> bool:
        """Block for up to ``seconds``; return ``True`` if cancelled meanwhile."""

        return self._event.wait(max(0.0, seconds))


class Clock(Protocol):
    """Time source used by the interval tracker, cooldown gate and retry loop."""

    def monotonic(self) -> float: ...

    def time(self) -> float: ...

    def sleep(self, seconds: float, cancel: Optional[CancellationToken] = None) -> None: ...


class SystemClock:
    """Process clock backed by :func:`time.monotonic` and :func:`time.time`."""

    def monotonic(self) -> float:
        return time.monotonic()

    def time(self) -> float:
        return time.time()

    def sleep(self, seconds: float, cancel: Optional[CancellationToken] = None) -> None:
        if seconds <= 0:
            if cancel is not None:
                cancel.raise_if_cancelled()
            return
        if cancel is None:
            time.sleep(seconds)
            return
        if cancel.wait(seconds):
            raise CallCancelled(cancel.reason or "cancelled")
