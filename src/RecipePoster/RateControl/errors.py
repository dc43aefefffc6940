"""Error taxonomy for the external-call coordinator.

Retryable conditions never leave :class:`~RecipePoster.RateControl.coordinator.CallCoordinator`
as exceptions; they are retried until the attempt budget runs out. What
reaches the caller is one of:

- :class:`FatalCallError` for conditions retrying cannot fix (quota/billing
  exhaustion, malformed responses, non-429 4xx).
- :class:`RetryBudgetExhausted` when a retryable condition persisted past
  ``max_retries``. It carries the last observed status and body verbatim.
- :class:`CallCancelled` when a cancellation token fired during a wait.
- :class:`ThrottleLockTimeout` when the shared throttle state stayed locked
  by other processes for longer than the configured lock timeout.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "CoordinatorError",
    "FatalCallError",
    "RetryBudgetExhausted",
    "CallCancelled",
    "ThrottleLockTimeout",
]


class CoordinatorError(RuntimeError):
    """Base class for errors surfaced by the rate-control layer."""


class FatalCallError(CoordinatorError):
    """An external call failed in a way that must not be retried.

    Attributes:
        key: Throttle key the call was issued under.
        reason: Human-readable classification reason.
        status: HTTP status of the last response, if any.
        body: Raw body of the last response, if any.
        attempts: Number of attempts made before giving up.
        code: Provider error code (e.g. ``insufficient_quota``), if any.
    """

    def __init__(
        self,
        key: str,
        reason: str,
        *,
        status: Optional[int] = None,
        body: Optional[str] = None,
        attempts: int = 1,
        code: Optional[str] = None,
    ) -> None:
        self.key = key
        self.reason = reason
        self.status = status
        self.body = body
        self.attempts = attempts
        self.code = code
        super().__init__(self._render())

    def _render(self) -> str:
        parts = [f"{self.key}: {self.reason}"]
        if self.status is not None:
            parts.append(f"status={self.status}")
        if self.code:
            parts.append(f"code={self.code}")
        parts.append(f"attempts={self.attempts}")
        if self.body:
            parts.append(f"body={self.body}")
        return " ".join(parts)


class RetryBudgetExhausted(FatalCallError):
    """A retryable failure persisted past the configured retry budget."""


class CallCancelled(CoordinatorError):
    """A cancellation token fired while the coordinator was waiting."""


class ThrottleLockTimeout(CoordinatorError):
    """The interval state for ``key`` could not be locked in time."""

    def __init__(self, key: str, waited_s: float) -> None:
        self.key = key
        self.waited_s = waited_s
        super().__init__(f"{key}: throttle state still locked after {waited_s:.1f}s")
