# === NAVMAP v1 ===
# {
#   "module": "RecipePoster.RateControl.coordinator",
#   "purpose": "Single retry loop governing every call to a rate-limited external service",
#   "sections": [
#     {"id": "callcoordinator", "name": "CallCoordinator", "anchor": "class-callcoordinator", "kind": "class"},
#     {"id": "build-cooldown-store", "name": "build_cooldown_store", "anchor": "function-build-cooldown-store", "kind": "function"},
#     {"id": "build-coordinator", "name": "build_coordinator", "anchor": "function-build-coordinator", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Resilient execution of calls against rate-limited external services.

Provides:
- One generic retry loop for image generation, LLM completions and media
  uploads, parameterised by the caller's outcome classification.
- Cooldown gating before the first attempt and interval throttling before
  every attempt, both persisted and shared across processes.
- Tenacity-driven retries with ``Retry-After`` precedence over exponential
  backoff with jitter.
- Cooldown arming on configured statuses (429 by default) so later,
  unrelated calls on the same key also respect the pause.

Failure semantics:
- Network errors and :class:`RetryableFailure` outcomes are retried up to
  ``max_retries`` times (``1 + max_retries`` attempts in total).
- :class:`FatalFailure` raises :class:`FatalCallError` immediately.
- A retryable condition outliving the budget raises
  :class:`RetryBudgetExhausted` with the last status and body verbatim.
- Any other exception raised by the call propagates unchanged.
"""

from __future__ import annotations

import logging
import random
import ssl
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Collection, Iterable, Mapping, Optional

import httpx
import tenacity
from tenacity import RetryCallState, retry_if_result, stop_after_attempt

from RecipePoster.RateControl.backoff import BackoffPolicy
from RecipePoster.RateControl.clock import CancellationToken, Clock, SystemClock
from RecipePoster.RateControl.cooldown import (
    CooldownGate,
    CooldownStore,
    FileCooldownStore,
    InMemoryCooldownStore,
)
from RecipePoster.RateControl.errors import FatalCallError, RetryBudgetExhausted
from RecipePoster.RateControl.interval import IntervalTracker
from RecipePoster.RateControl.locks import FileLockProvider, LockProvider
from RecipePoster.RateControl.outcomes import (
    DEFAULT_QUOTA_CODES,
    FatalFailure,
    Outcome,
    RetryableFailure,
    Success,
    http_call,
)
from RecipePoster.RateControl.settings import CooldownBackend, RateControlSettings

__all__ = ["NETWORK_ERRORS", "CallCoordinator", "build_cooldown_store", "build_coordinator"]

LOGGER = logging.getLogger(__name__)

# Raised by the call itself rather than returned as an outcome.
NETWORK_ERRORS = (httpx.TransportError, ConnectionError, TimeoutError, ssl.SSLError)


@dataclass
class _AttemptState:
    key: str
    max_retries: int
    attempt_count: int = 0


class _WaitBackoffPolicy(tenacity.wait.wait_base):
    """Tenacity wait strategy delegating to :class:`BackoffPolicy`."""

    def __init__(self, policy: BackoffPolicy, rng: Optional[random.Random]) -> None:
        self.policy = policy
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        hint = None
        outcome = retry_state.outcome
        if outcome is not None and not outcome.failed:
            result = outcome.result()
            if isinstance(result, RetryableFailure):
                hint = result.retry_after
        return self.policy.next_delay(retry_state.attempt_number, hint, rng=self.rng)


def _is_retryable(outcome: object) -> bool:
    return isinstance(outcome, RetryableFailure)


class CallCoordinator:
    """Decide when and how often calls on a throttle key may fire.

    Args:
        tracker: Persisted minimum-interval tracker.
        cooldowns: Gate over the persisted cooldown store.
        backoff: Delay policy between attempts.
        max_retries: Default retry budget (attempts beyond the first).
        min_interval_ms: Default spacing between attempts on one key.
        key_intervals_ms: Per-key overrides of ``min_interval_ms``.
        cooldown_seconds: Cooldown armed when a trigger status is observed.
        cooldown_statuses: Statuses that arm a cooldown (``{429}`` by default).
        quota_codes: Provider error codes treated as fatal by :meth:`http_call`.
        clock: Sleeper used for backoff waits.
        rng: Random source for backoff jitter.
    """

    def __init__(
        self,
        tracker: IntervalTracker,
        cooldowns: CooldownGate,
        *,
        backoff: Optional[BackoffPolicy] = None,
        max_retries: int = 6,
        min_interval_ms: int = 0,
        key_intervals_ms: Optional[Mapping[str, int]] = None,
        cooldown_seconds: float = 60.0,
        cooldown_statuses: Collection[int] = frozenset({429}),
        quota_codes: Iterable[str] = DEFAULT_QUOTA_CODES,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        self.tracker = tracker
        self.cooldowns = cooldowns
        self.backoff = backoff or BackoffPolicy()
        self.max_retries = max_retries
        self.min_interval_ms = min_interval_ms
        self.key_intervals_ms = dict(key_intervals_ms or {})
        self.cooldown_seconds = cooldown_seconds
        self.cooldown_statuses = frozenset(cooldown_statuses)
        self.quota_codes = tuple(quota_codes)
        self.clock = clock or SystemClock()
        self.rng = rng

    def interval_for(self, key: str) -> int:
        return self.key_intervals_ms.get(key, self.min_interval_ms)

    def http_call(
        self,
        client: httpx.Client,
        method: str,
        url: str,
        *,
        parse: Optional[Callable[[httpx.Response], Any]] = None,
        **request_kwargs: Any,
    ) -> Callable[[], Outcome]:
        """Build an HTTP call classified with this coordinator's quota codes."""

        return http_call(
            client, method, url, parse=parse, quota_codes=self.quota_codes, **request_kwargs
        )

    def execute(
        self,
        key: str,
        call: Callable[[], Outcome],
        *,
        min_interval_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Any:
        """Run ``call`` under the throttling and retry policy for ``key``.

        Args:
            key: Throttle key naming the rate-limited resource.
            call: Zero-argument callable returning a classified outcome.
            min_interval_ms: Override of the configured spacing for this key.
            max_retries: Override of the configured retry budget.
            cancel: Token honoured at the cooldown, throttle and backoff waits.

        Returns:
            The value wrapped in the call's :class:`Success` outcome.

        Raises:
            FatalCallError: The call reported a fatal outcome.
            RetryBudgetExhausted: Retryable failures outlived the budget.
            CallCancelled: ``cancel`` fired during a wait.
        """
        interval = self.interval_for(key) if min_interval_ms is None else min_interval_ms
        retries = self.max_retries if max_retries is None else max_retries
        if retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {retries}")
        state = _AttemptState(key=key, max_retries=retries)

        if cancel is not None:
            cancel.raise_if_cancelled()
        self.cooldowns.wait_cooldown(key, cancel=cancel)

        retrying = tenacity.Retrying(
            retry=retry_if_result(_is_retryable),
            stop=stop_after_attempt(retries + 1),
            wait=_WaitBackoffPolicy(self.backoff, self.rng),
            sleep=partial(self._sleep, cancel=cancel),
            before_sleep=partial(self._before_sleep, state),
            retry_error_callback=partial(self._budget_exhausted, state),
        )
        outcome = retrying(self._attempt, state, interval, call, cancel)
        LOGGER.info("call.success key=%s attempts=%d", key, state.attempt_count)
        return outcome.value

    def _sleep(self, seconds: float, *, cancel: Optional[CancellationToken]) -> None:
        self.clock.sleep(seconds, cancel)

    def _attempt(
        self,
        state: _AttemptState,
        interval_ms: int,
        call: Callable[[], Outcome],
        cancel: Optional[CancellationToken],
    ) -> Outcome:
        if cancel is not None:
            cancel.raise_if_cancelled()
        state.attempt_count += 1
        self.tracker.throttle(state.key, interval_ms, cancel=cancel)
        LOGGER.info(
            "call.attempt key=%s attempt=%d max_retries=%d",
            state.key,
            state.attempt_count,
            state.max_retries,
        )
        try:
            outcome = call()
        except NETWORK_ERRORS as exc:
            outcome = RetryableFailure(
                reason=f"network error: {type(exc).__name__}: {exc}",
                error=exc,
            )

        if isinstance(outcome, FatalFailure):
            LOGGER.error(
                "call.fatal key=%s attempt=%d status=%s reason=%s",
                state.key,
                state.attempt_count,
                outcome.status,
                outcome.reason,
            )
            raise FatalCallError(
                state.key,
                outcome.reason,
                status=outcome.status,
                body=outcome.body,
                attempts=state.attempt_count,
                code=outcome.code,
            )
        if not isinstance(outcome, (Success, RetryableFailure)):
            raise TypeError(
                f"call for {state.key!r} returned {type(outcome).__name__}; "
                "expected Success, RetryableFailure or FatalFailure"
            )
        return outcome

    def _before_sleep(self, state: _AttemptState, retry_state: RetryCallState) -> None:
        failure = retry_state.outcome.result()
        wait_s = retry_state.next_action.sleep if retry_state.next_action else 0.0
        LOGGER.warning(
            "call.backoff key=%s status=%s reason=%s wait_seconds=%.2f attempt=%d",
            state.key,
            failure.status,
            failure.reason,
            wait_s,
            state.attempt_count,
        )
        if failure.status in self.cooldown_statuses and self.cooldown_seconds > 0:
            self.cooldowns.set_cooldown(
                state.key, self.cooldown_seconds, reason=f"http-{failure.status}"
            )

    def _budget_exhausted(self, state: _AttemptState, retry_state: RetryCallState):
        failure: RetryableFailure = retry_state.outcome.result()
        LOGGER.error(
            "call.exhausted key=%s attempts=%d status=%s reason=%s",
            state.key,
            state.attempt_count,
            failure.status,
            failure.reason,
        )
        raise RetryBudgetExhausted(
            state.key,
            failure.reason,
            status=failure.status,
            body=failure.body,
            attempts=state.attempt_count,
        ) from failure.error


def build_cooldown_store(
    settings: RateControlSettings,
    *,
    clock: Clock,
    lock_provider: LockProvider,
) -> CooldownStore:
    """Instantiate the cooldown backend selected by ``settings.cooldown_backend``."""

    if settings.cooldown_backend is CooldownBackend.SQLITE:
        from RecipePoster.RateControl.sqlite_cooldown_store import SQLiteCooldownStore

        return SQLiteCooldownStore(
            settings.cooldown_db_path, lock_provider=lock_provider, clock=clock
        )
    if settings.cooldown_backend is CooldownBackend.MEMORY:
        return InMemoryCooldownStore(clock=clock)
    return FileCooldownStore(settings.cooldown_dir, clock=clock)


def build_coordinator(
    settings: Optional[RateControlSettings] = None,
    *,
    clock: Optional[Clock] = None,
    lock_provider: Optional[LockProvider] = None,
) -> CallCoordinator:
    """Wire a :class:`CallCoordinator` from explicit settings.

    Args:
        settings: Configuration; defaults are read from the environment.
        clock: Time source shared by every component.
        lock_provider: Cross-process lock implementation for the interval
            state (and the SQLite cooldown backend).
    """
    settings = settings or RateControlSettings()
    clock = clock or SystemClock()
    lock_provider = lock_provider or FileLockProvider(timeout=settings.lock_timeout_s)
    store = build_cooldown_store(settings, clock=clock, lock_provider=lock_provider)

    return CallCoordinator(
        IntervalTracker(settings.interval_state_path, lock_provider=lock_provider, clock=clock),
        CooldownGate(store, clock=clock),
        backoff=settings.backoff_policy(),
        max_retries=settings.max_retries,
        min_interval_ms=settings.min_interval_ms,
        key_intervals_ms=settings.key_intervals_ms,
        cooldown_seconds=settings.cooldown_seconds,
        cooldown_statuses=settings.cooldown_statuses,
        quota_codes=settings.quota_error_codes,
        clock=clock,
    )
