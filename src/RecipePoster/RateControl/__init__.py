"""Public API for RecipePoster's resilient external-call coordinator.

Typical Usage:
    from RecipePoster.RateControl import RateControlSettings, build_coordinator

    settings = RateControlSettings()
    coordinator = build_coordinator(settings)
    with httpx.Client(timeout=settings.http_timeout()) as client:
        image = coordinator.execute(
            "openai_images",
            coordinator.http_call(client, "POST", IMAGES_URL, json=body, parse=decode_image),
        )
"""

from __future__ import annotations

from RecipePoster.RateControl.backoff import BackoffPolicy
from RecipePoster.RateControl.clock import CancellationToken, Clock, SystemClock
from RecipePoster.RateControl.cooldown import (
    CooldownGate,
    CooldownStore,
    FileCooldownStore,
    InMemoryCooldownStore,
)
from RecipePoster.RateControl.coordinator import (
    NETWORK_ERRORS,
    CallCoordinator,
    build_cooldown_store,
    build_coordinator,
)
from RecipePoster.RateControl.errors import (
    CallCancelled,
    CoordinatorError,
    FatalCallError,
    RetryBudgetExhausted,
    ThrottleLockTimeout,
)
from RecipePoster.RateControl.interval import IntervalTracker
from RecipePoster.RateControl.locks import FileLockProvider, LockProvider, ThreadLockProvider
from RecipePoster.RateControl.outcomes import (
    FatalFailure,
    Outcome,
    RetryableFailure,
    Success,
    classify_response,
    http_call,
    parse_retry_after,
)
from RecipePoster.RateControl.settings import CooldownBackend, RateControlSettings

__all__ = [
    "BackoffPolicy",
    "CallCancelled",
    "CallCoordinator",
    "CancellationToken",
    "Clock",
    "CooldownBackend",
    "CooldownGate",
    "CooldownStore",
    "CoordinatorError",
    "FatalCallError",
    "FatalFailure",
    "FileCooldownStore",
    "FileLockProvider",
    "InMemoryCooldownStore",
    "IntervalTracker",
    "LockProvider",
    "NETWORK_ERRORS",
    "Outcome",
    "RateControlSettings",
    "RetryBudgetExhausted",
    "RetryableFailure",
    "Success",
    "SystemClock",
    "ThreadLockProvider",
    "ThrottleLockTimeout",
    "build_cooldown_store",
    "build_coordinator",
    "classify_response",
    "http_call",
    "parse_retry_after",
]
