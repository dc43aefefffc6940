"""
Pytest Configuration

Shared fixtures for the RecipePoster suite: a deterministic clock that
advances both time domains when slept on, helpers to build a coordinator over
temporary state, and hygiene for environment variables and logger handlers
touched by the settings and CLI tests.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from RecipePoster.RateControl import (
    BackoffPolicy,
    CallCoordinator,
    CancellationToken,
    CooldownGate,
    InMemoryCooldownStore,
    IntervalTracker,
    ThreadLockProvider,
)
from RecipePoster.logging_utils import LOGGER_NAME


class FakeClock:
    """Deterministic clock; ``sleep`` advances wall and monotonic time together."""

    def __init__(self, monotonic: float = 5_000.0, wall: float = 1_700_000_000.0) -> None:
        self._monotonic = monotonic
        self._wall = wall
        self.sleeps: List[float] = []
        self.on_sleep: Optional[Callable[[float], None]] = None

    def monotonic(self) -> float:
        return self._monotonic

    def time(self) -> float:
        return self._wall

    def advance(self, seconds: float) -> None:
        self._monotonic += seconds
        self._wall += seconds

    def sleep(self, seconds: float, cancel: Optional[CancellationToken] = None) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled()
        if seconds <= 0:
            return
        self.sleeps.append(seconds)
        self.advance(seconds)
        if self.on_sleep is not None:
            self.on_sleep(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def clock_factory() -> Callable[..., FakeClock]:
    """Build extra clocks, e.g. to simulate a process restart."""

    return FakeClock


@pytest.fixture
def lock_provider() -> ThreadLockProvider:
    return ThreadLockProvider()


@pytest.fixture
def tracker(tmp_path: Path, clock: FakeClock, lock_provider: ThreadLockProvider) -> IntervalTracker:
    return IntervalTracker(tmp_path / "rate_state.json", lock_provider=lock_provider, clock=clock)


@pytest.fixture
def gate(clock: FakeClock) -> CooldownGate:
    return CooldownGate(InMemoryCooldownStore(clock=clock), clock=clock)


@pytest.fixture
def make_coordinator(
    tracker: IntervalTracker, gate: CooldownGate, clock: FakeClock
) -> Callable[..., CallCoordinator]:
    """Factory for coordinators sharing the fixture clock, tracker and gate.

    Backoff is jitter-free and the default interval is zero so tests can
    assert exact sleep sequences.
    """

    def _make(**overrides) -> CallCoordinator:
        options = {
            "backoff": BackoffPolicy(jitter_ms=0),
            "max_retries": 6,
            "min_interval_ms": 0,
            "clock": clock,
        }
        options.update(overrides)
        return CallCoordinator(tracker, gate, **options)

    return _make


@pytest.fixture(autouse=True)
def _clean_recipe_poster_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.upper().startswith("RECIPE_POSTER_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _reset_package_logger():
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, "_recipe_poster_managed", False):
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(logging.NOTSET)
