"""Tests for the persisted minimum-interval tracker."""

from __future__ import annotations

import json
import multiprocessing
import threading
import time
from pathlib import Path
from typing import Any, List

import pytest

from RecipePoster.RateControl import (
    CallCancelled,
    CancellationToken,
    CoordinatorError,
    IntervalTracker,
    ThrottleLockTimeout,
)
from RecipePoster.RateControl.locks import FileLockProvider, Timeout


def test_first_fire_does_not_wait(tracker, clock) -> None:
    assert tracker.throttle("openai_images", 25_000) == 0.0
    assert clock.sleeps == []

    state = json.loads(tracker.state_path.read_text(encoding="utf-8"))
    assert state == {"openai_images": clock.monotonic()}


def test_back_to_back_fires_are_spaced(tracker, clock) -> None:
    tracker.throttle("openai_images", 1_000)
    waited = tracker.throttle("openai_images", 1_000)

    assert waited == pytest.approx(1.0)
    assert clock.sleeps == [pytest.approx(1.0)]


def test_only_remaining_interval_is_waited(tracker, clock) -> None:
    tracker.throttle("openai_images", 1_000)
    clock.advance(0.4)

    assert tracker.throttle("openai_images", 1_000) == pytest.approx(0.6)


def test_no_wait_once_interval_elapsed(tracker, clock) -> None:
    tracker.throttle("openai_images", 1_000)
    clock.advance(5.0)

    assert tracker.throttle("openai_images", 1_000) == 0.0


def test_keys_are_independent(tracker, clock) -> None:
    tracker.throttle("openai_images", 1_000)

    assert tracker.throttle("openai_chat", 1_000) == 0.0
    assert set(tracker.snapshot()) == {"openai_images", "openai_chat"}


def test_zero_interval_never_waits(tracker, clock) -> None:
    for _ in range(3):
        assert tracker.throttle("instagram", 0) == 0.0
    assert clock.sleeps == []


def test_state_survives_a_new_tracker(tmp_path: Path, clock, lock_provider) -> None:
    path = tmp_path / "rate_state.json"
    IntervalTracker(path, lock_provider=lock_provider, clock=clock).throttle("k", 2_000)

    again = IntervalTracker(path, lock_provider=lock_provider, clock=clock)
    assert again.throttle("k", 2_000) == pytest.approx(2.0)


def test_stamp_from_the_future_is_ignored(tracker, clock) -> None:
    tracker.state_path.write_text(json.dumps({"k": clock.monotonic() + 10_000}), encoding="utf-8")

    assert tracker.throttle("k", 1_000) == 0.0
    assert tracker.snapshot()["k"] == clock.monotonic()


@pytest.mark.parametrize("content", ["{not json", "", "[1, 2, 3]", '{"k": "soon"}'])
def test_corrupt_state_is_treated_as_no_prior_fire(tracker, clock, content: str) -> None:
    tracker.state_path.write_text(content, encoding="utf-8")

    assert tracker.throttle("k", 1_000) == 0.0
    assert json.loads(tracker.state_path.read_text(encoding="utf-8")) == {"k": clock.monotonic()}


def test_other_keys_are_preserved_on_write(tracker, clock) -> None:
    tracker.state_path.write_text(json.dumps({"other": 1.5}), encoding="utf-8")

    tracker.throttle("k", 0)

    assert tracker.snapshot() == {"other": 1.5, "k": clock.monotonic()}


def test_cancelled_wait_does_not_record_a_fire(tracker, clock) -> None:
    tracker.throttle("k", 1_000)
    before = tracker.snapshot()["k"]
    token = CancellationToken()
    token.cancel("shutdown")

    with pytest.raises(CallCancelled):
        tracker.throttle("k", 1_000, cancel=token)

    assert tracker.snapshot()["k"] == before


# --- lock contention ---------------------------------------------------------


def test_lock_timeout_is_reported_with_the_key(tmp_path: Path, clock) -> None:
    state_path = tmp_path / "rate_state.json"
    tracker = IntervalTracker(
        state_path,
        lock_provider=FileLockProvider(timeout=0.1, poll_interval=0.01),
        clock=clock,
    )

    with FileLockProvider().lock(state_path):
        with pytest.raises(ThrottleLockTimeout) as excinfo:
            tracker.throttle("openai_images", 0)

    assert isinstance(excinfo.value, CoordinatorError)
    assert isinstance(excinfo.value.__cause__, Timeout)
    assert excinfo.value.key == "openai_images"
    assert excinfo.value.waited_s == pytest.approx(0.1)
    assert not state_path.exists()


@pytest.mark.slow
def test_waiter_outlasts_a_holder_sleeping_longer_than_the_lock_timeout(tmp_path: Path) -> None:
    state_path = tmp_path / "rate_state.json"
    IntervalTracker(state_path, lock_provider=FileLockProvider(timeout=0.5)).throttle("k", 1_000)
    errors: List[BaseException] = []

    def fire() -> None:
        tracker = IntervalTracker(state_path, lock_provider=FileLockProvider(timeout=0.5))
        try:
            tracker.throttle("k", 1_000)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=fire) for _ in range(2)]
    for thread in threads:
        thread.start()
        time.sleep(0.1)
    for thread in threads:
        thread.join(timeout=10.0)

    assert errors == []
    assert len(IntervalTracker(state_path).snapshot()) == 1


# --- cross-process spacing ---------------------------------------------------


def _throttle_worker(state_path: str, interval_ms: int, fires: int, start_event: Any, queue: Any) -> None:
    tracker = IntervalTracker(Path(state_path), lock_provider=FileLockProvider(timeout=30))
    start_event.wait()
    for _ in range(fires):
        tracker.throttle("shared", interval_ms)
        queue.put(time.monotonic())


@pytest.mark.slow
def test_processes_sharing_a_key_are_spaced(tmp_path: Path) -> None:
    """Concurrent processes must never fire closer together than the interval."""

    interval_ms = 300
    fires_per_worker = 2
    ctx = multiprocessing.get_context("spawn")
    start_event = ctx.Event()
    queue = ctx.Queue()
    processes = [
        ctx.Process(
            target=_throttle_worker,
            args=(str(tmp_path / "rate_state.json"), interval_ms, fires_per_worker, start_event, queue),
        )
        for _ in range(3)
    ]

    try:
        for proc in processes:
            proc.start()
        start_event.set()

        stamps: List[float] = [queue.get(timeout=30.0) for _ in range(3 * fires_per_worker)]

        for proc in processes:
            proc.join(timeout=10.0)
            assert proc.exitcode == 0
    finally:
        for proc in processes:
            if proc.is_alive():
                proc.terminate()
                proc.join(timeout=1.0)
        queue.close()
        queue.join_thread()

    stamps.sort()
    gaps = [later - earlier for earlier, later in zip(stamps, stamps[1:])]
    # Stamps are taken just after the lock is released, so allow scheduling slack.
    assert min(gaps) >= interval_ms / 1000.0 - 0.1
