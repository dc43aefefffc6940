"""Persisted minimum-interval throttling shared across processes.

:class:`IntervalTracker` keeps a single JSON document mapping throttle keys to
the monotonic timestamp of their last fire. Every :meth:`IntervalTracker.throttle`
call holds an exclusive lock on that document for the whole
read-compute-wait-write sequence. Sleeping while the lock is held is what
guarantees that no other process can slip a call in between the spacing check
and the timestamp update.

The stored numbers live in the monotonic clock domain of the machine, so the
state file is only meaningful to processes on the same host. A stamp that lies
in the future (the clock domain was reset by a reboot) is treated the same way
as a missing or corrupt file: as "no prior fire".

Typical Usage:
    tracker = IntervalTracker(Path("data/rate_state.json"))
    tracker.throttle("openai_images", 25_000)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

from RecipePoster.RateControl.clock import CancellationToken, Clock, SystemClock
from RecipePoster.RateControl.errors import ThrottleLockTimeout
from RecipePoster.RateControl.io_utils import atomic_write_json, read_json
from RecipePoster.RateControl.locks import FileLockProvider, LockProvider, Timeout

__all__ = ["IntervalTracker"]

LOGGER = logging.getLogger(__name__)


class IntervalTracker:
    """Enforce a minimum spacing between calls that share a throttle key.

    Args:
        state_path: JSON document holding ``{key: last_fire_monotonic}``.
        lock_provider: Source of the exclusive lock guarding ``state_path``.
        clock: Monotonic time source and sleeper.
    """

    def __init__(
        self,
        state_path: Path,
        *,
        lock_provider: Optional[LockProvider] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.state_path = Path(state_path)
        self.lock_provider = lock_provider or FileLockProvider()
        self.clock = clock or SystemClock()

    def _load(self) -> Dict[str, float]:
        data = read_json(self.state_path, {})
        if not isinstance(data, dict):
            LOGGER.warning("interval-state-invalid path=%s; resetting", self.state_path)
            return {}
        state: Dict[str, float] = {}
        for key, value in data.items():
            try:
                state[str(key)] = float(value)
            except (TypeError, ValueError):
                continue
        return state

    def throttle(
        self,
        key: str,
        min_interval_ms: float,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> float:
        """Block until ``min_interval_ms`` has passed since ``key`` last fired.

        Args:
            key: Throttle key identifying the rate-limited resource.
            min_interval_ms: Minimum spacing between fires, in milliseconds.
            cancel: Optional token; cancelling it aborts the wait.

        Returns:
            Seconds spent waiting for the interval to elapse.

        Raises:
            CallCancelled: If ``cancel`` fired while waiting. The fire time is
                not recorded in that case.
            ThrottleLockTimeout: If the state lock could not be acquired. The
                lock wait is extended by the interval itself, because the
                current holder may legitimately sleep that long.
        """
        min_interval_s = max(0.0, float(min_interval_ms)) / 1000.0
        waited = 0.0
        try:
            with self.lock_provider.lock(self.state_path, grace_s=min_interval_s):
                state = self._load()
                now = self.clock.monotonic()
                last = state.get(key)
                if last is not None and last <= now:
                    wait_s = min_interval_s - (now - last)
                    if wait_s > 0:
                        LOGGER.debug(
                            "rate_limit.sleep key=%s wait_ms=%.1f", key, wait_s * 1000.0
                        )
                        self.clock.sleep(wait_s, cancel)
                        waited = wait_s
                        now = self.clock.monotonic()
                elif last is not None:
                    LOGGER.info(
                        "rate_limit.stamp_from_future key=%s last=%.3f now=%.3f; ignoring",
                        key,
                        last,
                        now,
                    )
                state[key] = now
                atomic_write_json(self.state_path, state)
        except Timeout as exc:
            waited_s = float(getattr(self.lock_provider, "timeout", 0.0)) + min_interval_s
            raise ThrottleLockTimeout(key, waited_s) from exc
        LOGGER.info(
            "rate_limit.throttle key=%s min_interval_ms=%d waited_ms=%.1f",
            key,
            int(min_interval_ms),
            waited * 1000.0,
        )
        return waited

    def snapshot(self) -> Dict[str, float]:
        """Return a copy of the persisted ``{key: last_fire}`` map."""

        with self.lock_provider.lock(self.state_path):
            return self._load()
