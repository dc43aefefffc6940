# === NAVMAP v1 ===
# {
#   "module": "RecipePoster.RateControl.locks",
#   "purpose": "Cross-process lock providers guarding persisted rate-control state",
#   "sections": [
#     {"id": "lockprovider", "name": "LockProvider", "anchor": "class-lockprovider", "kind": "class"},
#     {"id": "filelockprovider", "name": "FileLockProvider", "anchor": "class-filelockprovider", "kind": "class"},
#     {"id": "threadlockprovider", "name": "ThreadLockProvider", "anchor": "class-threadlockprovider", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Lock providers used by the interval tracker, cooldown stores and history.

Responsibilities
----------------
- Define the :class:`LockProvider` seam so the read-modify-write sections in
  :mod:`RecipePoster.RateControl.interval` and friends never depend on a
  concrete locking primitive. A database row lock or a distributed lock
  service can be dropped in without touching the retry loop.
- Provide :class:`FileLockProvider`, an advisory ``<target>.lock`` file lock
  built on :mod:`filelock`, which serialises processes on the same machine.
- Capture acquisition/hold timing via :meth:`FileLockProvider.metrics_snapshot`
  to troubleshoot contention between overlapping scheduled runs.

Design Notes
------------
- Hard locks are the default; pass ``soft=True`` for filesystems without
  ``fcntl`` support (some network mounts).
- ``filelock.Timeout`` is re-raised unchanged when the lock cannot be acquired
  within the configured timeout.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import ContextManager, Dict, Iterator, List, Optional, Protocol, Union

from filelock import FileLock, SoftFileLock, Timeout

__all__ = [
    "Timeout",
    "LockProvider",
    "FileLockProvider",
    "ThreadLockProvider",
    "lock_path_for",
]

LOGGER = logging.getLogger(__name__)
logging.getLogger("filelock").setLevel(logging.INFO)

_DEFAULT_TIMEOUT = 60.0
_DEFAULT_POLL_INTERVAL = 0.05  # seconds
_DEFAULT_LOCK_MODE = 0o644


class LockProvider(Protocol):
    """Factory for exclusive context managers keyed by the guarded path."""

    def lock(self, target: Path, *, grace_s: float = 0.0) -> ContextManager[None]: ...


def lock_path_for(target: Path) -> Path:
    """Return the advisory lock file guarding ``target``."""

    target = Path(target)
    return target.with_name(target.name + ".lock")


@dataclass
class _LockMetrics:
    acquire_total: int = 0
    timeout_total: int = 0
    wait_ms_samples: List[float] = field(default_factory=list)
    hold_ms_samples: List[float] = field(default_factory=list)


def _p95(samples: List[float]) -> float:
    ordered = sorted(value for value in samples if value >= 0)
    if not ordered:
        return 0.0
    return ordered[int((len(ordered) - 1) * 0.95)]


class FileLockProvider:
    """Advisory file locks shared by every process on the machine.

    Args:
        timeout: Seconds to wait for the lock before raising ``filelock.Timeout``.
            A negative value waits forever.
        poll_interval: Seconds between acquisition attempts.
        soft: Use :class:`filelock.SoftFileLock` instead of an OS-level lock.
        mode: Permission bits for newly created lock files.
    """

    def __init__(
        self,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
        poll_interval: float = _DEFAULT_POLL_INTERVAL,
        soft: bool = False,
        mode: int = _DEFAULT_LOCK_MODE,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be > 0, got {poll_interval}")
        self.timeout = float(timeout)
        self.poll_interval = float(poll_interval)
        self.soft = soft
        self.mode = mode
        self._metrics_guard = threading.Lock()
        self._metrics: Dict[str, _LockMetrics] = {}

    def _record(self, name: str, *, wait_ms: float, hold_ms: Optional[float]) -> None:
        with self._metrics_guard:
            metrics = self._metrics.setdefault(name, _LockMetrics())
            metrics.wait_ms_samples.append(wait_ms)
            if hold_ms is None:
                metrics.timeout_total += 1
            else:
                metrics.acquire_total += 1
                metrics.hold_ms_samples.append(hold_ms)

    @contextlib.contextmanager
    def lock(self, target: Path, *, grace_s: float = 0.0) -> Iterator[None]:
        """Hold the advisory lock for ``target``.

        ``grace_s`` extends a finite timeout for callers known to queue behind
        holders that sleep under the lock.
        """
        lock_file = lock_path_for(target)
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        timeout = self.timeout if self.timeout < 0 else self.timeout + max(0.0, grace_s)
        lock_cls = SoftFileLock if self.soft else FileLock
        lock = lock_cls(str(lock_file), timeout=timeout, mode=self.mode, thread_local=False)

        start = time.monotonic()
        try:
            lock.acquire(timeout=timeout, poll_interval=self.poll_interval)
        except Timeout:
            wait_ms = (time.monotonic() - start) * 1000.0
            LOGGER.warning("lock-timeout wait_ms=%.3f lock_file=%s", wait_ms, lock_file)
            self._record(lock_file.name, wait_ms=wait_ms, hold_ms=None)
            raise

        acquired_at = time.monotonic()
        wait_ms = (acquired_at - start) * 1000.0
        LOGGER.debug("lock-acquired wait_ms=%.3f lock_file=%s", wait_ms, lock_file)
        try:
            yield None
        finally:
            lock.release()
            hold_ms = (time.monotonic() - acquired_at) * 1000.0
            self._record(lock_file.name, wait_ms=wait_ms, hold_ms=hold_ms)
            LOGGER.debug("lock-release hold_ms=%.3f lock_file=%s", hold_ms, lock_file)

    def metrics_snapshot(self, *, reset: bool = False) -> Dict[str, Dict[str, Union[int, float]]]:
        """Return per-lock-file acquisition statistics, optionally clearing them."""

        with self._metrics_guard:
            snapshot: Dict[str, Dict[str, Union[int, float]]] = {}
            for name, metrics in self._metrics.items():
                snapshot[name] = {
                    "acquire_total": metrics.acquire_total,
                    "timeout_total": metrics.timeout_total,
                    "wait_ms_p95": _p95(metrics.wait_ms_samples),
                    "hold_ms_p95": _p95(metrics.hold_ms_samples),
                }
            if reset:
                self._metrics.clear()
            return snapshot


class ThreadLockProvider:
    """Process-local locks keyed by path; safe default for single-process use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextlib.contextmanager
    def lock(self, target: Path, *, grace_s: float = 0.0) -> Iterator[None]:
        name = str(Path(target).expanduser().resolve(strict=False))
        with self._guard:
            lock = self._locks.setdefault(name, threading.Lock())
        with lock:
            yield None
