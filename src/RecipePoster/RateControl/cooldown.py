# === NAVMAP v1 ===
# {
#   "module": "RecipePoster.RateControl.cooldown",
#   "purpose": "Persisted cooldown windows armed after rate-limit responses",
#   "sections": [
#     {"id": "cooldownstore", "name": "CooldownStore", "anchor": "class-cooldownstore", "kind": "class"},
#     {"id": "inmemorycooldownstore", "name": "InMemoryCooldownStore", "anchor": "class-inmemorycooldownstore", "kind": "class"},
#     {"id": "filecooldownstore", "name": "FileCooldownStore", "anchor": "class-filecooldownstore", "kind": "class"},
#     {"id": "cooldowngate", "name": "CooldownGate", "anchor": "class-cooldowngate", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Cooldown windows: hard pauses armed after a rate-limit signal.

A cooldown record maps a throttle key to the moment it becomes usable again.
Stores speak in monotonic deadlines (``time.monotonic()`` domain) so callers
never mix clocks. Persistent backends write wall-clock deadlines to disk and
convert on every read, which keeps a cooldown meaningful after a restart.

Key Design:
- One record per key, last write wins. Arming a new cooldown overwrites a
  shorter one still in effect.
- Expired records are pruned on read. Pruning is cleanup only: an expired
  record behaves exactly like a missing one.
- :class:`FileCooldownStore` relies on atomic file replacement only; two
  processes racing to arm the same key is tolerated.

Typical Usage:
    store = FileCooldownStore(Path("data/cooldowns"))
    gate = CooldownGate(store)
    gate.set_cooldown("openai_images", 60, reason="http-429")
    gate.wait_cooldown("openai_images")  # sleeps ~60s, then clears
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple

from RecipePoster.RateControl.clock import CancellationToken, Clock, SystemClock
from RecipePoster.RateControl.io_utils import atomic_write_json, read_json, safe_key_filename

__all__ = [
    "CooldownStore",
    "InMemoryCooldownStore",
    "FileCooldownStore",
    "CooldownGate",
]

LOGGER = logging.getLogger(__name__)

_COOLDOWN_SUFFIX = ".cooldown"
_EXPIRY_EPSILON_S = 0.001


class CooldownStore(Protocol):
    """External store for per-key cooldown deadlines (monotonic seconds)."""

    def get_until(self, key: str) -> Optional[float]: ...
    def set_until(self, key: str, until_monotonic: float, reason: str) -> None: ...
    def clear(self, key: str) -> None: ...
    def get_all_until(self) -> Dict[str, Tuple[float, str]]: ...


@dataclass
class InMemoryCooldownStore:
    """Process-local cooldown store; deadlines vanish with the process."""

    clock: Clock = field(default_factory=SystemClock)
    _until: Dict[str, Tuple[float, str]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def get_until(self, key: str) -> Optional[float]:
        with self._lock:
            entry = self._until.get(key)
            if entry is None:
                return None
            if entry[0] <= self.clock.monotonic():
                del self._until[key]
                return None
            return entry[0]

    def set_until(self, key: str, until_monotonic: float, reason: str) -> None:
        with self._lock:
            self._until[key] = (float(until_monotonic), reason)

    def clear(self, key: str) -> None:
        with self._lock:
            self._until.pop(key, None)

    def get_all_until(self) -> Dict[str, Tuple[float, str]]:
        """Return ``{key: (until_wall, reason)}`` for live entries."""

        now_m = self.clock.monotonic()
        now_w = self.clock.time()
        with self._lock:
            return {
                key: (now_w + (until - now_m), reason)
                for key, (until, reason) in self._until.items()
                if until > now_m
            }


@dataclass
class FileCooldownStore:
    """Cooldown store keeping one small JSON document per key.

    Parameters
    ----------
    directory : Path
        Directory holding ``<key>.cooldown`` files. Created on first write.
    clock : Clock
        Provides both wall-clock (for persistence) and monotonic time.
    """

    directory: Path
    clock: Clock = field(default_factory=SystemClock)

    def __post_init__(self) -> None:
        self.directory = Path(self.directory)

    def path_for(self, key: str) -> Path:
        return self.directory / safe_key_filename(key, _COOLDOWN_SUFFIX)

    def _read_wall(self, path: Path, record: object = None) -> Optional[Tuple[float, str]]:
        if record is None:
            record = read_json(path, None)
        if not isinstance(record, dict):
            return None
        try:
            return float(record["until_wall"]), str(record.get("reason") or "")
        except (KeyError, TypeError, ValueError):
            LOGGER.warning("cooldown-record-invalid path=%s", path)
            return None

    def get_until(self, key: str) -> Optional[float]:
        path = self.path_for(key)
        record = read_json(path, None)
        if isinstance(record, dict) and record.get("key", key) != key:
            LOGGER.warning("cooldown-key-mismatch path=%s key=%s stored=%s", path, key, record["key"])
            return None
        entry = self._read_wall(path, record)
        if entry is None:
            return None
        now_w = self.clock.time()
        now_m = self.clock.monotonic()
        until_wall, _ = entry
        if until_wall <= now_w:
            self.clear(key)
            return None
        return now_m + (until_wall - now_w)

    def set_until(self, key: str, until_monotonic: float, reason: str) -> None:
        now_w = self.clock.time()
        now_m = self.clock.monotonic()
        until_wall = now_w + max(0.0, until_monotonic - now_m)
        atomic_write_json(
            self.path_for(key),
            {
                "key": key,
                "until_wall": until_wall,
                "reason": str(reason)[:128],
                "updated_at": now_w,
            },
        )

    def clear(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)

    def get_all_until(self) -> Dict[str, Tuple[float, str]]:
        """Return ``{key: (until_wall, reason)}`` for live records on disk."""

        if not self.directory.is_dir():
            return {}
        now_w = self.clock.time()
        entries: Dict[str, Tuple[float, str]] = {}
        for path in sorted(self.directory.glob(f"*{_COOLDOWN_SUFFIX}")):
            record = read_json(path, None)
            entry = self._read_wall(path, record)
            if entry is None or entry[0] <= now_w:
                continue
            key = record.get("key")
            entries[str(key or path.name[: -len(_COOLDOWN_SUFFIX)])] = entry
        return entries


class CooldownGate:
    """Arm and honour cooldown windows on top of a :class:`CooldownStore`."""

    def __init__(self, store: CooldownStore, *, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()

    def set_cooldown(self, key: str, seconds: float, *, reason: str = "rate-limited") -> None:
        """Block ``key`` for ``seconds`` from now, replacing any existing window."""

        LOGGER.info("rate_limit.set_cooldown key=%s seconds=%.1f reason=%s", key, seconds, reason)
        self.store.set_until(key, self.clock.monotonic() + max(0.0, float(seconds)), reason)

    def remaining(self, key: str) -> float:
        """Seconds left on ``key``'s cooldown, ``0.0`` when none is active."""

        until = self.store.get_until(key)
        if until is None:
            return 0.0
        return max(0.0, until - self.clock.monotonic())

    def wait_cooldown(self, key: str, *, cancel: Optional[CancellationToken] = None) -> float:
        """Sleep out any live cooldown on ``key`` and clear it afterwards.

        A cooldown armed by another process while this one slept is honoured
        too: the gate only returns once no live window remains.

        Returns:
            Total seconds spent waiting.
        """
        waited = 0.0
        while True:
            until = self.store.get_until(key)
            if until is None:
                return waited
            remain = until - self.clock.monotonic()
            if remain <= _EXPIRY_EPSILON_S:
                self.store.clear(key)
                return waited
            LOGGER.info("rate_limit.cooldown_wait key=%s seconds=%.1f", key, remain)
            self.clock.sleep(remain, cancel)
            waited += remain
