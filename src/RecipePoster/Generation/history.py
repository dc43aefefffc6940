"""Recipe history: the record of past posts that feeds diversity constraints.

The history is a JSON array of entries such as::

    {"meal": "dinner", "title": "Yuzu Pepper Chicken", "primary_ingredient": "chicken",
     "method": "grill", "category": "main", "season": "winter",
     "created_at": "2026-01-12T18:00:03+00:00"}

Entries older than :data:`RETENTION_DAYS` are pruned whenever the file is
loaded, and only the newest :data:`MAX_ENTRIES` are kept on write.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from RecipePoster.Generation.diversity import DiversityConstraints
from RecipePoster.RateControl.io_utils import atomic_write_json, read_json
from RecipePoster.RateControl.locks import FileLockProvider, LockProvider

__all__ = ["RETENTION_DAYS", "MAX_ENTRIES", "RecipeHistory"]

LOGGER = logging.getLogger(__name__)

RETENTION_DAYS = 30
MAX_ENTRIES = 500

Entry = Dict[str, Any]


def _parse_created_at(entry: Entry) -> datetime:
    raw = str(entry.get("created_at") or "")
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RecipeHistory:
    """Lock-guarded JSON history of published recipes."""

    def __init__(
        self,
        path: Path,
        *,
        lock_provider: Optional[LockProvider] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.path = Path(path)
        self.lock_provider = lock_provider or FileLockProvider()
        self.now = now

    def _read(self) -> List[Entry]:
        data = read_json(self.path, [])
        if not isinstance(data, list):
            LOGGER.warning("history-invalid path=%s; treating as empty", self.path)
            return []
        return [entry for entry in data if isinstance(entry, dict)]

    def _prune(self, entries: List[Entry]) -> List[Entry]:
        cutoff = self.now() - timedelta(days=RETENTION_DAYS)
        return [entry for entry in entries if _parse_created_at(entry) >= cutoff]

    def load(self) -> List[Entry]:
        """Return entries from the retention window, rewriting the file if any were pruned."""

        with self.lock_provider.lock(self.path):
            entries = self._read()
            kept = self._prune(entries)
            if len(kept) != len(entries):
                LOGGER.info("history.pruned removed=%d", len(entries) - len(kept))
                atomic_write_json(self.path, kept)
        return kept

    def recent(self, days: int = 14, meal: Optional[str] = None) -> List[Entry]:
        cutoff = self.now() - timedelta(days=days)
        return [
            entry
            for entry in self.load()
            if (meal is None or entry.get("meal") == meal) and _parse_created_at(entry) >= cutoff
        ]

    def record(self, entry: Entry) -> Entry:
        """Append ``entry`` (stamping ``created_at`` if missing) and persist."""

        entry = dict(entry)
        entry.setdefault("created_at", self.now().isoformat())
        with self.lock_provider.lock(self.path):
            entries = self._prune(self._read())
            entries.append(entry)
            atomic_write_json(self.path, entries[-MAX_ENTRIES:])
        LOGGER.info("history.record meal=%s title=%s", entry.get("meal"), entry.get("title"))
        return entry

    def avoid_constraints(self, days: int = 14, meal: Optional[str] = None) -> DiversityConstraints:
        """Constraint set excluding everything posted in the last ``days`` days."""

        recent = self.recent(days=days, meal=meal)
        return DiversityConstraints.build(
            titles=(entry.get("title") for entry in recent),
            ingredients=(entry.get("primary_ingredient") for entry in recent),
            methods=(entry.get("method") for entry in recent),
        )
