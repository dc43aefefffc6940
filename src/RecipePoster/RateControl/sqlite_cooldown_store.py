"""Cooldown store backed by a shared SQLite database.

Useful when many throttle keys are in play or when the state directory is
already home to other SQLite files. Deadlines are stored as wall-clock epoch
seconds and converted to the monotonic domain on read, exactly like
:class:`~RecipePoster.RateControl.cooldown.FileCooldownStore`.

Key Design:
- ``PRAGMA journal_mode=WAL`` so readers in other processes are never blocked
  by a writer.
- Writes are serialised through the injected :class:`LockProvider`.
- Expired rows are deleted on read; :meth:`SQLiteCooldownStore.prune_expired`
  sweeps everything else.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from RecipePoster.RateControl.clock import Clock, SystemClock
from RecipePoster.RateControl.locks import FileLockProvider, LockProvider

__all__ = ["SQLiteCooldownStore"]

_DDL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
PRAGMA busy_timeout=4000;
CREATE TABLE IF NOT EXISTS cooldowns (
    key TEXT PRIMARY KEY,
    until_wall REAL NOT NULL,
    reason TEXT,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_cooldowns_until ON cooldowns(until_wall);
"""


@dataclass
class SQLiteCooldownStore:
    """Cross-process cooldown store in a single SQLite file.

    Parameters
    ----------
    db_path : Path
        Database location. Parent directories are created if missing.
    lock_provider : LockProvider
        Serialises writes across processes.
    clock : Clock
        Wall-clock and monotonic time source.
    """

    db_path: Path
    lock_provider: LockProvider = field(default_factory=FileLockProvider)
    clock: Clock = field(default_factory=SystemClock)

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self.db_path,
            isolation_level=None,
            check_same_thread=False,
        )
        with self.lock_provider.lock(self.db_path):
            for stmt in _DDL.strip().split(";\n"):
                if stmt.strip():
                    self._conn.execute(stmt)

    def get_until(self, key: str) -> Optional[float]:
        now_w = self.clock.time()
        now_m = self.clock.monotonic()
        row = self._conn.execute(
            "SELECT until_wall FROM cooldowns WHERE key=?",
            (key,),
        ).fetchone()
        if not row:
            return None
        until_wall = float(row[0])
        if until_wall <= now_w:
            self.clear(key)
            return None
        return now_m + (until_wall - now_w)

    def set_until(self, key: str, until_monotonic: float, reason: str) -> None:
        now_w = self.clock.time()
        until_wall = now_w + max(0.0, until_monotonic - self.clock.monotonic())
        with self.lock_provider.lock(self.db_path):
            self._conn.execute(
                """
                INSERT INTO cooldowns(key, until_wall, reason, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    until_wall=excluded.until_wall,
                    reason=excluded.reason,
                    updated_at=excluded.updated_at
                """,
                (key, until_wall, str(reason)[:128], now_w),
            )

    def clear(self, key: str) -> None:
        with self.lock_provider.lock(self.db_path):
            self._conn.execute("DELETE FROM cooldowns WHERE key=?", (key,))

    def prune_expired(self) -> int:
        """Delete every expired row and return how many were removed."""

        with self.lock_provider.lock(self.db_path):
            cur = self._conn.execute(
                "DELETE FROM cooldowns WHERE until_wall <= ?",
                (self.clock.time(),),
            )
            return cur.rowcount or 0

    def get_all_until(self) -> Dict[str, Tuple[float, str]]:
        """Return ``{key: (until_wall, reason)}`` for live rows."""

        rows = self._conn.execute(
            "SELECT key, until_wall, reason FROM cooldowns WHERE until_wall > ?",
            (self.clock.time(),),
        ).fetchall()
        return {key: (float(until_wall), reason or "") for key, until_wall, reason in rows}

    def close(self) -> None:
        self._conn.close()
