"""
Pydantic v2 settings for the RecipePoster rate-control layer.

Every knob can be overridden from the environment with the ``RECIPE_POSTER_``
prefix, e.g. ``RECIPE_POSTER_MAX_RETRIES=3`` or
``RECIPE_POSTER_KEY_INTERVALS_MS='{"openai_images": 25000}'``. Settings are
passed explicitly to :func:`RecipePoster.RateControl.build_coordinator`; there
is no process-wide instance.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Set

import httpx
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from RecipePoster.RateControl.backoff import BackoffPolicy

__all__ = ["CooldownBackend", "RateControlSettings"]


class CooldownBackend(str, Enum):
    """Where cooldown records are persisted."""

    FILE = "file"
    SQLITE = "sqlite"
    MEMORY = "memory"


class RateControlSettings(BaseSettings):
    """Configuration for throttling, retries, cooldowns and HTTP timeouts."""

    model_config = SettingsConfigDict(
        env_prefix="RECIPE_POSTER_",
        case_sensitive=False,
        extra="ignore",
    )

    state_dir: Path = Field(Path("data"), description="Directory for persisted rate state")
    cooldown_backend: CooldownBackend = Field(CooldownBackend.FILE)

    min_interval_ms: int = Field(25_000, ge=0, description="Default spacing between calls")
    key_intervals_ms: Dict[str, int] = Field(
        default_factory=dict, description="Per-key overrides of min_interval_ms"
    )
    max_retries: int = Field(6, ge=0, description="Retries after the first attempt")

    base_delay_ms: int = Field(800, ge=0)
    jitter_ms: int = Field(800, ge=0)
    hint_floor_ms: int = Field(100, gt=0)
    retry_after_cap_s: float = Field(900.0, gt=0)

    cooldown_seconds: float = Field(60.0, ge=0, description="Cooldown armed on trigger statuses")
    cooldown_statuses: Set[int] = Field(default_factory=lambda: {429})
    quota_error_codes: List[str] = Field(default_factory=lambda: ["insufficient_quota"])

    connect_timeout_s: float = Field(15.0, gt=0)
    read_timeout_s: float = Field(180.0, gt=0)
    write_timeout_s: float = Field(180.0, gt=0)
    lock_timeout_s: float = Field(60.0, description="Negative waits forever")

    log_level: str = Field("INFO", description="Level for the RecipePoster logger")
    log_dir: Optional[Path] = Field(None, description="Directory for the JSONL log file")

    @field_validator("cooldown_statuses")
    @classmethod
    def validate_statuses(cls, v: Set[int]) -> Set[int]:
        for status in v:
            if not (100 <= status < 600):
                raise ValueError(f"Invalid HTTP status code: {status}")
        return v

    @property
    def interval_state_path(self) -> Path:
        return self.state_dir / "rate_state.json"

    @property
    def cooldown_dir(self) -> Path:
        return self.state_dir / "cooldowns"

    @property
    def cooldown_db_path(self) -> Path:
        return self.state_dir / "cooldowns.sqlite"

    def interval_for(self, key: str) -> int:
        """Minimum interval in milliseconds configured for ``key``."""

        return self.key_intervals_ms.get(key, self.min_interval_ms)

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            base_delay_ms=self.base_delay_ms,
            jitter_ms=self.jitter_ms,
            hint_floor_ms=self.hint_floor_ms,
            retry_after_cap_s=self.retry_after_cap_s,
        )

    def http_timeout(self) -> httpx.Timeout:
        """Explicit connect/read/write timeouts for provider clients."""

        return httpx.Timeout(
            connect=self.connect_timeout_s,
            read=self.read_timeout_s,
            write=self.write_timeout_s,
            pool=self.connect_timeout_s,
        )
