"""Backoff policy: how long to wait before the next attempt.

The policy is a pure function of the attempt number and an optional
server-supplied hint (``Retry-After``). A positive hint always wins over the
computed exponential delay; it is clamped to a small floor so a ``0.01`` hint
cannot turn the retry loop into a busy loop, and capped so a hostile or broken
server cannot park a run for hours.
"""

from __future__ import annotations

import random
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

__all__ = ["BackoffPolicy"]


class BackoffPolicy(BaseModel):
    """Exponential backoff with additive jitter and Retry-After precedence."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    base_delay_ms: int = Field(default=800, ge=0, description="Delay before the first retry")
    jitter_ms: int = Field(default=800, ge=0, description="Upper bound of the uniform jitter")
    hint_floor_ms: int = Field(default=100, gt=0, description="Minimum honoured server hint")
    retry_after_cap_s: float = Field(
        default=900.0, gt=0, description="Maximum honoured server hint"
    )

    def exponential_delay(self, attempt: int) -> float:
        """Jitter-free delay in seconds: ``base * 2^(attempt-1)``."""

        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        return (self.base_delay_ms / 1000.0) * (2 ** (attempt - 1))

    def next_delay(
        self,
        attempt: int,
        server_hint: Optional[float] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> float:
        """Seconds to sleep after failed attempt number ``attempt`` (1-based).

        Args:
            attempt: Number of the attempt that just failed.
            server_hint: Server-suggested wait in seconds, if any.
            rng: Random source for the jitter draw. Defaults to :mod:`random`.

        Returns:
            Delay in seconds.
        """
        if server_hint is not None and server_hint > 0:
            floor = self.hint_floor_ms / 1000.0
            return min(max(float(server_hint), floor), self.retry_after_cap_s)

        delay = self.exponential_delay(attempt)
        if self.jitter_ms:
            draw = (rng or random).uniform(0.0, self.jitter_ms / 1000.0)
            delay += draw
        return delay
