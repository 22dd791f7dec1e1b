"""Reconnect delay policy."""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from ..core.config import SyncSettings

_MAX_EXPONENT = 32


@dataclass(slots=True)
class Backoff:
    """Capped exponential delay with optional jitter.

    There is no attempt limit; callers reset the counter once a connection
    has been re-established and backfilled.
    """

    base: float = 1.0
    maximum: float = 60.0
    factor: float = 2.0
    jitter: float = 0.0
    attempts: int = 0
    _random: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> Backoff:
        """Build a policy from sync settings."""
        return cls(
            base=settings.reconnect_base_seconds,
            maximum=settings.reconnect_max_seconds,
            jitter=settings.reconnect_jitter,
        )

    def next_delay(self) -> float:
        """Return the delay for the next attempt and advance the counter."""
        exponent = min(self.attempts, _MAX_EXPONENT)
        delay = min(self.maximum, self.base * (self.factor**exponent))
        self.attempts += 1
        if self.jitter:
            spread = delay * self.jitter
            delay = max(0.0, delay + self._random.uniform(-spread, spread))
        return min(delay, self.maximum)

    def reset(self) -> None:
        """Forget previous failures."""
        self.attempts = 0


__all__ = ["Backoff"]
