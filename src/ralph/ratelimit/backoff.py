"""Exponential backoff with jitter for rate-limited retries."""

from __future__ import annotations

import random
from dataclasses import dataclass

#: First retry waits this long (before jitter).
BACKOFF_BASE_MS = 5_000

#: Delays never exceed this (before jitter).
BACKOFF_MAX_MS = 300_000

#: Up to this fraction of the delay is added as random jitter.
JITTER_RATIO = 0.1

# 2**32 * base already dwarfs any sane cap.
_MAX_EXPONENT = 32


def calculate_backoff_ms(
    attempt: int,
    *,
    base_ms: int = BACKOFF_BASE_MS,
    max_ms: int = BACKOFF_MAX_MS,
    rng: random.Random | None = None,
) -> int:
    """Return the delay before retry number *attempt* (1-based).

    ``base * 2**(attempt-1)`` capped at *max_ms*, inflated by up to 10%
    so several instances sharing a backend do not retry in lockstep.
    """
    if attempt <= 0:
        return 0
    exponent = min(attempt - 1, _MAX_EXPONENT)
    capped = min(base_ms * 2**exponent, max_ms)
    jitter = capped * JITTER_RATIO * (rng or random).random()
    return round(capped + jitter)


@dataclass
class BackoffState:
    """Consecutive-failure counter driving :func:`calculate_backoff_ms`."""

    attempt: int = 0

    @property
    def active(self) -> bool:
        return self.attempt > 0

    def increment(self) -> int:
        self.attempt += 1
        return self.attempt

    def reset(self) -> None:
        self.attempt = 0


@dataclass(frozen=True)
class BackoffPolicy:
    """Configured base/cap pair."""

    base_ms: int = BACKOFF_BASE_MS
    max_ms: int = BACKOFF_MAX_MS

    def delay_ms(self, attempt: int) -> int:
        return calculate_backoff_ms(attempt, base_ms=self.base_ms, max_ms=self.max_ms)
