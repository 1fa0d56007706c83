"""Retry policy for gateway transport failures."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(slots=True)
class RetryPolicy:
    """Bounded retry with exponential backoff and jitter.

    ``attempt`` is zero-based: attempt 0 is the first send. A failed attempt
    may be retried while ``attempt < max_retries``, so a command is sent at most
    ``max_retries + 1`` times.

    An ``initial_backoff_seconds`` of zero disables delays and retries
    immediately.
    """

    max_retries: int = 5
    initial_backoff_seconds: float = 0.5
    max_backoff_seconds: float = 30.0
    jitter_ratio: float = 0.5
    rng: Optional[Callable[[float, float], float]] = None

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before re-sending after ``attempt`` failed."""
        if self.initial_backoff_seconds <= 0:
            return 0.0

        max_delay = max(self.initial_backoff_seconds, self.max_backoff_seconds)
        delay = min(self.initial_backoff_seconds * (2 ** attempt), max_delay)

        jitter_ratio = max(0.0, min(1.0, self.jitter_ratio))
        if jitter_ratio == 0.0:
            return delay

        jitter = delay * jitter_ratio
        uniform = self.rng or random.uniform
        return uniform(max(0.0, delay - jitter), delay + jitter)
