"""Retry backoff policy for node execution."""

import random
from typing import Optional


class RetryConfig:
    """Configuration for backoff between node attempts.

    Delays grow exponentially from ``base_delay`` and are capped at
    ``max_delay``; ``jitter`` scales each delay into [50%, 100%].
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        rng: Optional[random.Random] = None
    ):
        if base_delay < 0:
            raise ValueError("base_delay cannot be negative")
        if max_delay < base_delay:
            raise ValueError("max_delay must be at least base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self._rng = rng or random.Random()

    def get_delay(self, attempt: int) -> float:
        """Calculate delay in seconds after the given failed attempt (1-based)."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + self._rng.random() * 0.5)

        return delay

    @classmethod
    def immediate(cls) -> "RetryConfig":
        """Retry without waiting (mainly for tests)."""
        return cls(base_delay=0.0, max_delay=0.0, jitter=False)
