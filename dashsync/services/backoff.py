"""
Retry delay policy for commit retries and reconnects.
"""

import random
from typing import Optional


class ExponentialBackoff:
    """Capped exponential backoff with jitter.

    The n-th delay is ``base * factor ** n`` scaled by a random factor in
    ``[1 - jitter, 1 + jitter]`` and clamped to the cap. Successive delays never
    decrease until reset() is called, even when jitter would pull one below the
    previous value.
    """

    def __init__(
        self,
        base: float = 1.0,
        factor: float = 2.0,
        cap: float = 60.0,
        jitter: float = 0.2,
        rng: Optional[random.Random] = None,
    ):
        if base <= 0 or cap <= 0:
            raise ValueError("Backoff base and cap must be positive")
        if factor < 1:
            raise ValueError("Backoff factor must be at least 1")
        if not 0 <= jitter < 1:
            raise ValueError("Backoff jitter must be in [0, 1)")

        self.base = base
        self.factor = factor
        self.cap = cap
        self.jitter = jitter
        self._rng = rng or random.Random()
        self.attempts = 0
        self._last_delay = 0.0

    def next_delay(self) -> float:
        """Return the delay before the next attempt and count the failure."""
        raw = self.base * (self.factor ** min(self.attempts, 64))
        if self.jitter:
            raw *= self._rng.uniform(1 - self.jitter, 1 + self.jitter)
        delay = min(self.cap, max(raw, self._last_delay))

        self.attempts += 1
        self._last_delay = delay
        return delay

    def reset(self) -> None:
        """Start over after a success."""
        self.attempts = 0
        self._last_delay = 0.0

    @property
    def last_delay(self) -> float:
        return self._last_delay
