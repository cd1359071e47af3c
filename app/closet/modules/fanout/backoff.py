"""
Exponential backoff for fan-out batch retries.

Each queued batch carries its own instance, so one failing batch backs off
without slowing its siblings.
"""

import random


class ExponentialBackoff:
    """
    Computes delays as: min(base * multiplier^attempt, max_delay) + jitter.
    """

    def __init__(
        self,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        multiplier: float = 2.0,
        jitter_range: float = 0.25,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter_range = jitter_range
        self._attempt = 0

    @property
    def attempt(self) -> int:
        """Number of delays handed out so far."""
        return self._attempt

    def next_delay(self) -> float:
        """Calculate and return the next backoff delay, incrementing the attempt counter."""
        delay = min(
            self.base_delay * (self.multiplier ** self._attempt),
            self.max_delay,
        )
        jitter = delay * random.uniform(-self.jitter_range, self.jitter_range)
        delay = max(0.0, delay + jitter)
        self._attempt += 1
        return delay

    def reset(self) -> None:
        self._attempt = 0
