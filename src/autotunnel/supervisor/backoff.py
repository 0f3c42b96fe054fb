"""Retry delay computation."""

import random

from ..config import RestartSettings


class BackoffPolicy:
    """Exponential backoff with symmetric jitter.

    ``next_delay`` is a pure function of the attempt number and the random
    source, so tests pass a seeded ``random.Random`` (or a stub with a
    ``random()`` method) to pin the result.
    """

    def __init__(
        self,
        min_delay: float,
        max_delay: float,
        factor: float = 2.0,
        jitter: float = 0.2,
        rng: random.Random | None = None,
    ):
        if min_delay > max_delay:
            raise ValueError("min_delay must be <= max_delay")
        if not 0.0 <= jitter <= 1.0:
            raise ValueError("jitter must be between 0 and 1")
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.factor = factor
        self.jitter = jitter
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(
        cls, settings: RestartSettings, rng: random.Random | None = None
    ) -> "BackoffPolicy":
        return cls(
            min_delay=settings.min_delay,
            max_delay=settings.max_delay,
            factor=settings.factor,
            jitter=settings.jitter,
            rng=rng,
        )

    def base_delay(self, attempt: int) -> float:
        """Un-jittered delay for ``attempt``, capped at ``max_delay``."""
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        if self.min_delay <= 0:
            return 0.0
        # factor**attempt overflows long before it matters; cap early
        try:
            grown = self.min_delay * (self.factor**attempt)
        except OverflowError:
            return self.max_delay
        return min(self.max_delay, grown)

    def next_delay(self, attempt: int) -> float:
        """Jittered delay in seconds, within ``base * (1 +/- jitter)``."""
        base = self.base_delay(attempt)
        if self.jitter <= 0 or base <= 0:
            return base
        delta = self.jitter * (self._rng.random() * 2 - 1)
        return max(0.0, base * (1 + delta))
