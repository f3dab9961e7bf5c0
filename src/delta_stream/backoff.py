"""Reconnect backoff policy.

Delays grow geometrically from ``initial_delay`` by ``factor`` per attempt,
capped at ``max_delay``, then jittered by +/- ``randomization_factor``.

The controller only does arithmetic and bookkeeping; scheduling the actual
reconnect is the stream's job.
"""

from __future__ import annotations

import logging
import math
import random

from .config import StreamConfig

logger = logging.getLogger(__name__)


class BackoffController:
    """Exponential backoff with a bounded number of consecutive attempts.

    Usage:
        backoff = BackoffController(max_attempts=5)
        if backoff.has_exceeded_limit():
            give_up()
        else:
            await asyncio.sleep(backoff.next_delay())
        ...
        backoff.reset()  # on any data received
    """

    def __init__(
        self,
        initial_delay: float = 0.25,
        max_delay: float = 30.0,
        factor: float = 4.0,
        randomization_factor: float = 0.5,
        max_attempts: int = 5,
        rng: random.Random | None = None,
    ):
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.factor = factor
        self.randomization_factor = randomization_factor
        self.max_attempts = max_attempts
        self._rng = rng or random.Random()
        self._attempt = 0

    @classmethod
    def from_config(cls, config: StreamConfig, rng: random.Random | None = None) -> BackoffController:
        """Create a controller using the backoff shape of a StreamConfig."""
        return cls(
            initial_delay=config.initial_delay,
            max_delay=config.max_delay,
            factor=config.factor,
            randomization_factor=config.randomization_factor,
            max_attempts=config.max_restart_retries,
            rng=rng,
        )

    @property
    def attempt(self) -> int:
        """Number of delays handed out since the last reset."""
        return self._attempt

    def base_delay(self, attempt: int) -> float:
        """Un-jittered delay for a zero-based attempt number."""
        # Compare in log space so huge attempt counts never overflow
        if self.factor > 1 and attempt > 0:
            ceiling = math.log(self.max_delay / self.initial_delay)
            if attempt * math.log(self.factor) >= ceiling:
                return self.max_delay
        return min(self.max_delay, self.initial_delay * self.factor**attempt)

    def next_delay(self) -> float:
        """Return the delay (seconds) before the next attempt and count it."""
        base = self.base_delay(self._attempt)
        self._attempt += 1
        if self.randomization_factor:
            spread = base * self.randomization_factor
            delay = self._rng.uniform(base - spread, base + spread)
        else:
            delay = base
        logger.debug(f"Backoff attempt {self._attempt}: {delay:.3f}s")
        return delay

    def reset(self) -> None:
        """Forget all previous attempts."""
        self._attempt = 0

    def has_exceeded_limit(self) -> bool:
        """True once ``max_attempts`` delays were handed out without a reset.

        Checked before asking for the next delay: with ``max_attempts=5`` the
        stream reconnects five times, and the failure of the fifth reconnect
        (the sixth consecutive stall) is terminal.
        """
        return self._attempt >= self.max_attempts
