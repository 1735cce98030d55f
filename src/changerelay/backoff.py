"""
Exponential backoff for conflict retries

Pure functions only: nothing here sleeps, so retry timing can be asserted
directly in tests.
"""

import random
from dataclasses import dataclass
from typing import Optional

DEFAULT_BASE_DELAY = 0.1
DEFAULT_MAX_DELAY = 5.0


def delay(
    attempt: int,
    base: float = DEFAULT_BASE_DELAY,
    multiplier: float = 2.0,
    max_delay: float = DEFAULT_MAX_DELAY,
    jitter: float = 0.0,
    rng: Optional[random.Random] = None,
) -> float:
    """Seconds to wait before retry number ``attempt`` (1-based).

    attempt 1 -> base, attempt 2 -> base * multiplier, ... capped at max_delay.
    ``jitter`` is a fraction (0.25 means +/-25%).
    """
    if attempt < 1:
        return 0.0
    value = min(base * (multiplier ** (attempt - 1)), max_delay)
    if jitter:
        spread = value * jitter
        value += (rng or random).uniform(-spread, spread)
    return max(0.0, value)


@dataclass
class RetryPolicy:
    """Configuration for retry behavior"""

    max_retries: int = 3
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    multiplier: float = 2.0
    jitter: float = 0.0

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt with exponential backoff"""
        return delay(
            attempt,
            base=self.base_delay,
            multiplier=self.multiplier,
            max_delay=self.max_delay,
            jitter=self.jitter,
        )

    def schedule(self, retries: Optional[int] = None):
        """Delays for each retry in order, useful for logging and tests"""
        count = self.max_retries if retries is None else retries
        return [self.get_delay(attempt) for attempt in range(1, count + 1)]
