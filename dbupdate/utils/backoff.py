"""
Retry delays.

HTTPFetcher and the Adobe Analytics client back off exponentially between
attempts; scheduled update stages wait a fixed delay (see `fixed_delay`).
"""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffConfig:
    """Delay schedule between retry attempts.

    Attributes:
        base_delay: Seconds before the first retry.
        max_delay: Upper bound on any single delay, in seconds.
        exponential_base: Growth factor per attempt (1.0 keeps the delay fixed).
        jitter_factor: Delays vary randomly by up to this fraction.
    """

    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        if self.base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.exponential_base < 1:
            raise ValueError("exponential_base must be >= 1")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be between 0 and 1")


def fixed_delay(delay: float) -> BackoffConfig:
    """Same delay before every retry, without jitter."""
    return BackoffConfig(
        base_delay=delay,
        max_delay=delay,
        exponential_base=1.0,
        jitter_factor=0.0,
    )


def calculate_backoff(
    attempt: int,
    config: BackoffConfig | None = None,
    *,
    add_jitter: bool = True,
) -> float:
    """Seconds to wait before retry number `attempt` (0 for the first retry).

    Example:
        >>> [calculate_backoff(n, add_jitter=False) for n in range(4)]
        [1.0, 2.0, 4.0, 8.0]
    """
    if attempt < 0:
        raise ValueError("attempt must be non-negative")

    config = config or BackoffConfig()
    delay = min(config.base_delay * config.exponential_base**attempt, config.max_delay)

    if add_jitter and config.jitter_factor:
        spread = delay * config.jitter_factor
        delay += random.uniform(-spread, spread)

    return max(0.0, delay)
