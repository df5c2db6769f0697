"""
Retry backoff for notification delivery.

- Exponential backoff per failed attempt, capped
- Optional jitter (seeded RNG for deterministic tests)
- Server Retry-After always wins when it is longer

Defaults reproduce a 2s, 4s, 8s, 16s ... schedule capped at five minutes.
"""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass
class BackoffConfig:
    """Configuration for exponential backoff between delivery attempts."""

    base_delay_ms: int = 2000
    max_delay_ms: int = 300_000
    multiplier: float = 2.0
    jitter_factor: float = 0.0  # 0.2 = ±20% jitter

    def __post_init__(self) -> None:
        if self.base_delay_ms <= 0:
            raise ValueError(f"base_delay_ms must be > 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms must be >= base_delay_ms, got {self.max_delay_ms}"
            )
        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {self.multiplier}")
        if not 0.0 <= self.jitter_factor < 1.0:
            raise ValueError(f"jitter_factor must be in [0, 1), got {self.jitter_factor}")


def compute_backoff_delay(
    config: BackoffConfig,
    attempts: int,
    retry_after_ms: int | None = None,
    *,
    rng: random.Random | None = None,
) -> int:
    """
    Compute the delay before the next delivery attempt.

    Args:
        config: Backoff configuration.
        attempts: Failed attempts so far, including the one just recorded.
        retry_after_ms: Server-provided retry delay (429 responses).
        rng: Optional seeded Random instance for deterministic jitter.

    Returns:
        Delay in milliseconds.
    """
    if attempts <= 0:
        return 0

    delay = config.base_delay_ms * (config.multiplier ** (attempts - 1))

    if config.jitter_factor > 0:
        jitter_min = 1.0 - config.jitter_factor
        jitter_max = 1.0 + config.jitter_factor
        source = rng if rng is not None else random
        delay = delay * source.uniform(jitter_min, jitter_max)

    delay = min(delay, config.max_delay_ms)

    if retry_after_ms is not None and retry_after_ms > 0:
        delay = max(delay, retry_after_ms)

    return int(delay)
