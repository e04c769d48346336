"""
Exponential backoff policy with optional jitter.
"""

import random
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, Field

from .errors import ErrorKind

JITTER_RATIO = 0.25


class RetryConfig(BaseModel):
    """
    Retry configuration.

    Attributes:
        max_retries: Retries after the initial attempt (total attempts = max_retries + 1)
        base_delay_ms: Delay before the first retry, and the floor for jittered delays
        max_delay_ms: Upper bound for the un-jittered delay
        backoff_multiplier: Geometric growth factor per attempt
        jitter_enabled: Perturb delays by up to ±25%
        retryable_error_kinds: Error kinds that are retried; others fail immediately
    """

    max_retries: int = Field(3, ge=0)
    base_delay_ms: int = Field(1000, ge=0)
    max_delay_ms: int = Field(300_000, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    jitter_enabled: bool = True
    retryable_error_kinds: frozenset[ErrorKind] = frozenset(
        {ErrorKind.TRANSIENT, ErrorKind.RATE_LIMITED, ErrorKind.RESOURCE}
    )

    class Config:
        json_schema_extra = {
            "example": {
                "max_retries": 3,
                "base_delay_ms": 1000,
                "max_delay_ms": 300000,
                "backoff_multiplier": 2,
                "jitter_enabled": True,
                "retryable_error_kinds": ["transient", "rate_limited", "resource"]
            }
        }


DEFAULT_RETRY_CONFIG = RetryConfig()


def calculate_delay(attempt: int, config: RetryConfig = DEFAULT_RETRY_CONFIG, rng: random.Random | None = None) -> int:
    """
    Delay in milliseconds before the retry that follows ``attempt``.

    ``min(base * multiplier^(attempt-1), max_delay)``, then with jitter enabled
    perturbed by a uniform ±25% and floored at ``base``.

    Args:
        attempt: 1-based attempt number that just failed
        config: Retry configuration
        rng: Random source (module-level random when omitted)
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")

    try:
        delay = config.base_delay_ms * config.backoff_multiplier ** (attempt - 1)
    except OverflowError:
        delay = config.max_delay_ms
    delay = min(delay, config.max_delay_ms)

    if config.jitter_enabled:
        uniform = (rng or random).uniform(-1.0, 1.0)
        delay = max(config.base_delay_ms, delay + delay * JITTER_RATIO * uniform)

    return int(delay)


def next_retry_at(delay_ms: int, now: datetime | None = None) -> datetime:
    """Absolute time of the next retry."""
    now = now or datetime.now(timezone.utc)
    return now + timedelta(milliseconds=delay_ms)
