from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable

from warehouse_client import ConstraintViolation, RetryableError

from .errors import TransformError

_TRANSIENT_FRAGMENTS = (
    "timeout",
    "timed out",
    "temporar",
    "unavailable",
    "throttl",
    "rate limit",
    "too many requests",
    "busy",
    "deadlock",
    "connection reset",
    "try again",
)


def default_retry_classifier(exc: BaseException) -> bool:
    """True when ``exc`` looks transient (worth another attempt).

    Schema/required-field errors and constraint violations are deterministic
    and never retried, whatever their message says.
    """
    if isinstance(exc, (TransformError, ConstraintViolation)):
        return False
    if isinstance(exc, (RetryableError, TimeoutError, ConnectionError)):
        return True
    msg = str(exc).lower()
    return any(f in msg for f in _TRANSIENT_FRAGMENTS)


@dataclass
class RetryPolicy:
    """Exponential backoff with floor/ceiling and an attempt ceiling.

    ``next_backoff_ms(n)`` is the delay before retry ``n`` (1-based). Without
    jitter the sequence is non-decreasing and strictly increasing until it
    reaches ``max_backoff_ms``.
    """

    max_attempts: int = 10
    initial_backoff_ms: int = 1_000
    max_backoff_ms: int = 3_600_000
    backoff_multiplier: float = 2.0
    jitter: bool = False
    classify_retryable: Callable[[BaseException], bool] = field(
        default=default_retry_classifier
    )

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_backoff_ms <= 0 or self.max_backoff_ms < self.initial_backoff_ms:
            raise ValueError("require 0 < initial_backoff_ms <= max_backoff_ms")

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            initial_backoff_ms=settings.backoff_floor_ms,
            max_backoff_ms=settings.backoff_ceiling_ms,
            backoff_multiplier=settings.backoff_multiplier,
        )

    def next_backoff_ms(self, attempt: int) -> int:
        attempt = max(1, attempt)
        base = self.initial_backoff_ms * (self.backoff_multiplier ** (attempt - 1))
        delay = min(int(base), self.max_backoff_ms)
        if self.jitter:
            # 50-100% of the computed delay, never below the floor
            delay = max(int(delay * random.uniform(0.5, 1.0)), self.initial_backoff_ms)
        return max(delay, 1)

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts
