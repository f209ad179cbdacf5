"""Bounded retry for transient gateway failures.

Exponential backoff with full jitter: the delay before retry ``n`` is
drawn uniformly from [0, min(max_delay, base_delay * 2**(n-1))]. Only
ExternalError with ``transient=True`` is retried; everything else
propagates immediately.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, TypeVar

from trustwork.errors import ExternalError
from trustwork.policy.resolver import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(policy: RetryPolicy, attempt: int, rng: Callable[[], float] = random.random) -> float:
    """Full-jitter delay before retrying after failed attempt ``attempt`` (1-based)."""
    ceiling = min(policy.max_delay_seconds, policy.base_delay_seconds * (2 ** (attempt - 1)))
    return ceiling * rng()


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    description: str = "gateway call",
    sleep: Callable[[float], None] = time.sleep,
    rng: Optional[Callable[[], float]] = None,
) -> T:
    """Run ``operation``, retrying transient ExternalErrors.

    Raises:
        ExternalError: code ``gateway_error`` once attempts are exhausted,
            or the original error if it is not transient.
    """
    rng = rng or random.random
    attempt = 1
    while True:
        try:
            return operation()
        except ExternalError as exc:
            if not exc.transient:
                raise
            if attempt >= policy.max_attempts:
                logger.warning(
                    "%s failed after %d attempts: %s", description, attempt, exc.message,
                )
                raise ExternalError(
                    "gateway_error",
                    f"{description} failed after {attempt} attempts: {exc.message}",
                ) from exc
            delay = backoff_delay(policy, attempt, rng)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description, attempt, policy.max_attempts, exc.message, delay,
            )
            sleep(delay)
            attempt += 1
