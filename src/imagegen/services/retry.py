"""Capped, jittered exponential backoff for outbound provider calls."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from imagegen.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    factor: float = 2.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.PROVIDER_RETRY_MAX_ATTEMPTS,
            initial_delay=settings.PROVIDER_RETRY_INITIAL_DELAY,
            max_delay=settings.PROVIDER_RETRY_MAX_DELAY,
            factor=settings.PROVIDER_RETRY_FACTOR,
        )

    def delay_for(self, attempt: int) -> float:
        """Upper bound of the sleep after the given 1-based failed attempt."""
        return min(self.initial_delay * self.factor ** (attempt - 1), self.max_delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    is_retryable: Callable[[BaseException], bool],
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the attempt budget runs out.

    Exceptions that ``is_retryable`` rejects propagate on the first
    occurrence.  When the budget is exhausted the last exception propagates.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc) or attempt >= policy.max_attempts:
                raise
            delay = random.uniform(0, policy.delay_for(attempt))
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            else:
                logger.warning(
                    "Retrying after attempt %d/%d failed: %s (wait %.2fs)",
                    attempt, policy.max_attempts, exc, delay,
                )
            await sleep(delay)
            attempt += 1
