"""
Retry with exponential back-off.

``BackoffPolicy`` is pure so the delay sequence can be asserted without
sleeping; ``retry_async`` drives an async operation with it and a retryable
predicate.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Optional, TypeVar

from loguru import logger

from .errors import is_retryable as default_is_retryable

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    initial_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0
    max_attempts: int = 3

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based): min(initial * m^(n-1), max)."""
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        return min(self.initial_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    def delays(self) -> Iterator[float]:
        for attempt in range(1, self.max_attempts + 1):
            yield self.delay_for(attempt)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    is_retryable: Callable[[BaseException], bool] = default_is_retryable,
    on_retry: Optional[Callable[[BaseException, int, float], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Run ``operation`` up to ``policy.max_attempts`` times.

    Non-retryable errors propagate immediately; after the last attempt the last
    error propagates.  Cancellation is never swallowed.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if attempt >= policy.max_attempts:
                logger.warning(f"{label} failed after {attempt} attempts: {exc}")
                raise
            wait = policy.delay_for(attempt)
            if on_retry is not None:
                on_retry(exc, attempt, wait)
            else:
                logger.warning(f"{label} attempt {attempt}/{policy.max_attempts} failed: {exc} (retry in {wait:.2f}s)")
            await sleep(wait)
