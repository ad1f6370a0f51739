"""Exponential backoff for transient infrastructure errors."""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Backoff schedule: base_delay * factor**attempt, capped at max_delay.

    max_attempts bounds call_with_retry; None retries forever.
    """

    base_delay: float = 1.0
    max_delay: float = 60.0
    factor: float = 2.0
    max_attempts: Optional[int] = 5
    jitter: float = 0.1

    @classmethod
    def from_settings(cls, settings, max_attempts: Optional[int] = -1) -> "RetryPolicy":
        """Build a policy from Settings; pass max_attempts=None for unbounded retries."""
        return cls(
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            max_attempts=settings.retry_max_attempts if max_attempts == -1 else max_attempts,
        )

    def delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        delay = min(self.max_delay, self.base_delay * (self.factor ** attempt))
        if self.jitter:
            delay += delay * self.jitter * random.random()
        return min(delay, self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt is allowed after `attempt` failures."""
        return self.max_attempts is None or attempt < self.max_attempts

    async def call_with_retry(
        self,
        fn: Callable[[], Awaitable[T]],
        retry_on: tuple[type[BaseException], ...],
        operation: str = "operation",
    ) -> T:
        """Call fn until it succeeds or the attempts are exhausted.

        Raises:
            The last error from fn once max_attempts is reached
        """
        attempt = 0
        while True:
            try:
                return await fn()
            except retry_on as e:
                attempt += 1
                if not self.should_retry(attempt):
                    logger.error(f"{operation} failed after {attempt} attempts: {e}")
                    raise
                delay = self.delay(attempt - 1)
                logger.warning(
                    f"{operation} failed (attempt {attempt}): {e}; retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
