"""
Bounded retry with exponential backoff and jitter for provider calls.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from mailsync.config import settings
from mailsync.services.errors import RetryBudgetExhausted
from mailsync.services.providers.base import RateLimited, TransientNetwork
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import MetricsCollector

logger = get_logger("retry")

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Retry configuration."""
    max_attempts: int = 4
    backoff_factor: float = 2.0
    initial_delay: float = 1.0
    max_delay: float = 60.0
    jitter: bool = True

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        return cls(
            max_attempts=settings.sync_retry_max_attempts,
            backoff_factor=settings.sync_retry_backoff_factor,
            initial_delay=settings.sync_retry_initial_delay,
            max_delay=settings.sync_retry_max_delay,
        )

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        delay = min(self.initial_delay * (self.backoff_factor ** attempt), self.max_delay)
        if self.jitter:
            delay = delay / 2 + random.uniform(0, delay / 2)
        if retry_after is not None:
            delay = max(delay, min(retry_after, self.max_delay))
        return delay


class RetryPolicy:
    """Runs a provider call, retrying RateLimited and TransientNetwork up to a bound."""

    def __init__(self, config: Optional[RetryConfig] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.config = config or RetryConfig.from_settings()
        self._sleep = sleep

    async def call(self, func: Callable[[], Awaitable[T]], description: str = "provider call",
                   provider: str = "unknown") -> T:
        last_error = None
        for attempt in range(self.config.max_attempts):
            try:
                return await func()
            except (RateLimited, TransientNetwork) as e:
                last_error = e
                if attempt + 1 >= self.config.max_attempts:
                    break
                retry_after = e.retry_after if isinstance(e, RateLimited) else None
                delay = self.config.delay_for(attempt, retry_after)
                MetricsCollector.increment_provider_retries(provider, type(e).__name__)
                logger.warning(
                    f"{description} attempt {attempt + 1} failed ({type(e).__name__}), retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

        raise RetryBudgetExhausted(
            f"{description} failed after {self.config.max_attempts} attempts: {last_error}",
            last_error,
        )
