"""Retry policy shared by every oracle caller."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from callaudit.config import settings
from callaudit.errors import NonRetriableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retriable(exc: BaseException) -> bool:
    """Everything except classified non-retriable failures is retried."""
    return isinstance(exc, Exception) and not isinstance(exc, NonRetriableError)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded attempts with capped exponential backoff (base, 2*base, 4*base...)."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    retriable: Callable[[BaseException], bool] = field(default=is_retriable)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.oracle_max_attempts,
            base_delay=settings.oracle_backoff_base_seconds,
            max_delay=settings.oracle_backoff_max_seconds,
        )

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_exponential(multiplier=self.base_delay, min=0, max=self.max_delay),
            retry=retry_if_exception(self.retriable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` under the policy.

        The last error is re-raised once attempts are exhausted, and
        non-retriable errors propagate on first occurrence.
        """
        async for attempt in self.retrying():
            with attempt:
                result = await fn()
        return result
