"""
Retry Policy - Exponential Backoff Helpers

Wraps tenacity so every stage (page fetch, manifest publish, SFTP upload)
shares the same configurable backoff: initial delay, multiplier, cap and a
bounded number of attempts, plus an optional timeout per attempt.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from utils.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters: wait = initial_delay * multiplier**(attempt-1), capped."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    attempt_timeout: float | None = None

    @classmethod
    def from_settings(cls, attempt_timeout: float | None = None) -> "RetryPolicy":
        return cls(
            max_attempts=settings.EXTRACT_MAX_RETRIES,
            initial_delay=settings.EXTRACT_RETRY_INITIAL_DELAY,
            multiplier=settings.EXTRACT_RETRY_MULTIPLIER,
            max_delay=settings.EXTRACT_RETRY_MAX_DELAY,
            attempt_timeout=attempt_timeout,
        )

    def _kwargs(self, retry_on: tuple[type[BaseException], ...]) -> dict[str, Any]:
        return {
            "retry": retry_if_exception_type(retry_on),
            "stop": stop_after_attempt(self.max_attempts),
            "wait": wait_exponential(
                multiplier=self.initial_delay,
                exp_base=self.multiplier,
                max=self.max_delay,
            ),
            "before_sleep": before_sleep_log(logger, logging.WARNING),
            "reraise": True,
        }

    def async_retrying(self, retry_on: tuple[type[BaseException], ...]) -> AsyncRetrying:
        return AsyncRetrying(**self._kwargs(retry_on))

    def retrying(self, retry_on: tuple[type[BaseException], ...]) -> Retrying:
        return Retrying(**self._kwargs(retry_on))

    async def call(
        self,
        func: Callable[[], Awaitable[T]],
        retry_on: tuple[type[BaseException], ...],
    ) -> T:
        """Run ``func`` under this policy, bounding each attempt by attempt_timeout.

        A timed-out attempt counts as asyncio.TimeoutError, which is retried
        only if it appears in ``retry_on``. The last error is re-raised once
        attempts are exhausted.
        """
        async for attempt in self.async_retrying(retry_on):
            with attempt:
                if self.attempt_timeout is None:
                    return await func()
                return await asyncio.wait_for(func(), timeout=self.attempt_timeout)
        raise AssertionError("unreachable")  # pragma: no cover
