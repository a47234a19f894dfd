"""Retry Policy Executor: exponential backoff on transient upstream failures.

Backoff strategy:
  delay = base * 2^attempt   (attempt is 0-based, no jitter)

Only TRANSIENT_STATUS_CODES (rate limit, overload) are retried. Any other
failure propagates immediately and consumes no retry budget. When the
budget is exhausted, the last failure propagates unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from stream_gateway.gateway.errors import UpstreamError
from stream_gateway.gateway.types import RetryAttempt

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0  # seconds


class RetryPolicy:
    """Retries an async operation on transient failures.

    Usage:
        policy = RetryPolicy(max_retries=3, base_delay=1.0)
        result = await policy.run(lambda: call_gateway(request))
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep

    @staticmethod
    def calculate_backoff(attempt: int, base_delay: float = DEFAULT_BASE_DELAY) -> float:
        """Delay before retry number ``attempt + 1``: base * 2^attempt."""
        return base_delay * (2**attempt)

    @staticmethod
    def is_retryable(exc: BaseException) -> bool:
        return isinstance(exc, UpstreamError) and exc.is_transient

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        on_retry: Callable[[RetryAttempt, BaseException], None] | None = None,
    ) -> T:
        """Execute ``operation``, retrying transient failures with backoff.

        ``on_retry`` is called before each backoff sleep with the upcoming
        attempt and the failure that triggered it.
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as exc:
                if not self.is_retryable(exc) or attempt >= self.max_retries:
                    raise

                delay = self.calculate_backoff(attempt, self.base_delay)
                retry = RetryAttempt(attempt_number=attempt + 2, delay_before_attempt=delay)
                logger.info(
                    "Transient failure (%s), retry %d/%d in %.2fs",
                    exc,
                    attempt + 1,
                    self.max_retries,
                    delay,
                )
                if on_retry is not None:
                    on_retry(retry, exc)

                await self._sleep(delay)
                attempt += 1
