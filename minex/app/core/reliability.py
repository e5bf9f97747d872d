"""
Reliability utilities for remote calls.

Includes the exponential backoff retry policy used by the API client.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from minex.app.core.config import settings

logger = logging.getLogger("minex.reliability")

# Transport failures that are expected to clear up on their own:
# timeouts, resets/aborted connections, refused connections and DNS errors.
TRANSIENT_TRANSPORT_ERRORS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


class RetryPolicy:
    """
    Exponential backoff retry policy.

    The first retry waits 'base_delay' seconds and every following retry
    doubles it: 0.25s, 0.5s, 1.0s with the defaults. 'should_retry' decides,
    given the failure and the number of attempts made so far, whether another
    attempt is allowed.
    """

    def __init__(
        self,
        max_retries: int = None,
        base_delay: float = None,
        sleep: Callable[[float], Awaitable[Any]] = None,
    ):
        self.max_retries = settings.retry_max_retries if max_retries is None else max_retries
        self.base_delay = (
            settings.retry_base_delay_ms / 1000 if base_delay is None else base_delay
        )
        self.sleep = sleep or asyncio.sleep

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number 'attempt' (1-based)."""
        return self.base_delay * (2 ** (attempt - 1))

    async def call(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        should_retry: Optional[Callable[[Exception, int], bool]] = None,
        **kwargs,
    ) -> Any:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                retries_used = attempt - 1
                if retries_used >= self.max_retries:
                    raise
                if should_retry is None or not should_retry(e, attempt):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Retrying after failure",
                    extra={
                        "attempt": attempt,
                        "delay_s": delay,
                        "error": type(e).__name__,
                    },
                )
                await self.sleep(delay)
