"""Retry and timeout helpers for remote store calls."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from revisit.domain.constants import (
    REQUEST_TIMEOUT,
    RETRY_BASE_DELAY,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY,
    RETRY_MULTIPLIER,
)
from revisit.domain.errors import RemoteUnavailable, RetriesExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Capped exponential backoff.

    Attempt n (1-based) is followed by a delay of
    min(base_delay * multiplier ** (n - 1), max_delay) seconds.
    """

    max_attempts: int = RETRY_MAX_ATTEMPTS
    base_delay: float = RETRY_BASE_DELAY
    max_delay: float = RETRY_MAX_DELAY
    multiplier: float = RETRY_MULTIPLIER

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * self.multiplier ** max(attempt - 1, 0), self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts


async def call_with_timeout(
    operation: Callable[[], Awaitable[T]],
    timeout: float | None = REQUEST_TIMEOUT,
    path: str | None = None,
) -> T:
    """
    Await `operation()` with a deadline.

    Raises:
        RemoteUnavailable: If the deadline passes first.
    """
    if timeout is None:
        return await operation()
    try:
        return await asyncio.wait_for(operation(), timeout=timeout)
    except asyncio.TimeoutError:
        raise RemoteUnavailable(f"Timed out after {timeout}s", path=path) from None


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    timeout: float | None = REQUEST_TIMEOUT,
    path: str | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run a remote call, retrying RemoteUnavailable under `policy`.

    Non-retryable errors propagate immediately.

    Raises:
        RetriesExhausted: If every attempt failed with RemoteUnavailable.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await call_with_timeout(operation, timeout, path)
        except RemoteUnavailable as e:
            if not policy.should_retry(attempt):
                raise RetriesExhausted(attempt, e, path=path) from e
            delay = policy.delay_for(attempt)
            logger.warning(
                f"Remote call failed (attempt {attempt}/{policy.max_attempts}), "
                f"retrying in {delay:.1f}s: {e}"
            )
            await sleep(delay)
