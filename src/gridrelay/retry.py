"""
Retry utilities with exponential backoff.

Every network suspension point of the relay (receipt fetch, confirmation
wait, attestation call) runs through ``retry_async`` so that an unresponsive
node cannot stall a transfer forever. Submissions are never wrapped: a
blind resubmission could pay twice.

Usage:
    from gridrelay.retry import retry_async, RPC_RETRY_CONFIG

    receipt = await retry_async(adapter.get_receipt, tx_hash, config=RPC_RETRY_CONFIG)
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, ParamSpec, TypeVar

from .exceptions import is_retryable

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 means no retries)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Maximum jitter factor (0.0-1.0) applied to delays
        retry_condition: Decides whether an exception is worth another attempt
        on_retry: Optional callback called before each retry
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.1
    retry_condition: Callable[[BaseException], bool] = is_retryable
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)
        return max(0.0, delay)

    def should_retry(self, exception: BaseException) -> bool:
        # Cancellation always wins
        if isinstance(exception, asyncio.CancelledError):
            return False
        return self.retry_condition(exception)


RPC_RETRY_CONFIG = RetryConfig(max_retries=4, base_delay=1.0, max_delay=20.0, jitter=0.2)

ATTESTATION_RETRY_CONFIG = RetryConfig(max_retries=3, base_delay=2.0, max_delay=30.0, jitter=0.1)


@dataclass
class RetryStats:
    """Statistics about retry execution."""

    attempts: int = 0
    total_delay: float = 0.0
    success: bool = False
    last_exception: Optional[BaseException] = None


class RetryExhausted(Exception):
    """Raised when all retry attempts have been exhausted.

    The last underlying exception is kept as ``original_exception`` and as
    ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        stats: RetryStats,
        original_exception: BaseException,
    ) -> None:
        super().__init__(message)
        self.stats = stats
        self.original_exception = original_exception


async def retry_async(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    config: Optional[RetryConfig] = None,
    **kwargs: P.kwargs,
) -> T:
    """Execute an async function with retry logic.

    Non-retryable exceptions propagate immediately and unchanged.

    Raises:
        RetryExhausted: If every attempt failed with a retryable exception
    """
    if config is None:
        config = RetryConfig()

    stats = RetryStats()
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_retries + 1):
        stats.attempts = attempt + 1
        try:
            result = await func(*args, **kwargs)
            stats.success = True
            return result
        except Exception as e:
            stats.last_exception = e

            if not config.should_retry(e):
                raise
            if attempt >= config.max_retries:
                break

            delay = config.calculate_delay(attempt)
            stats.total_delay += delay
            logger.warning(
                f"Retry {attempt + 1}/{config.max_retries} for {name} "
                f"after {type(e).__name__}: {e}. Waiting {delay:.2f}s"
            )
            if config.on_retry:
                config.on_retry(attempt + 1, e, delay)
            await asyncio.sleep(delay)

    raise RetryExhausted(
        f"All {config.max_retries + 1} attempts failed for {name}",
        stats=stats,
        original_exception=stats.last_exception,
    ) from stats.last_exception


__all__ = [
    "RetryConfig",
    "RetryStats",
    "RetryExhausted",
    "retry_async",
    "RPC_RETRY_CONFIG",
    "ATTESTATION_RETRY_CONFIG",
]
