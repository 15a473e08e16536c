"""
Retry Policy: Bounded Attempts with Exponential or Linear Backoff

Implements the retry strategy used by every content access path:
- Exponential backoff: base x 2^attempt (primary pinning client)
- Linear backoff: base x (attempt + 1) (public gateways)
- Optional per-attempt timeout enforced by cancellation
- No sleep after the final attempt

The sleep function is injectable so callers (and tests) can observe
the delay schedule without waiting on the wall clock.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Type, TypeVar

from relaymesh.core.types import Result, Ok, Err
from relaymesh.core.errors import ReliabilityError
from relaymesh.core import constants as C

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


class BackoffStrategy(Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for one access path."""

    max_attempts: int = C.CONTENT_MAX_RETRIES
    base_delay_ms: int = C.SECOND_MS
    max_delay_ms: int = 60 * C.SECOND_MS
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    attempt_timeout_s: Optional[float] = None
    jitter: bool = False
    non_retryable_exceptions: tuple[Type[BaseException], ...] = ()

    @classmethod
    def exponential(cls, max_attempts: int, base_delay_ms: int = C.SECOND_MS) -> RetryPolicy:
        """2^attempt x base between attempts."""
        return cls(max_attempts=max_attempts, base_delay_ms=base_delay_ms)

    @classmethod
    def linear(
        cls,
        max_attempts: int,
        base_delay_ms: int = C.SECOND_MS,
        attempt_timeout_s: Optional[float] = None,
    ) -> RetryPolicy:
        """(attempt + 1) x base between attempts."""
        return cls(
            max_attempts=max_attempts,
            base_delay_ms=base_delay_ms,
            backoff=BackoffStrategy.LINEAR,
            attempt_timeout_s=attempt_timeout_s,
        )

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(max_attempts=1)


@dataclass
class RetryStats:
    """Retry attempt statistics."""
    total_attempts: int = 0
    failed_attempts: int = 0
    total_delay_ms: float = 0.0
    last_error: Optional[str] = None


def calculate_backoff(attempt: int, policy: RetryPolicy) -> float:
    """
    Delay in milliseconds after the given zero-based failed attempt.

    Full jitter, when enabled: random(0, delay).
    """
    if policy.backoff is BackoffStrategy.LINEAR:
        delay = policy.base_delay_ms * (attempt + 1)
    else:
        delay = policy.base_delay_ms * (2 ** attempt)
    delay = min(policy.max_delay_ms, delay)

    if policy.jitter:
        delay = random.uniform(0, delay)
    return float(delay)


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    operation: str = "operation",
    sleep: SleepFn = asyncio.sleep,
    stats: Optional[RetryStats] = None,
) -> Result[T, ReliabilityError]:
    """
    Execute async function with retry and backoff.

    Args:
        func: Async function to execute (called once per attempt)
        policy: Retry configuration
        operation: Label used in logs and the exhaustion error
        sleep: Awaitable sleep, seconds
        stats: Optional accumulator inspected by the caller

    Returns:
        Ok with result, or Err(ReliabilityError) whose cause is the
        last exception raised by func
    """
    if policy is None:
        policy = RetryPolicy()
    if stats is None:
        stats = RetryStats()

    last_exception: Optional[BaseException] = None

    for attempt in range(policy.max_attempts):
        stats.total_attempts += 1
        try:
            if policy.attempt_timeout_s is not None:
                result = await asyncio.wait_for(func(), timeout=policy.attempt_timeout_s)
            else:
                result = await func()
            return Ok(result)

        except asyncio.TimeoutError as e:
            last_exception = e
            stats.failed_attempts += 1
            stats.last_error = f"timed out after {policy.attempt_timeout_s}s"
            logger.debug("%s attempt %d timed out", operation, attempt + 1)

        except policy.non_retryable_exceptions as e:
            stats.failed_attempts += 1
            stats.last_error = str(e)
            return Err(ReliabilityError.retry_exhausted(operation, stats.total_attempts, cause=e))

        except Exception as e:
            last_exception = e
            stats.failed_attempts += 1
            stats.last_error = str(e)
            logger.debug("%s attempt %d failed: %s", operation, attempt + 1, e)

        if attempt < policy.max_attempts - 1:
            delay = calculate_backoff(attempt, policy)
            stats.total_delay_ms += delay
            await sleep(delay / 1000)

    return Err(ReliabilityError.retry_exhausted(operation, stats.total_attempts, cause=last_exception))
