"""
Reliability module: bounded retries with backoff.
"""

from relaymesh.reliability.retry import (
    BackoffStrategy,
    RetryPolicy,
    RetryStats,
    calculate_backoff,
    retry_with_backoff,
)

__all__ = [
    "BackoffStrategy",
    "RetryPolicy",
    "RetryStats",
    "calculate_backoff",
    "retry_with_backoff",
]
