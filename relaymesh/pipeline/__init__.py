"""
Pipeline module: ledger event deduplication and external job hand-off.
"""

from relaymesh.pipeline.deduplication import DeduplicationResult, RecencyWindow
from relaymesh.pipeline.queue import (
    ContentCachingJob,
    InMemoryJobQueue,
    JobQueue,
    MessageProcessingJob,
    RedisJobQueue,
)

__all__ = [
    "DeduplicationResult",
    "RecencyWindow",
    "ContentCachingJob",
    "InMemoryJobQueue",
    "JobQueue",
    "MessageProcessingJob",
    "RedisJobQueue",
]
