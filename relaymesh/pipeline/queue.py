"""
Job Queues: Hand-off to External Async Processing

Two queues leave the core:
- message-processing: heavier indexing of a freshly materialized message
- content-caching: warm a cache with a payload that just resolved

Backends:
- RedisJobQueue: JSON jobs pushed with LPUSH onto redis lists, consumed
  by workers outside this process
- InMemoryJobQueue: local mode and tests

Payloads in caching jobs are lz4-frame compressed and base64 encoded so
the job stays a plain JSON document.
"""

from __future__ import annotations

import base64
import json
import logging
from collections import defaultdict, deque
from dataclasses import asdict, dataclass
from typing import Any, Optional, Protocol, runtime_checkable
from uuid import uuid4

import lz4.frame
import redis.asyncio as aioredis

from relaymesh.core import constants as C
from relaymesh.core.errors import QueueError
from relaymesh.core.types import Result, Ok, Err, now_millis

logger = logging.getLogger(__name__)


# =============================================================================
# JOB PAYLOADS
# =============================================================================
@dataclass(frozen=True, slots=True)
class MessageProcessingJob:
    message_id: str
    content_hash: Optional[str]
    sender_address: str
    recipient_address: str
    timestamp: int

    queue_name = C.QUEUE_MESSAGE_PROCESSING

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class ContentCachingJob:
    content_hash: str
    message_id: str
    payload: bytes

    queue_name = C.QUEUE_CONTENT_CACHING

    def to_payload(self) -> dict[str, Any]:
        return {
            "content_hash": self.content_hash,
            "message_id": self.message_id,
            "payload_lz4": base64.b64encode(lz4.frame.compress(self.payload)).decode("ascii"),
            "size": len(self.payload),
        }

    @staticmethod
    def decode_payload(encoded: str) -> bytes:
        return lz4.frame.decompress(base64.b64decode(encoded))


def encode_job(job: MessageProcessingJob | ContentCachingJob) -> tuple[str, str]:
    """Serialize a job. Returns (job_id, json document)."""
    job_id = str(uuid4())
    document = {
        "id": job_id,
        "queue": job.queue_name,
        "enqueued_at": now_millis(),
        "data": job.to_payload(),
    }
    return job_id, json.dumps(document, separators=(",", ":"))


# =============================================================================
# QUEUE PROTOCOL
# =============================================================================
@runtime_checkable
class JobQueue(Protocol):
    """Sink for jobs handed to processing outside the core."""

    async def enqueue(self, job: MessageProcessingJob | ContentCachingJob) -> Result[str, QueueError]:
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...


class InMemoryJobQueue:
    """
    Process-local queue.

    Jobs are kept as the same JSON documents the redis backend would
    push, so tests observe the wire shape.
    """

    __slots__ = ("_queues", "_healthy")

    def __init__(self) -> None:
        self._queues: dict[str, deque[str]] = defaultdict(deque)
        self._healthy = True

    async def enqueue(self, job: MessageProcessingJob | ContentCachingJob) -> Result[str, QueueError]:
        if not self._healthy:
            return Err(QueueError.unavailable("in-memory queue marked unhealthy"))
        job_id, document = encode_job(job)
        self._queues[job.queue_name].append(document)
        return Ok(job_id)

    def jobs(self, queue_name: str) -> list[dict[str, Any]]:
        return [json.loads(doc) for doc in self._queues.get(queue_name, ())]

    def set_healthy(self, healthy: bool) -> None:
        self._healthy = healthy

    async def ping(self) -> bool:
        return self._healthy

    async def close(self) -> None:
        self._queues.clear()


class RedisJobQueue:
    """
    Redis list backed queue.

    Usage:
        queue = RedisJobQueue("redis://localhost:6379/0")
        await queue.connect()
        await queue.enqueue(MessageProcessingJob(...))
    """

    __slots__ = ("_url", "_prefix", "_client")

    def __init__(self, url: str, key_prefix: str = C.QUEUE_KEY_PREFIX) -> None:
        self._url = url
        self._prefix = key_prefix
        self._client: Optional[aioredis.Redis] = None

    async def connect(self) -> Result[None, QueueError]:
        try:
            self._client = aioredis.from_url(self._url, decode_responses=True)
            await self._client.ping()
            logger.info("Job queue connected", extra={"redis_url": self._redacted_url()})
            return Ok(None)
        except aioredis.RedisError as e:
            return Err(QueueError.unavailable(f"cannot reach {self._redacted_url()}", cause=e))

    def key_for(self, queue_name: str) -> str:
        return f"{self._prefix}{queue_name}"

    async def enqueue(self, job: MessageProcessingJob | ContentCachingJob) -> Result[str, QueueError]:
        if self._client is None:
            return Err(QueueError.unavailable("not connected"))
        job_id, document = encode_job(job)
        try:
            await self._client.lpush(self.key_for(job.queue_name), document)
        except aioredis.RedisError as e:
            return Err(QueueError.enqueue_failed(job.queue_name, cause=e))
        return Ok(job_id)

    async def depth(self, queue_name: str) -> Result[int, QueueError]:
        if self._client is None:
            return Err(QueueError.unavailable("not connected"))
        try:
            return Ok(int(await self._client.llen(self.key_for(queue_name))))
        except aioredis.RedisError as e:
            return Err(QueueError.unavailable("llen failed", cause=e))

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except aioredis.RedisError as e:
            logger.warning("Job queue ping failed: %s", e)
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _redacted_url(self) -> str:
        head, sep, tail = self._url.rpartition("@")
        return f"redis://***@{tail}" if sep else self._url
