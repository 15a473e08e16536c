"""
Content Fetcher: Multi-Path Retrieval from the Content Network

Strategy, in order:
1. Primary pinning client, max_retries attempts, backoff 2^attempt s
2. Each public gateway in priority order, max_retries attempts,
   backoff (attempt + 1) s, 10 s per-attempt timeout via cancellation

The first success is returned immediately; later paths are never
called. Only when every path x attempt has failed does fetch return
ContentError.unavailable, carrying the last underlying cause.

A companion health check HEADs a known-good identifier on every
gateway and classifies each as healthy (< 2 s), slow or down.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence

import aiohttp

from relaymesh.core import constants as C
from relaymesh.core.config import ContentConfig
from relaymesh.core.errors import ContentError, ReliabilityError
from relaymesh.core.types import Result, Ok, Err, Timestamp
from relaymesh.content.sources import ContentSource, GatewayClient, PinningServiceClient
from relaymesh.observability import metrics
from relaymesh.reliability.retry import RetryPolicy, RetryStats, SleepFn, retry_with_backoff

logger = logging.getLogger(__name__)


class GatewayStatus(str, Enum):
    HEALTHY = "healthy"
    SLOW = "slow"
    DOWN = "down"


@dataclass(frozen=True, slots=True)
class GatewayHealth:
    gateway: str
    status: GatewayStatus
    latency_ms: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "gateway": self.gateway,
            "status": self.status.value,
            "latencyMs": None if self.latency_ms is None else round(self.latency_ms, 1),
            "error": self.error,
        }


@dataclass(frozen=True)
class ContentHealthReport:
    gateways: list[GatewayHealth]
    checked_at: Timestamp = field(default_factory=Timestamp.now)

    @property
    def is_available(self) -> bool:
        """True when at least one gateway answered quickly."""
        return any(g.status is GatewayStatus.HEALTHY for g in self.gateways)

    def to_dict(self) -> dict[str, object]:
        return {
            "available": self.is_available,
            "gateways": [g.to_dict() for g in self.gateways],
            "checkedAt": self.checked_at.to_iso(),
        }


class ContentFetcher:
    """
    Bounded-retry fetcher across the primary client and public gateways.

    Usage:
        fetcher = ContentFetcher(primary, [GatewayClient(url, session), ...])
        result = await fetcher.fetch("bafy...")
        if result.is_ok():
            payload = result.unwrap()
    """

    __slots__ = (
        "_primary", "_gateways", "_max_retries", "_gateway_timeout_s",
        "_health_timeout_s", "_health_probe_id", "_sleep", "_clock",
    )

    def __init__(
        self,
        primary: Optional[ContentSource],
        gateways: Sequence[ContentSource],
        *,
        max_retries: int = C.CONTENT_MAX_RETRIES,
        gateway_timeout_s: float = C.CONTENT_GATEWAY_TIMEOUT_S,
        health_timeout_s: float = C.CONTENT_HEALTH_TIMEOUT_S,
        health_probe_id: str = C.HEALTH_PROBE_CONTENT_ID,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries}")
        self._primary = primary
        self._gateways = list(gateways)
        self._max_retries = max_retries
        self._gateway_timeout_s = gateway_timeout_s
        self._health_timeout_s = health_timeout_s
        self._health_probe_id = health_probe_id
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_config(cls, config: ContentConfig, session: aiohttp.ClientSession) -> ContentFetcher:
        primary = None
        if config.pinning_api_url:
            primary = PinningServiceClient(config.pinning_api_url, config.pinning_api_token, session)
        return cls(
            primary,
            [GatewayClient(url, session) for url in config.gateways],
            max_retries=config.max_retries,
            gateway_timeout_s=config.gateway_timeout_s,
            health_timeout_s=config.health_timeout_s,
            health_probe_id=config.health_probe_id,
        )

    @property
    def gateways(self) -> list[ContentSource]:
        return list(self._gateways)

    async def fetch(self, content_id: str, max_retries: Optional[int] = None) -> Result[bytes, ContentError]:
        """Resolve content_id through every access path in priority order."""
        if not content_id or not content_id.strip():
            return Err(ContentError.invalid_id(content_id))

        attempts_per_path = self._max_retries if max_retries is None else max_retries
        if attempts_per_path < 1:
            raise ValueError(f"max_retries must be at least 1, got {attempts_per_path}")
        total_attempts = 0
        last_cause: Optional[BaseException] = None

        paths: list[tuple[ContentSource, RetryPolicy, str]] = []
        if self._primary is not None:
            paths.append((
                self._primary,
                RetryPolicy.exponential(attempts_per_path, C.CONTENT_PRIMARY_BASE_DELAY_MS),
                "primary",
            ))
        for gateway in self._gateways:
            paths.append((
                gateway,
                RetryPolicy.linear(
                    attempts_per_path,
                    C.CONTENT_GATEWAY_BASE_DELAY_MS,
                    attempt_timeout_s=self._gateway_timeout_s,
                ),
                "gateway",
            ))

        for source, policy, kind in paths:
            stats = RetryStats()
            result = await retry_with_backoff(
                lambda source=source: source.fetch(content_id),
                policy,
                operation=f"fetch {content_id} via {source.name}",
                sleep=self._sleep,
                stats=stats,
            )
            total_attempts += stats.total_attempts

            if result.is_ok():
                metrics.content_fetches().inc(source=kind, outcome="ok")
                logger.debug("Content resolved", extra={"content_id": content_id, "source": source.name})
                return Ok(result.unwrap())

            metrics.content_fetches().inc(source=kind, outcome="exhausted")
            last_cause = self._root_cause(result.error, source, policy)
            logger.info(
                "Content path exhausted",
                extra={"content_id": content_id, "source": source.name, "attempts": stats.total_attempts},
            )

        return Err(ContentError.unavailable(content_id, total_attempts, cause=last_cause))

    @staticmethod
    def _root_cause(error: ReliabilityError, source: ContentSource, policy: RetryPolicy) -> BaseException:
        cause = error.cause
        if isinstance(cause, asyncio.TimeoutError):
            timeout_ms = int((policy.attempt_timeout_s or 0) * 1000)
            return ReliabilityError.timeout(f"fetch via {source.name}", timeout_ms)
        return cause if cause is not None else error

    async def _probe(self, source: ContentSource) -> GatewayHealth:
        started = self._clock()
        try:
            await asyncio.wait_for(source.probe(self._health_probe_id), timeout=self._health_timeout_s)
        except asyncio.TimeoutError:
            return GatewayHealth(source.name, GatewayStatus.DOWN, error=f"timed out after {self._health_timeout_s}s")
        except Exception as e:
            return GatewayHealth(source.name, GatewayStatus.DOWN, error=str(e) or type(e).__name__)

        latency_ms = (self._clock() - started) * 1000
        status = GatewayStatus.HEALTHY if latency_ms < C.CONTENT_HEALTHY_THRESHOLD_MS else GatewayStatus.SLOW
        return GatewayHealth(source.name, status, latency_ms=latency_ms)

    async def check_health(self) -> ContentHealthReport:
        """Probe every gateway concurrently."""
        results = await asyncio.gather(*(self._probe(g) for g in self._gateways))
        report = ContentHealthReport(gateways=list(results))
        logger.debug("Content network health", extra={"available": report.is_available})
        return report
