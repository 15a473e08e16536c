"""
Reconciliation value types: options in, results and status out.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from relaymesh.core import constants as C
from relaymesh.core.types import Timestamp


@dataclass
class SyncResult:
    """
    Outcome of one phase or one whole pass.

    Phases append per-item failures to errors or warnings and keep
    going; success is False only when a phase could not run at all.
    """

    success: bool = True
    processed: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def failed(cls, error: str) -> SyncResult:
        return cls(success=False, errors=[error])

    def merge(self, other: SyncResult) -> SyncResult:
        return SyncResult(
            success=self.success and other.success,
            processed=self.processed + other.processed,
            errors=self.errors + other.errors,
            warnings=self.warnings + other.warnings,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "processed": self.processed,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class SyncOptions:
    force_resync: bool = False
    max_messages: int = C.SYNC_MAX_MESSAGES
    skip_content_validation: bool = False
    dry_run: bool = False

    @classmethod
    def from_dict(cls, body: Optional[dict[str, Any]]) -> SyncOptions:
        """Accept the camelCase trigger body used by the HTTP API."""
        body = body or {}
        max_messages = body.get("maxMessages", body.get("max_messages", C.SYNC_MAX_MESSAGES))
        try:
            max_messages = max(0, int(max_messages))
        except (TypeError, ValueError):
            max_messages = C.SYNC_MAX_MESSAGES
        return cls(
            force_resync=bool(body.get("forceResync", body.get("force_resync", False))),
            max_messages=max_messages,
            skip_content_validation=bool(
                body.get("skipIPFSValidation", body.get("skip_content_validation", False))
            ),
            dry_run=bool(body.get("dryRun", body.get("dry_run", False))),
        )


@dataclass(frozen=True)
class SyncStatus:
    is_running: bool
    last_sync_time: Optional[Timestamp]
    next_sync_time: Optional[Timestamp]
    last_result: Optional[SyncResult]

    def to_dict(self) -> dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "lastSyncTime": self.last_sync_time.to_iso() if self.last_sync_time else None,
            "nextSyncTime": self.next_sync_time.to_iso() if self.next_sync_time else None,
            "lastResult": self.last_result.to_dict() if self.last_result else None,
        }


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class HealthReport:
    blockchain: bool
    ipfs: bool
    database: bool
    queue: bool
    timestamp: Timestamp = field(default_factory=Timestamp.now)

    @property
    def services(self) -> dict[str, bool]:
        return {
            "blockchain": self.blockchain,
            "ipfs": self.ipfs,
            "database": self.database,
            "queue": self.queue,
        }

    @property
    def status(self) -> HealthStatus:
        up = sum(self.services.values())
        if up == len(self.services):
            return HealthStatus.HEALTHY
        if up >= C.HEALTH_DEGRADED_MIN_UP:
            return HealthStatus.DEGRADED
        return HealthStatus.UNHEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "services": self.services,
            "timestamp": self.timestamp.to_iso(),
        }
