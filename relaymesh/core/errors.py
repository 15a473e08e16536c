"""
Error Hierarchy for RelayMesh

Design Principles:
- Fallible operations return Result types; errors are values
- Every error carries a stable code, a message, a cause and context
- Per-item failures are recorded, never allowed to abort a whole pass

Each error type includes:
- Unique error code for programmatic handling
- Human-readable message for logging and SyncResult entries
- Optional cause chain for root cause analysis
- Timestamp for correlation with log records

Taxonomy used by the sync and realtime layers:
    ContentError.unavailable        every content access path exhausted
    LedgerError.query_failed        RPC / node error on a ledger read
    StorageError.write_failed       query store rejected a write
    RealtimeError.authentication_required
    RealtimeError.access_denied

Usage:
    result = await fetcher.fetch(content_id)
    if result.is_err():
        err = result.error
        if err.code is ErrorCode.CONTENT_UNAVAILABLE:
            warnings.append(err.message)
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from relaymesh.core.types import Timestamp


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Unique error codes for programmatic error handling.

    Codes are grouped by subsystem:
    - 1xxx: Storage errors
    - 2xxx: Content network errors
    - 3xxx: Ledger errors
    - 4xxx: Realtime / security errors
    - 5xxx: Request validation errors
    - 6xxx: Reliability errors
    - 7xxx: Queue errors
    - 9xxx: Internal errors
    """

    # Storage errors (1xxx)
    STORAGE_CONNECTION_FAILED = 1001
    STORAGE_WRITE_FAILED = 1002
    STORAGE_QUERY_FAILED = 1003
    STORAGE_NOT_FOUND = 1004

    # Content network errors (2xxx)
    CONTENT_UNAVAILABLE = 2001
    CONTENT_INVALID_ID = 2002

    # Ledger errors (3xxx)
    LEDGER_QUERY_FAILED = 3001
    LEDGER_DECODE_FAILED = 3002
    LEDGER_UNAVAILABLE = 3003

    # Realtime / security errors (4xxx)
    REALTIME_AUTHENTICATION_REQUIRED = 4001
    REALTIME_ACCESS_DENIED = 4002
    REALTIME_INVALID_TOKEN = 4003
    REALTIME_UNKNOWN_EVENT = 4004

    # Validation errors (5xxx)
    VALIDATION_FAILED = 5001

    # Reliability errors (6xxx)
    RELIABILITY_RETRY_EXHAUSTED = 6001
    RELIABILITY_TIMEOUT = 6002

    # Queue errors (7xxx)
    QUEUE_ENQUEUE_FAILED = 7001
    QUEUE_UNAVAILABLE = 7002

    # Internal errors (9xxx)
    INTERNAL_ERROR = 9001
    INTERNAL_CONFIGURATION_ERROR = 9002


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass
class RelayMeshError(Exception):
    """
    Base class for all RelayMesh errors.

    Provides common infrastructure for error handling:
    - Unique error ID for log correlation
    - Error code for programmatic handling
    - Timestamp of creation
    - Cause chain for root cause analysis
    """

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: Timestamp = field(default_factory=Timestamp.now)
    cause: Optional[BaseException] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def with_context(self, **kwargs: Any) -> RelayMeshError:
        """Add context to error (returns new instance of the same class)."""
        return dataclasses.replace(self, context={**self.context, **kwargs})

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize error to dictionary for logging/API responses.

        Excludes the cause to avoid leaking implementation details.
        """
        return {
            "error_id": self.error_id,
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "timestamp_nanos": self.timestamp.nanos,
            "context": self.context,
        }

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (id={self.error_id[:8]})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )


# =============================================================================
# STORAGE ERRORS
# =============================================================================
@dataclass
class StorageError(RelayMeshError):
    """Errors from the SQLite query store."""

    @classmethod
    def connection_failed(
        cls,
        path: str,
        cause: Optional[BaseException] = None,
    ) -> StorageError:
        return cls(
            code=ErrorCode.STORAGE_CONNECTION_FAILED,
            message=f"Failed to open query store at {path}",
            cause=cause,
            context={"path": path},
        )

    @classmethod
    def write_failed(
        cls,
        operation: str,
        cause: Optional[BaseException] = None,
    ) -> StorageError:
        """Store rejected a write. Aborts the current phase only."""
        detail = f": {cause}" if cause is not None else ""
        return cls(
            code=ErrorCode.STORAGE_WRITE_FAILED,
            message=f"Store write '{operation}' failed{detail}",
            cause=cause,
            context={"operation": operation},
        )

    @classmethod
    def query_failed(
        cls,
        operation: str,
        cause: Optional[BaseException] = None,
    ) -> StorageError:
        detail = f": {cause}" if cause is not None else ""
        return cls(
            code=ErrorCode.STORAGE_QUERY_FAILED,
            message=f"Store query '{operation}' failed{detail}",
            cause=cause,
            context={"operation": operation},
        )

    @classmethod
    def not_found(cls, entity: str, key: str) -> StorageError:
        return cls(
            code=ErrorCode.STORAGE_NOT_FOUND,
            message=f"{entity} '{key}' not found",
            context={"entity": entity, "key": key},
        )


# =============================================================================
# CONTENT NETWORK ERRORS
# =============================================================================
@dataclass
class ContentError(RelayMeshError):
    """Errors from the content-addressed storage network."""

    @classmethod
    def unavailable(
        cls,
        content_id: str,
        attempts: int,
        cause: Optional[BaseException] = None,
    ) -> ContentError:
        """Every access path x retry combination failed."""
        return cls(
            code=ErrorCode.CONTENT_UNAVAILABLE,
            message=(
                f"All content access paths failed after {attempts} attempts. "
                f"Last error: {cause if cause is not None else 'unknown'}"
            ),
            cause=cause,
            context={"content_id": content_id, "attempts": attempts},
        )

    @classmethod
    def invalid_id(cls, content_id: str) -> ContentError:
        return cls(
            code=ErrorCode.CONTENT_INVALID_ID,
            message=f"Invalid content identifier: {content_id!r}",
            context={"content_id": content_id},
        )


# =============================================================================
# LEDGER ERRORS
# =============================================================================
@dataclass
class LedgerError(RelayMeshError):
    """Errors reading from the ledger node."""

    @classmethod
    def query_failed(
        cls,
        method: str,
        subject: str,
        cause: Optional[BaseException] = None,
    ) -> LedgerError:
        """A ledger read failed; the affected user or message is skipped."""
        detail = f": {cause}" if cause is not None else ""
        return cls(
            code=ErrorCode.LEDGER_QUERY_FAILED,
            message=f"Ledger query {method}({subject}) failed{detail}",
            cause=cause,
            context={"method": method, "subject": subject},
        )

    @classmethod
    def decode_failed(cls, what: str, cause: Optional[BaseException] = None) -> LedgerError:
        return cls(
            code=ErrorCode.LEDGER_DECODE_FAILED,
            message=f"Could not decode ledger {what}",
            cause=cause,
            context={"what": what},
        )

    @classmethod
    def unavailable(cls, endpoint: str, cause: Optional[BaseException] = None) -> LedgerError:
        return cls(
            code=ErrorCode.LEDGER_UNAVAILABLE,
            message=f"Ledger node at {endpoint} is unreachable",
            cause=cause,
            context={"endpoint": endpoint},
        )


# =============================================================================
# REALTIME / SECURITY ERRORS
# =============================================================================
@dataclass
class RealtimeError(RelayMeshError):
    """Errors raised at the realtime connection boundary."""

    @classmethod
    def authentication_required(
        cls,
        reason: str = "provide either token or address",
    ) -> RealtimeError:
        """Connection is rejected before any room join."""
        return cls(
            code=ErrorCode.REALTIME_AUTHENTICATION_REQUIRED,
            message=f"Authentication required: {reason}",
            context={"reason": reason},
        )

    @classmethod
    def invalid_token(cls, reason: str) -> RealtimeError:
        return cls(
            code=ErrorCode.REALTIME_INVALID_TOKEN,
            message=f"Invalid session token: {reason}",
            context={"reason": reason},
        )

    @classmethod
    def access_denied(cls, resource: str, participant_id: str) -> RealtimeError:
        """Membership check failed; the connection stays open."""
        return cls(
            code=ErrorCode.REALTIME_ACCESS_DENIED,
            message=f"Access denied to {resource}",
            context={"resource": resource, "participant_id": participant_id},
        )

    @classmethod
    def unknown_event(cls, event: str) -> RealtimeError:
        return cls(
            code=ErrorCode.REALTIME_UNKNOWN_EVENT,
            message=f"Unknown event '{event}'",
            context={"event": event},
        )


# =============================================================================
# VALIDATION ERRORS
# =============================================================================
@dataclass
class ValidationError(RelayMeshError):
    """Malformed input on the direct-write or operational surfaces."""

    @classmethod
    def invalid_field(cls, name: str, reason: str) -> ValidationError:
        return cls(
            code=ErrorCode.VALIDATION_FAILED,
            message=f"Invalid '{name}': {reason}",
            context={"field": name, "reason": reason},
        )

    @classmethod
    def missing_field(cls, name: str, label: Optional[str] = None) -> ValidationError:
        return cls(
            code=ErrorCode.VALIDATION_FAILED,
            message=f"{label or name} required",
            context={"field": name},
        )


# =============================================================================
# RELIABILITY ERRORS
# =============================================================================
@dataclass
class ReliabilityError(RelayMeshError):
    """Errors from the retry subsystem."""

    @classmethod
    def retry_exhausted(
        cls,
        operation: str,
        attempts: int,
        cause: Optional[BaseException] = None,
    ) -> ReliabilityError:
        return cls(
            code=ErrorCode.RELIABILITY_RETRY_EXHAUSTED,
            message=f"Retry exhausted for '{operation}' after {attempts} attempts: {cause}",
            cause=cause,
            context={"operation": operation, "attempts": attempts},
        )

    @classmethod
    def timeout(cls, operation: str, timeout_ms: int) -> ReliabilityError:
        return cls(
            code=ErrorCode.RELIABILITY_TIMEOUT,
            message=f"Operation '{operation}' timed out after {timeout_ms}ms",
            context={"operation": operation, "timeout_ms": timeout_ms},
        )


# =============================================================================
# QUEUE ERRORS
# =============================================================================
@dataclass
class QueueError(RelayMeshError):
    """Errors handing jobs to the external processing queues."""

    @classmethod
    def enqueue_failed(
        cls,
        queue: str,
        cause: Optional[BaseException] = None,
    ) -> QueueError:
        return cls(
            code=ErrorCode.QUEUE_ENQUEUE_FAILED,
            message=f"Failed to enqueue job on '{queue}': {cause}",
            cause=cause,
            context={"queue": queue},
        )

    @classmethod
    def unavailable(cls, reason: str, cause: Optional[BaseException] = None) -> QueueError:
        return cls(
            code=ErrorCode.QUEUE_UNAVAILABLE,
            message=f"Job queue unavailable: {reason}",
            cause=cause,
            context={"reason": reason},
        )
