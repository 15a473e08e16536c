"""
Core module: Type definitions, error hierarchy, and configuration.

This module provides the foundational abstractions:
- Result/Either monad for exception-free control flow
- Error hierarchy with stable codes
- Configuration management with validation
"""

from relaymesh.core.types import (
    Result,
    Ok,
    Err,
    Timestamp,
    MessageStatus,
    MessageType,
    ConversationType,
    MemberRole,
    FriendshipStatus,
    PresenceStatus,
)
from relaymesh.core.errors import (
    ErrorCode,
    RelayMeshError,
    StorageError,
    ContentError,
    LedgerError,
    RealtimeError,
    ValidationError,
    ReliabilityError,
    QueueError,
)
from relaymesh.core.config import RelayMeshConfig

__all__ = [
    "Result",
    "Ok",
    "Err",
    "Timestamp",
    "MessageStatus",
    "MessageType",
    "ConversationType",
    "MemberRole",
    "FriendshipStatus",
    "PresenceStatus",
    "ErrorCode",
    "RelayMeshError",
    "StorageError",
    "ContentError",
    "LedgerError",
    "RealtimeError",
    "ValidationError",
    "ReliabilityError",
    "QueueError",
    "RelayMeshConfig",
]
