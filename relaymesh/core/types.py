"""
Core Type Definitions for RelayMesh

Implements the Result/Either monad used for exception-free control flow
across every layer, plus the small value types shared by the ledger,
storage and realtime packages.

Design Principles:
- Fallible operations return Result instead of raising
- Enumerations for every closed set of states stored in the query store
- Wallet addresses are normalized once, at the boundary
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Callable,
    ClassVar,
    Generic,
    Literal,
    TypeVar,
    Union,
)

# =============================================================================
# TYPE VARIABLES FOR GENERIC CONTAINERS
# =============================================================================
T = TypeVar("T")  # Success type
E = TypeVar("E")  # Error type
U = TypeVar("U")  # Transform result type


# =============================================================================
# RESULT MONAD
# =============================================================================
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """
    Success variant of Result monad.

    Immutable container for successful computation results.
    """

    value: T

    def is_ok(self) -> Literal[True]:
        return True

    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        """Extract value. Safe to call after is_ok() check."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Return value, ignoring default."""
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        """Apply transformation to success value."""
        return Ok(fn(self.value))

    def flat_map(self, fn: Callable[[T], Result[U, E]]) -> Result[U, E]:
        """Monadic bind for chaining fallible operations."""
        return fn(self.value)

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """
    Failure variant of Result monad.

    Carries the error value (normally a RelayMeshError) unchanged
    through map/flat_map chains.
    """

    error: E

    def is_ok(self) -> Literal[False]:
        return False

    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> Any:
        """
        Attempting to unwrap an error is a programming error.

        Raises:
            RuntimeError: Always, with error context
        """
        raise RuntimeError(f"Called unwrap() on Err: {self.error}")

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, fn: Callable[[Any], U]) -> Err[E]:
        return self

    def flat_map(self, fn: Callable[[Any], Result[U, E]]) -> Err[E]:
        return self

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


Result = Union[Ok[T], Err[E]]


# =============================================================================
# TIMESTAMP
# =============================================================================
@dataclass(frozen=True, slots=True, order=True)
class Timestamp:
    """
    Nanosecond timestamp since the Unix epoch.

    The query store persists milliseconds; the ledger reports seconds.
    Both conversions live here so no caller multiplies by hand.
    """

    nanos: int

    NANOS_PER_SECOND: ClassVar[int] = 1_000_000_000
    NANOS_PER_MILLI: ClassVar[int] = 1_000_000

    @classmethod
    def now(cls) -> Timestamp:
        return cls(nanos=time.time_ns())

    @classmethod
    def from_seconds(cls, seconds: float) -> Timestamp:
        return cls(nanos=int(seconds * cls.NANOS_PER_SECOND))

    @classmethod
    def from_millis(cls, millis: int) -> Timestamp:
        return cls(nanos=millis * cls.NANOS_PER_MILLI)

    @property
    def seconds(self) -> float:
        return self.nanos / self.NANOS_PER_SECOND

    @property
    def millis(self) -> int:
        return self.nanos // self.NANOS_PER_MILLI

    def elapsed_millis(self) -> float:
        """Milliseconds elapsed since this timestamp."""
        return (time.time_ns() - self.nanos) / self.NANOS_PER_MILLI

    def to_iso(self) -> str:
        """ISO-8601 UTC rendering used on the wire."""
        secs, rem = divmod(self.nanos, self.NANOS_PER_SECOND)
        base = time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(secs))
        return f"{base}.{rem // self.NANOS_PER_MILLI:03d}Z"

    def __repr__(self) -> str:
        return f"Timestamp({self.nanos}ns)"


def now_millis() -> int:
    """Current wall clock in epoch milliseconds (query store resolution)."""
    return time.time_ns() // Timestamp.NANOS_PER_MILLI


# =============================================================================
# DOMAIN ENUMS
# =============================================================================
class MessageStatus(str, Enum):
    """
    Delivery state of a stored message.

    PENDING -> CONFIRMED when the ledger observes the transaction.
    CONFIRMED -> FAILED when content validation exhausts every path.
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


class ConversationType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class MemberRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class FriendshipStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    BLOCKED = "blocked"


class PresenceStatus(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


# =============================================================================
# ADDRESS HELPERS
# =============================================================================
ZERO_KEY = "0x" + "0" * 64


def normalize_address(address: str) -> str:
    """Canonical wallet address form: stripped and lowercased."""
    return address.strip().lower()


def is_valid_address(address: str) -> bool:
    """Check 0x-prefixed 20-byte hex address."""
    addr = normalize_address(address)
    if len(addr) != 42 or not addr.startswith("0x"):
        return False
    try:
        int(addr[2:], 16)
    except ValueError:
        return False
    return True


def is_empty_key(public_key: str | None) -> bool:
    """Ledger reports an unset public key as the all-zero bytes32."""
    return not public_key or public_key.lower() == ZERO_KEY


def direct_pair_key(a: str, b: str) -> str:
    """Order-independent key for the unique direct conversation of a pair."""
    first, second = sorted((a, b))
    return f"{first}:{second}"
