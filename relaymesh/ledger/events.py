"""
Ledger event and query result types.

Events are immutable facts observed on chain. Each exposes dedup_key,
the identity used by the listener's recency window.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Optional, Union

from relaymesh.core.types import normalize_address


class EventKind(str, Enum):
    MESSAGE_SENT = "MessageSent"
    FRIEND_ADDED = "FriendAdded"
    ACCOUNT_CREATED = "AccountCreated"


@dataclass(frozen=True, slots=True)
class MessageSent:
    sender: str
    recipient: str
    content_hash: str
    block_timestamp: int  # seconds
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None

    kind: ClassVar[EventKind] = EventKind.MESSAGE_SENT

    @property
    def dedup_key(self) -> tuple[str, ...]:
        return (
            self.kind.value,
            normalize_address(self.sender),
            normalize_address(self.recipient),
            self.content_hash,
            str(self.block_timestamp),
        )


@dataclass(frozen=True, slots=True)
class FriendAdded:
    user: str
    friend: str
    name: str
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None

    kind: ClassVar[EventKind] = EventKind.FRIEND_ADDED

    @property
    def dedup_key(self) -> tuple[str, ...]:
        return (self.kind.value, normalize_address(self.user), normalize_address(self.friend), self.name)


@dataclass(frozen=True, slots=True)
class AccountCreated:
    user: str
    name: str
    public_key: str
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None

    kind: ClassVar[EventKind] = EventKind.ACCOUNT_CREATED

    @property
    def dedup_key(self) -> tuple[str, ...]:
        return (self.kind.value, normalize_address(self.user), self.name, self.public_key)


LedgerEvent = Union[MessageSent, FriendAdded, AccountCreated]


@dataclass(frozen=True, slots=True)
class LedgerMessage:
    """One entry of get_messages_between."""
    sender: str
    recipient: str
    content_hash: str
    timestamp: int  # seconds


@dataclass(frozen=True, slots=True)
class LedgerFriend:
    """One entry of get_friends."""
    address: str
    name: str
