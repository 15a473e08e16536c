"""
Domain models for the query store tables.

Rows are immutable snapshots; repositories return new instances after
every write. to_dict() renders the camelCase shape used on the wire
and by the HTTP API.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from relaymesh.core.types import (
    ConversationType,
    FriendshipStatus,
    MemberRole,
    MessageStatus,
    MessageType,
)


@dataclass(frozen=True, slots=True)
class Participant:
    id: str
    address: str
    username: Optional[str]
    public_key: Optional[str]
    is_registered: bool
    last_seen: Optional[int]
    created_at: int
    updated_at: int

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Participant:
        return cls(
            id=row["id"],
            address=row["address"],
            username=row["username"],
            public_key=row["public_key"],
            is_registered=bool(row["is_registered"]),
            last_seen=row["last_seen"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "address": self.address,
            "username": self.username,
            "publicKey": self.public_key,
            "isRegistered": self.is_registered,
            "lastSeen": self.last_seen,
        }


@dataclass(frozen=True, slots=True)
class Conversation:
    id: str
    type: ConversationType
    name: Optional[str]
    created_by: str
    direct_key: Optional[str]
    last_message_at: Optional[int]
    created_at: int
    updated_at: int

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Conversation:
        return cls(
            id=row["id"],
            type=ConversationType(row["type"]),
            name=row["name"],
            created_by=row["created_by"],
            direct_key=row["direct_key"],
            last_message_at=row["last_message_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "createdBy": self.created_by,
            "lastMessageAt": self.last_message_at,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True, slots=True)
class Membership:
    id: str
    conversation_id: str
    participant_id: str
    role: MemberRole
    joined_at: int
    last_read_at: Optional[int]

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Membership:
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            participant_id=row["participant_id"],
            role=MemberRole(row["role"]),
            joined_at=row["joined_at"],
            last_read_at=row["last_read_at"],
        )


@dataclass(frozen=True, slots=True)
class Message:
    id: str
    conversation_id: str
    sender_id: str
    content: str
    type: MessageType
    content_hash: Optional[str]
    content_id: Optional[str]
    tx_hash: Optional[str]
    block_number: Optional[int]
    status: MessageStatus
    reply_to_id: Optional[str]
    edited_at: Optional[int]
    deleted_at: Optional[int]
    created_at: int
    updated_at: int

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Message:
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            sender_id=row["sender_id"],
            content=row["content"],
            type=MessageType(row["type"]),
            content_hash=row["content_hash"],
            content_id=row["content_id"],
            tx_hash=row["tx_hash"],
            block_number=row["block_number"],
            status=MessageStatus(row["status"]),
            reply_to_id=row["reply_to_id"],
            edited_at=row["edited_at"],
            deleted_at=row["deleted_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "senderId": self.sender_id,
            "content": self.content,
            "type": self.type.value,
            "cidHash": self.content_hash,
            "cid": self.content_id,
            "txHash": self.tx_hash,
            "blockNumber": self.block_number,
            "status": self.status.value,
            "replyToId": self.reply_to_id,
            "editedAt": self.edited_at,
            "deletedAt": self.deleted_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True, slots=True)
class Friendship:
    id: str
    requester_id: str
    addressee_id: str
    status: FriendshipStatus
    created_at: int
    updated_at: int

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Friendship:
        return cls(
            id=row["id"],
            requester_id=row["requester_id"],
            addressee_id=row["addressee_id"],
            status=FriendshipStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def other(self, participant_id: str) -> str:
        return self.addressee_id if self.requester_id == participant_id else self.requester_id
