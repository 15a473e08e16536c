"""
Realtime wire protocol.

Every frame in either direction is a JSON text frame:

    {"event": "<name>", "data": {...}}

Client events are handled by FanoutHub; server events are emitted into
rooms. Rooms are named user:{participant_id} (one per participant) and
conversation:{conversation_id}.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Final, Protocol, runtime_checkable

from relaymesh.core import constants as C
from relaymesh.core.errors import ValidationError
from relaymesh.core.types import Result, Ok, Err


# =============================================================================
# EVENT NAMES
# =============================================================================
class ClientEvent:
    JOIN_CONVERSATION: Final = "join_conversation"
    LEAVE_CONVERSATION: Final = "leave_conversation"
    SEND_MESSAGE: Final = "send_message"
    UPDATE_MESSAGE_STATUS: Final = "update_message_status"
    UPDATE_PRESENCE: Final = "update_presence"
    TYPING_START: Final = "typing_start"
    TYPING_STOP: Final = "typing_stop"


class ServerEvent:
    CONVERSATION_JOINED: Final = "conversation_joined"
    CONVERSATION_LEFT: Final = "conversation_left"
    NEW_MESSAGE: Final = "new_message"
    MESSAGE_ERROR: Final = "message_error"
    MESSAGE_UPDATED: Final = "message_updated"
    BLOCKCHAIN_MESSAGE_RECEIVED: Final = "blockchain_message_received"
    NEW_MESSAGE_NOTIFICATION: Final = "new_message_notification"
    FRIEND_PRESENCE_UPDATED: Final = "friend_presence_updated"
    USER_TYPING: Final = "user_typing"
    USER_STOPPED_TYPING: Final = "user_stopped_typing"
    FRIEND_ADDED_BLOCKCHAIN: Final = "friend_added_blockchain"
    ACCOUNT_CREATED_BLOCKCHAIN: Final = "account_created_blockchain"
    ERROR: Final = "error"


def participant_room(participant_id: str) -> str:
    return f"{C.PARTICIPANT_ROOM_PREFIX}{participant_id}"


def conversation_room(conversation_id: str) -> str:
    return f"{C.CONVERSATION_ROOM_PREFIX}{conversation_id}"


# =============================================================================
# ENVELOPE
# =============================================================================
@dataclass(frozen=True, slots=True)
class Envelope:
    event: str
    data: dict[str, Any] = field(default_factory=dict)

    def encode(self) -> str:
        return json.dumps({"event": self.event, "data": self.data}, separators=(",", ":"), default=str)

    @classmethod
    def decode(cls, raw: str) -> Result[Envelope, ValidationError]:
        try:
            doc = json.loads(raw)
        except (TypeError, ValueError) as e:
            return Err(ValidationError.invalid_field("frame", f"not JSON: {e}"))
        if not isinstance(doc, dict) or not isinstance(doc.get("event"), str):
            return Err(ValidationError.invalid_field("frame", "expected {event, data}"))
        data = doc.get("data")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            return Err(ValidationError.invalid_field("data", "must be an object"))
        return Ok(cls(event=doc["event"], data=data))


# =============================================================================
# NOTIFIER
# =============================================================================
@runtime_checkable
class Notifier(Protocol):
    """Room-addressed push used by ledger handlers and the direct-write path."""

    async def emit_to_room(self, room: str, event: str, data: dict[str, Any]) -> int:
        """Deliver to every connection in room. Returns the delivery count."""
        ...


class NullNotifier:
    """Notifier for headless runs with no realtime surface."""

    __slots__ = ()

    async def emit_to_room(self, room: str, event: str, data: dict[str, Any]) -> int:
        return 0
