"""
Real-time Fan-out Hub

Pushes confirmed state changes to connected clients.

Connection lifecycle:
1. connect: authenticate before anything else; on success join the
   participant room, register presence and announce online to accepted
   friends on the offline -> online transition
2. handle: one decoded client frame at a time
3. disconnect: leave every room; on the participant's last connection
   announce offline to accepted friends, once

Delivery is at-least-once per connected socket; a failing socket is
logged and skipped, never blocks the rest of the room. The hub is the
Notifier used by ledger handlers.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

from relaymesh.core.errors import RealtimeError, RelayMeshError, ValidationError
from relaymesh.core.types import MessageStatus, PresenceStatus, Result, Ok, Err, now_millis
from relaymesh.observability import metrics
from relaymesh.observability.logging import log_context
from relaymesh.realtime.auth import Authenticator, Credentials
from relaymesh.realtime.presence import PresenceRegistry
from relaymesh.realtime.protocol import (
    ClientEvent,
    Envelope,
    ServerEvent,
    conversation_room,
    participant_room,
)
from relaymesh.storage.models import Participant
from relaymesh.storage.repositories import QueryStore
from relaymesh.sync.materializer import MessageMaterializer

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """Transport-side socket as seen by the hub."""

    id: str

    async def send(self, frame: str) -> None:
        ...

    async def close(self) -> None:
        ...


@dataclass
class _Session:
    connection: Connection
    participant: Participant
    rooms: set[str] = field(default_factory=set)


EventHandler = Callable[[_Session, dict[str, Any]], Awaitable[None]]


class FanoutHub:
    """Rooms, presence and client event dispatch."""

    __slots__ = ("_store", "_auth", "_presence", "_materializer", "_sessions", "_rooms", "_handlers")

    def __init__(
        self,
        store: QueryStore,
        authenticator: Authenticator,
        presence: PresenceRegistry,
        materializer: MessageMaterializer,
    ) -> None:
        self._store = store
        self._auth = authenticator
        self._presence = presence
        self._materializer = materializer
        self._sessions: dict[str, _Session] = {}
        self._rooms: dict[str, set[str]] = defaultdict(set)
        self._handlers: dict[str, EventHandler] = {
            ClientEvent.JOIN_CONVERSATION: self._join_conversation,
            ClientEvent.LEAVE_CONVERSATION: self._leave_conversation,
            ClientEvent.SEND_MESSAGE: self._send_message,
            ClientEvent.UPDATE_MESSAGE_STATUS: self._update_message_status,
            ClientEvent.UPDATE_PRESENCE: self._update_presence,
            ClientEvent.TYPING_START: self._typing_start,
            ClientEvent.TYPING_STOP: self._typing_stop,
        }

    # =========================================================================
    # ROOMS
    # =========================================================================
    def _join(self, session: _Session, room: str) -> None:
        self._rooms[room].add(session.connection.id)
        session.rooms.add(room)

    def _leave(self, session: _Session, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(session.connection.id)
            if not members:
                del self._rooms[room]
        session.rooms.discard(room)

    def room_members(self, room: str) -> set[str]:
        return set(self._rooms.get(room, ()))

    @property
    def connection_count(self) -> int:
        return len(self._sessions)

    async def _deliver(self, session: _Session, frame: str) -> bool:
        try:
            await session.connection.send(frame)
        except Exception:
            logger.warning(
                "Dropped frame for unreachable connection",
                exc_info=True,
                extra={"connection_id": session.connection.id},
            )
            return False
        return True

    async def emit_to_room(
        self,
        room: str,
        event: str,
        data: dict[str, Any],
        exclude: Optional[str] = None,
    ) -> int:
        frame = Envelope(event, data).encode()
        delivered = 0
        for connection_id in list(self._rooms.get(room, ())):
            if connection_id == exclude:
                continue
            session = self._sessions.get(connection_id)
            if session is not None and await self._deliver(session, frame):
                delivered += 1
        metrics.realtime_broadcasts().inc(event=event)
        return delivered

    async def send(self, connection_id: str, event: str, data: dict[str, Any]) -> bool:
        session = self._sessions.get(connection_id)
        if session is None:
            return False
        metrics.realtime_broadcasts().inc(event=event)
        return await self._deliver(session, Envelope(event, data).encode())

    async def _send_error(self, session: _Session, error: RelayMeshError | str) -> None:
        message = error if isinstance(error, str) else error.message
        await self.send(session.connection.id, ServerEvent.ERROR, {"message": message})

    async def _notify_friends(self, participant_id: str, event: str, data: dict[str, Any]) -> None:
        friends = await self._store.friendships.list_accepted_friend_ids(participant_id)
        if friends.is_err():
            logger.warning("Could not load friends for presence", extra={"participant_id": participant_id})
            return
        for friend_id in friends.unwrap():
            await self.emit_to_room(participant_room(friend_id), event, data)

    async def _announce_presence(self, participant_id: str, status: PresenceStatus) -> None:
        await self._notify_friends(
            participant_id,
            ServerEvent.FRIEND_PRESENCE_UPDATED,
            {"userId": participant_id, "status": status.value, "timestamp": now_millis()},
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================
    async def connect(self, connection: Connection, credentials: Credentials) -> Result[Participant, RelayMeshError]:
        authenticated = await self._auth.authenticate(credentials)
        if authenticated.is_err():
            try:
                await connection.send(Envelope(ServerEvent.ERROR, {"message": authenticated.error.message}).encode())
            except Exception:
                logger.debug("Could not deliver authentication error", exc_info=True)
            logger.info("Connection rejected", extra={"connection_id": connection.id})
            return authenticated

        participant = authenticated.unwrap()
        session = _Session(connection=connection, participant=participant)
        self._sessions[connection.id] = session
        self._join(session, participant_room(participant.id))
        metrics.realtime_connections().inc()

        came_online = await self._presence.connect(participant.id, connection.id)
        if came_online:
            await self._announce_presence(participant.id, PresenceStatus.ONLINE)
        logger.info(
            "Participant connected",
            extra={"connection_id": connection.id, "participant_id": participant.id},
        )
        return Ok(participant)

    async def disconnect(self, connection_id: str) -> None:
        session = self._sessions.pop(connection_id, None)
        if session is None:
            return
        for room in list(session.rooms):
            self._leave(session, room)
        metrics.realtime_connections().dec()

        participant_id = session.participant.id
        went_offline = await self._presence.disconnect(participant_id, connection_id)
        if went_offline:
            await self._announce_presence(participant_id, PresenceStatus.OFFLINE)
        logger.info("Participant disconnected", extra={"connection_id": connection_id, "participant_id": participant_id})

    async def handle(self, connection_id: str, raw: str) -> None:
        """Dispatch one client frame. Errors answer the sender and keep the socket open."""
        session = self._sessions.get(connection_id)
        if session is None:
            return

        decoded = Envelope.decode(raw)
        if decoded.is_err():
            await self._send_error(session, decoded.error)
            return
        envelope = decoded.unwrap()

        handler = self._handlers.get(envelope.event)
        if handler is None:
            await self._send_error(session, RealtimeError.unknown_event(envelope.event))
            return

        with log_context(connection_id=connection_id, participant_id=session.participant.id):
            try:
                await handler(session, envelope.data)
            except Exception:
                logger.exception("Realtime handler failed", extra={"event": envelope.event})
                await self._send_error(session, f"Failed to handle {envelope.event}")

    # =========================================================================
    # CONVERSATION ROOMS
    # =========================================================================
    async def _require_member(self, session: _Session, conversation_id: Any) -> Result[str, RelayMeshError]:
        if not conversation_id or not isinstance(conversation_id, str):
            return Err(ValidationError.missing_field("conversation_id", "Conversation ID"))
        member = await self._store.members.is_member(conversation_id, session.participant.id)
        if member.is_err():
            return member
        if not member.unwrap():
            return Err(RealtimeError.access_denied("conversation", session.participant.id))
        return Ok(conversation_id)

    async def _join_conversation(self, session: _Session, data: dict[str, Any]) -> None:
        checked = await self._require_member(session, data.get("conversationId"))
        if checked.is_err():
            await self._send_error(session, checked.error)
            return
        conversation_id = checked.unwrap()
        self._join(session, conversation_room(conversation_id))
        await self.send(session.connection.id, ServerEvent.CONVERSATION_JOINED, {"conversationId": conversation_id})

    async def _leave_conversation(self, session: _Session, data: dict[str, Any]) -> None:
        conversation_id = data.get("conversationId")
        if not conversation_id:
            await self._send_error(session, ValidationError.missing_field("conversation_id", "Conversation ID"))
            return
        self._leave(session, conversation_room(conversation_id))
        await self.send(session.connection.id, ServerEvent.CONVERSATION_LEFT, {"conversationId": conversation_id})

    # =========================================================================
    # MESSAGES
    # =========================================================================
    async def _send_message(self, session: _Session, data: dict[str, Any]) -> None:
        temp_id = data.get("tempId")
        written = await self._materializer.materialize_direct_message(
            data.get("conversationId") or "",
            session.participant.id,
            data.get("content", ""),
            data.get("cid"),
            message_type=data.get("type") or "text",
            tx_hash=data.get("txHash"),
            reply_to_id=data.get("replyToId"),
            content_hash=data.get("cidHash"),
        )
        if written.is_err():
            await self.send(
                session.connection.id,
                ServerEvent.MESSAGE_ERROR,
                {"error": written.error.message, "tempId": temp_id},
            )
            return

        message = written.unwrap()
        payload = message.to_dict()
        payload["sender"] = session.participant.to_dict()
        payload["tempId"] = temp_id
        await self.emit_to_room(conversation_room(message.conversation_id), ServerEvent.NEW_MESSAGE, payload)

    async def _update_message_status(self, session: _Session, data: dict[str, Any]) -> None:
        message_id = data.get("messageId")
        try:
            status = MessageStatus(data.get("status"))
        except ValueError:
            await self._send_error(session, ValidationError.invalid_field("status", "unknown message status"))
            return

        found = await self._store.messages.get(message_id) if message_id else Ok(None)
        if found.is_err():
            await self._send_error(session, found.error)
            return
        message = found.unwrap()
        if message is None or message.sender_id != session.participant.id:
            await self._send_error(session, "Message not found or access denied")
            return

        updated = await self._store.messages.update_status(
            message.id, status, data.get("txHash"), data.get("blockNumber"),
        )
        if updated.is_err():
            await self._send_error(session, "Failed to update message status")
            return
        fresh = (await self._store.messages.get(message.id)).unwrap_or(None) or message
        await self.emit_to_room(
            conversation_room(fresh.conversation_id),
            ServerEvent.MESSAGE_UPDATED,
            {
                "messageId": fresh.id,
                "status": fresh.status.value,
                "txHash": fresh.tx_hash,
                "blockNumber": fresh.block_number,
                "updatedAt": fresh.updated_at,
            },
        )

    # =========================================================================
    # PRESENCE / TYPING
    # =========================================================================
    async def _update_presence(self, session: _Session, data: dict[str, Any]) -> None:
        try:
            status = PresenceStatus(data.get("status"))
        except ValueError:
            status = None
        # offline is reported by the registry when the last connection closes
        if status is None or status is PresenceStatus.OFFLINE:
            await self._send_error(session, ValidationError.invalid_field("status", "expected online, away or busy"))
            return
        if await self._presence.set_status(session.participant.id, status):
            await self._announce_presence(session.participant.id, status)

    async def _typing(self, session: _Session, data: dict[str, Any], event: str) -> None:
        checked = await self._require_member(session, data.get("conversationId"))
        if checked.is_err():
            await self._send_error(session, checked.error)
            return
        conversation_id = checked.unwrap()
        await self.emit_to_room(
            conversation_room(conversation_id),
            event,
            {
                "userId": session.participant.id,
                "username": session.participant.username,
                "conversationId": conversation_id,
            },
            exclude=session.connection.id,
        )

    async def _typing_start(self, session: _Session, data: dict[str, Any]) -> None:
        await self._typing(session, data, ServerEvent.USER_TYPING)

    async def _typing_stop(self, session: _Session, data: dict[str, Any]) -> None:
        await self._typing(session, data, ServerEvent.USER_STOPPED_TYPING)
