"""
Ledger event handlers.

Each handler is idempotent: replaying an event that already reached
the query store leaves it unchanged and emits nothing. Handlers raise
on store failure; the listener logs and carries on.
"""

from __future__ import annotations

import logging
from typing import Any

from relaymesh.core.errors import RelayMeshError
from relaymesh.core.types import Result, is_empty_key, now_millis
from relaymesh.ledger.events import AccountCreated, EventKind, FriendAdded, LedgerEvent, MessageSent
from relaymesh.ledger.listener import EventListener
from relaymesh.realtime.protocol import Notifier, ServerEvent, conversation_room, participant_room
from relaymesh.storage.models import Message, Participant
from relaymesh.storage.repositories import QueryStore
from relaymesh.sync.materializer import MessageMaterializer

logger = logging.getLogger(__name__)


def _unwrap(result: Result[Any, RelayMeshError]) -> Any:
    """Surface a store failure to the listener as an exception."""
    if result.is_err():
        raise result.error
    return result.unwrap()


def _expect(event: LedgerEvent, kind: type) -> Any:
    if not isinstance(event, kind):
        raise TypeError(f"expected {kind.__name__}, got {type(event).__name__}")
    return event


class LedgerEventHandlers:
    """
    Apply MessageSent, FriendAdded and AccountCreated to the query store
    and push the resulting notifications.
    """

    __slots__ = ("_store", "_materializer", "_notifier")

    def __init__(self, store: QueryStore, materializer: MessageMaterializer, notifier: Notifier) -> None:
        self._store = store
        self._materializer = materializer
        self._notifier = notifier

    def register(self, listener: EventListener) -> None:
        listener.subscribe([EventKind.MESSAGE_SENT], self._on_message_sent)
        listener.subscribe([EventKind.FRIEND_ADDED], self._on_friend_added)
        listener.subscribe([EventKind.ACCOUNT_CREATED], self._on_account_created)

    async def _on_message_sent(self, event: LedgerEvent) -> None:
        await self.on_message_sent(_expect(event, MessageSent))

    async def _on_friend_added(self, event: LedgerEvent) -> None:
        await self.on_friend_added(_expect(event, FriendAdded))

    async def _on_account_created(self, event: LedgerEvent) -> None:
        await self.on_account_created(_expect(event, AccountCreated))

    # -------------------------------------------------------------------------
    # MessageSent
    # -------------------------------------------------------------------------
    async def on_message_sent(self, event: MessageSent) -> bool:
        """Returns True when the store changed (and notifications went out)."""
        sender = _unwrap(await self._store.participants.ensure(event.sender))
        recipient = _unwrap(await self._store.participants.ensure(event.recipient))

        confirmed = await self._confirm_pending(event, sender)
        if confirmed is not None:
            await self._notifier.emit_to_room(
                conversation_room(confirmed.conversation_id),
                ServerEvent.MESSAGE_UPDATED,
                {
                    "messageId": confirmed.id,
                    "status": confirmed.status.value,
                    "txHash": confirmed.tx_hash,
                    "blockNumber": confirmed.block_number,
                    "updatedAt": confirmed.updated_at,
                },
            )
            await self._announce(confirmed, sender, recipient, event.block_timestamp)
            return True

        outcome = _unwrap(await self._materializer.materialize_ledger_message(
            event.sender,
            event.recipient,
            event.content_hash,
            event.block_timestamp,
            tx_hash=event.tx_hash,
            block_number=event.block_number,
        ))
        if not outcome.inserted:
            logger.debug("MessageSent already materialized", extra={"content_hash": event.content_hash})
            return False

        await self._announce(outcome.message, sender, recipient, event.block_timestamp)
        logger.info(
            "Materialized ledger message",
            extra={"message_id": outcome.message.id, "conversation_id": outcome.conversation.id},
        )
        return True

    async def _confirm_pending(self, event: MessageSent, sender: Participant) -> Message | None:
        pending = _unwrap(await self._store.messages.find_pending_by_hash(event.content_hash))
        for message in pending:
            if message.sender_id != sender.id:
                continue
            flipped = _unwrap(await self._store.messages.confirm_pending(message.id, event.tx_hash, event.block_number))
            if flipped:
                return _unwrap(await self._store.messages.get(message.id))
        return None

    async def _announce(self, message: Message, sender: Participant, recipient: Participant, timestamp_s: int) -> None:
        data = message.to_dict()
        data["sender"] = sender.to_dict()
        data["isBlockchainMessage"] = True
        await self._notifier.emit_to_room(
            conversation_room(message.conversation_id),
            ServerEvent.BLOCKCHAIN_MESSAGE_RECEIVED,
            data,
        )
        await self._notifier.emit_to_room(
            participant_room(recipient.id),
            ServerEvent.NEW_MESSAGE_NOTIFICATION,
            {
                "conversationId": message.conversation_id,
                "sender": sender.address,
                "senderUsername": sender.username,
                "messageType": "blockchain",
                "timestamp": int(timestamp_s) * 1000,
            },
        )

    # -------------------------------------------------------------------------
    # FriendAdded
    # -------------------------------------------------------------------------
    async def on_friend_added(self, event: FriendAdded) -> None:
        user = _unwrap(await self._store.participants.ensure(event.user))
        friend = _unwrap(await self._store.participants.ensure(event.friend))
        _unwrap(await self._store.friendships.upsert_accepted(user.id, friend.id))

        now = now_millis()
        await self._notifier.emit_to_room(
            participant_room(user.id),
            ServerEvent.FRIEND_ADDED_BLOCKCHAIN,
            {"friendAddress": friend.address, "friendName": event.name, "timestamp": now},
        )
        await self._notifier.emit_to_room(
            participant_room(friend.id),
            ServerEvent.FRIEND_ADDED_BLOCKCHAIN,
            {
                "friendAddress": user.address,
                "friendName": user.username or user.address[:8] + "...",
                "timestamp": now,
            },
        )

    # -------------------------------------------------------------------------
    # AccountCreated
    # -------------------------------------------------------------------------
    async def on_account_created(self, event: AccountCreated) -> None:
        participant = _unwrap(await self._store.participants.ensure(event.user))
        public_key = None if is_empty_key(event.public_key) else event.public_key
        _unwrap(await self._store.participants.update_registration(
            participant.id, event.name or None, public_key, is_registered=bool(event.name),
        ))
        await self._notifier.emit_to_room(
            participant_room(participant.id),
            ServerEvent.ACCOUNT_CREATED_BLOCKCHAIN,
            {"username": event.name, "publicKey": public_key, "timestamp": now_millis()},
        )
