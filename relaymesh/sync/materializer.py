"""
Message Materializer: Writing Messages into the Query Store

Two entry points:
- materialize_direct_message: the direct-write path. The sender is
  already authenticated; the row lands immediately, confirmed unless a
  ledger transaction is still in flight.
- materialize_ledger_message: a MessageSent observed on the ledger (via
  the listener or a reconciliation walk). Participants and the direct
  conversation are provisioned on demand, and the insert is a single
  conditional statement so both paths can race on the same hash without
  producing a second row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from relaymesh.content.fetcher import ContentFetcher
from relaymesh.core.errors import RealtimeError, RelayMeshError, StorageError, ValidationError
from relaymesh.core.types import (
    Result, Ok, Err,
    MessageStatus, MessageType,
    normalize_address, now_millis,
)
from relaymesh.pipeline.queue import JobQueue, MessageProcessingJob
from relaymesh.storage.models import Conversation, Message, Participant
from relaymesh.storage.repositories import QueryStore, new_id

logger = logging.getLogger(__name__)

LEDGER_PLACEHOLDER_CONTENT = "[Encrypted message from blockchain]"


@dataclass
class MaterializeOutcome:
    message: Message
    conversation: Conversation
    sender: Participant
    recipient: Participant
    inserted: bool
    warnings: list[str] = field(default_factory=list)


class MessageMaterializer:
    """Single writer for message rows."""

    __slots__ = ("_store", "_queue", "_fetcher")

    def __init__(
        self,
        store: QueryStore,
        queue: JobQueue,
        fetcher: Optional[ContentFetcher] = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._fetcher = fetcher

    # -------------------------------------------------------------------------
    # Direct-write path
    # -------------------------------------------------------------------------
    async def materialize_direct_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        content_id: Optional[str] = None,
        *,
        message_type: str = "text",
        tx_hash: Optional[str] = None,
        reply_to_id: Optional[str] = None,
        content_hash: Optional[str] = None,
    ) -> Result[Message, RelayMeshError]:
        """
        Write a message sent by an authenticated member.

        Status is confirmed when no tx_hash is attached, otherwise pending
        until the ledger listener observes the matching MessageSent.
        """
        if not conversation_id:
            return Err(ValidationError.missing_field("conversation_id", "Conversation ID"))
        if not isinstance(content, str) or (not content.strip() and not content_id):
            return Err(ValidationError.missing_field("content", "Message content"))
        try:
            kind = MessageType(message_type or MessageType.TEXT.value)
        except ValueError:
            return Err(ValidationError.invalid_field("type", f"unknown message type {message_type!r}"))

        member = await self._store.members.is_member(conversation_id, sender_id)
        if member.is_err():
            return member
        if not member.unwrap():
            return Err(RealtimeError.access_denied("conversation", sender_id))

        if reply_to_id:
            parent = await self._store.messages.get(reply_to_id)
            if parent.is_err():
                return parent
            replied = parent.unwrap()
            if replied is None or replied.conversation_id != conversation_id:
                return Err(ValidationError.invalid_field(
                    "reply_to_id", "must reference a message in the same conversation",
                ))

        now = now_millis()
        message = Message(
            id=new_id(),
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            type=kind,
            content_hash=content_hash,
            content_id=content_id,
            tx_hash=tx_hash,
            block_number=None,
            status=MessageStatus.PENDING if tx_hash else MessageStatus.CONFIRMED,
            reply_to_id=reply_to_id,
            edited_at=None,
            deleted_at=None,
            created_at=now,
            updated_at=now,
        )
        inserted = await self._store.messages.insert(message)
        if inserted.is_err():
            return inserted

        touched = await self._store.conversations.touch_last_message(conversation_id, now)
        if touched.is_err():
            logger.warning("Could not bump last_message_at", extra={"conversation_id": conversation_id})

        logger.debug(
            "Direct message materialized",
            extra={"message_id": message.id, "conversation_id": conversation_id, "status": message.status.value},
        )
        return Ok(message)

    # -------------------------------------------------------------------------
    # Ledger path
    # -------------------------------------------------------------------------
    async def materialize_ledger_message(
        self,
        sender_address: str,
        recipient_address: str,
        content_hash: str,
        timestamp_s: int,
        *,
        tx_hash: Optional[str] = None,
        block_number: Optional[int] = None,
        resolve_content: bool = False,
    ) -> Result[MaterializeOutcome, StorageError]:
        """
        Insert a ledger-observed message unless its hash is already stored
        for the pair's conversation.

        With resolve_content the payload is fetched first: success gives a
        confirmed row carrying the content, ContentUnavailable gives a
        failed row and a warning.
        """
        sender = await self._store.participants.ensure(sender_address)
        if sender.is_err():
            return sender
        recipient = await self._store.participants.ensure(recipient_address)
        if recipient.is_err():
            return recipient
        sender_p, recipient_p = sender.unwrap(), recipient.unwrap()

        ensured = await self._store.conversations.ensure_direct(sender_p.id, recipient_p.id, created_by=sender_p.id)
        if ensured.is_err():
            return ensured
        conversation, _created = ensured.unwrap()

        existing = await self._store.messages.find_in_conversation_by_hash(conversation.id, content_hash)
        if existing.is_err():
            return existing
        if existing.unwrap() is not None:
            return Ok(MaterializeOutcome(existing.unwrap(), conversation, sender_p, recipient_p, inserted=False))

        warnings: list[str] = []
        content = LEDGER_PLACEHOLDER_CONTENT
        status = MessageStatus.CONFIRMED
        if resolve_content and self._fetcher is not None:
            fetched = await self._fetcher.fetch(content_hash)
            if fetched.is_ok():
                content = fetched.unwrap().decode("utf-8", errors="replace")
            else:
                status = MessageStatus.FAILED
                warnings.append(f"Content unavailable for message {content_hash}: {fetched.error.message}")

        created_at = int(timestamp_s) * 1000
        message = Message(
            id=new_id(),
            conversation_id=conversation.id,
            sender_id=sender_p.id,
            content=content,
            type=MessageType.TEXT,
            content_hash=content_hash,
            content_id=content_hash,
            tx_hash=tx_hash,
            block_number=block_number,
            status=status,
            reply_to_id=None,
            edited_at=None,
            deleted_at=None,
            created_at=created_at,
            updated_at=now_millis(),
        )
        won = await self._store.messages.insert_if_absent(message)
        if won.is_err():
            return won
        if not won.unwrap():
            winner = await self._store.messages.find_in_conversation_by_hash(conversation.id, content_hash)
            if winner.is_err():
                return winner
            return Ok(MaterializeOutcome(
                winner.unwrap() or message, conversation, sender_p, recipient_p, inserted=False,
            ))

        touched = await self._store.conversations.touch_last_message(conversation.id, created_at)
        if touched.is_err():
            return touched

        job = MessageProcessingJob(
            message_id=message.id,
            content_hash=content_hash,
            sender_address=normalize_address(sender_address),
            recipient_address=normalize_address(recipient_address),
            timestamp=created_at,
        )
        enqueued = await self._queue.enqueue(job)
        if enqueued.is_err():
            warnings.append(f"Could not enqueue processing for message {message.id}: {enqueued.error.message}")
            logger.warning("Message processing job not enqueued", extra={"message_id": message.id})

        return Ok(MaterializeOutcome(message, conversation, sender_p, recipient_p, inserted=True, warnings=warnings))
