"""
Repositories: Data Access Layer for the Query Store

Provides:
- ParticipantRepository: address-keyed participants, registration sync
- ConversationRepository: create-if-absent direct conversations
- MembershipRepository: membership checks and orphan detection
- MessageRepository: status transitions and idempotent materialization
- FriendshipRepository: accepted friend edges
- QueryStore: facade bundling the repositories over one engine

Concurrency:
    Rows that two paths may create concurrently (participants, direct
    conversations, ledger-materialized messages) are written with
    INSERT OR IGNORE / INSERT ... WHERE NOT EXISTS and then re-read,
    so the loser of a race observes the winner's row.
"""

from __future__ import annotations

import sqlite3
from typing import Any, Optional
from uuid import uuid4

from relaymesh.core.config import StoreConfig
from relaymesh.core.errors import StorageError
from relaymesh.core.types import (
    Result, Ok, Err,
    ConversationType, FriendshipStatus, MessageStatus,
    direct_pair_key, normalize_address, now_millis,
)
from relaymesh.storage.engine import StoreEngine
from relaymesh.storage.models import (
    Conversation, Friendship, Membership, Message, Participant,
)
from relaymesh.storage.schema import StoreSchema


def new_id() -> str:
    return str(uuid4())


# =============================================================================
# PARTICIPANTS
# =============================================================================
class ParticipantRepository:
    """Repository for participants table."""

    __slots__ = ("_engine",)

    def __init__(self, engine: StoreEngine) -> None:
        self._engine = engine

    async def get(self, participant_id: str) -> Result[Optional[Participant], StorageError]:
        result = await self._engine.execute("SELECT * FROM participants WHERE id = ?", (participant_id,))
        if result.is_err():
            return result
        rows = result.unwrap()
        return Ok(Participant.from_row(rows[0]) if rows else None)

    async def get_by_address(self, address: str) -> Result[Optional[Participant], StorageError]:
        result = await self._engine.execute(
            "SELECT * FROM participants WHERE address = ?",
            (normalize_address(address),),
        )
        if result.is_err():
            return result
        rows = result.unwrap()
        return Ok(Participant.from_row(rows[0]) if rows else None)

    async def ensure(self, address: str) -> Result[Participant, StorageError]:
        """
        Return the participant for address, provisioning an unregistered
        row when the address has never been seen.
        """
        addr = normalize_address(address)
        now = now_millis()
        written = await self._engine.execute_write(
            """
            INSERT OR IGNORE INTO participants
                (id, address, username, public_key, is_registered, last_seen, created_at, updated_at)
            VALUES (?, ?, NULL, NULL, 0, NULL, ?, ?)
            """,
            (new_id(), addr, now, now),
            operation="ensure_participant",
        )
        if written.is_err():
            return written

        found = await self.get_by_address(addr)
        if found.is_err():
            return found
        participant = found.unwrap()
        if participant is None:
            return Err(StorageError.not_found("participant", addr))
        return Ok(participant)

    async def list_all(self) -> Result[list[Participant], StorageError]:
        result = await self._engine.execute("SELECT * FROM participants ORDER BY created_at")
        return result.map(lambda rows: [Participant.from_row(r) for r in rows])

    async def list_registered(self) -> Result[list[Participant], StorageError]:
        result = await self._engine.execute(
            "SELECT * FROM participants WHERE is_registered = 1 ORDER BY created_at"
        )
        return result.map(lambda rows: [Participant.from_row(r) for r in rows])

    async def update_registration(
        self,
        participant_id: str,
        username: Optional[str],
        public_key: Optional[str],
        is_registered: bool,
    ) -> Result[int, StorageError]:
        return await self._engine.execute_write(
            """
            UPDATE participants
               SET username = ?, public_key = ?, is_registered = ?, updated_at = ?
             WHERE id = ?
            """,
            (username, public_key, int(is_registered), now_millis(), participant_id),
            operation="update_registration",
        )

    async def touch_last_seen(self, participant_id: str) -> Result[int, StorageError]:
        now = now_millis()
        return await self._engine.execute_write(
            "UPDATE participants SET last_seen = ?, updated_at = ? WHERE id = ?",
            (now, now, participant_id),
            operation="touch_last_seen",
        )


# =============================================================================
# CONVERSATIONS
# =============================================================================
class ConversationRepository:
    """Repository for conversations table."""

    __slots__ = ("_engine",)

    def __init__(self, engine: StoreEngine) -> None:
        self._engine = engine

    async def get(self, conversation_id: str) -> Result[Optional[Conversation], StorageError]:
        result = await self._engine.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        if result.is_err():
            return result
        rows = result.unwrap()
        return Ok(Conversation.from_row(rows[0]) if rows else None)

    async def find_direct(self, a_id: str, b_id: str) -> Result[Optional[Conversation], StorageError]:
        result = await self._engine.execute(
            "SELECT * FROM conversations WHERE direct_key = ?",
            (direct_pair_key(a_id, b_id),),
        )
        if result.is_err():
            return result
        rows = result.unwrap()
        return Ok(Conversation.from_row(rows[0]) if rows else None)

    async def ensure_direct(
        self,
        a_id: str,
        b_id: str,
        created_by: str,
    ) -> Result[tuple[Conversation, bool], StorageError]:
        """
        Create the direct conversation for a pair if absent.

        The conversation and both memberships are written in one
        transaction. Returns (conversation, created).
        """
        key = direct_pair_key(a_id, b_id)
        now = now_millis()

        def work(cur: sqlite3.Cursor) -> tuple[Conversation, bool]:
            cur.execute(
                """
                INSERT OR IGNORE INTO conversations
                    (id, type, name, created_by, direct_key, last_message_at, created_at, updated_at)
                VALUES (?, ?, NULL, ?, ?, NULL, ?, ?)
                """,
                (new_id(), ConversationType.DIRECT.value, created_by, key, now, now),
            )
            created = cur.rowcount == 1
            row = cur.execute("SELECT * FROM conversations WHERE direct_key = ?", (key,)).fetchone()
            for participant_id in (a_id, b_id):
                cur.execute(
                    """
                    INSERT OR IGNORE INTO conversation_members
                        (id, conversation_id, participant_id, role, joined_at, last_read_at)
                    VALUES (?, ?, ?, 'member', ?, NULL)
                    """,
                    (new_id(), row["id"], participant_id, now),
                )
            return Conversation.from_row(dict(row)), created

        return await self._engine.transaction(work, operation="ensure_direct_conversation")

    async def touch_last_message(self, conversation_id: str, at_ms: int) -> Result[int, StorageError]:
        return await self._engine.execute_write(
            """
            UPDATE conversations
               SET last_message_at = MAX(COALESCE(last_message_at, 0), ?), updated_at = ?
             WHERE id = ?
            """,
            (at_ms, now_millis(), conversation_id),
            operation="touch_last_message",
        )

    async def list_memberless(self) -> Result[list[str], StorageError]:
        result = await self._engine.execute(
            """
            SELECT c.id AS id FROM conversations c
              LEFT JOIN conversation_members m ON m.conversation_id = c.id
             WHERE m.id IS NULL
            """
        )
        return result.map(lambda rows: [r["id"] for r in rows])

    async def delete_memberless(self) -> Result[int, StorageError]:
        return await self._engine.execute_write(
            """
            DELETE FROM conversations
             WHERE id NOT IN (SELECT DISTINCT conversation_id FROM conversation_members)
            """,
            operation="delete_memberless_conversations",
        )


# =============================================================================
# MEMBERSHIPS
# =============================================================================
class MembershipRepository:
    """Repository for conversation_members table."""

    __slots__ = ("_engine",)

    def __init__(self, engine: StoreEngine) -> None:
        self._engine = engine

    async def is_member(self, conversation_id: str, participant_id: str) -> Result[bool, StorageError]:
        result = await self._engine.execute(
            "SELECT 1 AS hit FROM conversation_members WHERE conversation_id = ? AND participant_id = ?",
            (conversation_id, participant_id),
        )
        return result.map(bool)

    async def list_for_conversation(self, conversation_id: str) -> Result[list[Membership], StorageError]:
        result = await self._engine.execute(
            "SELECT * FROM conversation_members WHERE conversation_id = ? ORDER BY joined_at",
            (conversation_id,),
        )
        return result.map(lambda rows: [Membership.from_row(r) for r in rows])

    async def list_orphaned(self) -> Result[list[str], StorageError]:
        result = await self._engine.execute(
            """
            SELECT m.id AS id FROM conversation_members m
              LEFT JOIN conversations c ON c.id = m.conversation_id
             WHERE c.id IS NULL
            """
        )
        return result.map(lambda rows: [r["id"] for r in rows])

    async def delete_orphaned(self) -> Result[int, StorageError]:
        return await self._engine.execute_write(
            """
            DELETE FROM conversation_members
             WHERE conversation_id NOT IN (SELECT id FROM conversations)
            """,
            operation="delete_orphaned_members",
        )


# =============================================================================
# MESSAGES
# =============================================================================
_MESSAGE_COLUMNS = (
    "id, conversation_id, sender_id, content, type, content_hash, content_id, "
    "tx_hash, block_number, status, reply_to_id, edited_at, deleted_at, created_at, updated_at"
)


def _message_params(message: Message) -> tuple[Any, ...]:
    return (
        message.id,
        message.conversation_id,
        message.sender_id,
        message.content,
        message.type.value,
        message.content_hash,
        message.content_id,
        message.tx_hash,
        message.block_number,
        message.status.value,
        message.reply_to_id,
        message.edited_at,
        message.deleted_at,
        message.created_at,
        message.updated_at,
    )


class MessageRepository:
    """Repository for messages table."""

    __slots__ = ("_engine",)

    def __init__(self, engine: StoreEngine) -> None:
        self._engine = engine

    async def get(self, message_id: str) -> Result[Optional[Message], StorageError]:
        result = await self._engine.execute("SELECT * FROM messages WHERE id = ?", (message_id,))
        if result.is_err():
            return result
        rows = result.unwrap()
        return Ok(Message.from_row(rows[0]) if rows else None)

    async def insert(self, message: Message) -> Result[Message, StorageError]:
        result = await self._engine.execute_write(
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES ({', '.join('?' * 15)})",
            _message_params(message),
            operation="insert_message",
        )
        if result.is_err():
            return result
        return Ok(message)

    async def insert_if_absent(self, message: Message) -> Result[bool, StorageError]:
        """
        Insert unless a row with the same content hash already exists in
        the conversation. Single statement, so concurrent materializers
        cannot both win. Returns True when this call inserted the row.
        """
        result = await self._engine.execute_write(
            f"""
            INSERT INTO messages ({_MESSAGE_COLUMNS})
            SELECT {', '.join('?' * 15)}
             WHERE NOT EXISTS (
                SELECT 1 FROM messages WHERE conversation_id = ? AND content_hash = ?
             )
            """,
            _message_params(message) + (message.conversation_id, message.content_hash),
            operation="materialize_message",
        )
        return result.map(lambda count: count == 1)

    async def find_in_conversation_by_hash(
        self,
        conversation_id: str,
        content_hash: str,
    ) -> Result[Optional[Message], StorageError]:
        result = await self._engine.execute(
            "SELECT * FROM messages WHERE conversation_id = ? AND content_hash = ? LIMIT 1",
            (conversation_id, content_hash),
        )
        if result.is_err():
            return result
        rows = result.unwrap()
        return Ok(Message.from_row(rows[0]) if rows else None)

    async def find_pending_by_hash(self, content_hash: str) -> Result[list[Message], StorageError]:
        result = await self._engine.execute(
            "SELECT * FROM messages WHERE content_hash = ? AND status = 'pending' ORDER BY created_at",
            (content_hash,),
        )
        return result.map(lambda rows: [Message.from_row(r) for r in rows])

    async def confirm_pending(
        self,
        message_id: str,
        tx_hash: Optional[str],
        block_number: Optional[int],
    ) -> Result[bool, StorageError]:
        """pending -> confirmed, attaching ledger metadata when known."""
        result = await self._engine.execute_write(
            """
            UPDATE messages
               SET status = 'confirmed',
                   tx_hash = COALESCE(?, tx_hash),
                   block_number = COALESCE(?, block_number),
                   updated_at = ?
             WHERE id = ? AND status = 'pending'
            """,
            (tx_hash, block_number, now_millis(), message_id),
            operation="confirm_message",
        )
        return result.map(lambda count: count == 1)

    async def mark_failed(self, message_id: str) -> Result[bool, StorageError]:
        """confirmed -> failed. One-shot; failed rows are never revisited."""
        result = await self._engine.execute_write(
            "UPDATE messages SET status = 'failed', updated_at = ? WHERE id = ? AND status = 'confirmed'",
            (now_millis(), message_id),
            operation="mark_message_failed",
        )
        return result.map(lambda count: count == 1)

    async def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        tx_hash: Optional[str] = None,
        block_number: Optional[int] = None,
    ) -> Result[bool, StorageError]:
        result = await self._engine.execute_write(
            """
            UPDATE messages
               SET status = ?,
                   tx_hash = COALESCE(?, tx_hash),
                   block_number = COALESCE(?, block_number),
                   updated_at = ?
             WHERE id = ?
            """,
            (status.value, tx_hash, block_number, now_millis(), message_id),
            operation="update_message_status",
        )
        return result.map(lambda count: count == 1)

    async def list_confirmed_with_content(self, limit: int) -> Result[list[Message], StorageError]:
        result = await self._engine.execute(
            """
            SELECT * FROM messages
             WHERE status = 'confirmed' AND content_id IS NOT NULL AND deleted_at IS NULL
             ORDER BY created_at DESC
             LIMIT ?
            """,
            (limit,),
        )
        return result.map(lambda rows: [Message.from_row(r) for r in rows])

    async def list_for_conversation(
        self,
        conversation_id: str,
        limit: int = 100,
    ) -> Result[list[Message], StorageError]:
        result = await self._engine.execute(
            """
            SELECT * FROM messages
             WHERE conversation_id = ? AND deleted_at IS NULL
             ORDER BY created_at, rowid
             LIMIT ?
            """,
            (conversation_id, limit),
        )
        return result.map(lambda rows: [Message.from_row(r) for r in rows])

    async def soft_delete(self, message_id: str) -> Result[bool, StorageError]:
        now = now_millis()
        result = await self._engine.execute_write(
            "UPDATE messages SET deleted_at = ?, updated_at = ? WHERE id = ? AND deleted_at IS NULL",
            (now, now, message_id),
            operation="soft_delete_message",
        )
        return result.map(lambda count: count == 1)

    async def list_orphaned(self) -> Result[list[str], StorageError]:
        result = await self._engine.execute(
            """
            SELECT m.id AS id FROM messages m
              LEFT JOIN conversations c ON c.id = m.conversation_id
             WHERE c.id IS NULL
            """
        )
        return result.map(lambda rows: [r["id"] for r in rows])

    async def delete_orphaned(self) -> Result[int, StorageError]:
        return await self._engine.execute_write(
            "DELETE FROM messages WHERE conversation_id NOT IN (SELECT id FROM conversations)",
            operation="delete_orphaned_messages",
        )

    async def count(self) -> Result[int, StorageError]:
        result = await self._engine.execute("SELECT COUNT(*) AS n FROM messages")
        return result.map(lambda rows: int(rows[0]["n"]))


# =============================================================================
# FRIENDSHIPS
# =============================================================================
class FriendshipRepository:
    """Repository for friendships table (read side plus ledger upserts)."""

    __slots__ = ("_engine",)

    def __init__(self, engine: StoreEngine) -> None:
        self._engine = engine

    async def upsert_accepted(self, a_id: str, b_id: str) -> Result[Friendship, StorageError]:
        """Record an accepted edge, whichever side requested it."""
        now = now_millis()

        def work(cur: sqlite3.Cursor) -> Friendship:
            row = cur.execute(
                """
                SELECT * FROM friendships
                 WHERE (requester_id = ? AND addressee_id = ?)
                    OR (requester_id = ? AND addressee_id = ?)
                """,
                (a_id, b_id, b_id, a_id),
            ).fetchone()
            if row is None:
                friendship_id = new_id()
                cur.execute(
                    """
                    INSERT INTO friendships (id, requester_id, addressee_id, status, created_at, updated_at)
                    VALUES (?, ?, ?, 'accepted', ?, ?)
                    """,
                    (friendship_id, a_id, b_id, now, now),
                )
            else:
                friendship_id = row["id"]
                cur.execute(
                    "UPDATE friendships SET status = 'accepted', updated_at = ? WHERE id = ?",
                    (now, friendship_id),
                )
            fresh = cur.execute("SELECT * FROM friendships WHERE id = ?", (friendship_id,)).fetchone()
            return Friendship.from_row(dict(fresh))

        return await self._engine.transaction(work, operation="upsert_friendship")

    async def insert(self, requester_id: str, addressee_id: str, status: FriendshipStatus) -> Result[int, StorageError]:
        now = now_millis()
        return await self._engine.execute_write(
            """
            INSERT OR REPLACE INTO friendships (id, requester_id, addressee_id, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (new_id(), requester_id, addressee_id, status.value, now, now),
            operation="insert_friendship",
        )

    async def list_accepted_friend_ids(self, participant_id: str) -> Result[list[str], StorageError]:
        result = await self._engine.execute(
            """
            SELECT CASE WHEN requester_id = ? THEN addressee_id ELSE requester_id END AS friend_id
              FROM friendships
             WHERE status = 'accepted' AND (requester_id = ? OR addressee_id = ?)
            """,
            (participant_id, participant_id, participant_id),
        )
        return result.map(lambda rows: [r["friend_id"] for r in rows])


# =============================================================================
# FACADE
# =============================================================================
class QueryStore:
    """
    All repositories over a single engine.

    Usage:
        store = (await QueryStore.open(StoreConfig(in_memory=True))).unwrap()
        participant = (await store.participants.ensure("0xabc...")).unwrap()
    """

    __slots__ = ("engine", "participants", "conversations", "members", "messages", "friendships")

    def __init__(self, engine: StoreEngine) -> None:
        self.engine = engine
        self.participants = ParticipantRepository(engine)
        self.conversations = ConversationRepository(engine)
        self.members = MembershipRepository(engine)
        self.messages = MessageRepository(engine)
        self.friendships = FriendshipRepository(engine)

    @classmethod
    async def open(cls, config: StoreConfig) -> Result[QueryStore, StorageError]:
        """Initialize the engine and ensure the schema exists."""
        engine = StoreEngine(config)
        opened = await engine.initialize()
        if opened.is_err():
            return opened
        created = await StoreSchema(engine).create_all()
        if created.is_err():
            await engine.close()
            return created
        return Ok(cls(engine))

    async def ping(self) -> bool:
        return await self.engine.ping()

    async def close(self) -> None:
        await self.engine.close()

