"""
Store Schema: DDL for the SQLite Query Store

Tables:
- participants: wallet-addressed users mirrored from the ledger
- conversations: direct / group contexts; direct_key enforces one
  direct conversation per unordered participant pair
- conversation_members: participant <-> conversation join rows
- messages: stored messages with delivery status
- friendships: accepted friend edges used for presence fan-out

No foreign keys: the store is a derived cache and rows whose parent
disappears are removed by orphan cleanup.
"""

from __future__ import annotations

import logging

from relaymesh.storage.engine import StoreEngine
from relaymesh.core.types import Result, Ok
from relaymesh.core.errors import StorageError

logger = logging.getLogger(__name__)


class StoreSchema:
    """Schema manager for the query store."""

    PARTICIPANTS_DDL = """
    CREATE TABLE IF NOT EXISTS participants (
        id TEXT PRIMARY KEY NOT NULL,
        address TEXT NOT NULL UNIQUE,
        username TEXT,
        public_key TEXT,
        is_registered INTEGER NOT NULL DEFAULT 0,
        last_seen INTEGER,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );
    """

    CONVERSATIONS_DDL = """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY NOT NULL,
        type TEXT NOT NULL CHECK (type IN ('direct', 'group')),
        name TEXT,
        created_by TEXT NOT NULL,
        direct_key TEXT UNIQUE,
        last_message_at INTEGER,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );
    """

    MEMBERS_DDL = """
    CREATE TABLE IF NOT EXISTS conversation_members (
        id TEXT PRIMARY KEY NOT NULL,
        conversation_id TEXT NOT NULL,
        participant_id TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'member' CHECK (role IN ('admin', 'member')),
        joined_at INTEGER NOT NULL,
        last_read_at INTEGER,
        UNIQUE (conversation_id, participant_id)
    );
    """

    MESSAGES_DDL = """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY NOT NULL,
        conversation_id TEXT NOT NULL,
        sender_id TEXT NOT NULL,
        content TEXT NOT NULL DEFAULT '',
        type TEXT NOT NULL DEFAULT 'text'
            CHECK (type IN ('text', 'image', 'file', 'system')),
        content_hash TEXT,
        content_id TEXT,
        tx_hash TEXT,
        block_number INTEGER,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'confirmed', 'failed')),
        reply_to_id TEXT,
        edited_at INTEGER,
        deleted_at INTEGER,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );
    """

    FRIENDSHIPS_DDL = """
    CREATE TABLE IF NOT EXISTS friendships (
        id TEXT PRIMARY KEY NOT NULL,
        requester_id TEXT NOT NULL,
        addressee_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'accepted', 'declined', 'blocked')),
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        UNIQUE (requester_id, addressee_id)
    );
    """

    INDEXES = [
        "CREATE INDEX IF NOT EXISTS idx_members_participant ON conversation_members(participant_id);",
        "CREATE INDEX IF NOT EXISTS idx_members_conversation ON conversation_members(conversation_id);",
        "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at);",
        "CREATE INDEX IF NOT EXISTS idx_messages_content_hash ON messages(content_hash);",
        "CREATE INDEX IF NOT EXISTS idx_messages_status ON messages(status);",
        "CREATE INDEX IF NOT EXISTS idx_friendships_addressee ON friendships(addressee_id);",
    ]

    TABLES = ("friendships", "messages", "conversation_members", "conversations", "participants")

    def __init__(self, engine: StoreEngine) -> None:
        self._engine = engine

    async def create_all(self) -> Result[None, StorageError]:
        """Create all tables and indexes."""
        for ddl in (
            self.PARTICIPANTS_DDL,
            self.CONVERSATIONS_DDL,
            self.MEMBERS_DDL,
            self.MESSAGES_DDL,
            self.FRIENDSHIPS_DDL,
            *self.INDEXES,
        ):
            result = await self._engine.execute_write(ddl, operation="create_schema")
            if result.is_err():
                logger.error("Schema creation failed: %s", result.error)
                return result

        logger.info("Query store schema ready")
        return Ok(None)

    async def drop_all(self) -> Result[None, StorageError]:
        """Drop all tables (DANGER)."""
        for table in self.TABLES:
            result = await self._engine.execute_write(f"DROP TABLE IF EXISTS {table}", operation="drop_schema")
            if result.is_err():
                return result
        logger.warning("Query store schema dropped")
        return Ok(None)

