"""
Store Engine: SQLite Query Store with WAL Mode

The single canonical query store for participants, conversations,
memberships, messages and friendships.

Provides:
- Write-Ahead Logging (WAL) for concurrent reads during writes
- Serialized writes via a write lock
- Explicit transactions for multi-row materialization

Thread Safety:
- Single writer, multiple readers (SQLite WAL mode)
- Every statement runs on the event loop thread; the write lock guards
  against executor threads touching the same connection
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from relaymesh.core.config import StoreConfig
from relaymesh.core.errors import StorageError
from relaymesh.core.types import Result, Ok, Err

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StoreStats:
    """Query store statistics."""

    total_reads: int = 0
    total_writes: int = 0
    failed_statements: int = 0
    transactions: int = 0


class StoreEngine:
    """
    SQLite engine for the query store.

    Usage:
        engine = StoreEngine(StoreConfig(in_memory=True))
        await engine.initialize()

        rows = (await engine.execute("SELECT * FROM messages WHERE id = ?", (mid,))).unwrap()
        await engine.execute_write("UPDATE messages SET status = ? WHERE id = ?", ("failed", mid))
    """

    __slots__ = ("_config", "_conn", "_write_lock", "_stats")

    PRAGMAS = [
        "PRAGMA journal_mode = WAL",
        "PRAGMA synchronous = NORMAL",
        "PRAGMA temp_store = MEMORY",
        "PRAGMA busy_timeout = 5000",
    ]

    def __init__(self, config: StoreConfig) -> None:
        self._config = config
        self._conn: Optional[sqlite3.Connection] = None
        self._write_lock = threading.Lock()
        self._stats = StoreStats()

    async def initialize(self) -> Result[None, StorageError]:
        """Open the database and apply PRAGMAs."""
        try:
            if not self._config.in_memory:
                Path(self._config.data_dir).mkdir(parents=True, exist_ok=True)

            self._conn = sqlite3.connect(
                self._config.db_path,
                check_same_thread=False,
                isolation_level=None,  # explicit transaction control
            )
            self._conn.row_factory = sqlite3.Row

            for pragma in self.PRAGMAS:
                self._conn.execute(pragma)
            self._conn.execute(f"PRAGMA cache_size = -{self._config.cache_size_kb}")

            logger.info("Query store initialized", extra={"db_path": self._config.db_path})
            return Ok(None)

        except (sqlite3.Error, OSError) as e:
            logger.error("Query store initialization failed: %s", e)
            return Err(StorageError.connection_failed(self._config.db_path, cause=e))

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def execute(
        self,
        sql: str,
        params: tuple[Any, ...] = (),
    ) -> Result[list[dict[str, Any]], StorageError]:
        """Run a read statement and return rows as dicts."""
        if self._conn is None:
            return Err(StorageError.connection_failed(self._config.db_path))

        try:
            rows = self._conn.execute(sql, params).fetchall()
            self._stats.total_reads += 1
            return Ok([dict(row) for row in rows])
        except sqlite3.Error as e:
            self._stats.failed_statements += 1
            return Err(StorageError.query_failed(sql.split(None, 1)[0].lower(), cause=e))

    async def execute_write(
        self,
        sql: str,
        params: tuple[Any, ...] = (),
        *,
        operation: Optional[str] = None,
    ) -> Result[int, StorageError]:
        """Run a single write statement. Returns the affected row count."""
        if self._conn is None:
            return Err(StorageError.connection_failed(self._config.db_path))

        try:
            with self._write_lock:
                cursor = self._conn.execute(sql, params)
            self._stats.total_writes += 1
            return Ok(cursor.rowcount)
        except sqlite3.Error as e:
            self._stats.failed_statements += 1
            return Err(StorageError.write_failed(operation or sql.split(None, 1)[0].lower(), cause=e))

    async def transaction(
        self,
        work: Callable[[sqlite3.Cursor], T],
        *,
        operation: str = "transaction",
    ) -> Result[T, StorageError]:
        """
        Run work(cursor) inside BEGIN IMMEDIATE / COMMIT.

        Any exception rolls back and is returned as StorageError.write_failed.
        """
        if self._conn is None:
            return Err(StorageError.connection_failed(self._config.db_path))

        with self._write_lock:
            cursor = self._conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                value = work(cursor)
                cursor.execute("COMMIT")
            except sqlite3.Error as e:
                if self._conn.in_transaction:
                    cursor.execute("ROLLBACK")
                self._stats.failed_statements += 1
                return Err(StorageError.write_failed(operation, cause=e))
            finally:
                cursor.close()

        self._stats.transactions += 1
        return Ok(value)

    async def ping(self) -> bool:
        """Cheap liveness probe used by the health endpoint."""
        result = await self.execute("SELECT 1 AS ok")
        return result.is_ok()

    @property
    def stats(self) -> StoreStats:
        return self._stats

    async def close(self) -> None:
        if self._conn is None:
            return
        try:
            if not self._config.in_memory:
                self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        except sqlite3.Error as e:
            logger.warning("Final WAL checkpoint failed: %s", e)
        self._conn.close()
        self._conn = None
        logger.info("Query store closed")

    async def __aenter__(self) -> StoreEngine:
        result = await self.initialize()
        if result.is_err():
            raise result.error
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
