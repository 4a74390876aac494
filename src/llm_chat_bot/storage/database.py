"""SQLite database connection manager with schema migration."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from llm_chat_bot.errors import DatabaseError, Operation, format_error_message
from llm_chat_bot.log import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id                      TEXT    PRIMARY KEY,
    telegram_id             INTEGER NOT NULL UNIQUE,
    username                TEXT    NOT NULL,
    is_admin                INTEGER NOT NULL DEFAULT 0,
    is_whitelisted          INTEGER NOT NULL DEFAULT 0,
    default_model           TEXT    NOT NULL,
    notifications           INTEGER NOT NULL DEFAULT 1,
    active_conversation_id  TEXT,
    created_at              TEXT    NOT NULL,
    last_active_at          TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_users_whitelisted ON users(is_whitelisted);
CREATE INDEX IF NOT EXISTS idx_users_admin ON users(is_admin);

CREATE TABLE IF NOT EXISTS conversations (
    id              TEXT    PRIMARY KEY,
    owner_id        TEXT    NOT NULL REFERENCES users(id),
    title           TEXT,
    model           TEXT    NOT NULL,
    total_tokens    INTEGER NOT NULL DEFAULT 0,
    total_cost      REAL    NOT NULL DEFAULT 0,
    created_at      TEXT    NOT NULL,
    last_message_at TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_conversations_owner
    ON conversations(owner_id, last_message_at);

CREATE TABLE IF NOT EXISTS messages (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id     TEXT    NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    role                TEXT    NOT NULL CHECK(role IN ('user','assistant','system')),
    content             TEXT    NOT NULL,
    model               TEXT    NOT NULL,
    prompt_tokens       INTEGER,
    completion_tokens   INTEGER,
    total_tokens        INTEGER,
    cost                REAL,
    created_at          TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, id);

CREATE TABLE IF NOT EXISTS usage_records (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id            TEXT    NOT NULL,
    conversation_id     TEXT    NOT NULL,
    model               TEXT    NOT NULL,
    prompt_tokens       INTEGER NOT NULL,
    completion_tokens   INTEGER NOT NULL,
    total_tokens        INTEGER NOT NULL,
    cost                REAL    NOT NULL CHECK(cost >= 0),
    created_at          TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_owner ON usage_records(owner_id, created_at);
CREATE INDEX IF NOT EXISTS idx_usage_model ON usage_records(model, created_at);
"""


def to_db_time(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def from_db_time(value: str) -> datetime:
    return datetime.fromisoformat(value)


class Database:
    """Async SQLite database manager.

    A single connection is shared by every repository. Transactions and reads
    are serialized on ``_tx_lock`` so statements never interleave and reads
    never see another coroutine's uncommitted writes.
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._tx_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open connection and run migrations."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = await aiosqlite.connect(self._db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA foreign_keys=ON")
            await self._conn.executescript(SCHEMA_SQL)
            await self._conn.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(
                format_error_message(Operation.DB_CREATE, e, {"path": self._db_path})
            ) from e
        logger.info("database_initialized", path=self._db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    @asynccontextmanager
    async def transaction(
        self, operation: Operation = Operation.DB_UPDATE, **context: object
    ) -> AsyncIterator[aiosqlite.Connection]:
        """Run the enclosed statements as one unit: commit on success, roll back on error.

        ``aiosqlite.Error`` is re-raised as ``DatabaseError``; any other
        exception propagates unchanged after the rollback.
        """
        async with self._tx_lock:
            conn = self.conn
            try:
                yield conn
                await conn.commit()
            except aiosqlite.Error as e:
                await conn.rollback()
                logger.error("database_error", operation=str(operation), error=str(e), **context)
                raise DatabaseError(format_error_message(operation, e, context)) from e
            except BaseException:
                await conn.rollback()
                raise

    @asynccontextmanager
    async def read(
        self, operation: Operation = Operation.DB_READ, **context: object
    ) -> AsyncIterator[aiosqlite.Connection]:
        """Query committed state only.

        Waits for any open transaction on the shared connection to finish, so
        uncommitted rows are never visible. ``aiosqlite.Error`` is re-raised
        as ``DatabaseError``.
        """
        async with self._tx_lock:
            try:
                yield self.conn
            except aiosqlite.Error as e:
                logger.error("database_error", operation=str(operation), error=str(e), **context)
                raise DatabaseError(format_error_message(operation, e, context)) from e

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")
