"""Conversation store: per-user conversations, their messages and running totals."""

from __future__ import annotations

import uuid
from typing import Optional

import aiosqlite

from llm_chat_bot.ai.catalog import get_model_info
from llm_chat_bot.core.locks import KeyedLock
from llm_chat_bot.errors import NotFoundError, Operation, not_found_message
from llm_chat_bot.log import get_logger
from llm_chat_bot.storage.database import Database, from_db_time, to_db_time
from llm_chat_bot.storage.models import (
    Conversation,
    ConversationStats,
    Message,
    Role,
    TokenUsage,
    utcnow,
)

logger = get_logger(__name__)

DEFAULT_CONTEXT_LIMIT = 10

# Totals are always derived from the stored message list.
_RECOMPUTE_TOTALS_SQL = """
UPDATE conversations SET
    total_tokens = (SELECT COALESCE(SUM(total_tokens), 0)
                    FROM messages WHERE conversation_id = :id),
    total_cost = (SELECT COALESCE(SUM(cost), 0.0)
                  FROM messages WHERE conversation_id = :id),
    last_message_at = :now
WHERE id = :id
"""


class ConversationRepository:
    """Durable conversations with derived token/cost totals.

    Every mutation of a conversation's messages runs in a single transaction
    under a per-conversation lock and recomputes the totals from the full
    message list.
    """

    def __init__(self, db: Database):
        self._db = db
        self._locks = KeyedLock()

    async def create(
        self, owner_id: str, model: str, title: Optional[str] = None
    ) -> Conversation:
        """Create an empty conversation and make it the owner's active one.

        An unknown owner raises ``NotFoundError`` before the model is checked.
        """
        now = utcnow()
        conversation = Conversation(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            model=model,
            title=title,
            created_at=now,
            last_message_at=now,
        )
        async with self._db.transaction(Operation.DB_CREATE, owner_id=owner_id) as conn:
            await self._require_owner(conn, owner_id)
            get_model_info(model)
            await conn.execute(
                """INSERT INTO conversations
                   (id, owner_id, title, model, total_tokens, total_cost,
                    created_at, last_message_at)
                   VALUES (?, ?, ?, ?, 0, 0.0, ?, ?)""",
                (
                    conversation.id,
                    owner_id,
                    title,
                    model,
                    to_db_time(now),
                    to_db_time(now),
                ),
            )
            await conn.execute(
                "UPDATE users SET active_conversation_id = ? WHERE id = ?",
                (conversation.id, owner_id),
            )
        logger.info(
            "conversation_created",
            owner_id=owner_id,
            model=model,
            conversation_id=conversation.id,
        )
        return conversation

    async def list_by_owner(self, owner_id: str) -> list[Conversation]:
        """All of the owner's conversations, most recently active first."""
        async with self._db.read(Operation.DB_READ, owner_id=owner_id) as conn:
            await self._require_owner(conn, owner_id)
            cursor = await conn.execute(
                """SELECT * FROM conversations WHERE owner_id = ?
                   ORDER BY last_message_at DESC, rowid DESC""",
                (owner_id,),
            )
            rows = await cursor.fetchall()
            return [await self._build(conn, row) for row in rows]

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        async with self._db.read(Operation.DB_READ, conversation_id=conversation_id) as conn:
            row = await self._fetch_row(conn, conversation_id)
            if row is None:
                return None
            return await self._build(conn, row)

    async def append_message(self, conversation_id: str, message: Message) -> Conversation:
        async with self._locks.hold(conversation_id):
            async with self._db.transaction(
                Operation.DB_UPDATE, conversation_id=conversation_id
            ) as conn:
                await self._require_row(conn, conversation_id)
                tokens = message.tokens
                await conn.execute(
                    """INSERT INTO messages
                       (conversation_id, role, content, model, prompt_tokens,
                        completion_tokens, total_tokens, cost, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        conversation_id,
                        str(message.role),
                        message.content,
                        message.model,
                        tokens.prompt if tokens else None,
                        tokens.completion if tokens else None,
                        tokens.total if tokens else None,
                        message.cost,
                        to_db_time(message.timestamp),
                    ),
                )
                await conn.execute(
                    _RECOMPUTE_TOTALS_SQL,
                    {"id": conversation_id, "now": to_db_time(utcnow())},
                )
                return await self._build(conn, await self._require_row(conn, conversation_id))

    async def clear(self, conversation_id: str) -> Conversation:
        """Empty the message list and zero the totals; the conversation itself stays."""
        async with self._locks.hold(conversation_id):
            async with self._db.transaction(
                Operation.DB_UPDATE, conversation_id=conversation_id
            ) as conn:
                await self._require_row(conn, conversation_id)
                await conn.execute(
                    "DELETE FROM messages WHERE conversation_id = ?", (conversation_id,)
                )
                await conn.execute(
                    _RECOMPUTE_TOTALS_SQL,
                    {"id": conversation_id, "now": to_db_time(utcnow())},
                )
                conversation = await self._build(
                    conn, await self._require_row(conn, conversation_id)
                )
        logger.info("conversation_cleared", conversation_id=conversation_id)
        return conversation

    async def set_model(self, conversation_id: str, model: str) -> Conversation:
        get_model_info(model)
        async with self._locks.hold(conversation_id):
            async with self._db.transaction(
                Operation.DB_UPDATE, conversation_id=conversation_id, model=model
            ) as conn:
                await self._require_row(conn, conversation_id)
                await conn.execute(
                    "UPDATE conversations SET model = ? WHERE id = ?",
                    (model, conversation_id),
                )
                conversation = await self._build(
                    conn, await self._require_row(conn, conversation_id)
                )
        logger.info("conversation_model_updated", conversation_id=conversation_id, model=model)
        return conversation

    async def context_window(
        self, conversation_id: str, limit: int = DEFAULT_CONTEXT_LIMIT
    ) -> list[Message]:
        """The last *limit* messages, oldest first."""
        async with self._db.read(Operation.DB_READ, conversation_id=conversation_id) as conn:
            await self._require_row(conn, conversation_id)
            if limit <= 0:
                return []
            cursor = await conn.execute(
                """SELECT * FROM (
                       SELECT * FROM messages WHERE conversation_id = ?
                       ORDER BY id DESC LIMIT ?
                   ) ORDER BY id ASC""",
                (conversation_id, limit),
            )
            rows = await cursor.fetchall()
            return [self._row_to_message(row) for row in rows]

    async def user_stats(self, owner_id: str) -> ConversationStats:
        """Conversation counts and totals for one owner."""
        async with self._db.read(Operation.DB_QUERY, owner_id=owner_id) as conn:
            await self._require_owner(conn, owner_id)
            cursor = await conn.execute(
                """SELECT COUNT(*) AS conversations,
                          COALESCE(SUM(total_tokens), 0) AS tokens,
                          COALESCE(SUM(total_cost), 0.0) AS cost
                   FROM conversations WHERE owner_id = ?""",
                (owner_id,),
            )
            totals = await cursor.fetchone()
            cursor = await conn.execute(
                """SELECT COUNT(*) AS messages FROM messages m
                   JOIN conversations c ON c.id = m.conversation_id
                   WHERE c.owner_id = ?""",
                (owner_id,),
            )
            counted = await cursor.fetchone()
        return ConversationStats(
            total_conversations=totals["conversations"],
            total_messages=counted["messages"],
            total_tokens=totals["tokens"],
            total_cost=totals["cost"],
        )

    @staticmethod
    async def _require_owner(conn: aiosqlite.Connection, owner_id: str) -> None:
        cursor = await conn.execute("SELECT 1 FROM users WHERE id = ?", (owner_id,))
        if await cursor.fetchone() is None:
            raise NotFoundError(not_found_message("User", owner_id=owner_id), {"owner_id": owner_id})

    @staticmethod
    async def _fetch_row(conn: aiosqlite.Connection, conversation_id: str):
        cursor = await conn.execute(
            "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
        )
        return await cursor.fetchone()

    async def _require_row(self, conn: aiosqlite.Connection, conversation_id: str):
        row = await self._fetch_row(conn, conversation_id)
        if row is None:
            raise NotFoundError(
                not_found_message("Conversation", conversation_id=conversation_id),
                {"conversation_id": conversation_id},
            )
        return row

    async def _build(self, conn: aiosqlite.Connection, row) -> Conversation:
        cursor = await conn.execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY id ASC",
            (row["id"],),
        )
        messages = [self._row_to_message(m) for m in await cursor.fetchall()]
        return Conversation(
            id=row["id"],
            owner_id=row["owner_id"],
            model=row["model"],
            title=row["title"],
            messages=messages,
            total_tokens=row["total_tokens"],
            total_cost=row["total_cost"],
            created_at=from_db_time(row["created_at"]),
            last_message_at=from_db_time(row["last_message_at"]),
        )

    @staticmethod
    def _row_to_message(row) -> Message:
        tokens = None
        if row["total_tokens"] is not None:
            tokens = TokenUsage(
                prompt=row["prompt_tokens"] or 0,
                completion=row["completion_tokens"] or 0,
                total=row["total_tokens"],
            )
        return Message(
            role=Role(row["role"]),
            content=row["content"],
            model=row["model"],
            timestamp=from_db_time(row["created_at"]),
            tokens=tokens,
            cost=row["cost"],
        )
