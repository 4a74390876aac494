"""Append-only usage ledger and the aggregate statistics derived from it."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

import aiosqlite

from llm_chat_bot.errors import Operation
from llm_chat_bot.log import get_logger
from llm_chat_bot.storage.database import Database, from_db_time, to_db_time
from llm_chat_bot.storage.models import (
    GlobalSummary,
    ModelTotals,
    TokenUsage,
    UsageRecord,
    UserSummary,
    utcnow,
)

logger = get_logger(__name__)

DEFAULT_HOURLY_TOKEN_LIMIT = 100_000

# Stage 1 collapses the ledger to one row per (model, owner); stage 2 groups
# those rows by model, so "users" counts owners active on that model.
_GLOBAL_BY_MODEL_SQL = """
SELECT model,
       SUM(tokens) AS tokens,
       SUM(cost)   AS cost,
       COUNT(*)    AS users
FROM (
    SELECT model, owner_id,
           SUM(total_tokens) AS tokens,
           SUM(cost)         AS cost
    FROM usage_records
    GROUP BY model, owner_id
)
GROUP BY model
ORDER BY model
"""


class UsageLedger:
    """One row per successful model call; never updated or deleted.

    Aggregates only see committed rows: a summary requested while a record
    is being written waits for that transaction to finish.
    """

    def __init__(self, db: Database):
        self._db = db

    async def record(
        self,
        owner_id: str,
        conversation_id: str,
        model: str,
        tokens: TokenUsage,
        cost: float,
    ) -> UsageRecord:
        now = utcnow()
        async with self._db.transaction(
            Operation.USAGE_TRACK,
            owner_id=owner_id,
            conversation_id=conversation_id,
            model=model,
        ) as conn:
            cursor = await conn.execute(
                """INSERT INTO usage_records
                   (owner_id, conversation_id, model, prompt_tokens,
                    completion_tokens, total_tokens, cost, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    owner_id,
                    conversation_id,
                    model,
                    tokens.prompt,
                    tokens.completion,
                    tokens.total,
                    cost,
                    to_db_time(now),
                ),
            )
            record_id = cursor.lastrowid
        logger.info(
            "usage_tracked",
            owner_id=owner_id,
            conversation_id=conversation_id,
            model=model,
            total_tokens=tokens.total,
            cost=cost,
        )
        return UsageRecord(
            id=record_id,  # type: ignore[arg-type]
            owner_id=owner_id,
            conversation_id=conversation_id,
            model=model,
            tokens=tokens,
            cost=cost,
            timestamp=now,
        )

    async def user_summary(self, owner_id: str) -> UserSummary:
        """Token and cost totals for one owner, broken down by model."""
        rows = await self._query(
            """SELECT model, SUM(total_tokens) AS tokens, SUM(cost) AS cost
               FROM usage_records WHERE owner_id = ?
               GROUP BY model ORDER BY model""",
            (owner_id,),
        )
        summary = UserSummary()
        for row in rows:
            summary.model_breakdown[row["model"]] = ModelTotals(
                tokens=row["tokens"], cost=row["cost"]
            )
            summary.total_tokens += row["tokens"]
            summary.total_cost += row["cost"]
        return summary

    async def global_summary(self) -> GlobalSummary:
        """Totals across all owners, broken down by model.

        ``active_users`` sums the per-model user counts, so an owner active on
        two models is counted twice; ``distinct_users`` counts each owner once.
        """
        summary = GlobalSummary()
        for row in await self._query(_GLOBAL_BY_MODEL_SQL, ()):
            summary.model_usage[row["model"]] = ModelTotals(
                tokens=row["tokens"], cost=row["cost"], users=row["users"]
            )
            summary.total_tokens += row["tokens"]
            summary.total_cost += row["cost"]
            summary.active_users += row["users"]
        distinct = await self._query(
            "SELECT COUNT(DISTINCT owner_id) AS users FROM usage_records", ()
        )
        summary.distinct_users = distinct[0]["users"] if distinct else 0
        return summary

    async def records_for(self, owner_id: str, limit: Optional[int] = None) -> list[UsageRecord]:
        """The owner's records, newest first."""
        sql = "SELECT * FROM usage_records WHERE owner_id = ? ORDER BY id DESC"
        params: tuple[Any, ...] = (owner_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (owner_id, limit)
        return [self._row_to_record(row) for row in await self._query(sql, params)]

    async def tokens_since(self, owner_id: str, since: datetime) -> int:
        rows = await self._query(
            """SELECT COALESCE(SUM(total_tokens), 0) AS tokens
               FROM usage_records WHERE owner_id = ? AND created_at >= ?""",
            (owner_id, to_db_time(since)),
        )
        return rows[0]["tokens"]

    async def within_hourly_limit(
        self, owner_id: str, limit: int = DEFAULT_HOURLY_TOKEN_LIMIT
    ) -> bool:
        """True while the owner's tokens over the last hour stay below *limit*."""
        used = await self.tokens_since(owner_id, utcnow() - timedelta(hours=1))
        return used < limit

    async def _query(self, sql: str, params: tuple) -> list[aiosqlite.Row]:
        async with self._db.read(Operation.USAGE_STATS) as conn:
            cursor = await conn.execute(sql, params)
            return list(await cursor.fetchall())

    @staticmethod
    def _row_to_record(row) -> UsageRecord:
        return UsageRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            conversation_id=row["conversation_id"],
            model=row["model"],
            tokens=TokenUsage(
                prompt=row["prompt_tokens"],
                completion=row["completion_tokens"],
                total=row["total_tokens"],
            ),
            cost=row["cost"],
            timestamp=from_db_time(row["created_at"]),
        )
