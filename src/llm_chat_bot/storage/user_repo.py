"""User directory: Telegram users, whitelist/admin flags and preferences."""

from __future__ import annotations

import uuid
from typing import Iterable, Optional

from llm_chat_bot.ai.catalog import DEFAULT_MODEL, get_model_info
from llm_chat_bot.errors import (
    AuthorizationError,
    DatabaseError,
    NotFoundError,
    Operation,
    format_error_message,
    not_found_message,
)
from llm_chat_bot.log import get_logger
from llm_chat_bot.storage.database import Database, from_db_time, to_db_time
from llm_chat_bot.storage.models import User, utcnow

logger = get_logger(__name__)


class UserRepository:
    """CRUD over users keyed by Telegram id."""

    def __init__(
        self,
        db: Database,
        admin_ids: Iterable[int] = (),
        default_model: str = DEFAULT_MODEL,
    ):
        self._db = db
        self._admin_ids = frozenset(admin_ids)
        self._default_model = default_model

    async def get(self, user_id: str) -> Optional[User]:
        return await self._fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))

    async def get_by_telegram_id(self, telegram_id: int) -> Optional[User]:
        return await self._fetch_one(
            "SELECT * FROM users WHERE telegram_id = ?", (telegram_id,)
        )

    async def resolve(self, telegram_id: int) -> User:
        """Like ``get_by_telegram_id`` but raises ``NotFoundError``."""
        user = await self.get_by_telegram_id(telegram_id)
        if user is None:
            raise NotFoundError(
                not_found_message("User", telegram_id=telegram_id),
                {"telegram_id": telegram_id},
            )
        return user

    async def find_or_create(self, telegram_id: int, username: str) -> User:
        """Return the user, creating it on first contact.

        Configured admins are created as admin and whitelisted. An existing
        user's username is refreshed if it changed.
        """
        existing = await self.get_by_telegram_id(telegram_id)
        if existing is not None:
            if existing.username != username:
                async with self._db.transaction(Operation.DB_UPDATE, telegram_id=telegram_id) as conn:
                    await conn.execute(
                        "UPDATE users SET username = ? WHERE id = ?", (username, existing.id)
                    )
                existing.username = username
            return existing

        is_admin = telegram_id in self._admin_ids
        now = utcnow()
        user = User(
            id=uuid.uuid4().hex,
            telegram_id=telegram_id,
            username=username,
            is_admin=is_admin,
            is_whitelisted=is_admin,
            default_model=self._default_model,
            created_at=now,
            last_active_at=now,
        )
        async with self._db.transaction(Operation.DB_CREATE, telegram_id=telegram_id) as conn:
            await conn.execute(
                """INSERT INTO users
                   (id, telegram_id, username, is_admin, is_whitelisted, default_model,
                    notifications, created_at, last_active_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    user.id,
                    user.telegram_id,
                    user.username,
                    int(user.is_admin),
                    int(user.is_whitelisted),
                    user.default_model,
                    int(user.notifications),
                    to_db_time(now),
                    to_db_time(now),
                ),
            )
        logger.info("user_created", telegram_id=telegram_id, username=username, is_admin=is_admin)
        return user

    async def set_whitelisted(self, telegram_id: int, whitelisted: bool) -> User:
        user = await self.resolve(telegram_id)
        if not whitelisted and user.is_admin:
            raise AuthorizationError(
                format_error_message(
                    Operation.AUTH_ACCESS,
                    "Cannot remove admin from whitelist",
                    {"telegram_id": telegram_id},
                ),
                {"telegram_id": telegram_id},
            )
        async with self._db.transaction(Operation.DB_UPDATE, telegram_id=telegram_id) as conn:
            await conn.execute(
                "UPDATE users SET is_whitelisted = ? WHERE id = ?",
                (int(whitelisted), user.id),
            )
        user.is_whitelisted = whitelisted
        logger.info("user_whitelist_changed", telegram_id=telegram_id, whitelisted=whitelisted)
        return user

    async def update_preferences(
        self,
        telegram_id: int,
        *,
        default_model: Optional[str] = None,
        notifications: Optional[bool] = None,
    ) -> User:
        user = await self.resolve(telegram_id)
        if default_model is not None:
            get_model_info(default_model)
            user.default_model = default_model
        if notifications is not None:
            user.notifications = notifications
        async with self._db.transaction(Operation.DB_UPDATE, telegram_id=telegram_id) as conn:
            await conn.execute(
                "UPDATE users SET default_model = ?, notifications = ? WHERE id = ?",
                (user.default_model, int(user.notifications), user.id),
            )
        logger.info(
            "user_preferences_updated",
            telegram_id=telegram_id,
            default_model=user.default_model,
            notifications=user.notifications,
        )
        return user

    async def list_whitelisted(self) -> list[User]:
        return await self._fetch_all(
            "SELECT * FROM users WHERE is_whitelisted = 1 ORDER BY created_at ASC", ()
        )

    async def list_admins(self) -> list[User]:
        return await self._fetch_all(
            "SELECT * FROM users WHERE is_admin = 1 ORDER BY created_at ASC", ()
        )

    async def check_access(self, telegram_id: int) -> bool:
        user = await self.get_by_telegram_id(telegram_id)
        return user is not None and user.has_access

    async def update_last_active(self, telegram_id: int) -> None:
        """Touch ``last_active_at``. Bookkeeping only, so failures are logged, not raised."""
        try:
            async with self._db.transaction(Operation.DB_UPDATE, telegram_id=telegram_id) as conn:
                await conn.execute(
                    "UPDATE users SET last_active_at = ? WHERE telegram_id = ?",
                    (to_db_time(utcnow()), telegram_id),
                )
        except DatabaseError as e:
            logger.warning("last_active_update_failed", telegram_id=telegram_id, error=str(e))

    async def _fetch_one(self, sql: str, params: tuple) -> Optional[User]:
        rows = await self._fetch_all(sql, params)
        return rows[0] if rows else None

    async def _fetch_all(self, sql: str, params: tuple) -> list[User]:
        async with self._db.read(Operation.DB_READ) as conn:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
        return [self._row_to_user(row) for row in rows]

    @staticmethod
    def _row_to_user(row) -> User:
        return User(
            id=row["id"],
            telegram_id=row["telegram_id"],
            username=row["username"],
            is_admin=bool(row["is_admin"]),
            is_whitelisted=bool(row["is_whitelisted"]),
            default_model=row["default_model"],
            notifications=bool(row["notifications"]),
            active_conversation_id=row["active_conversation_id"],
            created_at=from_db_time(row["created_at"]),
            last_active_at=from_db_time(row["last_active_at"]),
        )
