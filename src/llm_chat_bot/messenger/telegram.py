"""Telegram messenger adapter using python-telegram-bot v21+."""

from __future__ import annotations

from datetime import datetime, timezone

from telegram import Update
from telegram.constants import ChatAction
from telegram.ext import Application, ContextTypes, MessageHandler as TGMessageHandler, filters

from llm_chat_bot.log import get_logger
from llm_chat_bot.messenger.base import MessengerAdapter
from llm_chat_bot.messenger.models import IncomingMessage, OutgoingMessage

logger = get_logger(__name__)


class TelegramAdapter(MessengerAdapter):
    """Telegram bot adapter; polling is left to python-telegram-bot's updater."""

    def __init__(self, token: str):
        super().__init__()
        self._token = token
        self._app: Application | None = None  # type: ignore[type-arg]

    async def start(self) -> None:
        if not self._token:
            raise ValueError("Telegram bot token not configured")

        self._app = Application.builder().token(self._token).build()
        # Commands arrive as plain text too; the handler parses them.
        self._app.add_handler(TGMessageHandler(filters.TEXT, self._on_telegram_message))

        await self._app.initialize()
        me = await self._app.bot.get_me()
        await self._app.start()
        await self._app.updater.start_polling(drop_pending_updates=True)  # type: ignore[union-attr]
        logger.info("telegram_adapter_started", username=me.username, bot_id=me.id)

    async def stop(self) -> None:
        if self._app:
            await self._app.updater.stop()  # type: ignore[union-attr]
            await self._app.stop()
            await self._app.shutdown()
            self._app = None
            logger.info("telegram_adapter_stopped")

    async def send_message(self, message: OutgoingMessage) -> None:
        if not self._app or not self._app.bot:
            return

        await self._app.bot.send_message(chat_id=int(message.chat_id), text=message.text)

    async def send_typing_indicator(self, chat_id: str) -> None:
        if self._app and self._app.bot:
            await self._app.bot.send_chat_action(chat_id=int(chat_id), action=ChatAction.TYPING)

    async def _on_telegram_message(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        if not update.message or not update.message.text:
            return
        if not self._message_callback:
            return

        msg = update.message
        if msg.from_user is None:
            logger.debug("telegram_message_without_sender", chat_id=msg.chat_id)
            return

        incoming = IncomingMessage(
            chat_id=str(msg.chat_id),
            user_id=msg.from_user.id,
            username=msg.from_user.username or "unknown",
            text=msg.text,
            timestamp=msg.date or datetime.now(timezone.utc),
        )

        try:
            await self._message_callback(incoming)
        except Exception as e:
            logger.error("telegram_handler_error", error=str(e), chat_id=str(msg.chat_id))
