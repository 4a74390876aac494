"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

from llm_chat_bot.ai.client import ModelProvider, OpenRouterClient
from llm_chat_bot.bot.handler import ChatHandler
from llm_chat_bot.config import AppConfig
from llm_chat_bot.core.session import SessionManager
from llm_chat_bot.core.turns import TurnOrchestrator
from llm_chat_bot.log import get_logger
from llm_chat_bot.messenger.base import MessengerAdapter
from llm_chat_bot.storage.conversation_repo import ConversationRepository
from llm_chat_bot.storage.database import Database
from llm_chat_bot.storage.usage_repo import UsageLedger
from llm_chat_bot.storage.user_repo import UserRepository

logger = get_logger(__name__)


class ChatBotApp:
    """Top-level application orchestrator."""

    def __init__(
        self,
        config: AppConfig,
        provider: ModelProvider | None = None,
        adapter: MessengerAdapter | None = None,
    ):
        self.config = config
        self.db = Database(config.storage.db_path)
        self.users = UserRepository(
            self.db,
            admin_ids=config.telegram.admin_ids,
            default_model=config.openrouter.default_model,
        )
        self.conversations = ConversationRepository(self.db)
        self.ledger = UsageLedger(self.db)
        self.sessions = SessionManager(self.conversations)
        self.provider = provider or OpenRouterClient(config.openrouter)
        self.orchestrator = TurnOrchestrator(
            self.conversations,
            self.ledger,
            self.provider,
            context_limit=config.chat.context_limit,
            reserve_tokens=config.openrouter.max_tokens,
        )
        self.adapter = adapter or self._create_adapter()
        self.handler = ChatHandler(
            adapter=self.adapter,
            users=self.users,
            sessions=self.sessions,
            orchestrator=self.orchestrator,
            ledger=self.ledger,
            chat_config=config.chat,
        )

    async def start(self) -> None:
        """Initialize storage, then connect the chat transport."""
        await self.db.initialize()
        self.adapter.on_message(self.handler.handle)
        await self.adapter.start()
        logger.info(
            "llm_chat_bot_started",
            default_model=self.config.openrouter.default_model,
            admins=len(self.config.telegram.admin_ids),
        )

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        try:
            await self.adapter.stop()
        except Exception as e:
            logger.error("adapter_stop_error", error=str(e))
        await self.provider.close()
        await self.db.close()
        logger.info("llm_chat_bot_stopped")

    def _create_adapter(self) -> MessengerAdapter:
        from llm_chat_bot.messenger.telegram import TelegramAdapter

        return TelegramAdapter(self.config.telegram.token)
