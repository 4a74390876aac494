"""Session manager mapping a user to their active conversation."""

from __future__ import annotations

from typing import Optional

from llm_chat_bot.log import get_logger
from llm_chat_bot.storage.conversation_repo import ConversationRepository
from llm_chat_bot.storage.models import Conversation, User

logger = get_logger(__name__)


class SessionManager:
    """Resolves and replaces a user's active conversation.

    The active conversation is the ``active_conversation_id`` pointer on the
    user, set when a conversation is created. Users created before the
    pointer existed fall back to their most recently active conversation.
    """

    def __init__(self, conversation_repo: ConversationRepository):
        self._repo = conversation_repo

    async def current(self, user: User) -> Optional[Conversation]:
        if user.active_conversation_id:
            conversation = await self._repo.get(user.active_conversation_id)
            if conversation is not None:
                return conversation
            logger.warning(
                "active_conversation_missing",
                user_id=user.id,
                conversation_id=user.active_conversation_id,
            )
        conversations = await self._repo.list_by_owner(user.id)
        return conversations[0] if conversations else None

    async def start_new(self, user: User, model: Optional[str] = None) -> Conversation:
        """Create a conversation and make it the active one."""
        conversation = await self._repo.create(user.id, model or user.default_model)
        user.active_conversation_id = conversation.id
        logger.info("session_started", user_id=user.id, conversation_id=conversation.id)
        return conversation

    @property
    def repo(self) -> ConversationRepository:
        return self._repo
