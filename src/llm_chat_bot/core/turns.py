"""Turn orchestration: one user message in, one model reply out, usage recorded."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from llm_chat_bot.ai.client import Completion, ModelProvider
from llm_chat_bot.ai.conversation import build_messages
from llm_chat_bot.core.locks import KeyedLock
from llm_chat_bot.errors import (
    AppError,
    NotFoundError,
    OpenRouterError,
    Operation,
    format_error_message,
    not_found_message,
)
from llm_chat_bot.log import get_logger
from llm_chat_bot.storage.conversation_repo import DEFAULT_CONTEXT_LIMIT, ConversationRepository
from llm_chat_bot.storage.models import Conversation, Message, Role
from llm_chat_bot.storage.usage_repo import UsageLedger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TurnResult:
    user_message: Message
    assistant_message: Message
    conversation: Conversation


class TurnOrchestrator:
    """Runs a single turn: Idle -> ContextBuilt -> ProviderCalled -> Persisted -> Done.

    Nothing is written until the provider has answered, so a failed call
    leaves the conversation and the ledger untouched. Turns on the same
    conversation are serialized for their whole duration.

    Known gap: the two message appends and the usage record are separate
    transactions. A crash between them leaves the conversation showing the
    exchange while the ledger is one record short.
    """

    def __init__(
        self,
        conversations: ConversationRepository,
        ledger: UsageLedger,
        provider: ModelProvider,
        context_limit: int = DEFAULT_CONTEXT_LIMIT,
        reserve_tokens: int = 0,
    ):
        self._conversations = conversations
        self._ledger = ledger
        self._provider = provider
        self._context_limit = context_limit
        self._reserve_tokens = reserve_tokens
        self._turn_locks = KeyedLock()

    async def send_message(
        self, conversation_id: str, content: str, temperature: Optional[float] = None
    ) -> TurnResult:
        log = logger.bind(conversation_id=conversation_id)
        async with self._turn_locks.hold(conversation_id):
            try:
                return await self._run(conversation_id, content, temperature, log)
            except AppError as e:
                log.error("turn_failed", error_code=e.code, error=e.message)
                raise

    async def _run(
        self,
        conversation_id: str,
        content: str,
        temperature: Optional[float],
        log: structlog.stdlib.BoundLogger,
    ) -> TurnResult:
        conversation = await self._conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError(
                not_found_message("Conversation", conversation_id=conversation_id),
                {"conversation_id": conversation_id},
            )
        model = conversation.model
        history = await self._conversations.context_window(conversation_id, self._context_limit)
        user_message = Message(role=Role.USER, content=content, model=model)
        messages = build_messages(history, user_message, model, self._reserve_tokens)
        log.debug("turn_context_built", model=model, context_messages=len(messages))

        completion = await self._call_provider(messages, model, temperature)
        log.debug("turn_provider_called", model=model, generation_id=completion.generation_id)

        assistant_message = Message(
            role=Role.ASSISTANT,
            content=completion.content,
            model=model,
            tokens=completion.usage,
            cost=completion.cost,
        )
        await self._conversations.append_message(conversation_id, user_message)
        conversation = await self._conversations.append_message(conversation_id, assistant_message)
        await self._ledger.record(
            owner_id=conversation.owner_id,
            conversation_id=conversation_id,
            model=model,
            tokens=completion.usage,
            cost=completion.cost,
        )
        log.info(
            "turn_completed",
            model=model,
            user_message_length=len(content),
            response_length=len(completion.content),
            total_tokens=completion.usage.total,
            cost=completion.cost,
        )
        return TurnResult(
            user_message=user_message,
            assistant_message=assistant_message,
            conversation=conversation,
        )

    async def _call_provider(
        self, messages: list[dict], model: str, temperature: Optional[float]
    ) -> Completion:
        try:
            return await self._provider.complete(messages, model=model, temperature=temperature)
        except AppError:
            raise
        except Exception as e:
            raise OpenRouterError(
                format_error_message(Operation.MODEL_REQUEST, e, {"model": model}),
                {"model": model},
            ) from e
