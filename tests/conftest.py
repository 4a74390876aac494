"""Shared fixtures: a fresh SQLite database per test plus repositories on top of it."""

from __future__ import annotations

from typing import Optional, Sequence

import pytest
import pytest_asyncio

from llm_chat_bot.ai.catalog import DEFAULT_MODEL
from llm_chat_bot.ai.client import Completion, ModelProvider
from llm_chat_bot.storage.conversation_repo import ConversationRepository
from llm_chat_bot.storage.database import Database
from llm_chat_bot.storage.models import Message, Role, TokenUsage
from llm_chat_bot.storage.usage_repo import UsageLedger
from llm_chat_bot.storage.user_repo import UserRepository

ADMIN_ID = 1
OTHER_MODEL = "openai/gpt-4o-mini"


class FakeProvider(ModelProvider):
    """Provider double that records calls and replays a scripted result."""

    def __init__(self, completion: Optional[Completion] = None, error: Optional[Exception] = None):
        self.completion = completion or Completion(
            content="Hello from the model",
            usage=TokenUsage.of(12, 30),
            cost=0.0021,
            generation_id="gen-1",
        )
        self.error = error
        self.calls: list[tuple[list[dict[str, str]], str]] = []

    async def complete(
        self,
        messages: Sequence[dict[str, str]],
        model: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Completion:
        self.calls.append((list(messages), model))
        if self.error is not None:
            raise self.error
        return self.completion


def assistant_message(content: str, total: int, cost: float, model: str = DEFAULT_MODEL) -> Message:
    prompt = total // 2
    return Message(
        role=Role.ASSISTANT,
        content=content,
        model=model,
        tokens=TokenUsage.of(prompt, total - prompt),
        cost=cost,
    )


def user_message(content: str, model: str = DEFAULT_MODEL) -> Message:
    return Message(role=Role.USER, content=content, model=model)


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "bot.db"))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def users(db):
    return UserRepository(db, admin_ids=[ADMIN_ID], default_model=DEFAULT_MODEL)


@pytest.fixture
def conversations(db):
    return ConversationRepository(db)


@pytest.fixture
def ledger(db):
    return UsageLedger(db)


@pytest_asyncio.fixture
async def owner(users):
    await users.find_or_create(100, "alice")
    return await users.set_whitelisted(100, True)


@pytest_asyncio.fixture
async def conversation(conversations, owner):
    return await conversations.create(owner.id, DEFAULT_MODEL)
