"""Tests for command parsing, access control and turn routing in the chat handler."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from structlog.testing import capture_logs

from conftest import ADMIN_ID, OTHER_MODEL, FakeProvider
from llm_chat_bot.bot.handler import ChatHandler, split_message
from llm_chat_bot.config import ChatConfig
from llm_chat_bot.core.session import SessionManager
from llm_chat_bot.core.turns import TurnOrchestrator
from llm_chat_bot.errors import OpenRouterError
from llm_chat_bot.messenger.base import MessengerAdapter
from llm_chat_bot.messenger.models import IncomingMessage, OutgoingMessage


class RecordingAdapter(MessengerAdapter):
    def __init__(self) -> None:
        super().__init__()
        self.sent: list[OutgoingMessage] = []
        self.typing: list[str] = []

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def send_message(self, message: OutgoingMessage) -> None:
        self.sent.append(message)

    async def send_typing_indicator(self, chat_id: str) -> None:
        self.typing.append(chat_id)

    @property
    def last(self) -> str:
        return self.sent[-1].text


def incoming(text: str, user_id: int = 100, username: str = "alice") -> IncomingMessage:
    return IncomingMessage(
        chat_id=str(user_id),
        user_id=user_id,
        username=username,
        text=text,
        timestamp=datetime.now(timezone.utc),
    )


@pytest.fixture
def adapter():
    return RecordingAdapter()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def chat_config():
    return ChatConfig()


@pytest.fixture
def handler(adapter, users, conversations, ledger, provider, chat_config):
    sessions = SessionManager(conversations)
    orchestrator = TurnOrchestrator(conversations, ledger, provider)
    return ChatHandler(adapter, users, sessions, orchestrator, ledger, chat_config)


@pytest_asyncio.fixture
async def admin(users):
    return await users.find_or_create(ADMIN_ID, "root")


class TestAccess:
    @pytest.mark.asyncio
    async def test_start_registers_pending_user(self, handler, adapter, users):
        await handler.handle(incoming("/start", user_id=300, username="dave"))

        assert "pending approval" in adapter.last
        assert await users.get_by_telegram_id(300) is not None

    @pytest.mark.asyncio
    async def test_start_welcomes_whitelisted(self, handler, adapter, owner):
        await handler.handle(incoming("/start"))

        assert "You can start chatting" in adapter.last

    @pytest.mark.asyncio
    async def test_unauthorized_chat_is_rejected(self, handler, adapter, provider):
        await handler.handle(incoming("hello", user_id=300))

        assert "User not authorized" in adapter.last
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_unauthorized_command_is_rejected(self, handler, adapter, users):
        await users.find_or_create(300, "dave")

        await handler.handle(incoming("/usage", user_id=300))

        assert "User not authorized" in adapter.last

    @pytest.mark.asyncio
    async def test_unknown_command(self, handler, adapter, owner):
        await handler.handle(incoming("/frobnicate"))

        assert "Unknown command" in adapter.last

    @pytest.mark.asyncio
    async def test_blank_message_ignored(self, handler, adapter):
        await handler.handle(incoming("   "))

        assert adapter.sent == []


class TestChat:
    @pytest.mark.asyncio
    async def test_chat_without_conversation(self, handler, adapter, owner, provider):
        await handler.handle(incoming("hello"))

        assert "/newchat" in adapter.last
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_newchat_then_chat(self, handler, adapter, owner, conversations, provider):
        await handler.handle(incoming("/newchat"))
        assert "Started a new conversation" in adapter.last

        await handler.handle(incoming("hello"))

        assert adapter.last == "Hello from the model"
        assert adapter.typing == ["100"]
        listed = await conversations.list_by_owner(owner.id)
        assert len(listed) == 1
        assert [m.content for m in listed[0].messages] == ["hello", "Hello from the model"]

    @pytest.mark.asyncio
    async def test_newchat_switches_active_conversation(self, handler, owner, conversations, provider):
        await handler.handle(incoming("/newchat"))
        await handler.handle(incoming("first"))
        await handler.handle(incoming("/newchat"))
        await handler.handle(incoming("second"))

        listed = await conversations.list_by_owner(owner.id)
        contents = sorted(m.content for c in listed for m in c.messages if m.role == "user")
        assert len(listed) == 2
        assert contents == ["first", "second"]
        assert all(len(c.messages) == 2 for c in listed)

    @pytest.mark.asyncio
    async def test_clearchat(self, handler, adapter, owner, conversations):
        await handler.handle(incoming("/newchat"))
        await handler.handle(incoming("hello"))

        await handler.handle(incoming("/clearchat"))

        assert adapter.last == "Conversation history cleared."
        listed = await conversations.list_by_owner(owner.id)
        assert listed[0].messages == []

    @pytest.mark.asyncio
    async def test_changemodel_lists_models(self, handler, adapter, owner):
        await handler.handle(incoming("/newchat"))

        await handler.handle(incoming("/changemodel"))

        assert "Available models" in adapter.last
        assert "(current)" in adapter.last

    @pytest.mark.asyncio
    async def test_changemodel_switches(self, handler, adapter, owner, conversations, provider):
        await handler.handle(incoming("/newchat"))

        await handler.handle(incoming(f"/changemodel {OTHER_MODEL}"))
        await handler.handle(incoming("hello"))

        assert provider.calls[0][1] == OTHER_MODEL

    @pytest.mark.asyncio
    async def test_changemodel_unknown(self, handler, adapter, owner):
        await handler.handle(incoming("/newchat"))

        await handler.handle(incoming("/changemodel acme/not-a-model"))

        assert "Invalid model: acme/not-a-model" in adapter.last

    @pytest.mark.asyncio
    async def test_provider_failure_is_reported(self, adapter, users, conversations, ledger, owner):
        failing = FakeProvider(error=OpenRouterError("OpenRouter API Error: upstream down"))
        handler = ChatHandler(
            adapter,
            users,
            SessionManager(conversations),
            TurnOrchestrator(conversations, ledger, failing),
            ledger,
            ChatConfig(),
        )
        await handler.handle(incoming("/newchat"))

        await handler.handle(incoming("hello"))

        assert adapter.last.startswith("Sorry, something went wrong")
        assert "upstream down" in adapter.last

    @pytest.mark.asyncio
    async def test_hourly_limit(self, adapter, users, conversations, ledger, owner, provider):
        handler = ChatHandler(
            adapter,
            users,
            SessionManager(conversations),
            TurnOrchestrator(conversations, ledger, provider),
            ledger,
            ChatConfig(hourly_token_limit=40),
        )
        await handler.handle(incoming("/newchat"))
        await handler.handle(incoming("one"))  # uses 42 tokens

        await handler.handle(incoming("two"))

        assert "hourly limit" in adapter.last
        assert len(provider.calls) == 1


class TestUsageCommands:
    @pytest.mark.asyncio
    async def test_usage(self, handler, adapter, owner):
        await handler.handle(incoming("/newchat"))
        await handler.handle(incoming("hello"))

        await handler.handle(incoming("/usage"))

        assert "Total tokens: 42" in adapter.last
        assert "Model breakdown" in adapter.last

    @pytest.mark.asyncio
    async def test_help_hides_admin_commands(self, handler, adapter, owner):
        await handler.handle(incoming("/help"))

        assert "/usage" in adapter.last
        assert "/adduser" not in adapter.last

    @pytest.mark.asyncio
    async def test_help_for_admin(self, handler, adapter, admin):
        await handler.handle(incoming("/help", user_id=ADMIN_ID))

        assert "/adduser" in adapter.last


class TestAdminCommands:
    @pytest.mark.asyncio
    async def test_adduser(self, handler, adapter, users, admin):
        await handler.handle(incoming("/adduser 555", user_id=ADMIN_ID))

        assert "555 has been added" in adapter.last
        assert await users.check_access(555)

    @pytest.mark.asyncio
    async def test_adduser_requires_admin(self, handler, adapter, users, owner):
        await handler.handle(incoming("/adduser 555"))

        assert "administrators only" in adapter.last
        assert not await users.check_access(555)

    @pytest.mark.asyncio
    async def test_adduser_bad_id(self, handler, adapter, admin):
        await handler.handle(incoming("/adduser abc", user_id=ADMIN_ID))

        assert "Invalid Telegram ID" in adapter.last

    @pytest.mark.asyncio
    async def test_adduser_usage(self, handler, adapter, admin):
        await handler.handle(incoming("/adduser", user_id=ADMIN_ID))

        assert adapter.last == "Usage: /adduser <telegram_id>"

    @pytest.mark.asyncio
    async def test_removeuser(self, handler, adapter, users, admin, owner):
        await handler.handle(incoming("/removeuser 100", user_id=ADMIN_ID))

        assert "removed from the whitelist" in adapter.last
        assert not await users.check_access(100)

    @pytest.mark.asyncio
    async def test_removeuser_admin_refused(self, handler, adapter, users, admin):
        await handler.handle(incoming(f"/removeuser {ADMIN_ID}", user_id=ADMIN_ID))

        assert "Cannot remove admin" in adapter.last
        assert await users.check_access(ADMIN_ID)

    @pytest.mark.asyncio
    async def test_listusers(self, handler, adapter, admin, owner):
        await handler.handle(incoming("/listusers", user_id=ADMIN_ID))

        assert "Whitelisted Users" in adapter.last
        assert "Username: alice" in adapter.last
        assert "Username: root" in adapter.last

    @pytest.mark.asyncio
    async def test_stats(self, handler, adapter, admin, owner):
        await handler.handle(incoming("/newchat"))
        await handler.handle(incoming("hello"))

        await handler.handle(incoming("/stats", user_id=ADMIN_ID))

        assert "Global usage statistics" in adapter.last
        assert "Total tokens: 42" in adapter.last
        assert "Active users: 1" in adapter.last


class TestSplitMessage:
    def test_short_message_untouched(self):
        assert split_message("hello", max_length=10) == ["hello"]

    def test_splits_on_newline(self):
        chunks = split_message("aaaa\nbbbb\ncccc", max_length=10)

        assert chunks == ["aaaa\nbbbb", "cccc"]

    def test_hard_split_without_newline(self):
        chunks = split_message("x" * 25, max_length=10)

        assert chunks == ["x" * 10, "x" * 10, "x" * 5]


class ExplodingOrchestrator:
    async def send_message(self, conversation_id, content, temperature=None):
        raise RuntimeError("disk on fire")


class TestErrorLogging:
    @pytest.mark.asyncio
    async def test_refusal_logged_as_warning_without_traceback(self, handler, adapter):
        with capture_logs() as logs:
            await handler.handle(incoming("hello", user_id=300))

        refused = [entry for entry in logs if entry["event"] == "message_refused"]
        assert len(refused) == 1
        assert refused[0]["log_level"] == "warning"
        assert refused[0]["error_code"] == "AUTHORIZATION_ERROR"
        assert "exc_info" not in refused[0]
        assert not any(entry["event"] == "message_handling_failed" for entry in logs)

    @pytest.mark.asyncio
    async def test_unexpected_error_logged_with_traceback(self, adapter, users, conversations, ledger, owner):
        handler = ChatHandler(
            adapter,
            users,
            SessionManager(conversations),
            ExplodingOrchestrator(),
            ledger,
            ChatConfig(),
        )
        await handler.handle(incoming("/newchat"))

        with capture_logs() as logs:
            await handler.handle(incoming("hello"))

        failed = [entry for entry in logs if entry["event"] == "message_handling_failed"]
        assert len(failed) == 1
        assert failed[0]["log_level"] == "error"
        assert failed[0]["exc_info"] is True
        assert adapter.last == "Sorry, something went wrong: disk on fire"


class TestCommandDetection:
    @pytest.mark.asyncio
    async def test_leading_whitespace_command(self, handler, adapter, owner, provider):
        await handler.handle(incoming("  /help"))

        assert "/usage" in adapter.last
        assert provider.calls == []

    def test_is_command(self):
        assert incoming("/start").is_command
        assert not incoming("hello /start").is_command
