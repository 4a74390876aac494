"""Chat handler: parses commands, checks access and runs conversation turns."""

from __future__ import annotations

from typing import Awaitable, Callable

from llm_chat_bot.ai.catalog import AVAILABLE_MODELS
from llm_chat_bot.config import ChatConfig
from llm_chat_bot.core.session import SessionManager
from llm_chat_bot.core.turns import TurnOrchestrator
from llm_chat_bot.errors import (
    AppError,
    AuthorizationError,
    Operation,
    RateLimitError,
    format_error_message,
)
from llm_chat_bot.log import get_logger
from llm_chat_bot.messenger.base import MessengerAdapter
from llm_chat_bot.messenger.models import IncomingMessage, OutgoingMessage
from llm_chat_bot.storage.models import GlobalSummary, User, UserSummary
from llm_chat_bot.storage.user_repo import UserRepository
from llm_chat_bot.storage.usage_repo import UsageLedger

logger = get_logger(__name__)

CommandFn = Callable[[IncomingMessage, User, list[str]], Awaitable[None]]

HELP_LINES = [
    "/newchat - Start a fresh conversation",
    "/clearchat - Clear conversation history",
    "/changemodel [model] - Switch between available models",
    "/usage - View your usage statistics",
    "/help - Show this help message",
]

ADMIN_HELP_LINES = [
    "",
    "Admin Commands:",
    "/adduser <telegram_id> - Add user to whitelist",
    "/removeuser <telegram_id> - Remove user from whitelist",
    "/listusers - List all users",
    "/stats - Global usage statistics",
]


class ChatHandler:
    """Handles the full flow: message -> user -> command or turn -> reply.

    Access control lives here: every command except ``/start`` requires a
    whitelisted or admin user. The services below this layer assume the
    caller is already authorized.
    """

    def __init__(
        self,
        adapter: MessengerAdapter,
        users: UserRepository,
        sessions: SessionManager,
        orchestrator: TurnOrchestrator,
        ledger: UsageLedger,
        chat_config: ChatConfig,
    ):
        self._adapter = adapter
        self._users = users
        self._sessions = sessions
        self._orchestrator = orchestrator
        self._ledger = ledger
        self._config = chat_config
        self._commands: dict[str, CommandFn] = {
            "/newchat": self._cmd_newchat,
            "/clearchat": self._cmd_clearchat,
            "/changemodel": self._cmd_changemodel,
            "/usage": self._cmd_usage,
            "/help": self._cmd_help,
            "/adduser": self._cmd_adduser,
            "/removeuser": self._cmd_removeuser,
            "/listusers": self._cmd_listusers,
            "/stats": self._cmd_stats,
        }

    async def handle(self, message: IncomingMessage) -> None:
        """Process an incoming message end-to-end."""
        text = message.text.strip()
        if not text:
            return

        try:
            if message.is_command:
                await self._dispatch(message, text)
            else:
                user = await self._authorize(message)
                await self._handle_turn(message, user, text)
        except AppError as e:
            logger.warning(
                "message_refused",
                chat_id=message.chat_id,
                user_id=message.user_id,
                error_code=e.code,
                error=e.message,
            )
            await self._reply(message, f"Sorry, something went wrong: {e.message}")
        except Exception as e:
            logger.error(
                "message_handling_failed",
                chat_id=message.chat_id,
                user_id=message.user_id,
                error=str(e),
                exc_info=True,
            )
            detail = str(e) or "An unexpected error occurred"
            await self._reply(message, f"Sorry, something went wrong: {detail}")

    async def _dispatch(self, message: IncomingMessage, text: str) -> None:
        name, *args = text.split()
        # "/usage@my_bot" in group chats
        name = name.split("@", 1)[0].lower()
        logger.info("command_received", command=name, chat_id=message.chat_id)

        if name == "/start":
            await self._cmd_start(message)
            return

        command = self._commands.get(name)
        if command is None:
            await self._reply(message, "Unknown command. Use /help to see available commands.")
            return

        user = await self._authorize(message)
        await command(message, user, args)

    async def _authorize(self, message: IncomingMessage) -> User:
        user = await self._users.get_by_telegram_id(message.user_id)
        if user is None or not user.has_access:
            raise AuthorizationError(
                format_error_message(
                    Operation.AUTH_ACCESS, "User not authorized", {"user_id": message.user_id}
                ),
                {"user_id": message.user_id},
            )
        await self._users.update_last_active(message.user_id)
        return user

    async def _handle_turn(self, message: IncomingMessage, user: User, text: str) -> None:
        limit = self._config.hourly_token_limit
        if limit and not await self._ledger.within_hourly_limit(user.id, limit):
            raise RateLimitError(
                format_error_message(
                    Operation.RATE_LIMIT,
                    f"hourly limit of {limit:,} tokens reached",
                    {"user_id": message.user_id},
                )
            )

        conversation = await self._sessions.current(user)
        if conversation is None:
            await self._reply(message, "Start a new conversation first with /newchat")
            return

        await self._adapter.send_typing_indicator(message.chat_id)
        result = await self._orchestrator.send_message(conversation.id, text)
        await self._reply(message, result.assistant_message.content)

    async def _cmd_start(self, message: IncomingMessage) -> None:
        user = await self._users.find_or_create(message.user_id, message.username)
        if user.has_access:
            text = "Welcome! You can start chatting with me. Use /help to see available commands."
        else:
            text = "Welcome! Your access is pending approval. Please contact an administrator."
        await self._reply(message, text)

    async def _cmd_newchat(self, message: IncomingMessage, user: User, args: list[str]) -> None:
        conversation = await self._sessions.start_new(user)
        model = AVAILABLE_MODELS[conversation.model].display_name
        await self._reply(message, f"Started a new conversation with {model}. You can start chatting!")

    async def _cmd_clearchat(self, message: IncomingMessage, user: User, args: list[str]) -> None:
        conversation = await self._sessions.current(user)
        if conversation is None:
            await self._reply(message, "No active conversation to clear.")
            return
        await self._sessions.repo.clear(conversation.id)
        await self._reply(message, "Conversation history cleared.")

    async def _cmd_changemodel(self, message: IncomingMessage, user: User, args: list[str]) -> None:
        conversation = await self._sessions.current(user)
        if conversation is None:
            await self._reply(message, "Start a new conversation first with /newchat")
            return

        if not args:
            lines = ["Available models (use /changemodel <model>):"]
            for model_id, info in AVAILABLE_MODELS.items():
                marker = " (current)" if model_id == conversation.model else ""
                lines.append(f"• {model_id} - {info.display_name}, {info.context_window:,} tokens{marker}")
            await self._reply(message, "\n".join(lines))
            return

        updated = await self._sessions.repo.set_model(conversation.id, args[0])
        await self._reply(message, f"Switched to {AVAILABLE_MODELS[updated.model].display_name}")

    async def _cmd_usage(self, message: IncomingMessage, user: User, args: list[str]) -> None:
        summary = await self._ledger.user_summary(user.id)
        await self._reply(message, "Your usage statistics:\n" + format_user_summary(summary))

    async def _cmd_help(self, message: IncomingMessage, user: User, args: list[str]) -> None:
        lines = list(HELP_LINES)
        if user.is_admin:
            lines += ADMIN_HELP_LINES
        await self._reply(message, "\n".join(lines))

    async def _cmd_adduser(self, message: IncomingMessage, user: User, args: list[str]) -> None:
        telegram_id = await self._admin_target(message, user, args, "/adduser")
        if telegram_id is None:
            return
        await self._users.find_or_create(telegram_id, f"user_{telegram_id}")
        await self._users.set_whitelisted(telegram_id, True)
        await self._reply(message, f"User {telegram_id} has been added to the whitelist.")

    async def _cmd_removeuser(self, message: IncomingMessage, user: User, args: list[str]) -> None:
        telegram_id = await self._admin_target(message, user, args, "/removeuser")
        if telegram_id is None:
            return
        await self._users.set_whitelisted(telegram_id, False)
        await self._reply(message, f"User {telegram_id} has been removed from the whitelist.")

    async def _cmd_listusers(self, message: IncomingMessage, user: User, args: list[str]) -> None:
        if not await self._require_admin(message, user):
            return
        users = await self._users.list_whitelisted()
        if not users:
            await self._reply(message, "No whitelisted users found.")
            return

        entries = []
        for listed in users:
            summary = await self._ledger.user_summary(listed.id)
            entries.append(
                f"• ID: {listed.telegram_id}\n"
                f"  Username: {listed.username}\n"
                f"  Admin: {'Yes' if listed.is_admin else 'No'}\n"
                + format_user_summary(summary, indent="  ")
            )
        await self._reply(message, "Whitelisted Users:\n\n" + "\n\n".join(entries))

    async def _cmd_stats(self, message: IncomingMessage, user: User, args: list[str]) -> None:
        if not await self._require_admin(message, user):
            return
        summary = await self._ledger.global_summary()
        await self._reply(message, format_global_summary(summary))

    async def _require_admin(self, message: IncomingMessage, user: User) -> bool:
        if not user.is_admin:
            await self._reply(message, "This command is for administrators only.")
            return False
        return True

    async def _admin_target(
        self, message: IncomingMessage, user: User, args: list[str], command: str
    ) -> int | None:
        if not await self._require_admin(message, user):
            return None
        if len(args) != 1:
            await self._reply(message, f"Usage: {command} <telegram_id>")
            return None
        try:
            return int(args[0])
        except ValueError:
            await self._reply(message, "Invalid Telegram ID. Please provide a valid number.")
            return None

    async def _reply(self, message: IncomingMessage, text: str) -> None:
        for chunk in split_message(text, max_length=self._config.max_message_length):
            await self._adapter.send_message(OutgoingMessage(chat_id=message.chat_id, text=chunk))


def format_user_summary(summary: UserSummary, indent: str = "") -> str:
    lines = [
        f"{indent}• Total tokens: {summary.total_tokens:,}",
        f"{indent}• Total cost: ${summary.total_cost:.4f}",
    ]
    if summary.model_breakdown:
        lines.append(f"{indent}Model breakdown:")
        for model, totals in summary.model_breakdown.items():
            lines.append(f"{indent}{model}:")
            lines.append(f"{indent}  • Tokens: {totals.tokens:,}")
            lines.append(f"{indent}  • Cost: ${totals.cost:.4f}")
    return "\n".join(lines)


def format_global_summary(summary: GlobalSummary) -> str:
    lines = [
        "Global usage statistics:",
        f"• Total tokens: {summary.total_tokens:,}",
        f"• Total cost: ${summary.total_cost:.4f}",
        f"• Active users: {summary.distinct_users} ({summary.active_users} user-model pairs)",
    ]
    for model, totals in summary.model_usage.items():
        lines.append(f"{model}:")
        lines.append(f"  • Tokens: {totals.tokens:,}")
        lines.append(f"  • Cost: ${totals.cost:.4f}")
        lines.append(f"  • Users: {totals.users}")
    return "\n".join(lines)


def split_message(text: str, max_length: int = 4000) -> list[str]:
    """Split a message into chunks that fit within platform limits."""
    if len(text) <= max_length:
        return [text]

    chunks = []
    while text:
        if len(text) <= max_length:
            chunks.append(text)
            break
        # Try to split at a newline
        split_pos = text.rfind("\n", 0, max_length)
        if split_pos <= 0:
            split_pos = max_length
        chunks.append(text[:split_pos])
        text = text[split_pos:].lstrip("\n")
    return chunks
