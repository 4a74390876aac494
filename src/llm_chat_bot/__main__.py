"""CLI entry point for llm-chat-bot."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

from llm_chat_bot.ai.catalog import AVAILABLE_MODELS
from llm_chat_bot.app import ChatBotApp
from llm_chat_bot.config import AppConfig, load_config
from llm_chat_bot.errors import ConfigurationError
from llm_chat_bot.log import setup_logging
from llm_chat_bot.storage.database import Database
from llm_chat_bot.storage.user_repo import UserRepository


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
    parser.add_argument("-e", "--env", default=".env", help="Path to .env file")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="llm-chat-bot",
        description="Telegram chat bot for OpenRouter models with usage accounting",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    _add_config_args(subparsers.add_parser("start", help="Start the bot"))
    _add_config_args(subparsers.add_parser("config-check", help="Validate configuration"))
    _add_config_args(subparsers.add_parser("model-info", help="Show the model catalog"))
    _add_config_args(subparsers.add_parser("init-db", help="Create the database schema"))

    add_user_parser = subparsers.add_parser("add-user", help="Register and whitelist a user")
    _add_config_args(add_user_parser)
    add_user_parser.add_argument("telegram_id", type=int, help="Telegram user id")
    add_user_parser.add_argument("--username", default=None, help="Telegram username")
    add_user_parser.add_argument(
        "--no-whitelist", action="store_true", help="Register without whitelisting"
    )

    args = parser.parse_args()

    if args.command is None:
        # Default to start
        args.command = "start"
        args.config = "config.yaml"
        args.env = ".env"

    if args.command == "config-check":
        _check_config(args.config, args.env)
    elif args.command == "model-info":
        _model_info(args.config, args.env)
    elif args.command == "init-db":
        config = _load_or_exit(args.config, args.env)
        asyncio.run(_init_db(config))
    elif args.command == "add-user":
        config = _load_or_exit(args.config, args.env)
        asyncio.run(
            _add_user(config, args.telegram_id, args.username, not args.no_whitelist)
        )
    elif args.command == "start":
        _run(args.config, args.env)


def _load_or_exit(config_path: str, env_path: str) -> AppConfig:
    try:
        config = load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Run 'python install.py' first or copy config.example.yaml to config.yaml")
        sys.exit(1)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    setup_logging(config.log_level, json_output=config.log_format == "json")
    return config


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    try:
        config = load_config(config_path, env_path)
    except (FileNotFoundError, ConfigurationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Configuration valid: {config_path}")
    print(f"  Data directory: {config.data_dir}")
    print(f"  Storage: {config.storage.db_path}")
    print(f"  Default model: {config.openrouter.default_model}")
    print(f"  Admins: {', '.join(map(str, config.telegram.admin_ids)) or '(none)'}")
    print(f"  Context limit: {config.chat.context_limit} messages")
    print(f"  Hourly token limit: {config.chat.hourly_token_limit:,}")


def _model_info(config_path: str, env_path: str) -> None:
    """Show the model catalog, marking the configured default."""
    try:
        default_model = load_config(config_path, env_path).openrouter.default_model
    except (FileNotFoundError, ConfigurationError):
        default_model = None

    print("Available Models")
    print("=" * 50)
    for model_id, info in AVAILABLE_MODELS.items():
        marker = "  (default)" if model_id == default_model else ""
        print(f"\n  {model_id}{marker}")
        print(f"    Name    : {info.display_name}")
        print(f"    Context : {info.context_window:,} tokens")
        print(f"    Input   : ${info.cost_per_1k_input} / 1K tokens")
        print(f"    Output  : ${info.cost_per_1k_output} / 1K tokens")
    print()


async def _init_db(config: AppConfig) -> None:
    db = Database(config.storage.db_path)
    await db.initialize()
    await db.close()
    print(f"Database ready: {config.storage.db_path}")


async def _add_user(
    config: AppConfig, telegram_id: int, username: str | None, whitelist: bool
) -> None:
    db = Database(config.storage.db_path)
    await db.initialize()
    try:
        users = UserRepository(
            db,
            admin_ids=config.telegram.admin_ids,
            default_model=config.openrouter.default_model,
        )
        user = await users.find_or_create(telegram_id, username or f"user_{telegram_id}")
        if whitelist and not user.is_whitelisted:
            user = await users.set_whitelisted(telegram_id, True)
        print(
            f"User {user.telegram_id} ({user.username}): "
            f"whitelisted={user.is_whitelisted} admin={user.is_admin}"
        )
    finally:
        await db.close()


def _run(config_path: str, env_path: str) -> None:
    """Load config and start the application."""
    config = _load_or_exit(config_path, env_path)

    async def _async_main() -> None:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: stop_event.set())

        app = ChatBotApp(config)
        await app.start()
        try:
            await stop_event.wait()
        finally:
            await app.stop()

    asyncio.run(_async_main())


if __name__ == "__main__":
    main()
