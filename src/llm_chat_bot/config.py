"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from llm_chat_bot.ai.catalog import DEFAULT_MODEL, is_known_model
from llm_chat_bot.errors import ConfigurationError


class TelegramConfig(BaseModel):
    token: str
    admin_ids: list[int] = Field(default_factory=list)

    @field_validator("admin_ids", mode="before")
    @classmethod
    def _split_admin_ids(cls, value: object) -> object:
        # ADMIN_TELEGRAM_IDS arrives as "123, 456" after interpolation
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        if isinstance(value, int):
            return [value]
        return value


class OpenRouterConfig(BaseModel):
    api_key: str
    base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = DEFAULT_MODEL
    max_tokens: int = 2000
    temperature: float = 0.7
    timeout: float = 60.0
    stats_delay: float = 1.0  # seconds before the generation stats lookup
    referer: str = "llm-telegram-chat-bot"

    @field_validator("default_model")
    @classmethod
    def _known_model(cls, value: str) -> str:
        if not is_known_model(value):
            raise ValueError(f"Unknown model: {value}")
        return value


class ChatConfig(BaseModel):
    context_limit: int = Field(default=10, ge=1)
    hourly_token_limit: int = Field(default=100_000, ge=0)  # 0 disables the check
    max_message_length: int = Field(default=4000, gt=0)


class StorageConfig(BaseModel):
    db_path: str = "./data/llm_chat_bot.db"


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    data_dir: str = "./data"
    telegram: TelegramConfig
    openrouter: OpenRouterConfig
    chat: ChatConfig = Field(default_factory=ChatConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation.

    Raises ``FileNotFoundError`` for a missing file and ``ConfigurationError``
    for YAML that does not parse or values that fail validation.
    """
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    try:
        # data_dir may be referenced as ${data_dir} elsewhere in the file
        raw_data = yaml.safe_load(raw_text) or {}
        data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

        interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
        data = yaml.safe_load(interpolated) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Invalid YAML in {config_file}: {e}", {"path": str(config_file)}
        ) from e

    try:
        return AppConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration in {config_file}: {e}", {"path": str(config_file)}
        ) from e
