"""Data models for storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True, slots=True)
class TokenUsage:
    prompt: int
    completion: int
    total: int

    @classmethod
    def of(cls, prompt: int, completion: int) -> TokenUsage:
        return cls(prompt=prompt, completion=completion, total=prompt + completion)


@dataclass
class User:
    id: str
    telegram_id: int
    username: str
    is_admin: bool = False
    is_whitelisted: bool = False
    default_model: str = ""
    notifications: bool = True
    active_conversation_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_active_at: datetime = field(default_factory=utcnow)

    @property
    def has_access(self) -> bool:
        return self.is_whitelisted or self.is_admin


@dataclass
class Message:
    role: Role
    content: str
    model: str
    timestamp: datetime = field(default_factory=utcnow)
    tokens: Optional[TokenUsage] = None
    cost: Optional[float] = None

    def to_provider(self) -> dict[str, str]:
        """Shape expected by chat-completion APIs."""
        return {"role": str(self.role), "content": self.content}


@dataclass
class Conversation:
    id: str
    owner_id: str
    model: str
    title: Optional[str] = None
    messages: list[Message] = field(default_factory=list)
    total_tokens: int = 0
    total_cost: float = 0.0
    created_at: datetime = field(default_factory=utcnow)
    last_message_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class UsageRecord:
    id: int
    owner_id: str
    conversation_id: str
    model: str
    tokens: TokenUsage
    cost: float
    timestamp: datetime


@dataclass
class ModelTotals:
    tokens: int = 0
    cost: float = 0.0
    users: int = 0


@dataclass
class UserSummary:
    total_tokens: int = 0
    total_cost: float = 0.0
    model_breakdown: dict[str, ModelTotals] = field(default_factory=dict)


@dataclass
class GlobalSummary:
    total_tokens: int = 0
    total_cost: float = 0.0
    # Sum of per-model user counts, i.e. active (model, user) pairs
    active_users: int = 0
    model_usage: dict[str, ModelTotals] = field(default_factory=dict)
    distinct_users: int = 0


@dataclass
class ConversationStats:
    total_conversations: int = 0
    total_messages: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
