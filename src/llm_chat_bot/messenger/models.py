"""Platform-neutral message models passed between the adapter and the handler."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True, slots=True)
class IncomingMessage:
    chat_id: str
    user_id: int
    username: str
    text: str
    timestamp: datetime

    @property
    def is_command(self) -> bool:
        return self.text.lstrip().startswith("/")


@dataclass(frozen=True, slots=True)
class OutgoingMessage:
    chat_id: str
    text: str
