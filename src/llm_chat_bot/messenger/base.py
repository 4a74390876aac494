"""Abstract messenger adapter interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from llm_chat_bot.messenger.models import IncomingMessage, OutgoingMessage


class MessengerAdapter(ABC):
    """Base class for chat transports.

    The adapter owns connecting, polling and reconnecting; it hands every
    incoming text message to the registered callback.
    """

    def __init__(self) -> None:
        self._message_callback: Callable[[IncomingMessage], Awaitable[None]] | None = None

    @abstractmethod
    async def start(self) -> None:
        """Connect to the platform and begin receiving messages."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Gracefully disconnect."""
        ...

    @abstractmethod
    async def send_message(self, message: OutgoingMessage) -> None:
        """Send a message to a specific chat."""
        ...

    @abstractmethod
    async def send_typing_indicator(self, chat_id: str) -> None:
        """Show typing/processing indicator."""
        ...

    def on_message(self, callback: Callable[[IncomingMessage], Awaitable[None]]) -> None:
        """Register the callback invoked for every incoming message."""
        self._message_callback = callback
