"""Build the provider message list for a turn from stored conversation history."""

from __future__ import annotations

from typing import Any, Sequence

from llm_chat_bot.ai.catalog import get_model_info
from llm_chat_bot.storage.models import Message

# Rough characters-per-token ratio used to keep history inside a model's window.
_CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return len(text) // _CHARS_PER_TOKEN + 1


def build_messages(
    history: Sequence[Message],
    pending: Message,
    model: str,
    reserve_tokens: int = 0,
) -> list[dict[str, Any]]:
    """Convert *history* plus the *pending* user message into provider messages.

    *history* is the already count-bounded context window, oldest first.
    Oldest messages are dropped until the estimate fits the model's context
    window minus *reserve_tokens* (room for the reply). The pending message
    is always sent, even on its own.
    """
    budget = get_model_info(model).context_window - reserve_tokens
    used = estimate_tokens(pending.content)

    kept: list[Message] = []
    for message in reversed(history):
        cost = estimate_tokens(message.content)
        if used + cost > budget:
            break
        kept.append(message)
        used += cost
    kept.reverse()

    return [m.to_provider() for m in kept] + [pending.to_provider()]
