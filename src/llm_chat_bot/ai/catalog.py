"""Static catalog of the OpenRouter models the bot may use."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType

from llm_chat_bot.errors import ModelError


@dataclass(frozen=True, slots=True)
class ModelInfo:
    display_name: str
    context_window: int
    cost_per_1k_input: float
    cost_per_1k_output: float


DEFAULT_MODEL = "deepseek/deepseek-chat:free"

AVAILABLE_MODELS: MappingProxyType[str, ModelInfo] = MappingProxyType({
    "openai/o3-mini-high": ModelInfo("o3-mini-high", 100_000, 0.008, 0.024),
    "google/gemini-2.0-flash-lite-preview-02-05:free": ModelInfo(
        "gemini-2.0-flash-lite-preview-02-05:free", 8192, 0.01, 0.03
    ),
    "google/gemini-2.0-pro-exp-02-05:free": ModelInfo(
        "gemini-2.0-pro-exp-02-05:free", 4096, 0.001, 0.002
    ),
    "qwen/qwen-vl-plus:free": ModelInfo("qwen-vl-plus:free", 8192, 0.0002, 0.0002),
    "cognitivecomputations/dolphin3.0-r1-mistral-24b:free": ModelInfo(
        "Dolphin Mistral 24B", 16384, 0.0, 0.0
    ),
    "deepseek/deepseek-r1:free": ModelInfo("deepseek-r1:free", 200_000, 0.008, 0.024),
    "deepseek/deepseek-chat:free": ModelInfo("deepseek-chat:free", 4096, 0.0007, 0.0007),
    "openai/o3-mini": ModelInfo("o3-mini", 8192, 0.0005, 0.0005),
    "openai/gpt-4o-mini": ModelInfo("gpt-4o-mini", 4096, 0.0005, 0.0005),
})


def is_known_model(model: str) -> bool:
    return model in AVAILABLE_MODELS


def get_model_info(model: str) -> ModelInfo:
    """Return catalog metadata for *model* or raise ``ModelError``."""
    try:
        return AVAILABLE_MODELS[model]
    except KeyError:
        raise ModelError(f"Invalid model: {model}", {"model": model}) from None


def estimate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Estimate a call's cost from catalog pricing (USD per 1K tokens)."""
    info = get_model_info(model)
    return (
        prompt_tokens / 1000 * info.cost_per_1k_input
        + completion_tokens / 1000 * info.cost_per_1k_output
    )
