"""Model provider abstraction and the OpenRouter backend."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import httpx

from llm_chat_bot.ai.catalog import get_model_info
from llm_chat_bot.config import OpenRouterConfig
from llm_chat_bot.errors import OpenRouterError, Operation, format_error_message
from llm_chat_bot.log import get_logger
from llm_chat_bot.storage.models import TokenUsage

logger = get_logger(__name__)


@dataclass(frozen=True)
class Completion:
    """Final result of one model call, with authoritative usage and cost."""

    content: str
    usage: TokenUsage
    cost: float
    generation_id: str = ""


class ModelProvider(ABC):
    """Chat-completion backend. The model is chosen per call, never stored."""

    @abstractmethod
    async def complete(
        self,
        messages: Sequence[dict[str, str]],
        model: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Completion:
        """Send *messages* to *model* and return the finished completion.

        Raises ``ModelError`` for a model outside the catalog and
        ``OpenRouterError`` when the call itself fails.
        """
        ...

    async def close(self) -> None:
        """Release network resources."""


class OpenRouterClient(ModelProvider):
    """OpenRouter chat completions over httpx.

    The usage block of a completion response is not final until OpenRouter
    has settled the generation, so after each completion the client waits
    ``stats_delay`` seconds and reads ``/generation`` for the token counts
    and cost it reports.
    """

    def __init__(self, config: OpenRouterConfig, http_client: httpx.AsyncClient | None = None):
        self._config = config
        self._client = http_client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout,
        )
        self._headers = {
            "Authorization": f"Bearer {config.api_key}",
            "HTTP-Referer": config.referer,
            "Content-Type": "application/json",
        }
        logger.info("openrouter_client_initialized", default_model=config.default_model)

    @property
    def default_model(self) -> str:
        return self._config.default_model

    async def complete(
        self,
        messages: Sequence[dict[str, str]],
        model: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Completion:
        get_model_info(model)
        payload = {
            "model": model,
            "messages": list(messages),
            "temperature": self._config.temperature if temperature is None else temperature,
            "max_tokens": self._config.max_tokens if max_tokens is None else max_tokens,
        }

        logger.debug("api_request", model=model, message_count=len(payload["messages"]))
        data = await self._request("POST", "/chat/completions", json=payload, model=model)
        try:
            generation_id = data["id"]
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise self._malformed(e, model) from e
        if not isinstance(content, str):
            raise self._malformed("completion has no text content", model)

        # Generation stats lag behind the completion response
        await asyncio.sleep(self._config.stats_delay)

        stats = await self._request(
            "GET", "/generation", params={"id": generation_id}, model=model
        )
        try:
            generation = stats["data"]
            usage = TokenUsage.of(
                int(generation["tokens_prompt"]), int(generation["tokens_completion"])
            )
            cost = float(generation["total_cost"])
        except (KeyError, TypeError, ValueError) as e:
            raise self._malformed(e, model) from e

        logger.info(
            "api_response",
            model=model,
            generation_id=generation_id,
            prompt_tokens=usage.prompt,
            completion_tokens=usage.completion,
            cost=cost,
        )
        return Completion(
            content=content, usage=usage, cost=cost, generation_id=generation_id
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, *, model: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, url, headers=self._headers, **kwargs)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            detail = _error_detail(e.response)
            logger.error(
                "openrouter_api_error",
                status=e.response.status_code,
                url=url,
                detail=detail,
            )
            raise OpenRouterError(
                format_error_message(
                    Operation.MODEL_REQUEST, f"OpenRouter API Error: {detail}", {"model": model}
                ),
                {"status": e.response.status_code, "url": url},
            ) from e
        except httpx.HTTPError as e:
            logger.error("openrouter_transport_error", url=url, error=str(e))
            raise OpenRouterError(
                format_error_message(Operation.MODEL_REQUEST, e, {"model": model}),
                {"url": url},
            ) from e
        except ValueError as e:
            raise self._malformed(e, model) from e
        if not isinstance(data, dict):
            raise self._malformed("response body is not an object", model)
        return data

    @staticmethod
    def _malformed(error: object, model: str) -> OpenRouterError:
        return OpenRouterError(
            format_error_message(Operation.MODEL_RESPONSE, error, {"model": model}),
            {"model": model},
        )


def _error_detail(response: httpx.Response) -> str:
    """Best description of a failed response: the API's error message if it sent one."""
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error)
    if error:
        return str(error)
    return response.reason_phrase
