"""
LLM Provider - Provider-agnostic model invocation.

The pipeline only needs `invoke(model_id, messages) -> {text, latency}`.
ChatCompletionsProvider implements it against any OpenAI-compatible
gateway (OpenRouter by default) using httpx.
"""

import time
from collections.abc import Sequence
from typing import Any, Protocol

import httpx
from structlog import get_logger

from consensus_audit.config import settings
from consensus_audit.exceptions import ProviderError
from consensus_audit.models.domain import ChatMessage, ModelReply

logger = get_logger(__name__)

MAX_ERROR_BODY_CHARS = 500


class LLMProvider(Protocol):
    """
    Model invocation protocol.

    Any gateway (OpenRouter, Together, a local server) must implement this
    interface so the council stays vendor-agnostic.
    """

    async def invoke(
        self,
        model_id: str,
        messages: Sequence[ChatMessage],
        image_url: str | None = None,
    ) -> ModelReply:
        """
        Invoke a model with chat messages.

        Args:
            model_id: Gateway model identifier (e.g. "deepseek/deepseek-r1")
            messages: Ordered chat messages
            image_url: Optional document/image URL attached to the last user message

        Returns:
            Model reply text with wall-clock latency

        Raises:
            ProviderError: Timeout, non-2xx status or malformed response
        """
        ...


class ChatCompletionsProvider:
    """OpenAI-compatible `/chat/completions` implementation of LLMProvider."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def invoke(
        self,
        model_id: str,
        messages: Sequence[ChatMessage],
        image_url: str | None = None,
    ) -> ModelReply:
        """Invoke a model through the chat completions endpoint."""
        start = time.perf_counter()

        try:
            response = await self._client.post(
                f"{self.base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": model_id,
                    "messages": _serialize_messages(messages, image_url),
                },
            )
        except httpx.TimeoutException as exc:
            raise ProviderError(model_id, "request timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(model_id, f"transport error: {exc}") from exc

        latency_ms = int((time.perf_counter() - start) * 1000)

        if response.status_code >= 400:
            raise ProviderError(
                model_id,
                f"HTTP {response.status_code}: {response.text[:MAX_ERROR_BODY_CHARS]}",
                http_status=response.status_code,
            )

        text = _extract_text(model_id, response)

        logger.debug("model_invoked", model_id=model_id, latency_ms=latency_ms)
        return ModelReply(model_id=model_id, text=text, latency_ms=latency_ms)

    async def ping(self) -> int:
        """Check gateway reachability; returns the HTTP status of the models listing."""
        response = await self._client.get(
            f"{self.base_url}/models",
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        return response.status_code

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()


def _serialize_messages(
    messages: Sequence[ChatMessage], image_url: str | None
) -> list[dict[str, Any]]:
    """Convert messages to wire format, attaching the image to the last user message."""
    payload: list[dict[str, Any]] = [{"role": m.role, "content": m.content} for m in messages]
    if image_url is None:
        return payload

    for message in reversed(payload):
        if message["role"] == "user":
            message["content"] = [
                {"type": "text", "text": message["content"]},
                {"type": "image_url", "image_url": {"url": image_url}},
            ]
            break
    return payload


def _extract_text(model_id: str, response: httpx.Response) -> str:
    """Pull the assistant text out of a chat completions body."""
    try:
        body = response.json()
        content = body["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        raise ProviderError(model_id, "malformed response body") from exc

    if not isinstance(content, str) or not content.strip():
        raise ProviderError(model_id, "empty response")
    return content


# Process-wide provider, created lazily and closed on shutdown
_provider: ChatCompletionsProvider | None = None


def get_llm_provider() -> ChatCompletionsProvider:
    """Get or create the shared LLM provider."""
    global _provider
    if _provider is None:
        _provider = ChatCompletionsProvider(
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
            timeout_seconds=settings.llm_timeout_seconds,
        )
    return _provider


async def close_llm_provider() -> None:
    """Close the shared LLM provider (for graceful shutdown)."""
    global _provider
    if _provider is not None:
        await _provider.aclose()
        _provider = None
