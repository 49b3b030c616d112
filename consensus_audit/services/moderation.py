"""
Moderation Provider - Content policy checks before any paid work.
"""

from typing import Protocol

import httpx
from structlog import get_logger

from consensus_audit.config import settings
from consensus_audit.exceptions import ProviderError
from consensus_audit.models.domain import ModerationVerdict

logger = get_logger(__name__)


class ModerationProvider(Protocol):
    """Moderation capability: `moderate(text) -> {flagged, categories, scores}`."""

    async def moderate(self, text: str) -> ModerationVerdict:
        """
        Classify text against the content policy.

        Raises:
            ProviderError: If the capability itself fails
        """
        ...


class OpenAIModerationProvider:
    """Moderation via the OpenAI-compatible `/moderations` endpoint."""

    def __init__(
        self,
        url: str,
        api_key: str,
        model: str,
        timeout_seconds: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.model = model
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def moderate(self, text: str) -> ModerationVerdict:
        """Submit text for moderation and parse the first result."""
        try:
            response = await self._client.post(
                self.url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"model": self.model, "input": text},
            )
        except httpx.HTTPError as exc:
            raise ProviderError(self.model, f"moderation transport error: {exc}") from exc

        if response.status_code >= 400:
            raise ProviderError(
                self.model,
                f"moderation HTTP {response.status_code}",
                http_status=response.status_code,
            )

        try:
            result = response.json()["results"][0]
            flagged = bool(result["flagged"])
            categories = tuple(
                name for name, hit in result.get("categories", {}).items() if hit
            )
            scores = {
                name: float(score)
                for name, score in result.get("category_scores", {}).items()
            }
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ProviderError(self.model, "malformed moderation response") from exc

        return ModerationVerdict(flagged=flagged, categories=categories, scores=scores)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()


_provider: OpenAIModerationProvider | None = None


def get_moderation_provider() -> OpenAIModerationProvider:
    """Get or create the shared moderation provider."""
    global _provider
    if _provider is None:
        _provider = OpenAIModerationProvider(
            url=settings.moderation_url,
            api_key=settings.moderation_api_key,
            model=settings.moderation_model,
            timeout_seconds=settings.moderation_timeout_seconds,
        )
    return _provider


async def close_moderation_provider() -> None:
    """Close the shared moderation provider (for graceful shutdown)."""
    global _provider
    if _provider is not None:
        await _provider.aclose()
        _provider = None
