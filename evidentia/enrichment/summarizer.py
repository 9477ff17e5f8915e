"""AI summarization of analyzed evidence.

Summarization is an optional stage. The default ``DisabledSummarizer``
returns None; ``HttpSummarizer`` posts the evidence excerpt and findings to
a configured HTTP endpoint.
"""

import logging
from typing import Any, Protocol

import httpx

from evidentia.config import Settings
from evidentia.exceptions import ServiceUnavailableError

logger = logging.getLogger(__name__)


class Summarizer(Protocol):
    async def summarize(self, content: str, options: dict[str, Any] | None = None) -> str | None:
        ...


class DisabledSummarizer:
    """Summarizer used when AI summarization is turned off."""

    async def summarize(self, content: str, options: dict[str, Any] | None = None) -> str | None:
        return None


class HttpSummarizer:
    """Summarizer backed by an HTTP completion endpoint.

    The endpoint receives ``{"content": ..., "options": ...}`` and is
    expected to answer with ``{"summary": "..."}``.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str = "",
        timeout: float = 60.0,
        max_input_chars: int = 20000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the summarizer.

        Args:
            endpoint: Summarization endpoint URL
            api_key: Bearer token sent with each request
            timeout: Request timeout in seconds
            max_input_chars: Evidence text beyond this is truncated
            transport: Optional httpx transport (mock transports in tests)
        """
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout
        self.max_input_chars = max_input_chars
        self._transport = transport

    async def summarize(self, content: str, options: dict[str, Any] | None = None) -> str | None:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = {
            "content": content[: self.max_input_chars],
            "truncated": len(content) > self.max_input_chars,
            "options": options or {},
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.endpoint, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error("Summarization request failed: %s", e)
            raise ServiceUnavailableError("summarizer", f"Summarization request failed: {e}") from e

        summary = data.get("summary") if isinstance(data, dict) else None
        if not summary:
            logger.warning("Summarization endpoint returned no summary")
            return None
        return str(summary)


def create_summarizer(settings: Settings) -> Summarizer:
    """Build the summarizer selected by configuration."""
    if settings.ai_enabled and settings.ai_endpoint:
        logger.info("AI summarization enabled via %s", settings.ai_endpoint)
        return HttpSummarizer(
            endpoint=settings.ai_endpoint,
            api_key=settings.ai_api_key,
            timeout=settings.ai_timeout_seconds,
            max_input_chars=settings.ai_max_input_chars,
        )
    return DisabledSummarizer()
