"""Reasoning / scoring provider integrations."""
import logging
from typing import Optional, Protocol

import httpx

from clipforge.errors import ProviderError
from clipforge.utils.http import parse_json, send

logger = logging.getLogger(__name__)


class ScoringProvider(Protocol):
    async def complete(self, prompt: str) -> str:
        """Return the model's free-form text answer to ``prompt``."""


class OpenAIChatProvider:
    """OpenAI chat completions."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        timeout: float = 120.0,
    ):
        self._http = http_client
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.timeout = timeout

    async def complete(self, prompt: str) -> str:
        if not self.api_key:
            raise ProviderError("OpenAI API key not configured", retryable=False)

        response = await send(
            self._http,
            "POST",
            f"{self.base_url}/chat/completions",
            "OpenAI",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": self.temperature,
            },
            timeout=self.timeout,
        )
        payload = parse_json(response, "OpenAI")

        try:
            return payload["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            logger.warning("OpenAI response had no message content")
            return ""
