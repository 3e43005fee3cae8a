"""OpenAI provider — chat completions.

Also compatible with any service implementing the OpenAI API via a
base_url override (DeepSeek, Together AI, Groq, local gateways).
"""

from __future__ import annotations

import logging
import os

from mender.providers import ProviderError, ProviderTimeout
from mender.providers.base import ChatProvider

logger = logging.getLogger(__name__)


class OpenAIProvider(ChatProvider):
    """Provider using the OpenAI chat completions API."""

    name = "openai"

    def __init__(
        self,
        model: str = "gpt-4o",
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = 300.0,
    ) -> None:
        try:
            import openai
        except ImportError as exc:
            raise ImportError(
                "The 'openai' package is required. Install with: pip install openai"
            ) from exc

        resolved_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        if not resolved_key:
            raise ValueError("OPENAI_API_KEY environment variable is required.")

        kwargs: dict = {
            "api_key": resolved_key,
            "max_retries": 1,
            "timeout": timeout,
        }
        if base_url:
            kwargs["base_url"] = base_url

        self._client = openai.AsyncOpenAI(**kwargs)
        self._timeout_error = openai.APITimeoutError
        self._model = model

    async def chat(self, prompt: str) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": prompt}],
            )
        except self._timeout_error as exc:
            raise ProviderTimeout(f"OpenAI API timed out: {exc}") from exc
        except Exception as exc:
            raise ProviderError(f"OpenAI API error: {exc}") from exc

        if not response.choices:
            raise ProviderError("OpenAI API returned no choices")
        return response.choices[0].message.content or ""

    async def is_available(self) -> bool:
        return self._client is not None
