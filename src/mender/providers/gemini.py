"""Google Gemini provider — uses the google-genai SDK."""

from __future__ import annotations

import logging
import os

from mender.providers import ProviderError
from mender.providers.base import ChatProvider

logger = logging.getLogger(__name__)


class GeminiProvider(ChatProvider):
    """Provider using the Google Gemini API."""

    name = "gemini"

    def __init__(
        self,
        model: str = "gemini-2.5-flash",
        api_key: str | None = None,
    ) -> None:
        try:
            from google.genai import Client
        except ImportError as exc:
            raise ImportError(
                "The 'google-genai' package is required. Install with: pip install google-genai"
            ) from exc

        resolved_key = api_key or os.environ.get("GEMINI_API_KEY", "")
        if not resolved_key:
            raise ValueError("GEMINI_API_KEY environment variable is required.")

        self._client = Client(api_key=resolved_key)
        self._model = model

    async def chat(self, prompt: str) -> str:
        try:
            response = await self._client.aio.models.generate_content(
                model=self._model,
                contents=prompt,
            )
        except Exception as exc:
            raise ProviderError(f"Gemini API error: {exc}") from exc
        return response.text or ""

    async def is_available(self) -> bool:
        return self._client is not None
