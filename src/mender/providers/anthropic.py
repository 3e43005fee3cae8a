"""Anthropic provider — direct Messages API calls."""

from __future__ import annotations

import logging
import os

from mender.providers import ProviderError, ProviderTimeout
from mender.providers.base import ChatProvider

logger = logging.getLogger(__name__)

_DEFAULT_MAX_TOKENS = 8192


class AnthropicProvider(ChatProvider):
    """Provider using the Anthropic API."""

    name = "anthropic"

    def __init__(
        self,
        model: str = "claude-opus-4-6",
        api_key: str | None = None,
        timeout: float = 300.0,
        max_tokens: int = _DEFAULT_MAX_TOKENS,
    ) -> None:
        try:
            import anthropic
        except ImportError as exc:
            raise ImportError(
                "The 'anthropic' package is required. Install with: pip install -e '.[anthropic]'"
            ) from exc

        resolved_key = api_key or os.environ.get("ANTHROPIC_API_KEY", "")
        if not resolved_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable is required.")

        # Failover is handled by the resilient wrapper, so the SDK retries little.
        self._client = anthropic.AsyncAnthropic(
            api_key=resolved_key,
            max_retries=1,
            timeout=timeout,
        )
        self._timeout_error = anthropic.APITimeoutError
        self._model = model
        self._max_tokens = max_tokens

    async def chat(self, prompt: str) -> str:
        try:
            message = await self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except self._timeout_error as exc:
            raise ProviderTimeout(f"Anthropic API timed out: {exc}") from exc
        except Exception as exc:
            raise ProviderError(f"Anthropic API error: {exc}") from exc

        return "".join(
            block.text for block in message.content
            if getattr(block, "type", "") == "text"
        )

    async def is_available(self) -> bool:
        return self._client is not None
