"""Provider protocol + factory — decouples phases and judges from AI services.

Provider is a Protocol: any class implementing the six operations below
can generate code, tests, analyses and chat replies. The factory creates
providers by name; SDK-backed providers import their SDK lazily so only
the ones in use need to be installed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from mender.schemas import Analysis, CodeContext, SearchResult, TestContext

if TYPE_CHECKING:
    from mender.config import MenderConfig


class ProviderError(Exception):
    """A provider call failed."""


class ProviderTimeout(ProviderError):
    """A provider call exceeded its timeout and was terminated."""


class RateLimitedError(ProviderError):
    """The primary is rate limited and no fallback is configured."""


class Provider(Protocol):
    """Protocol for AI providers."""

    name: str

    async def generate_code(self, prompt: str, context: CodeContext) -> str:
        """Return the complete new content for context.file."""
        ...

    async def generate_test(self, context: TestContext) -> str:
        """Return test source for context.file."""
        ...

    async def analyze_code(self, code: str) -> Analysis:
        ...

    async def search_and_analyze(self, query: str, files: list[str]) -> SearchResult:
        ...

    async def chat(self, prompt: str) -> str:
        ...

    async def is_available(self) -> bool:
        ...


PROVIDER_NAMES = ("claude", "anthropic", "openai", "gemini")


def create_provider(name: str, config: MenderConfig) -> Provider:
    """Factory: create a Provider by name."""
    model = config.model_for(name)
    if name == "claude":
        from mender.providers.claude_cli import ClaudeCliProvider
        return ClaudeCliProvider(
            model=model or "claude-opus-4-6",
            timeout=config.provider_timeout,
            grace=config.auto_repair.terminate_grace,
        )
    elif name == "anthropic":
        from mender.providers.anthropic import AnthropicProvider
        return AnthropicProvider(model=model or "claude-opus-4-6", timeout=config.provider_timeout)
    elif name == "openai":
        from mender.providers.openai import OpenAIProvider
        return OpenAIProvider(
            model=model or "gpt-4o",
            base_url=config.openai_base_url or None,
            timeout=config.provider_timeout,
        )
    elif name == "gemini":
        from mender.providers.gemini import GeminiProvider
        return GeminiProvider(model=model or "gemini-2.5-flash")
    else:
        raise ValueError(
            f"Unknown provider: {name}. "
            f"Available: {', '.join(PROVIDER_NAMES)}"
        )
