"""Resilient provider — transparent failover from a primary to a fallback.

Per call:

1. If the rate-limit window is open and a fallback exists, skip the
   primary and serve from the fallback.
2. Otherwise call the primary. Success resets the rate-limit handler
   and is recorded with the health monitor.
3. A retryable failure (rate limit, overload, timeout, reset) extends
   the backoff and the call is re-run on the fallback; with no fallback
   it raises RateLimitedError. Fatal failures propagate unchanged.
4. Every call the fallback serves is recorded as a TrackedChange and
   queued for confirmation, so the primary can audit it later.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from mender.config import FallbackConfig
from mender.providers import Provider, RateLimitedError
from mender.resilience.health import ProviderHealthMonitor
from mender.resilience.rate_limit import RateLimitHandler
from mender.review.changes import ChangeTracker
from mender.review.confirmation import ConfirmationQueue
from mender.schemas import Analysis, CodeContext, RateLimitState, SearchResult, TestContext

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _provider_name(provider: Provider, default: str) -> str:
    return getattr(provider, "name", "") or default


class ResilientProvider:
    """Provider wrapper with rate-limit backoff and fallback."""

    def __init__(
        self,
        primary: Provider,
        fallback: Provider | None = None,
        rate_limit: RateLimitHandler | None = None,
        health: ProviderHealthMonitor | None = None,
        tracker: ChangeTracker | None = None,
        confirmations: ConfirmationQueue | None = None,
        config: FallbackConfig | None = None,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._rate_limit = rate_limit or RateLimitHandler()
        self._health = health
        self._tracker = tracker
        self._confirmations = confirmations
        self._config = config or FallbackConfig()
        self._phase = ""
        self.primary_name = _provider_name(primary, "primary")
        self.fallback_name = _provider_name(fallback, "fallback") if fallback else ""

    @property
    def name(self) -> str:
        return self.primary_name

    @property
    def has_fallback(self) -> bool:
        return self._fallback is not None and self._config.enabled

    def set_current_phase(self, phase: str) -> None:
        self._phase = phase

    def get_rate_limit_state(self) -> RateLimitState:
        return self._rate_limit.state()

    def is_rate_limited(self) -> bool:
        return self._rate_limit.is_limited()

    # ── Core dispatch ──────────────────────────────────────────────

    async def _execute(
        self,
        operation: str,
        call: Callable[[Provider], Awaitable[T]],
        files: list[str] | None = None,
        description: str = "",
    ) -> T:
        if self.has_fallback and self._rate_limit.is_limited():
            logger.info(
                "%s rate limited (%.0fs left), serving %s from %s",
                self.primary_name, self._rate_limit.remaining(), operation, self.fallback_name,
            )
            return await self._run_fallback(operation, call, files, description)

        try:
            result = await call(self._primary)
        except Exception as exc:
            if self._health is not None:
                await self._health.record_failure(self.primary_name, exc)
            if not self._rate_limit.is_retryable(exc):
                raise
            self._rate_limit.record_rate_limit(exc)
            if not self.has_fallback:
                raise RateLimitedError(
                    f"{self.primary_name} rate limited and no fallback: {exc}"
                ) from exc
            logger.warning(
                "%s failed with retryable error, falling back to %s: %s",
                self.primary_name, self.fallback_name, exc,
            )
            return await self._run_fallback(operation, call, files, description)

        self._rate_limit.record_success()
        if self._health is not None:
            await self._health.record_success(self.primary_name)
        return result

    async def _run_fallback(
        self,
        operation: str,
        call: Callable[[Provider], Awaitable[T]],
        files: list[str] | None,
        description: str,
    ) -> T:
        assert self._fallback is not None
        try:
            result = await call(self._fallback)
        except Exception as exc:
            if self._health is not None:
                await self._health.record_failure(self.fallback_name, exc)
            raise
        if self._health is not None:
            await self._health.record_success(self.fallback_name)
        self._track(operation, files, description)
        return result

    def _track(self, operation: str, files: list[str] | None, description: str) -> None:
        if not self._config.track_changes or self._tracker is None:
            return
        change = self._tracker.record_change(
            phase=self._phase,
            provider=self.fallback_name,
            operation=operation,
            files=files,
            description=description[:500],
        )
        if self._confirmations is not None:
            self._confirmations.add_from_change(change, priority=self._config.confirmation_priority)

    # ── Provider operations ────────────────────────────────────────

    async def generate_code(self, prompt: str, context: CodeContext) -> str:
        return await self._execute(
            "generate_code",
            lambda p: p.generate_code(prompt, context),
            files=[context.file],
            description=context.issue or prompt,
        )

    async def generate_test(self, context: TestContext) -> str:
        return await self._execute(
            "generate_test",
            lambda p: p.generate_test(context),
            files=[context.file],
            description=f"tests for {context.file}",
        )

    async def analyze_code(self, code: str) -> Analysis:
        return await self._execute(
            "analyze_code",
            lambda p: p.analyze_code(code),
            description=f"analysis of {len(code.splitlines())} lines",
        )

    async def search_and_analyze(self, query: str, files: list[str]) -> SearchResult:
        return await self._execute(
            "search_and_analyze",
            lambda p: p.search_and_analyze(query, files),
            files=files,
            description=query,
        )

    async def chat(self, prompt: str) -> str:
        return await self._execute("chat", lambda p: p.chat(prompt), description=prompt[:200])

    async def is_available(self) -> bool:
        if await self._primary.is_available():
            return True
        return self._fallback is not None and await self._fallback.is_available()
