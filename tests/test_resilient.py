"""Tests for the resilient provider wrapper."""

from __future__ import annotations

import asyncio

import pytest

from mender.config import FallbackConfig, RateLimitConfig
from mender.providers import ProviderError, RateLimitedError
from mender.resilience.health import ProviderHealthMonitor
from mender.resilience.rate_limit import RateLimitHandler
from mender.resilience.resilient import ResilientProvider
from mender.review.changes import ChangeTracker
from mender.review.confirmation import ConfirmationQueue
from mender.schemas import CodeContext, ProviderStatus


@pytest.fixture
def wiring(clock, make_provider):
    primary = make_provider("claude", replies=["from primary"])
    fallback = make_provider("openai", replies=["from fallback"] * 5)
    health = ProviderHealthMonitor(clock=clock)
    health.register("claude", primary)
    health.register("openai", fallback)
    tracker = ChangeTracker(clock=clock)
    confirmations = ConfirmationQueue(clock=clock)
    rate_limit = RateLimitHandler(RateLimitConfig(base_backoff=5), clock=clock)
    wrapper = ResilientProvider(
        primary, fallback,
        rate_limit=rate_limit, health=health,
        tracker=tracker, confirmations=confirmations,
        config=FallbackConfig(confirmation_priority=70),
    )
    return wrapper, primary, fallback, health, tracker, confirmations, rate_limit


class TestPrimaryPath:
    def test_success_uses_primary(self, wiring):
        wrapper, primary, fallback, _, tracker, _, _ = wiring
        assert asyncio.run(wrapper.chat("hi")) == "from primary"
        assert fallback.calls == []
        assert tracker.all() == []

    def test_non_retryable_error_propagates(self, wiring):
        wrapper, primary, fallback, health, _, _, _ = wiring
        primary.errors = [ProviderError("invalid api key")]
        with pytest.raises(ProviderError, match="invalid api key"):
            asyncio.run(wrapper.chat("hi"))
        assert fallback.calls == []
        assert health.get_health("claude").consecutive_failures == 1


class TestFailover:
    def test_retryable_error_falls_back_and_tracks(self, wiring):
        wrapper, primary, fallback, _, tracker, confirmations, rate_limit = wiring
        primary.errors = [ProviderError("429 Too Many Requests")]
        wrapper.set_current_phase("implement")

        code = asyncio.run(wrapper.generate_code(
            "fix it", CodeContext(file="src/app.py", issue="NameError"),
        ))
        assert code == fallback.code
        assert rate_limit.is_limited()

        changes = tracker.all()
        assert len(changes) == 1
        assert changes[0].provider == "openai"
        assert changes[0].phase == "implement"
        assert changes[0].operation == "generate_code"
        assert changes[0].files == ["src/app.py"]

        pending = confirmations.get_pending()
        assert len(pending) == 1
        assert pending[0].change_id == changes[0].id
        assert pending[0].priority == 70

    def test_limited_primary_is_skipped(self, wiring, clock):
        wrapper, primary, fallback, _, _, _, rate_limit = wiring
        rate_limit.record_rate_limit("429")
        assert asyncio.run(wrapper.chat("hi")) == "from fallback"
        assert primary.calls == []

        clock.advance(6)
        assert asyncio.run(wrapper.chat("again")) == "from primary"
        assert not wrapper.is_rate_limited()

    def test_fallback_failure_recorded(self, wiring):
        wrapper, primary, fallback, health, tracker, _, _ = wiring
        primary.errors = [ProviderError("timed out")]
        fallback.errors = [ProviderError("also down")]
        with pytest.raises(ProviderError, match="also down"):
            asyncio.run(wrapper.chat("hi"))
        assert health.get_health("openai").status == ProviderStatus.DEGRADED
        assert tracker.all() == []

    def test_no_fallback_raises_rate_limited(self, clock, make_provider):
        primary = make_provider("claude", errors=[ProviderError("rate limit")])
        wrapper = ResilientProvider(primary, rate_limit=RateLimitHandler(clock=clock))
        with pytest.raises(RateLimitedError):
            asyncio.run(wrapper.chat("hi"))

    def test_fallback_disabled(self, clock, make_provider):
        primary = make_provider("claude", errors=[ProviderError("429")])
        fallback = make_provider("openai")
        wrapper = ResilientProvider(
            primary, fallback,
            rate_limit=RateLimitHandler(clock=clock),
            config=FallbackConfig(enabled=False),
        )
        with pytest.raises(RateLimitedError):
            asyncio.run(wrapper.chat("hi"))
        assert fallback.calls == []


class TestIntrospection:
    def test_rate_limit_state(self, wiring):
        wrapper, primary, _, _, _, _, _ = wiring
        primary.errors = [ProviderError("overloaded")]
        asyncio.run(wrapper.chat("hi"))
        state = wrapper.get_rate_limit_state()
        assert state.is_limited
        assert state.consecutive_failures == 1
        assert wrapper.name == "claude"

    def test_is_available(self, wiring):
        wrapper = wiring[0]
        assert asyncio.run(wrapper.is_available())
