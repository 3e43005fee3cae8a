"""Tests for the provider health monitor."""

from __future__ import annotations

import asyncio

import pytest

from mender.config import HealthConfig
from mender.events import PROVIDER_HEALTH_CHANGED, AlertManager, EventBus
from mender.providers import ProviderError
from mender.resilience.health import ALERT_SOURCE, ProviderHealthMonitor
from mender.schemas import ProviderStatus


def _monitor(clock, **providers) -> tuple[ProviderHealthMonitor, AlertManager, EventBus]:
    events = EventBus(clock=clock)
    alerts = AlertManager(events, clock=clock)
    monitor = ProviderHealthMonitor(HealthConfig(), alerts, events, clock=clock)
    for name, provider in providers.items():
        monitor.register(name, provider)
    return monitor, alerts, events


class TestStatus:
    def test_thresholds(self, clock, make_provider):
        monitor, _, _ = _monitor(clock, claude=make_provider("claude"))

        async def run():
            await monitor.record_failure("claude", "boom")
            assert monitor.get_health("claude").status == ProviderStatus.DEGRADED
            await monitor.record_failure("claude", "boom")
            assert monitor.get_health("claude").status == ProviderStatus.DEGRADED
            await monitor.record_failure("claude", "boom")
            assert monitor.get_health("claude").status == ProviderStatus.BROKEN

        asyncio.run(run())

    @pytest.mark.parametrize("failures", [1, 3, 7, 20])
    def test_n_failures_then_one_success_is_healthy(self, clock, make_provider, failures):
        monitor, _, _ = _monitor(clock, claude=make_provider("claude"))

        async def run():
            for _ in range(failures):
                await monitor.record_failure("claude", "boom")
            assert (monitor.get_health("claude").status == ProviderStatus.BROKEN) == (failures >= 3)
            await monitor.record_success("claude")

        asyncio.run(run())
        health = monitor.get_health("claude")
        assert health.status == ProviderStatus.HEALTHY
        assert health.consecutive_failures == 0

    def test_status_change_emits_event(self, clock, make_provider):
        monitor, _, events = _monitor(clock, claude=make_provider("claude"))
        seen = []
        events.subscribe(PROVIDER_HEALTH_CHANGED, lambda e: seen.append(e.data["status"]))

        async def run():
            await monitor.record_failure("claude", "x")
            await monitor.record_failure("claude", "x")
            await monitor.record_success("claude")

        asyncio.run(run())
        assert seen == ["degraded", "healthy"]


class TestCriticalAlert:
    def test_all_broken_raises_once(self, clock, make_provider):
        monitor, alerts, _ = _monitor(clock, a=make_provider("a"), b=make_provider("b"))

        async def run():
            for _ in range(3):
                await monitor.record_failure("a", "down")
            assert alerts.history() == []
            for _ in range(5):
                await monitor.record_failure("b", "down")

        asyncio.run(run())
        critical = monitor.get_critical_alerts()
        assert len(critical) == 1
        assert critical[0].source == ALERT_SOURCE
        assert monitor.get_health_report().overall == "critical"

    def test_report_degraded(self, clock, make_provider):
        monitor, _, _ = _monitor(clock, a=make_provider("a"), b=make_provider("b"))
        asyncio.run(monitor.record_failure("a", "x"))
        report = monitor.get_health_report()
        assert report.overall == "degraded"
        assert (report.healthy, report.degraded, report.broken) == (1, 1, 0)


class TestFallback:
    def test_order_by_health(self, clock, make_provider):
        monitor, _, _ = _monitor(clock, a=make_provider("a"), b=make_provider("b"), c=make_provider("c"))

        async def run():
            for _ in range(3):
                await monitor.record_failure("a", "x")
            await monitor.record_failure("b", "x")

        asyncio.run(run())
        assert monitor.get_fallback_order() == ["c", "b", "a"]

    def test_execute_with_fallback_skips_failures(self, clock, make_provider):
        bad = make_provider("bad", errors=[RuntimeError("down")])
        good = make_provider("good", replies=["hello"])
        monitor, _, _ = _monitor(clock, bad=bad, good=good)
        result = asyncio.run(monitor.execute_with_fallback(lambda p: p.chat("hi")))
        assert result == "hello"
        assert monitor.get_health("bad").consecutive_failures == 1

    def test_execute_with_fallback_all_fail(self, clock, make_provider):
        monitor, _, _ = _monitor(clock, a=make_provider("a", errors=[RuntimeError("x")]))
        with pytest.raises(ProviderError, match="All providers failed"):
            asyncio.run(monitor.execute_with_fallback(lambda p: p.chat("hi")))


class TestRecovery:
    def test_probe_recovers_broken(self, clock, make_provider):
        provider = make_provider("a", replies=["OK"])
        monitor, _, _ = _monitor(clock, a=provider)

        async def run():
            for _ in range(3):
                await monitor.record_failure("a", "x")
            return await monitor.check_broken_provider_recovery()

        assert asyncio.run(run()) == ["a"]
        assert monitor.get_health("a").status == ProviderStatus.HEALTHY

    def test_probe_rate_limited_by_interval(self, clock, make_provider):
        provider = make_provider("a", errors=[RuntimeError("still down")] * 5)
        monitor, _, _ = _monitor(clock, a=provider)

        async def run():
            for _ in range(3):
                await monitor.record_failure("a", "x")
            await monitor.check_broken_provider_recovery()
            await monitor.check_broken_provider_recovery()
            clock.advance(301)
            await monitor.check_broken_provider_recovery()

        asyncio.run(run())
        assert len(provider.calls) == 2

    def test_cross_repair_uses_healthy_helper(self, clock, make_provider):
        helper = make_provider("b", replies=["check the API key"])
        monitor, _, _ = _monitor(clock, a=make_provider("a"), b=helper)

        async def run():
            for _ in range(3):
                await monitor.record_failure("a", "401 unauthorized")
            first = await monitor.attempt_cross_repair("a")
            second = await monitor.attempt_cross_repair("a")
            return first, second

        first, second = asyncio.run(run())
        assert first == "check the API key"
        assert second is None  # repair cooldown
        assert "401 unauthorized" in helper.calls[0][1]

    def test_reset(self, clock, make_provider):
        monitor, _, _ = _monitor(clock, a=make_provider("a"))
        asyncio.run(monitor.record_failure("a", "x"))
        monitor.reset("a")
        assert monitor.get_health("a").consecutive_failures == 0

    def test_lookup(self, clock, make_provider):
        provider = make_provider("a")
        monitor, _, _ = _monitor(clock, a=provider)
        assert monitor.get_provider("a") is provider
        assert monitor.get_provider("b") is None
        assert monitor.get_health("b") is None
