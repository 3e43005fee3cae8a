"""Tests for the event bus and alert manager."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

from mender.events import CRITICAL_ALERT, CYCLE_STARTED, AlertManager, EventBus


class TestEventBus:
    def test_sync_and_async_listeners(self, clock):
        bus = EventBus(clock=clock)
        seen = []

        async def async_listener(event):
            seen.append(("async", event.data["cycle_id"]))

        bus.subscribe(CYCLE_STARTED, lambda e: seen.append(("sync", e.data["cycle_id"])))
        bus.subscribe(CYCLE_STARTED, async_listener)
        event = asyncio.run(bus.emit(CYCLE_STARTED, cycle_id="c1"))
        assert seen == [("sync", "c1"), ("async", "c1")]
        assert event.timestamp == clock.now

    def test_failing_listener_is_isolated(self, clock):
        bus = EventBus(clock=clock)
        seen = []

        def broken(event):
            raise RuntimeError("listener bug")

        bus.subscribe(CYCLE_STARTED, broken)
        bus.subscribe(CYCLE_STARTED, lambda e: seen.append(e.type))
        asyncio.run(bus.emit(CYCLE_STARTED))
        assert seen == [CYCLE_STARTED]

    def test_wildcard_and_unsubscribe(self, clock):
        bus = EventBus(clock=clock)
        seen = []
        listener = seen.append
        bus.subscribe("*", listener)
        asyncio.run(bus.emit("anything"))
        bus.unsubscribe("*", listener)
        asyncio.run(bus.emit("anything"))
        assert len(seen) == 1


class TestAlertManager:
    def test_raise_publishes_and_keeps_history(self, clock):
        bus = EventBus(clock=clock)
        published = []
        bus.subscribe(CRITICAL_ALERT, lambda e: published.append(e.data["title"]))
        alerts = AlertManager(bus, clock=clock, history_limit=2)

        async def run():
            for n in range(3):
                await alerts.raise_alert(f"alert {n}", "details", source="test")

        asyncio.run(run())
        assert published == ["alert 0", "alert 1", "alert 2"]
        assert [a.title for a in alerts.history()] == ["alert 1", "alert 2"]
        assert [a.title for a in alerts.history(1)] == ["alert 2"]
        alerts.clear()
        assert alerts.history() == []

    def test_webhook_posted(self, clock):
        response = MagicMock(status_code=200)
        client = MagicMock()
        client.post = AsyncMock(return_value=response)
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)

        with patch("httpx.AsyncClient", return_value=client):
            alerts = AlertManager(webhook_url="https://hooks.example/x", clock=clock)
            asyncio.run(alerts.raise_alert("All providers broken", "nothing answers", source="provider_health"))

        url = client.post.call_args.args[0]
        payload = client.post.call_args.kwargs["json"]
        assert url == "https://hooks.example/x"
        assert "All providers broken" in payload["text"]
        assert payload["alert"]["source"] == "provider_health"

    def test_webhook_failure_does_not_raise(self, clock):
        client = MagicMock()
        client.post = AsyncMock(side_effect=OSError("unreachable"))
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)

        with patch("httpx.AsyncClient", return_value=client):
            alerts = AlertManager(webhook_url="https://hooks.example/x", clock=clock)
            alert = asyncio.run(alerts.raise_alert("t", "m"))
        assert alert.title == "t"
        assert len(alerts.history()) == 1

    def test_no_webhook(self, clock):
        assert not AlertManager(clock=clock).webhook_configured
