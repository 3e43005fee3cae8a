"""Tests for the scheduler."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from mender.scheduler import DEFAULT_INTERVAL, Scheduler, next_cron_run


def _ts(*args) -> float:
    return datetime(*args).timestamp()


class TestCron:
    def test_daily(self):
        now = _ts(2026, 3, 1, 10, 0)
        assert next_cron_run("30 2 * * *", now) == _ts(2026, 3, 2, 2, 30)
        assert next_cron_run("30 12 * * *", now) == _ts(2026, 3, 1, 12, 30)

    def test_hourly(self):
        now = _ts(2026, 3, 1, 10, 20)
        assert next_cron_run("15 * * * *", now) == _ts(2026, 3, 1, 11, 15)
        assert next_cron_run("45 * * * *", now) == _ts(2026, 3, 1, 10, 45)

    @pytest.mark.parametrize("expr", ["*/5 * * * *", "0 0 1 * *", "61 * * * *", "0 24 * * *", "bogus"])
    def test_unsupported(self, expr):
        assert next_cron_run(expr, _ts(2026, 3, 1)) is None


async def _no_sleep(delay):
    return None


class TestRegistration:
    def test_invalid_cron_falls_back_to_hourly(self, clock):
        scheduler = Scheduler(clock=clock)

        async def handler():
            return True

        task = scheduler.register("t", "Task", handler, cron="*/5 * * * *")
        assert task.cron == ""
        assert task.interval == DEFAULT_INTERVAL
        assert task.next_run == clock.now + DEFAULT_INTERVAL

    def test_default_interval(self, clock):
        async def handler():
            return True

        task = Scheduler(clock=clock).register("t", "Task", handler)
        assert task.interval == DEFAULT_INTERVAL

    def test_enable_disable(self, clock):
        async def handler():
            return True

        scheduler = Scheduler(clock=clock)
        scheduler.register("t", "Task", handler, interval=60)
        assert scheduler.disable("t")
        assert scheduler.get_next_scheduled() is None
        assert scheduler.enable("t")
        assert scheduler.get_next_scheduled().next_run == clock.now + 60
        assert not scheduler.enable("missing")
        assert scheduler.unregister("t")
        assert not scheduler.unregister("t")

    def test_status_persisted(self, tmp_path: Path, clock):
        async def handler():
            return True

        path = tmp_path / "scheduler.json"
        Scheduler(status_path=path, clock=clock).register("t", "Task", handler, interval=60)
        saved = json.loads(path.read_text())
        assert saved["tasks"][0]["id"] == "t"
        assert saved["running"] is False


class TestExecution:
    def test_success(self, clock):
        calls = []

        async def handler():
            calls.append(clock.now)

        scheduler = Scheduler(clock=clock)
        scheduler.register("t", "Task", handler, interval=60)
        assert asyncio.run(scheduler.run_now("t")) is True
        task = scheduler.get_task("t")
        assert task.last_run == clock.now
        assert task.next_run == clock.now + 60
        assert len(calls) == 1

    def test_retries_with_backoff_then_cools_down(self, clock):
        attempts = []

        async def handler():
            attempts.append(1)
            return False

        scheduler = Scheduler(clock=clock, max_retries=3, base_backoff=5, max_backoff=12, cooldown=600)
        scheduler.register("t", "Task", handler, interval=60)
        with patch("mender.scheduler.asyncio.sleep", side_effect=_no_sleep) as sleep:
            assert asyncio.run(scheduler.run_now("t")) is False

        assert len(attempts) == 4
        assert [c.args[0] for c in sleep.call_args_list] == [5, 10, 12]
        task = scheduler.get_task("t")
        assert task.consecutive_failures == 4
        assert task.last_error == "handler reported failure"
        assert task.next_run == clock.now + 600

    def test_exception_then_recovery(self, clock):
        outcomes = [RuntimeError("boom"), None]

        async def handler():
            outcome = outcomes.pop(0)
            if outcome is not None:
                raise outcome

        scheduler = Scheduler(clock=clock)
        scheduler.register("t", "Task", handler, interval=60)
        with patch("mender.scheduler.asyncio.sleep", side_effect=_no_sleep):
            assert asyncio.run(scheduler.run_now("t")) is True
        task = scheduler.get_task("t")
        assert task.consecutive_failures == 0
        assert task.last_error == ""

    def test_backoff_monotonic_and_capped(self):
        scheduler = Scheduler(base_backoff=5, max_backoff=600)
        delays = [scheduler.backoff_for(n) for n in range(12)]
        assert delays == sorted(delays)
        assert delays[-1] == 600

    def test_skipped_while_rate_limited(self, clock):
        calls = []

        async def handler():
            calls.append(1)

        scheduler = Scheduler(is_rate_limited=lambda: True, clock=clock)
        scheduler.register("cycle", "Cycle", handler, interval=60, requires_provider=True)
        scheduler.register("cleanup", "Cleanup", handler, interval=60)

        assert asyncio.run(scheduler.run_now("cycle")) is None
        assert asyncio.run(scheduler.run_now("cleanup")) is True
        assert len(calls) == 1
        assert scheduler.get_task("cycle").skipped_rate_limited == 1

    def test_no_self_overlap(self, clock):
        gate = asyncio.Event()
        calls = []

        async def handler():
            calls.append(1)
            await gate.wait()

        scheduler = Scheduler(clock=clock)
        scheduler.register("t", "Task", handler, interval=60)

        async def run():
            first = asyncio.create_task(scheduler.run_now("t"))
            await asyncio.sleep(0)
            second = await scheduler.run_now("t")
            gate.set()
            return await first, second

        assert asyncio.run(run()) == (True, None)
        assert len(calls) == 1

    def test_unknown_task(self, clock):
        with pytest.raises(KeyError):
            asyncio.run(Scheduler(clock=clock).run_now("missing"))


class TestLoop:
    def test_fires_repeatedly_until_stopped(self):
        calls = []

        async def handler():
            calls.append(1)

        async def run():
            scheduler = Scheduler()
            scheduler.register("t", "Task", handler, interval=0.02)
            scheduler.start()
            assert scheduler.is_running
            for _ in range(100):
                if len(calls) >= 3:
                    break
                await asyncio.sleep(0.02)
            await scheduler.stop()
            return scheduler

        scheduler = asyncio.run(run())
        assert len(calls) >= 3
        assert not scheduler.is_running

    def test_tasks_run_independently(self):
        calls = {"slow": 0, "fast": 0}
        gate = asyncio.Event()

        async def slow():
            calls["slow"] += 1
            await gate.wait()

        async def fast():
            calls["fast"] += 1

        async def run():
            scheduler = Scheduler()
            scheduler.register("slow", "Slow", slow, interval=0.01)
            scheduler.register("fast", "Fast", fast, interval=0.01)
            scheduler.start()
            for _ in range(100):
                if calls["fast"] >= 3:
                    break
                await asyncio.sleep(0.02)
            gate.set()
            await scheduler.stop()

        asyncio.run(run())
        assert calls["slow"] == 1
        assert calls["fast"] >= 3
