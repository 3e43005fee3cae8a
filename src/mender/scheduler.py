"""Timer-driven scheduler for the repair cycle and maintenance tasks.

Each registered task runs on its own asyncio loop, so different tasks
may overlap in wall-clock time while a single task never overlaps
itself (a trigger that fires while the previous run is still going is
skipped). Triggers are a fixed interval or a restricted cron subset:

  "M H * * *"  daily at H:M
  "M * * * *"  hourly at minute M

Any other cron expression falls back to an hourly interval.

A run fails if the handler raises or returns False. Failed runs retry
with exponential backoff up to ``max_retries`` times, then the task
cools down before resuming its normal trigger. Tasks flagged
``requires_provider`` are skipped (and rescheduled) while the AI
provider is rate-limited.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from mender.schemas import ScheduledTaskStatus
from mender.store import JsonStore

logger = logging.getLogger(__name__)

Handler = Callable[[], Awaitable[Any]]

DEFAULT_INTERVAL = 3600.0


def next_cron_run(expr: str, now: float) -> float | None:
    """Next fire time for a supported cron expression, or None if unsupported."""
    fields = expr.split()
    if len(fields) != 5 or fields[2:] != ["*", "*", "*"] or not fields[0].isdigit():
        return None
    minute = int(fields[0])
    if fields[1] == "*":
        hour = None
    elif fields[1].isdigit():
        hour = int(fields[1])
    else:
        return None
    if minute > 59 or (hour is not None and hour > 23):
        return None

    current = datetime.fromtimestamp(now)
    if hour is None:
        candidate = current.replace(minute=minute, second=0, microsecond=0)
        step = timedelta(hours=1)
    else:
        candidate = current.replace(hour=hour, minute=minute, second=0, microsecond=0)
        step = timedelta(days=1)
    if candidate.timestamp() <= now:
        candidate += step
    return candidate.timestamp()


@dataclass
class ScheduledTask:
    id: str
    name: str
    handler: Handler
    interval: float | None = None
    cron: str = ""
    enabled: bool = True
    requires_provider: bool = False
    running: bool = False
    last_run: float | None = None
    next_run: float | None = None
    consecutive_failures: int = 0
    last_error: str = ""
    skipped_rate_limited: int = 0

    def status(self) -> ScheduledTaskStatus:
        return ScheduledTaskStatus(
            id=self.id,
            name=self.name,
            interval=self.interval,
            cron=self.cron,
            enabled=self.enabled,
            requires_provider=self.requires_provider,
            running=self.running,
            last_run=self.last_run,
            next_run=self.next_run,
            consecutive_failures=self.consecutive_failures,
            last_error=self.last_error,
            skipped_rate_limited=self.skipped_rate_limited,
        )


class Scheduler:
    """Runs registered tasks on their triggers until stopped."""

    def __init__(
        self,
        is_rate_limited: Callable[[], bool] | None = None,
        status_path: str | Path | None = None,
        clock: Callable[[], float] = time.time,
        max_retries: int = 3,
        base_backoff: float = 5.0,
        max_backoff: float = 600.0,
        cooldown: float = 600.0,
    ) -> None:
        self._is_rate_limited = is_rate_limited or (lambda: False)
        self._status = JsonStore(status_path, default=dict)
        self._clock = clock
        self.max_retries = max_retries
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self.cooldown = cooldown

        self._tasks: dict[str, ScheduledTask] = {}
        self._loops: dict[str, asyncio.Task[None]] = {}
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    # ── Registration ────────────────────────────────────────────────

    def register(
        self,
        task_id: str,
        name: str,
        handler: Handler,
        interval: float | None = None,
        cron: str = "",
        enabled: bool = True,
        requires_provider: bool = False,
    ) -> ScheduledTask:
        if cron and next_cron_run(cron, self._clock()) is None:
            logger.warning("Unsupported cron '%s' for %s, running hourly", cron, task_id)
            cron, interval = "", DEFAULT_INTERVAL
        if not cron and not interval:
            interval = DEFAULT_INTERVAL

        if task_id in self._tasks:
            self.unregister(task_id)
        task = ScheduledTask(
            id=task_id,
            name=name,
            handler=handler,
            interval=interval,
            cron=cron,
            enabled=enabled,
            requires_provider=requires_provider,
        )
        task.next_run = self._next_time(task)
        self._tasks[task_id] = task
        if self._started and enabled:
            self._spawn(task)
        logger.info("Registered task %s (%s)", task_id, cron or f"every {interval:.0f}s")
        self._save()
        return task

    def unregister(self, task_id: str) -> bool:
        task = self._tasks.pop(task_id, None)
        if task is None:
            return False
        self._cancel_loop(task_id)
        self._save()
        return True

    def enable(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None:
            return False
        task.enabled = True
        task.next_run = self._next_time(task)
        if self._started:
            self._spawn(task)
        self._save()
        return True

    def disable(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None:
            return False
        task.enabled = False
        task.next_run = None
        self._cancel_loop(task_id)
        self._save()
        return True

    # ── Lifecycle ───────────────────────────────────────────────────

    def start(self) -> None:
        """Spawn a timer loop per enabled task. Must be called inside a running loop."""
        if self._started:
            return
        self._started = True
        for task in self._tasks.values():
            if task.enabled:
                self._spawn(task)
        logger.info("Scheduler started with %d tasks", len(self._loops))

    async def stop(self) -> None:
        self._started = False
        loops = list(self._loops.values())
        self._loops.clear()
        for loop in loops:
            loop.cancel()
        await asyncio.gather(*loops, return_exceptions=True)
        self._save()
        logger.info("Scheduler stopped")

    def _spawn(self, task: ScheduledTask) -> None:
        existing = self._loops.get(task.id)
        if existing is not None and not existing.done():
            return
        self._loops[task.id] = asyncio.create_task(self._loop(task), name=f"scheduler:{task.id}")

    def _cancel_loop(self, task_id: str) -> None:
        loop = self._loops.pop(task_id, None)
        if loop is not None and loop is not asyncio.current_task():
            loop.cancel()

    async def _loop(self, task: ScheduledTask) -> None:
        while self._started and task.enabled:
            if task.next_run is None:
                task.next_run = self._next_time(task)
            delay = max(0.0, task.next_run - self._clock())
            await asyncio.sleep(delay)
            await self._fire(task)

    # ── Execution ───────────────────────────────────────────────────

    def _next_time(self, task: ScheduledTask, now: float | None = None) -> float:
        now = self._clock() if now is None else now
        if task.cron:
            fire = next_cron_run(task.cron, now)
            if fire is not None:
                return fire
        return now + (task.interval or DEFAULT_INTERVAL)

    def backoff_for(self, attempt: int) -> float:
        return min(self.base_backoff * (2 ** attempt), self.max_backoff)

    async def _fire(self, task: ScheduledTask) -> bool | None:
        """One trigger of a task. Returns None when the run was skipped."""
        if task.running:
            logger.info("Task %s still running, skipping this trigger", task.id)
            task.next_run = self._next_time(task)
            return None
        if task.requires_provider and self._is_rate_limited():
            task.skipped_rate_limited += 1
            task.next_run = self._next_time(task)
            logger.info("Provider rate-limited, skipping %s", task.id)
            self._save()
            return None

        task.running = True
        try:
            ok = await self._run_with_retries(task)
        finally:
            task.running = False
            task.last_run = self._clock()

        if ok:
            task.next_run = self._next_time(task)
        else:
            task.next_run = self._clock() + self.cooldown
            logger.error(
                "Task %s failed %d times, cooling down for %.0fs",
                task.id, task.consecutive_failures, self.cooldown,
            )
        self._save()
        return ok

    async def _run_with_retries(self, task: ScheduledTask) -> bool:
        for attempt in range(self.max_retries + 1):
            if attempt:
                delay = self.backoff_for(attempt - 1)
                logger.info("Retrying %s in %.0fs (retry %d/%d)", task.id, delay, attempt, self.max_retries)
                await asyncio.sleep(delay)
            try:
                result = await task.handler()
            except Exception as e:
                logger.exception("Task %s raised", task.id)
                task.last_error = f"{type(e).__name__}: {e}"
                result = False
            else:
                if result is False:
                    task.last_error = "handler reported failure"
            if result is not False:
                task.consecutive_failures = 0
                task.last_error = ""
                return True
            task.consecutive_failures += 1
        return False

    async def run_now(self, task_id: str) -> bool | None:
        """Run a task immediately, outside its trigger."""
        task = self._tasks.get(task_id)
        if task is None:
            raise KeyError(task_id)
        logger.info("Running %s now", task_id)
        return await self._fire(task)

    # ── Status ──────────────────────────────────────────────────────

    def get_task(self, task_id: str) -> ScheduledTask | None:
        return self._tasks.get(task_id)

    def get_status(self) -> list[ScheduledTaskStatus]:
        return [task.status() for task in self._tasks.values()]

    def get_next_scheduled(self) -> ScheduledTaskStatus | None:
        upcoming = [t for t in self._tasks.values() if t.enabled and t.next_run is not None]
        if not upcoming:
            return None
        return min(upcoming, key=lambda t: t.next_run).status()

    def _save(self) -> None:
        self._status.replace({
            "saved_at": self._clock(),
            "running": self._started,
            "tasks": [s.model_dump(mode="json") for s in self.get_status()],
        })
