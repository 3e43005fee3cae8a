"""Auto-repairer — drains the repair queue through a CLI coding agent.

Each task's prompt is piped to the configured agent (``claude -p`` by
default) running in the project root. A zero exit is a successful
repair; anything else, including a timeout, is a failure. Outcomes go
back through RepairQueue.complete, which updates the error record and
the repair breaker. A breaker trip or a newly blocked source raises a
critical alert.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from mender.config import AutoRepairConfig
from mender.events import REPAIR_COMPLETED, AlertManager, EventBus
from mender.process import ProcessResult, run_command
from mender.repair.aggregator import ErrorAggregator
from mender.repair.breaker import RepairCircuitBreaker
from mender.repair.queue import RepairQueue
from mender.schemas import CircuitState, RepairTask, TaskPriority

logger = logging.getLogger(__name__)

ALERT_SOURCE = "auto_repair"


class AutoRepairer:
    """Runs queued repair tasks, at most ``max_concurrent`` at a time."""

    def __init__(
        self,
        queue: RepairQueue,
        aggregator: ErrorAggregator,
        breaker: RepairCircuitBreaker,
        config: AutoRepairConfig | None = None,
        alerts: AlertManager | None = None,
        events: EventBus | None = None,
        cwd: str | Path | None = None,
    ) -> None:
        self._queue = queue
        self._aggregator = aggregator
        self._breaker = breaker
        self._config = config or AutoRepairConfig()
        self._alerts = alerts
        self._events = events
        self._cwd = cwd
        self._enabled = self._config.enabled
        self._active: dict[str, asyncio.Task[ProcessResult]] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        logger.info("Auto-repair %s", "enabled" if enabled else "disabled")

    @property
    def busy(self) -> bool:
        return len(self._active) >= max(1, self._config.max_concurrent)

    def _command(self) -> list[str]:
        return [self._config.cli, *self._config.cli_args]

    async def process_task(self, task: RepairTask) -> RepairTask | None:
        """Run one claimed (in-progress) task to completion."""
        logger.info("Repairing error %s via %s (task %s)", task.error_id, self._config.cli, task.id)
        was_open = self._breaker.state == CircuitState.OPEN
        was_blocked = self._breaker.is_source_blocked(task.source)

        runner = asyncio.ensure_future(run_command(
            self._command(),
            cwd=self._cwd,
            timeout=self._config.timeout,
            input_text=task.prompt,
            grace=self._config.terminate_grace,
        ))
        self._active[task.id] = runner
        try:
            result = await runner
            success = result.ok
            output = result.output
            error = "" if success else (
                f"timed out after {self._config.timeout}s" if result.timed_out
                else f"exit code {result.returncode}"
            )
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                self._queue.complete(task.id, False, error="cancelled")
                raise
            success, output, error = False, "", "cancelled"
        except Exception as exc:
            logger.exception("Repair task %s crashed", task.id)
            success, output, error = False, "", f"{type(exc).__name__}: {exc}"
        finally:
            self._active.pop(task.id, None)

        finished = self._queue.complete(task.id, success, output=output, error=error)
        if self._events is not None:
            await self._events.emit(
                REPAIR_COMPLETED,
                task_id=task.id,
                error_id=task.error_id,
                success=success,
                error=error,
            )
        await self._check_escalation(task.source, was_open, was_blocked)
        return finished

    async def _check_escalation(self, source: str, was_open: bool, was_blocked: bool) -> None:
        if self._alerts is None:
            return
        state = self._breaker.get_state()
        if state.state == CircuitState.OPEN and not was_open:
            await self._alerts.raise_alert(
                "Repair circuit breaker open",
                f"Automated repair paused for {self._breaker.config.cooldown:.0f}s: {state.trip_reason}",
                source=ALERT_SOURCE,
                details=state.model_dump(mode="json"),
            )
        elif not was_blocked and self._breaker.is_source_blocked(source):
            await self._alerts.raise_alert(
                "Repair source blocked",
                f"Repairs for '{source}' keep failing; source blocked until reset",
                source=ALERT_SOURCE,
                details={"source": source},
            )

    async def process_next(self) -> RepairTask | None:
        if not self._enabled or self.busy:
            return None
        if not self._breaker.can_attempt_repair():
            logger.info(
                "Repair breaker open, %.0fs remaining", self._breaker.remaining_cooldown(),
            )
            return None
        while True:
            task = self._queue.dequeue()
            if task is None:
                return None
            if self._breaker.can_attempt_repair(task.source):
                return await self.process_task(task)
            # queued before its source was blocked
            logger.info("Source %s is blocked, dropping repair %s", task.source, task.id)
            self._queue.cancel(task.id)

    async def process_all(self) -> list[RepairTask]:
        done: list[RepairTask] = []
        while True:
            task = await self.process_next()
            if task is None:
                return done
            done.append(task)

    async def repair_error(self, error_id: str) -> RepairTask | None:
        """Repair one error now, ahead of the queue."""
        task = self._queue.enqueue(error_id, priority=TaskPriority.URGENT)
        if task is None:
            return None
        claimed = self._queue.dequeue(task.id)
        if claimed is None:
            logger.info("Repair %s for %s is already running", task.id, error_id)
            return task
        return await self.process_task(claimed)

    def queue_new_errors(self) -> int:
        queued = 0
        for error in self._aggregator.get_pending_errors():
            if self._queue.enqueue(error.id) is not None:
                queued += 1
        return queued

    async def run_cycle(self) -> dict[str, Any]:
        """Queue new errors, then drain the queue."""
        if not self._enabled:
            return {"queued": 0, "processed": 0, "succeeded": 0, "failed": 0}
        queued = self.queue_new_errors()
        done = await self.process_all()
        succeeded = sum(1 for t in done if t.status == "completed")
        return {
            "queued": queued,
            "processed": len(done),
            "succeeded": succeeded,
            "failed": len(done) - succeeded,
        }

    def cancel_running(self) -> int:
        """Ask every running repair to stop. The child is terminated."""
        count = 0
        for runner in list(self._active.values()):
            if not runner.done():
                runner.cancel()
                count += 1
        return count
