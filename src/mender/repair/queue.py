"""Repair queue — turns aggregated errors into prioritized repair tasks.

A task carries the full repair prompt, built at enqueue time from the
error, its context, and the output of every earlier failed attempt on
the same error. Finished tasks leave the queue and are appended to the
repair history (JSONL).
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from pathlib import Path
from uuid import uuid4

from mender.repair.aggregator import ErrorAggregator
from mender.repair.breaker import RepairCircuitBreaker
from mender.schemas import (
    AggregatedError,
    ErrorStatus,
    RepairAttempt,
    RepairTask,
    Severity,
    TaskPriority,
    TaskStatus,
)
from mender.store import JsonStore, append_jsonl, read_jsonl

logger = logging.getLogger(__name__)

SEVERITY_PRIORITY = {
    Severity.CRITICAL: TaskPriority.URGENT,
    Severity.HIGH: TaskPriority.HIGH,
    Severity.MEDIUM: TaskPriority.NORMAL,
    Severity.LOW: TaskPriority.LOW,
}

_OPEN = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


def build_repair_prompt(error: AggregatedError) -> str:
    """Prompt for the repair agent. Earlier failures are included verbatim."""
    parts = [
        "An automated system reported the following error. Find the root cause "
        "in this repository and fix it with the smallest safe change. "
        "Do not weaken tests or disable checks to make the error disappear.",
        "",
        f"Source: {error.source}",
        f"Category: {error.category} / severity: {error.severity}",
        f"Error: {error.message}",
    ]
    if error.context:
        parts += ["", "Context:", json.dumps(error.context, indent=2, default=str)]
    if error.stack:
        parts += ["", "Stack trace:", error.stack]

    failed = [a for a in error.repair_attempts if not a.success]
    if failed:
        parts += ["", f"{len(failed)} previous repair attempt(s) failed. Do not repeat them:"]
        for attempt in failed:
            parts.append(f"\n--- Attempt {attempt.attempt} ---")
            if attempt.error:
                parts.append(f"Error: {attempt.error}")
            if attempt.output:
                parts.append(attempt.output[-2000:])
    return "\n".join(parts)


class RepairQueue:
    """Persistent priority queue of repair tasks."""

    def __init__(
        self,
        aggregator: ErrorAggregator,
        breaker: RepairCircuitBreaker,
        path: str | Path | None = None,
        history_path: str | Path | None = None,
        clock: Callable[[], float] = time.time,
        max_attempts: int = 3,
    ) -> None:
        self._aggregator = aggregator
        self._breaker = breaker
        self._store = JsonStore(path, default=lambda: {"tasks": []})
        self._history_path = Path(history_path) if history_path else None
        self._clock = clock
        self._max_attempts = max_attempts

    def _tasks(self) -> list[RepairTask]:
        return [RepairTask.model_validate(t) for t in self._store.read()["tasks"]]

    @staticmethod
    def _order(task: RepairTask) -> tuple[int, int, float]:
        return (0 if task.status == TaskStatus.PENDING else 1, task.priority.rank, task.created_at)

    def _save(self, tasks: list[RepairTask]) -> None:
        tasks.sort(key=self._order)
        self._store.replace({"tasks": [t.model_dump(mode="json") for t in tasks]})

    def get_task(self, task_id: str) -> RepairTask | None:
        return next((t for t in self._tasks() if t.id == task_id), None)

    def get_tasks(self, status: TaskStatus | None = None) -> list[RepairTask]:
        return [t for t in self._tasks() if status is None or t.status == status]

    def pending_count(self) -> int:
        return len(self.get_tasks(TaskStatus.PENDING))

    def enqueue(self, error_id: str, priority: TaskPriority | None = None) -> RepairTask | None:
        """Queue a repair for an error.

        Returns the existing task if one is already open for the error,
        or None if the error is unknown or the breaker refuses it.
        """
        error = self._aggregator.get_error(error_id)
        if error is None:
            logger.warning("Cannot enqueue repair: unknown error %s", error_id)
            return None

        tasks = self._tasks()
        for task in tasks:
            if task.error_id == error_id and task.status in _OPEN:
                logger.debug("Repair for %s already queued as %s", error_id, task.id)
                return task

        attempts = len(error.repair_attempts)
        if attempts >= self._max_attempts:
            logger.info("Error %s exhausted %d repair attempts", error_id, attempts)
            return None
        if not self._breaker.can_attempt_repair_for_error(attempts, error.source):
            logger.info("Repair breaker refuses %s (source %s)", error_id, error.source)
            return None

        task = RepairTask(
            id=uuid4().hex[:12],
            error_id=error_id,
            source=error.source,
            priority=priority or SEVERITY_PRIORITY[error.severity],
            attempts=attempts,
            max_attempts=self._max_attempts,
            prompt=build_repair_prompt(error),
            created_at=self._clock(),
        )
        tasks.append(task)
        self._save(tasks)
        self._aggregator.update_status(error_id, ErrorStatus.QUEUED)
        logger.info("Queued repair %s for error %s (%s)", task.id, error_id, task.priority)
        return task

    def dequeue(self, task_id: str | None = None) -> RepairTask | None:
        """Claim the next pending task (or a specific one) and mark it running."""
        tasks = self._tasks()
        pending = [t for t in tasks if t.status == TaskStatus.PENDING]
        if task_id is not None:
            pending = [t for t in pending if t.id == task_id]
        if not pending:
            return None

        task = min(pending, key=self._order)
        task.status = TaskStatus.IN_PROGRESS
        task.started_at = self._clock()
        task.attempts += 1
        self._save(tasks)
        self._aggregator.update_status(task.error_id, ErrorStatus.REPAIRING)
        return task

    def complete(
        self,
        task_id: str,
        success: bool,
        output: str = "",
        error: str = "",
    ) -> RepairTask | None:
        """Record a finished repair on the task, the error and the breaker."""
        tasks = self._tasks()
        task = next((t for t in tasks if t.id == task_id), None)
        if task is None:
            logger.warning("complete: unknown repair task %s", task_id)
            return None

        now = self._clock()
        task.status = TaskStatus.COMPLETED if success else TaskStatus.FAILED
        task.completed_at = now
        task.result = (output or error)[-4000:]
        self._save([t for t in tasks if t.id != task_id])

        self._aggregator.record_repair_attempt(
            task.error_id,
            RepairAttempt(
                attempt=task.attempts,
                task_id=task.id,
                started_at=task.started_at or now,
                finished_at=now,
                success=success,
                output=output[-4000:],
                error=error,
            ),
        )
        if success:
            self._breaker.record_success(task.source)
            self._aggregator.update_status(task.error_id, ErrorStatus.RESOLVED, resolved_by="auto-repair")
        else:
            self._breaker.record_failure(task.source)
            # Back to new while attempts remain, so the next sweep retries it
            exhausted = task.attempts >= task.max_attempts
            self._aggregator.update_status(
                task.error_id, ErrorStatus.FAILED if exhausted else ErrorStatus.NEW,
            )

        if self._history_path is not None:
            append_jsonl(self._history_path, task.model_dump(mode="json"))
        logger.info("Repair %s for error %s %s", task.id, task.error_id, task.status)
        return task

    def cancel(self, task_id: str) -> bool:
        tasks = self._tasks()
        task = next((t for t in tasks if t.id == task_id), None)
        if task is None:
            return False
        self._save([t for t in tasks if t.id != task_id])
        self._aggregator.update_status(task.error_id, ErrorStatus.NEW)
        logger.info("Cancelled repair %s", task_id)
        return True

    def clear(self) -> int:
        """Drop every pending task. Running tasks are left alone."""
        tasks = self._tasks()
        pending = [t for t in tasks if t.status == TaskStatus.PENDING]
        self._save([t for t in tasks if t.status != TaskStatus.PENDING])
        for task in pending:
            self._aggregator.update_status(task.error_id, ErrorStatus.NEW)
        return len(pending)

    def history(self, limit: int | None = None) -> list[RepairTask]:
        if self._history_path is None:
            return []
        return [RepairTask.model_validate(r) for r in read_jsonl(self._history_path, limit)]
