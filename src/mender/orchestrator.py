"""Cycle orchestrator — runs the phases in order over one CycleContext.

A phase asking to stop ends the cycle. A phase raising is caught and
logged; the cycle is recorded as failed and the process carries on.
If the crash comes after implement took a snapshot, the snapshot is
rolled back so no unverified change stays on disk.
Cycles are not reentrant. Every cycle, successful or not, is appended
to the cycle log (JSONL) and announced on the event bus.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from mender.events import (
    CYCLE_COMPLETED,
    CYCLE_STARTED,
    ERROR,
    PHASE_COMPLETED,
    PHASE_STARTED,
    AlertManager,
    EventBus,
)
from mender.improvements import ImprovementQueue
from mender.phases import HEALTH_CHECK, VERIFY, Phase, roll_back
from mender.repair.aggregator import ErrorAggregator
from mender.resilience.rate_limit import is_retryable
from mender.schemas import CycleContext, CycleResult, ImprovementStatus
from mender.snapshot import Snapshotter
from mender.store import append_jsonl, read_jsonl

logger = logging.getLogger(__name__)

SOURCE = "orchestrator"


class CycleInProgress(RuntimeError):
    """run_cycle was called while a cycle is already running."""


class PhaseAware(Protocol):
    def set_current_phase(self, phase: str) -> None:
        ...


class Orchestrator:
    """Runs repair cycles."""

    def __init__(
        self,
        phases: list[Phase],
        events: EventBus | None = None,
        alerts: AlertManager | None = None,
        aggregator: ErrorAggregator | None = None,
        improvements: ImprovementQueue | None = None,
        snapshots: Snapshotter | None = None,
        provider: PhaseAware | None = None,
        cycle_log: str | Path | None = None,
        max_consecutive_failures: int = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._phases = phases
        self._events = events or EventBus(clock=clock)
        self._alerts = alerts
        self._aggregator = aggregator
        self._improvements = improvements
        self._snapshots = snapshots
        self._provider = provider
        self._cycle_log = Path(cycle_log) if cycle_log else None
        self._max_failures = max_consecutive_failures
        self._clock = clock

        self._running = False
        self._current: CycleContext | None = None
        self._last_result: CycleResult | None = None
        self.consecutive_failures = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def phase_names(self) -> list[str]:
        return [p.name for p in self._phases]

    def _set_phase(self, name: str) -> None:
        if self._provider is not None:
            self._provider.set_current_phase(name)

    async def run_cycle(self) -> CycleResult:
        if self._running:
            logger.warning("Cycle already running, refusing to start another")
            raise CycleInProgress("Cycle already in progress")
        self._running = True

        context = CycleContext(cycle_id=uuid4().hex[:12], started_at=self._clock())
        self._current = context
        phases_run: list[str] = []
        success = True
        crashed = False
        skipped_early = False
        message = ""

        logger.info("Starting repair cycle %s", context.cycle_id)
        await self._events.emit(CYCLE_STARTED, cycle_id=context.cycle_id)

        current = ""
        try:
            for phase in self._phases:
                current = phase.name
                self._set_phase(current)
                logger.info("Executing phase: %s", current)
                await self._events.emit(PHASE_STARTED, cycle_id=context.cycle_id, phase=current)

                result = await phase.execute(context)
                phases_run.append(current)
                await self._events.emit(
                    PHASE_COMPLETED,
                    cycle_id=context.cycle_id,
                    phase=current,
                    success=result.success,
                    message=result.message,
                )

                if not result.success:
                    success = False
                    context.failed_phase = current
                    context.failure_reason = context.failure_reason or result.message
                    logger.warning("Phase %s failed: %s", current, result.message)
                message = result.message
                if result.should_stop:
                    logger.info("Phase %s requested stop: %s", current, result.message)
                    skipped_early = result.success and current != VERIFY
                    break
        except Exception as exc:
            logger.exception("Cycle %s failed in phase %s", context.cycle_id, current)
            success = False
            crashed = True
            context.failed_phase = current
            context.failure_reason = f"{type(exc).__name__}: {exc}"
            message = context.failure_reason
            await self._events.emit(ERROR, error=context.failure_reason, cycle_id=context.cycle_id)
            if context.snapshot_id and self._snapshots is not None:
                await self._rollback_after_crash(context)
        finally:
            self._running = False
            self._set_phase("")

        result = CycleResult(
            cycle_id=context.cycle_id,
            success=success,
            started_at=context.started_at,
            duration=self._clock() - context.started_at,
            phases_run=phases_run,
            failed_phase=context.failed_phase,
            failure_reason=context.failure_reason,
            should_retry=not success and is_retryable(context.failure_reason or ""),
            skipped_early=skipped_early,
            message=message,
            issues_found=len(context.issues),
            changes_made=len(context.implemented_changes) if success else 0,
            ai_calls=context.ai_calls,
        )
        await self._finish(context, result, crashed)
        return result

    async def _rollback_after_crash(self, context: CycleContext) -> None:
        reason = f"cycle crashed in {context.failed_phase}"
        try:
            await roll_back(self._snapshots, context.snapshot_id, reason, self._events)
        except Exception:
            logger.exception("Rollback of %s failed", context.snapshot_id)
            if self._alerts is not None:
                await self._alerts.raise_alert(
                    "Rollback failed",
                    f"Cycle {context.cycle_id} crashed in {context.failed_phase} and snapshot "
                    f"{context.snapshot_id} could not be restored; unverified changes may remain",
                    source=SOURCE,
                    details={"snapshot_id": context.snapshot_id},
                )

    async def _finish(self, context: CycleContext, result: CycleResult, crashed: bool) -> None:
        self._last_result = result
        if result.success:
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1

        if self._cycle_log is not None:
            append_jsonl(self._cycle_log, result.model_dump(mode="json"))

        if self._improvements is not None and context.improvement_id:
            if result.skipped_early:
                status = ImprovementStatus.SKIPPED
            elif result.success:
                status = ImprovementStatus.COMPLETED
            else:
                status = ImprovementStatus.FAILED
            self._improvements.update_status(
                context.improvement_id, status, result=result.message, cycle_id=result.cycle_id,
            )

        if self._aggregator is not None and (crashed or result.failed_phase == HEALTH_CHECK):
            self._aggregator.report_error(
                SOURCE,
                result.failure_reason or "cycle failed",
                context={"cycle_id": context.cycle_id, "phase": result.failed_phase},
            )

        if (
            self._alerts is not None
            and self.consecutive_failures >= self._max_failures
            and self.consecutive_failures % self._max_failures == 0
        ):
            await self._alerts.raise_alert(
                "Repair cycles keep failing",
                f"{self.consecutive_failures} consecutive cycles failed; "
                f"last failure in {result.failed_phase}: {result.failure_reason}",
                source=SOURCE,
                details={"last_cycle": result.cycle_id},
            )

        logger.info(
            "Cycle %s %s in %.1fs (%s)",
            result.cycle_id, "succeeded" if result.success else "failed",
            result.duration, result.message,
        )
        await self._events.emit(
            CYCLE_COMPLETED,
            cycle_id=result.cycle_id,
            success=result.success,
            duration=result.duration,
        )

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self._running,
            "current_cycle_id": self._current.cycle_id if self._running and self._current else None,
            "phases": self.phase_names,
            "consecutive_failures": self.consecutive_failures,
            "last_result": self._last_result.model_dump(mode="json") if self._last_result else None,
        }

    def recent_cycles(self, limit: int = 20) -> list[CycleResult]:
        if self._cycle_log is None:
            return []
        return [CycleResult.model_validate(r) for r in read_jsonl(self._cycle_log, limit)]
