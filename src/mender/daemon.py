"""Composition root: builds every service from a MenderConfig and runs them.

Nothing in the package is a module-level singleton; Mender owns one
instance of each service and hands them to their collaborators. State
files live under ``<root>/<workspace_dir>/``.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from mender.config import MenderConfig
from mender.events import AlertManager, EventBus
from mender.improvements import ImprovementQueue
from mender.orchestrator import CycleInProgress, Orchestrator
from mender.phases import (
    ErrorDetectPhase,
    HealthCheckPhase,
    ImplementPhase,
    ImproveFindPhase,
    Phase,
    PlanPhase,
    SearchPhase,
    TestGenPhase,
    VerifyPhase,
)
from mender.providers import Provider, create_provider
from mender.repair.aggregator import ErrorAggregator
from mender.repair.auto_repair import AutoRepairer
from mender.repair.breaker import RepairCircuitBreaker
from mender.repair.queue import RepairQueue
from mender.resilience.health import ProviderHealthMonitor
from mender.resilience.rate_limit import RateLimitHandler
from mender.resilience.resilient import ResilientProvider
from mender.review.appeal import AppealManager
from mender.review.changes import ChangeTracker
from mender.review.confirmation import ConfirmationQueue, ConfirmationReviewer
from mender.review.guard import Guard
from mender.review.judges import Judge, MultiJudgeReviewer
from mender.scheduler import Scheduler
from mender.schemas import CycleResult, ProviderStatus
from mender.snapshot import DirectorySnapshotter, Snapshotter

logger = logging.getLogger(__name__)

# State files, relative to the workspace dir
CHANGES_FILE = "changes.json"              # fallback work awaiting audit
CONFIRMATIONS_FILE = "confirmations.json"
IMPROVEMENTS_FILE = "improvements.json"
ERRORS_FILE = "errors.json"
REPAIR_QUEUE_FILE = "repair_queue.json"
REPAIR_HISTORY = "repair_history.jsonl"    # finished repair tasks
BREAKER_FILE = "repair_breaker.json"
CYCLE_LOG = "cycles.jsonl"
REVIEW_LOG = "reviews.jsonl"               # appeal outcomes
SCHEDULER_FILE = "scheduler.json"
SNAPSHOT_DIR = "snapshots"

# Scheduled task ids
CYCLE_TASK = "repair-cycle"
HEALTH_TASK = "provider-health"
AUTO_REPAIR_TASK = "auto-repair"
CONFIRMATION_TASK = "confirmation-review"
CLEANUP_TASK = "cleanup"


class Mender:
    """Owns and wires every service of one repair daemon."""

    def __init__(
        self,
        config: MenderConfig,
        root: str | Path = ".",
        providers: dict[str, Provider] | None = None,
        snapshots: Snapshotter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.root = Path(root).resolve()
        self.state_dir = self.root / config.workspace_dir
        self.state_dir.mkdir(parents=True, exist_ok=True)
        ws = self.state_dir

        self.events = EventBus(clock=clock)
        self.alerts = AlertManager(self.events, config.resolve_alert_webhook(), clock=clock)
        self.health = ProviderHealthMonitor(config.health, self.alerts, self.events, clock=clock)

        self.providers = self._build_providers(providers)
        for name, provider in self.providers.items():
            self.health.register(name, provider)
        primary = self.providers[config.primary_provider]
        fallback = self.providers.get(config.fallback_provider)

        self.tracker = ChangeTracker(ws / CHANGES_FILE, clock=clock)
        self.confirmations = ConfirmationQueue(ws / CONFIRMATIONS_FILE, clock=clock)
        self.rate_limit = RateLimitHandler(config.rate_limit)
        self.provider = ResilientProvider(
            primary,
            fallback,
            rate_limit=self.rate_limit,
            health=self.health,
            tracker=self.tracker,
            confirmations=self.confirmations,
            config=config.fallback,
        )
        self.confirmation_reviewer = ConfirmationReviewer(
            self.confirmations,
            self.tracker,
            primary,
            is_limited=self.rate_limit.is_limited,
            limit=config.fallback.max_confirmations_per_run,
        )

        self.guard = Guard(config.guard)
        self.reviewer = MultiJudgeReviewer(
            [Judge(name, self.providers[name]) for name in config.review.judges if name in self.providers],
            config.review,
        )
        self.appeal = AppealManager(self.reviewer, config.review, self.root, ws / REVIEW_LOG)
        self.snapshots = snapshots or DirectorySnapshotter(
            self.root,
            ws / SNAPSHOT_DIR,
            include=[config.source_dir, config.test_dir],
            extensions=config.guard.allowed_extensions,
            clock=clock,
        )

        self.improvements = ImprovementQueue(ws / IMPROVEMENTS_FILE, clock=clock)
        self.aggregator = ErrorAggregator(ws / ERRORS_FILE, clock=clock)
        self.orchestrator = Orchestrator(
            self.build_phases(),
            events=self.events,
            alerts=self.alerts,
            aggregator=self.aggregator,
            improvements=self.improvements,
            snapshots=self.snapshots,
            provider=self.provider,
            cycle_log=ws / CYCLE_LOG,
            max_consecutive_failures=config.orchestration.max_consecutive_failures,
            clock=clock,
        )

        self.breaker = RepairCircuitBreaker(config.breaker, ws / BREAKER_FILE, clock=clock)
        self.repair_queue = RepairQueue(
            self.aggregator,
            self.breaker,
            ws / REPAIR_QUEUE_FILE,
            ws / REPAIR_HISTORY,
            clock=clock,
            max_attempts=config.breaker.max_attempts_per_error,
        )
        self.auto_repairer = AutoRepairer(
            self.repair_queue,
            self.aggregator,
            self.breaker,
            config.auto_repair,
            alerts=self.alerts,
            events=self.events,
            cwd=self.root,
        )

        sched = config.scheduling
        self.scheduler = Scheduler(
            is_rate_limited=self.rate_limit.is_limited,
            status_path=ws / SCHEDULER_FILE,
            clock=clock,
            max_retries=sched.max_retries,
            base_backoff=sched.base_backoff,
            max_backoff=sched.max_backoff,
            cooldown=sched.cooldown,
        )
        self._stop: asyncio.Event | None = None

    def _build_providers(self, injected: dict[str, Provider] | None) -> dict[str, Provider]:
        """Primary, fallback and judges, each built once by name.

        Only the primary is mandatory; an optional provider that cannot
        be built (missing SDK or API key) is logged and left out.
        """
        if injected is not None:
            if self.config.primary_provider not in injected:
                raise ValueError(f"Primary provider '{self.config.primary_provider}' not supplied")
            return dict(injected)

        wanted = [self.config.primary_provider, self.config.fallback_provider, *self.config.review.judges]
        providers: dict[str, Provider] = {}
        for name in wanted:
            if not name or name in providers:
                continue
            try:
                providers[name] = create_provider(name, self.config)
            except (ValueError, ImportError) as e:
                if name == self.config.primary_provider:
                    raise
                logger.warning("Provider %s unavailable: %s", name, e)
        return providers

    def build_phases(self) -> list[Phase]:
        cfg = self.config
        return [
            HealthCheckPhase(cfg.health_commands, self.root, cfg.command_timeout, health=self.health),
            ErrorDetectPhase(cfg.detect_commands, self.root, cfg.command_timeout),
            ImproveFindPhase(
                self.provider, self.root, cfg.source_dir,
                max_files=cfg.max_files_analyzed,
                max_file_lines=cfg.guard.max_lines_per_file,
                queue=self.improvements,
            ),
            SearchPhase(self.provider, self.root, cfg.source_dir),
            PlanPhase(self.provider, max_steps=cfg.guard.max_files_per_change),
            ImplementPhase(
                self.provider, self.guard, self.snapshots, self.root,
                appeal=self.appeal, events=self.events,
            ),
            TestGenPhase(self.provider, self.guard, self.root, cfg.test_dir),
            VerifyPhase(cfg.verify_commands, self.snapshots, self.root, cfg.command_timeout, events=self.events),
        ]

    # ── Scheduled handlers ─────────────────────────────────────────

    async def run_cycle(self) -> CycleResult | None:
        try:
            return await self.orchestrator.run_cycle()
        except CycleInProgress:
            return None

    async def _cycle_task(self) -> bool:
        result = await self.run_cycle()
        # Only transient failures are worth a scheduler retry
        return result is None or result.success or not result.should_retry

    async def _health_task(self) -> bool:
        recovered = await self.health.check_broken_provider_recovery()
        if recovered:
            logger.info("Providers recovered: %s", ", ".join(recovered))
        for health in self.health.all_health():
            if health.status == ProviderStatus.BROKEN and self.health.can_repair(health.name):
                diagnosis = await self.health.attempt_cross_repair(health.name)
                if diagnosis:
                    self.aggregator.report_error(
                        "provider_health",
                        f"provider {health.name} broken: {health.last_error}",
                        context={"provider": health.name, "diagnosis": diagnosis[:2000]},
                    )
        return True

    async def _auto_repair_task(self) -> bool:
        summary = await self.auto_repairer.run_cycle()
        if summary["processed"]:
            logger.info(
                "Auto-repair: %d processed, %d succeeded",
                summary["processed"], summary["succeeded"],
            )
        return True

    async def _confirmation_task(self) -> bool:
        await self.confirmation_reviewer.review_pending()
        return True

    async def _cleanup_task(self) -> bool:
        days = self.config.orchestration.cleanup_days
        removed = (
            self.tracker.cleanup(days)
            + self.confirmations.cleanup(days)
            + self.improvements.cleanup(days)
            + self.aggregator.cleanup(days)
        )
        logger.info("Cleanup removed %d old records", removed)
        return True

    def register_tasks(self) -> None:
        sched = self.config.scheduling
        self.scheduler.register(
            CYCLE_TASK, "Repair cycle", self._cycle_task,
            interval=sched.cycle_interval, cron=sched.cycle_cron, requires_provider=True,
        )
        self.scheduler.register(
            HEALTH_TASK, "Provider health check", self._health_task,
            interval=sched.health_check_interval,
        )
        self.scheduler.register(
            AUTO_REPAIR_TASK, "Automated error repair", self._auto_repair_task,
            interval=sched.repair_interval, enabled=self.config.auto_repair.enabled,
        )
        self.scheduler.register(
            CONFIRMATION_TASK, "Fallback confirmation review", self._confirmation_task,
            interval=sched.confirmation_interval,
            enabled=self.config.fallback.auto_review,
            requires_provider=True,
        )
        self.scheduler.register(CLEANUP_TASK, "Old record cleanup", self._cleanup_task, cron=sched.cleanup_cron)

    # ── Lifecycle ──────────────────────────────────────────────────

    async def run(self) -> None:
        """Run until SIGINT/SIGTERM or stop()."""
        self._stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                pass

        self.register_tasks()
        self.scheduler.start()
        logger.info("Mender running in %s (state in %s)", self.root, self.state_dir)
        try:
            await self._stop.wait()
        finally:
            cancelled = self.auto_repairer.cancel_running()
            if cancelled:
                logger.info("Cancelled %d running repairs", cancelled)
            await self.scheduler.stop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, RuntimeError):
                    pass
            logger.info("Mender stopped")

    def stop(self) -> None:
        if self._stop is not None:
            logger.info("Shutdown requested")
            self._stop.set()

    def status(self) -> dict[str, Any]:
        """Snapshot of every subsystem for the status command."""
        next_task = self.scheduler.get_next_scheduled()
        return {
            "orchestrator": self.orchestrator.get_status(),
            "providers": self.health.get_health_report().model_dump(mode="json"),
            "rate_limit": self.rate_limit.state().model_dump(mode="json"),
            "repair_breaker": self.breaker.get_state().model_dump(mode="json"),
            "errors": self.aggregator.get_stats().model_dump(mode="json"),
            "repair_queue": {"pending": self.repair_queue.pending_count()},
            "confirmations": self.confirmations.get_stats(),
            "improvements": self.improvements.get_stats(),
            "changes": self.tracker.get_stats(),
            "scheduler": [s.model_dump(mode="json") for s in self.scheduler.get_status()],
            "next_scheduled": next_task.model_dump(mode="json") if next_task else None,
            "alerts": [a.model_dump(mode="json") for a in self.alerts.history(10)],
        }
