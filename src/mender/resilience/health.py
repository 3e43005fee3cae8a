"""Provider health monitor — status across every wrapper, failover order.

Status is a pure function of the consecutive-failure streak:

  failures >= failure_threshold   → broken
  failures >= degraded_threshold  → degraded
  otherwise                       → healthy

A single success resets the streak. A broken provider recovers either
through a real call succeeding or through a recovery probe, and probes
run at most once per recovery interval per provider. When every
registered provider is broken at once a critical alert is raised (once
per outage).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from mender.config import HealthConfig
from mender.events import PROVIDER_HEALTH_CHANGED, AlertManager, EventBus
from mender.providers import Provider, ProviderError
from mender.schemas import CriticalAlert, HealthReport, ProviderHealth, ProviderStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALERT_SOURCE = "provider_health"

_STATUS_RANK = {
    ProviderStatus.HEALTHY: 0,
    ProviderStatus.DEGRADED: 1,
    ProviderStatus.BROKEN: 2,
}


class ProviderHealthMonitor:
    """Tracks health of named providers."""

    def __init__(
        self,
        config: HealthConfig | None = None,
        alerts: AlertManager | None = None,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or HealthConfig()
        self._alerts = alerts
        self._events = events
        self._clock = clock
        self._providers: dict[str, Provider] = {}
        self._health: dict[str, ProviderHealth] = {}
        self._critical_raised = False

    # ── Registration ───────────────────────────────────────────────

    def register(self, name: str, provider: Provider) -> None:
        self._providers[name] = provider
        self._health.setdefault(name, ProviderHealth(name=name))
        logger.debug("Registered provider %s", name)

    @property
    def names(self) -> list[str]:
        return list(self._providers)

    def get_provider(self, name: str) -> Provider | None:
        return self._providers.get(name)

    def get_health(self, name: str) -> ProviderHealth | None:
        health = self._health.get(name)
        return health.model_copy() if health else None

    def all_health(self) -> list[ProviderHealth]:
        return [h.model_copy() for h in self._health.values()]

    def _status_for(self, failures: int) -> ProviderStatus:
        if failures >= self._config.failure_threshold:
            return ProviderStatus.BROKEN
        if failures >= self._config.degraded_threshold:
            return ProviderStatus.DEGRADED
        return ProviderStatus.HEALTHY

    # ── Outcomes ───────────────────────────────────────────────────

    async def record_success(self, name: str) -> None:
        health = self._health.setdefault(name, ProviderHealth(name=name))
        previous = health.status
        health.consecutive_failures = 0
        health.last_success = self._clock()
        health.status = ProviderStatus.HEALTHY
        if previous != health.status:
            logger.info("Provider %s recovered (%s → healthy)", name, previous)
            self._critical_raised = False
            await self._emit_change(health, previous)

    async def record_failure(self, name: str, error: BaseException | str) -> None:
        health = self._health.setdefault(name, ProviderHealth(name=name))
        previous = health.status
        health.consecutive_failures += 1
        health.last_failure = self._clock()
        health.last_error = str(error)[:500]
        health.status = self._status_for(health.consecutive_failures)
        if previous != health.status:
            logger.warning(
                "Provider %s is now %s after %d consecutive failures: %s",
                name, health.status, health.consecutive_failures, health.last_error,
            )
            await self._emit_change(health, previous)
        await self._check_critical_state()

    async def _emit_change(self, health: ProviderHealth, previous: ProviderStatus) -> None:
        if self._events is not None:
            await self._events.emit(
                PROVIDER_HEALTH_CHANGED,
                provider=health.name,
                previous=str(previous),
                status=str(health.status),
                consecutive_failures=health.consecutive_failures,
            )

    async def _check_critical_state(self) -> None:
        if not self._health or self._critical_raised:
            return
        if all(h.status == ProviderStatus.BROKEN for h in self._health.values()):
            self._critical_raised = True
            errors = {h.name: h.last_error for h in self._health.values()}
            if self._alerts is not None:
                await self._alerts.raise_alert(
                    "All AI providers are broken",
                    f"{len(errors)} provider(s) failing; automated work is suspended",
                    source=ALERT_SOURCE,
                    details={"errors": errors},
                )
            else:
                logger.critical("All AI providers are broken: %s", errors)

    def reset(self, name: str | None = None) -> None:
        """Explicitly clear health for one provider, or all."""
        names = [name] if name else list(self._health)
        for n in names:
            if n in self._health:
                self._health[n] = ProviderHealth(name=n)
        self._critical_raised = False

    # ── Cross-provider repair ──────────────────────────────────────

    def can_repair(self, name: str) -> bool:
        """True if `name` is unhealthy, off cooldown, and someone healthy can help."""
        health = self._health.get(name)
        if health is None or health.status == ProviderStatus.HEALTHY:
            return False
        if (
            health.last_repair_attempt is not None
            and self._clock() - health.last_repair_attempt < self._config.repair_cooldown
        ):
            return False
        return self.get_repair_provider(exclude=name) is not None

    def get_repair_provider(self, exclude: str = "") -> tuple[str, Provider] | None:
        """Healthiest other provider that is not broken."""
        for candidate in self.get_fallback_order():
            if candidate == exclude:
                continue
            if self._health[candidate].status == ProviderStatus.BROKEN:
                continue
            return candidate, self._providers[candidate]
        return None

    async def attempt_cross_repair(self, name: str) -> str | None:
        """Ask a healthy provider to diagnose a broken one's last error.

        Best effort: returns the diagnosis, or None when no repair was
        possible or the helper itself failed.
        """
        if not self.can_repair(name):
            return None
        helper = self.get_repair_provider(exclude=name)
        if helper is None:
            return None
        helper_name, helper_provider = helper
        health = self._health[name]
        health.last_repair_attempt = self._clock()

        prompt = (
            f"The AI provider '{name}' has failed {health.consecutive_failures} "
            f"times in a row. Its last error was:\n\n{health.last_error}\n\n"
            "Diagnose the most likely cause (authentication, quota, network, "
            "CLI installation, configuration) and give concrete steps to fix it."
        )
        try:
            diagnosis = await helper_provider.chat(prompt)
        except Exception as e:
            logger.warning("Cross-repair of %s via %s failed: %s", name, helper_name, e)
            return None
        logger.info("Cross-repair diagnosis for %s from %s: %s", name, helper_name, diagnosis[:200])
        return diagnosis

    # ── Recovery probes ────────────────────────────────────────────

    async def test_provider(self, name: str) -> bool:
        provider = self._providers.get(name)
        if provider is None:
            return False
        try:
            reply = await provider.chat("Respond with OK")
        except Exception as e:
            await self.record_failure(name, e)
            return False
        if "ok" not in reply.lower():
            await self.record_failure(name, f"unexpected probe reply: {reply[:100]}")
            return False
        await self.record_success(name)
        return True

    async def check_broken_provider_recovery(self) -> list[str]:
        """Probe broken providers whose recovery interval elapsed. Returns recovered names."""
        recovered = []
        now = self._clock()
        for name, health in list(self._health.items()):
            if health.status != ProviderStatus.BROKEN:
                continue
            if (
                health.last_recovery_check is not None
                and now - health.last_recovery_check < self._config.recovery_check_interval
            ):
                continue
            health.last_recovery_check = now
            logger.info("Probing broken provider %s", name)
            if await self.test_provider(name):
                recovered.append(name)
        return recovered

    # ── Failover ───────────────────────────────────────────────────

    def get_fallback_order(self) -> list[str]:
        """Registered providers ordered healthy > degraded > broken."""
        return sorted(self._providers, key=lambda n: _STATUS_RANK[self._health[n].status])

    async def execute_with_fallback(
        self,
        operation: Callable[[Provider], Awaitable[T]],
        names: list[str] | None = None,
    ) -> T:
        """Try providers in fallback order until one succeeds.

        Broken providers are skipped unless every candidate is broken.
        """
        order = [n for n in self.get_fallback_order() if names is None or n in names]
        if not order:
            raise ProviderError("No providers registered")
        usable = [n for n in order if self._health[n].status != ProviderStatus.BROKEN] or order

        last_error: Exception | None = None
        for name in usable:
            try:
                result = await operation(self._providers[name])
            except Exception as e:
                last_error = e
                logger.warning("Provider %s failed, trying next: %s", name, e)
                await self.record_failure(name, e)
                continue
            await self.record_success(name)
            return result
        raise ProviderError(f"All providers failed: {last_error}") from last_error

    # ── Reporting ──────────────────────────────────────────────────

    def get_health_report(self) -> HealthReport:
        providers = self.all_health()
        counts = {status: 0 for status in ProviderStatus}
        for h in providers:
            counts[h.status] += 1
        if providers and counts[ProviderStatus.BROKEN] == len(providers):
            overall = "critical"
        elif counts[ProviderStatus.DEGRADED] or counts[ProviderStatus.BROKEN]:
            overall = "degraded"
        else:
            overall = "healthy"
        return HealthReport(
            overall=overall,
            providers=providers,
            healthy=counts[ProviderStatus.HEALTHY],
            degraded=counts[ProviderStatus.DEGRADED],
            broken=counts[ProviderStatus.BROKEN],
        )

    def get_critical_alerts(self) -> list[CriticalAlert]:
        if self._alerts is None:
            return []
        return [a for a in self._alerts.history() if a.source == ALERT_SOURCE]
