"""Repair circuit breaker — stops runaway automated repair loops.

  closed ──(global failures ≥ threshold)──▶ open
  open ──(cooldown elapsed, checked lazily)──▶ half-open (N trial repairs)
  half-open ──(any failure)──▶ open
  half-open ──(N successes)──▶ closed

Per-source streaks have their own threshold: a source at its limit is
refused while others keep going. Per-error attempts are capped
separately, so one pathological error cannot use up the global streak.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from mender.config import BreakerConfig
from mender.schemas import BreakerState, CircuitState
from mender.store import JsonStore

logger = logging.getLogger(__name__)


class RepairCircuitBreaker:
    """Persisted closed/open/half-open breaker for the repair loop."""

    def __init__(
        self,
        config: BreakerConfig | None = None,
        path: str | Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or BreakerConfig()
        self._store = JsonStore(path, default=lambda: BreakerState().model_dump(mode="json"))
        self._clock = clock

    @property
    def config(self) -> BreakerConfig:
        return self._config

    def _load(self) -> BreakerState:
        return BreakerState.model_validate(self._store.read())

    def _save(self, state: BreakerState) -> None:
        self._store.replace(state.model_dump(mode="json"))

    def _refresh(self) -> BreakerState:
        """Load state, moving open → half-open once the cooldown has elapsed."""
        state = self._load()
        if (
            state.state == CircuitState.OPEN
            and state.opened_at is not None
            and self._clock() - state.opened_at >= self._config.cooldown
        ):
            state.state = CircuitState.HALF_OPEN
            state.half_open_remaining = self._config.half_open_test_count
            logger.info(
                "Repair breaker cooldown elapsed, half-open for %d trial repairs",
                self._config.half_open_test_count,
            )
            self._save(state)
        return state

    @property
    def state(self) -> CircuitState:
        return self._refresh().state

    def get_state(self) -> BreakerState:
        return self._refresh()

    def is_source_blocked(self, source: str) -> bool:
        failures = self._load().consecutive_failures_per_source.get(source, 0)
        return failures >= self._config.max_consecutive_failures_per_source

    def can_attempt_repair(self, source: str | None = None) -> bool:
        state = self._refresh()
        if state.state == CircuitState.OPEN:
            return False
        if source is not None and self.is_source_blocked(source):
            return False
        return True

    def can_attempt_repair_for_error(self, attempts: int, source: str | None = None) -> bool:
        return attempts < self._config.max_attempts_per_error and self.can_attempt_repair(source)

    def record_success(self, source: str | None = None) -> None:
        state = self._refresh()
        state.consecutive_failures_global = 0
        if source is not None:
            state.consecutive_failures_per_source[source] = 0
        if state.state == CircuitState.HALF_OPEN:
            remaining = (state.half_open_remaining or 1) - 1
            if remaining <= 0:
                state.state = CircuitState.CLOSED
                state.half_open_remaining = None
                state.opened_at = None
                state.trip_reason = ""
                logger.info("Repair breaker closed after successful trial repairs")
            else:
                state.half_open_remaining = remaining
        self._save(state)

    def record_failure(self, source: str | None = None) -> None:
        state = self._refresh()
        state.consecutive_failures_global += 1
        state.last_failure_at = self._clock()
        if source is not None:
            state.consecutive_failures_per_source[source] = (
                state.consecutive_failures_per_source.get(source, 0) + 1
            )
            if state.consecutive_failures_per_source[source] == self._config.max_consecutive_failures_per_source:
                logger.warning("Repair source %s blocked after %d consecutive failures",
                               source, state.consecutive_failures_per_source[source])

        if state.state == CircuitState.HALF_OPEN:
            self._trip(state, "failure during half-open")
        elif (
            state.state == CircuitState.CLOSED
            and state.consecutive_failures_global >= self._config.max_consecutive_failures_global
        ):
            self._trip(state, "global consecutive failures exceeded")
        self._save(state)

    def _trip(self, state: BreakerState, reason: str) -> None:
        logger.warning("Repair breaker tripped: %s", reason)
        state.state = CircuitState.OPEN
        state.opened_at = self._clock()
        state.half_open_remaining = None
        state.trip_reason = reason

    def remaining_cooldown(self) -> float:
        state = self._refresh()
        if state.state != CircuitState.OPEN or state.opened_at is None:
            return 0.0
        return max(0.0, state.opened_at + self._config.cooldown - self._clock())

    def reset(self) -> None:
        self._save(BreakerState())
        logger.info("Repair breaker reset")

    def reset_source(self, source: str) -> None:
        state = self._load()
        state.consecutive_failures_per_source[source] = 0
        self._save(state)
