"""Rate-limit handler — per-wrapper backoff and circuit state.

A retryable failure bumps the consecutive-failure count and opens a
backoff window of ``base * 2**(failures - 1)`` seconds, capped at
``max_backoff``. Once the count reaches the circuit threshold the
circuit is open: callers skip the primary entirely until the window
expires, after which the next call is a half-open probe. Any success
resets everything.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from mender.config import RateLimitConfig
from mender.providers import ProviderTimeout
from mender.schemas import CircuitState, RateLimitState

logger = logging.getLogger(__name__)

RETRYABLE_KEYWORDS = (
    "rate limit",
    "rate_limit",
    "429",
    "too many requests",
    "overloaded",
    "capacity",
    "timeout",
    "timed out",
    "etimedout",
    "econnreset",
    "connection reset",
)


def is_retryable(error: BaseException | str) -> bool:
    """True for transient failures worth retrying against a fallback."""
    if isinstance(error, (ProviderTimeout, TimeoutError)):
        return True
    text = str(error).lower()
    return any(keyword in text for keyword in RETRYABLE_KEYWORDS)


class RateLimitHandler:
    """Tracks rate-limit state for one provider wrapper."""

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or RateLimitConfig()
        self._clock = clock
        self._state = RateLimitState()

    def backoff_for(self, failures: int) -> float:
        """Backoff in seconds after the given number of consecutive failures."""
        if failures <= 0:
            return 0.0
        return min(
            self._config.base_backoff * (2 ** (failures - 1)),
            self._config.max_backoff,
        )

    def is_retryable(self, error: BaseException | str) -> bool:
        return is_retryable(error)

    def record_rate_limit(self, error: BaseException | str = "") -> float:
        """Record a retryable failure. Returns the new backoff in seconds."""
        s = self._state
        s.consecutive_failures += 1
        s.is_limited = True
        s.limited_at = self._clock()
        s.retry_after = self.backoff_for(s.consecutive_failures)
        s.last_error = str(error)[:500]

        if s.consecutive_failures >= self._config.circuit_threshold:
            if s.circuit_state != CircuitState.OPEN:
                logger.warning(
                    "Rate-limit circuit opened after %d consecutive failures",
                    s.consecutive_failures,
                )
            s.circuit_state = CircuitState.OPEN

        logger.info(
            "Rate limited (failure %d), backing off %.0fs",
            s.consecutive_failures, s.retry_after,
        )
        return s.retry_after

    def is_limited(self) -> bool:
        """True while inside the backoff window. Expiry moves an open circuit to half-open."""
        s = self._state
        if not s.is_limited:
            return False
        if s.backoff_until is not None and self._clock() >= s.backoff_until:
            s.is_limited = False
            if s.circuit_state == CircuitState.OPEN:
                s.circuit_state = CircuitState.HALF_OPEN
                logger.info("Rate-limit window expired, circuit half-open")
            return False
        return True

    def remaining(self) -> float:
        """Seconds left in the current backoff window."""
        s = self._state
        if not self.is_limited() or s.backoff_until is None:
            return 0.0
        return max(0.0, s.backoff_until - self._clock())

    def record_success(self) -> None:
        if self._state.consecutive_failures or self._state.is_limited:
            logger.info("Provider recovered, clearing rate-limit state")
        self._state = RateLimitState()

    def clear(self) -> None:
        self._state = RateLimitState()

    def state(self) -> RateLimitState:
        self.is_limited()
        return self._state.model_copy()
