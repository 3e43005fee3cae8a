"""Event bus + critical alerts.

EventBus fans typed events out to subscribers (sync or async
callables). A subscriber that raises is logged and skipped; emit never
fails because of a listener.

AlertManager is the escalation path for irrecoverable conditions (all
providers broken, repair breaker stuck open, repeated cycle failures).
Alerts are logged at CRITICAL, kept in a bounded history, published as
``critical_alert`` events, and optionally POSTed to a webhook.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import uuid4

from mender.schemas import CriticalAlert, Event

logger = logging.getLogger(__name__)

Listener = Callable[[Event], Awaitable[None] | None]

# Event types
CYCLE_STARTED = "cycle_started"
CYCLE_COMPLETED = "cycle_completed"
PHASE_STARTED = "phase_started"
PHASE_COMPLETED = "phase_completed"
ERROR = "error"
PROVIDER_HEALTH_CHANGED = "provider_health_changed"
CRITICAL_ALERT = "critical_alert"
ROLLBACK = "rollback"
REPAIR_COMPLETED = "repair_completed"

ALERT_HISTORY_LIMIT = 100


class EventBus:
    """In-process publish/subscribe."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._listeners: dict[str, list[Listener]] = {}
        self._clock = clock

    def subscribe(self, event_type: str, listener: Listener) -> None:
        """Register a listener. ``"*"`` receives every event."""
        self._listeners.setdefault(event_type, []).append(listener)

    def unsubscribe(self, event_type: str, listener: Listener) -> None:
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    async def emit(self, event_type: str, **data: Any) -> Event:
        event = Event(type=event_type, timestamp=self._clock(), data=data)
        listeners = self._listeners.get(event_type, []) + self._listeners.get("*", [])
        for listener in listeners:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event listener failed for %s", event_type)
        return event


class AlertManager:
    """Raises critical, user-facing alerts."""

    def __init__(
        self,
        events: EventBus | None = None,
        webhook_url: str = "",
        clock: Callable[[], float] = time.time,
        history_limit: int = ALERT_HISTORY_LIMIT,
    ) -> None:
        self._events = events
        self._webhook_url = webhook_url
        self._clock = clock
        self._history: deque[CriticalAlert] = deque(maxlen=history_limit)

    @property
    def webhook_configured(self) -> bool:
        return bool(self._webhook_url)

    async def raise_alert(
        self,
        title: str,
        message: str,
        source: str = "",
        details: dict[str, Any] | None = None,
    ) -> CriticalAlert:
        alert = CriticalAlert(
            id=uuid4().hex[:12],
            timestamp=self._clock(),
            title=title,
            message=message,
            source=source,
            details=details or {},
        )
        self._history.append(alert)
        logger.critical("CRITICAL ALERT [%s] %s: %s", source or "system", title, message)

        if self._events is not None:
            await self._events.emit(CRITICAL_ALERT, **alert.model_dump(mode="json"))
        if self.webhook_configured:
            await self._post_webhook(alert)
        return alert

    async def _post_webhook(self, alert: CriticalAlert) -> bool:
        """Best-effort delivery. Returns success."""
        try:
            import httpx
        except ImportError:
            logger.warning("httpx not installed — skipping alert webhook")
            return False

        payload = {
            "text": f":rotating_light: *{alert.title}*\n{alert.message}",
            "alert": alert.model_dump(mode="json"),
        }
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                resp = await client.post(self._webhook_url, json=payload)
                return resp.status_code < 300
        except Exception as e:
            logger.warning("Alert webhook failed: %s", e)
            return False

    def history(self, limit: int | None = None) -> list[CriticalAlert]:
        alerts = list(self._history)
        return alerts[-limit:] if limit else alerts

    def clear(self) -> None:
        self._history.clear()
