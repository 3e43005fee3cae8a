"""Change tracker — durable log of work served by a fallback provider."""

from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Callable
from pathlib import Path
from uuid import uuid4

from mender.schemas import TrackedChange
from mender.store import JsonStore

logger = logging.getLogger(__name__)

DAY = 86400.0


class ChangeTracker:
    """Append-mostly history of fallback-originated changes."""

    def __init__(
        self,
        path: str | Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = JsonStore(path, default=lambda: {"changes": []})
        self._clock = clock

    def _changes(self) -> list[TrackedChange]:
        return [TrackedChange.model_validate(c) for c in self._store.read()["changes"]]

    def record_change(
        self,
        phase: str,
        provider: str,
        operation: str,
        files: list[str] | None = None,
        description: str = "",
    ) -> TrackedChange:
        change = TrackedChange(
            id=uuid4().hex,
            timestamp=self._clock(),
            phase=phase,
            provider=provider,
            operation=operation,
            files=files or [],
            description=description,
        )
        with self._store.mutate() as doc:
            doc["changes"].append(change.model_dump(mode="json"))
        logger.info(
            "Tracked fallback change %s (%s via %s, phase=%s)",
            change.id[:8], operation, provider, phase or "-",
        )
        return change

    def get(self, change_id: str) -> TrackedChange | None:
        for change in self._changes():
            if change.id == change_id:
                return change
        return None

    def all(self) -> list[TrackedChange]:
        return self._changes()

    def get_unreviewed(self) -> list[TrackedChange]:
        return [c for c in self._changes() if not c.reviewed]

    def mark_reviewed(self, change_id: str, result: str) -> bool:
        with self._store.mutate() as doc:
            for raw in doc["changes"]:
                if raw["id"] == change_id:
                    raw["reviewed"] = True
                    raw["review_result"] = result
                    raw["reviewed_at"] = self._clock()
                    return True
        return False

    def cleanup(self, days: int = 30) -> int:
        """Drop reviewed changes older than `days`. Unreviewed ones are kept."""
        cutoff = self._clock() - days * DAY
        with self._store.mutate() as doc:
            before = len(doc["changes"])
            doc["changes"] = [
                c for c in doc["changes"]
                if not c.get("reviewed") or c["timestamp"] >= cutoff
            ]
            removed = before - len(doc["changes"])
        if removed:
            logger.info("Cleaned up %d reviewed changes", removed)
        return removed

    def get_stats(self) -> dict:
        changes = self._changes()
        reviewed = sum(1 for c in changes if c.reviewed)
        return {
            "total": len(changes),
            "reviewed": reviewed,
            "unreviewed": len(changes) - reviewed,
            "by_phase": dict(Counter(c.phase or "unknown" for c in changes)),
        }
