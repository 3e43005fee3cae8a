"""Improvement queue — improvement opportunities carried across cycles.

improve-find usually turns up more than one cycle can act on. Whatever
it finds is queued here (deduplicated against open entries), and each
cycle takes the single highest-priority pending entry. The orchestrator
records the outcome against the entry when the cycle ends.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Callable
from pathlib import Path
from uuid import uuid4

from mender.schemas import Improvement, ImprovementStatus, QueuedImprovement
from mender.store import JsonStore

logger = logging.getLogger(__name__)

DAY = 86400.0

DEFAULT_PRIORITY = 50

# improve-find categories, most actionable first
CATEGORY_PRIORITY = {
    "analysis": 60,
    "marker": 40,
    "suggestion": 30,
    "size": 20,
}

_OPEN = (ImprovementStatus.PENDING, ImprovementStatus.SCHEDULED)
_FINISHED = (ImprovementStatus.COMPLETED, ImprovementStatus.FAILED, ImprovementStatus.SKIPPED)


def _key(category: str, message: str, file: str) -> tuple[str, str, str]:
    return category.lower(), message.strip().lower(), file


class ImprovementQueue:
    """Persistent priority queue of improvements."""

    def __init__(
        self,
        path: str | Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = JsonStore(path, default=lambda: {"improvements": []})
        self._clock = clock

    def _items(self) -> list[QueuedImprovement]:
        return [QueuedImprovement.model_validate(i) for i in self._store.read()["improvements"]]

    def is_duplicate(self, improvement: Improvement) -> bool:
        key = _key(improvement.category, improvement.message, improvement.file)
        return any(
            i.status in _OPEN and _key(i.category, i.message, i.file) == key
            for i in self._items()
        )

    def enqueue(self, improvement: Improvement, priority: int | None = None) -> QueuedImprovement | None:
        """Queue an improvement. Returns None if an open entry already matches."""
        if self.is_duplicate(improvement):
            return None
        if priority is None:
            priority = CATEGORY_PRIORITY.get(improvement.category, DEFAULT_PRIORITY)
        now = self._clock()
        item = QueuedImprovement(
            id=uuid4().hex[:12],
            category=improvement.category,
            message=improvement.message,
            file=improvement.file,
            line=improvement.line,
            priority=max(0, min(100, priority)),
            created_at=now,
            updated_at=now,
        )
        with self._store.mutate() as doc:
            doc["improvements"].append(item.model_dump(mode="json"))
        logger.debug("Queued improvement %s (%s, priority %d)", item.id, item.category, item.priority)
        return item

    def enqueue_all(self, improvements: list[Improvement]) -> int:
        return sum(1 for imp in improvements if self.enqueue(imp) is not None)

    def get(self, item_id: str) -> QueuedImprovement | None:
        for item in self._items():
            if item.id == item_id:
                return item
        return None

    def get_pending(self, limit: int | None = None) -> list[QueuedImprovement]:
        """Pending entries, highest priority first, then oldest first."""
        pending = sorted(
            (i for i in self._items() if i.status == ImprovementStatus.PENDING),
            key=lambda i: (-i.priority, i.created_at),
        )
        return pending[:limit] if limit is not None else pending

    def dequeue(self) -> QueuedImprovement | None:
        """Take the top pending entry and mark it scheduled."""
        pending = self.get_pending(1)
        if not pending:
            return None
        return self.update_status(pending[0].id, ImprovementStatus.SCHEDULED)

    def update_status(
        self,
        item_id: str,
        status: ImprovementStatus,
        result: str = "",
        cycle_id: str = "",
    ) -> QueuedImprovement | None:
        with self._store.mutate() as doc:
            for raw in doc["improvements"]:
                if raw["id"] != item_id:
                    continue
                now = self._clock()
                raw["status"] = str(status)
                raw["updated_at"] = now
                if status in _FINISHED:
                    raw["completed_at"] = now
                if result:
                    raw["result"] = result[:500]
                if cycle_id:
                    raw["cycle_id"] = cycle_id
                return QueuedImprovement.model_validate(raw)
        return None

    def update_priority(self, item_id: str, priority: int) -> bool:
        with self._store.mutate() as doc:
            for raw in doc["improvements"]:
                if raw["id"] == item_id:
                    raw["priority"] = max(0, min(100, priority))
                    raw["updated_at"] = self._clock()
                    return True
        return False

    def all(self) -> list[QueuedImprovement]:
        return self._items()

    def cleanup(self, days: int = 30) -> int:
        """Drop finished entries older than `days`. Open entries are kept."""
        cutoff = self._clock() - days * DAY
        with self._store.mutate() as doc:
            before = len(doc["improvements"])
            doc["improvements"] = [
                i for i in doc["improvements"]
                if i["status"] in _OPEN or (i.get("completed_at") or 0) >= cutoff
            ]
            removed = before - len(doc["improvements"])
        if removed:
            logger.info("Cleaned up %d finished improvements", removed)
        return removed

    def get_stats(self) -> dict:
        items = self._items()
        return {
            "total": len(items),
            "by_status": dict(Counter(str(i.status) for i in items)),
            "by_category": dict(Counter(i.category for i in items)),
        }
