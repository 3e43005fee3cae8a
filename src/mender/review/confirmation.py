"""Confirmation queue — fallback changes waiting for a second opinion.

Every change tracked by the resilient wrapper lands here exactly once
(re-adding the same change id returns the existing item). When the
primary provider is healthy again, ConfirmationReviewer asks it to
confirm or reject a few pending items per run.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Callable
from pathlib import Path
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel

from mender.extract import parse_model
from mender.providers import Provider
from mender.review.changes import DAY, ChangeTracker
from mender.schemas import ConfirmationItem, ConfirmationStatus, TrackedChange
from mender.store import JsonStore

logger = logging.getLogger(__name__)

_FINAL = (ConfirmationStatus.CONFIRMED, ConfirmationStatus.REJECTED)


class ConfirmationQueue:
    """Durable queue of ConfirmationItems keyed by change id."""

    def __init__(
        self,
        path: str | Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = JsonStore(path, default=lambda: {"items": []})
        self._clock = clock

    def _items(self) -> list[ConfirmationItem]:
        return [ConfirmationItem.model_validate(i) for i in self._store.read()["items"]]

    def add_from_change(self, change: TrackedChange, priority: int = 50) -> ConfirmationItem:
        """Enqueue a change for confirmation. Idempotent per change id."""
        with self._store.mutate() as doc:
            for raw in doc["items"]:
                if raw["change_id"] == change.id:
                    return ConfirmationItem.model_validate(raw)
            now = self._clock()
            item = ConfirmationItem(
                id=uuid4().hex,
                change_id=change.id,
                priority=priority,
                created_at=now,
                updated_at=now,
            )
            doc["items"].append(item.model_dump(mode="json"))
        logger.debug("Queued change %s for confirmation", change.id[:8])
        return item

    def get(self, item_id: str) -> ConfirmationItem | None:
        for item in self._items():
            if item.id == item_id:
                return item
        return None

    def get_by_change_id(self, change_id: str) -> ConfirmationItem | None:
        for item in self._items():
            if item.change_id == change_id:
                return item
        return None

    def all(self) -> list[ConfirmationItem]:
        return self._items()

    def get_pending(self) -> list[ConfirmationItem]:
        """Pending items, highest priority first, then oldest first."""
        pending = [i for i in self._items() if i.status == ConfirmationStatus.PENDING]
        return sorted(pending, key=lambda i: (-i.priority, i.created_at))

    def _set_status(
        self,
        item_id: str,
        status: ConfirmationStatus,
        reviewer: str = "",
        notes: str = "",
    ) -> ConfirmationItem | None:
        with self._store.mutate() as doc:
            for raw in doc["items"]:
                if raw["id"] == item_id:
                    raw["status"] = str(status)
                    raw["updated_at"] = self._clock()
                    if reviewer:
                        raw["reviewer"] = reviewer
                    if notes:
                        raw["notes"] = notes
                    return ConfirmationItem.model_validate(raw)
        return None

    def mark_in_review(self, item_id: str) -> ConfirmationItem | None:
        return self._set_status(item_id, ConfirmationStatus.IN_REVIEW)

    def mark_reviewed(
        self,
        item_id: str,
        status: ConfirmationStatus,
        reviewer: str = "",
        notes: str = "",
    ) -> ConfirmationItem | None:
        if status in (ConfirmationStatus.PENDING, ConfirmationStatus.IN_REVIEW):
            raise ValueError(f"Not a review outcome: {status}")
        return self._set_status(item_id, status, reviewer, notes)

    def release(self, item_id: str) -> ConfirmationItem | None:
        """Return an in-review item to pending (review could not finish)."""
        return self._set_status(item_id, ConfirmationStatus.PENDING)

    def release_stale(self) -> int:
        """Return every in-review item to pending.

        Only one reviewer runs at a time, so an item still in review when
        a run starts was left behind by an interrupted run.
        """
        released = 0
        with self._store.mutate() as doc:
            for raw in doc["items"]:
                if raw["status"] == ConfirmationStatus.IN_REVIEW:
                    raw["status"] = str(ConfirmationStatus.PENDING)
                    raw["updated_at"] = self._clock()
                    released += 1
        if released:
            logger.info("Released %d confirmation items left in review", released)
        return released

    def get_stats(self) -> dict:
        items = self._items()
        return {
            "total": len(items),
            "by_status": dict(Counter(str(i.status) for i in items)),
        }

    def cleanup(self, days: int = 30) -> int:
        """Drop confirmed/rejected items older than `days`."""
        cutoff = self._clock() - days * DAY
        with self._store.mutate() as doc:
            before = len(doc["items"])
            doc["items"] = [
                i for i in doc["items"]
                if i["status"] not in _FINAL or i["updated_at"] >= cutoff
            ]
            removed = before - len(doc["items"])
        return removed


class ConfirmationVerdict(BaseModel):
    verdict: Literal["confirmed", "rejected", "needs_review"]
    reason: str = ""


class ConfirmationReviewer:
    """Lets the primary provider audit work the fallback did."""

    def __init__(
        self,
        queue: ConfirmationQueue,
        tracker: ChangeTracker,
        provider: Provider,
        is_limited: Callable[[], bool] = lambda: False,
        limit: int = 3,
    ) -> None:
        self._queue = queue
        self._tracker = tracker
        self._provider = provider
        self._is_limited = is_limited
        self._limit = limit

    async def review_pending(self, limit: int | None = None) -> list[ConfirmationItem]:
        """Review up to `limit` pending items. Returns the items reviewed."""
        limit = self._limit if limit is None else limit
        if self._is_limited():
            logger.info("Primary still rate limited, postponing confirmation review")
            return []

        self._queue.release_stale()
        reviewed = []
        for item in self._queue.get_pending()[:limit]:
            change = self._tracker.get(item.change_id)
            if change is None:
                self._queue.mark_reviewed(
                    item.id, ConfirmationStatus.NEEDS_REVIEW,
                    reviewer="system", notes="tracked change no longer exists",
                )
                continue

            self._queue.mark_in_review(item.id)
            try:
                reply = await self._provider.chat(self._prompt(change))
            except Exception as e:
                logger.warning("Confirmation review of %s failed: %s", change.id[:8], e)
                self._queue.release(item.id)
                break

            verdict = parse_model(
                reply, ConfirmationVerdict,
                fallback=ConfirmationVerdict(verdict="needs_review", reason="unparseable review"),
            )
            updated = self._queue.mark_reviewed(
                item.id, ConfirmationStatus(verdict.verdict),
                reviewer=getattr(self._provider, "name", "primary"), notes=verdict.reason,
            )
            self._tracker.mark_reviewed(change.id, verdict.verdict)
            logger.info("Fallback change %s: %s", change.id[:8], verdict.verdict)
            if updated is not None:
                reviewed.append(updated)
        return reviewed

    @staticmethod
    def _prompt(change: TrackedChange) -> str:
        files = ", ".join(change.files) or "(none recorded)"
        return (
            "A backup AI provider produced the following work while the primary "
            "was unavailable. Decide whether it is acceptable.\n\n"
            f"Phase: {change.phase or 'unknown'}\n"
            f"Operation: {change.operation}\n"
            f"Files: {files}\n"
            f"Description: {change.description}\n\n"
            'Respond ONLY with JSON: {"verdict": "confirmed" | "rejected" | '
            '"needs_review", "reason": str}'
        )
