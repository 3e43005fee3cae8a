"""Error aggregator — one durable log for failures from every subsystem.

Any component reports an error with a source tag; the aggregator
classifies it (unless the caller overrides category/severity), assigns
an id and persists it. Status moves new → queued → repairing →
resolved/failed as the repair queue works on it.
"""

from __future__ import annotations

import logging
import time
import traceback
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from mender.repair.classify import classify_error
from mender.schemas import (
    AggregatedError,
    ErrorCategory,
    ErrorStats,
    ErrorStatus,
    RepairAttempt,
    Severity,
)
from mender.store import JsonStore

logger = logging.getLogger(__name__)

DAY = 86400.0

_SEVERITY_RANK = {Severity.CRITICAL: 0, Severity.HIGH: 1, Severity.MEDIUM: 2, Severity.LOW: 3}


@dataclass
class ErrorFilter:
    """Selection criteria for get_errors. Empty lists match everything."""
    sources: list[str] = field(default_factory=list)
    categories: list[ErrorCategory] = field(default_factory=list)
    severities: list[Severity] = field(default_factory=list)
    statuses: list[ErrorStatus] = field(default_factory=list)
    since: float | None = None
    until: float | None = None
    offset: int = 0
    limit: int | None = None

    def matches(self, error: AggregatedError) -> bool:
        if self.sources and error.source not in self.sources:
            return False
        if self.categories and error.category not in self.categories:
            return False
        if self.severities and error.severity not in self.severities:
            return False
        if self.statuses and error.status not in self.statuses:
            return False
        if self.since is not None and error.timestamp < self.since:
            return False
        if self.until is not None and error.timestamp > self.until:
            return False
        return True


class ErrorAggregator:
    """Collects, classifies and tracks system errors."""

    def __init__(
        self,
        path: str | Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = JsonStore(path, default=lambda: {"errors": []})
        self._clock = clock

    def _errors(self) -> list[AggregatedError]:
        return [AggregatedError.model_validate(e) for e in self._store.read()["errors"]]

    def report_error(
        self,
        source: str,
        error: BaseException | str,
        context: dict[str, Any] | None = None,
        category: ErrorCategory | None = None,
        severity: Severity | None = None,
    ) -> AggregatedError:
        message = str(error) or type(error).__name__
        stack = ""
        if isinstance(error, BaseException):
            message = f"{type(error).__name__}: {error}"
            if error.__traceback__ is not None:
                stack = "".join(traceback.format_exception(error))[-4000:]

        auto_category, auto_severity = classify_error(message)
        record = AggregatedError(
            id=uuid4().hex[:16],
            timestamp=self._clock(),
            source=source,
            message=message[:2000],
            stack=stack,
            context=context or {},
            category=category or auto_category,
            severity=severity or auto_severity,
        )
        with self._store.mutate() as doc:
            doc["errors"].append(record.model_dump(mode="json"))
        logger.info(
            "Error %s from %s classified %s/%s: %s",
            record.id, source, record.category, record.severity, message[:200],
        )
        return record

    def get_error(self, error_id: str) -> AggregatedError | None:
        for raw in self._store.read()["errors"]:
            if raw["id"] == error_id:
                return AggregatedError.model_validate(raw)
        return None

    def update_status(
        self,
        error_id: str,
        status: ErrorStatus,
        resolved_by: str = "",
    ) -> AggregatedError | None:
        with self._store.mutate() as doc:
            for raw in doc["errors"]:
                if raw["id"] != error_id:
                    continue
                raw["status"] = str(status)
                if status == ErrorStatus.RESOLVED:
                    raw["resolved_at"] = self._clock()
                    raw["resolved_by"] = resolved_by
                return AggregatedError.model_validate(raw)
        logger.warning("update_status: unknown error id %s", error_id)
        return None

    def record_repair_attempt(self, error_id: str, attempt: RepairAttempt) -> AggregatedError | None:
        with self._store.mutate() as doc:
            for raw in doc["errors"]:
                if raw["id"] == error_id:
                    raw["repair_attempts"].append(attempt.model_dump(mode="json"))
                    return AggregatedError.model_validate(raw)
        return None

    def get_errors(self, criteria: ErrorFilter | None = None) -> list[AggregatedError]:
        """Matching errors, newest first."""
        criteria = criteria or ErrorFilter()
        matched = sorted(
            (e for e in self._errors() if criteria.matches(e)),
            key=lambda e: e.timestamp,
            reverse=True,
        )
        end = None if criteria.limit is None else criteria.offset + criteria.limit
        return matched[criteria.offset:end]

    def get_pending_errors(self) -> list[AggregatedError]:
        """New errors, most severe first, then oldest first."""
        pending = [e for e in self._errors() if e.status == ErrorStatus.NEW]
        return sorted(pending, key=lambda e: (_SEVERITY_RANK[e.severity], e.timestamp))

    def get_stats(self) -> ErrorStats:
        errors = self._errors()
        return ErrorStats(
            total=len(errors),
            by_category=dict(Counter(str(e.category) for e in errors)),
            by_severity=dict(Counter(str(e.severity) for e in errors)),
            by_status=dict(Counter(str(e.status) for e in errors)),
            by_source=dict(Counter(e.source for e in errors)),
        )

    def cleanup(self, days: int = 30) -> int:
        """Drop resolved/ignored errors older than `days`."""
        cutoff = self._clock() - days * DAY
        done = {str(ErrorStatus.RESOLVED), str(ErrorStatus.IGNORED)}
        with self._store.mutate() as doc:
            before = len(doc["errors"])
            doc["errors"] = [
                e for e in doc["errors"]
                if e["status"] not in done or e["timestamp"] >= cutoff
            ]
            removed = before - len(doc["errors"])
        if removed:
            logger.info("Cleaned up %d old errors", removed)
        return removed
