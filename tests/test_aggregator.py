"""Tests for error classification and the error aggregator."""

from __future__ import annotations

from pathlib import Path

import pytest

from mender.repair.aggregator import DAY, ErrorAggregator, ErrorFilter
from mender.repair.classify import classify_error
from mender.schemas import ErrorCategory, ErrorStatus, RepairAttempt, Severity


class TestClassify:
    @pytest.mark.parametrize("message,category,severity", [
        ("Request timed out after 30s", ErrorCategory.TIMEOUT, Severity.MEDIUM),
        ("rate limit timeout", ErrorCategory.TIMEOUT, Severity.MEDIUM),
        ("ECONNRESET while reading", ErrorCategory.TRANSIENT, Severity.LOW),
        ("HTTP 429 from upstream", ErrorCategory.TRANSIENT, Severity.LOW),
        ("api error: bad gateway", ErrorCategory.EXTERNAL, Severity.MEDIUM),
        ("config file not found", ErrorCategory.CONFIGURATION, Severity.HIGH),
        ("invalid payload shape", ErrorCategory.VALIDATION, Severity.MEDIUM),
        ("out of memory", ErrorCategory.RESOURCE, Severity.HIGH),
        ("child killed by SIGTERM", ErrorCategory.TIMEOUT, Severity.MEDIUM),
        ("something odd happened", ErrorCategory.UNKNOWN, Severity.MEDIUM),
    ])
    def test_rules(self, message, category, severity):
        assert classify_error(message) == (category, severity)


class TestReport:
    def test_string_error(self, clock):
        agg = ErrorAggregator(clock=clock)
        error = agg.report_error("scheduler", "disk quota exceeded", context={"task": "cleanup"})
        assert error.category == ErrorCategory.RESOURCE
        assert error.severity == Severity.HIGH
        assert error.status == ErrorStatus.NEW
        assert error.context == {"task": "cleanup"}
        assert len(error.id) == 16

    def test_exception_with_traceback(self, clock):
        agg = ErrorAggregator(clock=clock)
        try:
            raise ValueError("invalid state")
        except ValueError as exc:
            error = agg.report_error("orchestrator", exc)
        assert error.message == "ValueError: invalid state"
        assert "Traceback" in error.stack
        assert error.category == ErrorCategory.VALIDATION

    def test_override_classification(self, clock):
        agg = ErrorAggregator(clock=clock)
        error = agg.report_error("x", "timeout", category=ErrorCategory.EXTERNAL, severity=Severity.CRITICAL)
        assert (error.category, error.severity) == (ErrorCategory.EXTERNAL, Severity.CRITICAL)

    def test_persists(self, tmp_path: Path, clock):
        path = tmp_path / "errors.json"
        error = ErrorAggregator(path, clock=clock).report_error("x", "boom")
        assert ErrorAggregator(path, clock=clock).get_error(error.id) == error


class TestStatus:
    def test_resolve(self, clock):
        agg = ErrorAggregator(clock=clock)
        error = agg.report_error("x", "boom")
        clock.advance(5)
        updated = agg.update_status(error.id, ErrorStatus.RESOLVED, resolved_by="auto-repair")
        assert updated.resolved_at == clock.now
        assert updated.resolved_by == "auto-repair"

    def test_unknown_id(self, clock):
        assert ErrorAggregator(clock=clock).update_status("nope", ErrorStatus.FAILED) is None

    def test_record_attempt(self, clock):
        agg = ErrorAggregator(clock=clock)
        error = agg.report_error("x", "boom")
        agg.record_repair_attempt(error.id, RepairAttempt(attempt=1, started_at=clock.now, error="no luck"))
        assert agg.get_error(error.id).repair_attempts[0].error == "no luck"


class TestQueries:
    def _populate(self, agg: ErrorAggregator, clock) -> list:
        errors = []
        for source, message in [
            ("a", "something odd"),      # medium
            ("b", "ECONNRESET"),         # low
            ("a", "config missing"),     # high
            ("c", "another odd thing"),  # medium
        ]:
            errors.append(agg.report_error(source, message))
            clock.advance(10)
        return errors

    def test_newest_first_with_filters(self, clock):
        agg = ErrorAggregator(clock=clock)
        errors = self._populate(agg, clock)
        assert [e.id for e in agg.get_errors()] == [e.id for e in reversed(errors)]
        assert [e.source for e in agg.get_errors(ErrorFilter(sources=["a"]))] == ["a", "a"]
        assert len(agg.get_errors(ErrorFilter(offset=1, limit=2))) == 2
        since = errors[2].timestamp
        assert len(agg.get_errors(ErrorFilter(since=since))) == 2

    def test_pending_by_severity_then_age(self, clock):
        agg = ErrorAggregator(clock=clock)
        errors = self._populate(agg, clock)
        agg.update_status(errors[3].id, ErrorStatus.QUEUED)
        assert [e.id for e in agg.get_pending_errors()] == [errors[2].id, errors[0].id, errors[1].id]

    def test_stats(self, clock):
        agg = ErrorAggregator(clock=clock)
        self._populate(agg, clock)
        stats = agg.get_stats()
        assert stats.total == 4
        assert stats.by_source == {"a": 2, "b": 1, "c": 1}
        assert stats.by_severity["medium"] == 2
        assert stats.by_status == {"new": 4}

    def test_cleanup(self, clock):
        agg = ErrorAggregator(clock=clock)
        old_resolved, old_new = agg.report_error("x", "a"), agg.report_error("x", "b")
        agg.update_status(old_resolved.id, ErrorStatus.RESOLVED)
        clock.advance(31 * DAY)
        fresh = agg.report_error("x", "c")
        agg.update_status(fresh.id, ErrorStatus.IGNORED)

        assert agg.cleanup(30) == 1
        assert {e.id for e in agg.get_errors()} == {old_new.id, fresh.id}
