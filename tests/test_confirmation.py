"""Tests for the change tracker, confirmation queue and confirmation reviewer."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from mender.review.changes import DAY, ChangeTracker
from mender.review.confirmation import ConfirmationQueue, ConfirmationReviewer
from mender.schemas import ConfirmationStatus


class TestChangeTracker:
    def test_record_and_persist(self, tmp_path: Path, clock):
        tracker = ChangeTracker(tmp_path / "changes.json", clock=clock)
        change = tracker.record_change("plan", "openai", "chat", ["a.py"], "planned")
        reopened = ChangeTracker(tmp_path / "changes.json", clock=clock)
        assert reopened.get(change.id) == change
        assert reopened.get_unreviewed() == [change]

    def test_mark_reviewed(self, clock):
        tracker = ChangeTracker(clock=clock)
        change = tracker.record_change("plan", "openai", "chat")
        assert tracker.mark_reviewed(change.id, "confirmed")
        assert not tracker.mark_reviewed("missing", "confirmed")
        assert tracker.get(change.id).review_result == "confirmed"
        assert tracker.get_unreviewed() == []

    def test_cleanup_keeps_unreviewed(self, clock):
        tracker = ChangeTracker(clock=clock)
        old_reviewed = tracker.record_change("plan", "openai", "chat")
        old_unreviewed = tracker.record_change("plan", "openai", "chat")
        tracker.mark_reviewed(old_reviewed.id, "confirmed")
        clock.advance(31 * DAY)
        fresh = tracker.record_change("plan", "openai", "chat")
        tracker.mark_reviewed(fresh.id, "confirmed")

        assert tracker.cleanup(30) == 1
        ids = {c.id for c in tracker.all()}
        assert ids == {old_unreviewed.id, fresh.id}

    def test_stats(self, clock):
        tracker = ChangeTracker(clock=clock)
        tracker.record_change("plan", "openai", "chat")
        tracker.record_change("", "openai", "chat")
        stats = tracker.get_stats()
        assert stats["total"] == 2
        assert stats["by_phase"] == {"plan": 1, "unknown": 1}


class TestConfirmationQueue:
    def test_add_is_idempotent(self, clock):
        tracker = ChangeTracker(clock=clock)
        queue = ConfirmationQueue(clock=clock)
        change = tracker.record_change("plan", "openai", "chat")
        first = queue.add_from_change(change)
        second = queue.add_from_change(change, priority=99)
        assert first.id == second.id
        assert len(queue.all()) == 1
        assert queue.get_by_change_id(change.id).id == first.id

    def test_pending_order(self, clock):
        tracker = ChangeTracker(clock=clock)
        queue = ConfirmationQueue(clock=clock)
        low = queue.add_from_change(tracker.record_change("a", "o", "chat"), priority=10)
        clock.advance(1)
        high_old = queue.add_from_change(tracker.record_change("b", "o", "chat"), priority=80)
        clock.advance(1)
        high_new = queue.add_from_change(tracker.record_change("c", "o", "chat"), priority=80)
        assert [i.id for i in queue.get_pending()] == [high_old.id, high_new.id, low.id]

    def test_status_transitions(self, clock):
        tracker = ChangeTracker(clock=clock)
        queue = ConfirmationQueue(clock=clock)
        item = queue.add_from_change(tracker.record_change("a", "o", "chat"))
        assert queue.mark_in_review(item.id).status == ConfirmationStatus.IN_REVIEW
        assert queue.get_pending() == []
        assert queue.release(item.id).status == ConfirmationStatus.PENDING
        done = queue.mark_reviewed(item.id, ConfirmationStatus.CONFIRMED, reviewer="claude", notes="fine")
        assert done.reviewer == "claude"
        with pytest.raises(ValueError):
            queue.mark_reviewed(item.id, ConfirmationStatus.PENDING)

    def test_cleanup(self, clock):
        tracker = ChangeTracker(clock=clock)
        queue = ConfirmationQueue(clock=clock)
        done = queue.add_from_change(tracker.record_change("a", "o", "chat"))
        queue.mark_reviewed(done.id, ConfirmationStatus.REJECTED)
        waiting = queue.add_from_change(tracker.record_change("b", "o", "chat"))
        clock.advance(40 * DAY)
        assert queue.cleanup(30) == 1
        assert [i.id for i in queue.all()] == [waiting.id]


class TestConfirmationReviewer:
    def _setup(self, clock, provider, count=4, limited=False):
        tracker = ChangeTracker(clock=clock)
        queue = ConfirmationQueue(clock=clock)
        for n in range(count):
            queue.add_from_change(tracker.record_change("plan", "openai", "chat", [f"f{n}.py"]))
            clock.advance(1)
        reviewer = ConfirmationReviewer(queue, tracker, provider, is_limited=lambda: limited, limit=3)
        return tracker, queue, reviewer

    def test_reviews_up_to_limit(self, clock, make_provider):
        provider = make_provider("claude", replies=[
            '{"verdict": "confirmed", "reason": "ok"}',
            '{"verdict": "rejected", "reason": "wrong file"}',
            "I am not sure",
        ])
        tracker, queue, reviewer = self._setup(clock, provider)
        reviewed = asyncio.run(reviewer.review_pending())
        assert [i.status for i in reviewed] == [
            ConfirmationStatus.CONFIRMED,
            ConfirmationStatus.REJECTED,
            ConfirmationStatus.NEEDS_REVIEW,
        ]
        assert len(queue.get_pending()) == 1
        assert len(tracker.get_unreviewed()) == 1

    def test_explicit_limit(self, clock, make_provider):
        provider = make_provider("claude", replies=['{"verdict": "confirmed", "reason": "ok"}'])
        _, queue, reviewer = self._setup(clock, provider)
        assert len(asyncio.run(reviewer.review_pending(limit=1))) == 1
        assert len(queue.get_pending()) == 3

    def test_postponed_while_limited(self, clock, make_provider):
        provider = make_provider("claude")
        _, queue, reviewer = self._setup(clock, provider, limited=True)
        assert asyncio.run(reviewer.review_pending()) == []
        assert provider.calls == []
        assert len(queue.get_pending()) == 4

    def test_provider_error_releases_item(self, clock, make_provider):
        provider = make_provider("claude", errors=[RuntimeError("down")])
        _, queue, reviewer = self._setup(clock, provider, count=2)
        assert asyncio.run(reviewer.review_pending()) == []
        assert len(queue.get_pending()) == 2

    def test_interrupted_review_is_retried(self, clock, make_provider):
        provider = make_provider("claude", replies=['{"verdict": "confirmed", "reason": "ok"}'])
        _, queue, reviewer = self._setup(clock, provider, count=1)
        [item] = queue.get_pending()
        queue.mark_in_review(item.id)
        assert queue.get_pending() == []

        [reviewed] = asyncio.run(reviewer.review_pending())
        assert reviewed.id == item.id
        assert reviewed.status == ConfirmationStatus.CONFIRMED
