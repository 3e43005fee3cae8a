"""Tests for the improvement queue and how cycles consume it."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from mender.improvements import ImprovementQueue
from mender.orchestrator import Orchestrator
from mender.phases import ImproveFindPhase
from mender.schemas import (
    Analysis,
    CycleContext,
    Improvement,
    ImprovementStatus,
    Issue,
    PhaseResult,
)


def _imp(message: str, category: str = "analysis", file: str = "src/a.py") -> Improvement:
    return Improvement(category=category, message=message, file=file)


class TestImprovementQueue:
    def test_enqueue_and_persist(self, tmp_path: Path, clock):
        path = tmp_path / "improvements.json"
        item = ImprovementQueue(path, clock=clock).enqueue(_imp("split module"))
        assert item.priority == 60
        assert item.status == ImprovementStatus.PENDING

        saved = json.loads(path.read_text())
        assert saved["improvements"][0]["id"] == item.id
        assert ImprovementQueue(path, clock=clock).get(item.id).message == "split module"

    def test_duplicates_ignored_while_open(self, clock):
        queue = ImprovementQueue(clock=clock)
        first = queue.enqueue(_imp("Split module"))
        assert queue.enqueue(_imp("  split MODULE ")) is None
        assert queue.enqueue(_imp("split module", file="src/b.py")) is not None

        queue.update_status(first.id, ImprovementStatus.COMPLETED)
        assert queue.enqueue(_imp("split module")) is not None

    def test_priority_order_and_clamp(self, clock):
        queue = ImprovementQueue(clock=clock)
        queue.enqueue(_imp("long file", category="size"))
        clock.advance(1)
        marker = queue.enqueue(_imp("TODO: tidy", category="marker"))
        clock.advance(1)
        older = queue.enqueue(_imp("rename", category="custom"))
        clock.advance(1)
        queue.enqueue(_imp("rename again", category="custom"))
        urgent = queue.enqueue(_imp("fix leak"), priority=250)

        assert urgent.priority == 100
        assert [i.message for i in queue.get_pending()] == [
            "fix leak", "rename", "rename again", "TODO: tidy", "long file",
        ]
        assert queue.get_pending(1)[0].id == urgent.id
        assert queue.update_priority(marker.id, 99)
        assert queue.get_pending(2)[1].id == marker.id
        assert older.priority == 50

    def test_dequeue_marks_scheduled(self, clock):
        queue = ImprovementQueue(clock=clock)
        assert queue.dequeue() is None
        item = queue.enqueue(_imp("split module"))
        taken = queue.dequeue()
        assert taken.id == item.id
        assert taken.status == ImprovementStatus.SCHEDULED
        assert queue.dequeue() is None

    def test_update_status(self, clock):
        queue = ImprovementQueue(clock=clock)
        item = queue.enqueue(_imp("split module"))
        clock.advance(5)
        done = queue.update_status(item.id, ImprovementStatus.FAILED, result="verify failed", cycle_id="c9")
        assert done.completed_at == clock.now
        assert done.cycle_id == "c9"
        assert done.result == "verify failed"
        assert queue.update_status("missing", ImprovementStatus.FAILED) is None

    def test_cleanup_keeps_open(self, clock):
        queue = ImprovementQueue(clock=clock)
        old = queue.enqueue(_imp("old"))
        queue.update_status(old.id, ImprovementStatus.COMPLETED)
        waiting = queue.enqueue(_imp("waiting"))
        clock.advance(31 * 86400)
        recent = queue.enqueue(_imp("recent"))
        queue.update_status(recent.id, ImprovementStatus.SKIPPED)

        assert queue.cleanup(30) == 1
        assert {i.id for i in queue.all()} == {waiting.id, recent.id}

    def test_stats(self, clock):
        queue = ImprovementQueue(clock=clock)
        queue.enqueue_all([_imp("a"), _imp("b", category="marker"), _imp("a")])
        stats = queue.get_stats()
        assert stats["total"] == 2
        assert stats["by_status"] == {"pending": 2}
        assert stats["by_category"] == {"analysis": 1, "marker": 1}


@pytest.fixture
def project(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "a.py").write_text("x = 1\n")
    return tmp_path


class TestImproveFindWithQueue:
    def test_works_on_top_queued_entry(self, project: Path, clock, make_provider):
        queue = ImprovementQueue(clock=clock)
        provider = make_provider(analysis=Analysis(issues=["duplicate code"], suggestions=["extract helper"]))
        context = CycleContext(cycle_id="c1", started_at=0.0)

        result = asyncio.run(ImproveFindPhase(provider, project, queue=queue).execute(context))
        assert result.success and not result.should_stop
        assert [i.message for i in context.improvements] == ["duplicate code"]
        assert queue.get(context.improvement_id).status == ImprovementStatus.SCHEDULED
        assert [i.message for i in queue.get_pending()] == ["extract helper"]

    def test_backlog_feeds_quiet_cycle(self, project: Path, clock, make_provider):
        queue = ImprovementQueue(clock=clock)
        waiting = queue.enqueue(_imp("extract helper", category="suggestion"))
        context = CycleContext(cycle_id="c1", started_at=0.0)

        result = asyncio.run(ImproveFindPhase(make_provider(), project, queue=queue).execute(context))
        assert not result.should_stop
        assert context.improvement_id == waiting.id

    def test_issues_take_precedence(self, project: Path, clock):
        queue = ImprovementQueue(clock=clock)
        (project / "src" / "a.py").write_text("x = 1  # TODO: tidy\n")
        context = CycleContext(cycle_id="c1", started_at=0.0, issues=[Issue(type="error", message="boom")])

        asyncio.run(ImproveFindPhase(None, project, queue=queue).execute(context))
        assert context.improvement_id is None
        assert [i.message for i in queue.get_pending()] == ["TODO: tidy"]

    def test_empty_queue_stops(self, project: Path, clock):
        result = asyncio.run(
            ImproveFindPhase(None, project, queue=ImprovementQueue(clock=clock)).execute(
                CycleContext(cycle_id="c1", started_at=0.0)
            )
        )
        assert result.should_stop


class PickPhase:
    """Stands in for improve-find: claims a queued improvement."""

    name = "improve-find"

    def __init__(self, queue: ImprovementQueue) -> None:
        self.queue = queue

    async def execute(self, context: CycleContext) -> PhaseResult:
        item = self.queue.dequeue()
        context.improvement_id = item.id
        return PhaseResult(success=True)


class OutcomePhase:
    def __init__(self, name: str, result: PhaseResult) -> None:
        self.name = name
        self.result = result

    async def execute(self, context: CycleContext) -> PhaseResult:
        return self.result


class TestOutcomeRecorded:
    @pytest.mark.parametrize(
        "result, status",
        [
            (PhaseResult(success=True), ImprovementStatus.COMPLETED),
            (PhaseResult(success=False, message="tests failed"), ImprovementStatus.FAILED),
            (PhaseResult(success=True, should_stop=True, message="No steps"), ImprovementStatus.SKIPPED),
        ],
    )
    def test_status_after_cycle(self, clock, result, status):
        queue = ImprovementQueue(clock=clock)
        item = queue.enqueue(_imp("split module"))
        orch = Orchestrator(
            [PickPhase(queue), OutcomePhase("plan", result)],
            improvements=queue,
            clock=clock,
        )
        cycle = asyncio.run(orch.run_cycle())
        recorded = queue.get(item.id)
        assert recorded.status == status
        assert recorded.cycle_id == cycle.cycle_id
