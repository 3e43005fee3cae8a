"""The eight cycle phases.

Order: health-check → error-detect → improve-find → search → plan →
implement → test-gen → verify.

Each phase reads and appends to the shared CycleContext and returns a
PhaseResult. ``should_stop`` is the only control signal between
phases; they never call one another. Phases keep no state across
cycles. Paths in issues, plans and changes are relative to the project
root.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel

from mender.events import ROLLBACK, EventBus
from mender.extract import parse_model
from mender.improvements import ImprovementQueue
from mender.process import run_command
from mender.providers import Provider
from mender.resilience.health import ProviderHealthMonitor
from mender.review.appeal import AppealManager
from mender.review.guard import Guard
from mender.schemas import (
    ChangeProposal,
    CodeContext,
    CommandOutcome,
    CycleContext,
    ImplementedChange,
    Improvement,
    Issue,
    PhaseResult,
    PlanStep,
    RepairPlan,
    ReviewRequest,
    TestContext,
)
from mender.snapshot import Snapshotter

logger = logging.getLogger(__name__)

HEALTH_CHECK = "health-check"
ERROR_DETECT = "error-detect"
IMPROVE_FIND = "improve-find"
SEARCH = "search"
PLAN = "plan"
IMPLEMENT = "implement"
TEST_GEN = "test-gen"
VERIFY = "verify"

PHASE_ORDER = [HEALTH_CHECK, ERROR_DETECT, IMPROVE_FIND, SEARCH, PLAN, IMPLEMENT, TEST_GEN, VERIFY]

# path:line[:col]: message  (pytest, mypy, ruff, flake8, compileall tracebacks)
_LOCATION_RE = re.compile(r"^(?P<file>[\w./\\-]+\.py):(?P<line>\d+)(?::\d+)?:?\s*(?P<msg>.+)$")
_TRACEBACK_RE = re.compile(r'File "(?P<file>[^"]+\.py)", line (?P<line>\d+)')
_MARKER_RE = re.compile(r"#\s*(TODO|FIXME|XXX)\b:?\s*(.*)")


class Phase(Protocol):
    name: str

    async def execute(self, context: CycleContext) -> PhaseResult:
        ...


async def run_commands(
    commands: list[list[str]],
    cwd: Path,
    timeout: float,
) -> list[CommandOutcome]:
    outcomes = []
    for command in commands:
        result = await run_command(command, cwd=cwd, timeout=timeout)
        outcomes.append(CommandOutcome(
            command=command,
            returncode=result.returncode,
            output=result.output[-4000:],
            timed_out=result.timed_out,
        ))
        logger.debug("%s → exit %s", " ".join(command), result.returncode)
    return outcomes


async def roll_back(
    snapshots: Snapshotter,
    snapshot_id: str,
    reason: str,
    events: EventBus | None = None,
) -> None:
    """Restore a snapshot and publish a ``rollback`` event."""
    snapshots.rollback(snapshot_id, reason)
    if events is not None:
        await events.emit(ROLLBACK, snapshot_id=snapshot_id, reason=reason)


def parse_issues(output: str, source: str, limit: int = 20) -> list[Issue]:
    """Turn tool output into Issues, one per located diagnostic."""
    issues: list[Issue] = []
    seen: set[tuple[str, int, str]] = set()
    for line in output.splitlines():
        match = _LOCATION_RE.match(line.strip())
        if not match:
            continue
        key = (match["file"].replace("\\", "/"), int(match["line"]), match["msg"].strip())
        if key in seen:
            continue
        seen.add(key)
        issues.append(Issue(type="error", file=key[0], line=key[1], message=key[2], source=source))
        if len(issues) >= limit:
            break
    if not issues:
        frames = list(_TRACEBACK_RE.finditer(output))
        last = frames[-1] if frames else None
        tail = output.strip().splitlines()[-1] if output.strip() else "command failed"
        issues.append(Issue(
            type="error",
            file=last["file"] if last else "",
            line=int(last["line"]) if last else None,
            message=tail[:500],
            source=source,
        ))
    return issues


def _source_files(root: Path, source_dir: str) -> list[Path]:
    base = root / source_dir
    if not base.is_dir():
        return []
    return sorted(
        p for p in base.rglob("*.py")
        if "__pycache__" not in p.parts and not p.name.startswith("test_")
    )


def _rel(root: Path, path: Path) -> str:
    return str(path.relative_to(root)).replace("\\", "/")


# ── 1. Health check ─────────────────────────────────────────────────


class HealthCheckPhase:
    """Stop the cycle when the codebase or every provider is unhealthy."""

    name = HEALTH_CHECK

    def __init__(
        self,
        commands: list[list[str]],
        root: Path,
        timeout: float = 600.0,
        health: ProviderHealthMonitor | None = None,
    ) -> None:
        self._commands = commands
        self._root = root
        self._timeout = timeout
        self._health = health

    async def execute(self, context: CycleContext) -> PhaseResult:
        outcomes = await run_commands(self._commands, self._root, self._timeout)
        failed = [" ".join(o.command) for o in outcomes if not o.ok]
        if self._health is not None and self._health.get_health_report().overall == "critical":
            failed.append("all AI providers broken")

        if failed:
            return PhaseResult(
                success=False,
                should_stop=True,
                message=f"System unhealthy: {', '.join(failed)}",
                data={"checks": [o.model_dump() for o in outcomes]},
            )
        return PhaseResult(success=True, message=f"Health: {len(outcomes)} checks passed")


# ── 2. Error detect ─────────────────────────────────────────────────


class ErrorDetectPhase:
    """Run detector commands (linters, type checkers, tests) and collect issues."""

    name = ERROR_DETECT

    def __init__(self, commands: list[list[str]], root: Path, timeout: float = 600.0) -> None:
        self._commands = commands
        self._root = root
        self._timeout = timeout

    async def execute(self, context: CycleContext) -> PhaseResult:
        outcomes = await run_commands(self._commands, self._root, self._timeout)
        for outcome in outcomes:
            if outcome.ok:
                continue
            context.issues.extend(parse_issues(outcome.output, source=outcome.command[0]))
        logger.info("Error detection found %d issues", len(context.issues))
        return PhaseResult(success=True, message=f"Found {len(context.issues)} issues")


# ── 3. Improve find ─────────────────────────────────────────────────


class ImproveFindPhase:
    """Find improvement opportunities when there is nothing broken."""

    name = IMPROVE_FIND

    def __init__(
        self,
        provider: Provider | None,
        root: Path,
        source_dir: str = "src",
        max_files: int = 5,
        max_file_lines: int = 500,
        queue: ImprovementQueue | None = None,
    ) -> None:
        self._provider = provider
        self._root = root
        self._source_dir = source_dir
        self._max_files = max_files
        self._max_file_lines = max_file_lines
        self._queue = queue

    async def execute(self, context: CycleContext) -> PhaseResult:
        files = _source_files(self._root, self._source_dir)
        for path in files:
            text = path.read_text(errors="replace")
            rel = _rel(self._root, path)
            for lineno, line in enumerate(text.splitlines(), 1):
                marker = _MARKER_RE.search(line)
                if marker:
                    context.improvements.append(Improvement(
                        category="marker",
                        message=f"{marker.group(1)}: {marker.group(2).strip()}",
                        file=rel,
                        line=lineno,
                    ))
            if len(text.splitlines()) > self._max_file_lines:
                context.improvements.append(Improvement(
                    category="size", message=f"{rel} exceeds {self._max_file_lines} lines", file=rel,
                ))

        if not context.issues and self._provider is not None:
            for path in files[: self._max_files]:
                analysis = await self._provider.analyze_code(path.read_text(errors="replace"))
                context.ai_calls += 1
                rel = _rel(self._root, path)
                for text in analysis.issues:
                    context.improvements.append(Improvement(category="analysis", message=text, file=rel))
                for text in analysis.suggestions:
                    context.improvements.append(Improvement(category="suggestion", message=text, file=rel))

        if self._queue is not None:
            self._take_from_queue(context)

        if not context.issues and not context.improvements:
            return PhaseResult(
                success=True, should_stop=True, message="No issues or improvements found",
            )
        return PhaseResult(
            success=True,
            message=f"{len(context.issues)} issues, {len(context.improvements)} improvements",
        )

    def _take_from_queue(self, context: CycleContext) -> None:
        """Queue what was found; work on the top pending entry instead.

        Errors take precedence, so nothing is dequeued while the cycle
        has issues to fix.
        """
        queued = self._queue.enqueue_all(context.improvements)
        if queued:
            logger.info("Queued %d new improvements", queued)
        if context.issues:
            return
        item = self._queue.dequeue()
        if item is None:
            context.improvements = []
            return
        context.improvements = [item.as_improvement()]
        context.improvement_id = item.id
        logger.info("Working on queued improvement %s: %s", item.id, item.message[:100])


# ── 4. Search ───────────────────────────────────────────────────────


class SearchPhase:
    """Gather background on the top target before planning."""

    name = SEARCH

    def __init__(self, provider: Provider, root: Path, source_dir: str = "src") -> None:
        self._provider = provider
        self._root = root
        self._source_dir = source_dir

    async def execute(self, context: CycleContext) -> PhaseResult:
        target = context.issues[0] if context.issues else (
            context.improvements[0] if context.improvements else None
        )
        if target is None:
            return PhaseResult(success=True, message="Nothing to search for")

        files = [target.file] if target.file else [
            _rel(self._root, p) for p in _source_files(self._root, self._source_dir)[:20]
        ]
        result = await self._provider.search_and_analyze(target.message, files)
        context.ai_calls += 1
        context.search_results.append(result)
        return PhaseResult(success=True, message=f"{len(result.findings)} findings")


# ── 5. Plan ─────────────────────────────────────────────────────────


class _PlanReply(BaseModel):
    description: str = ""
    steps: list[PlanStep] = []


class PlanPhase:
    """Turn the top target (issues before improvements) into file-level steps."""

    name = PLAN

    def __init__(self, provider: Provider, max_steps: int = 5) -> None:
        self._provider = provider
        self._max_steps = max_steps

    async def execute(self, context: CycleContext) -> PhaseResult:
        if not context.issues and not context.improvements:
            return PhaseResult(success=True, should_stop=True, message="No issues or improvements to plan for")

        target = context.issues[0] if context.issues else context.improvements[0]
        where = f"{target.file}:{target.line}" if target.line else target.file
        findings = "\n".join(
            f"- {f}" for r in context.search_results for f in r.findings
        ) or "(none)"
        prompt = (
            "Plan a minimal fix.\n\n"
            f"Target: {target.message}\n"
            f"Location: {where or 'unknown'}\n"
            f"Findings:\n{findings}\n\n"
            f"Use at most {self._max_steps} steps, one file per step, paths relative "
            "to the project root.\n"
            'Respond ONLY with JSON: {"description": str, "steps": [{"file": str, '
            '"action": "modify" | "create", "description": str}]}'
        )
        reply = parse_model(await self._provider.chat(prompt), _PlanReply, fallback=_PlanReply())
        context.ai_calls += 1

        steps = reply.steps[: self._max_steps]
        if not steps and target.file:
            steps = [PlanStep(file=target.file, description=target.message)]
        if not steps:
            logger.warning("Could not create a valid plan for %s", target.message[:100])
            return PhaseResult(success=False, should_stop=True, message="Failed to create repair plan")

        context.plan = RepairPlan(
            target=target.message,
            description=reply.description or target.message,
            steps=steps,
        )
        logger.info("Repair plan: %d steps for %s", len(steps), target.message[:100])
        return PhaseResult(success=True, message=f"Plan created with {len(steps)} steps")


# ── 6. Implement ────────────────────────────────────────────────────


class ImplementError(Exception):
    """A plan step could not be applied."""


class ImplementPhase:
    """Apply the plan behind a snapshot; roll back on any failed step."""

    name = IMPLEMENT

    def __init__(
        self,
        provider: Provider,
        guard: Guard,
        snapshots: Snapshotter,
        root: Path,
        appeal: AppealManager | None = None,
        events: EventBus | None = None,
    ) -> None:
        self._provider = provider
        self._guard = guard
        self._snapshots = snapshots
        self._root = root.resolve()
        self._appeal = appeal
        self._events = events

    async def execute(self, context: CycleContext) -> PhaseResult:
        plan = context.plan
        if plan is None:
            return PhaseResult(success=False, should_stop=True, message="No plan to implement")

        decision = self._guard.validate_change(ChangeProposal(files=[s.file for s in plan.steps]))
        if decision.reasons:
            return PhaseResult(
                success=False, should_stop=True,
                message=f"Plan blocked by guard: {'; '.join(decision.reasons)}",
            )

        context.snapshot_id = self._snapshots.create_snapshot(
            f"cycle {context.cycle_id}: {plan.description[:80]}",
            files=[s.file for s in plan.steps],
        )
        try:
            for step in plan.steps:
                context.implemented_changes.append(await self._apply(step, plan, context))
        except Exception as e:
            reason = f"implementation failed: {e}"
            logger.error("Step failed, rolling back %s: %s", context.snapshot_id, e)
            await roll_back(self._snapshots, context.snapshot_id, reason, self._events)
            context.failure_reason = reason
            return PhaseResult(
                success=False, should_stop=True,
                message=f"Implementation failed (rolled back): {e}",
            )

        return PhaseResult(
            success=True, message=f"Implemented {len(context.implemented_changes)} changes",
        )

    def _resolve(self, file: str) -> Path:
        path = (self._root / file).resolve()
        if not path.is_relative_to(self._root):
            raise ImplementError(f"{file} is outside the project")
        return path

    async def _apply(self, step: PlanStep, plan: RepairPlan, context: CycleContext) -> ImplementedChange:
        path = self._resolve(step.file)
        original = path.read_text() if path.exists() else ""
        if step.action == "modify" and not path.exists():
            raise ImplementError(f"{step.file} does not exist")

        code = await self._provider.generate_code(
            step.description,
            CodeContext(file=step.file, existing_code=original, issue=plan.target),
        )
        context.ai_calls += 1
        if not code.strip():
            raise ImplementError(f"empty code generated for {step.file}")

        lines = len(code.splitlines())
        decision = self._guard.check(ChangeProposal(files=[step.file], total_lines=lines), code)
        if decision.reasons:
            raise ImplementError(f"guard blocked {step.file}: {'; '.join(decision.reasons)}")
        if decision.requires_review:
            if self._appeal is None:
                raise ImplementError(f"{step.file} is protected and no reviewer is configured")
            trial = await self._appeal.run_trials(ReviewRequest(
                file=step.file,
                description=step.description,
                proposed_code=code,
                original_code=original,
                issue=plan.target,
            ))
            if not trial.approved:
                raise ImplementError(f"review rejected {step.file}: {trial.final_reason}")

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(code)
        logger.info("Wrote %s (%d lines)", step.file, lines)
        return ImplementedChange(
            file=step.file,
            description=step.description,
            original_code=original,
            new_code=code,
            lines=lines,
            protected=bool(decision.requires_review),
            warnings=decision.warnings,
        )


# ── 7. Test gen ─────────────────────────────────────────────────────


class TestGenPhase:
    """Write tests for changed modules. Never stops the cycle."""

    __test__ = False  # Prevent pytest collection
    name = TEST_GEN

    def __init__(self, provider: Provider, guard: Guard, root: Path, test_dir: str = "tests") -> None:
        self._provider = provider
        self._guard = guard
        self._root = root
        self._test_dir = test_dir

    async def execute(self, context: CycleContext) -> PhaseResult:
        written = 0
        for change in context.implemented_changes:
            if not change.file.endswith(".py") or Path(change.file).name.startswith("test_"):
                continue
            test_rel = f"{self._test_dir}/test_{Path(change.file).stem}_mender.py"
            test_path = self._root / test_rel
            try:
                existing = test_path.read_text() if test_path.exists() else ""
                code = await self._provider.generate_test(
                    TestContext(file=change.file, code=change.new_code, existing_tests=existing),
                )
                context.ai_calls += 1
                decision = self._guard.check(ChangeProposal(files=[test_rel], total_lines=len(code.splitlines())))
                if not decision.allowed:
                    logger.warning("Generated test %s not written: %s", test_rel, decision.reasons or decision.warnings)
                    continue
                test_path.parent.mkdir(parents=True, exist_ok=True)
                test_path.write_text(code)
            except Exception as e:
                logger.warning("Test generation for %s failed: %s", change.file, e)
                continue
            context.test_files.append(test_rel)
            written += 1
        return PhaseResult(success=True, message=f"Generated {written} test files")


# ── 8. Verify ───────────────────────────────────────────────────────


class VerifyPhase:
    """Run the verification commands; roll back on failure. Always terminal."""

    name = VERIFY

    def __init__(
        self,
        commands: list[list[str]],
        snapshots: Snapshotter,
        root: Path,
        timeout: float = 600.0,
        events: EventBus | None = None,
    ) -> None:
        self._commands = commands
        self._snapshots = snapshots
        self._root = root
        self._timeout = timeout
        self._events = events

    async def execute(self, context: CycleContext) -> PhaseResult:
        if not context.snapshot_id:
            return PhaseResult(success=True, should_stop=True, message="No changes to verify")

        outcomes = await run_commands(self._commands, self._root, self._timeout)
        context.verification.extend(outcomes)
        failed = [o for o in outcomes if not o.ok]
        if failed:
            await roll_back(self._snapshots, context.snapshot_id, "verification failed", self._events)
            context.failure_reason = "verification failed"
            first = failed[0]
            return PhaseResult(
                success=False,
                should_stop=True,
                message=f"Verification failed, rolled back: {' '.join(first.command)} exited {first.returncode}",
                data={"output": first.output[-1000:]},
            )
        return PhaseResult(
            success=True,
            should_stop=True,
            message=f"Verified {len(context.implemented_changes)} changes",
        )
