"""All Pydantic models — records shared between components and stores.

Every persisted record (tracked changes, confirmations, queued
improvements, aggregated errors, repair tasks, breaker state) and every
value handed across a component boundary is a Pydantic model.
Timestamps are epoch seconds taken from an injectable clock so that
stores and tests agree on time.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ───────────────────────────────────────────────────────────


class ProviderStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    BROKEN = "broken"


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class ConfirmationStatus(StrEnum):
    PENDING = "pending"
    IN_REVIEW = "in_review"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    NEEDS_REVIEW = "needs_review"


class RejectionCategory(StrEnum):
    MISSING_DIFF = "missing-diff"
    MISSING_CONTEXT = "missing-context"
    SECURITY_CONCERN = "security-concern"
    QUALITY_CONCERN = "quality-concern"
    SCOPE_VIOLATION = "scope-violation"
    UNKNOWN = "unknown"


class TrialLevel(StrEnum):
    FIRST = "first"
    APPEAL = "appeal"
    FINAL = "final"


class ErrorCategory(StrEnum):
    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    EXTERNAL = "external"
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    RESOURCE = "resource"
    UNKNOWN = "unknown"


class Severity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ErrorStatus(StrEnum):
    NEW = "new"
    QUEUED = "queued"
    REPAIRING = "repairing"
    RESOLVED = "resolved"
    FAILED = "failed"
    IGNORED = "ignored"


class TaskPriority(StrEnum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Lower rank runs first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.URGENT: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.NORMAL: 2,
    TaskPriority.LOW: 3,
}


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ImprovementStatus(StrEnum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# ── Provider I/O ────────────────────────────────────────────────────


class CodeContext(BaseModel):
    """What a provider needs to write or rewrite one file."""
    file: str
    existing_code: str = ""
    issue: str = ""
    instructions: str = ""


class TestContext(BaseModel):
    """What a provider needs to write tests for one file."""
    __test__ = False  # Prevent pytest collection
    file: str
    code: str
    existing_tests: str = ""
    framework: str = "pytest"


class Analysis(BaseModel):
    """Structured result of analyze_code."""
    issues: list[str] = []
    suggestions: list[str] = []
    quality: float = 0.0


class SearchResult(BaseModel):
    """Structured result of search_and_analyze."""
    query: str = ""
    findings: list[str] = []
    analysis: str = ""


# ── Cycle ───────────────────────────────────────────────────────────


class Issue(BaseModel):
    """A problem found by health-check or error-detect. Read-only downstream."""
    model_config = ConfigDict(frozen=True)

    type: str
    message: str
    file: str = ""
    line: int | None = None
    source: str = ""


class Improvement(BaseModel):
    """An improvement opportunity found by improve-find. Read-only downstream."""
    model_config = ConfigDict(frozen=True)

    category: str
    message: str
    file: str = ""
    line: int | None = None


class PlanStep(BaseModel):
    """One file-level edit in a repair plan."""
    file: str
    action: Literal["modify", "create"] = "modify"
    description: str


class RepairPlan(BaseModel):
    """The chosen repair for one cycle."""
    target: str
    description: str
    steps: list[PlanStep] = []


class ImplementedChange(BaseModel):
    """A file written by the implement phase."""
    file: str
    description: str
    original_code: str = ""
    new_code: str = ""
    lines: int = 0
    protected: bool = False
    warnings: list[str] = []


class CommandOutcome(BaseModel):
    """Outcome of one health/detect/verify command."""
    command: list[str]
    returncode: int
    output: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


class PhaseResult(BaseModel):
    """Return value of every phase."""
    success: bool
    should_stop: bool = False
    message: str = ""
    data: dict[str, Any] = {}


class CycleContext(BaseModel):
    """Mutable state of one cycle, owned by a single pipeline run."""
    cycle_id: str
    started_at: float
    issues: list[Issue] = []
    improvements: list[Improvement] = []
    search_results: list[SearchResult] = []
    plan: RepairPlan | None = None
    snapshot_id: str | None = None
    implemented_changes: list[ImplementedChange] = []
    test_files: list[str] = []
    verification: list[CommandOutcome] = []
    improvement_id: str | None = None
    ai_calls: int = 0
    failed_phase: str | None = None
    failure_reason: str | None = None


class QueuedImprovement(BaseModel):
    """An improvement waiting for a cycle to work on it."""
    id: str
    category: str
    message: str
    file: str = ""
    line: int | None = None
    priority: int = 50
    status: ImprovementStatus = ImprovementStatus.PENDING
    created_at: float
    updated_at: float
    completed_at: float | None = None
    cycle_id: str = ""
    result: str = ""

    def as_improvement(self) -> Improvement:
        return Improvement(category=self.category, message=self.message, file=self.file, line=self.line)


class CycleResult(BaseModel):
    """Summary of one cycle, appended to the cycle log."""
    cycle_id: str
    success: bool
    started_at: float
    duration: float
    phases_run: list[str] = []
    failed_phase: str | None = None
    failure_reason: str | None = None
    should_retry: bool = False
    skipped_early: bool = False
    message: str = ""
    issues_found: int = 0
    changes_made: int = 0
    ai_calls: int = 0


# ── Provider resilience ─────────────────────────────────────────────


class ProviderHealth(BaseModel):
    """Health of one named provider."""
    name: str
    status: ProviderStatus = ProviderStatus.HEALTHY
    consecutive_failures: int = 0
    last_success: float | None = None
    last_failure: float | None = None
    last_error: str = ""
    last_recovery_check: float | None = None
    last_repair_attempt: float | None = None


class HealthReport(BaseModel):
    """Snapshot of all provider health for status displays."""
    overall: Literal["healthy", "degraded", "critical"]
    providers: list[ProviderHealth] = []
    healthy: int = 0
    degraded: int = 0
    broken: int = 0


class RateLimitState(BaseModel):
    """Rate-limit tracking for one resilient wrapper."""
    is_limited: bool = False
    limited_at: float | None = None
    retry_after: float = 0.0
    consecutive_failures: int = 0
    circuit_state: CircuitState = CircuitState.CLOSED
    last_error: str = ""

    @property
    def backoff_until(self) -> float | None:
        if self.limited_at is None:
            return None
        return self.limited_at + self.retry_after


class TrackedChange(BaseModel):
    """Work served by the fallback provider, awaiting later review."""
    id: str
    timestamp: float
    phase: str = ""
    provider: str = ""
    operation: str = ""
    files: list[str] = []
    description: str = ""
    reviewed: bool = False
    review_result: str | None = None
    reviewed_at: float | None = None


class ConfirmationItem(BaseModel):
    """A tracked change queued for confirmation."""
    id: str
    change_id: str
    status: ConfirmationStatus = ConfirmationStatus.PENDING
    priority: int = 50
    created_at: float
    updated_at: float
    reviewer: str = ""
    notes: str = ""


# ── Safety gate ─────────────────────────────────────────────────────


class ChangeProposal(BaseModel):
    """A proposed change as seen by the Guard."""
    files: list[str]
    total_lines: int = 0


class GuardDecision(BaseModel):
    """Guard outcome. `requires_review` lists protected files a vote may unblock."""
    allowed: bool
    reasons: list[str] = []
    warnings: list[str] = []
    requires_review: list[str] = []


class ReviewRequest(BaseModel):
    """A change to a protected file submitted to the judges."""
    file: str
    description: str
    proposed_code: str = ""
    original_code: str = ""
    issue: str = ""


class JudgeVerdict(BaseModel):
    """One judge's vote."""
    judge: str
    approved: bool
    reason: str = ""
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)


class VotingSummary(BaseModel):
    """Weighted aggregation of verdicts."""
    verdicts: list[JudgeVerdict] = []
    weighted_ratio: float = 0.0
    threshold: float = 0.6
    approved: bool = False
    judges_responded: int = 0
    judges_required: int = 0
    single_judge_mode: bool = False


class RejectionAnalysis(BaseModel):
    """Classification of rejection text."""
    category: RejectionCategory
    remediable: bool
    required_supplements: list[str] = []
    matched: str = ""


class ReviewDecision(BaseModel):
    """Outcome of one review trial."""
    approved: bool
    reason: str = ""
    summary: VotingSummary = VotingSummary()
    rejection: RejectionAnalysis | None = None
    can_appeal: bool = False


class TrialRecord(BaseModel):
    """One rung of the appeal ladder."""
    level: TrialLevel
    decision: ReviewDecision
    supplements: dict[str, str] = {}


class TrialResult(BaseModel):
    """Final outcome of the appeal ladder with full history."""
    file: str
    approved: bool
    final_level: TrialLevel
    trials_completed: int
    final_reason: str = ""
    history: list[TrialRecord] = []


# ── Error aggregation + repair ──────────────────────────────────────


class RepairAttempt(BaseModel):
    """One automated repair attempt on an aggregated error."""
    attempt: int
    task_id: str = ""
    started_at: float
    finished_at: float | None = None
    success: bool = False
    output: str = ""
    error: str = ""


class AggregatedError(BaseModel):
    """A normalized record of any system failure."""
    id: str
    timestamp: float
    source: str
    message: str
    stack: str = ""
    context: dict[str, Any] = {}
    category: ErrorCategory = ErrorCategory.UNKNOWN
    severity: Severity = Severity.MEDIUM
    status: ErrorStatus = ErrorStatus.NEW
    repair_attempts: list[RepairAttempt] = []
    resolved_at: float | None = None
    resolved_by: str = ""


class ErrorStats(BaseModel):
    total: int = 0
    by_category: dict[str, int] = {}
    by_severity: dict[str, int] = {}
    by_status: dict[str, int] = {}
    by_source: dict[str, int] = {}


class RepairTask(BaseModel):
    """Queued unit of automated repair work for one aggregated error."""
    id: str
    error_id: str
    source: str
    priority: TaskPriority = TaskPriority.NORMAL
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    prompt: str = ""
    created_at: float
    started_at: float | None = None
    completed_at: float | None = None
    result: str = ""


class BreakerState(BaseModel):
    """Persisted state of the repair circuit breaker."""
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures_global: int = 0
    consecutive_failures_per_source: dict[str, int] = {}
    opened_at: float | None = None
    half_open_remaining: int | None = None
    last_failure_at: float | None = None
    trip_reason: str = ""


# ── Scheduling + events ─────────────────────────────────────────────


class ScheduledTaskStatus(BaseModel):
    """Bookkeeping for one scheduled task, exposed for status displays."""
    id: str
    name: str
    interval: float | None = None
    cron: str = ""
    enabled: bool = True
    requires_provider: bool = False
    running: bool = False
    last_run: float | None = None
    next_run: float | None = None
    consecutive_failures: int = 0
    last_error: str = ""
    skipped_rate_limited: int = 0


class CriticalAlert(BaseModel):
    id: str
    timestamp: float
    title: str
    message: str
    source: str = ""
    details: dict[str, Any] = {}


class Event(BaseModel):
    """A message on the event bus."""
    type: str
    timestamp: float
    data: dict[str, Any] = {}
