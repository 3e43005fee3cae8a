"""Appeal manager — bounded three-trial ladder over the judge vote.

  first → appeal → final

The ladder stops at the first approval. A rejection that is not
remediable (security, quality, scope, unknown, insufficient judges) or
a rejection at the last trial ends it for good. Before each later
trial the supplements the last rejection asked for are generated and
attached: a unified diff, file/dependency context, or a written
justification. Every trial is kept in the history and the outcome is
appended to the review log.
"""

from __future__ import annotations

import difflib
import logging
import re
from pathlib import Path

from mender.config import ReviewConfig
from mender.review.judges import MultiJudgeReviewer
from mender.review.rejection import (
    SUPPLEMENT_CONTEXT,
    SUPPLEMENT_DIFF,
    SUPPLEMENT_JUSTIFICATION,
)
from mender.schemas import ReviewRequest, TrialLevel, TrialRecord, TrialResult
from mender.store import append_jsonl

logger = logging.getLogger(__name__)

TRIAL_ORDER = [TrialLevel.FIRST, TrialLevel.APPEAL, TrialLevel.FINAL]

MAX_SUPPLEMENT_CHARS = 4000

_IMPORT_RE = re.compile(r"^\s*(?:from\s+[\w.]+\s+import\s+.+|import\s+[\w., ]+)$", re.M)
_DEF_RE = re.compile(r"^(?:async\s+)?(?:def|class)\s+(\w+)", re.M)


def build_diff(request: ReviewRequest) -> str:
    """Unified diff between the current and proposed content."""
    if not request.original_code:
        lines = request.proposed_code.splitlines()
        return f"New file {request.file} ({len(lines)} lines):\n" + "\n".join(
            f"+{line}" for line in lines
        )[:MAX_SUPPLEMENT_CHARS]
    diff = difflib.unified_diff(
        request.original_code.splitlines(),
        request.proposed_code.splitlines(),
        fromfile=f"a/{request.file}",
        tofile=f"b/{request.file}",
        lineterm="",
    )
    text = "\n".join(diff)
    if not text:
        return f"No textual changes to {request.file}"
    if len(text) > MAX_SUPPLEMENT_CHARS:
        text = text[:MAX_SUPPLEMENT_CHARS] + "\n... (diff truncated)"
    return text


def _diff_stats(request: ReviewRequest) -> tuple[int, int]:
    added = removed = 0
    for line in difflib.ndiff(request.original_code.splitlines(), request.proposed_code.splitlines()):
        if line.startswith("+ "):
            added += 1
        elif line.startswith("- "):
            removed += 1
    return added, removed


class AppealManager:
    """Runs the trial ladder for one protected-file change."""

    def __init__(
        self,
        reviewer: MultiJudgeReviewer,
        config: ReviewConfig | None = None,
        source_root: str | Path | None = None,
        review_log: str | Path | None = None,
    ) -> None:
        self._reviewer = reviewer
        self._config = config or ReviewConfig()
        self._source_root = Path(source_root) if source_root else None
        self._review_log = Path(review_log) if review_log else None

    async def run_trials(self, request: ReviewRequest) -> TrialResult:
        levels = TRIAL_ORDER[: max(1, min(self._config.max_trials, len(TRIAL_ORDER)))]
        supplements: dict[str, str] = {}
        history: list[TrialRecord] = []

        logger.info("Protected file review started for %s", request.file)
        for index, level in enumerate(levels):
            decision = await self._reviewer.review(request, level, supplements)
            history.append(TrialRecord(level=level, decision=decision, supplements=dict(supplements)))

            if decision.approved:
                break
            if not decision.can_appeal or decision.rejection is None:
                logger.info("%s: rejection at %s is final (%s)", request.file, level,
                            decision.rejection.category if decision.rejection else "no verdict")
                break
            if index == len(levels) - 1:
                break

            supplements = {
                **supplements,
                **self.build_supplements(request, decision.rejection.required_supplements),
            }
            logger.info(
                "%s: appealing %s rejection with %s",
                request.file, decision.rejection.category, sorted(supplements),
            )

        last = history[-1]
        result = TrialResult(
            file=request.file,
            approved=last.decision.approved,
            final_level=last.level,
            trials_completed=len(history),
            final_reason=last.decision.reason,
            history=history,
        )
        if self._review_log is not None:
            append_jsonl(self._review_log, result.model_dump(mode="json"))
        return result

    # ── Supplements ────────────────────────────────────────────────

    def build_supplements(self, request: ReviewRequest, kinds: list[str]) -> dict[str, str]:
        builders = {
            SUPPLEMENT_DIFF: build_diff,
            SUPPLEMENT_CONTEXT: self.build_context,
            SUPPLEMENT_JUSTIFICATION: self.build_justification,
        }
        return {kind: builders[kind](request) for kind in kinds if kind in builders}

    def build_context(self, request: ReviewRequest) -> str:
        """File role: imports, definitions, and who imports it."""
        code = request.proposed_code or request.original_code
        imports = [m.group(0).strip() for m in _IMPORT_RE.finditer(code)]
        definitions = _DEF_RE.findall(code)
        lines = [f"File: {request.file}"]
        if imports:
            lines.append("Imports:\n" + "\n".join(f"  {i}" for i in imports[:30]))
        if definitions:
            lines.append("Defines: " + ", ".join(definitions[:40]))
        importers = self._find_importers(request.file)
        if importers:
            lines.append("Imported by:\n" + "\n".join(f"  {p}" for p in importers[:20]))
        return "\n".join(lines)[:MAX_SUPPLEMENT_CHARS]

    def build_justification(self, request: ReviewRequest) -> str:
        added, removed = _diff_stats(request)
        problem = request.issue or "an issue found during the automated repair cycle"
        return (
            f"This change to {request.file} addresses {problem}. "
            f"Intended effect: {request.description}. "
            f"It adds {added} and removes {removed} lines, keeps the file's public "
            "definitions in place, and is verified by the test suite before it is "
            "kept; a failed verification rolls it back automatically."
        )

    def _find_importers(self, file: str) -> list[str]:
        if self._source_root is None or not self._source_root.is_dir():
            return []
        module = Path(file).with_suffix("")
        parts = [p for p in module.parts if p not in ("src", ".")]
        if not parts:
            return []
        dotted = ".".join(parts)
        pattern = re.compile(
            rf"^\s*(?:from\s+{re.escape(dotted)}\b|import\s+{re.escape(dotted)}\b)", re.M,
        )
        found = []
        for path in sorted(self._source_root.rglob("*.py")):
            try:
                if pattern.search(path.read_text(errors="replace")):
                    found.append(str(path.relative_to(self._source_root)))
            except OSError:
                continue
        return found
