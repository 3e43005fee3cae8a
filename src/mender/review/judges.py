"""Multi-judge reviewer — weighted vote over independent AI judges.

All judges are asked concurrently; a judge that errors or answers
without a usable verdict simply does not vote. The weighted approval
ratio is

  weighted:    Σ(weight × confidence × approved) / Σ(weight × confidence)
  discounted:  Σ(weight × confidence × approved) / Σ(weight)

over the judges that voted (weighted is the default), and the change is
approved iff the ratio is at least the threshold (inclusive). Too few
votes either falls back to single-judge mode or is a terminal,
non-appealable rejection, depending on ``fallback_behavior``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass

from pydantic import BaseModel

from mender.config import ReviewConfig
from mender.extract import ExtractionError, parse_model
from mender.providers import Provider
from mender.review.rejection import analyze_rejection
from mender.schemas import JudgeVerdict, ReviewDecision, ReviewRequest, TrialLevel, VotingSummary

logger = logging.getLogger(__name__)

TRIAL_LABELS = {
    TrialLevel.FIRST: "First review",
    TrialLevel.APPEAL: "Appeal review",
    TrialLevel.FINAL: "Final review",
}


@dataclass
class Judge:
    """One voting reviewer backed by a provider."""
    name: str
    provider: Provider


class JudgeReply(BaseModel):
    approved: bool
    reason: str = ""
    confidence: float | None = None


def weighted_ratio(
    verdicts: list[JudgeVerdict],
    weights: Mapping[str, float],
    default_weight: float = 0.3,
    mode: str = "weighted",
) -> float:
    """Weighted approval ratio in [0, 1]. Order of verdicts does not matter."""
    approving = 0.0
    total = 0.0
    for v in verdicts:
        weight = weights.get(v.judge, default_weight)
        approving += weight * v.confidence * (1.0 if v.approved else 0.0)
        total += weight if mode == "discounted" else weight * v.confidence
    return approving / total if total > 0 else 0.0


class MultiJudgeReviewer:
    """Weighted-vote approval gate for protected-file changes."""

    def __init__(self, judges: list[Judge], config: ReviewConfig | None = None) -> None:
        self._judges = judges
        self._config = config or ReviewConfig()
        if self._config.voting_mode not in ("discounted", "weighted"):
            raise ValueError(f"Unknown voting_mode: {self._config.voting_mode}")

    @property
    def judges(self) -> list[Judge]:
        return list(self._judges)

    def weight_of(self, judge: str) -> float:
        return self._config.judge_weights.get(judge, self._config.default_weight)

    async def review(
        self,
        request: ReviewRequest,
        trial: TrialLevel = TrialLevel.FIRST,
        supplements: dict[str, str] | None = None,
    ) -> ReviewDecision:
        label = TRIAL_LABELS[trial]
        prompt = self.build_prompt(request, trial, supplements or {})

        results = await asyncio.gather(
            *(self._ask(judge, prompt) for judge in self._judges),
            return_exceptions=True,
        )
        verdicts: list[JudgeVerdict] = []
        for judge, result in zip(self._judges, results):
            if isinstance(result, BaseException):
                logger.warning("Judge %s failed, not voting: %s", judge.name, result)
            else:
                verdicts.append(result)

        required = self._config.required_judges
        single_judge = False
        if len(verdicts) < required:
            if self._config.fallback_behavior == "single-judge" and verdicts:
                logger.warning(
                    "%s: only %d/%d judges responded, continuing in single-judge mode",
                    label, len(verdicts), required,
                )
                single_judge = True
            else:
                logger.warning(
                    "%s: insufficient judges (%d/%d), rejecting", label, len(verdicts), required,
                )
                return ReviewDecision(
                    approved=False,
                    reason=f"Insufficient judges: {len(verdicts)}/{required} responded",
                    summary=VotingSummary(
                        threshold=self._config.voting_threshold,
                        judges_responded=len(verdicts),
                        judges_required=required,
                    ),
                    can_appeal=False,
                )

        ratio = weighted_ratio(
            verdicts,
            self._config.judge_weights,
            self._config.default_weight,
            self._config.voting_mode,
        )
        approved = ratio >= self._config.voting_threshold
        summary = VotingSummary(
            verdicts=verdicts,
            weighted_ratio=ratio,
            threshold=self._config.voting_threshold,
            approved=approved,
            judges_responded=len(verdicts),
            judges_required=required,
            single_judge_mode=single_judge,
        )
        tally = ", ".join(
            f"{v.judge}:{'approve' if v.approved else 'reject'}({v.confidence:.0%})"
            for v in verdicts
        )

        if approved:
            logger.info("%s approved %s (%.1f%%; %s)", label, request.file, ratio * 100, tally)
            return ReviewDecision(
                approved=True,
                reason=f"{label} approved (weighted approval {ratio:.1%})",
                summary=summary,
            )

        rejecting = " ".join(v.reason for v in verdicts if not v.approved)
        rejection = analyze_rejection(rejecting)
        logger.info(
            "%s rejected %s (%.1f%% < %.1f%%; %s) as %s",
            label, request.file, ratio * 100, self._config.voting_threshold * 100,
            tally, rejection.category,
        )
        return ReviewDecision(
            approved=False,
            reason=(
                f"{label} rejected (weighted approval {ratio:.1%}, "
                f"threshold {self._config.voting_threshold:.1%}): {rejecting.strip() or 'no reason given'}"
            ),
            summary=summary,
            rejection=rejection,
            can_appeal=rejection.remediable,
        )

    async def _ask(self, judge: Judge, prompt: str) -> JudgeVerdict:
        reply_text = await judge.provider.chat(prompt)
        try:
            reply = parse_model(reply_text, JudgeReply)
        except ExtractionError as exc:
            raise ValueError(f"unusable verdict from {judge.name}: {exc}") from exc
        confidence = (
            self._config.default_confidence if reply.confidence is None else reply.confidence
        )
        return JudgeVerdict(
            judge=judge.name,
            approved=reply.approved,
            reason=reply.reason,
            confidence=min(1.0, max(0.0, confidence)),
        )

    def build_prompt(
        self,
        request: ReviewRequest,
        trial: TrialLevel,
        supplements: dict[str, str],
    ) -> str:
        excerpt = request.proposed_code[: self._config.code_excerpt_chars]
        parts = [
            f"[{TRIAL_LABELS[trial]}] You are a security reviewer. Decide whether "
            "this change to a protected file is legitimate.",
            f"## File\n{request.file}",
            f"## Description\n{request.description}",
        ]
        if request.issue:
            parts.append(f"## Problem being fixed\n{request.issue}")
        if excerpt:
            parts.append(f"## Proposed code (excerpt)\n```\n{excerpt}\n```")
        for name, text in supplements.items():
            parts.append(f"## Supplement: {name}\n{text}")
        parts.append(
            "## Criteria\n"
            "1. Does it keep the system stable?\n"
            "2. Does it leave safety mechanisms intact?\n"
            "3. Is it a legitimate improvement (bug fix, performance, clarity)?\n"
            "4. Is it the minimal necessary change?"
        )
        parts.append(
            "## Answer format (JSON only)\n"
            '{"approved": true/false, "reason": "...", "confidence": 0.0-1.0}'
        )
        return "\n\n".join(parts)
