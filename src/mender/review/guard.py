"""Guard — deterministic policy checks run before any change is written.

Hard blocks: too many files, disallowed extension, too many lines, and
dangerous constructs in code destined for a protected file. Protected
paths themselves are not a hard block: they are reported in
``requires_review`` and may only be written after the multi-judge gate
approves. Dangerous constructs in ordinary files are warnings.
"""

from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath

from mender.config import GuardConfig
from mender.schemas import ChangeProposal, GuardDecision

logger = logging.getLogger(__name__)

DANGEROUS_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\beval\s*\("), "eval()"),
    (re.compile(r"\bexec\s*\("), "exec()"),
    (re.compile(r"\b__import__\s*\(|importlib\.import_module\s*\("), "dynamic import"),
    (re.compile(r"\bsubprocess\b|\bos\.system\s*\(|\bos\.popen\s*\(|child_process"), "subprocess spawning"),
    (re.compile(r"\bsys\.exit\s*\(|\bos\._exit\s*\(|\bos\.kill\s*\(|process\.exit"), "process termination"),
    (re.compile(r"rm\s+-rf|shutil\.rmtree\s*\("), "recursive delete"),
]


def _normalize(path: str) -> str:
    return path.replace("\\", "/")


class Guard:
    """Static change policy."""

    def __init__(self, config: GuardConfig | None = None) -> None:
        self._config = config or GuardConfig()

    @property
    def config(self) -> GuardConfig:
        return self._config

    def is_file_protected(self, path: str) -> bool:
        normalized = _normalize(path)
        return any(pattern in normalized for pattern in self._config.protected_patterns)

    def is_extension_allowed(self, path: str) -> bool:
        return PurePosixPath(_normalize(path)).suffix in self._config.allowed_extensions

    def validate_change(self, proposal: ChangeProposal) -> GuardDecision:
        """Check file count, paths, extensions and size."""
        reasons: list[str] = []
        protected: list[str] = []

        if len(proposal.files) > self._config.max_files_per_change:
            reasons.append(
                f"Too many files: {len(proposal.files)} > {self._config.max_files_per_change}"
            )
        for path in proposal.files:
            if self.is_file_protected(path):
                protected.append(path)
            if not self.is_extension_allowed(path):
                reasons.append(f"Disallowed extension: {path}")
        if proposal.total_lines > self._config.max_lines_per_file:
            reasons.append(
                f"Too many lines: {proposal.total_lines} > {self._config.max_lines_per_file}"
            )

        return GuardDecision(
            allowed=not reasons and not protected,
            reasons=reasons,
            warnings=[f"Protected file: {p}" for p in protected],
            requires_review=protected,
        )

    def validate_code(self, code: str) -> list[str]:
        """Warnings for dangerous constructs found in code."""
        return [
            f"Potentially dangerous: {name}"
            for pattern, name in DANGEROUS_PATTERNS
            if pattern.search(code)
        ]

    def check(self, proposal: ChangeProposal, code: str = "") -> GuardDecision:
        """Full policy decision for a change and its generated code."""
        decision = self.validate_change(proposal)
        findings = self.validate_code(code) if code else []
        if findings:
            if decision.requires_review:
                decision.reasons.extend(
                    f"{f} in protected change" for f in findings
                )
            else:
                decision.warnings.extend(findings)
        decision.allowed = not decision.reasons and not decision.requires_review

        if decision.reasons:
            logger.warning("Guard blocked change to %s: %s", proposal.files, "; ".join(decision.reasons))
        elif decision.warnings:
            logger.info("Guard warnings for %s: %s", proposal.files, "; ".join(decision.warnings))
        return decision
