"""Rejection analyzer — why did the judges say no, and can we fix it?

Patterns are tried in order, case-insensitively; the first match wins.
Only missing-diff and missing-context are remediable, because the
appeal can attach exactly what was missing. Everything else ends the
appeal.
"""

from __future__ import annotations

import re

from mender.schemas import RejectionAnalysis, RejectionCategory

SUPPLEMENT_DIFF = "diff"
SUPPLEMENT_CONTEXT = "context"
SUPPLEMENT_JUSTIFICATION = "justification"

_RULES: list[tuple[RejectionCategory, re.Pattern[str], bool, list[str]]] = [
    (
        RejectionCategory.MISSING_DIFF,
        re.compile(r"diff|what.*chang|no.*change.*provided|cannot.*see.*modification", re.I),
        True,
        [SUPPLEMENT_DIFF],
    ),
    (
        RejectionCategory.MISSING_CONTEXT,
        re.compile(r"context|justification|why.*change|insufficient.*information|more.*detail", re.I),
        True,
        [SUPPLEMENT_CONTEXT, SUPPLEMENT_JUSTIFICATION],
    ),
    (
        RejectionCategory.SECURITY_CONCERN,
        re.compile(r"security|vulnerab|dangerous|malicious|injection|xss|csrf|unsafe", re.I),
        False,
        [],
    ),
    (
        RejectionCategory.QUALITY_CONCERN,
        re.compile(r"quality|inadequate|poor.*code|bug|error.*prone|regression", re.I),
        False,
        [],
    ),
    (
        RejectionCategory.SCOPE_VIOLATION,
        re.compile(r"scope|outside.*boundary|protected|forbidden|not.*allowed|beyond.*scope", re.I),
        False,
        [],
    ),
]


def analyze_rejection(text: str) -> RejectionAnalysis:
    """Classify combined rejection reasons."""
    for category, pattern, remediable, supplements in _RULES:
        match = pattern.search(text or "")
        if match:
            return RejectionAnalysis(
                category=category,
                remediable=remediable,
                required_supplements=list(supplements),
                matched=match.group(0),
            )
    return RejectionAnalysis(category=RejectionCategory.UNKNOWN, remediable=False)
