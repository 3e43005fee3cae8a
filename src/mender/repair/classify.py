"""Keyword classification of error text into (category, severity).

Rules are tried in order and the first keyword hit wins, so the order
matters: "rate limit timeout" is a timeout, not a transient error.
"""

from __future__ import annotations

from mender.schemas import ErrorCategory, Severity

_RULES: list[tuple[tuple[str, ...], ErrorCategory, Severity]] = [
    (("timeout", "timed out"), ErrorCategory.TIMEOUT, Severity.MEDIUM),
    (
        ("network", "econnrefused", "econnreset", "connection reset", "socket hang up", "rate limit", "429"),
        ErrorCategory.TRANSIENT,
        Severity.LOW,
    ),
    (("api error", "external service", "provider", "claude"), ErrorCategory.EXTERNAL, Severity.MEDIUM),
    (("config", "environment", "missing", "not found"), ErrorCategory.CONFIGURATION, Severity.HIGH),
    (("invalid", "validation", "expected"), ErrorCategory.VALIDATION, Severity.MEDIUM),
    (("memory", "disk", "resource", "quota"), ErrorCategory.RESOURCE, Severity.HIGH),
    (("sigterm", "exit code 143", "code 143"), ErrorCategory.TIMEOUT, Severity.MEDIUM),
]


def classify_error(message: str) -> tuple[ErrorCategory, Severity]:
    """Classify an error message. Unknown errors are medium severity."""
    text = message.lower()
    for keywords, category, severity in _RULES:
        if any(keyword in text for keyword in keywords):
            return category, severity
    return ErrorCategory.UNKNOWN, Severity.MEDIUM
