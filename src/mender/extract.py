"""Best-effort structured extraction from free-text provider output.

Providers answer in prose that is expected to contain one JSON object
or array. Extraction runs three stages, stopping at the first that
parses:

1. a fenced code block (```json ... ``` or bare ``` ... ```)
2. a balanced-bracket scan that respects strings and escapes
3. a greedy regex from the first opening bracket to the last closing one

The parsed value is then validated against a Pydantic schema. Callers
that can continue without a result pass a fallback; strict callers get
ExtractionError.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

Kind = Literal["object", "array", "any"]

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)\n?\s*```", re.DOTALL)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)


class ExtractionError(ValueError):
    """Raised when no valid structured value can be extracted."""


def _matches(value: Any, kind: Kind) -> bool:
    if kind == "object":
        return isinstance(value, dict)
    if kind == "array":
        return isinstance(value, list)
    return isinstance(value, (dict, list))


def _try_load(text: str, kind: Kind) -> Any:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return value if _matches(value, kind) else None


def _from_fences(text: str, kind: Kind) -> Any:
    for match in _FENCE_RE.finditer(text):
        value = _try_load(match.group(1).strip(), kind)
        if value is not None:
            return value
    return None


def _from_balanced(text: str, kind: Kind) -> Any:
    openers = {"object": "{", "array": "[", "any": "{["}[kind]
    pairs = {"{": "}", "[": "]"}

    for start, ch in enumerate(text):
        if ch not in openers:
            continue
        stack = [pairs[ch]]
        in_string = False
        escaped = False
        for i in range(start + 1, len(text)):
            c = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif c == "\\":
                    escaped = True
                elif c == '"':
                    in_string = False
                continue
            if c == '"':
                in_string = True
            elif c in pairs:
                stack.append(pairs[c])
            elif c in "}]":
                if c != stack[-1]:
                    break
                stack.pop()
                if not stack:
                    value = _try_load(text[start:i + 1], kind)
                    if value is not None:
                        return value
                    break
    return None


def _from_regex(text: str, kind: Kind) -> Any:
    patterns = {"object": [_OBJECT_RE], "array": [_ARRAY_RE], "any": [_OBJECT_RE, _ARRAY_RE]}[kind]
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            value = _try_load(match.group(0), kind)
            if value is not None:
                return value
    return None


def extract_json(text: str, kind: Kind = "any") -> Any:
    """Extract the first JSON value of the requested kind, or None."""
    if not text:
        return None
    direct = _try_load(text.strip(), kind)
    if direct is not None:
        return direct
    for stage in (_from_fences, _from_balanced, _from_regex):
        value = stage(text, kind)
        if value is not None:
            return value
    return None


_MISSING = object()


def parse_model(text: str, schema: type[T], fallback: Any = _MISSING) -> T:
    """Extract a JSON object from text and validate it against schema.

    Returns fallback when given and extraction or validation fails;
    otherwise raises ExtractionError.
    """
    data = extract_json(text, "object")
    if data is None:
        if fallback is not _MISSING:
            logger.debug("No JSON object for %s, using fallback", schema.__name__)
            return fallback
        raise ExtractionError(f"No JSON object found for {schema.__name__}: {text[:200]}")
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        if fallback is not _MISSING:
            logger.debug("Invalid %s payload, using fallback: %s", schema.__name__, exc)
            return fallback
        raise ExtractionError(f"Invalid {schema.__name__}: {exc}") from exc


def parse_json_object(text: str) -> dict | None:
    return extract_json(text, "object")


def parse_json_array(text: str) -> list | None:
    return extract_json(text, "array")
