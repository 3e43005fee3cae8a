"""Tests for structured extraction from provider text."""

from __future__ import annotations

import pytest
from pydantic import BaseModel

from mender.extract import (
    ExtractionError,
    extract_json,
    parse_json_array,
    parse_json_object,
    parse_model,
)


class Verdict(BaseModel):
    approved: bool
    reason: str = ""


class TestExtractJson:
    def test_plain_json(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_fenced_block(self):
        text = 'Here you go:\n```json\n{"approved": true}\n```\nThanks.'
        assert extract_json(text, "object") == {"approved": True}

    def test_bare_fence(self):
        text = "```\n[1, 2, 3]\n```"
        assert extract_json(text, "array") == [1, 2, 3]

    def test_balanced_brackets_in_prose(self):
        text = 'I think {"approved": false, "reason": "uses {braces} in a string"} is right. {"x": 2}'
        assert extract_json(text, "object") == {
            "approved": False, "reason": "uses {braces} in a string",
        }

    def test_escaped_quote_in_string(self):
        text = 'answer: {"reason": "say \\"hi\\" }", "approved": true} done'
        assert extract_json(text, "object") == {"reason": 'say "hi" }', "approved": True}

    def test_kind_filters(self):
        text = 'list [1, 2] then object {"a": 1}'
        assert extract_json(text, "object") == {"a": 1}
        assert extract_json(text, "array") == [1, 2]

    def test_nothing(self):
        assert extract_json("no json here") is None
        assert extract_json("") is None

    def test_helpers(self):
        assert parse_json_object('x {"k": "v"} y') == {"k": "v"}
        assert parse_json_array("x [\"a\"] y") == ["a"]


class TestParseModel:
    def test_valid(self):
        v = parse_model('```json\n{"approved": true, "reason": "fine"}\n```', Verdict)
        assert v.approved is True
        assert v.reason == "fine"

    def test_missing_raises(self):
        with pytest.raises(ExtractionError):
            parse_model("I approve", Verdict)

    def test_invalid_raises(self):
        with pytest.raises(ExtractionError, match="Invalid Verdict"):
            parse_model('{"reason": "no verdict"}', Verdict)

    def test_fallback(self):
        fallback = Verdict(approved=False, reason="fallback")
        assert parse_model("nothing", Verdict, fallback=fallback) is fallback
        assert parse_model('{"x": 1}', Verdict, fallback=None) is None
