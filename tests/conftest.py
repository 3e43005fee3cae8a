"""Shared fixtures: a scriptable in-memory provider and a manual clock."""

from __future__ import annotations

import pytest

from mender.schemas import Analysis, CodeContext, SearchResult, TestContext


class FakeProvider:
    """Provider double. Replies are consumed in order; errors are raised in order.

    ``errors`` entries of None mean "succeed this call".
    """

    def __init__(
        self,
        name: str = "fake",
        replies: list[str] | None = None,
        errors: list[Exception | None] | None = None,
        code: str = "x = 1\n",
        analysis: Analysis | None = None,
    ) -> None:
        self.name = name
        self.replies = list(replies or [])
        self.errors = list(errors or [])
        self.code = code
        self.analysis = analysis or Analysis()
        self.calls: list[tuple[str, object]] = []

    def _maybe_raise(self) -> None:
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error

    async def chat(self, prompt: str) -> str:
        self.calls.append(("chat", prompt))
        self._maybe_raise()
        return self.replies.pop(0) if self.replies else "OK"

    async def generate_code(self, prompt: str, context: CodeContext) -> str:
        self.calls.append(("generate_code", context.file))
        self._maybe_raise()
        return self.code

    async def generate_test(self, context: TestContext) -> str:
        self.calls.append(("generate_test", context.file))
        self._maybe_raise()
        return "def test_generated():\n    assert True\n"

    async def analyze_code(self, code: str) -> Analysis:
        self.calls.append(("analyze_code", code[:20]))
        self._maybe_raise()
        return self.analysis

    async def search_and_analyze(self, query: str, files: list[str]) -> SearchResult:
        self.calls.append(("search_and_analyze", query))
        self._maybe_raise()
        return SearchResult(query=query, findings=[f"looked at {len(files)} files"])

    async def is_available(self) -> bool:
        return True


class ManualClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def make_provider():
    return FakeProvider


@pytest.fixture
def clock():
    return ManualClock()
