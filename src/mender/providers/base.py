"""ChatProvider — structured operations built on a single chat() call.

Concrete providers only implement ``chat`` and ``is_available``; code
generation, test generation, analysis and search are prompt templates
over chat, with structured answers pulled out by mender.extract.
"""

from __future__ import annotations

import logging
import re

from mender.extract import parse_model
from mender.schemas import Analysis, CodeContext, SearchResult, TestContext

logger = logging.getLogger(__name__)

_CODE_BLOCK_RE = re.compile(r"```[\w+-]*\s*\n(.*?)\n```", re.DOTALL)


def strip_code_fence(text: str) -> str:
    """Return the largest fenced block, or the text itself when unfenced."""
    blocks = _CODE_BLOCK_RE.findall(text)
    if not blocks:
        return text.strip() + "\n"
    return max(blocks, key=len).rstrip() + "\n"


class ChatProvider:
    """Base class for providers that speak free-text chat."""

    name = "chat"

    async def chat(self, prompt: str) -> str:
        raise NotImplementedError

    async def is_available(self) -> bool:
        raise NotImplementedError

    async def generate_code(self, prompt: str, context: CodeContext) -> str:
        parts = [
            "You are modifying one file of a Python codebase.",
            f"File: {context.file}",
        ]
        if context.issue:
            parts.append(f"Problem to fix:\n{context.issue}")
        if context.instructions:
            parts.append(f"Instructions:\n{context.instructions}")
        parts.append(prompt)
        if context.existing_code:
            parts.append(f"Current content:\n```python\n{context.existing_code}\n```")
        parts.append(
            "Respond with the COMPLETE new file content in a single "
            "```python code block and nothing else."
        )
        return strip_code_fence(await self.chat("\n\n".join(parts)))

    async def generate_test(self, context: TestContext) -> str:
        prompt = (
            f"Write {context.framework} tests for {context.file}.\n\n"
            f"```python\n{context.code}\n```\n\n"
        )
        if context.existing_tests:
            prompt += (
                "Existing tests (extend, do not duplicate):\n"
                f"```python\n{context.existing_tests}\n```\n\n"
            )
        prompt += "Respond with the complete test module in a single ```python code block."
        return strip_code_fence(await self.chat(prompt))

    async def analyze_code(self, code: str) -> Analysis:
        prompt = (
            "Review this code for bugs, risky constructs and clear improvements.\n\n"
            f"```python\n{code}\n```\n\n"
            'Respond ONLY with JSON: {"issues": [str], "suggestions": [str], '
            '"quality": number between 0 and 1}'
        )
        return parse_model(await self.chat(prompt), Analysis, fallback=Analysis())

    async def search_and_analyze(self, query: str, files: list[str]) -> SearchResult:
        listing = "\n".join(f"- {f}" for f in files) or "(no files)"
        prompt = (
            f"Investigate: {query}\n\nRelevant files:\n{listing}\n\n"
            'Respond ONLY with JSON: {"findings": [str], "analysis": str}'
        )
        text = await self.chat(prompt)
        result = parse_model(text, SearchResult, fallback=None)
        if result is None:
            logger.debug("%s: unstructured search answer, keeping raw text", self.name)
            return SearchResult(query=query, analysis=text[:2000])
        result.query = query
        return result
