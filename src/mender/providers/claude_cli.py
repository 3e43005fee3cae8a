"""Claude CLI provider — runs `claude -p` as a subprocess per call."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from mender.process import run_command
from mender.providers import ProviderError, ProviderTimeout
from mender.providers.base import ChatProvider

logger = logging.getLogger(__name__)


class ClaudeCliProvider(ChatProvider):
    """Provider using the claude CLI in print mode."""

    name = "claude"

    def __init__(
        self,
        model: str = "claude-opus-4-6",
        timeout: float = 300.0,
        cwd: str | Path | None = None,
        executable: str = "claude",
        grace: float = 5.0,
    ) -> None:
        self._model = model
        self._timeout = timeout  # seconds per CLI invocation
        self._cwd = Path(cwd) if cwd else None
        self._executable = executable
        self._grace = grace

    async def chat(self, prompt: str) -> str:
        cmd = [self._executable, "-p", "--output-format", "json", "--model", self._model]
        cwd = self._cwd if self._cwd and self._cwd.exists() else None

        result = await run_command(
            cmd, cwd=cwd, timeout=self._timeout, input_text=prompt, grace=self._grace,
        )
        if result.timed_out:
            raise ProviderTimeout(f"claude CLI timed out after {self._timeout}s")
        if result.returncode != 0:
            raise ProviderError(
                f"claude CLI failed (exit {result.returncode}): "
                f"{(result.stderr or result.stdout)[:500]}"
            )

        raw = result.stdout
        try:
            response = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("claude CLI returned non-JSON output, using raw text")
            return raw

        if isinstance(response, dict):
            if response.get("is_error"):
                raise ProviderError(f"claude CLI error: {str(response.get('result', ''))[:500]}")
            text = response.get("result", raw)
            return text if isinstance(text, str) else json.dumps(text)
        return raw

    async def is_available(self) -> bool:
        result = await run_command([self._executable, "--version"], timeout=15)
        return result.ok
