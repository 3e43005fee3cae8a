"""Subprocess execution with timeout and two-stage termination.

Every out-of-process call (provider CLIs, health/verify commands, the
repair agent) goes through run_command. On timeout the child gets
SIGTERM, then SIGKILL if it is still alive after the grace period.
Cancelling the awaiting task terminates the child the same way.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_GRACE = 5.0


@dataclass
class ProcessResult:
    """Captured outcome of a finished (or terminated) child process."""
    command: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return (self.stdout + ("\n" + self.stderr if self.stderr else "")).strip()


async def terminate(proc: asyncio.subprocess.Process, grace: float = DEFAULT_GRACE) -> None:
    """SIGTERM, wait up to grace seconds, then SIGKILL."""
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
        return
    except asyncio.TimeoutError:
        logger.warning("pid=%s ignored SIGTERM for %.1fs, killing", proc.pid, grace)
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()


async def run_command(
    command: list[str],
    cwd: str | Path | None = None,
    timeout: float | None = None,
    input_text: str | None = None,
    env: dict[str, str] | None = None,
    grace: float = DEFAULT_GRACE,
) -> ProcessResult:
    """Run a command to completion, or until timeout.

    A missing executable is reported as returncode 127 rather than
    raised, so callers treat it like any other failed command.
    """
    # Remove CLAUDECODE env var to allow spawning claude from within a session
    base_env = {k: v for k, v in os.environ.items() if k != "CLAUDECODE"}
    if env:
        base_env.update(env)

    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=base_env,
        )
    except FileNotFoundError as exc:
        return ProcessResult(command=list(command), returncode=127, stderr=str(exc))

    data = input_text.encode() if input_text is not None else None
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(input=data), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(
            "%s timed out after %ss (pid=%s), terminating",
            command[0], timeout, proc.pid,
        )
        await terminate(proc, grace)
        return ProcessResult(
            command=list(command),
            returncode=proc.returncode if proc.returncode is not None else -1,
            timed_out=True,
            stderr=f"{command[0]} timed out after {timeout}s",
        )
    except asyncio.CancelledError:
        await terminate(proc, grace)
        raise

    return ProcessResult(
        command=list(command),
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )
